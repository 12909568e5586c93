"""EngineConfig 环境变量加载测试"""

from pathlib import Path

from codeswarm.core.config import EngineConfig, get_db_path, load_engine_config


class TestLoadEngineConfig:
    """load_engine_config() 行为"""

    def test_defaults_without_env(self, monkeypatch):
        for var in (
            "CODESWARM_MAX_CONCURRENT_TASKS",
            "CODESWARM_TOTAL_BUDGET",
            "CODESWARM_ALLOW_UNKNOWN_DEPENDENCIES",
        ):
            monkeypatch.delenv(var, raising=False)

        config = load_engine_config()

        assert config == EngineConfig()
        assert config.max_concurrent_tasks == 3
        assert config.max_attempts == 3
        assert config.worker_wait_warning_s == 0.0
        assert config.allow_unknown_dependencies is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("CODESWARM_MAX_CONCURRENT_TASKS", "8")
        monkeypatch.setenv("CODESWARM_TOTAL_BUDGET", "12.5")
        monkeypatch.setenv("CODESWARM_BUDGET_WARNING_THRESHOLD", "0.1")
        monkeypatch.setenv("CODESWARM_ALLOW_UNKNOWN_DEPENDENCIES", "true")

        config = load_engine_config()

        assert config.max_concurrent_tasks == 8
        assert config.total_budget == 12.5
        assert config.budget_warning_threshold == 0.1
        assert config.allow_unknown_dependencies is True

    def test_unparseable_value_falls_back(self, monkeypatch):
        """非数字值回落到默认值，不影响其它字段"""
        monkeypatch.setenv("CODESWARM_MAX_ATTEMPTS", "many")
        monkeypatch.setenv("CODESWARM_WORKER_MAX_PER_CATEGORY", "5")

        config = load_engine_config()

        assert config.max_attempts == 3
        assert config.worker_max_per_category == 5

    def test_out_of_range_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("CODESWARM_MAX_CONCURRENT_TASKS", "0")
        monkeypatch.setenv("CODESWARM_TOTAL_BUDGET", "-3")

        config = load_engine_config()

        assert config.max_concurrent_tasks == 3
        assert config.total_budget == 100.0


class TestPaths:
    """路径常量"""

    def test_db_path_override(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("CODESWARM_DB_PATH", str(tmp_path / "x.db"))
        assert get_db_path() == str(tmp_path / "x.db")

    def test_db_path_under_data_dir(self, monkeypatch, tmp_path: Path):
        monkeypatch.delenv("CODESWARM_DB_PATH", raising=False)
        monkeypatch.setenv("CODESWARM_DATA_DIR", str(tmp_path))
        assert get_db_path() == str(tmp_path / "sqlite" / "codeswarm.db")
