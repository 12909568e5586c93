"""CLI 集成测试 -- run / show / resume 的退出码与 stdout 输出"""

import json
import sys

import pytest

from codeswarm.engine.__main__ import main


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """隔离的数据库路径"""
    monkeypatch.setenv("CODESWARM_DB_PATH", str(tmp_path / "sqlite" / "cli.db"))
    monkeypatch.setenv("CODESWARM_LOG_LEVEL", "WARNING")
    return tmp_path


def _invoke(monkeypatch, *args: str) -> int:
    monkeypatch.setattr(sys, "argv", ["codeswarm", *args])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


def _write_plan(path, tasks) -> str:
    path.write_text(json.dumps({"tasks": tasks}), encoding="utf-8")
    return str(path)


class TestRunCommand:
    """run <plan.json>"""

    def test_run_prints_summary(self, cli_env, monkeypatch, capsys):
        plan = _write_plan(
            cli_env / "plan.json",
            [
                {"id": "A", "category": "backend", "estimatedCost": 0.5, "files": ["a.py"]},
                {"id": "B", "category": "docs", "dependencies": ["A"], "estimatedCost": 0.25},
            ],
        )

        code = _invoke(monkeypatch, "run", plan)

        summary = json.loads(capsys.readouterr().out)
        assert code == 0
        assert summary["success"] is True
        assert summary["completed_task_count"] == 2
        assert summary["files_created"] == ["a.py"]
        assert summary["total_cost"] == 0.75

    def test_run_then_show(self, cli_env, monkeypatch, capsys):
        plan = _write_plan(cli_env / "plan.json", [{"id": "A", "category": "backend"}])
        _invoke(monkeypatch, "run", plan)
        run_id = json.loads(capsys.readouterr().out)["run_id"]

        code = _invoke(monkeypatch, "show", run_id)

        snapshot = json.loads(capsys.readouterr().out)
        assert code == 0
        assert snapshot["run_id"] == run_id
        assert [e["task"]["id"] for e in snapshot["completed"]] == ["A"]

    def test_unsuccessful_run_exit_code(self, cli_env, monkeypatch, capsys):
        monkeypatch.setenv("CODESWARM_TOTAL_BUDGET", "0.1")
        plan = _write_plan(
            cli_env / "plan.json", [{"id": "A", "category": "backend", "estimatedCost": 0.5}]
        )

        code = _invoke(monkeypatch, "run", plan)

        summary = json.loads(capsys.readouterr().out)
        assert code == 3
        assert summary["unscheduled_tasks"] == {"A": "budget_exhausted"}

    def test_cycle_exit_code(self, cli_env, monkeypatch, capsys):
        plan = _write_plan(
            cli_env / "plan.json",
            [
                {"id": "A", "category": "backend", "dependencies": ["B"]},
                {"id": "B", "category": "backend", "dependencies": ["A"]},
            ],
        )

        assert _invoke(monkeypatch, "run", plan) == 2
        assert "依赖环" in capsys.readouterr().out

    def test_invalid_plan_file(self, cli_env, monkeypatch, capsys):
        plan = _write_plan(cli_env / "plan.json", [{"id": "A", "category": "quantum"}])

        assert _invoke(monkeypatch, "run", plan) == 2

    def test_missing_plan_file(self, cli_env, monkeypatch, capsys):
        assert _invoke(monkeypatch, "run", str(cli_env / "nope.json")) == 1


class TestOtherCommands:
    """show / resume / 用法"""

    def test_show_missing_run(self, cli_env, monkeypatch, capsys):
        assert _invoke(monkeypatch, "show", "run-missing") == 1
        assert "run-missing" in capsys.readouterr().out

    def test_resume_missing_run(self, cli_env, monkeypatch, capsys):
        assert _invoke(monkeypatch, "resume", "run-missing") == 2

    def test_unknown_command(self, cli_env, monkeypatch, capsys):
        assert _invoke(monkeypatch, "explode", "x") == 1

    def test_usage(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["codeswarm"])
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1
        assert "用法" in capsys.readouterr().out
