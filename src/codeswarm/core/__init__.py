"""CodeSwarm Core -- 领域模型、配置、日志与持久化"""
