from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Scheduler fallbacks (stored settings win over these)
    enable_auto_monitoring: bool = True
    monitoring_schedule: str = "* * * * *"  # every minute

    # Storage
    db_path: str = "data/statuswatch.db"
    targets_file: str = "targets.yaml"

    # Checks
    max_concurrent_checks: int = 8
    check_user_agent: str = "Yet-Another-Status-Page-Monitor/1.0"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"


settings = Settings()
