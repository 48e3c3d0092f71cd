from typing import Any, Dict
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"
    app_name: str = "online-ddl-platform"
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    database_url: str = "sqlite:///./online_ddl.db"
    redis_url: str = "redis://localhost:6379/0"

    # pt-online-schema-change defaults
    osc_tool: str = "pt-online-schema-change"
    default_chunk_size: int = 1000
    default_max_load: str = "Threads_running=25"
    default_critical_load: str = "Threads_running=50"
    default_charset: str = "utf8mb4"
    default_check_interval: int = 1
    default_max_lag: int = 1
    default_progress: str = "time,5"

    # supervision
    stop_grace_seconds: float = 10.0
    output_tail_lines: int = 200
    log_flush_lines: int = 20
    stop_jobs_on_shutdown: bool = True

    # job store
    storage_retry_attempts: int = 3
    storage_retry_backoff: float = 0.2

    subscriber_queue_size: int = 1000

    # collaborators
    connections: Dict[str, Dict[str, Any]] = {}
    connections_file: str | None = None
    connection_service_url: str | None = None
    risk_service_url: str | None = None
    http_timeout_seconds: float = 10.0

    reconcile_interval_seconds: float = 60.0
    orphan_grace_seconds: float = 60.0

settings = Settings()
