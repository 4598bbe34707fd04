"""execflow configuration — storage, monitoring and recovery settings."""

from typing import Literal

from pydantic_settings import BaseSettings

StoreBackend = Literal["sqlite", "memory"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///data/execflow.db"
    store_backend: StoreBackend = "sqlite"

    # Read-through cache in front of the store (0 = disabled)
    store_cache_enabled: bool = True
    store_cache_size: int = 100

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:3000"

    # Progress monitor
    monitor_enabled: bool = True
    monitor_sample_interval_seconds: float = 5.0
    monitor_log_capacity: int = 1000
    monitor_metrics_capacity: int = 100
    # Finished executions whose logs and samples stay readable
    monitor_finished_capacity: int = 100

    # Execution history
    retention_days: int = 30
    default_page_size: int = 20
    max_page_size: int = 200

    # Rollback safety advisory (comma-separated node types)
    rollback_side_effect_node_types: str = "external-api,email,notification,webhook"

    # Graph validation thresholds
    high_concurrency_threshold: int = 100
    low_timeout_threshold_ms: int = 1000
    high_retry_threshold: int = 10

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def side_effect_node_types(self) -> set[str]:
        return {t.strip() for t in self.rollback_side_effect_node_types.split(",") if t.strip()}


settings = Settings()
