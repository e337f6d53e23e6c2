"""
Order Service — 設定

すべて環境変数から読み込む (大文字小文字は区別しない)。
DATABASE_URL だけはサービス起動時に必須。
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    database_url: str = ""
    redis_url: str = "redis://localhost:6379"
    inventory_service_url: str = "http://localhost:8002"
    inventory_timeout: float = 5.0

    rate_limit_max_requests: int = 5
    rate_limit_window_seconds: float = 60.0

    outbox_poll_interval: float = 3.0
    outbox_batch_size: int = 100

    effect_max_attempts: int = 3
    effect_retry_delay: float = 1.0
    breaker_failure_threshold: int = 3

    worker_core: int = 2
    worker_max: int = 5
    worker_queue_capacity: int = 50
    worker_submit_timeout: float = 5.0

    dedup_backend: str = "memory"  # memory | redis
    dedup_ttl_seconds: int = 86400
    dedup_max_keys: int = 100_000

    log_level: str = "INFO"
