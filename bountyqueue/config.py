"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Broker (Upstash Kafka REST)
    upstash_kafka_rest_url: str | None = None
    upstash_kafka_rest_username: str | None = None
    upstash_kafka_rest_password: str | None = None
    broker_request_timeout_seconds: float = 10.0

    # Producer Configuration
    producer_max_retries: int = 5
    producer_retry_delays_ms: list[int] = [1000, 2000, 4000, 8000]

    # Consumer Configuration
    consumer_group_id: str = "default-group"
    consumer_batch_size: int = 10
    consumer_max_retries: int = 5
    consumer_concurrency: int = 5
    consumer_poll_interval_ms: int = 1000

    # Dead-Letter Queue
    dlq_group_id: str = "dlq-handler-group"
    dlq_fetch_limit: int = 100
    dlq_alert_max_messages: int = 100
    dlq_alert_max_age_seconds: int = 86400
    dlq_monitor_interval_seconds: int = 60

    # Job Queue
    job_fetch_window: int = 100
    job_polling_interval_seconds: float = 2.0

    # Worker Process
    worker_handler_modules: list[str] = []
    worker_shutdown_timeout_seconds: float = 30.0

    # Feature Flags
    queue_feature_flag: str = "USE_UPSTASH_KAFKA"
    use_upstash_kafka: bool = False

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "bounty-queue"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    @property
    def broker_configured(self) -> bool:
        """Whether all broker credentials are present."""
        return bool(
            self.upstash_kafka_rest_url
            and self.upstash_kafka_rest_username
            and self.upstash_kafka_rest_password
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
