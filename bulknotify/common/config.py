"""Central environment-driven settings for the bulk notification service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "bulk-notification"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    default_batch_size: int = 50
    queue_chunk_size: int = 100
    max_attempts: int = 3
    default_job_type: str = "training_assigned"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
