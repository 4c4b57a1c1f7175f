from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_QUEUE = "celery"
DEFAULT_CONTENT_TYPE = "application/json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Broker
    broker_url: str = Field(
        default="redis://localhost:6379/0",
        alias="BRISK_BROKER_URL",
        description="redis://, rediss://, amqp:// or amqps:// connection URI",
    )
    broker_connection_max_retries: int = Field(
        default=10,
        alias="BRISK_BROKER_CONNECTION_MAX_RETRIES",
        description="Connection attempts before giving up (0 = retry forever)",
    )
    broker_connection_retry_delay: float = Field(
        default=1.0,
        alias="BRISK_BROKER_CONNECTION_RETRY_DELAY",
    )
    broker_connection_retry_max_delay: float = Field(
        default=30.0,
        alias="BRISK_BROKER_CONNECTION_RETRY_MAX_DELAY",
    )
    publish_max_retries: int = Field(
        default=3,
        alias="BRISK_PUBLISH_MAX_RETRIES",
        description="Transport-level publish retries before PublishError escapes",
    )
    visibility_timeout: int = Field(
        default=3600,
        alias="BRISK_VISIBILITY_TIMEOUT",
        description=(
            "Seconds an unacknowledged Redis delivery stays invisible before the "
            "restore sweep returns it to the queue. Ignored by AMQP brokers."
        ),
    )
    restore_interval: float = Field(
        default=30.0,
        alias="BRISK_RESTORE_INTERVAL",
        description="Seconds between visibility-timeout sweeps (Redis only)",
    )

    # Results
    result_backend_url: str | None = Field(
        default=None,
        alias="BRISK_RESULT_BACKEND",
        description="redis:// URI for storing task outcomes; unset disables results",
    )
    result_expires: int = Field(default=86400, alias="BRISK_RESULT_EXPIRES")

    # Messages
    default_queue: str = Field(default=DEFAULT_QUEUE, alias="BRISK_DEFAULT_QUEUE")
    task_content_type: str = Field(
        default=DEFAULT_CONTENT_TYPE, alias="BRISK_TASK_CONTENT_TYPE"
    )
    accept_content: list[str] = Field(
        default_factory=lambda: [DEFAULT_CONTENT_TYPE],
        alias="BRISK_ACCEPT_CONTENT",
        description="Content types the worker will decode",
    )

    # Task execution defaults
    task_max_retries: int = Field(default=3, alias="BRISK_TASK_MAX_RETRIES")
    task_retry_backoff: Literal["fixed", "exponential"] = Field(
        default="exponential",
        alias="BRISK_TASK_RETRY_BACKOFF",
    )
    task_retry_min_delay: float = Field(default=1.0, alias="BRISK_TASK_RETRY_MIN_DELAY")
    task_retry_max_delay: float = Field(
        default=3600.0, alias="BRISK_TASK_RETRY_MAX_DELAY"
    )
    task_retry_jitter: bool = Field(default=True, alias="BRISK_TASK_RETRY_JITTER")
    task_time_limit: float | None = Field(
        default=None,
        alias="BRISK_TASK_TIME_LIMIT",
        description="Default hard time limit in seconds for handlers",
    )
    task_acks_late: bool = Field(
        default=True,
        alias="BRISK_TASK_ACKS_LATE",
        description="Ack after the handler finishes instead of on dispatch",
    )

    # Worker
    worker_concurrency: int = Field(
        default=4,
        alias="BRISK_WORKER_CONCURRENCY",
        ge=1,
        description="Maximum concurrently executing handlers",
    )
    worker_prefetch_buffer: int = Field(
        default=2,
        alias="BRISK_WORKER_PREFETCH_BUFFER",
        ge=0,
        description="Deliveries held beyond the concurrency limit",
    )
    worker_poll_interval: float = Field(
        default=1.0,
        alias="BRISK_WORKER_POLL_INTERVAL",
        gt=0,
        description="Upper bound in seconds on one consume() wait",
    )
    worker_shutdown_grace: float = Field(
        default=30.0,
        alias="BRISK_WORKER_SHUTDOWN_GRACE",
        description="Seconds in-flight handlers get to finish on shutdown",
    )

    # Beat
    beat_max_sleep: float = Field(
        default=300.0,
        alias="BRISK_BEAT_MAX_SLEEP",
        gt=0,
        description="Upper bound in seconds on a single beat sleep",
    )

    # Metrics
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")
    metrics_port: int = Field(default=9808, alias="METRICS_PORT")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings.

    Settings are read from environment variables and .env file once,
    then cached for the lifetime of the process.
    """
    return Settings()
