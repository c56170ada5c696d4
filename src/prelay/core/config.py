"""Configuration models for core domain components.

Pydantic-based configuration classes consolidate the settings of each
component so composition roots can inject them and tests can shrink every
delay to milliseconds.
"""

from typing import Optional
from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Backoff policy for the retry engine.

    Delay before retry `n` (0-based) is
    `min(max_delay, min_delay * backoff_factor ** n)`, plus uniform jitter in
    `[0, min_delay)` when `jitter` is enabled. All values are seconds.
    """

    max_attempts: int = Field(default=3, ge=1, description="Total invocations including the first")
    min_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    jitter: bool = True

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }


class PollerConfig(BaseModel):
    """Configuration for JobStatusPoller behavior.

    Attributes:
        poll_interval: Seconds between status checks of one job
        fetch_retry: Retry policy wrapped around every status fetch
        completed_status_ttl: Seconds a terminal status stays queryable (None = forever)
        max_completed_entries: Upper bound of terminal statuses kept (oldest evicted first)
    """

    poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Interval in seconds between remote job status checks"
    )

    fetch_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3, min_delay=0.25, max_delay=2.0)
    )

    completed_status_ttl: Optional[float] = Field(
        default=3600.0,
        gt=0,
        description="Seconds a terminal status is retained after completion (None for no eviction)"
    )

    max_completed_entries: int = Field(
        default=10_000,
        ge=1,
        description="Maximum number of terminal statuses retained"
    )

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @classmethod
    def from_app_settings(cls, settings) -> "PollerConfig":
        return cls(
            poll_interval=settings.PRELAY_POLL_INTERVAL,
            fetch_retry=RetryPolicy(
                max_attempts=settings.PRELAY_POLL_FETCH_ATTEMPTS, min_delay=0.25, max_delay=2.0
            ),
            completed_status_ttl=settings.PRELAY_COMPLETED_STATUS_TTL,
            max_completed_entries=settings.PRELAY_MAX_COMPLETED_ENTRIES,
        )


class TransportConfig(BaseModel):
    """Configuration for the push notification transport."""

    stream_url: str = "http://localhost:3000/events"
    keep_alive_interval: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay: float = Field(default=1.0, ge=0)
    reconnect_max_delay: float = Field(default=30.0, ge=0)
    outbox_size: int = Field(default=1000, ge=1, description="Buffered outbound frames per connection")

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @classmethod
    def from_app_settings(cls, settings) -> "TransportConfig":
        return cls(
            stream_url=settings.PRELAY_PUSH_STREAM_URL,
            keep_alive_interval=settings.PRELAY_KEEP_ALIVE_INTERVAL,
            max_reconnect_attempts=settings.PRELAY_MAX_RECONNECT_ATTEMPTS,
        )


class WebhookQueueConfig(BaseModel):
    """Configuration for the webhook delivery queue.

    Retry delay after attempt `n` is
    `min(max_delay, base_delay * 2 ** n) + uniform(0, max_jitter)`.
    """

    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    max_jitter: float = Field(default=1.0, ge=0)
    history_limit: int = Field(default=10, ge=1, description="Delivery results kept per delivery id")
    user_agent: str = "prediction-relay-webhook/1.0"

    model_config = {
        "frozen": True,
        "extra": "forbid",
    }

    @classmethod
    def from_app_settings(cls, settings) -> "WebhookQueueConfig":
        return cls(
            base_delay=settings.PRELAY_WEBHOOK_BASE_DELAY,
            max_delay=settings.PRELAY_WEBHOOK_MAX_DELAY,
        )
