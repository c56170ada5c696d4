from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_WEBHOOK_RETRIES = 3
DEFAULT_WEBHOOK_TIMEOUT_MS = 10_000

# Event types sent to webhook receivers
EVENT_START = "start"
EVENT_OUTPUT = "output"
EVENT_LOGS = "logs"
EVENT_COMPLETED = "completed"


class WebhookConfig(BaseModel):
    """Delivery target supplied by the caller at enqueue time.

    Field constraints are checked by `validate_webhook_config` rather than by
    pydantic so callers get the full list of problems in one pass.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    secret: Optional[str] = None
    max_retries: int = Field(default=DEFAULT_WEBHOOK_RETRIES, alias="retries")
    timeout_ms: int = Field(default=DEFAULT_WEBHOOK_TIMEOUT_MS, alias="timeout")


class WebhookEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    data: Dict[str, Any] = Field(default_factory=dict)


class DeliveryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    retry_count: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QueuedWebhookDelivery(BaseModel):
    """Pending delivery. Owned and mutated only by the webhook queue."""

    id: str
    config: WebhookConfig
    event: WebhookEvent
    retry_count: int = 0
    last_attempt_at: Optional[float] = None  # queue clock (monotonic seconds)
    next_attempt_at: Optional[float] = None

    def is_due(self, now: float) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now
