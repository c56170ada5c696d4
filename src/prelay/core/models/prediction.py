from enum import StrEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, computed_field


class PredictionStatus(StrEnum):
    starting = "starting"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"


TERMINAL_STATUSES = frozenset(
    {PredictionStatus.succeeded, PredictionStatus.failed, PredictionStatus.canceled}
)

# starting may jump straight to a terminal status for very short jobs
ALLOWED_TRANSITIONS: Dict[PredictionStatus, frozenset] = {
    PredictionStatus.starting: frozenset({PredictionStatus.processing}) | TERMINAL_STATUSES,
    PredictionStatus.processing: TERMINAL_STATUSES,
    PredictionStatus.succeeded: frozenset(),
    PredictionStatus.failed: frozenset(),
    PredictionStatus.canceled: frozenset(),
}


def is_terminal(status: PredictionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_allowed_transition(old: PredictionStatus, new: PredictionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


def resource_uri(job_id: str) -> str:
    """Push subscription URI for a job."""
    return f"prediction://{job_id}"


class JobSnapshot(BaseModel):
    """Raw status snapshot of a remote job as returned by the job API.

    Notes:
    - The snapshot is only a transport object. The poller keeps its own
      last-known status per job id and never trusts `status` from copies
      arriving through other channels.
    - Timestamps are kept as the strings the remote service reports.
    - Unknown fields are preserved so notifications can forward them.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    status: PredictionStatus
    version: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    output: Any = None
    error: Optional[str] = None
    logs: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    urls: Optional[Dict[str, str]] = None
    metrics: Optional[Dict[str, float]] = None

    @computed_field
    @property
    def stream_url(self) -> Optional[str]:
        return self.urls.get("stream") if self.urls else None

    def is_in_terminal_state(self) -> bool:
        return is_terminal(self.status)
