"""Domain events emitted by the job status poller.

Events are immutable value objects. They exist only for the duration of
dispatch and are the only thing passed between components.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, model_validator

from prelay.core.models.prediction import PredictionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusTransitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    from_status: PredictionStatus
    to_status: PredictionStatus
    timestamp: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_distinct(self) -> "StatusTransitionEvent":
        if self.from_status == self.to_status:
            raise ValueError(
                f"transition must change status (got {self.from_status} -> {self.to_status})"
            )
        return self


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    progress: int = Field(ge=0, le=100)
    timestamp: datetime = Field(default_factory=_utcnow)


class JobErrorEvent(BaseModel):
    """A job reached `failed` with an error message. Reported, never raised."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    error: str
    timestamp: datetime = Field(default_factory=_utcnow)
