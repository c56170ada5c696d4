from typing import Any, Dict, List, Optional, Protocol

from prelay.core.models.prediction import JobSnapshot, PredictionStatus


class JobApiPort(Protocol):
    """Remote job service (create / fetch / cancel).

    Implementations raise errors from `prelay.core.exceptions` so the retry
    engine can classify them.
    """

    async def create(
        self,
        version: str,
        input: Dict[str, Any],
        webhook: Optional[str] = None,
        webhook_events: Optional[List[str]] = None,
    ) -> JobSnapshot:  # pragma: no cover - protocol
        ...

    async def fetch_status(self, job_id: str) -> JobSnapshot:  # pragma: no cover - protocol
        ...

    async def cancel(self, job_id: str) -> JobSnapshot:  # pragma: no cover - protocol
        ...

    async def list(
        self,
        status: Optional[PredictionStatus] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> List[JobSnapshot]:  # pragma: no cover - protocol
        ...

    async def get_webhook_secret(self) -> str:  # pragma: no cover - protocol
        ...
