"""Observer protocols for job events and push transport lifecycle.

Observers decouple delivery side effects (push notifications, webhook
enqueueing, alerting) from the components that detect the events. Observer
failures are logged by the emitting component and never abort it.
"""

from typing import Any, Protocol

from prelay.core.models.events import JobErrorEvent, ProgressEvent, StatusTransitionEvent
from prelay.core.models.prediction import JobSnapshot


class JobEventObserver(Protocol):
    """Observer protocol for events detected by the job status poller.

    Calls for one job arrive strictly in detection order:
    - on_status_changed: after the poller recorded a new status
    - on_progress: after a transition into `processing`
    - on_job_error: after a transition into `failed` with an error message
    """

    async def on_status_changed(
        self,
        event: StatusTransitionEvent,
        snapshot: JobSnapshot,
    ) -> None:
        """Called once per detected transition.

        Args:
            event: The transition (from_status != to_status)
            snapshot: Snapshot the transition was detected in
        """
        ...

    async def on_progress(
        self,
        event: ProgressEvent,
        snapshot: JobSnapshot,
    ) -> None:
        ...

    async def on_job_error(
        self,
        event: JobErrorEvent,
        snapshot: JobSnapshot,
    ) -> None:
        ...


class TransportObserver(Protocol):
    """Observer protocol for push transport lifecycle events."""

    async def on_connected(self, connection_id: str) -> None:
        """Connection (re)opened successfully."""
        ...

    async def on_message(self, connection_id: str, message: Any) -> None:
        """Inbound JSON-RPC message parsed from a connection's stream."""
        ...

    async def on_error(self, connection_id: str, error: Exception) -> None:
        """Connection permanently closed after exhausting reconnection attempts."""
        ...

    async def on_disconnected(self) -> None:
        """Last remaining connection went away."""
        ...
