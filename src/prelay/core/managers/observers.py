"""Concrete job event observers bridging the poller to delivery channels.

This module provides the two delivery side effects of a detected event:
- Push notifications to subscribed connections
- Webhook deliveries to the target registered with a prediction
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from prelay.core.managers.push_transport import PushTransport
from prelay.core.managers.webhook_queue import WebhookQueue
from prelay.core.models.events import JobErrorEvent, ProgressEvent, StatusTransitionEvent
from prelay.core.models.messages import (
    create_error_notification,
    create_progress_notification,
    create_status_notification,
)
from prelay.core.models.prediction import JobSnapshot, PredictionStatus, is_terminal
from prelay.core.models.webhook import (
    EVENT_COMPLETED,
    EVENT_LOGS,
    EVENT_OUTPUT,
    EVENT_START,
    WebhookConfig,
    WebhookEvent,
)


logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_EVENTS: FrozenSet[str] = frozenset({EVENT_START, EVENT_OUTPUT, EVENT_COMPLETED})


class NotificationObserver:
    """Turns job events into JSON-RPC notifications on the push transport.

    Only connections subscribed to `prediction://<id>` receive them.
    """

    def __init__(self, transport: PushTransport):
        self._transport = transport

    async def on_status_changed(
        self,
        event: StatusTransitionEvent,
        snapshot: JobSnapshot,
    ) -> None:
        delivered = self._transport.notify(create_status_notification(snapshot, event.from_status))
        logger.debug(
            f"[observer:push] status job_id={event.job_id} {event.from_status} -> {event.to_status} "
            f"delivered={delivered}"
        )

    async def on_progress(
        self,
        event: ProgressEvent,
        snapshot: JobSnapshot,
    ) -> None:
        delivered = self._transport.notify(create_progress_notification(snapshot, event.progress))
        logger.debug(f"[observer:push] progress job_id={event.job_id} progress={event.progress} delivered={delivered}")

    async def on_job_error(
        self,
        event: JobErrorEvent,
        snapshot: JobSnapshot,
    ) -> None:
        delivered = self._transport.notify(create_error_notification(snapshot, event.error))
        logger.debug(f"[observer:push] error job_id={event.job_id} delivered={delivered}")


class _Registration:
    def __init__(self, config: WebhookConfig, events: FrozenSet[str]):
        self.config = config
        self.events = events


class WebhookObserver:
    """Enqueues webhook deliveries for predictions that registered a target.

    Event types: `start` when registered, `output` on entering processing,
    `logs` on progress (opt-in) and `completed` on any terminal status. The
    registration is dropped after `completed`.

    A failed prediction reaches receivers only as `completed`, whose payload
    carries `status: failed` and the error, so `on_job_error` sends nothing.
    """

    def __init__(self, queue: WebhookQueue):
        self._queue = queue
        self._registrations: Dict[str, _Registration] = {}

    def register(
        self,
        job_id: str,
        config: WebhookConfig,
        events: Optional[Iterable[str]] = None,
        snapshot: Optional[JobSnapshot] = None,
    ) -> None:
        """Register a webhook target; sends `start` right away when a snapshot is given."""
        registration = _Registration(
            config, frozenset(events) if events is not None else DEFAULT_WEBHOOK_EVENTS
        )
        self._registrations[job_id] = registration
        logger.debug(f"[observer:webhook] registered job_id={job_id} events={sorted(registration.events)}")
        if snapshot is not None and snapshot.status == PredictionStatus.starting:
            self._enqueue(job_id, EVENT_START, snapshot)

    def unregister(self, job_id: str) -> bool:
        return self._registrations.pop(job_id, None) is not None

    def is_registered(self, job_id: str) -> bool:
        return job_id in self._registrations

    def _enqueue(self, job_id: str, event_type: str, snapshot: JobSnapshot) -> Optional[str]:
        registration = self._registrations.get(job_id)
        if registration is None or event_type not in registration.events:
            return None
        delivery_id = self._queue.queue_webhook(
            registration.config,
            WebhookEvent(type=event_type, data=snapshot.model_dump(mode="json")),
        )
        logger.debug(f"[observer:webhook] queued job_id={job_id} event={event_type} delivery_id={delivery_id}")
        return delivery_id

    async def on_status_changed(
        self,
        event: StatusTransitionEvent,
        snapshot: JobSnapshot,
    ) -> None:
        if event.to_status == PredictionStatus.processing:
            self._enqueue(event.job_id, EVENT_OUTPUT, snapshot)
        elif is_terminal(event.to_status):
            self._enqueue(event.job_id, EVENT_COMPLETED, snapshot)
            self.unregister(event.job_id)

    async def on_progress(
        self,
        event: ProgressEvent,
        snapshot: JobSnapshot,
    ) -> None:
        self._enqueue(event.job_id, EVENT_LOGS, snapshot)

    async def on_job_error(
        self,
        event: JobErrorEvent,
        snapshot: JobSnapshot,
    ) -> None:
        """No-op: the `completed` delivery already carries the error."""
