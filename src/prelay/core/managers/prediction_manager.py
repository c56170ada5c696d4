# prelay/core/managers/prediction_manager.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from prelay.core.exceptions import ValidationError
from prelay.core.interfaces.job_api import JobApiPort
from prelay.core.interfaces.retry import RetryPort
from prelay.core.managers.job_poller import JobStatusPoller
from prelay.core.managers.observers import WebhookObserver
from prelay.core.managers.webhook_queue import validate_webhook_config
from prelay.core.models.prediction import JobSnapshot, PredictionStatus
from prelay.core.models.webhook import WebhookConfig
from prelay.core.settings import logger


class PredictionManager:
    """Entry point for callers: creates predictions and hands them to the poller.

    Creation is never retried (it is not idempotent). Reads go through the
    retry port when one is configured.
    """

    def __init__(
        self,
        job_api: JobApiPort,
        poller: JobStatusPoller,
        webhooks: Optional[WebhookObserver] = None,
        retry_port: Optional[RetryPort] = None,
    ) -> None:
        self._api = job_api
        self._poller = poller
        self._webhooks = webhooks
        self._retry = retry_port

    async def create_prediction(
        self,
        version: str,
        input: Dict[str, Any],
        webhook: Union[WebhookConfig, Mapping[str, Any], None] = None,
        webhook_events: Optional[Iterable[str]] = None,
    ) -> JobSnapshot:
        config: Optional[WebhookConfig] = None
        if webhook is not None:
            errors = validate_webhook_config(webhook)
            if errors:
                raise ValidationError(f"Invalid webhook configuration: {'; '.join(errors)}", errors=errors)
            config = webhook if isinstance(webhook, WebhookConfig) else WebhookConfig.model_validate(dict(webhook))
            if self._webhooks is None:
                raise ValidationError("Webhook delivery is not enabled", field="webhook")

        snapshot = await self._api.create(version, input)
        logger.info(f"[predictions:create] id={snapshot.id} status={snapshot.status} webhook={bool(config)}")

        if snapshot.is_in_terminal_state():
            logger.debug(f"[predictions:create] already terminal, not tracking id={snapshot.id}")
            return snapshot

        if config is not None:
            self._webhooks.register(snapshot.id, config, webhook_events, snapshot=snapshot)
        self._poller.start_tracking(snapshot.id, initial_status=snapshot.status)
        return snapshot

    async def get_prediction(self, prediction_id: str) -> JobSnapshot:
        if self._retry:
            return await self._retry.execute(self._api.fetch_status, prediction_id)
        return await self._api.fetch_status(prediction_id)

    async def list_predictions(
        self,
        status: Optional[PredictionStatus] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> List[JobSnapshot]:
        if self._retry:
            return await self._retry.execute(self._api.list, status, limit, cursor)
        return await self._api.list(status, limit, cursor)

    async def cancel_prediction(self, prediction_id: str) -> JobSnapshot:
        """Ask the remote service to cancel; the poller reports the outcome."""
        snapshot = await self._api.cancel(prediction_id)
        logger.info(f"[predictions:cancel] id={prediction_id} status={snapshot.status}")
        return snapshot
