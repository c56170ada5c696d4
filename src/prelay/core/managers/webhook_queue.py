"""WebhookQueue: signed webhook deliveries with per-delivery retry.

A single worker task drains the pending table. Each round it attempts every
due delivery concurrently, records one `DeliveryResult` per attempt and
either drops the delivery (success or retries exhausted) or reschedules it
with capped exponential backoff. When nothing is due the worker sleeps until
the earliest scheduled attempt; a new enqueue wakes it early.
"""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from prelay.core.config import WebhookQueueConfig
from prelay.core.exceptions import ValidationError
from prelay.core.interfaces.http_client import HttpClientPort
from prelay.core.logging_config import correlation_id_var
from prelay.core.models.webhook import (
    DeliveryResult,
    QueuedWebhookDelivery,
    WebhookConfig,
    WebhookEvent,
)
from prelay.core.settings import logger
from prelay.core.utils.backoff import compute_backoff_delay
from prelay.core.utils.signing import canonical_json, generate_signature

MIN_SECRET_LENGTH = 32
MIN_TIMEOUT_MS = 1000


def _first_present(values: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if values.get(key) is not None:
            return values[key]
    return None


def validate_webhook_config(config: Union[WebhookConfig, Mapping[str, Any]]) -> List[str]:
    """Return every problem with a webhook config (empty list when valid).

    Accepts a `WebhookConfig` or a raw mapping using either the wire names
    (`retries`, `timeout`) or the field names (`max_retries`, `timeout_ms`).
    """
    if isinstance(config, WebhookConfig):
        url, secret = config.url, config.secret
        retries, timeout = config.max_retries, config.timeout_ms
    else:
        url, secret = config.get("url"), config.get("secret")
        retries = _first_present(config, "retries", "max_retries")
        timeout = _first_present(config, "timeout", "timeout_ms")

    errors: List[str] = []
    parsed = urlparse(url) if isinstance(url, str) else None
    if parsed is None or not parsed.scheme or not parsed.netloc:
        errors.append("Invalid webhook URL")
    if secret is not None and (not isinstance(secret, str) or len(secret) < MIN_SECRET_LENGTH):
        errors.append(f"Webhook secret must be at least {MIN_SECRET_LENGTH} characters long")
    if retries is not None and (isinstance(retries, bool) or not isinstance(retries, int) or retries < 0):
        errors.append("Retries must be a non-negative integer")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < MIN_TIMEOUT_MS
    ):
        errors.append(f"Timeout must be at least {MIN_TIMEOUT_MS}ms")
    return errors


class WebhookQueue:
    def __init__(
        self,
        http_client: HttpClientPort,
        config: Optional[WebhookQueueConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self._http = http_client
        self.config = config or WebhookQueueConfig()
        self._clock = clock
        self._rng = rng or random.random
        self._pending: Dict[str, QueuedWebhookDelivery] = {}
        self._history: Dict[str, Deque[DeliveryResult]] = {}
        self._worker: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    # ---------------- Public API -----------------
    def queue_webhook(
        self, config: Union[WebhookConfig, Mapping[str, Any]], event: WebhookEvent
    ) -> str:
        """Validate, enqueue and return the delivery id without waiting for delivery."""
        errors = validate_webhook_config(config)
        if errors:
            raise ValidationError(f"Invalid webhook configuration: {'; '.join(errors)}", errors=errors)
        if not isinstance(config, WebhookConfig):
            config = WebhookConfig.model_validate(dict(config))

        delivery = QueuedWebhookDelivery(id=f"wh_{uuid.uuid4().hex}", config=config, event=event)
        self._pending[delivery.id] = delivery
        self._history[delivery.id] = deque(maxlen=self.config.history_limit)
        logger.info(f"[webhook:queue] queued delivery_id={delivery.id} event={event.type} url={config.url}")

        self._idle.clear()
        self._wakeup.set()
        self._ensure_worker()
        return delivery.id

    def get_delivery_results(self, delivery_id: str) -> List[DeliveryResult]:
        return list(self._history.get(delivery_id, ()))

    def has_delivery(self, delivery_id: str) -> bool:
        return delivery_id in self._history

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def is_pending(self, delivery_id: str) -> bool:
        return delivery_id in self._pending

    async def wait_idle(self) -> None:
        """Wait until no delivery is pending."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        if self._pending:
            logger.warning(f"[webhook:shutdown] dropping {len(self._pending)} pending deliveries")
        self._pending.clear()
        self._idle.set()

    # ---------------- Worker -----------------
    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="webhook-worker")

    async def _run(self) -> None:
        while self._pending:
            self._wakeup.clear()
            now = self._clock()
            due = [d for d in self._pending.values() if d.is_due(now)]
            if not due:
                earliest = min(d.next_attempt_at for d in self._pending.values())
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.0, earliest - now))
                except asyncio.TimeoutError:
                    pass
                continue
            await asyncio.gather(*(self._attempt(delivery) for delivery in due))

        if self._worker is asyncio.current_task():
            self._worker = None
        self._idle.set()

    def _headers(self, delivery: QueuedWebhookDelivery, payload: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            "X-Webhook-Id": delivery.id,
            "X-Event-Type": delivery.event.type,
            "X-Timestamp": delivery.event.timestamp,
        }
        if delivery.config.secret:
            headers["X-Signature"] = generate_signature(payload, delivery.config.secret)
        return headers

    async def _attempt(self, delivery: QueuedWebhookDelivery) -> None:
        correlation_id_var.set(delivery.id)
        delivery.last_attempt_at = self._clock()
        payload = canonical_json(delivery.event.model_dump(mode="json"))

        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            resp = await self._http.post(
                delivery.config.url,
                data=payload.encode("utf-8"),
                timeout=delivery.config.timeout_ms / 1000,
                headers=self._headers(delivery, payload),
            )
            status_code = resp.get("status")
            if status_code is None or not 200 <= status_code < 300:
                error = f"HTTP {status_code}: {resp.get('reason') or ''}".rstrip()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__

        history = self._history.setdefault(delivery.id, deque(maxlen=self.config.history_limit))
        history.append(
            DeliveryResult(
                success=error is None,
                status_code=status_code,
                error=error,
                retry_count=delivery.retry_count,
            )
        )

        if error is None:
            self._pending.pop(delivery.id, None)
            logger.info(f"[webhook:attempt] delivered delivery_id={delivery.id} status={status_code}")
            return

        if delivery.retry_count < delivery.config.max_retries:
            delay = compute_backoff_delay(
                delivery.retry_count,
                min_delay=self.config.base_delay,
                max_delay=self.config.max_delay,
                jitter=self.config.max_jitter,
                rng=self._rng,
            )
            delivery.retry_count += 1
            delivery.next_attempt_at = self._clock() + delay
            logger.warning(
                f"[webhook:attempt] failed delivery_id={delivery.id} error={error} "
                f"retry={delivery.retry_count}/{delivery.config.max_retries} retry_in={delay:.3f}s"
            )
        else:
            self._pending.pop(delivery.id, None)
            logger.error(
                f"[webhook:attempt] giving up delivery_id={delivery.id} error={error} "
                f"attempts={delivery.retry_count + 1}"
            )
