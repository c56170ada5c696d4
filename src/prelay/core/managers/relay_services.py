from prelay.core.managers.job_poller import JobStatusPoller
from prelay.core.managers.prediction_manager import PredictionManager
from prelay.core.managers.push_transport import PushTransport
from prelay.core.managers.webhook_queue import WebhookQueue
from prelay.core.settings import logger


class RelayServices:
    """The long-lived components of one relay instance, wired by the composition root."""

    def __init__(
        self,
        predictions: PredictionManager,
        poller: JobStatusPoller,
        transport: PushTransport,
        webhooks: WebhookQueue,
    ) -> None:
        self.predictions = predictions
        self.poller = poller
        self.transport = transport
        self.webhooks = webhooks

    async def shutdown(self) -> None:
        """Stop polling first so no new events reach the delivery channels."""
        logger.info("[relay:shutdown] stopping poller, push transport and webhook queue")
        await self.poller.shutdown()
        await self.transport.disconnect(reason="server shutdown")
        await self.webhooks.shutdown()
