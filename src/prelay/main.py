# main.py
import uvicorn

from prelay.adapters.aiohttp_client_adapter import AioHttpClientAdapter
from prelay.adapters.job_api_http import HttpJobApiAdapter
from prelay.adapters.retry_tenacity import TenacityRetryAdapter
from prelay.adapters.web.fastapi import create_app
from prelay.core.config import PollerConfig, TransportConfig, WebhookQueueConfig
from prelay.core.logging_config import configure_logging
from prelay.core.managers.job_poller import JobStatusPoller
from prelay.core.managers.observers import NotificationObserver, WebhookObserver
from prelay.core.managers.prediction_manager import PredictionManager
from prelay.core.managers.push_transport import PushTransport
from prelay.core.managers.relay_services import RelayServices
from prelay.core.managers.webhook_queue import WebhookQueue
from prelay.core.settings import app_settings, logger


# main lives at the outermost layer (not in core)
# Instantiates all the concrete adapters
# Wires dependencies together
# Starts the application

def build_services(client) -> RelayServices:
    job_api = HttpJobApiAdapter(
        client,
        base_url=str(app_settings.PRELAY_JOB_API_URL),
        api_token=app_settings.PRELAY_JOB_API_TOKEN.get_secret_value(),
        timeout=app_settings.PRELAY_JOB_API_TIMEOUT,
    )
    transport = PushTransport(client, TransportConfig.from_app_settings(app_settings))
    webhook_queue = WebhookQueue(client, WebhookQueueConfig.from_app_settings(app_settings))
    webhook_observer = WebhookObserver(webhook_queue)

    poller = JobStatusPoller(
        job_api,
        config=PollerConfig.from_app_settings(app_settings),
        retry_port=TenacityRetryAdapter(),
        observers=[NotificationObserver(transport), webhook_observer],
    )
    predictions = PredictionManager(
        job_api, poller, webhooks=webhook_observer, retry_port=TenacityRetryAdapter()
    )
    return RelayServices(predictions, poller, transport, webhook_queue)


def main():
    # Central logging configuration BEFORE uvicorn starts so it adopts level/format
    configure_logging(app_settings.PRELAY_LOG_LEVEL)
    app_settings.print_settings(logger)

    app = create_app(services_factory=build_services, http_client=AioHttpClientAdapter())

    # Let uvicorn inherit existing logging (separate sinks & correlation ids)
    uvicorn.run(
        app,
        host=app_settings.PRELAY_SERVER_HOST,
        port=app_settings.PRELAY_SERVER_PORT,
        log_config=None,
        log_level=str(app_settings.PRELAY_LOG_LEVEL).lower(),
    )


if __name__ == "__main__":
    main()
