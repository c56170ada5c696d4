"""End-to-end flow: one prediction observed by the poller and fanned out to a
push subscriber and a signed webhook receiver.

Only the remote job API and the HTTP transport are faked; every core
component is the real one.
"""

import asyncio
import json

import pytest

from prelay.core.config import PollerConfig, RetryPolicy, TransportConfig, WebhookQueueConfig
from prelay.core.exceptions import ValidationError
from prelay.core.managers.job_poller import JobStatusPoller
from prelay.core.managers.observers import NotificationObserver, WebhookObserver
from prelay.core.managers.prediction_manager import PredictionManager
from prelay.core.managers.push_transport import PushTransport
from prelay.core.managers.relay_services import RelayServices
from prelay.core.managers.webhook_queue import WebhookQueue
from prelay.core.models.messages import METHOD_ERROR, METHOD_PROGRESS, METHOD_STATUS
from prelay.core.models.prediction import JobSnapshot, PredictionStatus
from prelay.core.utils.signing import verify_signature

SECRET = "e2e-secret-" + "x" * 32
HOOK_URL = "https://receiver.test/hooks"


class FakeJobApi:
    def __init__(self, script):
        self.script = list(script)
        self.created = []
        self.canceled = []
        self.created_status = PredictionStatus.starting

    async def create(self, version, input, webhook=None, webhook_events=None):
        self.created.append((version, input))
        return JobSnapshot(id="pred_1", status=self.created_status, version=version, input=input)

    async def fetch_status(self, job_id):
        return self.script.pop(0) if len(self.script) > 1 else self.script[0]

    async def cancel(self, job_id):
        self.canceled.append(job_id)
        return JobSnapshot(id=job_id, status=PredictionStatus.canceled)


class FakeStream:
    def __init__(self):
        self.lines = asyncio.Queue()

    async def __aiter__(self):
        while True:
            line = await self.lines.get()
            if line is None:
                return
            yield line

    async def close(self):
        self.lines.put_nowait(None)


class FakeHttpClient:
    def __init__(self):
        self.posts = []

    async def open_stream(self, url, headers=None):
        return FakeStream()

    async def post(self, url, json=None, timeout=None, headers=None, data=None):
        self.posts.append({"url": url, "headers": headers, "data": data})
        return {"status": 204, "reason": "No Content", "headers": {}, "body": ""}


def build(script):
    api = FakeJobApi(script)
    http = FakeHttpClient()
    transport = PushTransport(http, TransportConfig(stream_url="http://stream.test/events", keep_alive_interval=60.0))
    queue = WebhookQueue(http, WebhookQueueConfig(base_delay=0.001, max_jitter=0.0))
    webhooks = WebhookObserver(queue)
    poller = JobStatusPoller(
        api,
        config=PollerConfig(poll_interval=0.001, fetch_retry=RetryPolicy(max_attempts=1, jitter=False)),
        observers=[NotificationObserver(transport), webhooks],
    )
    manager = PredictionManager(api, poller, webhooks=webhooks)
    return RelayServices(manager, poller, transport, queue), api, http


async def wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_prediction_lifecycle_reaches_subscriber_and_webhook():
    services, api, http = build(
        [
            JobSnapshot(id="pred_1", status="starting"),
            JobSnapshot(id="pred_1", status="processing", logs="progress: 30%"),
            JobSnapshot(id="pred_1", status="succeeded", output=["https://cdn.test/out.png"]),
        ]
    )
    cid = await services.transport.connect()
    services.transport.subscribe(cid, "prediction://pred_1")

    snapshot = await services.predictions.create_prediction(
        "v1", {"prompt": "a cat"}, webhook={"url": HOOK_URL, "secret": SECRET}
    )
    assert snapshot.id == "pred_1"

    await wait_until(lambda: not services.poller.is_tracking("pred_1"))
    await asyncio.wait_for(services.webhooks.wait_idle(), 2.0)

    frames = services.transport.drain(cid)
    assert [f.data["method"] for f in frames] == [METHOD_STATUS, METHOD_PROGRESS, METHOD_STATUS]
    assert all(f.data["params"]["resource"]["uri"] == "prediction://pred_1" for f in frames)
    assert frames[1].data["params"]["progress"] == 30
    assert frames[2].data["params"]["status"] == "succeeded"

    assert [p["headers"]["X-Event-Type"] for p in http.posts] == ["start", "output", "completed"]
    for post in http.posts:
        assert verify_signature(post["data"], post["headers"]["X-Signature"], SECRET)
    completed = json.loads(http.posts[-1]["data"])
    assert completed["data"]["output"] == ["https://cdn.test/out.png"]

    await services.shutdown()
    assert services.transport.connections() == []


@pytest.mark.asyncio
async def test_failed_prediction_reports_error_notification():
    services, _, http = build(
        [
            JobSnapshot(id="pred_1", status="processing"),
            JobSnapshot(id="pred_1", status="failed", error="input image too large"),
        ]
    )
    cid = await services.transport.connect()
    services.transport.subscribe(cid, "prediction://pred_1")

    await services.predictions.create_prediction("v1", {})
    await wait_until(lambda: not services.poller.is_tracking("pred_1"))

    methods = [f.data["method"] for f in services.transport.drain(cid)]
    assert methods == [METHOD_STATUS, METHOD_PROGRESS, METHOD_STATUS, METHOD_ERROR]
    assert http.posts == []
    await services.shutdown()


@pytest.mark.asyncio
async def test_invalid_webhook_rejects_prediction_before_creation():
    services, api, _ = build([JobSnapshot(id="pred_1", status="starting")])

    with pytest.raises(ValidationError) as excinfo:
        await services.predictions.create_prediction("v1", {}, webhook={"url": "nope", "timeout": 10})

    assert len(excinfo.value.errors) == 2
    assert api.created == []
    assert services.poller.tracked_jobs() == []
    await services.shutdown()


@pytest.mark.asyncio
async def test_webhook_event_filter_limits_deliveries():
    services, _, http = build(
        [JobSnapshot(id="pred_1", status="processing"), JobSnapshot(id="pred_1", status="canceled")]
    )

    await services.predictions.create_prediction(
        "v1", {}, webhook={"url": HOOK_URL}, webhook_events=["completed"]
    )
    await wait_until(lambda: not services.poller.is_tracking("pred_1"))
    await asyncio.wait_for(services.webhooks.wait_idle(), 2.0)

    assert [p["headers"]["X-Event-Type"] for p in http.posts] == ["completed"]
    assert "X-Signature" not in http.posts[0]["headers"]
    await services.shutdown()


@pytest.mark.asyncio
async def test_cancel_is_forwarded_and_reported_by_poller():
    services, api, _ = build([JobSnapshot(id="pred_1", status="processing")])
    cid = await services.transport.connect()
    services.transport.subscribe(cid, "prediction://pred_1")

    await services.predictions.create_prediction("v1", {})
    await wait_until(lambda: services.poller.get_status("pred_1") == PredictionStatus.processing)
    await services.predictions.cancel_prediction("pred_1")
    api.script = [JobSnapshot(id="pred_1", status="canceled")]
    await wait_until(lambda: not services.poller.is_tracking("pred_1"))

    assert api.canceled == ["pred_1"]
    statuses = [f.data["params"].get("status") for f in services.transport.drain(cid) if f.data["method"] == METHOD_STATUS]
    assert statuses == ["processing", "canceled"]
    await services.shutdown()


@pytest.mark.asyncio
async def test_prediction_finished_at_creation_is_not_tracked():
    services, api, http = build([JobSnapshot(id="pred_1", status="succeeded")])
    api.created_status = PredictionStatus.succeeded

    snapshot = await services.predictions.create_prediction("v1", {}, webhook={"url": HOOK_URL})

    assert snapshot.is_in_terminal_state()
    assert services.poller.tracked_jobs() == []
    assert services.webhooks.pending_ids() == []
    assert http.posts == []
    await services.shutdown()
