"""Tests for JobStatusPoller.

A scripted fake job API returns one snapshot per fetch; a recording observer
captures emitted events in order. Poll intervals are a millisecond so whole
job lifecycles run in a few event-loop iterations.
"""

import asyncio

import pytest

from prelay.adapters.retry_tenacity import TenacityRetryAdapter
from prelay.core.config import PollerConfig, RetryPolicy
from prelay.core.exceptions import TransientNetworkError
from prelay.core.managers.job_poller import JobStatusPoller, estimate_progress
from prelay.core.models.prediction import JobSnapshot, PredictionStatus


# --- Test Fixtures ---

def snap(status, job_id="pred_1", **extra):
    return JobSnapshot(id=job_id, status=status, **extra)


class ScriptedJobApi:
    """Returns scripted snapshots (or raises scripted errors) per job id.

    The last script entry repeats once the script is exhausted.
    """

    def __init__(self, scripts):
        self.scripts = {job_id: list(items) for job_id, items in scripts.items()}
        self.fetches = {job_id: 0 for job_id in scripts}

    async def fetch_status(self, job_id):
        self.fetches[job_id] += 1
        script = self.scripts[job_id]
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingObserver:
    def __init__(self):
        self.events = []

    async def on_status_changed(self, event, snapshot):
        self.events.append(("status", event.job_id, event.from_status, event.to_status))

    async def on_progress(self, event, snapshot):
        self.events.append(("progress", event.job_id, event.progress))

    async def on_job_error(self, event, snapshot):
        self.events.append(("error", event.job_id, event.error))


class BrokenObserver:
    async def on_status_changed(self, event, snapshot):
        raise RuntimeError("observer exploded")

    async def on_progress(self, event, snapshot):
        raise RuntimeError("observer exploded")

    async def on_job_error(self, event, snapshot):
        raise RuntimeError("observer exploded")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def test_config():
    return PollerConfig(
        poll_interval=0.001,
        fetch_retry=RetryPolicy(max_attempts=1, min_delay=0.0, jitter=False),
    )


@pytest.fixture
def observer():
    return RecordingObserver()


# --- Transitions ---

class TestTransitions:
    @pytest.mark.asyncio
    async def test_lifecycle_emits_each_transition_once_and_stops(self, test_config, observer):
        api = ScriptedJobApi(
            {
                "pred_1": [
                    snap("starting"),
                    snap("starting"),
                    snap("processing"),
                    snap("processing"),
                    snap("succeeded", output=["done"]),
                ]
            }
        )
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        assert poller.start_tracking("pred_1") is True
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert observer.events == [
            ("status", "pred_1", PredictionStatus.starting, PredictionStatus.processing),
            ("progress", "pred_1", 50),
            ("status", "pred_1", PredictionStatus.processing, PredictionStatus.succeeded),
        ]
        assert api.fetches["pred_1"] == 5
        assert poller.get_status("pred_1") == PredictionStatus.succeeded

    @pytest.mark.asyncio
    async def test_no_fetch_after_terminal_status(self, test_config, observer):
        api = ScriptedJobApi({"pred_1": [snap("canceled")]})
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))
        await asyncio.sleep(0.01)

        assert api.fetches["pred_1"] == 1
        assert observer.events == [
            ("status", "pred_1", PredictionStatus.starting, PredictionStatus.canceled),
        ]

    @pytest.mark.asyncio
    async def test_failed_job_reports_error_after_transition(self, test_config, observer):
        api = ScriptedJobApi({"pred_1": [snap("processing"), snap("failed", error="CUDA out of memory")]})
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert observer.events[-2:] == [
            ("status", "pred_1", PredictionStatus.processing, PredictionStatus.failed),
            ("error", "pred_1", "CUDA out of memory"),
        ]

    @pytest.mark.asyncio
    async def test_non_monotonic_status_is_ignored(self, test_config, observer):
        api = ScriptedJobApi(
            {"pred_1": [snap("processing"), snap("starting"), snap("processing"), snap("succeeded")]}
        )
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        statuses = [e[2:] for e in observer.events if e[0] == "status"]
        assert statuses == [
            (PredictionStatus.starting, PredictionStatus.processing),
            (PredictionStatus.processing, PredictionStatus.succeeded),
        ]

    @pytest.mark.asyncio
    async def test_initial_status_suppresses_first_transition(self, test_config, observer):
        api = ScriptedJobApi({"pred_1": [snap("processing"), snap("succeeded")]})
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1", initial_status=PredictionStatus.processing)
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert observer.events == [
            ("status", "pred_1", PredictionStatus.processing, PredictionStatus.succeeded),
        ]

    @pytest.mark.asyncio
    async def test_jobs_are_tracked_independently(self, test_config, observer):
        api = ScriptedJobApi(
            {
                "pred_1": [snap("succeeded", job_id="pred_1")],
                "pred_2": [snap("processing", job_id="pred_2"), snap("failed", job_id="pred_2")],
            }
        )
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        poller.start_tracking("pred_2")
        await wait_until(lambda: not poller.tracked_jobs())

        assert poller.get_status("pred_1") == PredictionStatus.succeeded
        assert poller.get_status("pred_2") == PredictionStatus.failed


# --- Progress ---

class TestProgress:
    def test_last_marker_in_logs_wins(self):
        logs = "loading weights\nprogress: 10%\nstep\nprogress: 42%\n"
        assert estimate_progress(snap("processing", logs=logs)) == 42

    def test_default_when_no_marker(self):
        assert estimate_progress(snap("processing", logs="warming up")) == 50
        assert estimate_progress(snap("processing")) == 50

    def test_marker_is_clamped_to_100(self):
        assert estimate_progress(snap("processing", logs="progress: 250%")) == 100

    @pytest.mark.parametrize(
        "status,expected",
        [("starting", 0), ("succeeded", 100), ("failed", 0), ("canceled", 0)],
    )
    def test_non_processing_statuses(self, status, expected):
        assert estimate_progress(snap(status, logs="progress: 70%")) == expected

    @pytest.mark.asyncio
    async def test_progress_event_uses_log_marker(self, test_config, observer):
        api = ScriptedJobApi({"pred_1": [snap("processing", logs="progress: 30%"), snap("succeeded")]})
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert ("progress", "pred_1", 30) in observer.events


# --- Failures ---

class TestFailures:
    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_job_tracked(self, test_config, observer):
        api = ScriptedJobApi(
            {"pred_1": [TransientNetworkError("reset"), TransientNetworkError("reset"), snap("succeeded")]}
        )
        poller = JobStatusPoller(api, config=test_config, observers=[observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert api.fetches["pred_1"] == 3
        assert observer.events == [
            ("status", "pred_1", PredictionStatus.starting, PredictionStatus.succeeded),
        ]

    @pytest.mark.asyncio
    async def test_fetch_is_retried_within_one_tick(self, observer):
        config = PollerConfig(
            poll_interval=10.0,
            fetch_retry=RetryPolicy(max_attempts=3, min_delay=0.0, max_delay=0.0, jitter=False),
        )
        api = ScriptedJobApi({"pred_1": [TransientNetworkError("reset"), snap("succeeded")]})
        poller = JobStatusPoller(api, config=config, retry_port=TenacityRetryAdapter(), observers=[observer])

        poller.start_tracking("pred_1")
        # interval is 10s, so only an in-tick retry can reach the terminal status
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert api.fetches["pred_1"] == 2
        assert poller.get_status("pred_1") == PredictionStatus.succeeded

    @pytest.mark.asyncio
    async def test_observer_failure_does_not_stop_other_observers(self, test_config, observer):
        api = ScriptedJobApi({"pred_1": [snap("processing"), snap("succeeded")]})
        poller = JobStatusPoller(api, config=test_config, observers=[BrokenObserver(), observer])

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert [e[0] for e in observer.events] == ["status", "progress", "status"]

    @pytest.mark.asyncio
    async def test_check_is_skipped_while_previous_one_is_in_flight(self, test_config):
        gate = asyncio.Event()

        class SlowApi:
            fetches = 0

            async def fetch_status(self, job_id):
                SlowApi.fetches += 1
                await gate.wait()
                return snap("processing")

        poller = JobStatusPoller(SlowApi(), config=test_config)
        first = asyncio.create_task(poller.check_now("pred_1"))
        await asyncio.sleep(0)

        assert await poller.check_now("pred_1") is False
        gate.set()
        assert await first is False
        assert SlowApi.fetches == 1


# --- Lifecycle & retention ---

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_tracking_twice_is_a_noop(self, test_config):
        api = ScriptedJobApi({"pred_1": [snap("processing")]})
        poller = JobStatusPoller(api, config=test_config)

        assert poller.start_tracking("pred_1") is True
        assert poller.start_tracking("pred_1") is False
        assert poller.tracked_jobs() == ["pred_1"]
        await poller.shutdown()

    @pytest.mark.asyncio
    async def test_terminal_job_is_not_tracked_again(self, test_config):
        api = ScriptedJobApi({"pred_1": [snap("succeeded")]})
        poller = JobStatusPoller(api, config=test_config)

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))

        assert poller.start_tracking("pred_1") is False

    @pytest.mark.asyncio
    async def test_stop_tracking_cancels_the_loop(self, test_config):
        api = ScriptedJobApi({"pred_1": [snap("processing")]})
        poller = JobStatusPoller(api, config=test_config)

        poller.start_tracking("pred_1")
        await wait_until(lambda: poller.get_status("pred_1") == PredictionStatus.processing)

        assert await poller.stop_tracking("pred_1") is True
        assert not poller.is_tracking("pred_1")
        assert poller.get_status("pred_1") is None
        assert await poller.stop_tracking("pred_1") is False

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything_and_rejects_new_jobs(self, test_config):
        api = ScriptedJobApi({"pred_1": [snap("processing")], "pred_2": [snap("processing")]})
        poller = JobStatusPoller(api, config=test_config)
        poller.start_tracking("pred_1")
        poller.start_tracking("pred_2")

        await poller.shutdown()

        assert poller.tracked_jobs() == []
        assert poller.start_tracking("pred_3") is False

    @pytest.mark.asyncio
    async def test_terminal_statuses_expire_after_ttl(self):
        clock = FakeClock()
        config = PollerConfig(poll_interval=0.001, completed_status_ttl=60.0)
        api = ScriptedJobApi({"pred_1": [snap("succeeded")]})
        poller = JobStatusPoller(api, config=config, clock=clock)

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))
        assert poller.get_status("pred_1") == PredictionStatus.succeeded

        clock.now += 61.0
        assert poller.get_status("pred_1") is None

    @pytest.mark.asyncio
    async def test_oldest_terminal_status_is_evicted_beyond_capacity(self):
        config = PollerConfig(poll_interval=0.001, max_completed_entries=1)
        api = ScriptedJobApi(
            {"pred_1": [snap("succeeded", job_id="pred_1")], "pred_2": [snap("failed", job_id="pred_2")]}
        )
        poller = JobStatusPoller(api, config=config)

        poller.start_tracking("pred_1")
        await wait_until(lambda: not poller.is_tracking("pred_1"))
        poller.start_tracking("pred_2")
        await wait_until(lambda: not poller.is_tracking("pred_2"))

        assert poller.get_status("pred_1") is None
        assert poller.get_status("pred_2") == PredictionStatus.failed
