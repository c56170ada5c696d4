"""JobStatusPoller: turns raw status snapshots into transition events.

Responsibilities:
1. Track each job with its own asyncio task, stored by job id.
2. Fetch the remote status at a fixed interval through the retry engine.
3. Compare against the poller's own last-known status and emit
   transition, progress and error events to observers, in detection order.
4. Stop a job's task once a terminal status is reached.
5. Evict terminal statuses according to the configured retention.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Set

from prelay.core.config import PollerConfig
from prelay.core.interfaces.job_api import JobApiPort
from prelay.core.interfaces.observers import JobEventObserver
from prelay.core.interfaces.retry import RetryPort
from prelay.core.logging_config import correlation_id_var
from prelay.core.models.events import JobErrorEvent, ProgressEvent, StatusTransitionEvent
from prelay.core.models.prediction import (
    JobSnapshot,
    PredictionStatus,
    is_allowed_transition,
    is_terminal,
)
from prelay.core.settings import logger

DEFAULT_PROCESSING_PROGRESS = 50

_PROGRESS_MARKER = re.compile(r"progress:\s*(\d{1,3})\s*%", re.IGNORECASE)


def estimate_progress(snapshot: JobSnapshot) -> int:
    """Progress percentage for a snapshot.

    While processing, the last `progress: N%` marker in the logs wins;
    without one the estimate is 50%.
    """
    if snapshot.status == PredictionStatus.succeeded:
        return 100
    if snapshot.status != PredictionStatus.processing:
        return 0
    markers = _PROGRESS_MARKER.findall(snapshot.logs or "")
    if markers:
        return min(100, int(markers[-1]))
    return DEFAULT_PROCESSING_PROGRESS


class JobStatusPoller:
    """Fixed-interval status poller with a per-job task table.

    Attributes:
        config: Immutable polling configuration (interval, fetch retry, retention)
    """

    def __init__(
        self,
        job_api: JobApiPort,
        config: Optional[PollerConfig] = None,
        retry_port: Optional[RetryPort] = None,
        observers: Optional[List[JobEventObserver]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api = job_api
        self.config = config or PollerConfig()
        self._retry = retry_port
        self._observers: List[JobEventObserver] = list(observers or [])
        self._sleep = sleep
        self._clock = clock

        self._statuses: Dict[str, PredictionStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[str] = set()
        # job id -> clock value at completion, oldest first
        self._completed: "OrderedDict[str, float]" = OrderedDict()
        self._shutdown = False

    def add_observer(self, observer: JobEventObserver) -> None:
        self._observers.append(observer)

    # ---------------- Read-only accessors -----------------
    def get_status(self, job_id: str) -> Optional[PredictionStatus]:
        """Last status the poller recorded for a job (None if unknown or evicted)."""
        self._evict_completed()
        return self._statuses.get(job_id)

    def is_tracking(self, job_id: str) -> bool:
        return job_id in self._tasks

    def tracked_jobs(self) -> List[str]:
        return list(self._tasks)

    # ---------------- Tracking lifecycle -----------------
    def start_tracking(
        self, job_id: str, initial_status: PredictionStatus = PredictionStatus.starting
    ) -> bool:
        """Begin polling a job. Returns False when the job is already tracked,
        already terminal, or the poller is shut down."""
        if self._shutdown:
            logger.warning(f"[poll:start] poller shut down, not tracking job_id={job_id}")
            return False
        if job_id in self._tasks:
            logger.debug(f"[poll:start] already tracking job_id={job_id}")
            return False

        self._evict_completed()
        known = self._statuses.get(job_id)
        if known is not None and is_terminal(known):
            logger.debug(f"[poll:start] job already terminal job_id={job_id} status={known}")
            return False
        if known is None:
            self._statuses[job_id] = initial_status

        logger.debug(f"[poll:start] scheduling poll loop job_id={job_id} interval={self.config.poll_interval}s")
        task = asyncio.create_task(self._poll_loop(job_id), name=f"poll:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_task_done(jid, t))
        return True

    async def stop_tracking(self, job_id: str) -> bool:
        task = self._tasks.pop(job_id, None)
        if task is None:
            return False
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        known = self._statuses.get(job_id)
        if known is not None and not is_terminal(known):
            self._statuses.pop(job_id, None)
        logger.info(f"[poll:stop] tracking stopped job_id={job_id}")
        return True

    async def shutdown(self) -> None:
        self._shutdown = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[poll:loop] poll loop crashed job_id={job_id} error={task.exception()!r}")

    # ---------------- Polling -----------------
    async def _poll_loop(self, job_id: str) -> None:
        """Check, then sleep until the next tick boundary.

        Boundaries that passed while a check was still running are skipped
        rather than queued, so at most one fetch per job is ever in flight.
        """
        correlation_id_var.set(job_id)
        interval = self.config.poll_interval
        next_tick = self._clock()
        while not self._shutdown:
            if await self.check_now(job_id):
                return

            next_tick += interval
            now = self._clock()
            if now > next_tick:
                skipped = int((now - next_tick) // interval) + 1
                logger.debug(f"[poll:tick] check overran, skipping {skipped} tick(s) job_id={job_id}")
                next_tick += skipped * interval
            await self._sleep(max(0.0, next_tick - now))

    async def check_now(self, job_id: str) -> bool:
        """Run one check for a job. Returns True once the job is terminal.

        A check is skipped when another one for the same job is in flight.
        """
        if job_id in self._in_flight:
            logger.debug(f"[poll:tick] previous check still running, skipping job_id={job_id}")
            return False

        self._in_flight.add(job_id)
        try:
            try:
                snapshot = await self._fetch(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Tracking survives fetch failures; the next tick tries again
                logger.warning(f"[poll:fetch] status fetch failed, keeping job tracked job_id={job_id} error={exc!r}")
                return False
            return await self._process_snapshot(job_id, snapshot)
        finally:
            self._in_flight.discard(job_id)

    async def _fetch(self, job_id: str) -> JobSnapshot:
        if self._retry:
            return await self._retry.execute(
                self._api.fetch_status, job_id, policy=self.config.fetch_retry
            )
        return await self._api.fetch_status(job_id)

    async def _process_snapshot(self, job_id: str, snapshot: JobSnapshot) -> bool:
        old = self._statuses.get(job_id, PredictionStatus.starting)
        new = snapshot.status
        if new == old:
            return is_terminal(new)

        if not is_allowed_transition(old, new):
            logger.warning(f"[poll:transition] ignoring non-monotonic status job_id={job_id} old={old} new={new}")
            return False

        self._statuses[job_id] = new
        event = StatusTransitionEvent(job_id=job_id, from_status=old, to_status=new)
        logger.info(f"[poll:transition] job_id={job_id} {old} -> {new}")
        await self._notify_status_changed(event, snapshot)

        if new == PredictionStatus.processing:
            await self._notify_progress(
                ProgressEvent(job_id=job_id, progress=estimate_progress(snapshot)), snapshot
            )

        if not is_terminal(new):
            return False

        self._record_completed(job_id)
        if new == PredictionStatus.failed and snapshot.error:
            await self._notify_job_error(JobErrorEvent(job_id=job_id, error=snapshot.error), snapshot)
        logger.debug(f"[poll:stop] terminal state reached job_id={job_id} status={new}")
        return True

    # ---------------- Retention -----------------
    def _record_completed(self, job_id: str) -> None:
        self._completed[job_id] = self._clock()
        self._completed.move_to_end(job_id)
        self._evict_completed()

    def _evict_completed(self) -> None:
        ttl = self.config.completed_status_ttl
        now = self._clock()
        while self._completed:
            job_id, finished_at = next(iter(self._completed.items()))
            expired = ttl is not None and now - finished_at > ttl
            if not expired and len(self._completed) <= self.config.max_completed_entries:
                break
            self._completed.popitem(last=False)
            self._statuses.pop(job_id, None)
            logger.debug(f"[poll:evict] dropped terminal status job_id={job_id}")

    # ---------------- Observer dispatch -----------------
    async def _notify_status_changed(self, event: StatusTransitionEvent, snapshot: JobSnapshot) -> None:
        for observer in self._observers:
            try:
                await observer.on_status_changed(event, snapshot)
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_status_changed failed observer={type(observer).__name__} "
                    f"job_id={event.job_id} error={exc}"
                )

    async def _notify_progress(self, event: ProgressEvent, snapshot: JobSnapshot) -> None:
        for observer in self._observers:
            try:
                await observer.on_progress(event, snapshot)
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_progress failed observer={type(observer).__name__} "
                    f"job_id={event.job_id} error={exc}"
                )

    async def _notify_job_error(self, event: JobErrorEvent, snapshot: JobSnapshot) -> None:
        for observer in self._observers:
            try:
                await observer.on_job_error(event, snapshot)
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_job_error failed observer={type(observer).__name__} "
                    f"job_id={event.job_id} error={exc}"
                )
