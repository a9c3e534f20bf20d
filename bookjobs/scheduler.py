"""Dispatch loop bridging the request queue to workers.

The loop wakes on a signal (new submission, retry becoming due, worker
finishing) or on the poll interval, then starts workers while the number of
active workers is below ``max_concurrent_requests``. It never awaits a worker.
``started`` is published at dispatch, in the same locked step that marks the
request in progress.
"""
import asyncio
import functools
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from . import metrics
from .config import EngineConfig
from .events import EventBus
from .providers import ProviderAdapter
from .queue import RequestQueue
from .retry import RetryPolicy
from .schemas import Event, EventType, JobRecord, RequestStatus
from .store import JobStore
from .worker import Worker

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        store: JobStore,
        queue: RequestQueue,
        bus: EventBus,
        provider: ProviderAdapter,
        retry_policy: RetryPolicy,
        config: EngineConfig,
        result_sink: Optional[Callable[[JobRecord], Any]] = None,
        on_cleanup: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.queue = queue
        self.bus = bus
        self.provider = provider
        self.retry_policy = retry_policy
        self.config = config
        self.result_sink = result_sink
        self.on_cleanup = on_cleanup

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._active: Dict[str, asyncio.Task] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._running = False
        self._accepting = True
        self._queue_empty_sent = True
        self._last_cleanup = time.monotonic()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    def start(self) -> None:
        if self._running:
            return
        if not self._accepting:
            raise RuntimeError("scheduler has been shut down")
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._wakeup = asyncio.Event()
        self._running = True
        self._task = self._loop.create_task(self.run(), name="bookjobs-scheduler")
        logger.info("scheduler started (max_concurrent_requests=%d)", self.config.max_concurrent_requests)

    def wake(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or self._wakeup is None:
            return
        if threading.get_ident() == self._loop_thread:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    async def run(self) -> None:
        try:
            while self._running:
                self._wakeup.clear()
                self.dispatch_ready()
                self._maybe_cleanup()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            pass
        logger.debug("scheduler loop exited")

    def dispatch_ready(self) -> int:
        """Start workers for queued requests while slots are free; returns how many started."""
        started = 0
        with self.store.lock:
            while self._running and len(self._active) < self.config.max_concurrent_requests:
                record = self.queue.dequeue_next()
                if record is None:
                    break
                if record.status != RequestStatus.QUEUED:
                    continue
                record.status = RequestStatus.IN_PROGRESS
                record.attempts += 1
                record.started_at = time.time()
                # the worker keeps the adapter it was dispatched with
                worker = Worker(self, record.id, self.provider)
                task = self._loop.create_task(worker.run(), name=f"bookjobs-worker-{record.id}")
                self._active[record.id] = task
                task.add_done_callback(functools.partial(self._on_worker_done, record.id))
                metrics.requests_dispatched_total.inc()
                self.publish(
                    record, EventType.STARTED, {"attempt": record.attempts, "max_attempts": record.max_attempts}
                )
                logger.debug(
                    "dispatched %s (%s, attempt %d/%d)",
                    record.id,
                    record.priority.value,
                    record.attempts,
                    record.max_attempts,
                )
                started += 1
            self._update_gauges()
            self._check_queue_empty()
        return started

    def _on_worker_done(self, request_id: str, task: asyncio.Task) -> None:
        with self.store.lock:
            if self._active.get(request_id) is task:
                del self._active[request_id]
            self._update_gauges()
            self._check_queue_empty()
        if not task.cancelled() and task.exception() is not None:
            logger.error("worker task for %s ended with %r", request_id, task.exception())
        self.wake()

    def enqueue(self, record: JobRecord) -> None:
        with self.store.lock:
            self.queue.enqueue(record)
            self._queue_empty_sent = False
            self._update_gauges()
        self.wake()

    def schedule_retry(self, record: JobRecord, delay: float) -> None:
        """Put a failed request back to ``queued`` and re-enqueue it after ``delay``."""
        with self.store.lock:
            record.status = RequestStatus.QUEUED
            self._queue_empty_sent = False
            self._delayed[record.id] = self._loop.call_later(delay, self._requeue, record.id)
            self.publish(
                record,
                EventType.QUEUED,
                {"retry": True, "attempt": record.attempts, "delay": delay, "priority": record.priority.value},
            )

    def _requeue(self, request_id: str) -> None:
        with self.store.lock:
            if self._delayed.pop(request_id, None) is None:
                return
            record = self.store.get(request_id)
            if record is None or record.status != RequestStatus.QUEUED:
                return
            self.queue.enqueue(record)
            self._update_gauges()
        self.wake()

    def cancel(self, request_id: str, reason: str = "cancelled") -> bool:
        with self.store.lock:
            record = self.store.get(request_id)
            if record is None or record.status.is_terminal:
                return False
            self.cancel_record(record, reason=reason)
            self._check_queue_empty()
        return True

    def cancel_record(self, record: JobRecord, reason: str) -> None:
        # callers hold the store lock and have checked the record is not terminal
        previous = record.status
        if previous == RequestStatus.QUEUED:
            self.queue.remove(record.id)
            handle = self._delayed.pop(record.id, None)
            if handle is not None:
                handle.cancel()
        else:
            # the provider call in flight cannot be interrupted; its outcome is discarded
            record.cancel_requested = True
        record.status = RequestStatus.CANCELLED
        record.completed_at = time.time()
        metrics.requests_cancelled_total.inc()
        self._update_gauges()
        logger.debug("cancelled %s (was %s, reason=%s)", record.id, previous.value, reason)
        self.publish(record, EventType.CANCELLED, {"reason": reason, "previous_status": previous.value})

    def publish(self, record: Optional[JobRecord], event_type: EventType, payload: Optional[dict] = None) -> None:
        event = Event(
            type=event_type,
            request_id=record.id if record is not None else None,
            batch_id=record.tags.batch_id if record is not None else None,
            timestamp=time.time(),
            payload=payload or {},
        )
        with self.store.lock:
            self.bus.publish(event)

    def store_result(self, record: JobRecord) -> None:
        if self.result_sink is None:
            return
        try:
            self.result_sink(record)
        except Exception:
            logger.exception("result sink failed for %s", record.id)

    def _check_queue_empty(self) -> None:
        if self._queue_empty_sent:
            return
        if len(self.queue) or self._active or self._delayed:
            return
        self._queue_empty_sent = True
        self.publish(None, EventType.QUEUE_EMPTY)

    def _update_gauges(self) -> None:
        metrics.active_workers.set(len(self._active))
        metrics.queue_depth.set(len(self.queue))

    def _maybe_cleanup(self) -> None:
        interval = self.config.cleanup_interval
        if interval <= 0 or self.on_cleanup is None:
            return
        now = time.monotonic()
        if now - self._last_cleanup < interval:
            return
        self._last_cleanup = now
        try:
            self.on_cleanup()
        except Exception:
            logger.exception("periodic cleanup failed")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop dispatching, drain active workers for up to ``timeout`` seconds.

        Requests still waiting in the queue or on a retry timer are cancelled
        straight away; workers still running after the timeout are cancelled
        and their requests marked ``cancelled``.
        """
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        with self.store.lock:
            self._running = False
            self._accepting = False
            pending = self.queue.clear()
            for request_id in list(self._delayed):
                record = self.store.get(request_id)
                if record is not None:
                    pending.append(record)
            for record in pending:
                if not record.status.is_terminal:
                    self.cancel_record(record, reason="shutdown")
            self._delayed.clear()
        self.wake()

        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        active = list(self._active.values())
        if active:
            logger.info("waiting up to %.1fs for %d active worker(s)", timeout, len(active))
            _, still_running = await asyncio.wait(active, timeout=timeout)
            if still_running:
                with self.store.lock:
                    for request_id in list(self._active):
                        record = self.store.get(request_id)
                        if record is not None and not record.status.is_terminal:
                            self.cancel_record(record, reason="shutdown timeout")
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning("cancelled %d worker(s) still running at shutdown", len(still_running))

        with self.store.lock:
            self._update_gauges()
        logger.info("scheduler stopped")
