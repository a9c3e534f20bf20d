"""Public entry point: an explicitly owned job engine.

    engine = JobEngine(provider, EngineConfig(max_concurrent_requests=3))
    async with engine:
        request_id = engine.submit("coloring-page", "a dragon in a castle")
        record = await engine.wait_for(request_id)

Every method that touches requests goes through the store lock, so ``submit``,
``cancel`` and ``get_status`` may be called from other threads while the engine
runs on its event loop. ``subscribe`` with a coroutine listener is the
exception: it must be called on the engine's loop.
"""
import asyncio
import itertools
import logging
import time
import uuid
from typing import Any, Callable, List, Optional, Sequence, Union

from . import metrics
from .batch import BatchTracker
from .config import EngineConfig
from .errors import EngineShutdownError, RequestCancelledError, SubmissionError
from .events import EventBus, Target, resolve_future
from .providers import ProviderAdapter
from .queue import RequestQueue
from .retry import RetryPolicy
from .scheduler import Scheduler
from .schemas import (
    BatchItem,
    BatchOptions,
    BatchProgress,
    ContentType,
    EngineStats,
    Event,
    EventType,
    JobRecord,
    Priority,
    QueueStatus,
    RequestOptions,
    RequestStatus,
    RequestTags,
)
from .store import JobStore
from .worker import validate_payload

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = frozenset({EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED})


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise SubmissionError(f"unknown {label} {value!r}; expected one of: {choices}") from None


class JobEngine:
    def __init__(
        self,
        provider: ProviderAdapter,
        config: Optional[EngineConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        result_sink: Optional[Callable[[JobRecord], Any]] = None,
    ):
        self.config = config or EngineConfig()
        self.store = JobStore()
        self.queue = RequestQueue(priority_processing=self.config.priority_processing)
        self.bus = EventBus(
            listener_timeout=self.config.listener_timeout,
            slow_listener_threshold=self.config.slow_listener_threshold,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            delay=self.config.retry_delay,
            backoff=self.config.retry_backoff,
            max_delay=self.config.retry_max_delay,
            enabled=self.config.enable_auto_retry,
        )
        self.scheduler = Scheduler(
            self.store,
            self.queue,
            self.bus,
            provider,
            self.retry_policy,
            self.config,
            result_sink=result_sink,
            on_cleanup=self.cleanup,
        )
        self.batches = BatchTracker(self)
        self._sequence = itertools.count()

    async def __aenter__(self) -> "JobEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    async def start(self) -> None:
        self.scheduler.start()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        await self.scheduler.shutdown(timeout)
        await self.bus.drain()
        self.batches.close()
        await self.bus.close()

    def prepare(
        self,
        content_type: Union[ContentType, str],
        payload: Any,
        priority: Union[Priority, str] = Priority.NORMAL,
        max_attempts: Optional[int] = None,
        project_id: Optional[str] = None,
        page_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        image_style: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> JobRecord:
        """Validate a submission and build its record without queueing it."""
        if not self.scheduler.accepting:
            raise EngineShutdownError("engine is shut down")
        content_type = _parse_enum(ContentType, content_type, "content type")
        priority = _parse_enum(Priority, priority, "priority")
        max_attempts = self.config.default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise SubmissionError("max_attempts must be at least 1")
        validate_payload(content_type, payload)

        return JobRecord(
            id=f"req_{uuid.uuid4().hex}",
            content_type=content_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts,
            submitted_at=time.time(),
            tags=RequestTags(project_id=project_id, page_id=page_id, batch_id=batch_id),
            options=RequestOptions(image_style=image_style, aspect_ratio=aspect_ratio, provider=provider),
        )

    def admit(self, records: Sequence[JobRecord]) -> None:
        """Store and enqueue prepared records, publishing ``queued`` for each."""
        with self.store.lock:
            if not self.scheduler.accepting:
                raise EngineShutdownError("engine is shut down")
            for record in records:
                record.sequence = next(self._sequence)
                self.store.add(record)
                self.scheduler.enqueue(record)
                metrics.requests_submitted_total.labels(content_type=record.content_type.value).inc()
                logger.debug("queued %s (%s, %s)", record.id, record.content_type.value, record.priority.value)
                self.scheduler.publish(
                    record,
                    EventType.QUEUED,
                    {"priority": record.priority.value, "content_type": record.content_type.value},
                )

    def submit(
        self,
        content_type: Union[ContentType, str],
        payload: Any,
        priority: Union[Priority, str] = Priority.NORMAL,
        max_attempts: Optional[int] = None,
        project_id: Optional[str] = None,
        page_id: Optional[str] = None,
        image_style: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> str:
        record = self.prepare(
            content_type,
            payload,
            priority=priority,
            max_attempts=max_attempts,
            project_id=project_id,
            page_id=page_id,
            image_style=image_style,
            aspect_ratio=aspect_ratio,
            provider=provider,
        )
        self.admit([record])
        return record.id

    def resubmit(self, request_id: str) -> Optional[str]:
        """Submit a fresh copy of a failed or cancelled request; returns the new id."""
        with self.store.lock:
            original = self.store.get(request_id)
            if original is None or original.status not in (RequestStatus.FAILED, RequestStatus.CANCELLED):
                return None
            record = self.prepare(
                original.content_type,
                original.payload,
                priority=original.priority,
                max_attempts=original.max_attempts,
                project_id=original.tags.project_id,
                page_id=original.tags.page_id,
                image_style=original.options.image_style,
                aspect_ratio=original.options.aspect_ratio,
                provider=original.options.provider,
            )
            self.admit([record])
        return record.id

    def update_provider(self, provider: ProviderAdapter) -> None:
        """Swap the provider backend; workers already running keep the adapter they started with."""
        with self.store.lock:
            self.scheduler.provider = provider
        logger.info("provider adapter replaced")

    def get_status(self, request_id: str) -> Optional[JobRecord]:
        return self.store.snapshot(request_id)

    def list_by_tag(self, **tags: str) -> List[JobRecord]:
        return self.store.list_by_tag(**tags)

    def cancel(self, request_id: str, reason: str = "cancelled") -> bool:
        """Cancel a queued or in-progress request.

        Queued requests never reach the provider. For an in-progress request the
        status becomes ``cancelled`` at once but the provider call already in
        flight runs to completion and its outcome is discarded. Terminal
        requests are left untouched and ``False`` is returned.
        """
        return self.scheduler.cancel(request_id, reason=reason)

    def subscribe(self, target: Target, listener: Callable[[Event], Any]) -> Callable[[], None]:
        return self.bus.subscribe(target, listener)

    def submit_batch(
        self, items: Sequence[Union[BatchItem, dict]], options: Optional[BatchOptions] = None
    ) -> str:
        return self.batches.submit_batch(items, options)

    def get_batch_status(self, batch_id: str) -> Optional[BatchProgress]:
        return self.batches.get_batch_status(batch_id)

    def cancel_batch(self, batch_id: str) -> bool:
        return self.batches.cancel_batch(batch_id)

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> BatchProgress:
        return await self.batches.wait_for_batch(batch_id, timeout)

    async def wait_for(self, request_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Wait for a request to reach a terminal status and return its snapshot.

        Raises ``KeyError`` for an unknown id and ``RequestCancelledError`` if the
        request ends up cancelled.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def on_event(event: Event) -> None:
            if event.type in _TERMINAL_EVENTS:
                resolve_future(loop, future, self.store.snapshot(request_id))

        unsubscribe = self.bus.subscribe(request_id, on_event)
        try:
            record = self.store.snapshot(request_id)
            if record is None:
                raise KeyError(request_id)
            if not record.status.is_terminal:
                record = await asyncio.wait_for(future, timeout=timeout)
        finally:
            unsubscribe()
        if record.status == RequestStatus.CANCELLED:
            raise RequestCancelledError(request_id)
        return record

    def queue_status(self) -> QueueStatus:
        with self.store.lock:
            return QueueStatus(
                queue_length=len(self.queue),
                active_requests=self.scheduler.active_count,
                delayed_retries=self.scheduler.delayed_count,
                queued_by_priority=self.queue.counts_by_priority(),
            )

    def stats(self) -> EngineStats:
        return self.store.stats()

    def cleanup(self, retention_seconds: Optional[float] = None) -> int:
        """Drop terminal requests and closed batches older than the retention window."""
        retention = self.config.retention_seconds if retention_seconds is None else retention_seconds
        removed = self.store.cleanup(retention)
        batches = self.batches.cleanup(retention)
        if removed or batches:
            logger.info("cleanup removed %d request(s) and %d batch(es)", len(removed), len(batches))
        return len(removed)
