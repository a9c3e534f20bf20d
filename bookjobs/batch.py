"""Batch submission and aggregate progress tracking.

A batch groups requests submitted together under one ``batch_id`` tag. Counts
move with each member's lifecycle events, keyed by the member's last known
status, so ``completed + failed + cancelled + in_progress + queued == total``
holds after every event. A batch is closed once every member is terminal.
"""
import asyncio
import logging
import threading
import time
import uuid
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .errors import SubmissionError
from .events import resolve_future
from .schemas import (
    BatchError,
    BatchItem,
    BatchOptions,
    BatchProgress,
    ContentType,
    Event,
    EventType,
    ExportFormat,
    RequestStatus,
)

if TYPE_CHECKING:
    from .engine import JobEngine

logger = logging.getLogger(__name__)

_EVENT_STATUS = {
    EventType.QUEUED: RequestStatus.QUEUED,
    EventType.STARTED: RequestStatus.IN_PROGRESS,
    EventType.COMPLETED: RequestStatus.COMPLETED,
    EventType.FAILED: RequestStatus.FAILED,
    EventType.CANCELLED: RequestStatus.CANCELLED,
}

_COUNT_FIELDS = {
    RequestStatus.QUEUED: "queued",
    RequestStatus.IN_PROGRESS: "in_progress",
    RequestStatus.COMPLETED: "completed",
    RequestStatus.FAILED: "failed",
    RequestStatus.CANCELLED: "cancelled",
}


class _BatchState:
    def __init__(self, progress: BatchProgress, items: Dict[str, BatchItem], options: BatchOptions):
        self.progress = progress
        self.items = items
        self.options = options
        self.members: Dict[str, RequestStatus] = {request_id: RequestStatus.QUEUED for request_id in items}
        self.waiters: List[tuple] = []


class BatchTracker:
    def __init__(self, engine: "JobEngine"):
        self.engine = engine
        self._batches: Dict[str, _BatchState] = {}
        self._lock = threading.RLock()
        self._unsubscribe = engine.bus.subscribe(lambda event: event.batch_id is not None, self._on_event)

    def __len__(self) -> int:
        return len(self._batches)

    def submit_batch(
        self, items: Sequence[Union[BatchItem, Mapping[str, Any]]], options: Optional[BatchOptions] = None
    ) -> str:
        """Validate and submit every item tagged with a new batch id; returns immediately."""
        if not items:
            raise SubmissionError("batch has no requests")
        options = options or BatchOptions()
        try:
            parsed = [item if isinstance(item, BatchItem) else BatchItem.model_validate(item) for item in items]
        except ValidationError as exc:
            raise SubmissionError(f"malformed batch item: {exc}") from exc

        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        # prepare everything first: one malformed item rejects the whole batch
        records = [
            self.engine.prepare(
                item.content_type,
                item.payload,
                priority=options.priority,
                max_attempts=options.max_attempts,
                project_id=item.project_id,
                page_id=item.page_id,
                batch_id=batch_id,
                image_style=item.image_style,
                aspect_ratio=item.aspect_ratio,
                provider=item.provider,
            )
            for item in parsed
        ]

        progress = BatchProgress(
            batch_id=batch_id,
            total=len(records),
            queued=len(records),
            created_at=time.time(),
            request_ids=[record.id for record in records],
        )
        state = _BatchState(progress, {record.id: item for record, item in zip(records, parsed)}, options)
        with self._lock:
            self._batches[batch_id] = state

        self.engine.admit(records)
        logger.info("submitted batch %s with %d request(s)", batch_id, len(records))
        return batch_id

    def _on_event(self, event: Event) -> None:
        new_status = _EVENT_STATUS.get(event.type)
        if new_status is None:
            return
        with self._lock:
            state = self._batches.get(event.batch_id)
            if state is None or event.request_id not in state.members:
                return
            old_status = state.members[event.request_id]
            if old_status == new_status or old_status.is_terminal:
                return
            progress = state.progress
            setattr(progress, _COUNT_FIELDS[old_status], getattr(progress, _COUNT_FIELDS[old_status]) - 1)
            setattr(progress, _COUNT_FIELDS[new_status], getattr(progress, _COUNT_FIELDS[new_status]) + 1)
            state.members[event.request_id] = new_status

            if new_status == RequestStatus.FAILED:
                item = state.items[event.request_id]
                error = event.payload.get("error") or {}
                progress.errors.append(
                    BatchError(
                        request_id=event.request_id,
                        project_id=item.project_id,
                        page_id=item.page_id,
                        message=error.get("message", "Unknown error"),
                        retryable=error.get("retryable", False),
                    )
                )

            closed_now = progress.is_closed and progress.closed_at is None
            if closed_now:
                progress.closed_at = time.time()
                logger.info(
                    "batch %s closed: %d completed, %d failed, %d cancelled",
                    progress.batch_id,
                    progress.completed,
                    progress.failed,
                    progress.cancelled,
                )
            snapshot = progress.model_copy(deep=True)
            callback = state.options.progress_callback
            waiters = state.waiters if closed_now else []
            if closed_now:
                state.waiters = []

        for loop, future in waiters:
            resolve_future(loop, future, snapshot)
        if callback is not None:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("progress callback failed for batch %s", snapshot.batch_id)

    def get_batch_status(self, batch_id: str) -> Optional[BatchProgress]:
        with self._lock:
            state = self._batches.get(batch_id)
            return state.progress.model_copy(deep=True) if state is not None else None

    def cancel_batch(self, batch_id: str) -> bool:
        """Cancel the members still queued; members already running are left to finish."""
        store = self.engine.store
        # store lock first: events are published under it and then take ours
        with store.lock:
            with self._lock:
                state = self._batches.get(batch_id)
                if state is None or state.progress.is_closed:
                    return False
                state.progress.cancel_requested = True
                members = list(state.members)
            queued = []
            for request_id in members:
                record = store.get(request_id)
                if record is not None and record.status == RequestStatus.QUEUED:
                    queued.append(request_id)
            for request_id in queued:
                self.engine.cancel(request_id, reason="batch cancelled")
        logger.info("cancelled batch %s (%d queued member(s) cancelled)", batch_id, len(queued))
        return True

    def active_batches(self) -> List[BatchProgress]:
        with self._lock:
            return [
                state.progress.model_copy(deep=True)
                for state in self._batches.values()
                if not state.progress.is_closed
            ]

    async def wait_for_batch(self, batch_id: str, timeout: Optional[float] = None) -> BatchProgress:
        """Wait until every member of the batch is terminal and return the final progress."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry = (loop, future)
        with self._lock:
            state = self._batches.get(batch_id)
            if state is None:
                raise KeyError(batch_id)
            if state.progress.is_closed:
                return state.progress.model_copy(deep=True)
            state.waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            with self._lock:
                if entry in state.waiters:
                    state.waiters.remove(entry)

    def cleanup(self, retention_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        cutoff = now - retention_seconds
        with self._lock:
            expired = [
                batch_id
                for batch_id, state in self._batches.items()
                if state.progress.closed_at is not None and state.progress.closed_at <= cutoff
            ]
            for batch_id in expired:
                del self._batches[batch_id]
        return expired

    def close(self) -> None:
        self._unsubscribe()


def content_type_for_page(page_type: Optional[str]) -> ContentType:
    if page_type == "cover":
        return ContentType.COVER
    if page_type == "story":
        return ContentType.ILLUSTRATION
    return ContentType.COLORING_PAGE


def items_for_pages(
    pages: Iterable[Mapping[str, Any]],
    project_id: str,
    filter_existing: bool = True,
    image_style: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
) -> List[BatchItem]:
    """One image request per page, skipping pages that already have an image."""
    items = []
    for page in pages:
        if filter_existing and page.get("image_data"):
            continue
        page_id = page.get("id") or f"page_{page.get('page_number')}"
        prompt = page.get("image_prompt") or page.get("text") or "coloring page"
        items.append(
            BatchItem(
                content_type=content_type_for_page(page.get("type")),
                payload=prompt,
                project_id=project_id,
                page_id=str(page_id),
                image_style=image_style,
                aspect_ratio=aspect_ratio,
            )
        )
    return items


def items_for_projects(projects: Iterable[Mapping[str, Any]], filter_existing: bool = True) -> List[BatchItem]:
    items = []
    for project in projects:
        items.extend(
            items_for_pages(
                project.get("pages", []),
                project_id=project["id"],
                filter_existing=filter_existing,
                image_style=project.get("image_style"),
                aspect_ratio=project.get("aspect_ratio"),
            )
        )
    return items


def items_for_covers(projects: Iterable[Mapping[str, Any]]) -> List[BatchItem]:
    return [
        BatchItem(
            content_type=ContentType.COVER,
            payload=f'Cover for "{project["title"]}" - {project.get("description") or "coloring book"}',
            project_id=project["id"],
            page_id="cover",
            image_style=project.get("image_style"),
            aspect_ratio=project.get("aspect_ratio"),
        )
        for project in projects
    ]


def items_for_characters(characters: Iterable[Mapping[str, Any]]) -> List[BatchItem]:
    return [
        BatchItem(
            content_type=ContentType.CHARACTER_REFERENCE,
            payload=f"Character reference for {character['name']}: {character['description']}",
            project_id=character.get("project_id") or "characters",
            page_id=f"character_{index}",
            image_style=character.get("style"),
        )
        for index, character in enumerate(characters)
    ]


def items_for_export(
    project_ids: Iterable[str], export_format: Union[ExportFormat, str], settings: Optional[Mapping[str, Any]] = None
) -> List[BatchItem]:
    export_format = ExportFormat(export_format)
    return [
        BatchItem(
            content_type=ContentType.EXPORT,
            payload={"format": export_format.value, "project_id": project_id, "settings": dict(settings or {})},
            project_id=project_id,
        )
        for project_id in project_ids
    ]
