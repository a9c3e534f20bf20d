import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContentType(str, Enum):
    COLORING_PAGE = "coloring-page"
    COVER = "cover"
    ILLUSTRATION = "illustration"
    CHARACTER_REFERENCE = "character-reference"
    BACKGROUND = "background"
    EXPORT = "export"


IMAGE_CONTENT_TYPES = frozenset(
    {
        ContentType.COLORING_PAGE,
        ContentType.COVER,
        ContentType.ILLUSTRATION,
        ContentType.CHARACTER_REFERENCE,
        ContentType.BACKGROUND,
    }
)


class ExportFormat(str, Enum):
    PDF = "PDF"
    EPUB = "EPUB"
    DOCX = "DOCX"
    CBZ = "CBZ"
    PRINT_PACKAGE = "Print-Package"
    ALL_FORMATS = "All-Formats"


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHTS[self]


PRIORITY_WEIGHTS = {
    Priority.URGENT: 3,
    Priority.HIGH: 2,
    Priority.NORMAL: 1,
    Priority.LOW: 0,
}


class RequestStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELLED})


class EventType(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    QUEUE_EMPTY = "queue-empty"


class RequestTags(BaseModel):
    project_id: Optional[str] = None
    page_id: Optional[str] = None
    batch_id: Optional[str] = None


class RequestOptions(BaseModel):
    image_style: Optional[str] = None
    aspect_ratio: Optional[str] = None
    provider: Optional[str] = None


class RequestResult(BaseModel):
    output: Any = None
    provider: Optional[str] = None
    duration_seconds: float = 0.0


class RequestError(BaseModel):
    message: str
    code: str = "UNKNOWN_ERROR"
    retryable: bool = False


class JobRecord(BaseModel):
    """One unit of generation or export work and its current state."""

    id: str
    content_type: ContentType
    payload: Any
    priority: Priority = Priority.NORMAL
    status: RequestStatus = RequestStatus.QUEUED
    attempts: int = 0
    max_attempts: int = Field(default=3, ge=1)
    submitted_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    result: Optional[RequestResult] = None
    error: Optional[RequestError] = None
    tags: RequestTags = Field(default_factory=RequestTags)
    options: RequestOptions = Field(default_factory=RequestOptions)
    cancel_requested: bool = False
    sequence: int = 0

    def snapshot(self) -> "JobRecord":
        return self.model_copy(deep=True)


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EventType
    request_id: Optional[str] = None
    batch_id: Optional[str] = None
    timestamp: float
    payload: Dict[str, Any] = Field(default_factory=dict)


class BatchItem(BaseModel):
    content_type: ContentType
    payload: Any
    project_id: Optional[str] = None
    page_id: Optional[str] = None
    image_style: Optional[str] = None
    aspect_ratio: Optional[str] = None
    provider: Optional[str] = None


class BatchError(BaseModel):
    request_id: str
    project_id: Optional[str] = None
    page_id: Optional[str] = None
    message: str
    retryable: bool = False


class BatchProgress(BaseModel):
    batch_id: str
    total: int
    completed: int = 0
    failed: int = 0
    in_progress: int = 0
    queued: int = 0
    cancelled: int = 0
    errors: List[BatchError] = Field(default_factory=list)
    created_at: float
    closed_at: Optional[float] = None
    cancel_requested: bool = False
    request_ids: List[str] = Field(default_factory=list)

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.cancelled

    @property
    def is_closed(self) -> bool:
        return self.finished >= self.total

    @property
    def progress(self) -> int:
        if self.total == 0:
            return 100
        return round(self.finished / self.total * 100)

    @property
    def estimated_time_remaining(self) -> Optional[float]:
        """Seconds left, extrapolated from the average time per completed member."""
        if self.completed == 0 or self.is_closed:
            return None
        end = self.closed_at or time.time()
        per_request = (end - self.created_at) / self.completed
        return per_request * (self.total - self.finished)


class BatchOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    priority: Priority = Priority.NORMAL
    max_attempts: Optional[int] = Field(default=None, ge=1)
    progress_callback: Optional[Callable[[BatchProgress], None]] = None


class QueueStatus(BaseModel):
    queue_length: int
    active_requests: int
    delayed_retries: int
    queued_by_priority: Dict[str, int]


class EngineStats(BaseModel):
    total: int
    queued: int
    in_progress: int
    completed: int
    failed: int
    cancelled: int

    @property
    def success_rate(self) -> float:
        # cancellations are not failures
        finished = self.completed + self.failed
        if finished == 0:
            return 0.0
        return self.completed / finished
