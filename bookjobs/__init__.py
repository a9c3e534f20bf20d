from .batch import (
    content_type_for_page,
    items_for_characters,
    items_for_covers,
    items_for_export,
    items_for_pages,
    items_for_projects,
)
from .config import EngineConfig
from .engine import JobEngine
from .errors import (
    EngineShutdownError,
    JobEngineError,
    PermanentProviderError,
    ProviderError,
    RequestCancelledError,
    SubmissionError,
    TransientProviderError,
)
from .events import ALL_EVENTS
from .providers import CallableProvider, ProviderAdapter, ProviderResult
from .retry import RetryPolicy, classify_error, is_retryable
from .schemas import (
    BatchItem,
    BatchOptions,
    BatchProgress,
    ContentType,
    Event,
    EventType,
    ExportFormat,
    JobRecord,
    Priority,
    RequestStatus,
)

__all__ = [
    "ALL_EVENTS",
    "BatchItem",
    "BatchOptions",
    "BatchProgress",
    "CallableProvider",
    "ContentType",
    "EngineConfig",
    "EngineShutdownError",
    "Event",
    "EventType",
    "ExportFormat",
    "JobEngine",
    "JobEngineError",
    "JobRecord",
    "PermanentProviderError",
    "Priority",
    "ProviderAdapter",
    "ProviderError",
    "ProviderResult",
    "RequestCancelledError",
    "RequestStatus",
    "RetryPolicy",
    "SubmissionError",
    "TransientProviderError",
    "classify_error",
    "content_type_for_page",
    "is_retryable",
    "items_for_characters",
    "items_for_covers",
    "items_for_export",
    "items_for_pages",
    "items_for_projects",
]
