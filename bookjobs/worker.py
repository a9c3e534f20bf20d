"""Executes one request against the provider adapter.

The worker reads the request under the store lock, calls the provider without
holding it, then records the outcome:

- success: store the result, emit ``completed``
- retryable failure with attempts left: hand back to the scheduler's delayed
  re-queue, emit ``queued``
- anything else: mark ``failed`` with the error attached, emit ``failed``
- unexpected exception in the worker itself: recorded as a permanent failure

A request cancelled while its provider call was in flight keeps its
``cancelled`` status; the late outcome is logged and discarded.
"""
import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Mapping, Optional

from . import metrics
from .errors import SubmissionError, TransientProviderError
from .providers import ProviderAdapter, ProviderResult
from .retry import error_code
from .schemas import (
    ContentType,
    EventType,
    ExportFormat,
    JobRecord,
    RequestError,
    RequestResult,
    RequestStatus,
)

if TYPE_CHECKING:
    from .scheduler import Scheduler

logger = logging.getLogger(__name__)

FORMAT_DIRECTIVES = {
    ContentType.COLORING_PAGE: (
        "coloring book style, black and white line art, clear outlines, no shading, "
        "white background, suitable for coloring"
    ),
    ContentType.COVER: "book cover design, professional, eye-catching, with title space",
    ContentType.ILLUSTRATION: "detailed illustration, professional quality",
    ContentType.CHARACTER_REFERENCE: "character reference sheet, multiple angles, clean design",
    ContentType.BACKGROUND: "background scene, detailed environment, suitable for overlay",
}


def prompt_of(payload: Any) -> Optional[str]:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, Mapping):
        prompt = payload.get("prompt")
        return prompt if isinstance(prompt, str) else None
    return None


def validate_payload(content_type: ContentType, payload: Any) -> None:
    """Raise SubmissionError for a payload the worker could never prepare."""
    if content_type == ContentType.EXPORT:
        if not isinstance(payload, Mapping):
            raise SubmissionError("export payload must be a mapping with a 'format' key")
        try:
            ExportFormat(payload.get("format"))
        except ValueError:
            supported = ", ".join(fmt.value for fmt in ExportFormat)
            raise SubmissionError(
                f"unsupported export format {payload.get('format')!r}; supported: {supported}"
            ) from None
        return
    prompt = prompt_of(payload)
    if prompt is None or not prompt.strip():
        raise SubmissionError(f"{content_type.value} request needs a non-empty prompt")


def enhance_payload(record: JobRecord) -> Any:
    """Append the content-type directives, style and aspect ratio to the prompt."""
    if record.content_type == ContentType.EXPORT:
        payload = dict(record.payload)
        payload["format"] = ExportFormat(payload["format"]).value
        return payload

    prompt = prompt_of(record.payload).strip()
    directive = FORMAT_DIRECTIVES.get(record.content_type)
    if directive:
        prompt = f"{prompt} {directive}"
    if record.options.image_style:
        prompt += f" in {record.options.image_style} style"
    if record.options.aspect_ratio:
        prompt += f" {record.options.aspect_ratio} aspect ratio"

    if isinstance(record.payload, Mapping):
        return {**record.payload, "prompt": prompt}
    return prompt


def _check_export_outcome(content_type: ContentType, output: Any) -> None:
    # export backends report failure in-band: {"success": False, "error": "..."}
    if content_type != ContentType.EXPORT or not isinstance(output, Mapping):
        return
    if output.get("success") is False:
        raise RuntimeError(output.get("error") or "Export failed")


class Worker:
    def __init__(self, scheduler: "Scheduler", request_id: str, provider: ProviderAdapter):
        self.scheduler = scheduler
        self.request_id = request_id
        self.provider = provider

    @property
    def store(self):
        return self.scheduler.store

    async def run(self) -> None:
        try:
            await self._execute()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_worker_crash(exc)

    async def _execute(self) -> None:
        with self.store.lock:
            record = self.store.get(self.request_id)
            if record is None or record.status != RequestStatus.IN_PROGRESS:
                return
            request = record.snapshot()

        self._progress(25, "Preparing generation...")
        prepared = enhance_payload(request)

        step = "Exporting..." if request.content_type == ContentType.EXPORT else "Generating image..."
        self._progress(50, step)

        timeout = self.scheduler.config.provider_timeout
        started = time.monotonic()
        error: Optional[BaseException] = None
        output: Any = None
        try:
            output = await asyncio.wait_for(self.provider(request.content_type, prepared), timeout=timeout)
            _check_export_outcome(request.content_type, output)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            error = TransientProviderError(f"provider call timed out after {timeout:.1f}s", code="TIMEOUT")
        except Exception as exc:
            error = exc
        elapsed = time.monotonic() - started
        metrics.provider_latency_seconds.observe(elapsed)

        if error is not None:
            self._handle_failure(error)
            return

        self._progress(90, "Finalizing...")

        provider = request.options.provider
        if isinstance(output, ProviderResult):
            provider = output.provider or provider
            output = output.output
        result = RequestResult(output=output, provider=provider, duration_seconds=elapsed)
        self._handle_success(result)

    def _progress(self, percent: int, message: str) -> None:
        with self.store.lock:
            record = self.store.get(self.request_id)
            if record is None or record.status != RequestStatus.IN_PROGRESS:
                return
            self.scheduler.publish(record, EventType.PROGRESS, {"progress": percent, "message": message})

    def _handle_success(self, result: RequestResult) -> None:
        with self.store.lock:
            record = self.store.get(self.request_id)
            if record is None or record.status != RequestStatus.IN_PROGRESS:
                logger.info("discarding result for %s: request is no longer in progress", self.request_id)
                return
            record.status = RequestStatus.COMPLETED
            record.completed_at = time.time()
            record.result = result
            record.error = None
            metrics.requests_completed_total.inc()
            logger.debug("request %s completed in %.2fs", record.id, result.duration_seconds)
            self.scheduler.publish(
                record,
                EventType.COMPLETED,
                {"provider": result.provider, "duration_seconds": result.duration_seconds, "attempts": record.attempts},
            )
            snapshot = record.snapshot()
        self.scheduler.store_result(snapshot)

    def _handle_failure(self, error: BaseException) -> None:
        retry_policy = self.scheduler.retry_policy
        retryable = retry_policy.is_retryable(error)
        with self.store.lock:
            record = self.store.get(self.request_id)
            if record is None or record.status != RequestStatus.IN_PROGRESS:
                logger.info("discarding failure for %s: request is no longer in progress", self.request_id)
                return
            record.error = RequestError(message=str(error) or type(error).__name__, code=error_code(error), retryable=retryable)

            if retry_policy.should_retry(record, error):
                if self.scheduler.accepting:
                    self._handle_retry(record, retry_policy.next_delay(record.attempts))
                    return
                self.scheduler.cancel_record(record, reason="shutdown")
                return

            self._handle_permanent_failure(record)

    def _handle_retry(self, record: JobRecord, delay: float) -> None:
        logger.warning(
            "request %s failed (attempt %d/%d), retrying in %.1fs: %s",
            record.id,
            record.attempts,
            record.max_attempts,
            delay,
            record.error.message,
        )
        metrics.requests_retried_total.inc()
        self.scheduler.schedule_retry(record, delay)

    def _handle_permanent_failure(self, record: JobRecord) -> None:
        record.status = RequestStatus.FAILED
        record.completed_at = time.time()
        metrics.requests_failed_total.inc()
        logger.error(
            "request %s failed after %d attempt(s) [%s]: %s",
            record.id,
            record.attempts,
            record.error.code,
            record.error.message,
        )
        self.scheduler.publish(
            record, EventType.FAILED, {"error": record.error.model_dump(), "attempts": record.attempts}
        )

    def _handle_worker_crash(self, exc: Exception) -> None:
        logger.exception("worker crashed while processing %s", self.request_id)
        with self.store.lock:
            record = self.store.get(self.request_id)
            if record is None or record.status != RequestStatus.IN_PROGRESS:
                return
            record.error = RequestError(
                message=f"Worker exception: {type(exc).__name__}: {exc}", code="WORKER_EXCEPTION", retryable=False
            )
            self._handle_permanent_failure(record)
