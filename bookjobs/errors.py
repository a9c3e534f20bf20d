from typing import Optional


class JobEngineError(Exception):
    """Base class for errors raised by the job engine."""


class ProviderError(JobEngineError):
    """Raised by a provider adapter when a generation or export call fails."""

    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class TransientProviderError(ProviderError):
    # rate limits, timeouts, network failures, 5xx / "temporarily unavailable"
    retryable = True


class PermanentProviderError(ProviderError):
    # invalid input, content policy violations, authentication failures
    retryable = False


class SubmissionError(JobEngineError, ValueError):
    """Raised synchronously by submit() for a request that can never run."""


class EngineShutdownError(SubmissionError):
    pass


class RequestCancelledError(JobEngineError):
    def __init__(self, request_id: str):
        super().__init__(f"request {request_id} was cancelled")
        self.request_id = request_id
