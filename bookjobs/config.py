import os
from typing import Literal

from pydantic import BaseModel, Field

TESTING = os.getenv("TESTING") == "1"

MAX_CONCURRENT_REQUESTS = int(os.getenv("BOOKJOBS_MAX_CONCURRENT", "3"))
DEFAULT_MAX_ATTEMPTS = int(os.getenv("BOOKJOBS_MAX_ATTEMPTS", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("BOOKJOBS_RETRY_DELAY", "5.0"))
RETRY_BACKOFF = os.getenv("BOOKJOBS_RETRY_BACKOFF", "fixed")
RETRY_MAX_DELAY_SECONDS = float(os.getenv("BOOKJOBS_RETRY_MAX_DELAY", "60.0"))
POLL_SECONDS = float(os.getenv("BOOKJOBS_POLL_SECONDS", "1.0"))
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("BOOKJOBS_PROVIDER_TIMEOUT", "300.0"))
SHUTDOWN_TIMEOUT_SECONDS = float(os.getenv("BOOKJOBS_SHUTDOWN_TIMEOUT", "30.0"))
RETENTION_SECONDS = float(os.getenv("BOOKJOBS_RETENTION_SECONDS", "3600.0"))
# 0 disables the periodic cleanup pass
CLEANUP_INTERVAL_SECONDS = float(os.getenv("BOOKJOBS_CLEANUP_INTERVAL", "0"))
LISTENER_TIMEOUT_SECONDS = float(os.getenv("BOOKJOBS_LISTENER_TIMEOUT", "5.0"))
SLOW_LISTENER_SECONDS = float(os.getenv("BOOKJOBS_SLOW_LISTENER", "0.1"))


class EngineConfig(BaseModel):
    max_concurrent_requests: int = Field(default=MAX_CONCURRENT_REQUESTS, ge=1)
    default_max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    retry_delay: float = Field(default=RETRY_DELAY_SECONDS, ge=0)
    retry_backoff: Literal["fixed", "exponential"] = RETRY_BACKOFF  # type: ignore[assignment]
    retry_max_delay: float = Field(default=RETRY_MAX_DELAY_SECONDS, ge=0)
    enable_auto_retry: bool = True
    priority_processing: bool = True
    poll_interval: float = Field(default=POLL_SECONDS, gt=0)
    provider_timeout: float = Field(default=PROVIDER_TIMEOUT_SECONDS, gt=0)
    shutdown_timeout: float = Field(default=SHUTDOWN_TIMEOUT_SECONDS, ge=0)
    retention_seconds: float = Field(default=RETENTION_SECONDS, ge=0)
    cleanup_interval: float = Field(default=CLEANUP_INTERVAL_SECONDS, ge=0)
    listener_timeout: float = Field(default=LISTENER_TIMEOUT_SECONDS, gt=0)
    slow_listener_threshold: float = Field(default=SLOW_LISTENER_SECONDS, gt=0)
