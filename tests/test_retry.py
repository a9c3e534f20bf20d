import asyncio

import pytest

from bookjobs.errors import PermanentProviderError, TransientProviderError
from bookjobs.retry import RetryPolicy, classify_error, error_code, is_retryable
from bookjobs.schemas import ContentType, JobRecord


class HTTPError(Exception):
    def __init__(self, message, status):
        super().__init__(message)
        self.status = status


@pytest.mark.parametrize(
    "error,category",
    [
        (asyncio.TimeoutError(), "timeout"),
        (ConnectionResetError("peer closed"), "network"),
        (HTTPError("slow down", 429), "rate_limit"),
        (HTTPError("gateway", 503), "unavailable"),
        (HTTPError("boom", 500), "server_error"),
        (HTTPError("nope", 401), "auth"),
        (HTTPError("bad prompt", 400), "invalid_input"),
        (RuntimeError("Rate limit exceeded"), "rate_limit"),
        (RuntimeError("Service Unavailable"), "unavailable"),
        (RuntimeError("temporary glitch"), "unavailable"),
        (RuntimeError("Internal Server Error"), "server_error"),
        (RuntimeError("Network request failed"), "network"),
        (RuntimeError("content policy violation"), "content_policy"),
        (RuntimeError("Invalid API key"), "auth"),
        (RuntimeError("something odd"), "unknown"),
    ],
)
def test_classify_error(error, category):
    assert classify_error(error) == category


def test_explicit_provider_errors_win_over_message():
    assert is_retryable(TransientProviderError("looks permanent: invalid")) is True
    assert is_retryable(PermanentProviderError("looks transient: timeout")) is False


def test_message_based_retryability():
    assert is_retryable(RuntimeError("request timeout"))
    assert is_retryable(HTTPError("x", 502))
    assert not is_retryable(ValueError("invalid input"))
    assert not is_retryable(RuntimeError("something odd"))


def test_error_code():
    assert error_code(PermanentProviderError("x", code="POLICY")) == "POLICY"
    assert error_code(HTTPError("x", 429)) == "HTTP_429"
    assert error_code(asyncio.TimeoutError()) == "TIMEOUT"
    assert error_code(RuntimeError("x")) == "UNKNOWN_ERROR"


def make_record(attempts, max_attempts=3):
    return JobRecord(
        id="r", content_type=ContentType.COVER, payload="p", attempts=attempts, max_attempts=max_attempts, submitted_at=0
    )


def test_should_retry_respects_attempt_budget():
    policy = RetryPolicy(delay=0)
    transient = TransientProviderError("busy")
    assert policy.should_retry(make_record(1), transient)
    assert policy.should_retry(make_record(2), transient)
    assert not policy.should_retry(make_record(3), transient)
    assert not policy.should_retry(make_record(1), PermanentProviderError("no"))


def test_disabled_policy_never_retries():
    policy = RetryPolicy(enabled=False)
    assert not policy.should_retry(make_record(1), TransientProviderError("busy"))


def test_fixed_and_exponential_delays():
    assert [RetryPolicy(delay=5).next_delay(n) for n in (1, 2, 3)] == [5, 5, 5]
    policy = RetryPolicy(delay=1, backoff="exponential", multiplier=2, max_delay=5)
    assert [policy.next_delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 5]


def test_unknown_backoff_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(backoff="linear")
