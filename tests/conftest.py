import asyncio
import os
from typing import Any, List, Tuple

import pytest

os.environ["TESTING"] = "1"

from bookjobs import ContentType, EngineConfig, JobEngine, PermanentProviderError


class FakeProvider:
    """Records every call; behaviour per prompt keyword."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.calls: List[Tuple[ContentType, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.release = None  # optional asyncio.Event gating every call

    async def __call__(self, content_type, payload):
        self.calls.append((content_type, payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.release is not None:
                await self.release.wait()
            await asyncio.sleep(self.delay)
            text = payload if isinstance(payload, str) else str(payload)
            if "forbidden" in text:
                raise PermanentProviderError("content policy violation", code="POLICY")
            if "hang" in text:
                await asyncio.sleep(60)
            return f"image-for:{text[:20]}"
        finally:
            self.in_flight -= 1


def fast_config(**overrides) -> EngineConfig:
    values = dict(
        max_concurrent_requests=2,
        default_max_attempts=3,
        retry_delay=0.0,
        poll_interval=0.01,
        provider_timeout=1.0,
        shutdown_timeout=1.0,
    )
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def engine(provider):
    eng = JobEngine(provider, fast_config())
    yield eng
    await eng.shutdown(timeout=0.5)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
