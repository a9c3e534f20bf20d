"""Publish/subscribe channel for request lifecycle events.

Two kinds of listeners are supported:

- plain callables are invoked inline by ``publish()``. They must be fast and
  must not block; calls slower than ``slow_listener_threshold`` are logged.
- coroutine functions get their own delivery task fed by an ``asyncio.Queue``,
  so a slow async listener only delays itself. Each call is bounded by
  ``listener_timeout``. They are bound to the loop they were subscribed on,
  so they must be registered from code running on the engine's event loop;
  other threads subscribe plain callables.

Either way a listener raising an exception never stops delivery to the other
listeners. Events for one request reach a given listener in publish order.
"""
import asyncio
import inspect
import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Union

from . import metrics
from .schemas import Event

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Listener = Callable[[Event], Any]
Target = Union[str, Callable[[Event], bool]]


def _build_predicate(target: Target) -> Callable[[Event], bool]:
    if callable(target):
        return target
    if target == ALL_EVENTS:
        return lambda event: True
    return lambda event: event.request_id == target


class _Subscription:
    def __init__(self, sub_id: int, predicate: Callable[[Event], bool], listener: Listener):
        self.id = sub_id
        self.predicate = predicate
        self.listener = listener
        self.is_async = inspect.iscoroutinefunction(listener)
        self.queue: Optional[asyncio.Queue] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.task: Optional[asyncio.Task] = None


class EventBus:
    def __init__(self, listener_timeout: float = 5.0, slow_listener_threshold: float = 0.1):
        self.listener_timeout = listener_timeout
        self.slow_listener_threshold = slow_listener_threshold
        self._subscriptions: Dict[int, _Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, target: Target, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for events matching ``target``.

        ``target`` is a request id, ``"*"`` for every event, or a predicate.
        Returns a function that removes the subscription.
        """
        sub = _Subscription(next(self._ids), _build_predicate(target), listener)
        if sub.is_async:
            # async delivery needs the loop the caller lives on
            try:
                sub.loop = asyncio.get_running_loop()
            except RuntimeError:
                raise RuntimeError(
                    "async listeners must be subscribed from a running event loop; "
                    "subscribe a plain callable from other threads"
                ) from None
            sub.queue = asyncio.Queue()
            sub.task = sub.loop.create_task(self._deliver_async(sub))
        with self._lock:
            self._subscriptions[sub.id] = sub

        def unsubscribe() -> None:
            self._remove(sub.id)

        return unsubscribe

    def _remove(self, sub_id: int) -> None:
        with self._lock:
            sub = self._subscriptions.pop(sub_id, None)
        if sub is not None and sub.task is not None:
            self._stop_task(sub)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        for sub in subscriptions:
            try:
                matched = sub.predicate(event)
            except Exception:
                metrics.listener_errors_total.inc()
                logger.exception("event predicate failed for subscription %s", sub.id)
                continue
            if not matched:
                continue
            if sub.is_async:
                self._enqueue_async(sub, event)
            else:
                self._call_sync(sub, event)

    def _call_sync(self, sub: _Subscription, event: Event) -> None:
        start = time.monotonic()
        try:
            sub.listener(event)
        except Exception:
            metrics.listener_errors_total.inc()
            logger.exception("event listener failed on %s for %s", event.type.value, event.request_id)
        elapsed = time.monotonic() - start
        if elapsed > self.slow_listener_threshold:
            logger.warning(
                "slow event listener: %.3fs on %s (listeners must not block)", elapsed, event.type.value
            )

    def _enqueue_async(self, sub: _Subscription, event: Event) -> None:
        loop = sub.loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            sub.queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(sub.queue.put_nowait, event)

    async def _deliver_async(self, sub: _Subscription) -> None:
        while True:
            event = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.listener(event), timeout=self.listener_timeout)
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                metrics.listener_errors_total.inc()
                logger.warning(
                    "async event listener timed out after %.1fs on %s", self.listener_timeout, event.type.value
                )
            except Exception:
                metrics.listener_errors_total.inc()
                logger.exception("async event listener failed on %s for %s", event.type.value, event.request_id)
            finally:
                sub.queue.task_done()

    def _stop_task(self, sub: _Subscription) -> None:
        loop = sub.loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            sub.task.cancel()
        else:
            loop.call_soon_threadsafe(sub.task.cancel)

    async def drain(self) -> None:
        """Wait until every async listener has processed what was published so far."""
        with self._lock:
            queues = [sub.queue for sub in self._subscriptions.values() if sub.queue is not None]
        for queue in queues:
            await queue.join()

    async def close(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        tasks = [sub.task for sub in subscriptions if sub.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def resolve_future(loop: asyncio.AbstractEventLoop, future: asyncio.Future, value: Any) -> None:
    """Set ``future``'s result from any thread, ignoring futures already done."""

    def _set() -> None:
        if not future.done():
            future.set_result(value)

    if loop.is_closed():
        return
    try:
        running = asyncio.get_running_loop()
    except RuntimeError:
        running = None
    if running is loop:
        _set()
    else:
        loop.call_soon_threadsafe(_set)
