"""In-process topic bus used to fan update events out to subscribers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Generator, List, Set

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]

TOKENS_TOPIC = "tokens"


class EventBus:
    """Topic -> handlers registry.

    Plain callables run inline; coroutine functions are scheduled on the
    running loop. A failing handler is logged and does not prevent delivery
    to the remaining handlers. There is no per-subscriber queueing.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``; returns a callable that removes it."""
        self._subscribers[topic].append(handler)

        def _unsub() -> None:
            self.unsubscribe(topic, handler)

        return _unsub

    @contextmanager
    def subscription(self, topic: str, handler: Handler) -> Generator[Handler, None, None]:
        """Context manager that registers ``handler`` and automatically unsubscribes."""
        unsub = self.subscribe(topic, handler)
        try:
            yield handler
        finally:
            unsub()

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._subscribers.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, payload: Any) -> None:
        """Deliver ``payload`` to every current subscriber of ``topic``."""
        handlers = list(self._subscribers.get(topic, []))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    if loop is not None:
                        task = loop.create_task(self._run_async(topic, handler, payload))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
                    else:
                        asyncio.run(self._run_async(topic, handler, payload))
                else:
                    handler(payload)
            except Exception:
                logger.exception("Event handler for topic %s failed", topic)

    async def _run_async(self, topic: str, handler: Handler, payload: Any) -> None:
        try:
            await handler(payload)  # type: ignore[misc]
        except Exception:
            logger.exception("Async event handler for topic %s failed", topic)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Drop all subscriptions (used by tests)."""
        self._subscribers.clear()


BUS = EventBus()


def subscribe(topic: str, handler: Handler) -> Callable[[], None]:
    return BUS.subscribe(topic, handler)


@contextmanager
def subscription(topic: str, handler: Handler) -> Generator[Handler, None, None]:
    with BUS.subscription(topic, handler) as h:
        yield h


def unsubscribe(topic: str, handler: Handler) -> None:
    BUS.unsubscribe(topic, handler)


def publish(topic: str, payload: Any) -> None:
    BUS.publish(topic, payload)


def reset() -> None:
    BUS.reset()


__all__ = [
    "TOKENS_TOPIC",
    "EventBus",
    "BUS",
    "subscribe",
    "subscription",
    "unsubscribe",
    "publish",
    "reset",
]
