"""
Event bus — explicit observer registration for supervisor notifications.

Contract:
  - ``publish()`` delivers synchronously, on the caller's (event loop)
    thread, to every subscriber registered at the time of the call.
  - Each subscriber sees every event exactly once, in publish order.
  - A subscriber that raises is logged and skipped; it never prevents
    delivery to the others and never propagates into the supervisor.
  - No ordering is promised between different buses.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import asdict, dataclass
from typing import Any, ClassVar

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Event:
    """Base class for everything published on an ``EventBus``."""

    channel: ClassVar[str] = ""

    def payload(self) -> dict[str, Any]:
        return asdict(self)


Subscriber = Callable[[Event], None]


class EventBus:
    """In-process fan-out of ``Event`` objects to registered subscribers."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; return a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("event_subscriber_failed", bus=self._name, channel=event.channel)

    async def stream(self) -> AsyncIterator[Event]:
        """
        Yield published events until the consumer stops iterating.

        The queue is registered when iteration starts; events published
        before that are not replayed.
        """
        queue: asyncio.Queue[Event] = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()
