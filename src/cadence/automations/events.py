"""Event bus — ordered, best-effort pub/sub for lifecycle and custom events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]
CatchAllHandler = Callable[[str, Any], Awaitable[None] | None]


class EventBus:
    """In-process event bus with topic routing.

    Handlers may be plain callables or coroutine functions. ``emit`` runs
    every handler registered for the topic, plus every catch-all handler,
    concurrently and waits for all of them to settle. A failing handler is
    logged and never affects its siblings or the caller.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._catch_all: list[CatchAllHandler] = []
        self._enabled = enabled

    @property
    def enabled(self) -> bool:
        """Whether ``emit`` delivers events."""
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Enable or suppress all emission (used during teardown)."""
        self._enabled = enabled

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        """Subscribe *handler* to *event_type*.

        Returns:
            A callable that removes this subscription. Safe to call twice.
        """
        self._subscribers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
                if not handlers:
                    del self._subscribers[event_type]

        return unsubscribe

    on = subscribe

    def subscribe_all(self, handler: CatchAllHandler) -> Callable[[], None]:
        """Subscribe *handler* to every event; it is called as ``handler(event_type, payload)``."""
        self._catch_all.append(handler)

        def unsubscribe() -> None:
            if handler in self._catch_all:
                self._catch_all.remove(handler)

        return unsubscribe

    def off(self, event_type: str | None = None, handler: Handler | None = None) -> None:
        """Remove one handler, every handler of a type, or everything."""
        if event_type is not None and handler is not None:
            handlers = self._subscribers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)
            return
        self.unsubscribe_all(event_type)

    def unsubscribe_all(self, event_type: str | None = None) -> None:
        """Remove all handlers for *event_type*, or every handler if None."""
        if event_type is None:
            self._subscribers.clear()
            self._catch_all.clear()
        else:
            self._subscribers.pop(event_type, None)

    def listener_count(self, event_type: str) -> int:
        """Number of handlers that would receive *event_type*."""
        return len(self._subscribers.get(event_type, ())) + len(self._catch_all)

    async def emit(self, event_type: str, payload: Any = None) -> None:
        """Deliver *payload* to every current subscriber of *event_type*."""
        if not self._enabled:
            return

        # Snapshot: handlers registered while this emit runs are not called
        calls: list[Awaitable[None]] = [
            self._invoke(event_type, handler, (payload,))
            for handler in list(self._subscribers.get(event_type, ()))
        ]
        calls.extend(
            self._invoke(event_type, handler, (event_type, payload))
            for handler in list(self._catch_all)
        )
        if calls:
            await asyncio.gather(*calls)

    @staticmethod
    async def _invoke(event_type: str, handler: Callable[..., Any], args: tuple) -> None:
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Event handler %r failed for %s", handler, event_type)
