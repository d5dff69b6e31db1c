# =============================================================================
# STOMP Client -- Event Dispatcher
# =============================================================================

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

from ._logging import logger
from .types import EventType

EventHandler = Callable[..., Any]
AsyncEventHandler = Callable[..., Awaitable[Any]]


class EventDispatcher:
    """Fan-out of named events to registered callbacks.

    Handlers are called in registration order with the event's positional
    payload; wildcard handlers additionally receive the event type first.
    Coroutine results are scheduled as tasks. A failing handler is logged
    and does not stop the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler | AsyncEventHandler]] = (
            defaultdict(list)
        )
        self._wildcard_handlers: list[EventHandler | AsyncEventHandler] = []
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(
        self, event: EventType | str
    ) -> Callable[[EventHandler | AsyncEventHandler], EventHandler | AsyncEventHandler]:
        """Decorator registering a handler for *event*."""
        event = EventType(event)

        def decorator(
            fn: EventHandler | AsyncEventHandler,
        ) -> EventHandler | AsyncEventHandler:
            self._handlers[event].append(fn)
            return fn

        return decorator

    def on_any(
        self, fn: EventHandler | AsyncEventHandler
    ) -> EventHandler | AsyncEventHandler:
        """Register a handler called as ``fn(event_type, *payload)`` for every event."""
        self._wildcard_handlers.append(fn)
        return fn

    def off(self, event: EventType | str, fn: EventHandler | AsyncEventHandler) -> None:
        """Remove a specific handler."""
        handlers = self._handlers.get(EventType(event), [])
        if fn in handlers:
            handlers.remove(fn)
        elif fn in self._wildcard_handlers:
            self._wildcard_handlers.remove(fn)

    def handlers(self, event: EventType | str) -> list[EventHandler | AsyncEventHandler]:
        return list(self._handlers.get(EventType(event), []))

    def emit(self, event: EventType, *args: Any) -> None:
        """Invoke every handler for *event* with *args*."""
        for handler in list(self._handlers.get(event, [])):
            self._invoke(event, handler, args)
        for handler in list(self._wildcard_handlers):
            self._invoke(event, handler, (event, *args))

    def cancel_tasks(self) -> None:
        """Cancel handler coroutines still running."""
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()

    def _invoke(
        self,
        event: EventType,
        handler: EventHandler | AsyncEventHandler,
        args: tuple[Any, ...],
    ) -> None:
        try:
            result = handler(*args)
            if asyncio.iscoroutine(result):
                self._fire_task(result)
        except Exception as exc:
            logger.error("Handler error for '%s': %s", event.value, exc)

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
