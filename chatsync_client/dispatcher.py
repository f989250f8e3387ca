# =============================================================================
# ChatSync Client -- Event Dispatcher
# =============================================================================
#
# Typed publish/subscribe fan-out from inbound frames to in-process
# listeners.  Delivery is synchronous, in frame arrival order; a failing
# listener is logged and never blocks the listeners after it.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from ._logging import logger
from .events import ServerEvent

EventListener = Callable[[ServerEvent], Any]
AsyncEventListener = Callable[[ServerEvent], Awaitable[Any]]
Listener = EventListener | AsyncEventListener


class EventDispatcher:
    """Route server events to listeners keyed by event type.

    Example::

        dispatcher = EventDispatcher()

        @dispatcher.on("new_message")
        def handle(event: MessageEvent) -> None:
            print(event.conversation_id, event.message)
    """

    def __init__(self) -> None:
        # dicts as insertion-ordered sets: one registration per listener
        self._listeners: dict[str, dict[Listener, None]] = {}
        self._wildcard_listeners: dict[Listener, None] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._delivered = 0
        self._listener_errors = 0

    # -- Registration ---------------------------------------------------------

    def on(
        self, event_type: str, listener: Listener | None = None
    ) -> Listener | Callable[[Listener], Listener]:
        """Register *listener* for *event_type*.

        Without *listener*, returns a decorator.  Registering the same
        listener twice for one type is a no-op.
        """

        def decorator(fn: Listener) -> Listener:
            self._listeners.setdefault(event_type, {})[fn] = None
            return fn

        if listener is None:
            return decorator
        return decorator(listener)

    def on_any(self, listener: Listener) -> Listener:
        """Register a wildcard listener that receives every event."""
        self._wildcard_listeners[listener] = None
        return listener

    def off(self, event_type: str, listener: Listener) -> None:
        """Remove a listener.  Unknown listeners are ignored."""
        listeners = self._listeners.get(event_type)
        if listeners is None:
            return
        listeners.pop(listener, None)
        if not listeners:
            del self._listeners[event_type]

    def off_any(self, listener: Listener) -> None:
        self._wildcard_listeners.pop(listener, None)

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(v) for v in self._listeners.values()) + len(
                self._wildcard_listeners
            )
        return len(self._listeners.get(event_type, ()))

    def clear(self) -> None:
        self._listeners.clear()
        self._wildcard_listeners.clear()

    # -- Delivery -------------------------------------------------------------

    def emit(self, event: ServerEvent) -> None:
        """Deliver *event* to every current listener exactly once.

        Called only by the connection manager's inbound frame handler.
        The listener set is snapshotted first, so listeners added or
        removed during delivery take effect from the next event.
        """
        listeners = list(self._listeners.get(event.type, ())) + [
            fn for fn in self._wildcard_listeners
            if fn not in self._listeners.get(event.type, ())
        ]
        self._delivered += 1
        for listener in listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    self._fire_task(result, event.type)
            except Exception:
                self._listener_errors += 1
                logger.exception("Listener error for '%s'", event.type)

    def _fire_task(self, coro: Any, event_type: str) -> None:
        """Schedule an async listener with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._listener_errors += 1
                logger.error("Async listener error for '%s': %s", event_type, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for all scheduled async listeners to finish."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def get_stats(self) -> dict[str, Any]:
        return {
            "event_types": len(self._listeners),
            "listeners": self.listener_count(),
            "delivered": self._delivered,
            "listener_errors": self._listener_errors,
            "pending_async": len(self._background_tasks),
        }
