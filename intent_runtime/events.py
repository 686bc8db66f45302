"""
Event subscription system for the Intent runtime SDK.

A registration table keyed by event name. Both the gateway connection and
the public client own one: the connection emits raw wire events
(``MESSAGE_CREATE``), the client re-emits them as typed events
(``message_create``).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Handlers may be plain callables or coroutine functions
EventHandler = Callable[..., Any]


class EventManager:
    """Maps event names to ordered lists of handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._wildcard_handlers: list[EventHandler] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for all event types.

        Wildcard handlers receive the event name as their first argument.
        """
        self._wildcard_handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler | None = None) -> None:
        """Remove a handler (or all handlers) for an event type."""
        if handler is None:
            self._handlers.pop(event_type, None)
        else:
            handlers = self._handlers.get(event_type, [])
            self._handlers[event_type] = [h for h in handlers if h is not handler]

    def has_handlers(self, event_type: str) -> bool:
        return bool(self._handlers.get(event_type)) or bool(self._wildcard_handlers)

    def emit(self, event_type: str, *args: Any) -> bool:
        """Invoke every handler for ``event_type`` in registration order.

        Handlers run synchronously within the current turn. A handler that
        returns a coroutine has it scheduled as a task. Exceptions are
        logged and never reach the emitter.

        Returns:
            ``True`` if at least one handler was invoked.
        """
        handlers = list(self._handlers.get(event_type, []))
        for handler in handlers:
            self._invoke(event_type, handler, args)
        for handler in list(self._wildcard_handlers):
            self._invoke(event_type, handler, (event_type, *args))
        return bool(handlers) or bool(self._wildcard_handlers)

    def _invoke(self, event_type: str, handler: EventHandler, args: tuple[Any, ...]) -> None:
        try:
            result = handler(*args)
        except Exception:
            logger.exception("Error in event handler for %s", event_type)
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(lambda t: self._on_task_done(event_type, t))

    def _on_task_done(self, event_type: str, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Error in async event handler for %s",
                event_type,
                exc_info=task.exception(),
            )

    async def stop(self) -> None:
        """Cancel handler tasks that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
