"""Per-instance event subscription.

Listeners are registered by event name and invoked synchronously in
registration order.  A listener that returns an awaitable has it scheduled
on the running loop; its failure is logged, never propagated to the emitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any

from claude_runner.constants import Listener

logger = logging.getLogger(__name__)

#: Event names raised by the decoder and re-emitted by the runner.
DECODER_EVENTS = (
    "message",
    "assistant",
    "tool-use",
    "text",
    "end-turn",
    "result",
    "error",
    "token-limit",
    "line",
)

#: Additional runner-level lifecycle events.
RUNNER_EVENTS = ("session-start", "exit", "complete", "session-end")


class EventEmitter:
    """Simple name-keyed listener registry."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, event: str, listener: Listener) -> Listener:
        """Register *listener* for *event* and return it (usable as decorator)."""
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener; unknown listeners are ignored."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def once(self, event: str, listener: Listener) -> Listener:
        """Register a listener that is removed after its first call."""

        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener of *event*; returns True if any existed."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                logger.exception("Listener for %r raised", event)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return bool(listeners)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop to drive a coroutine listener.
            logger.warning("Dropping async listener for %r: no running loop", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_listener_done(event, t))

    def _on_listener_done(self, event: str, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener for %r failed: %s", event, exc)
