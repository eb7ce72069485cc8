"""In-process event bus with per-listener failure isolation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

_logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class EventBus:
    """Fan events out to listeners registered by name.

    A listener that raises is logged and skipped; the remaining listeners
    of the same event still run and ``emit`` never raises. Listeners may
    be coroutine functions, in which case the coroutine is scheduled on
    the running loop and its failure is logged the same way.
    """

    def __init__(self, name: str = "events") -> None:
        self._name = name
        # dict used as an insertion-ordered set
        self._listeners: dict[str, dict[Listener, None]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register *callback* for *event* and return an unsubscribe function."""
        self._listeners.setdefault(event, {})[callback] = None

        def _unsubscribe() -> None:
            self.off(event, callback)

        return _unsubscribe

    def off(self, event: str, callback: Listener) -> None:
        callbacks = self._listeners.get(event)
        if callbacks is None:
            return
        callbacks.pop(callback, None)
        if not callbacks:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, data: Any = None) -> int:
        """Invoke every listener of *event*; return how many completed without raising."""
        callbacks = list(self._listeners.get(event, ()))
        delivered = 0
        for callback in callbacks:
            try:
                result = callback(data)
                if inspect.isawaitable(result):
                    self._track(event, result)
            except Exception:
                _logger.warning("%s listener for %r failed", self._name, event, exc_info=True)
                continue
            delivered += 1
        return delivered

    def _track(self, event: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                _logger.warning(
                    "%s async listener for %r failed",
                    self._name,
                    event,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_done)

    def clear(self) -> None:
        """Drop all listeners and cancel listener coroutines still running."""
        self._listeners.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
