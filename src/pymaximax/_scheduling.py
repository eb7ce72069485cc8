"""Clock and timer abstraction.

Every component that needs "now" or a delayed callback takes a
:class:`Scheduler` so tests can drive time by hand instead of sleeping.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol


class TimerHandle(Protocol):
    """Anything with ``cancel()``; :class:`asyncio.TimerHandle` qualifies."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Monotonic clock plus delayed callbacks."""

    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop.

    The loop is looked up on every ``call_later`` so a scheduler can be
    created before the loop starts (e.g. at import or config time).
    """

    def time(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback, *args)
