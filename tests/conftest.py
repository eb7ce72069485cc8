from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest


class _ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls :meth:`advance`."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.delays: list[float] = []
        self._timers: list[_ManualTimer] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> _ManualTimer:
        timer = _ManualTimer(self.now + max(delay, 0.0), next(self._seq), callback, args)
        self._timers.append(timer)
        self.delays.append(delay)
        return timer

    def pending(self) -> list[_ManualTimer]:
        return [timer for timer in self._timers if not timer.cancelled]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in deadline order."""
        target = self.now + seconds
        while True:
            due = [timer for timer in self._timers if not timer.cancelled and timer.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self.now = max(self.now, timer.when)
            timer.callback(*timer.args)
        self._timers = [timer for timer in self._timers if not timer.cancelled]
        self.now = target


class FakeConnection:
    """In-memory push connection; ``feed`` delivers frames, ``drop`` ends the stream."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.fail_send = False

    def feed(self, frame: str) -> None:
        self.inbox.put_nowait(frame)

    def drop(self) -> None:
        self.inbox.put_nowait(None)

    async def send_text(self, text: str) -> None:
        if self.fail_send:
            raise ConnectionError("send failed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self.inbox.get()
            if frame is None:
                return
            yield frame


class FakeConnector:
    """Connector that hands out :class:`FakeConnection` objects or scripted failures."""

    def __init__(self) -> None:
        self.calls = 0
        self.connections: list[FakeConnection] = []
        self.always_fail = False
        self._failures: deque[Exception] = deque()

    def fail_next(self, count: int = 1) -> None:
        for _ in range(count):
            self._failures.append(ConnectionError("connection refused"))

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    async def __call__(self) -> FakeConnection:
        self.calls += 1
        if self.always_fail:
            raise ConnectionError("connection refused")
        if self._failures:
            raise self._failures.popleft()
        conn = FakeConnection()
        self.connections.append(conn)
        return conn


class FakeTransport:
    """Records requests and answers them from canned ``{success, data}`` bodies."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any] | None, Any]] = []
        self.responses: dict[tuple[str, str], Any] = {}
        self.gate: asyncio.Event | None = None

    def respond(self, method: str, endpoint: str, body: Any) -> None:
        self.responses[(method, endpoint)] = body

    def calls_to(self, method: str, endpoint: str) -> int:
        return sum(1 for call in self.calls if call[0] == method and call[1] == endpoint)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> dict[str, Any]:
        self.calls.append((method, endpoint, params, json_body))
        if self.gate is not None:
            await self.gate.wait()
        body = self.responses.get((method, endpoint), {"success": True, "data": None})
        if isinstance(body, Exception):
            raise body
        return body


async def _settle(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settle() -> Callable[..., Awaitable[None]]:
    """Let spawned tasks and callbacks run to their next suspension point."""
    return _settle
