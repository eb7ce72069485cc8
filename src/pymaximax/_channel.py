"""Resilient publish/subscribe channel over a push connection.

Owns:
- the connection state machine (disconnected -> connecting -> connected,
  with backoff between failed reconnections)
- parsing inbound frames and dispatching them by message ``type``
- the local subscription surface, usable before any connection exists
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from pydantic_core import PydanticSerializationError

from pymaximax._bus import EventBus, Listener
from pymaximax._scheduling import LoopScheduler, Scheduler, TimerHandle
from pymaximax._transport import PushConnection
from pymaximax.exceptions import MaximaxMalformedMessageError
from pymaximax.models.message import ChannelMessage, parse_frame

_logger = logging.getLogger(__name__)

Connector = Callable[[], Awaitable[PushConnection]]


class ChannelState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"


class ChannelEvent(StrEnum):
    """Lifecycle events emitted alongside inbound message types."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    RECONNECT_FAILED = "reconnect-failed"


def backoff_delay(attempt: int, base_delay: float, max_delay: float | None = None) -> float:
    """Delay before reconnection *attempt* (1-based): ``base * 2**(attempt-1)``."""
    delay = base_delay * (2 ** max(attempt - 1, 0))
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


class ResilientChannel:
    """Keep a push connection open and fan its messages out to subscribers.

    Connection failures are never raised to callers. They show up as
    ``error`` / ``disconnected`` events and a scheduled retry; after
    ``max_attempts`` consecutive failed reconnections a single
    ``reconnect-failed`` event is emitted and the channel stays
    disconnected until :meth:`connect` is called again.
    """

    def __init__(
        self,
        connector: Connector,
        *,
        base_delay: float = 1.0,
        max_attempts: int = 5,
        max_delay: float | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._connector = connector
        self._base_delay = base_delay
        self._max_attempts = max_attempts
        self._max_delay = max_delay
        self._scheduler = scheduler or LoopScheduler()
        self._bus = EventBus("channel")

        self._state = ChannelState.DISCONNECTED
        self._attempt = 0
        self._next_retry_at: float | None = None
        self._retry_handle: TimerHandle | None = None
        self._conn: PushConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._stopped = True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def next_retry_at(self) -> float | None:
        return self._next_retry_at

    @property
    def is_connected(self) -> bool:
        return self._state is ChannelState.CONNECTED

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        return self._bus.on(event, callback)

    def off(self, event: str, callback: Listener) -> None:
        self._bus.off(event, callback)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection unless already connected or connecting.

        Called while disconnected this is a manual (re)start and resets the
        attempt counter. Called during backoff it skips the remaining delay.
        """
        if self._state in (ChannelState.CONNECTED, ChannelState.CONNECTING):
            return
        self._stopped = False
        if self._state is ChannelState.DISCONNECTED:
            self._attempt = 0
        self._cancel_retry()
        await self._open()

    async def disconnect(self) -> None:
        """Close the connection and cancel any pending reconnection."""
        self._stopped = True
        self._cancel_retry()
        was_connected = self._state is ChannelState.CONNECTED
        self._state = ChannelState.DISCONNECTED

        reader = self._reader
        self._reader = None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        conn = self._conn
        self._conn = None
        if conn is not None:
            await self._close_quietly(conn)

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if was_connected:
            self._bus.emit(ChannelEvent.DISCONNECTED)
        _logger.debug("Channel disconnected on request")

    async def _open(self) -> None:
        self._state = ChannelState.CONNECTING
        self._next_retry_at = None
        _logger.debug("Channel connecting attempt=%d", self._attempt)
        try:
            conn = await self._connector()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _logger.debug("Channel connect failed attempt=%d", self._attempt, exc_info=True)
            if self._stopped:
                return
            self._state = ChannelState.DISCONNECTED
            self._bus.emit(ChannelEvent.ERROR, exc)
            self._schedule_reconnect()
            return

        if self._stopped:
            # disconnect() ran while the connector was pending
            await self._close_quietly(conn)
            return

        self._conn = conn
        self._state = ChannelState.CONNECTED
        self._attempt = 0
        self._reader = asyncio.ensure_future(self._read_loop(conn))
        _logger.debug("Channel connected")
        self._bus.emit(ChannelEvent.CONNECTED)

    async def _read_loop(self, conn: PushConnection) -> None:
        try:
            async for frame in conn:
                self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _logger.debug("Channel read failed", exc_info=True)
            self._bus.emit(ChannelEvent.ERROR, exc)
        if self._conn is conn:
            self._reader = None
            await self._handle_drop(conn)

    async def _handle_drop(self, conn: PushConnection) -> None:
        if self._conn is not conn:
            return
        self._conn = None
        self._state = ChannelState.DISCONNECTED
        await self._close_quietly(conn)
        _logger.debug("Channel connection dropped")
        self._bus.emit(ChannelEvent.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stopped or self._state is not ChannelState.DISCONNECTED:
            return
        if self._attempt >= self._max_attempts:
            _logger.warning("Channel gave up after %d reconnection attempts", self._attempt)
            self._next_retry_at = None
            self._bus.emit(ChannelEvent.RECONNECT_FAILED, {"attempts": self._attempt})
            return

        self._attempt += 1
        delay = backoff_delay(self._attempt, self._base_delay, self._max_delay)
        self._state = ChannelState.BACKOFF
        self._next_retry_at = self._scheduler.time() + delay
        self._retry_handle = self._scheduler.call_later(delay, self._on_retry_timer)
        _logger.debug("Channel reconnect attempt=%d scheduled in %.2fs", self._attempt, delay)

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        if self._stopped or self._state is not ChannelState.BACKOFF:
            return
        self._spawn(self._open())

    def _cancel_retry(self) -> None:
        handle = self._retry_handle
        self._retry_handle = None
        self._next_retry_at = None
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send(self, type_: str, payload: Any = None) -> bool:
        """Queue a message for transmission; False if not connected."""
        conn = self._conn
        if self._state is not ChannelState.CONNECTED or conn is None:
            _logger.debug("Channel send of %r skipped: not connected", type_)
            return False
        try:
            text = ChannelMessage(type=type_, data=payload).to_wire()
        except (PydanticSerializationError, ValueError, TypeError):
            _logger.warning("Channel message %r is not serializable", type_, exc_info=True)
            return False
        self._spawn(self._transmit(conn, text))
        return True

    async def _transmit(self, conn: PushConnection, text: str) -> None:
        try:
            await conn.send_text(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            _logger.debug("Channel send failed", exc_info=True)
            self._bus.emit(ChannelEvent.ERROR, exc)
            await self._handle_drop(conn)

    def _dispatch(self, frame: str) -> None:
        try:
            messages = parse_frame(frame)
        except MaximaxMalformedMessageError as exc:
            _logger.warning("Dropping malformed channel message: %s", exc)
            return
        for message in messages:
            self._bus.emit(message.type, message)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _close_quietly(self, conn: PushConnection) -> None:
        try:
            await conn.close()
        except Exception:
            _logger.debug("Channel connection close failed", exc_info=True)

    def clear_subscriptions(self) -> None:
        self._bus.clear()
