"""Custom exception hierarchy for pymaximax."""

from __future__ import annotations


class MaximaxError(Exception):
    """Base exception for all pymaximax errors."""


class MaximaxConfigError(MaximaxError):
    """Invalid or missing configuration."""


class MaximaxTransportError(MaximaxError):
    """HTTP-level failure (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class MaximaxFetchError(MaximaxError):
    """A remote read failed before producing a result."""


class MaximaxTimeoutError(MaximaxFetchError, TimeoutError):
    """A queued unit of work exceeded its timeout.

    The queue slot is released before this is raised, so a timed-out
    fetch never holds up the tasks waiting behind it.
    """

    def __init__(self, message: str, *, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(message)


class MaximaxQueueClosedError(MaximaxError):
    """The request queue was closed while work was waiting or running."""


class MaximaxChannelError(MaximaxError):
    """Push connection could not be opened or was lost."""


class MaximaxMalformedMessageError(MaximaxError):
    """An inbound push message could not be parsed.

    Raised only by the message parser; the channel catches it, logs
    it and drops the message.
    """

    def __init__(self, message: str, *, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)
