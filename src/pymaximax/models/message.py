"""Push channel message envelope."""

from __future__ import annotations

import json
import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pymaximax.exceptions import MaximaxMalformedMessageError

#: Event name used for messages that carry no ``type``.
DEFAULT_MESSAGE_TYPE = "message"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChannelMessage(BaseModel):
    """``{type, data, timestamp}`` as exchanged with the push source.

    ``timestamp`` is epoch milliseconds as sent on the wire.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: str = DEFAULT_MESSAGE_TYPE
    data: Any = None
    timestamp: float | None = Field(default_factory=_now_ms)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_MESSAGE_TYPE
        return value

    def to_wire(self) -> str:
        return self.model_dump_json()


def parse_frame(frame: str | bytes) -> list[ChannelMessage]:
    """Parse one transport frame into messages.

    A frame holds either a single JSON object or several newline-delimited
    objects. Each non-blank line must parse, otherwise the whole frame is
    rejected with :class:`MaximaxMalformedMessageError`.
    """
    text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise MaximaxMalformedMessageError("Empty frame", raw=text)

    messages: list[ChannelMessage] = []
    for line in lines:
        try:
            decoded = json.loads(line)
        except json.JSONDecodeError as exc:
            raise MaximaxMalformedMessageError(f"Frame is not JSON: {exc}", raw=text) from exc
        if not isinstance(decoded, dict):
            raise MaximaxMalformedMessageError("Frame is not a JSON object", raw=text)
        try:
            messages.append(ChannelMessage.model_validate(decoded))
        except ValidationError as exc:
            raise MaximaxMalformedMessageError(f"Invalid message envelope: {exc}", raw=text) from exc
    return messages
