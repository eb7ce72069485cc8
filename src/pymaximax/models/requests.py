"""Request models validated before any remote call is made."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _ensure_future(value: datetime | None) -> datetime | None:
    if value is None:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    if value <= datetime.now(UTC):
        raise ValueError("must be in the future")
    return value


class TruckStatus(StrEnum):
    ACTIVE = "active"
    IDLE = "idle"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class _RequestModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True, str_strip_whitespace=True)


class TruckStatusUpdate(_RequestModel):
    truck_id: str = Field(..., min_length=1, alias="truckId")
    status: TruckStatus


class CampaignAssignment(_RequestModel):
    """Campaign to display on a truck."""

    id: str = Field(..., min_length=1)
    client: str = Field(..., min_length=3)
    message: str = Field(..., min_length=1, max_length=100)
    start_time: datetime = Field(..., alias="startTime")
    end_time: datetime = Field(..., alias="endTime")

    @field_validator("start_time", "end_time")
    @classmethod
    def _future(cls, value: datetime) -> datetime:
        result = _ensure_future(value)
        assert result is not None  # noqa: S101
        return result

    @model_validator(mode="after")
    def _ordered(self) -> CampaignAssignment:
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


class QuoteRequest(_RequestModel):
    """Parameters for a new pricing quote.

    Client contact details are passed through untouched in ``client_info``.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True, str_strip_whitespace=True)

    duration: int = Field(..., ge=1)
    duration_unit: str = Field(..., min_length=1, alias="durationUnit")
    trucks: int = Field(..., ge=1, le=20)
    start_date: datetime | None = Field(default=None, alias="startDate")
    client_info: dict[str, str | None] | None = Field(default=None, alias="clientInfo")

    @field_validator("start_date")
    @classmethod
    def _future(cls, value: datetime | None) -> datetime | None:
        return _ensure_future(value)


class PaymentInfo(_RequestModel):
    method: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)


_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PHONE_RE = re.compile(r"^(\+?1[-.]?)?\(?([0-9]{3})\)?[-.]?([0-9]{3})[-.]?([0-9]{4})$")
_TAG_RE = re.compile(r"<[^>]*>")


class ContactForm(_RequestModel):
    """Inbound contact request.

    Free-text fields have markup removed and HTML special characters
    escaped; the email address is lower-cased.
    """

    name: str = Field(..., min_length=2)
    email: str
    phone: str | None = None
    company: str | None = Field(default=None, min_length=2)
    message: str = Field(..., min_length=10)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        value = value.lower()
        if not _EMAIL_RE.match(value):
            raise ValueError("must be a valid email address")
        return value

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        if value and not _PHONE_RE.match(re.sub(r"\s", "", value)):
            raise ValueError("must be a valid phone number")
        return value or None

    @field_validator("name", "company", "message", mode="after")
    @classmethod
    def _sanitize(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return html.escape(_TAG_RE.sub("", value))
