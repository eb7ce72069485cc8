"""Uniform outcome of a remote call."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Result(BaseModel):
    """Outcome of a fetch or mutation.

    ``success=False`` is an ordinary outcome, not an exception: it is
    handed back to the caller as-is and never cached or retried.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    success: bool
    data: Any = None
    error: Any = Field(default=None, description="Error message or structured error details")

    @classmethod
    def ok(cls, data: Any = None) -> Result:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: Any) -> Result:
        return cls(success=False, error=error)
