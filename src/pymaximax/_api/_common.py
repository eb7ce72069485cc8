"""Shared helpers for the service adapters."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError

from pymaximax.exceptions import MaximaxTransportError
from pymaximax.models.result import Result


def parse_result(response: Mapping[str, Any], *, endpoint: str) -> Result:
    """Turn a ``{success, data?, error?}`` body into a :class:`Result`."""
    if "success" not in response:
        raise MaximaxTransportError(f"Response from {endpoint} has no 'success' field", endpoint=endpoint)
    try:
        return Result.model_validate(response)
    except ValidationError as exc:
        raise MaximaxTransportError(f"Malformed result from {endpoint}: {exc}", endpoint=endpoint) from exc


def path_segment(value: str) -> str:
    return quote(str(value), safe="")


def flatten_params(options: Mapping[str, Any]) -> dict[str, Any]:
    """Encode nested option values as JSON so they survive a query string."""
    params: dict[str, Any] = {}
    for key, value in options.items():
        if isinstance(value, (dict, list, tuple)):
            params[key] = json.dumps(value, separators=(",", ":"), sort_keys=True)
        elif isinstance(value, bool):
            params[key] = "true" if value else "false"
        else:
            params[key] = value
    return params
