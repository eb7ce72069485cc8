"""Campaign listing."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pymaximax._api._common import flatten_params, parse_result
from pymaximax._transport import Transport
from pymaximax.models.result import Result


async def fetch_campaigns(transport: Transport, filters: Mapping[str, Any] | None = None) -> Result:
    endpoint = "/campaigns"
    response = await transport.request("GET", endpoint, params=flatten_params(filters or {}))
    return parse_result(response, endpoint=endpoint)
