"""Routing via the map provider gateway."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pymaximax._api._common import parse_result
from pymaximax._transport import Transport
from pymaximax.models.result import Result


async def calculate_route(
    transport: Transport,
    waypoints: Sequence[Mapping[str, Any]],
    options: Mapping[str, Any] | None = None,
) -> Result:
    """Request a route through *waypoints* (``{"lat", "lng"}`` mappings).

    ``options["provider"]`` selects ``"mapbox"`` (default) or ``"google"``.
    """
    if len(waypoints) < 2:
        return Result.fail("At least two waypoints are required")
    opts = dict(options or {})
    body = {
        "provider": opts.pop("provider", "mapbox"),
        "waypoints": [dict(point) for point in waypoints],
        "options": opts,
    }
    endpoint = "/maps/route"
    response = await transport.request("POST", endpoint, json_body=body)
    return parse_result(response, endpoint=endpoint)
