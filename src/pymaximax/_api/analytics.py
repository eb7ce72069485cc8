"""Analytics event ingestion and campaign performance reads."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from pymaximax._api._common import parse_result, path_segment
from pymaximax._transport import Transport
from pymaximax.models.result import Result


async def track_event(transport: Transport, name: str, properties: Mapping[str, Any] | None = None) -> Result:
    endpoint = "/analytics/events"
    body = {
        "event": name,
        "properties": dict(properties or {}),
        "timestamp": int(time.time() * 1000),
    }
    response = await transport.request("POST", endpoint, json_body=body)
    return parse_result(response, endpoint=endpoint)


async def fetch_campaign_metrics(transport: Transport, campaign_id: str) -> Result:
    """Performance counters (impressions, clicks, conversions, ...) for one campaign."""
    endpoint = f"/analytics/campaigns/{path_segment(campaign_id)}"
    response = await transport.request("GET", endpoint)
    return parse_result(response, endpoint=endpoint)


async def fetch_audience_insights(transport: Transport) -> Result:
    endpoint = "/analytics/insights"
    response = await transport.request("GET", endpoint)
    return parse_result(response, endpoint=endpoint)


async def fetch_realtime_metrics(transport: Transport) -> Result:
    endpoint = "/analytics/realtime"
    response = await transport.request("GET", endpoint)
    return parse_result(response, endpoint=endpoint)
