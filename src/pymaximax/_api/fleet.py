"""Fleet tracking service calls."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pymaximax._api._common import flatten_params, parse_result, path_segment
from pymaximax._transport import Transport
from pymaximax.models.requests import CampaignAssignment, TruckStatusUpdate
from pymaximax.models.result import Result


async def fetch_fleet_status(transport: Transport, options: Mapping[str, Any] | None = None) -> Result:
    endpoint = "/fleet/status"
    response = await transport.request("GET", endpoint, params=flatten_params(options or {}))
    return parse_result(response, endpoint=endpoint)


async def fetch_truck_details(transport: Transport, truck_id: str) -> Result:
    endpoint = f"/fleet/trucks/{path_segment(truck_id)}"
    response = await transport.request("GET", endpoint)
    return parse_result(response, endpoint=endpoint)


async def update_truck_status(transport: Transport, update: TruckStatusUpdate) -> Result:
    endpoint = f"/fleet/trucks/{path_segment(update.truck_id)}/status"
    response = await transport.request("PUT", endpoint, json_body={"status": update.status.value})
    return parse_result(response, endpoint=endpoint)


async def assign_campaign(transport: Transport, truck_id: str, campaign: CampaignAssignment) -> Result:
    endpoint = f"/fleet/trucks/{path_segment(truck_id)}/campaign"
    body = campaign.model_dump(mode="json", by_alias=True)
    response = await transport.request("POST", endpoint, json_body=body)
    return parse_result(response, endpoint=endpoint)
