"""Quote service calls."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pymaximax._api._common import parse_result, path_segment
from pymaximax._transport import Transport
from pymaximax.models.requests import PaymentInfo, QuoteRequest
from pymaximax.models.result import Result


async def generate_quote(transport: Transport, request: QuoteRequest) -> Result:
    endpoint = "/quotes"
    body = request.model_dump(mode="json", by_alias=True, exclude_none=True)
    response = await transport.request("POST", endpoint, json_body=body)
    return parse_result(response, endpoint=endpoint)


async def fetch_quote(transport: Transport, quote_id: str) -> Result:
    endpoint = f"/quotes/{path_segment(quote_id)}"
    response = await transport.request("GET", endpoint)
    return parse_result(response, endpoint=endpoint)


async def update_quote(transport: Transport, quote_id: str, updates: Mapping[str, Any]) -> Result:
    endpoint = f"/quotes/{path_segment(quote_id)}"
    response = await transport.request("PATCH", endpoint, json_body=dict(updates))
    return parse_result(response, endpoint=endpoint)


async def accept_quote(transport: Transport, quote_id: str, payment: PaymentInfo) -> Result:
    endpoint = f"/quotes/{path_segment(quote_id)}/accept"
    response = await transport.request("POST", endpoint, json_body=payment.model_dump(mode="json"))
    return parse_result(response, endpoint=endpoint)
