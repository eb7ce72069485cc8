"""Contact form submission."""

from __future__ import annotations

from pymaximax._api._common import parse_result
from pymaximax._transport import Transport
from pymaximax.models.requests import ContactForm
from pymaximax.models.result import Result


async def submit_contact_form(transport: Transport, form: ContactForm) -> Result:
    endpoint = "/contact"
    body = form.model_dump(mode="json", by_alias=True, exclude_none=True)
    response = await transport.request("POST", endpoint, json_body=body)
    return parse_result(response, endpoint=endpoint)
