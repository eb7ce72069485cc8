"""Data models for pymaximax."""

from pymaximax.models.message import DEFAULT_MESSAGE_TYPE, ChannelMessage, parse_frame
from pymaximax.models.requests import (
    CampaignAssignment,
    ContactForm,
    PaymentInfo,
    QuoteRequest,
    TruckStatus,
    TruckStatusUpdate,
)
from pymaximax.models.result import Result
from pymaximax.models.state import CoordinatorState

__all__ = [
    "DEFAULT_MESSAGE_TYPE",
    "CampaignAssignment",
    "ContactForm",
    "ChannelMessage",
    "CoordinatorState",
    "PaymentInfo",
    "QuoteRequest",
    "Result",
    "TruckStatus",
    "TruckStatusUpdate",
    "parse_frame",
]
