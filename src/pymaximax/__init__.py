"""pymaximax - Async data orchestration for fleet, quotes, maps and analytics services."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pymaximax")
except PackageNotFoundError:
    __version__ = "0+local"
from pymaximax._cache import MISS, ExpiringCache
from pymaximax._channel import ChannelEvent, ChannelState, ResilientChannel
from pymaximax._queue import BoundedRequestQueue
from pymaximax.config import CacheTtls, MaximaxConfig
from pymaximax.coordinator import Coordinator
from pymaximax.exceptions import (
    MaximaxChannelError,
    MaximaxConfigError,
    MaximaxError,
    MaximaxFetchError,
    MaximaxMalformedMessageError,
    MaximaxQueueClosedError,
    MaximaxTimeoutError,
    MaximaxTransportError,
)
from pymaximax.models import (
    CampaignAssignment,
    ContactForm,
    ChannelMessage,
    CoordinatorState,
    PaymentInfo,
    QuoteRequest,
    Result,
    TruckStatus,
    TruckStatusUpdate,
)

__all__ = [
    "__version__",
    "MISS",
    "BoundedRequestQueue",
    "CacheTtls",
    "CampaignAssignment",
    "ContactForm",
    "ChannelEvent",
    "ChannelMessage",
    "ChannelState",
    "Coordinator",
    "CoordinatorState",
    "ExpiringCache",
    "MaximaxChannelError",
    "MaximaxConfig",
    "MaximaxConfigError",
    "MaximaxError",
    "MaximaxFetchError",
    "MaximaxMalformedMessageError",
    "MaximaxQueueClosedError",
    "MaximaxTimeoutError",
    "MaximaxTransportError",
    "PaymentInfo",
    "QuoteRequest",
    "ResilientChannel",
    "Result",
    "TruckStatus",
    "TruckStatusUpdate",
]
