"""Central read/write/invalidate coordinator."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any

import aiohttp
from pydantic import BaseModel, ValidationError

from pymaximax._api import analytics as _analytics_api
from pymaximax._api import campaigns as _campaigns_api
from pymaximax._api import contact as _contact_api
from pymaximax._api import fleet as _fleet_api
from pymaximax._api import maps as _maps_api
from pymaximax._api import quotes as _quotes_api
from pymaximax._bus import EventBus, Listener
from pymaximax._cache import MISS, ExpiringCache
from pymaximax._channel import ChannelEvent, ChannelState, Connector, ResilientChannel
from pymaximax._queue import BoundedRequestQueue
from pymaximax._scheduling import LoopScheduler, Scheduler, TimerHandle
from pymaximax._transport import HttpTransport, PushConnection, Transport, open_push_connection
from pymaximax.config import MaximaxConfig
from pymaximax.exceptions import MaximaxError, MaximaxQueueClosedError, MaximaxTimeoutError
from pymaximax.models.message import ChannelMessage
from pymaximax.models.requests import (
    CampaignAssignment,
    ContactForm,
    PaymentInfo,
    QuoteRequest,
    TruckStatusUpdate,
)
from pymaximax.models.result import Result
from pymaximax.models.state import CoordinatorState

_logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]

_ALERT_EVENTS: dict[str, str] = {
    "maintenance": "maintenanceAlert",
    "geofence": "geofenceAlert",
    "emergency": "emergencyAlert",
}


def options_key(prefix: str, options: Mapping[str, Any] | None = None) -> str:
    """Cache key for a parameterised read, stable under option ordering."""
    encoded = json.dumps(dict(options or {}), sort_keys=True, separators=(",", ":"), default=str)
    return f"{prefix}-{encoded}"


def truck_key(truck_id: str) -> str:
    return f"truck-{truck_id}"


def quote_key(quote_id: str) -> str:
    return f"quote-{quote_id}"


def metrics_key(campaign_id: str) -> str:
    return f"metrics-{campaign_id}"


def _error_from_exception(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _validation_errors(exc: ValidationError) -> list[str]:
    return [f"{'.'.join(str(part) for part in err['loc']) or 'request'}: {err['msg']}" for err in exc.errors()]


def _as_result(value: Any) -> Result:
    return value if isinstance(value, Result) else Result.ok(value)


class Coordinator:
    """Compose cache, request queue and push channel behind one API.

    Construct one per application and hand it to the components that need
    data; there is no module-level instance.

    Usage::

        async with Coordinator(MaximaxConfig.from_env()) as coordinator:
            unsubscribe = coordinator.subscribe("fleetUpdate", render_fleet)
            fleet = await coordinator.get_fleet_status(region="miami")

    Reads go through :meth:`read_through` (cache, then a de-duplicated
    fetch on the bounded queue); writes go through :meth:`mutate` (direct
    call, then targeted invalidation). Neither raises for remote failures:
    both return a failed :class:`Result`.
    """

    def __init__(
        self,
        config: MaximaxConfig | None = None,
        *,
        transport: Transport | None = None,
        connector: Connector | None = None,
        scheduler: Scheduler | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config or MaximaxConfig()
        self._scheduler = scheduler or LoopScheduler()
        self._external_session = http_session is not None
        self._http_session = http_session
        self._transport = transport
        self._connector = connector

        self._cache = ExpiringCache(
            default_ttl=self._config.cache_ttl.default,
            sweep_interval=self._config.cache_sweep_interval,
            scheduler=self._scheduler,
        )
        self._queue = self._new_queue()
        self._channel = ResilientChannel(
            self._open_push,
            base_delay=self._config.channel_base_delay,
            max_attempts=self._config.channel_max_attempts,
            max_delay=self._config.channel_max_delay,
            scheduler=self._scheduler,
        )
        self._events = EventBus("coordinator")
        self._state = CoordinatorState()

        self._pending: dict[str, asyncio.Task[Result]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._channel_unsubscribers: list[Callable[[], None]] = []
        self._poll_handle: TimerHandle | None = None
        self._polling = False
        self._initialized = False

    def _new_queue(self) -> BoundedRequestQueue:
        return BoundedRequestQueue(self._config.max_concurrent, default_timeout=self._config.fetch_timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Coordinator:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.destroy()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start the cache sweep, wire channel handlers and open the channel."""
        if self._initialized:
            return
        needs_session = self._transport is None or (self._connector is None and self._config.realtime_enabled)
        if self._http_session is None and needs_session:
            self._http_session = aiohttp.ClientSession()
        if self._transport is None:
            assert self._http_session is not None  # noqa: S101
            self._transport = HttpTransport(self._config, self._http_session)
        if self._queue.closed:
            self._queue = self._new_queue()

        self._cache.start()
        self._wire_channel()
        self._initialized = True
        _logger.debug("Coordinator initialized realtime=%s", self._config.realtime_enabled)
        self._spawn(self.track_event("service_initialized", {"features": self._enabled_features()}))

        if self._config.realtime_enabled:
            await self._channel.connect()

    def _enabled_features(self) -> list[str]:
        features = {
            "realtime": self._config.realtime_enabled,
            "cacheSweep": self._config.cache_sweep_interval is not None,
            "fetchTimeout": self._config.fetch_timeout is not None,
        }
        return [name for name, enabled in features.items() if enabled]

    async def destroy(self) -> None:
        """Release the channel, cancel queued work and clear all state.

        Callers still waiting on a read receive a failed :class:`Result`.
        """
        self._stop_polling()
        for unsubscribe in self._channel_unsubscribers:
            unsubscribe()
        self._channel_unsubscribers.clear()
        await self._channel.disconnect()
        self._channel.clear_subscriptions()

        await self._queue.close()
        pending = list(self._pending.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()

        background = list(self._tasks)
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        self._tasks.clear()

        self._cache.stop()
        self._cache.clear()
        self._events.clear()
        self._state = CoordinatorState()

        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._transport = None
        self._initialized = False
        _logger.debug("Coordinator destroyed")

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise MaximaxError("Coordinator not initialized. Use 'async with Coordinator(...) as coordinator:'")
        return self._transport

    async def _open_push(self) -> PushConnection:
        if self._connector is not None:
            return await self._connector()
        if self._http_session is None:
            raise MaximaxError("Coordinator not initialized; no HTTP session for the push channel")
        return await open_push_connection(
            self._config.push_endpoint,
            http_session=self._http_session,
            heartbeat=self._config.channel_heartbeat,
        )

    # ------------------------------------------------------------------
    # Core protocol
    # ------------------------------------------------------------------

    async def read_through(
        self,
        key: str,
        ttl: float | None,
        fetcher: Fetcher,
        *,
        timeout: float | None = None,
    ) -> Result:
        """Return the cached value for *key* or fetch, cache and return it.

        Concurrent callers for a key that is already being fetched wait on
        that fetch instead of starting their own. Only successful results
        are cached; ``ttl=None`` uses the default TTL.
        """
        cached = self._cache.get(key)
        if cached is not MISS:
            _logger.debug("Cache hit key=%s", key)
            return _as_result(cached)

        task = self._pending.get(key)
        if task is None:
            _logger.debug("Cache miss key=%s, fetching", key)
            task = asyncio.ensure_future(self._load(key, ttl, fetcher, timeout))
            self._pending[key] = task
        else:
            _logger.debug("Cache miss key=%s, joining in-flight fetch", key)
        # Shielded so one caller giving up does not cancel the shared fetch.
        return await asyncio.shield(task)

    async def _load(self, key: str, ttl: float | None, fetcher: Fetcher, timeout: float | None) -> Result:
        try:
            result = await self._fetch(fetcher, timeout)
            # A fetch detached by invalidation still answers its callers but
            # must not repopulate the cache with what it read before the write.
            if result.success and self._pending.get(key) is asyncio.current_task():
                self._cache.set(key, result, ttl)
            return result
        finally:
            if self._pending.get(key) is asyncio.current_task():
                del self._pending[key]

    def _invalidate(self, key: str) -> None:
        self._cache.delete(key)
        self._pending.pop(key, None)

    def _invalidate_matching(self, pattern: str) -> int:
        for key in [key for key in self._pending if pattern in key]:
            del self._pending[key]
        return self._cache.delete_matching(pattern)

    def _invalidate_all(self) -> int:
        count = len(self._cache)
        self._pending.clear()
        self._cache.clear()
        return count

    async def _fetch(self, fetcher: Fetcher, timeout: float | None) -> Result:
        try:
            value = await self._queue.submit(fetcher, timeout=timeout)
        except MaximaxTimeoutError as exc:
            _logger.debug("Fetch timed out after %ss", exc.timeout)
            return Result.fail(_error_from_exception(exc))
        except MaximaxQueueClosedError as exc:
            return Result.fail(_error_from_exception(exc))
        except Exception as exc:
            _logger.debug("Fetch failed", exc_info=True)
            return Result.fail(_error_from_exception(exc))
        return _as_result(value)

    async def mutate(
        self,
        operation: Fetcher,
        invalidate_keys: Iterable[str] = (),
        *,
        invalidate_matching: Iterable[str] = (),
        invalidate_all: bool = False,
        event: str | None = None,
        event_data: Any = None,
    ) -> Result:
        """Run a write immediately and invalidate what it affects.

        The operation bypasses the request queue. Invalidation happens only
        after success: a failed result or an exception leaves every cache
        entry in place. ``invalidate_all`` clears the whole cache and is
        meant for callers that really need it.

        Parameters
        ----------
        operation
            Zero-argument coroutine function performing the write.
        invalidate_keys
            Exact cache keys to delete on success.
        invalidate_matching
            Substrings; every key containing one is deleted on success.
        invalidate_all
            Clear the entire cache on success.
        event
            Local event emitted on success with *event_data*, or the
            result's ``data`` when *event_data* is ``None``.
        """
        try:
            value = await operation()
        except Exception as exc:
            _logger.debug("Mutation failed", exc_info=True)
            return Result.fail(_error_from_exception(exc))

        result = _as_result(value)
        if not result.success:
            _logger.debug("Mutation reported failure: %s", result.error)
            return result

        if invalidate_all:
            self._invalidate_all()
        else:
            for key in invalidate_keys:
                self._invalidate(key)
            for pattern in invalidate_matching:
                self._invalidate_matching(pattern)

        if event is not None:
            self.emit(event, event_data if event_data is not None else result.data)
        return result

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def subscribe(self, event: str, callback: Listener) -> Callable[[], None]:
        """Subscribe to a coordinator event; returns an unsubscribe function."""
        return self._events.on(event, callback)

    def emit(self, event: str, data: Any = None) -> None:
        self._events.emit(event, data)

    def on_channel_event(self, type_: str, handler: Callable[[ChannelMessage], Any]) -> Callable[[], None]:
        """Invoke *handler* for every push message of type *type_*."""
        return self._channel.on(type_, handler)

    def send(self, type_: str, payload: Any = None) -> bool:
        """Send a message upstream over the push channel."""
        return self._channel.send(type_, payload)

    @property
    def channel_state(self) -> ChannelState:
        return self._channel.state

    async def reconnect(self) -> None:
        """Manually (re)open the push channel, e.g. after ``reconnect-failed``."""
        await self._channel.connect()

    def _wire_channel(self) -> None:
        handlers: dict[str, Callable[[Any], Any]] = {
            "fleetUpdate": self._handle_fleet_update,
            "campaignUpdate": self._handle_campaign_update,
            "alert": self._handle_alert,
            ChannelEvent.CONNECTED: self._handle_connected,
            ChannelEvent.DISCONNECTED: self._handle_disconnected,
            ChannelEvent.RECONNECT_FAILED: self._handle_reconnect_failed,
        }
        for event, handler in handlers.items():
            self._channel_unsubscribers.append(self._channel.on(event, handler))

    def _handle_fleet_update(self, message: ChannelMessage) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        trucks = data.get("trucks")
        truck_ids: set[str] = set()
        if isinstance(trucks, list):
            self._state.fleet = [truck for truck in trucks if isinstance(truck, dict)]
            truck_ids.update(str(truck["id"]) for truck in self._state.fleet if truck.get("id") is not None)
        for field in ("truckId", "id"):
            if data.get(field) is not None:
                truck_ids.add(str(data[field]))

        self._invalidate_matching("fleet-")
        for truck_id in truck_ids:
            self._invalidate(truck_key(truck_id))
        self.emit("fleetUpdate", data)

    def _handle_campaign_update(self, message: ChannelMessage) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        if data:
            self._state.merge_campaign(data)
        self._invalidate_matching("campaigns-")
        self.emit("campaignUpdate", data)

    def _handle_alert(self, message: ChannelMessage) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        kind = data.get("type")
        self.emit(_ALERT_EVENTS.get(str(kind), "alert"), data)
        self._spawn(self.track_event("alert_received", {"type": kind, "severity": data.get("severity")}))

    def _handle_connected(self, _data: Any) -> None:
        self._stop_polling()
        self.emit("connected")

    def _handle_disconnected(self, _data: Any) -> None:
        self.emit("disconnected")

    def _handle_reconnect_failed(self, data: Any) -> None:
        _logger.warning("Push channel unavailable; polling fleet every %.1fs", self._config.poll_interval)
        self.emit("reconnect-failed", data)
        self._start_polling()

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------

    @property
    def polling(self) -> bool:
        return self._polling

    def _start_polling(self) -> None:
        if self._polling:
            return
        self._polling = True
        self._schedule_poll()

    def _stop_polling(self) -> None:
        self._polling = False
        handle = self._poll_handle
        self._poll_handle = None
        if handle is not None:
            handle.cancel()

    def _schedule_poll(self) -> None:
        if self._polling and self._poll_handle is None:
            self._poll_handle = self._scheduler.call_later(self._config.poll_interval, self._on_poll_timer)

    def _on_poll_timer(self) -> None:
        self._poll_handle = None
        if self._polling:
            self._spawn(self._poll_once())

    async def _poll_once(self) -> None:
        result = await self.refresh_fleet_status()
        if result.success:
            self.emit("fleetUpdate", result.data)
        else:
            _logger.debug("Fleet poll failed: %s", result.error)
        self._schedule_poll()

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def clear_cache(self, pattern: str | None = None) -> int:
        """Delete keys containing *pattern*, or everything; return the count.

        In-flight fetches for the deleted keys are detached so their results
        are not cached.
        """
        if pattern:
            return self._invalidate_matching(pattern)
        return self._invalidate_all()

    def get_state(self) -> CoordinatorState:
        """Deep copy of the most recently seen fleet, quotes and campaigns."""
        return self._state.model_copy(deep=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _validate(self, model: type[BaseModel], data: Any) -> tuple[Any, Result | None]:
        if isinstance(data, model):
            return data, None
        try:
            return model.model_validate(data), None
        except ValidationError as exc:
            return None, Result.fail(_validation_errors(exc))

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------

    async def get_fleet_status(self, **options: Any) -> Result:
        """Fleet overview, cached for the fleet TTL."""
        result = await self.read_through(
            options_key("fleet", options),
            self._config.cache_ttl.fleet,
            lambda: _fleet_api.fetch_fleet_status(self._require_transport(), options),
        )
        if result.success:
            trucks = result.data.get("trucks") if isinstance(result.data, dict) else result.data
            if isinstance(trucks, list):
                self._state.fleet = [truck for truck in trucks if isinstance(truck, dict)]
        return result

    async def refresh_fleet_status(self, **options: Any) -> Result:
        """Drop the cached fleet overview for *options* and fetch it again."""
        self._invalidate(options_key("fleet", options))
        return await self.get_fleet_status(**options)

    async def get_truck_details(self, truck_id: str) -> Result:
        return await self.read_through(
            truck_key(truck_id),
            self._config.cache_ttl.truck,
            lambda: _fleet_api.fetch_truck_details(self._require_transport(), truck_id),
        )

    async def update_truck_status(self, truck_id: str, status: str) -> Result:
        update, error = self._validate(TruckStatusUpdate, {"truckId": truck_id, "status": status})
        if error is not None:
            return error
        return await self.mutate(
            lambda: _fleet_api.update_truck_status(self._require_transport(), update),
            [truck_key(update.truck_id)],
            invalidate_matching=["fleet-"],
            event="truckStatusUpdate",
            event_data={"truckId": update.truck_id, "status": update.status.value},
        )

    async def assign_campaign(self, truck_id: str, campaign: Mapping[str, Any] | CampaignAssignment) -> Result:
        assignment, error = self._validate(CampaignAssignment, campaign)
        if error is not None:
            return error
        result = await self.mutate(
            lambda: _fleet_api.assign_campaign(self._require_transport(), truck_id, assignment),
            [truck_key(truck_id)],
        )
        if result.success:
            self._spawn(
                self.track_event(
                    "campaign_assigned",
                    {"truckId": truck_id, "campaignId": assignment.id, "client": assignment.client},
                )
            )
        return result

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def generate_quote(self, request: Mapping[str, Any] | QuoteRequest) -> Result:
        quote_request, error = self._validate(QuoteRequest, request)
        if error is not None:
            return error
        result = await self.mutate(
            lambda: _quotes_api.generate_quote(self._require_transport(), quote_request),
            event="quoteGenerated",
        )
        if result.success and isinstance(result.data, dict):
            self._state.quotes = [*self._state.quotes, result.data]
            self._spawn(
                self.track_event(
                    "quote_generated",
                    {
                        "quoteId": result.data.get("id"),
                        "trucks": quote_request.trucks,
                        "duration": quote_request.duration,
                    },
                )
            )
        return result

    async def get_quote(self, quote_id: str) -> Result:
        return await self.read_through(
            quote_key(quote_id),
            self._config.cache_ttl.quotes,
            lambda: _quotes_api.fetch_quote(self._require_transport(), quote_id),
        )

    async def update_quote(self, quote_id: str, updates: Mapping[str, Any]) -> Result:
        return await self.mutate(
            lambda: _quotes_api.update_quote(self._require_transport(), quote_id, updates),
            [quote_key(quote_id)],
        )

    async def accept_quote(self, quote_id: str, payment: Mapping[str, Any] | PaymentInfo) -> Result:
        payment_info, error = self._validate(PaymentInfo, payment)
        if error is not None:
            return error
        result = await self.mutate(
            lambda: _quotes_api.accept_quote(self._require_transport(), quote_id, payment_info),
            [quote_key(quote_id)],
        )
        if result.success:
            self._spawn(
                self.track_event(
                    "quote_accepted",
                    {"quoteId": quote_id, "amount": payment_info.amount, "method": payment_info.method},
                )
            )
            self._spawn(self.track_event("conversion", {"type": "quote_to_campaign", "value": payment_info.amount}))
        return result

    async def submit_quote_request(self, form: Mapping[str, Any]) -> Result:
        """Turn a website quote form into :meth:`generate_quote`.

        The contact fields are copied into ``clientInfo``; a generated
        quote is tracked as ``quote_requested`` with its total price.
        """
        contact = {field: form.get(field) for field in ("name", "email", "phone", "company")}
        result = await self.generate_quote({**form, "clientInfo": contact})
        if result.success and isinstance(result.data, dict):
            pricing = result.data.get("pricing")
            total = pricing.get("total") if isinstance(pricing, dict) else None
            self._spawn(self.track_event("quote_requested", {"quoteId": result.data.get("id"), "value": total}))
        return result

    # ------------------------------------------------------------------
    # Campaigns, maps, analytics
    # ------------------------------------------------------------------

    async def get_campaigns(self, **filters: Any) -> Result:
        result = await self.read_through(
            options_key("campaigns", filters),
            self._config.cache_ttl.campaigns,
            lambda: _campaigns_api.fetch_campaigns(self._require_transport(), filters),
        )
        if result.success and isinstance(result.data, list):
            self._state.campaigns = [campaign for campaign in result.data if isinstance(campaign, dict)]
        return result

    async def calculate_route(self, waypoints: Sequence[Mapping[str, Any]], **options: Any) -> Result:
        key = options_key("route", {"waypoints": [dict(p) for p in waypoints], **options})
        result = await self.read_through(
            key,
            self._config.cache_ttl.routes,
            lambda: _maps_api.calculate_route(self._require_transport(), waypoints, options),
        )
        if result.success:
            route = result.data if isinstance(result.data, dict) else {}
            self._spawn(
                self.track_event(
                    "route_calculated",
                    {"waypoints": len(waypoints), "distance": route.get("distance"), "duration": route.get("duration")},
                )
            )
        return result

    async def track_event(self, name: str, properties: Mapping[str, Any] | None = None) -> Result:
        """Record an analytics event; never touches the cache."""
        return await self.mutate(lambda: _analytics_api.track_event(self._require_transport(), name, properties))

    async def get_campaign_metrics(self, campaign_id: str) -> Result:
        return await self.read_through(
            metrics_key(campaign_id),
            self._config.cache_ttl.metrics,
            lambda: _analytics_api.fetch_campaign_metrics(self._require_transport(), campaign_id),
        )

    async def get_all_campaign_metrics(self, **filters: Any) -> Result:
        """Every campaign from :meth:`get_campaigns` with a ``metrics`` field.

        A campaign whose metrics cannot be read gets ``metrics: None``; a
        failure to list the campaigns is returned as is.
        """
        campaigns = await self.get_campaigns(**filters)
        if not campaigns.success:
            return campaigns
        items = [campaign for campaign in campaigns.data or [] if isinstance(campaign, dict)]
        metrics = await asyncio.gather(*(self.get_campaign_metrics(str(item.get("id"))) for item in items))
        return Result.ok(
            [
                {**item, "metrics": metric.data if metric.success else None}
                for item, metric in zip(items, metrics, strict=True)
            ]
        )

    async def get_analytics_summary(self) -> Result:
        """Audience insights, real-time counters and per-campaign metrics in one result.

        The first failed part is returned instead of a partial summary.
        """
        insights, realtime, campaigns = await asyncio.gather(
            self.read_through(
                "analytics-insights",
                self._config.cache_ttl.insights,
                lambda: _analytics_api.fetch_audience_insights(self._require_transport()),
            ),
            self.read_through(
                "analytics-realtime",
                self._config.cache_ttl.realtime,
                lambda: _analytics_api.fetch_realtime_metrics(self._require_transport()),
            ),
            self.get_all_campaign_metrics(),
        )
        for part in (insights, realtime, campaigns):
            if not part.success:
                return part
        return Result.ok({"insights": insights.data, "realTime": realtime.data, "campaigns": campaigns.data})

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    async def submit_contact_form(self, form: Mapping[str, Any] | ContactForm) -> Result:
        contact, error = self._validate(ContactForm, form)
        if error is not None:
            return error
        self._spawn(self.track_event("form_submit", {"formType": "contact", "company": contact.company}))
        return await self.mutate(lambda: _contact_api.submit_contact_form(self._require_transport(), contact))
