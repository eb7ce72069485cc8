from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from pymaximax._channel import ChannelState
from pymaximax.config import MaximaxConfig
from pymaximax.coordinator import Coordinator, options_key
from pymaximax.models.result import Result


def _coordinator(transport, connector, scheduler, **config) -> Coordinator:
    config.setdefault("realtime_enabled", False)
    return Coordinator(MaximaxConfig(**config), transport=transport, connector=connector, scheduler=scheduler)


def _frame(type_: str, data: object) -> str:
    return json.dumps({"type": type_, "data": data, "timestamp": 1700000000000})


def _service_calls(transport) -> list[tuple]:
    return [call for call in transport.calls if call[1] != "/analytics/events"]


def _tracked(transport) -> list[dict]:
    """Analytics bodies sent so far, minus the start-up event."""
    return [
        call[3]
        for call in transport.calls
        if call[1] == "/analytics/events" and call[3]["event"] != "service_initialized"
    ]


# ------------------------------------------------------------------
# read_through
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_reads_share_one_fetch(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    calls = 0
    gate = asyncio.Event()

    async def fetch_quote() -> Result:
        nonlocal calls
        calls += 1
        await gate.wait()
        return Result.ok({"id": "Q1", "total": 1200})

    first = asyncio.create_task(coordinator.read_through("quote-Q1", 1800.0, fetch_quote))
    second = asyncio.create_task(coordinator.read_through("quote-Q1", 1800.0, fetch_quote))
    await settle()
    gate.set()
    a, b = await asyncio.gather(first, second)

    assert calls == 1
    assert a == b
    assert a.data == {"id": "Q1", "total": 1200}

    again = await coordinator.read_through("quote-Q1", 1800.0, fetch_quote)
    assert again.data == a.data
    assert calls == 1
    assert coordinator._pending == {}  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_read_after_ttl_fetches_again(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    calls = 0

    async def fetch() -> dict[str, int]:
        nonlocal calls
        calls += 1
        return {"n": calls}

    first = await coordinator.read_through("k", 10.0, fetch)
    scheduler.advance(11.0)
    second = await coordinator.read_through("k", 10.0, fetch)

    assert first == Result.ok({"n": 1})
    assert second == Result.ok({"n": 2})


@pytest.mark.asyncio
async def test_failures_are_returned_and_not_cached(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    outcomes = [Result.fail("quote not found"), RuntimeError("network down"), Result.ok({"id": "Q1"})]

    async def fetch() -> Result:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await coordinator.read_through("quote-Q1", 60.0, fetch) == Result.fail("quote not found")
    assert await coordinator.read_through("quote-Q1", 60.0, fetch) == Result.fail("network down")
    assert (await coordinator.read_through("quote-Q1", 60.0, fetch)).success
    assert outcomes == []


@pytest.mark.asyncio
async def test_fetch_timeout_becomes_failed_result(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)

    async def hang() -> Result:
        await asyncio.Event().wait()
        return Result.ok()

    result = await coordinator.read_through("slow", 60.0, hang, timeout=0.01)

    assert not result.success
    assert "timed out" in result.error
    assert "slow" not in coordinator._cache  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_read_after_mutation_does_not_join_stale_fetch(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    server = {"id": "truck-1", "status": "active"}
    gate = asyncio.Event()
    calls = 0

    async def fetch_truck() -> Result:
        nonlocal calls
        calls += 1
        snapshot = dict(server)
        await gate.wait()
        return Result.ok(snapshot)

    async def set_idle() -> Result:
        server["status"] = "idle"
        return Result.ok(dict(server))

    before = asyncio.create_task(coordinator.read_through("truck-1", 30.0, fetch_truck))
    await settle()
    assert (await coordinator.mutate(set_idle, ["truck-1"])).success
    after = asyncio.create_task(coordinator.read_through("truck-1", 30.0, fetch_truck))
    await settle()
    gate.set()

    assert (await before).data["status"] == "active"
    assert (await after).data["status"] == "idle"
    assert calls == 2
    assert coordinator._cache.get("truck-1").data["status"] == "idle"  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_clear_cache_detaches_in_flight_fetch(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    gate = asyncio.Event()

    async def fetch() -> Result:
        await gate.wait()
        return Result.ok("before clear")

    reading = asyncio.create_task(coordinator.read_through("fleet-{}", 30.0, fetch))
    await settle()

    assert coordinator.clear_cache("fleet-") == 0
    assert coordinator._pending == {}  # type: ignore[attr-defined]
    gate.set()

    assert (await reading).data == "before clear"
    assert "fleet-{}" not in coordinator._cache  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_fetch(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    gate = asyncio.Event()

    async def fetch() -> Result:
        await gate.wait()
        return Result.ok("fleet")

    impatient = asyncio.create_task(coordinator.read_through("fleet-{}", 30.0, fetch))
    patient = asyncio.create_task(coordinator.read_through("fleet-{}", 30.0, fetch))
    await settle()
    impatient.cancel()
    gate.set()

    assert (await patient).data == "fleet"
    assert impatient.cancelled()


# ------------------------------------------------------------------
# mutate
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_mutation_keeps_cached_value(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)

    async def fetch_truck() -> Result:
        return Result.ok({"id": "truck-1", "status": "active"})

    async def rejected() -> Result:
        raise RuntimeError("status service rejected update")

    async def refused() -> Result:
        return Result.fail("invalid transition")

    await coordinator.read_through("truck-1", 30.0, fetch_truck)

    assert not (await coordinator.mutate(rejected, ["truck-1"])).success
    assert await coordinator.mutate(refused, ["truck-1"], invalidate_all=True) == Result.fail("invalid transition")
    assert coordinator._cache.get("truck-1").data == {"id": "truck-1", "status": "active"}  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_successful_mutation_invalidates_only_named_keys(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    cache = coordinator._cache  # type: ignore[attr-defined]
    for key in ("truck-1", "truck-2", "fleet-{}", 'fleet-{"region":"miami"}'):
        cache.set(key, Result.ok(key))
    events: list[object] = []
    coordinator.subscribe("truckStatusUpdate", events.append)

    async def update() -> dict[str, str]:
        return {"id": "truck-1", "status": "idle"}

    result = await coordinator.mutate(
        update, ["truck-1"], invalidate_matching=["fleet-"], event="truckStatusUpdate"
    )

    assert result == Result.ok({"id": "truck-1", "status": "idle"})
    assert sorted(cache.keys()) == ["truck-2"]
    assert events == [{"id": "truck-1", "status": "idle"}]


@pytest.mark.asyncio
async def test_invalidate_all_clears_cache_on_success(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    coordinator._cache.set("a", 1)  # type: ignore[attr-defined]
    coordinator._cache.set("b", 2)  # type: ignore[attr-defined]

    async def ok() -> Result:
        return Result.ok()

    await coordinator.mutate(ok, invalidate_all=True)

    assert len(coordinator._cache) == 0  # type: ignore[attr-defined]


# ------------------------------------------------------------------
# Channel integration
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fleet_update_invalidates_and_relays(transport, connector, scheduler, settle) -> None:
    transport.respond("GET", "/fleet/status", {"success": True, "data": {"trucks": [{"id": "T1", "status": "active"}]}})
    transport.respond("GET", "/fleet/trucks/T1", {"success": True, "data": {"id": "T1"}})
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    updates: list[object] = []

    async with coordinator:
        coordinator.subscribe("fleetUpdate", updates.append)
        await coordinator.get_fleet_status()
        await coordinator.get_truck_details("T1")
        await coordinator.get_truck_details("T2")

        connector.latest.feed(_frame("fleetUpdate", {"trucks": [{"id": "T1", "status": "idle"}]}))
        await settle()

        assert updates == [{"trucks": [{"id": "T1", "status": "idle"}]}]
        assert coordinator.get_state().fleet == [{"id": "T1", "status": "idle"}]
        assert sorted(coordinator._cache.keys()) == ["truck-T2"]  # type: ignore[attr-defined]

        await coordinator.get_fleet_status()
        assert transport.calls_to("GET", "/fleet/status") == 2


@pytest.mark.asyncio
async def test_fleet_update_detaches_in_flight_fleet_read(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    key = options_key("fleet", {})
    gate = asyncio.Event()

    async def fetch() -> Result:
        await gate.wait()
        return Result.ok({"trucks": [{"id": "T1", "status": "active"}]})

    async with coordinator:
        reading = asyncio.create_task(coordinator.read_through(key, 30.0, fetch))
        await settle()
        connector.latest.feed(_frame("fleetUpdate", {"trucks": [{"id": "T1", "status": "idle"}]}))
        await settle()

        assert key not in coordinator._pending  # type: ignore[attr-defined]
        gate.set()
        assert (await reading).success
        assert key not in coordinator._cache  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_campaign_update_merges_projection(transport, connector, scheduler, settle) -> None:
    transport.respond("GET", "/campaigns", {"success": True, "data": [{"id": "C1", "status": "draft"}]})
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    seen: list[object] = []

    async with coordinator:
        coordinator.subscribe("campaignUpdate", seen.append)
        await coordinator.get_campaigns(status="draft")
        connector.latest.feed(_frame("campaignUpdate", {"id": "C1", "status": "live"}))
        await settle()

        assert coordinator.get_state().campaigns == [{"id": "C1", "status": "live"}]
        assert seen == [{"id": "C1", "status": "live"}]
        assert list(coordinator._cache.keys()) == []  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_alerts_route_by_kind_and_are_tracked(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    seen: list[tuple[str, object]] = []

    async with coordinator:
        for event in ("maintenanceAlert", "geofenceAlert", "emergencyAlert", "alert"):
            coordinator.subscribe(event, lambda data, event=event: seen.append((event, data)))
        connector.latest.feed(_frame("alert", {"type": "maintenance", "severity": "high"}))
        connector.latest.feed(_frame("alert", {"type": "geofence"}))
        connector.latest.feed(_frame("alert", {"type": "emergency"}))
        connector.latest.feed(_frame("alert", {"type": "unknown"}))
        await settle()

    assert [event for event, _ in seen] == ["maintenanceAlert", "geofenceAlert", "emergencyAlert", "alert"]
    tracked = _tracked(transport)
    assert [body["event"] for body in tracked] == ["alert_received"] * 4
    assert tracked[0]["properties"] == {"type": "maintenance", "severity": "high"}


@pytest.mark.asyncio
async def test_channel_lifecycle_is_relayed(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    seen: list[str] = []
    for event in ("connected", "disconnected"):
        coordinator.subscribe(event, lambda _data, event=event: seen.append(event))

    await coordinator.initialize()
    assert coordinator.channel_state is ChannelState.CONNECTED
    connector.latest.drop()
    await settle()
    assert coordinator.channel_state is ChannelState.BACKOFF

    scheduler.advance(1.0)
    await settle()
    await coordinator.destroy()

    assert seen == ["connected", "disconnected", "connected"]


@pytest.mark.asyncio
async def test_polling_replaces_channel_after_reconnect_gives_up(transport, connector, scheduler, settle) -> None:
    transport.respond("GET", "/fleet/status", {"success": True, "data": {"trucks": [{"id": "T1"}]}})
    coordinator = _coordinator(
        transport, connector, scheduler, realtime_enabled=True, channel_max_attempts=1, poll_interval=5.0
    )
    failed: list[object] = []
    updates: list[object] = []

    async with coordinator:
        coordinator.subscribe("reconnect-failed", failed.append)
        coordinator.subscribe("fleetUpdate", updates.append)

        connector.always_fail = True
        connector.latest.drop()
        await settle()
        scheduler.advance(1.0)
        await settle()
        assert failed == [{"attempts": 1}]
        assert coordinator.polling

        scheduler.advance(5.0)
        await settle()
        scheduler.advance(5.0)
        await settle()
        assert transport.calls_to("GET", "/fleet/status") == 2
        assert updates == [{"trucks": [{"id": "T1"}]}] * 2

        connector.always_fail = False
        await coordinator.reconnect()
        assert coordinator.channel_state is ChannelState.CONNECTED
        assert not coordinator.polling

        scheduler.advance(20.0)
        await settle()
        assert transport.calls_to("GET", "/fleet/status") == 2


@pytest.mark.asyncio
async def test_on_channel_event_and_send(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    quotes: list[object] = []
    unsubscribe = coordinator.on_channel_event("quoteUpdate", lambda message: quotes.append(message.data))

    assert coordinator.send("ping") is False
    await coordinator.reconnect()
    assert coordinator.send("ping", {"at": 1}) is True
    connector.latest.feed(_frame("quoteUpdate", {"id": "Q1"}))
    await settle()
    unsubscribe()
    connector.latest.feed(_frame("quoteUpdate", {"id": "Q2"}))
    await settle()

    assert quotes == [{"id": "Q1"}]
    assert json.loads(connector.latest.sent[0])["type"] == "ping"
    await coordinator.destroy()


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_destroy_releases_everything(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True)
    await coordinator.initialize()
    coordinator.subscribe("fleetUpdate", print)
    coordinator._cache.set("truck-1", Result.ok())  # type: ignore[attr-defined]
    transport.gate = asyncio.Event()
    in_flight = asyncio.create_task(coordinator.get_truck_details("T9"))
    await settle()

    await coordinator.destroy()

    result = await in_flight
    assert not result.success
    assert coordinator.channel_state is ChannelState.DISCONNECTED
    assert connector.latest.closed
    assert len(coordinator._cache) == 0  # type: ignore[attr-defined]
    assert coordinator._events.listener_count("fleetUpdate") == 0  # type: ignore[attr-defined]
    assert scheduler.pending() == []
    assert not coordinator.initialized


@pytest.mark.asyncio
async def test_initialize_after_destroy_restores_service(transport, connector, scheduler) -> None:
    transport.respond("GET", "/fleet/trucks/T1", {"success": True, "data": {"id": "T1"}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        pass
    async with coordinator:
        result = await coordinator.get_truck_details("T1")

    assert result == Result.ok({"id": "T1"})


@pytest.mark.asyncio
async def test_operations_before_initialize_fail_softly(connector, scheduler) -> None:
    coordinator = Coordinator(MaximaxConfig(realtime_enabled=False), connector=connector, scheduler=scheduler)

    result = await coordinator.track_event("page_view")

    assert not result.success
    assert "not initialized" in result.error


# ------------------------------------------------------------------
# Domain operations
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_truck_status_validates_before_calling(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.update_truck_status("T1", "flying")

    assert not result.success
    assert any(message.startswith("status") for message in result.error)
    assert _service_calls(transport) == []


@pytest.mark.asyncio
async def test_update_truck_status_invalidates_truck_and_fleet(transport, connector, scheduler) -> None:
    transport.respond("PUT", "/fleet/trucks/T1/status", {"success": True, "data": {"id": "T1", "status": "idle"}})
    coordinator = _coordinator(transport, connector, scheduler)
    events: list[object] = []

    async with coordinator:
        coordinator.subscribe("truckStatusUpdate", events.append)
        coordinator._cache.set("truck-T1", Result.ok())  # type: ignore[attr-defined]
        coordinator._cache.set(options_key("fleet", {}), Result.ok())  # type: ignore[attr-defined]
        coordinator._cache.set("quote-Q1", Result.ok())  # type: ignore[attr-defined]

        result = await coordinator.update_truck_status("T1", "idle")

        assert result.success
        assert _service_calls(transport)[-1] == ("PUT", "/fleet/trucks/T1/status", None, {"status": "idle"})
        assert list(coordinator._cache.keys()) == ["quote-Q1"]  # type: ignore[attr-defined]
        assert events == [{"truckId": "T1", "status": "idle"}]


@pytest.mark.asyncio
async def test_generate_and_accept_quote(transport, connector, scheduler, settle) -> None:
    transport.respond("POST", "/quotes", {"success": True, "data": {"id": "Q9", "total": 4800}})
    transport.respond("POST", "/quotes/Q9/accept", {"success": True, "data": {"id": "Q9", "status": "accepted"}})
    transport.respond("GET", "/quotes/Q9", {"success": True, "data": {"id": "Q9", "status": "pending"}})
    coordinator = _coordinator(transport, connector, scheduler)
    generated: list[object] = []

    async with coordinator:
        coordinator.subscribe("quoteGenerated", generated.append)
        quote = await coordinator.generate_quote({"duration": 2, "durationUnit": "weeks", "trucks": 3})
        await coordinator.get_quote("Q9")
        accepted = await coordinator.accept_quote("Q9", {"method": "card", "amount": 4800})
        await settle()

        assert quote.data == {"id": "Q9", "total": 4800}
        assert generated == [{"id": "Q9", "total": 4800}]
        assert coordinator.get_state().quotes == [{"id": "Q9", "total": 4800}]
        assert accepted.success
        assert "quote-Q9" not in coordinator._cache  # type: ignore[attr-defined]

    tracked = _tracked(transport)
    assert [body["event"] for body in tracked] == ["quote_generated", "quote_accepted", "conversion"]
    assert tracked[2]["properties"] == {"type": "quote_to_campaign", "value": 4800.0}
    body = next(call[3] for call in transport.calls if call[1] == "/quotes")
    assert body == {"duration": 2, "durationUnit": "weeks", "trucks": 3}


@pytest.mark.asyncio
async def test_generate_quote_rejects_too_many_trucks(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.generate_quote({"duration": 1, "durationUnit": "days", "trucks": 21})

    assert not result.success
    assert _service_calls(transport) == []


@pytest.mark.asyncio
async def test_assign_campaign_invalidates_truck(transport, connector, scheduler, settle) -> None:
    transport.respond("POST", "/fleet/trucks/T1/campaign", {"success": True, "data": {"assigned": True}})
    coordinator = _coordinator(transport, connector, scheduler)
    start = datetime.now(UTC) + timedelta(days=1)
    campaign = {
        "id": "C1",
        "client": "Acme Corp",
        "message": "Grand opening this weekend",
        "startTime": start.isoformat(),
        "endTime": (start + timedelta(days=7)).isoformat(),
    }

    async with coordinator:
        coordinator._cache.set("truck-T1", Result.ok())  # type: ignore[attr-defined]
        result = await coordinator.assign_campaign("T1", campaign)
        await settle()

        assert result.success
        assert "truck-T1" not in coordinator._cache  # type: ignore[attr-defined]

    tracked = _tracked(transport)
    assert tracked[0]["event"] == "campaign_assigned"
    assert tracked[0]["properties"] == {"truckId": "T1", "campaignId": "C1", "client": "Acme Corp"}


@pytest.mark.asyncio
async def test_route_needs_two_waypoints(transport, connector, scheduler) -> None:
    transport.respond("POST", "/maps/route", {"success": True, "data": {"distance": 12.5}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        single = await coordinator.calculate_route([{"lat": 25.76, "lng": -80.19}])
        route = await coordinator.calculate_route(
            [{"lat": 25.76, "lng": -80.19}, {"lat": 25.79, "lng": -80.13}], provider="google"
        )
        cached = await coordinator.calculate_route(
            [{"lat": 25.76, "lng": -80.19}, {"lat": 25.79, "lng": -80.13}], provider="google"
        )

    assert not single.success
    assert route == cached == Result.ok({"distance": 12.5})
    assert transport.calls_to("POST", "/maps/route") == 1
    assert _service_calls(transport)[0][3]["provider"] == "google"


@pytest.mark.asyncio
async def test_clear_cache_by_pattern(transport, connector, scheduler) -> None:
    coordinator = _coordinator(transport, connector, scheduler)
    for key in ("fleet-{}", "truck-1", "truck-2"):
        coordinator._cache.set(key, Result.ok())  # type: ignore[attr-defined]

    assert coordinator.clear_cache("truck-") == 2
    assert coordinator.clear_cache() == 1
    assert len(coordinator._cache) == 0  # type: ignore[attr-defined]


@pytest.mark.asyncio
async def test_get_state_returns_a_copy(transport, connector, scheduler) -> None:
    transport.respond("GET", "/fleet/status", {"success": True, "data": {"trucks": [{"id": "T1"}]}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        await coordinator.get_fleet_status()
        snapshot = coordinator.get_state()
        snapshot.fleet[0]["id"] = "changed"

        assert coordinator.get_state().fleet == [{"id": "T1"}]


@pytest.mark.asyncio
async def test_initialize_tracks_enabled_features(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler, realtime_enabled=True, fetch_timeout=None)

    async with coordinator:
        await settle()

    started = [call[3] for call in transport.calls if call[1] == "/analytics/events"]
    assert [body["event"] for body in started] == ["service_initialized"]
    assert started[0]["properties"] == {"features": ["realtime", "cacheSweep"]}


@pytest.mark.asyncio
async def test_route_calculation_is_tracked(transport, connector, scheduler, settle) -> None:
    transport.respond("POST", "/maps/route", {"success": True, "data": {"distance": 12.5, "duration": 1260}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        await coordinator.calculate_route([{"lat": 25.76, "lng": -80.19}])
        await coordinator.calculate_route(
            [{"lat": 25.76, "lng": -80.19}, {"lat": 25.79, "lng": -80.13}, {"lat": 25.81, "lng": -80.12}]
        )
        await settle()

    tracked = _tracked(transport)
    assert [body["event"] for body in tracked] == ["route_calculated"]
    assert tracked[0]["properties"] == {"waypoints": 3, "distance": 12.5, "duration": 1260}


# ------------------------------------------------------------------
# Campaign analytics
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_analytics_summary_combines_insights_realtime_and_campaigns(transport, connector, scheduler) -> None:
    transport.respond("GET", "/campaigns", {"success": True, "data": [{"id": "C1", "client": "Acme"}, {"id": "C2"}]})
    transport.respond("GET", "/analytics/campaigns/C1", {"success": True, "data": {"impressions": 120000}})
    transport.respond("GET", "/analytics/campaigns/C2", {"success": False, "error": "no data yet"})
    transport.respond("GET", "/analytics/insights", {"success": True, "data": {"topZip": "33139"}})
    transport.respond("GET", "/analytics/realtime", {"success": True, "data": {"activeViewers": 42}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        summary = await coordinator.get_analytics_summary()
        again = await coordinator.get_analytics_summary()

    assert summary == Result.ok(
        {
            "insights": {"topZip": "33139"},
            "realTime": {"activeViewers": 42},
            "campaigns": [
                {"id": "C1", "client": "Acme", "metrics": {"impressions": 120000}},
                {"id": "C2", "metrics": None},
            ],
        }
    )
    assert again == summary
    assert transport.calls_to("GET", "/analytics/campaigns/C1") == 1
    # failed reads are not cached
    assert transport.calls_to("GET", "/analytics/campaigns/C2") == 2
    assert transport.calls_to("GET", "/analytics/insights") == 1


@pytest.mark.asyncio
async def test_analytics_summary_returns_first_failure(transport, connector, scheduler) -> None:
    transport.respond("GET", "/campaigns", {"success": True, "data": []})
    transport.respond("GET", "/analytics/realtime", {"success": False, "error": "realtime feed down"})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        summary = await coordinator.get_analytics_summary()

    assert summary == Result.fail("realtime feed down")


@pytest.mark.asyncio
async def test_all_campaign_metrics_passes_listing_failure_through(transport, connector, scheduler) -> None:
    transport.respond("GET", "/campaigns", {"success": False, "error": "campaign service unavailable"})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.get_all_campaign_metrics()

    assert result == Result.fail("campaign service unavailable")
    assert transport.calls_to("GET", "/analytics/campaigns/C1") == 0


# ------------------------------------------------------------------
# Forms
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_contact_form_is_validated_tracked_and_sent(transport, connector, scheduler, settle) -> None:
    transport.respond("POST", "/contact", {"success": True, "data": {"ticket": "T-100"}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.submit_contact_form(
            {
                "name": "Ana <b>Lopez</b>",
                "email": "Ana@Example.com",
                "company": "Acme Corp",
                "message": "Need three trucks for a product launch.",
            }
        )
        await settle()

    assert result == Result.ok({"ticket": "T-100"})
    body = next(call[3] for call in transport.calls if call[1] == "/contact")
    assert body == {
        "name": "Ana Lopez",
        "email": "ana@example.com",
        "company": "Acme Corp",
        "message": "Need three trucks for a product launch.",
    }
    tracked = _tracked(transport)
    assert tracked[0]["event"] == "form_submit"
    assert tracked[0]["properties"] == {"formType": "contact", "company": "Acme Corp"}


@pytest.mark.asyncio
async def test_invalid_contact_form_is_not_sent(transport, connector, scheduler, settle) -> None:
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.submit_contact_form(
            {"name": "Ana", "email": "not-an-email", "phone": "12", "message": "hi"}
        )
        await settle()

    assert not result.success
    fields = {message.split(":")[0] for message in result.error}
    assert fields == {"email", "phone", "message"}
    assert _service_calls(transport) == []
    assert _tracked(transport) == []


@pytest.mark.asyncio
async def test_quote_request_form_generates_quote_and_tracks_value(transport, connector, scheduler, settle) -> None:
    transport.respond("POST", "/quotes", {"success": True, "data": {"id": "Q5", "pricing": {"total": 2400}}})
    coordinator = _coordinator(transport, connector, scheduler)

    async with coordinator:
        result = await coordinator.submit_quote_request(
            {
                "name": "Ana Lopez",
                "email": "ana@example.com",
                "company": "Acme Corp",
                "duration": 1,
                "durationUnit": "weeks",
                "trucks": 2,
            }
        )
        await settle()

    assert result.success
    body = next(call[3] for call in transport.calls if call[1] == "/quotes")
    assert body["clientInfo"]["name"] == "Ana Lopez"
    assert body["clientInfo"]["company"] == "Acme Corp"
    assert body["trucks"] == 2
    tracked = _tracked(transport)
    assert [entry["event"] for entry in tracked] == ["quote_generated", "quote_requested"]
    assert tracked[1]["properties"] == {"quoteId": "Q5", "value": 2400}
