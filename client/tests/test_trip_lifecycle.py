"""Tests for the driver trip state machine and its handoff poller."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest


TMP = Path(__file__).resolve().parent / ".tmp_trip"
TMP.mkdir(parents=True, exist_ok=True)

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agritrack.core.errors import InvalidCodeError, TooFarError, TripStateError  # noqa: E402
from agritrack.models.session import Role, Session  # noqa: E402
from agritrack.models.shipment import CarrierBinding, ShipmentStatus, TripState  # noqa: E402
from agritrack.services.delivery_poller import DeliveryPoller  # noqa: E402
from agritrack.services.gateway import ShipmentGateway  # noqa: E402
from agritrack.services.session_store import SessionStore  # noqa: E402
from agritrack.services.trip_lifecycle import TripLifecycle  # noqa: E402


class FakeGateway:
    def __init__(self, statuses=None, redeem_error=None, verify_error=None):
        self.redeem_calls = []
        self.verify_calls = []
        self.status_calls = 0
        self.statuses = list(statuses or [])
        self.redeem_error = redeem_error
        self.verify_error = verify_error

    async def redeem_pickup_code(self, code):
        self.redeem_calls.append(code)
        if self.redeem_error is not None:
            raise self.redeem_error
        return CarrierBinding(shipment_id="S1", carrier_id="T9")

    async def verify_arrival(self, shipment_id, coordinates):
        self.verify_calls.append((shipment_id, coordinates))
        if self.verify_error is not None:
            raise self.verify_error
        return "Location verified"

    async def fetch_shipment_status(self, shipment_id):
        self.status_calls += 1
        return self.statuses.pop(0) if self.statuses else ShipmentStatus.DELIVERED


def _store(name: str) -> SessionStore:
    path = TMP / f"{name}.json"
    if path.exists():
        path.unlink()
    return SessionStore(path=str(path))


def _en_route(gateway: FakeGateway, name: str) -> TripLifecycle:
    trip = TripLifecycle(gateway, _store(name))
    asyncio.run(trip.redeem("AG-123456"))
    return trip


def test_successful_redeem_binds_exactly_once():
    gateway = FakeGateway()
    store = _store("redeem_ok")
    trip = TripLifecycle(gateway, store)
    seen = []
    trip.add_listener(lambda old, new: seen.append((old, new)))

    binding = asyncio.run(trip.redeem("AG-123456"))

    assert binding.carrier_id == "T9"
    assert trip.state is TripState.EN_ROUTE
    assert seen == [(TripState.AWAITING_ASSIGNMENT, TripState.EN_ROUTE)]
    assert store.load_binding().shipment_id == "S1"


def test_rejected_redeem_leaves_state_untouched():
    gateway = FakeGateway(redeem_error=InvalidCodeError("Invalid pickup code"))
    store = _store("redeem_rejected")
    trip = TripLifecycle(gateway, store)

    with pytest.raises(InvalidCodeError):
        asyncio.run(trip.redeem("AG-000000"))

    assert trip.state is TripState.AWAITING_ASSIGNMENT
    assert trip.shipment_id is None
    assert store.load_binding() is None


def test_short_code_is_rejected_without_gateway_call():
    gateway = FakeGateway()
    trip = TripLifecycle(gateway, _store("short_code"))
    with pytest.raises(InvalidCodeError):
        asyncio.run(trip.redeem("AG-12"))
    assert gateway.redeem_calls == []


def test_reload_with_stored_binding_resumes_en_route():
    store = _store("reload")
    asyncio.run(TripLifecycle(FakeGateway(), store).redeem("AG-123456"))

    reloaded = TripLifecycle(FakeGateway(), SessionStore(path=str(TMP / "reload.json")))
    assert reloaded.state is TripState.EN_ROUTE
    assert reloaded.carrier_id == "T9"


def test_reload_with_partial_binding_starts_fresh():
    store = SessionStore(initial={"active_shipment": "S1"})
    assert TripLifecycle(FakeGateway(), store).state is TripState.AWAITING_ASSIGNMENT


def test_arrival_then_cancel_returns_to_en_route_with_same_binding():
    trip = _en_route(FakeGateway(), "arrival_cancel")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    assert trip.state is TripState.AWAITING_DELIVERY_CONFIRMATION
    assert trip.handoff_token == "AGRITRACK:DELIVER:S1"

    trip.cancel_arrival()
    assert trip.state is TripState.EN_ROUTE
    assert trip.shipment_id == "S1"
    assert trip.handoff_token is None


def test_too_far_keeps_driver_en_route():
    trip = _en_route(FakeGateway(verify_error=TooFarError("You are too far from destination (1500.00m away)")), "too_far")
    with pytest.raises(TooFarError):
        asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    assert trip.state is TripState.EN_ROUTE


def test_arrival_requires_en_route():
    trip = TripLifecycle(FakeGateway(), _store("arrival_early"))
    with pytest.raises(TripStateError):
        asyncio.run(trip.confirm_arrival((6.5, 3.3)))


def test_delivery_fires_once_on_third_poll():
    gateway = FakeGateway(statuses=[ShipmentStatus.IN_TRANSIT, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED])
    trip = _en_route(gateway, "delivery_third")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    poller = DeliveryPoller(gateway, trip, interval=0.01)
    delivered = []
    poller.add_listener(delivered.append)

    async def _drive():
        for _ in range(3):
            await poller.poll_once()

    asyncio.run(_drive())
    assert delivered == ["S1"]
    assert trip.state is TripState.DELIVERED
    assert gateway.status_calls == 3
    assert poller.last_status is ShipmentStatus.DELIVERED


def test_repeated_delivered_observations_are_idempotent():
    gateway = FakeGateway(statuses=[ShipmentStatus.DELIVERED])
    trip = _en_route(gateway, "delivery_repeat")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    poller = DeliveryPoller(gateway, trip, interval=0.01)
    delivered = []
    poller.add_listener(delivered.append)

    assert poller.handle_delivered() is True
    assert poller.handle_delivered() is False
    assert trip.mark_delivered() is False
    assert delivered == ["S1"]


def test_delivered_trip_forgets_binding_and_allows_next_trip():
    store = _store("next_trip")
    trip = TripLifecycle(FakeGateway(), store)
    asyncio.run(trip.redeem("AG-123456"))
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    assert trip.mark_delivered() is True
    assert store.load_binding() is None

    trip.begin_next_trip()
    assert trip.state is TripState.AWAITING_ASSIGNMENT
    assert trip.shipment_id is None


def test_delivery_loop_stops_itself_after_delivery():
    gateway = FakeGateway(statuses=[ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED])
    trip = _en_route(gateway, "delivery_loop")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))

    async def _run():
        poller = DeliveryPoller(gateway, trip, interval=0.01).start()
        for _ in range(100):
            if poller.delivered:
                break
            await asyncio.sleep(0.01)
        await poller.aclose()
        return poller

    poller = asyncio.run(_run())
    assert poller.delivered
    assert not poller.running
    assert gateway.status_calls == 2


def test_cancel_during_handoff_stops_polling():
    gateway = FakeGateway(statuses=[ShipmentStatus.IN_TRANSIT] * 50)
    trip = _en_route(gateway, "delivery_cancel")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))

    async def _run():
        poller = DeliveryPoller(gateway, trip, interval=0.01).start()
        await asyncio.sleep(0.03)
        trip.cancel_arrival()
        calls = gateway.status_calls
        await poller.aclose()
        return poller, calls

    poller, calls = asyncio.run(_run())
    assert not poller.running
    assert not poller.delivered
    assert gateway.status_calls <= calls + 1
    assert trip.state is TripState.EN_ROUTE


def test_poller_requires_handoff_state():
    trip = _en_route(FakeGateway(), "poller_state")
    with pytest.raises(TripStateError):
        DeliveryPoller(FakeGateway(), trip)


def test_delivery_detected_from_active_list_against_service_routes():
    active_row = {"id": "S1", "truck_id": "T9", "lat": 6.9, "lon": 3.8, "dest_lat": 7.0, "dest_lon": 3.9, "status": "IN_TRANSIT"}
    polls = [
        httpx.Response(200, json=[active_row]),
        httpx.Response(503, json={"error": "down"}),
        httpx.Response(200, json=[active_row]),
        httpx.Response(200, json=[]),
    ]
    paths = []

    def _service(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/api/shipments/verify":
            return httpx.Response(200, json={"success": True, "message": "Location verified"})
        if request.url.path == "/api/shipments/active":
            return polls.pop(0)
        return httpx.Response(404, json={"error": "not found"})

    gateway = ShipmentGateway(
        session=Session(token="tok", role=Role.DRIVER),
        transport=httpx.MockTransport(_service),
    )
    store = SessionStore(initial={"active_shipment": "S1", "active_truck": "T9"})
    trip = TripLifecycle(gateway, store)
    asyncio.run(trip.confirm_arrival((7.0, 3.9)))
    poller = DeliveryPoller(gateway, trip, interval=0.01)

    async def _drive():
        observed = []
        for _ in range(4):
            await poller.poll_once()
            observed.append(trip.state)
        return observed

    observed = asyncio.run(_drive())
    assert observed == [
        TripState.AWAITING_DELIVERY_CONFIRMATION,
        TripState.AWAITING_DELIVERY_CONFIRMATION,
        TripState.AWAITING_DELIVERY_CONFIRMATION,
        TripState.DELIVERED,
    ]
    assert poller.delivered
    assert set(paths) == {"/api/shipments/verify", "/api/shipments/active"}


def test_unknown_status_is_no_update():
    gateway = FakeGateway(statuses=[None, None, ShipmentStatus.DELIVERED])
    trip = _en_route(gateway, "delivery_unknown")
    asyncio.run(trip.confirm_arrival((6.5, 3.3)))
    poller = DeliveryPoller(gateway, trip, interval=0.01)

    async def _drive():
        await poller.poll_once()
        await poller.poll_once()
        held = trip.state
        await poller.poll_once()
        return held

    held = asyncio.run(_drive())
    assert held is TripState.AWAITING_DELIVERY_CONFIRMATION
    assert trip.state is TripState.DELIVERED
    assert gateway.status_calls == 3
