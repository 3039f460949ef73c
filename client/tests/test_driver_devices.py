"""Tests for the driver device registry."""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import jwt

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agritrack.models.shipment import TripState  # noqa: E402
from agritrack.services.driver_devices import DriverDeviceRegistry  # noqa: E402
from agritrack.services.gateway import ShipmentGateway  # noqa: E402


def _token(user_id: int, ttl: int) -> str:
    return jwt.encode(
        {"user_id": user_id, "role": "driver", "exp": int(time.time()) + ttl},
        "agritrack-test-signing-secret-0123456789",
        algorithm="HS256",
    )


def test_expired_credentials_are_evicted_on_lookup():
    registry = DriverDeviceRegistry()
    stale = _token(1, -60)
    registry.get_or_create(stale, ShipmentGateway(), {})
    assert len(registry) == 1

    live = _token(2, 3600)
    device = registry.get_or_create(live, ShipmentGateway(), {})
    assert len(registry) == 1
    assert registry.get(stale) is None
    assert registry.get(live) is device


def test_live_device_keeps_its_trip_across_lookups():
    registry = DriverDeviceRegistry()
    live = _token(3, 3600)
    first = registry.get_or_create(live, ShipmentGateway(), {"active_shipment": "S1", "active_truck": "T1"})
    again = registry.get_or_create(live, ShipmentGateway(), {})
    assert again is first
    assert again.trip.state is TripState.EN_ROUTE
    assert registry.evict_expired() == 0


def test_drop_forgets_the_device():
    registry = DriverDeviceRegistry()
    live = _token(4, 3600)
    registry.get_or_create(live, ShipmentGateway(), {"active_shipment": "S1", "active_truck": "T1"})
    asyncio.run(registry.drop(live))
    assert len(registry) == 0
    assert registry.get(live) is None
