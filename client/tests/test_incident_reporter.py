"""Tests for optimistic incident reporting."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agritrack.core.errors import (  # noqa: E402
    LocationUnavailableError,
    RemoteError,
    TripStateError,
    ValidationError,
)
from agritrack.models.shipment import CarrierBinding, IncidentStatus, IncidentType  # noqa: E402
from agritrack.services.incident_reporter import FixedGeolocator, IncidentReporter  # noqa: E402


BINDING = CarrierBinding(shipment_id="S1", carrier_id="T9")


class FakeGateway:
    def __init__(self, error=None, gate=None):
        self.error = error
        self.gate = gate
        self.reports = []

    async def report_incident(self, **payload):
        if self.gate is not None:
            await self.gate.wait()
        self.reports.append(payload)
        if self.error is not None:
            raise self.error
        return {"status": "incident_reported"}


def _reporter(gateway, binding=BINDING, coordinates=(6.5, 3.3)):
    return IncidentReporter(gateway, lambda: binding, FixedGeolocator(coordinates))


def test_incident_is_pending_until_the_service_accepts_it():
    gate = asyncio.Event()
    gateway = FakeGateway(gate=gate)
    reporter = _reporter(gateway)

    async def _run():
        task = asyncio.create_task(reporter.report(IncidentType.TRAFFIC))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        pending = [item.status for item in reporter.incidents]
        gate.set()
        incident = await task
        return pending, incident

    pending, incident = asyncio.run(_run())
    assert pending == [IncidentStatus.PENDING]
    assert incident.status is IncidentStatus.CONFIRMED
    assert reporter.confirmed() == [incident]


def test_defaults_for_description_and_severity():
    gateway = FakeGateway()
    reporter = _reporter(gateway)
    accident = asyncio.run(reporter.report("accident"))
    checkpoint = asyncio.run(reporter.report(IncidentType.POLICE_CHECKPOINT, description="  "))

    assert accident.severity == 3
    assert accident.description == "Reported ACCIDENT"
    assert checkpoint.severity == 1
    assert gateway.reports[0]["carrier_id"] == "T9"
    assert [item.local_id for item in reporter.incidents] == [checkpoint.local_id, accident.local_id]


def test_failed_report_is_removed():
    reporter = _reporter(FakeGateway(error=RemoteError("Failed to report incident", 500)))
    with pytest.raises(RemoteError):
        asyncio.run(reporter.report(IncidentType.BREAKDOWN, description="Flat tyre"))
    assert reporter.incidents == []


def test_missing_location_reverts_without_network_call():
    gateway = FakeGateway()
    reporter = _reporter(gateway, coordinates=None)
    with pytest.raises(LocationUnavailableError):
        asyncio.run(reporter.report(IncidentType.BAD_ROAD))
    assert reporter.incidents == []
    assert gateway.reports == []


def test_no_active_trip_is_rejected():
    reporter = _reporter(FakeGateway(), binding=None)
    with pytest.raises(TripStateError) as excinfo:
        asyncio.run(reporter.report(IncidentType.TRAFFIC))
    assert excinfo.value.message == "No active trip found"


def test_unknown_type_is_rejected():
    with pytest.raises(ValidationError):
        asyncio.run(_reporter(FakeGateway()).report("STAMPEDE"))


def test_cancelled_report_is_never_confirmed():
    gate = asyncio.Event()
    reporter = _reporter(FakeGateway(gate=gate))

    async def _run():
        task = asyncio.create_task(reporter.report(IncidentType.TRAFFIC))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert reporter.incidents == []
    assert reporter.pending() == []


def test_only_the_failed_report_is_reverted():
    class FlakyGateway(FakeGateway):
        async def report_incident(self, **payload):
            if payload["incident_type"] is IncidentType.ACCIDENT:
                raise RemoteError("Failed to report incident", 503)
            return await super().report_incident(**payload)

    reporter = _reporter(FlakyGateway())
    asyncio.run(reporter.report(IncidentType.TRAFFIC))
    with pytest.raises(RemoteError):
        asyncio.run(reporter.report(IncidentType.ACCIDENT))

    assert [item.incident_type for item in reporter.incidents] == [IncidentType.TRAFFIC]
    assert reporter.incidents[0].status is IncidentStatus.CONFIRMED
