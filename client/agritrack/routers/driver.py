"""Driver view: pickup, incidents and the arrival handoff."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response

from agritrack.core.auth import get_gateway, require_roles
from agritrack.core.config import get_settings
from agritrack.models.api import ArrivalRequest, IncidentReportRequest, PickupRequest
from agritrack.models.session import Role, Session
from agritrack.services.driver_devices import DriverDevice, driver_devices
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.incident_reporter import FixedGeolocator
from agritrack.services.session_store import CARRIER_KEY, SHIPMENT_KEY

router = APIRouter(tags=["driver"])

require_driver = require_roles(Role.DRIVER)


def _device(request: Request, session: Session, gateway: ShipmentGateway) -> DriverDevice:
    settings = get_settings()
    host_state = {
        SHIPMENT_KEY: request.cookies.get(settings.active_shipment_cookie, ""),
        CARRIER_KEY: request.cookies.get(settings.active_carrier_cookie, ""),
    }
    return driver_devices.get_or_create(session.token, gateway, host_state)


def _sync_cookies(device: DriverDevice, response: Response) -> None:
    settings = get_settings()
    binding = device.store.load_binding()
    if binding is None:
        response.delete_cookie(settings.active_shipment_cookie)
        response.delete_cookie(settings.active_carrier_cookie)
        return
    response.set_cookie(settings.active_shipment_cookie, binding.shipment_id, samesite="lax")
    response.set_cookie(settings.active_carrier_cookie, binding.carrier_id, samesite="lax")


def _view(device: DriverDevice) -> Dict[str, Any]:
    trip = device.trip
    return {
        "state": trip.state.value,
        "shipment_id": trip.shipment_id,
        "carrier_id": trip.carrier_id,
        "handoff_token": trip.handoff_token,
        "arrival_radius_meters": get_settings().arrival_radius_meters,
        "incidents": [incident.model_dump(mode="json") for incident in trip.incidents],
    }


@router.get("/driver")
def driver_view(
    request: Request,
    response: Response,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    _sync_cookies(device, response)
    return _view(device)


@router.post("/api/driver/pickup")
async def pickup(
    body: PickupRequest,
    request: Request,
    response: Response,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    await device.trip.redeem(body.pickup_code)
    _sync_cookies(device, response)
    return _view(device)


@router.post("/api/driver/incidents")
async def report_incident(
    body: IncidentReportRequest,
    request: Request,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    position = (body.lat, body.lon) if body.lat is not None and body.lon is not None else None
    geolocator = FixedGeolocator(position, reason="Location access denied")
    incident = await device.trip.report_incident(body.incident_type, body.description, geolocator=geolocator)
    return {"incident": incident.model_dump(mode="json"), **_view(device)}


@router.post("/api/driver/arrival")
async def confirm_arrival(
    body: ArrivalRequest,
    request: Request,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    message = await device.trip.confirm_arrival((body.lat, body.lon))
    return {"message": message, **_view(device)}


@router.post("/api/driver/arrival/cancel")
async def cancel_arrival(
    request: Request,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    device.trip.cancel_arrival()
    await device.close()
    return _view(device)


@router.post("/api/driver/next-trip")
def next_trip(
    request: Request,
    response: Response,
    session: Session = Depends(require_driver),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    device = _device(request, session, gateway)
    device.trip.begin_next_trip()
    _sync_cookies(device, response)
    return _view(device)
