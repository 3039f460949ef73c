"""Depot operator actions: handoff confirmation and fleet simulation."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from agritrack.core.auth import get_gateway, require_roles
from agritrack.core.errors import ValidationError
from agritrack.models.api import DepotConfirmRequest
from agritrack.models.session import Role, Session
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.trip_lifecycle import HANDOFF_PREFIX

router = APIRouter(prefix="/api/depot", tags=["depot"])

require_depot = require_roles(Role.DEPOT_OPERATOR)


def shipment_from_handoff(body: DepotConfirmRequest) -> str:
    """Resolve the shipment id from a scanned handoff token or a typed id."""
    token = (body.handoff_token or "").strip()
    if token:
        if not token.startswith(HANDOFF_PREFIX):
            raise ValidationError("Not an Agri-Track handoff code")
        shipment_id = token[len(HANDOFF_PREFIX):].strip()
    else:
        shipment_id = (body.shipment_id or "").strip()
    if not shipment_id:
        raise ValidationError("Shipment id is required")
    return shipment_id


@router.post("/confirm")
async def confirm_delivery(
    body: DepotConfirmRequest,
    session: Session = Depends(require_depot),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    shipment_id = shipment_from_handoff(body)
    message = await gateway.confirm_arrival(shipment_id)
    return {"shipment_id": shipment_id, "message": message}


@router.post("/simulate")
async def simulate_fleet(
    session: Session = Depends(require_depot),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    return {"message": await gateway.start_demo_simulation()}
