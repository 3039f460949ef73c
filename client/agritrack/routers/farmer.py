"""Originator actions: creating shipments."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from agritrack.core.auth import get_gateway, require_roles
from agritrack.core.logging import logger
from agritrack.models.api import ShipmentCreateRequest
from agritrack.models.session import Role, Session
from agritrack.services.gateway import ShipmentGateway

router = APIRouter(prefix="/api/farmer", tags=["farmer"])


@router.post("/shipments", status_code=201)
async def create_shipment(
    body: ShipmentCreateRequest,
    session: Session = Depends(require_roles(Role.ORIGINATOR)),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    ticket = await gateway.create_shipment(
        (body.origin_lat, body.origin_lon),
        (body.dest_lat, body.dest_lon),
    )
    if body.produce_type:
        logger.info("Shipment produce noted", shipment_id=ticket.id, produce_type=body.produce_type)
    return ticket.model_dump(mode="json")
