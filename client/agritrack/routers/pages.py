"""Entry views and the read-only role pages."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from agritrack.core.auth import get_gateway, require_roles
from agritrack.core.config import get_settings
from agritrack.models.session import Role, Session
from agritrack.services.fleet_reconciler import FleetReconciler
from agritrack.services.gateway import ShipmentGateway

router = APIRouter(tags=["pages"])


@router.get("/")
async def entry():
    """Public landing view."""
    return {
        "name": "Agri-Track",
        "views": {"login": "/login", "register": "/register"},
        "roles": [role.value for role in Role],
    }


@router.get("/login")
async def login_view():
    return {"view": "login", "action": "/api/auth/login"}


@router.get("/register")
async def register_view():
    return {"view": "register", "action": "/api/auth/register", "roles": [role.value for role in Role]}


@router.get("/farmer")
async def farmer_view(session: Session = Depends(require_roles(Role.ORIGINATOR))):
    return {"view": "farmer", "user_id": session.user_id, "action": "/api/farmer/shipments"}


@router.get("/dashboard")
async def dashboard_view(
    time_range: str = Query(default="", alias="range"),
    session: Session = Depends(require_roles(Role.DEPOT_OPERATOR)),
    gateway: ShipmentGateway = Depends(get_gateway),
):
    """One-shot dashboard render; live updates come over ``/ws/fleet``."""
    reconciler = FleetReconciler(gateway, time_range=get_settings().normalized_time_range(time_range))
    await reconciler.poll_fleet_once()
    reconciler.apply_summary(await gateway.fetch_summary(reconciler.time_range))
    reconciler.apply_incidents(await gateway.list_recent_incidents())

    snapshot = reconciler.snapshot
    return {
        "view": "dashboard",
        "degraded": snapshot is None,
        "shipments": [entry.model_dump(mode="json") for entry in snapshot.entries] if snapshot else [],
        "bounds": reconciler.bounds.model_dump() if reconciler.bounds else None,
        "summary": reconciler.summary.model_dump(),
        "incidents": [incident.model_dump(mode="json") for incident in reconciler.incidents],
    }
