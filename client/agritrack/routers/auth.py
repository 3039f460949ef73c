"""Sign-in, registration and sign-out for the web shell."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response

from agritrack.core.auth import get_gateway, get_session
from agritrack.core.config import get_settings
from agritrack.models.api import LoginRequest, RegisterRequest
from agritrack.models.session import Session
from agritrack.services.driver_devices import driver_devices
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.session_guard import HOME_PATHS

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login")
async def login(body: LoginRequest, response: Response, gateway: ShipmentGateway = Depends(get_gateway)):
    settings = get_settings()
    session = await gateway.login(body.email, body.password)
    response.set_cookie(
        settings.token_cookie,
        session.token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )
    response.set_cookie(settings.role_cookie, session.role.value, samesite="lax")
    return {"role": session.role.value, "user_id": session.user_id, "home": HOME_PATHS[session.role]}


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, gateway: ShipmentGateway = Depends(get_gateway)):
    created = await gateway.register(body.email, body.password, body.role)
    return {"ok": True, "email": created.get("email", body.email), "role": body.role.value}


@router.post("/logout")
async def logout(response: Response, session: Optional[Session] = Depends(get_session)):
    settings = get_settings()
    if session is not None:
        await driver_devices.drop(session.token)
    for name in (
        settings.token_cookie,
        settings.role_cookie,
        settings.active_shipment_cookie,
        settings.active_carrier_cookie,
    ):
        response.delete_cookie(name)
    return {"ok": True, "home": "/"}
