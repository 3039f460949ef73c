"""Session resolution and role-gated dependencies for the web shell."""
from __future__ import annotations

from typing import Optional

import httpx
from fastapi import Depends, HTTPException, status
from starlette.requests import HTTPConnection

from agritrack.core.config import get_settings
from agritrack.core.logging import logger
from agritrack.models.session import Role, Session
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.session_guard import CredentialDecodeError


def _bearer_token(connection: HTTPConnection) -> Optional[str]:
    settings = get_settings()
    token = (connection.cookies.get(settings.token_cookie) or "").strip()
    if token:
        return token
    auth_header = (connection.headers.get("Authorization") or "").strip()
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


def get_session(connection: HTTPConnection) -> Optional[Session]:
    """Resolve the caller's session from the token cookie or bearer header."""
    token = _bearer_token(connection)
    if not token:
        return None
    try:
        return Session.from_token(token)
    except CredentialDecodeError as exc:
        logger.info("Ignoring undecodable credential", error=str(exc))
        return None


def get_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport used for outbound calls; None means the real network."""
    return None


def get_gateway(
    session: Optional[Session] = Depends(get_session),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_transport),
) -> ShipmentGateway:
    return ShipmentGateway(session=session, transport=transport)


def require_roles(*allowed_roles: Role):
    """Dependency factory that enforces role-based access control."""
    allowed = {Role(role) for role in allowed_roles}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(session: Optional[Session] = Depends(get_session)) -> Session:
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Bearer token required",
            )
        if session.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{session.role.value}' not permitted for this operation",
            )
        return session

    return _guard
