"""Session and role models for the three Agri-Track actors."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    """Roles a session can hold, by their wire value."""

    ORIGINATOR = "farmer"
    DRIVER = "driver"
    DEPOT_OPERATOR = "depot_manager"


# Claim values accepted in a bearer credential, compared lower-cased.
ROLE_CLAIMS = {
    "farmer": Role.ORIGINATOR,
    "originator": Role.ORIGINATOR,
    "driver": Role.DRIVER,
    "depot_manager": Role.DEPOT_OPERATOR,
    "depot_operator": Role.DEPOT_OPERATOR,
}


def parse_role_claim(value: object) -> Optional[Role]:
    if not isinstance(value, str):
        return None
    return ROLE_CLAIMS.get(value.strip().lower())


class Session(BaseModel):
    """An authenticated page session: bearer credential plus decoded role."""

    token: str
    role: Role
    user_id: Optional[str] = None

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @classmethod
    def from_token(cls, token: str) -> "Session":
        """Build a session from a bearer credential; raises ``CredentialDecodeError``."""
        from agritrack.services.session_guard import CredentialDecodeError, decode_claims

        claims = decode_claims(token)
        role = parse_role_claim(claims.get("role"))
        if role is None:
            raise CredentialDecodeError("Credential role claim is missing or unknown")
        user_id = claims.get("user_id")
        return cls(token=token.strip(), role=role, user_id=str(user_id) if user_id is not None else None)
