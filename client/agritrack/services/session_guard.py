"""Role-gated route admission for the three Agri-Track views.

The guard is a pure function of (path, credential). It never caches a
decision; the web shell calls it on every navigation.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from agritrack.models.session import Role, parse_role_claim


PUBLIC_ENTRY = "/"
PUBLIC_PATHS = frozenset({"/", "/login", "/register"})

PROTECTED_PREFIXES: Dict[str, Role] = {
    "/driver": Role.DRIVER,
    "/farmer": Role.ORIGINATOR,
    "/dashboard": Role.DEPOT_OPERATOR,
}

HOME_PATHS: Dict[Role, str] = {
    Role.DRIVER: "/driver",
    Role.ORIGINATOR: "/farmer",
    Role.DEPOT_OPERATOR: "/dashboard",
}


class CredentialDecodeError(Exception):
    """Raised when a bearer credential carries no usable role claim."""


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    target: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def redirect(cls, target: str) -> "GuardDecision":
        return cls(allowed=False, target=target)


def decode_claims(token: str) -> Dict[str, Any]:
    """Read the credential's claims without verifying its signature.

    Expiry is still honoured: an expired credential is a decode failure.
    """
    if not token or not token.strip():
        raise CredentialDecodeError("Empty credential")
    try:
        claims = jwt.decode(
            token.strip(),
            options={"verify_signature": False, "verify_exp": True},
        )
    except jwt.PyJWTError as exc:
        raise CredentialDecodeError(str(exc)) from exc
    if not isinstance(claims, dict):
        raise CredentialDecodeError("Credential claims are not an object")
    return claims


def decode_role(token: str) -> Role:
    role = parse_role_claim(decode_claims(token).get("role"))
    if role is None:
        raise CredentialDecodeError("Credential role claim is missing or unknown")
    return role


def normalize_path(path: str) -> str:
    cleaned = (path or "").split("?", 1)[0].split("#", 1)[0].strip() or "/"
    if not cleaned.startswith("/"):
        cleaned = f"/{cleaned}"
    if len(cleaned) > 1:
        cleaned = cleaned.rstrip("/") or "/"
    return cleaned


def required_role(path: str) -> Optional[Role]:
    normalized = normalize_path(path)
    for prefix, role in PROTECTED_PREFIXES.items():
        if normalized == prefix or normalized.startswith(f"{prefix}/"):
            return role
    return None


def is_guarded(path: str) -> bool:
    normalized = normalize_path(path)
    return normalized in PUBLIC_PATHS or required_role(normalized) is not None


def evaluate(path: str, credential: Optional[str]) -> GuardDecision:
    """Decide whether a navigation to ``path`` is admitted."""
    normalized = normalize_path(path)
    token = (credential or "").strip()

    if normalized in PUBLIC_PATHS:
        if not token:
            return GuardDecision.allow()
        try:
            role = decode_role(token)
        except CredentialDecodeError:
            # A stale credential must not lock the user out of the login page.
            return GuardDecision.allow()
        return GuardDecision.redirect(HOME_PATHS[role])

    needed = required_role(normalized)
    if needed is None:
        return GuardDecision.allow()

    if not token:
        return GuardDecision.redirect(PUBLIC_ENTRY)
    try:
        role = decode_role(token)
    except CredentialDecodeError:
        return GuardDecision.redirect(PUBLIC_ENTRY)
    if role is not needed:
        return GuardDecision.redirect(PUBLIC_ENTRY)
    return GuardDecision.allow()
