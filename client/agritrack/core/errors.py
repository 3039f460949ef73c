"""Error taxonomy for the freight-tracking control layer.

Every failure surfaced by the gateway or the trip components is one of the
classes below, so callers can render a single ``{kind, message}`` shape.
Polling components swallow ``RemoteError`` and retry on the next interval;
one-shot actions let it propagate.
"""
from __future__ import annotations

from typing import Dict


class AgriTrackError(Exception):
    """Base class carrying a stable ``kind`` and a user-facing message."""

    kind = "error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = (message or "").strip() or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(AgriTrackError):
    """Malformed input caught before any network call."""

    kind = "validation"
    default_message = "Invalid input"


class InvalidCodeError(AgriTrackError):
    """Pickup code rejected, locally by format or remotely by the service."""

    kind = "invalid_code"
    default_message = "Invalid pickup code"


class UnauthenticatedError(AgriTrackError):
    kind = "unauthenticated"
    default_message = "Sign in required"


class TooFarError(AgriTrackError):
    """Arrival verification rejected on geographic proximity."""

    kind = "too_far"
    default_message = "You are too far from the destination."


class RemoteError(AgriTrackError):
    kind = "remote"
    default_message = "Shipment service unavailable"

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LocationUnavailableError(AgriTrackError):
    kind = "location_unavailable"
    default_message = "Location access denied"


class TripStateError(AgriTrackError):
    """Operation attempted while the trip is in a state that does not allow it."""

    kind = "trip_state"
    default_message = "No active trip found"
