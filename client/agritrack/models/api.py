"""Request payloads accepted by the web shell."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from agritrack.models.session import Role


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    email: str
    password: str
    role: Role = Role.ORIGINATOR


class ShipmentCreateRequest(BaseModel):
    """Originator's new shipment. Range checks happen in the gateway."""

    origin_lat: float
    origin_lon: float
    dest_lat: float
    dest_lon: float
    produce_type: Optional[str] = Field(default=None, min_length=2)


class PickupRequest(BaseModel):
    pickup_code: str


class IncidentReportRequest(BaseModel):
    """Incident button press; lat/lon are absent when the device denied location."""

    incident_type: str
    description: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class ArrivalRequest(BaseModel):
    lat: float
    lon: float


class DepotConfirmRequest(BaseModel):
    """Scanned handoff token, or a bare shipment id typed by the operator."""

    handoff_token: Optional[str] = None
    shipment_id: Optional[str] = None
