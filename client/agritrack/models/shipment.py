"""Domain models for shipments, trips, incidents and the live fleet."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentStatus(str, Enum):
    """Server-side shipment lifecycle; the client only observes it."""

    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class TripState(str, Enum):
    """Driver-device progress through one shipment."""

    AWAITING_ASSIGNMENT = "awaiting_assignment"
    EN_ROUTE = "en_route"
    AWAITING_DELIVERY_CONFIRMATION = "awaiting_delivery_confirmation"
    DELIVERED = "delivered"


class IncidentType(str, Enum):
    POLICE_CHECKPOINT = "POLICE_CHECKPOINT"
    BREAKDOWN = "BREAKDOWN"
    ACCIDENT = "ACCIDENT"
    TRAFFIC = "TRAFFIC"
    BAD_ROAD = "BAD_ROAD"


class IncidentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class Coordinates(BaseModel):
    """A WGS84 point."""

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class ShipmentTicket(BaseModel):
    """Result of creating a shipment: what the originator hands to a driver."""

    id: str
    pickup_code: str
    status: ShipmentStatus = ShipmentStatus.CREATED


class CarrierBinding(BaseModel):
    """The (shipment, carrier) pair obtained from a successful pickup."""

    shipment_id: str
    carrier_id: str
    origin: Optional[Coordinates] = None


class Incident(BaseModel):
    """A road incident as held on the driver's device."""

    local_id: str
    shipment_id: str
    carrier_id: str
    incident_type: IncidentType
    description: str
    severity: int = Field(default=1, ge=1, le=5)
    coordinates: Optional[Coordinates] = None
    status: IncidentStatus = IncidentStatus.PENDING
    reported_at: datetime = Field(default_factory=_utcnow)


class RemoteIncident(BaseModel):
    """One row of the dashboard's recent-incident feed."""

    carrier_id: str
    incident_type: str
    description: str = ""
    severity: int = 1
    time: Optional[datetime] = None


class FleetEntry(BaseModel):
    """One active shipment as shown on the fleet map."""

    shipment_id: str
    carrier_id: Optional[str] = None
    current: Coordinates
    destination: Coordinates
    speed: float = 0.0
    status: ShipmentStatus = ShipmentStatus.IN_TRANSIT
    pickup_code: Optional[str] = None

    @classmethod
    def from_wire(cls, row: Dict[str, Any]) -> "FleetEntry":
        return cls(
            shipment_id=str(row["id"]),
            carrier_id=row.get("truck_id") or None,
            current=Coordinates(lat=float(row["lat"]), lon=float(row["lon"])),
            destination=Coordinates(lat=float(row["dest_lat"]), lon=float(row["dest_lon"])),
            speed=float(row.get("speed") or 0.0),
            status=ShipmentStatus(str(row.get("status") or "IN_TRANSIT").upper()),
            pickup_code=row.get("pickup_code"),
        )


class FleetSnapshot(BaseModel):
    """One poll's full set of active shipments.

    ``degraded`` marks a snapshot produced from a failed request; it carries no
    entries and must not be read as an empty fleet.

    Rows that failed to parse are still counted as active through
    ``unreadable_carriers`` and ``unreadable_shipments``.
    """

    entries: List[FleetEntry] = Field(default_factory=list)
    unreadable_carriers: Set[str] = Field(default_factory=set)
    unreadable_shipments: Set[str] = Field(default_factory=set)
    degraded: bool = False
    fetched_at: datetime = Field(default_factory=_utcnow)

    def carrier_ids(self) -> Set[str]:
        readable = {entry.carrier_id for entry in self.entries if entry.carrier_id}
        return readable | self.unreadable_carriers

    def entry_for_shipment(self, shipment_id: str) -> Optional[FleetEntry]:
        for entry in self.entries:
            if entry.shipment_id == shipment_id:
                return entry
        return None

    def shipment_for(self, carrier_id: str) -> Optional[str]:
        for entry in self.entries:
            if entry.carrier_id == carrier_id:
                return entry.shipment_id
        return None


class FleetBounds(BaseModel):
    """Map viewport enclosing every current and destination point."""

    south: float
    west: float
    north: float
    east: float

    @classmethod
    def enclosing(cls, points: List[Coordinates]) -> Optional["FleetBounds"]:
        if not points:
            return None
        lats = [point.lat for point in points]
        lons = [point.lon for point in points]
        return cls(south=min(lats), west=min(lons), north=max(lats), east=max(lons))


class DashboardSummary(BaseModel):
    """Aggregate fleet statistics for the depot dashboard."""

    active_count: int = 0
    completed_today: int = 0
    incident_count: int = 0
    avg_speed: float = 0.0
    time_range: str = "24h"
    degraded: bool = False


class ArrivalEvent(BaseModel):
    """A carrier that left the active set between two polls."""

    carrier_id: str
    shipment_id: Optional[str] = None
    observed_at: datetime = Field(default_factory=_utcnow)
