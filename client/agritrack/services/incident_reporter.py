"""Optimistic road-incident reporting for the driver device."""
from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Protocol, Set
from uuid import uuid4

from agritrack.core.errors import (
    AgriTrackError,
    LocationUnavailableError,
    TripStateError,
    ValidationError,
)
from agritrack.core.logging import logger
from agritrack.models.shipment import CarrierBinding, Coordinates, Incident, IncidentStatus, IncidentType
from agritrack.services.gateway import CoordinatesLike, ShipmentGateway, to_coordinates


class Geolocator(Protocol):
    async def locate(self) -> CoordinatesLike:
        """Resolve the device position or raise ``LocationUnavailableError``."""


class FixedGeolocator:
    """Geolocator that answers with a known position, or none at all."""

    def __init__(self, coordinates: Optional[CoordinatesLike] = None, reason: str = "Geolocation not supported") -> None:
        self.coordinates = coordinates
        self.reason = reason

    async def locate(self) -> CoordinatesLike:
        if self.coordinates is None:
            raise LocationUnavailableError(self.reason)
        return self.coordinates


def default_severity(incident_type: IncidentType) -> int:
    return 3 if incident_type is IncidentType.ACCIDENT else 1


class IncidentReporter:
    """Records an incident locally at once, then reports it and reconciles.

    Each local id ends in exactly one of two outcomes: CONFIRMED in place, or
    removed from the list. A removed id is never confirmed afterwards.
    """

    def __init__(
        self,
        gateway: ShipmentGateway,
        binding_provider: Callable[[], Optional[CarrierBinding]],
        geolocator: Optional[Geolocator] = None,
    ) -> None:
        self._gateway = gateway
        self._binding_provider = binding_provider
        self._geolocator = geolocator
        self._incidents: List[Incident] = []
        self._reverted: Set[str] = set()

    @property
    def incidents(self) -> List[Incident]:
        """Visible incidents, most recent first."""
        return list(self._incidents)

    def pending(self) -> List[Incident]:
        return [item for item in self._incidents if item.status is IncidentStatus.PENDING]

    def confirmed(self) -> List[Incident]:
        return [item for item in self._incidents if item.status is IncidentStatus.CONFIRMED]

    def clear(self) -> None:
        self._incidents = []
        self._reverted = set()

    def _find(self, local_id: str) -> Optional[Incident]:
        for item in self._incidents:
            if item.local_id == local_id:
                return item
        return None

    def _revert(self, local_id: str, reason: str) -> None:
        self._reverted.add(local_id)
        self._incidents = [item for item in self._incidents if item.local_id != local_id]
        logger.info("Incident reverted", local_id=local_id, reason=reason)

    def _confirm(self, local_id: str) -> None:
        if local_id in self._reverted:
            return
        incident = self._find(local_id)
        if incident is not None:
            incident.status = IncidentStatus.CONFIRMED

    async def _resolve_position(self, geolocator: Optional[Geolocator]) -> Coordinates:
        if geolocator is None:
            raise LocationUnavailableError("Geolocation not supported")
        position = await geolocator.locate()
        try:
            return to_coordinates(position, "Device position")
        except ValidationError as exc:
            raise LocationUnavailableError(f"Device reported an invalid position: {exc.message}") from exc

    async def report(
        self,
        incident_type: IncidentType | str,
        description: Optional[str] = None,
        geolocator: Optional[Geolocator] = None,
    ) -> Incident:
        binding = self._binding_provider()
        if binding is None:
            raise TripStateError("No active trip found")
        try:
            kind = IncidentType(str(getattr(incident_type, "value", incident_type)).upper())
        except ValueError:
            raise ValidationError(f"Unknown incident type: {incident_type}")

        incident = Incident(
            local_id=f"temp-{uuid4().hex[:12]}",
            shipment_id=binding.shipment_id,
            carrier_id=binding.carrier_id,
            incident_type=kind,
            description=(description or "").strip() or f"Reported {kind.value}",
            severity=default_severity(kind),
        )
        self._incidents.insert(0, incident)

        try:
            incident.coordinates = await self._resolve_position(geolocator or self._geolocator)
        except LocationUnavailableError:
            self._revert(incident.local_id, reason="location_unavailable")
            raise
        except asyncio.CancelledError:
            self._revert(incident.local_id, reason="cancelled")
            raise

        try:
            await self._gateway.report_incident(
                shipment_id=incident.shipment_id,
                carrier_id=incident.carrier_id,
                coordinates=incident.coordinates,
                incident_type=incident.incident_type,
                description=incident.description,
                severity=incident.severity,
            )
        except AgriTrackError as exc:
            self._revert(incident.local_id, reason=exc.kind)
            raise
        except asyncio.CancelledError:
            self._revert(incident.local_id, reason="cancelled")
            raise

        self._confirm(incident.local_id)
        logger.info(
            "Incident confirmed",
            local_id=incident.local_id,
            shipment_id=incident.shipment_id,
            incident_type=incident.incident_type.value,
        )
        return incident
