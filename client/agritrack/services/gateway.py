"""Async client for the remote Agri-Track shipment service.

All outbound traffic from the control layer goes through ``ShipmentGateway``.
It attaches the session's bearer credential, validates input locally where it
can, and turns every failure into one of the ``agritrack.core.errors`` kinds.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import httpx
from pydantic import ValidationError as PydanticValidationError

from agritrack.core.config import Settings, get_settings
from agritrack.core.errors import (
    AgriTrackError,
    InvalidCodeError,
    RemoteError,
    TooFarError,
    UnauthenticatedError,
    ValidationError,
)
from agritrack.core.logging import logger
from agritrack.models.session import Role, Session, parse_role_claim
from agritrack.models.shipment import (
    CarrierBinding,
    Coordinates,
    DashboardSummary,
    FleetEntry,
    FleetSnapshot,
    IncidentType,
    RemoteIncident,
    ShipmentStatus,
    ShipmentTicket,
)
from agritrack.services.session_guard import CredentialDecodeError, decode_role


CoordinatesLike = Union[Coordinates, Tuple[float, float], Dict[str, float]]

PICKUP_CODE_PATTERN = re.compile(r"^AG-\d{6}$")
PICKUP_CODE_LENGTH = 9


def normalize_pickup_code(code: str) -> str:
    return str(code or "").strip().upper()


def check_pickup_code(code: str) -> str:
    """Validate the ``AG-`` + 6 digits format; returns the normalized code."""
    normalized = normalize_pickup_code(code)
    if len(normalized) != PICKUP_CODE_LENGTH:
        raise InvalidCodeError("Pickup code must be 9 characters (AG-XXXXXX)")
    if not PICKUP_CODE_PATTERN.match(normalized):
        raise InvalidCodeError("Invalid format (AG-XXXXXX)")
    return normalized


def to_coordinates(value: CoordinatesLike, label: str = "coordinates") -> Coordinates:
    """Coerce and range-check a point, raising ``ValidationError`` when out of range."""
    if isinstance(value, Coordinates):
        data = value.model_dump()
    elif isinstance(value, dict):
        data = {"lat": value.get("lat", value.get("latitude")), "lon": value.get("lon", value.get("longitude"))}
    else:
        try:
            lat, lon = value
        except (TypeError, ValueError):
            raise ValidationError(f"{label} must be a (lat, lon) pair")
        data = {"lat": lat, "lon": lon}
    try:
        return Coordinates.model_validate(data)
    except PydanticValidationError:
        raise ValidationError(f"{label} are outside the valid latitude/longitude range")


def _error_message(response: httpx.Response) -> str:
    message = f"HTTP Error: {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        return message
    if isinstance(body, dict):
        if body.get("error"):
            return str(body["error"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return "; ".join(str(item) for item in errors)
        if body.get("detail"):
            return str(body["detail"])
    return message


def _wire_id(row: Any, key: str) -> Optional[str]:
    if not isinstance(row, dict):
        return None
    value = row.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def _is_proximity_rejection(message: str) -> bool:
    lowered = message.lower()
    return "too far" in lowered or ("away" in lowered and "destination" in lowered)


class ShipmentGateway:
    """Sole channel from the control layer to the shipment service."""

    def __init__(
        self,
        session: Optional[Session] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session = session
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self.settings.normalized_base_url()

    def is_authenticated(self) -> bool:
        return self.session is not None

    def logout(self) -> None:
        self.session = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.session is not None:
            headers.update(self.session.authorization_header())
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        if authenticated and self.session is None:
            raise UnauthenticatedError(f"Sign in required before calling {path}")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.settings.request_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise RemoteError(f"Shipment service request failed: {exc}") from exc

        if response.status_code == 401 and authenticated:
            raise UnauthenticatedError(_error_message(response))
        return response

    @staticmethod
    def _payload(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteError("Shipment service returned an unreadable response", response.status_code) from exc

    @staticmethod
    def _raise_remote(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise RemoteError(_error_message(response), response.status_code)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> Session:
        email = str(email or "").strip()
        if not email or not password:
            raise ValidationError("Email and password are required")

        response = await self._request(
            "POST",
            "/login",
            json={"email": email, "password": password},
            authenticated=False,
        )
        if response.status_code == 401:
            raise UnauthenticatedError(_error_message(response))
        self._raise_remote(response)

        data = self._payload(response)
        token = str(data.get("token") or "").strip()
        if not token:
            raise RemoteError("Login response did not include a token")

        role = parse_role_claim(data.get("role"))
        if role is None:
            try:
                role = decode_role(token)
            except CredentialDecodeError as exc:
                raise RemoteError(f"Login returned an unusable credential: {exc}") from exc

        user_id = data.get("user_id")
        self.session = Session(token=token, role=role, user_id=str(user_id) if user_id is not None else None)
        logger.info("Session established", role=role.value, user_id=self.session.user_id)
        return self.session

    async def register(self, email: str, password: str, role: Role) -> Dict[str, Any]:
        email = str(email or "").strip()
        if not email or not password:
            raise ValidationError("All fields are required")

        response = await self._request(
            "POST",
            "/register",
            json={"email": email, "password": password, "role": Role(role).value},
            authenticated=False,
        )
        self._raise_remote(response)
        return self._payload(response)

    # ------------------------------------------------------------------
    # One-shot operations: errors propagate to the caller
    # ------------------------------------------------------------------

    async def create_shipment(self, origin: CoordinatesLike, destination: CoordinatesLike) -> ShipmentTicket:
        start = to_coordinates(origin, "Origin coordinates")
        end = to_coordinates(destination, "Destination coordinates")

        response = await self._request(
            "POST",
            "/api/shipments",
            json={
                "origin_lat": start.lat,
                "origin_lon": start.lon,
                "dest_lat": end.lat,
                "dest_lon": end.lon,
            },
        )
        self._raise_remote(response)
        data = self._payload(response)
        try:
            ticket = ShipmentTicket(
                id=str(data["id"]),
                pickup_code=str(data["pickup_code"]),
                status=ShipmentStatus(str(data.get("status") or "CREATED").upper()),
            )
        except (KeyError, ValueError) as exc:
            raise RemoteError(f"Invalid create-shipment response: {exc}") from exc
        logger.info("Shipment created", shipment_id=ticket.id)
        return ticket

    async def redeem_pickup_code(self, code: str) -> CarrierBinding:
        normalized = check_pickup_code(code)

        response = await self._request("POST", "/api/shipments/pickup", json={"pickup_code": normalized})
        if response.status_code in {400, 404, 409}:
            raise InvalidCodeError(_error_message(response))
        self._raise_remote(response)

        data = self._payload(response)
        if not data.get("success", True):
            raise InvalidCodeError("Invalid pickup code")
        shipment_id = str(data.get("shipment_id") or "").strip()
        carrier_id = str(data.get("truck_id") or "").strip()
        if not shipment_id or not carrier_id:
            raise RemoteError("Pickup response did not include a shipment binding")

        origin = None
        if data.get("origin_lat") is not None and data.get("origin_lon") is not None:
            try:
                origin = Coordinates(lat=float(data["origin_lat"]), lon=float(data["origin_lon"]))
            except (PydanticValidationError, TypeError, ValueError):
                origin = None
        return CarrierBinding(shipment_id=shipment_id, carrier_id=carrier_id, origin=origin)

    async def report_incident(
        self,
        shipment_id: str,
        carrier_id: str,
        coordinates: CoordinatesLike,
        incident_type: IncidentType,
        description: str,
        severity: int,
    ) -> Dict[str, Any]:
        point = to_coordinates(coordinates, "Incident coordinates")
        description = str(description or "").strip()
        if not description:
            raise ValidationError("Description is required")
        try:
            level = int(severity)
        except (TypeError, ValueError):
            raise ValidationError(f"Severity must be a number, got {severity!r}")
        if not 1 <= level <= 5:
            raise ValidationError("Severity must be between 1 and 5")
        try:
            kind = IncidentType(str(getattr(incident_type, "value", incident_type)).upper())
        except ValueError:
            raise ValidationError(f"Unknown incident type: {incident_type}")

        response = await self._request(
            "POST",
            "/api/telemetry/incident",
            json={
                "truck_id": carrier_id,
                "shipment_id": shipment_id,
                "latitude": point.lat,
                "longitude": point.lon,
                "incident_type": kind.value,
                "description": description,
                "severity": level,
            },
        )
        self._raise_remote(response)
        return self._payload(response)

    async def verify_arrival(self, shipment_id: str, coordinates: CoordinatesLike) -> str:
        point = to_coordinates(coordinates, "Arrival coordinates")
        response = await self._request(
            "POST",
            "/api/shipments/verify",
            json={"shipment_id": shipment_id, "lat": point.lat, "lon": point.lon},
        )
        return self._arrival_result(response, default="Arrival verified")

    async def confirm_arrival(self, shipment_id: str) -> str:
        response = await self._request("POST", "/api/shipments/complete", json={"shipment_id": shipment_id})
        return self._arrival_result(response, default="Shipment delivered")

    def _arrival_result(self, response: httpx.Response, default: str) -> str:
        if response.status_code == 400:
            message = _error_message(response)
            if _is_proximity_rejection(message):
                raise TooFarError(message)
            raise RemoteError(message, response.status_code)
        self._raise_remote(response)
        data = self._payload(response)
        return str(data.get("message") or default)

    async def start_demo_simulation(self) -> str:
        response = await self._request("GET", "/api/simulate/demo")
        self._raise_remote(response)
        return str(self._payload(response).get("message") or "Fleet simulation started")

    # ------------------------------------------------------------------
    # Polled operations: fail soft, never raise
    # ------------------------------------------------------------------

    async def list_active_shipments(self) -> FleetSnapshot:
        try:
            response = await self._request("GET", "/api/shipments/active")
            self._raise_remote(response)
            rows = self._payload(response)
        except AgriTrackError as exc:
            logger.warning("Active shipment poll failed", kind=exc.kind, error=exc.message)
            return FleetSnapshot(degraded=True)

        if not isinstance(rows, list):
            logger.warning("Active shipment poll returned a non-list body")
            return FleetSnapshot(degraded=True)

        entries: List[FleetEntry] = []
        unreadable_carriers: Set[str] = set()
        unreadable_shipments: Set[str] = set()
        for row in rows:
            try:
                entries.append(FleetEntry.from_wire(row))
                continue
            except (AttributeError, KeyError, TypeError, ValueError, PydanticValidationError) as exc:
                error = str(exc)

            # A row that fails to parse still belongs to the active set.
            carrier_id = _wire_id(row, "truck_id")
            shipment_id = _wire_id(row, "id")
            if carrier_id is None and shipment_id is None:
                logger.warning("Active shipment poll returned an unidentifiable row", error=error)
                return FleetSnapshot(degraded=True)
            logger.warning("Skipping unreadable fleet row", carrier_id=carrier_id, shipment_id=shipment_id, error=error)
            if carrier_id is not None:
                unreadable_carriers.add(carrier_id)
            if shipment_id is not None:
                unreadable_shipments.add(shipment_id)
        return FleetSnapshot(
            entries=entries,
            unreadable_carriers=unreadable_carriers,
            unreadable_shipments=unreadable_shipments,
        )

    async def fetch_shipment_status(self, shipment_id: str) -> Optional[ShipmentStatus]:
        """Status of one shipment, read from the active list.

        The service exposes no single-shipment read, so a shipment missing from
        a complete active list is taken as DELIVERED. Returns ``None`` when the
        list is degraded or the shipment's row could not be read.
        """
        snapshot = await self.list_active_shipments()
        if snapshot.degraded or shipment_id in snapshot.unreadable_shipments:
            return None
        entry = snapshot.entry_for_shipment(shipment_id)
        if entry is None:
            return ShipmentStatus.DELIVERED
        return entry.status

    async def fetch_summary(self, time_range: Optional[str] = None) -> DashboardSummary:
        window = self.settings.normalized_time_range(time_range)
        try:
            response = await self._request("GET", "/dashboard/summary", params={"range": window})
            self._raise_remote(response)
            data = self._payload(response)
            return DashboardSummary(
                active_count=int(data.get("total_active_trucks") or 0),
                completed_today=int(data.get("total_completed_today") or 0),
                incident_count=int(data.get("alerts_count") or 0),
                avg_speed=float(data.get("avg_speed") or 0.0),
                time_range=str(data.get("time_range") or window),
            )
        except (AgriTrackError, AttributeError, TypeError, ValueError) as exc:
            logger.warning("Dashboard summary poll failed", error=str(exc))
            return DashboardSummary(time_range=window, degraded=True)

    async def list_recent_incidents(self) -> Optional[List[RemoteIncident]]:
        """Last-24h incidents, or ``None`` when the request failed."""
        try:
            response = await self._request("GET", "/api/telemetry/incidents")
            self._raise_remote(response)
            rows = self._payload(response)
        except AgriTrackError as exc:
            logger.warning("Incident feed poll failed", kind=exc.kind, error=exc.message)
            return None

        if rows is None:
            rows = []
        if not isinstance(rows, list):
            logger.warning("Incident feed poll returned a non-list body")
            return None

        incidents: List[RemoteIncident] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                incidents.append(
                    RemoteIncident(
                        carrier_id=str(row["truck_id"]),
                        incident_type=str(row.get("incident_type") or ""),
                        description=str(row.get("description") or ""),
                        severity=int(row.get("severity") or 1),
                        time=row.get("time"),
                    )
                )
            except (KeyError, TypeError, ValueError, PydanticValidationError):
                continue
        return incidents
