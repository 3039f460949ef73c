"""Driver-side trip state machine.

    AWAITING_ASSIGNMENT --pickup redeemed--> EN_ROUTE
    EN_ROUTE --arrival verified--> AWAITING_DELIVERY_CONFIRMATION
    AWAITING_DELIVERY_CONFIRMATION --depot confirmed--> DELIVERED
    AWAITING_DELIVERY_CONFIRMATION --driver cancels--> EN_ROUTE
    DELIVERED --next trip--> AWAITING_ASSIGNMENT

Every transition that depends on the shipment service happens only after the
gateway call has returned successfully.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Optional, Set

from agritrack.core.errors import InvalidCodeError, TripStateError
from agritrack.core.logging import logger
from agritrack.models.shipment import CarrierBinding, Incident, IncidentType, TripState
from agritrack.services.gateway import PICKUP_CODE_LENGTH, CoordinatesLike, ShipmentGateway, normalize_pickup_code
from agritrack.services.incident_reporter import Geolocator, IncidentReporter
from agritrack.services.session_store import SessionStore


TRIP_TRANSITIONS: Dict[TripState, Set[TripState]] = {
    TripState.AWAITING_ASSIGNMENT: {TripState.EN_ROUTE},
    TripState.EN_ROUTE: {TripState.AWAITING_DELIVERY_CONFIRMATION},
    TripState.AWAITING_DELIVERY_CONFIRMATION: {TripState.DELIVERED, TripState.EN_ROUTE},
    TripState.DELIVERED: {TripState.AWAITING_ASSIGNMENT},
}

HANDOFF_PREFIX = "AGRITRACK:DELIVER:"

TransitionListener = Callable[[TripState, TripState], None]


class TripLifecycle:
    """Tracks one driver device through a shipment."""

    def __init__(
        self,
        gateway: ShipmentGateway,
        store: SessionStore,
        geolocator: Optional[Geolocator] = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._listeners: List[TransitionListener] = []
        self._redeeming = False

        # Reload recovery: a remembered binding means the trip is already underway.
        self.binding: Optional[CarrierBinding] = store.load_binding()
        self.state = TripState.EN_ROUTE if self.binding else TripState.AWAITING_ASSIGNMENT
        self.reporter = IncidentReporter(gateway, self._active_binding, geolocator)

    @property
    def shipment_id(self) -> Optional[str]:
        return self.binding.shipment_id if self.binding else None

    @property
    def carrier_id(self) -> Optional[str]:
        return self.binding.carrier_id if self.binding else None

    @property
    def handoff_token(self) -> Optional[str]:
        if self.state is TripState.AWAITING_DELIVERY_CONFIRMATION and self.binding:
            return f"{HANDOFF_PREFIX}{self.binding.shipment_id}"
        return None

    @property
    def incidents(self) -> List[Incident]:
        return self.reporter.incidents

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _active_binding(self) -> Optional[CarrierBinding]:
        if self.state in {TripState.EN_ROUTE, TripState.AWAITING_DELIVERY_CONFIRMATION}:
            return self.binding
        return None

    def _require(self, *states: TripState) -> None:
        if self.state not in states:
            expected = ", ".join(state.value for state in states)
            raise TripStateError(f"Trip is {self.state.value}; expected {expected}")

    def _transition(self, new_state: TripState) -> None:
        old_state = self.state
        if new_state not in TRIP_TRANSITIONS[old_state]:
            raise TripStateError(f"Invalid transition: {old_state.value} -> {new_state.value}")
        self.state = new_state
        logger.info(
            "Trip state changed",
            from_state=old_state.value,
            to_state=new_state.value,
            shipment_id=self.shipment_id,
            carrier_id=self.carrier_id,
        )
        for listener in list(self._listeners):
            listener(old_state, new_state)

    async def redeem(self, code: str) -> CarrierBinding:
        """Redeem a pickup code; enters EN_ROUTE only once the service accepts it."""
        self._require(TripState.AWAITING_ASSIGNMENT)
        if len(normalize_pickup_code(code)) < PICKUP_CODE_LENGTH:
            raise InvalidCodeError("Invalid Pickup Code")
        if self._redeeming:
            raise TripStateError("Pickup already in progress")

        self._redeeming = True
        try:
            binding = await self._gateway.redeem_pickup_code(code)
        finally:
            self._redeeming = False

        if self.state is not TripState.AWAITING_ASSIGNMENT:
            raise TripStateError("Trip changed state while the pickup was in flight")
        self.binding = binding
        self._store.remember_binding(binding)
        self._transition(TripState.EN_ROUTE)
        return binding

    async def confirm_arrival(self, coordinates: CoordinatesLike) -> str:
        """Driver says "arrived": verify proximity, then wait for the depot."""
        self._require(TripState.EN_ROUTE)
        message = await self._gateway.verify_arrival(self.binding.shipment_id, coordinates)
        if self.state is TripState.EN_ROUTE:
            self._transition(TripState.AWAITING_DELIVERY_CONFIRMATION)
        return message

    def cancel_arrival(self) -> None:
        self._require(TripState.AWAITING_DELIVERY_CONFIRMATION)
        self._transition(TripState.EN_ROUTE)

    def mark_delivered(self) -> bool:
        """Apply the depot's confirmation. Returns False when already delivered."""
        if self.state is TripState.DELIVERED:
            return False
        self._require(TripState.AWAITING_DELIVERY_CONFIRMATION)
        self._store.forget_binding()
        self._transition(TripState.DELIVERED)
        return True

    def begin_next_trip(self) -> None:
        self._require(TripState.DELIVERED)
        self.binding = None
        self.reporter.clear()
        self._transition(TripState.AWAITING_ASSIGNMENT)

    async def report_incident(
        self,
        incident_type: IncidentType | str,
        description: Optional[str] = None,
        geolocator: Optional[Geolocator] = None,
    ) -> Incident:
        return await self.reporter.report(incident_type, description=description, geolocator=geolocator)
