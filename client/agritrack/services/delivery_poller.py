"""Watches a shipment while its handoff code is on screen."""
from __future__ import annotations

from typing import Callable, List, Optional

from agritrack.core.config import get_settings
from agritrack.core.errors import TripStateError
from agritrack.core.logging import logger
from agritrack.models.shipment import ShipmentStatus, TripState
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.polling import PollLoop
from agritrack.services.trip_lifecycle import TripLifecycle


DeliveredListener = Callable[[str], None]


class DeliveryPoller:
    """Polls shipment status until the depot confirms delivery.

    The DELIVERED transition is driven at most once; later observations of
    DELIVERED are no-ops. The poller stops itself on delivery and when the
    driver backs out of the handoff screen.

    Status is read from the active-shipment list; a degraded list is no update.
    """

    def __init__(
        self,
        gateway: ShipmentGateway,
        trip: TripLifecycle,
        interval: Optional[float] = None,
    ) -> None:
        if trip.state is not TripState.AWAITING_DELIVERY_CONFIRMATION or not trip.handoff_token:
            raise TripStateError("Delivery polling needs a trip awaiting delivery confirmation")
        self._gateway = gateway
        self._trip = trip
        self.shipment_id: str = trip.shipment_id
        self.handoff_token: str = trip.handoff_token
        self.last_status: Optional[ShipmentStatus] = None
        self.delivered = False
        self._listeners: List[DeliveredListener] = []
        self._loop: PollLoop[Optional[ShipmentStatus]] = PollLoop(
            name=f"delivery:{self.shipment_id}",
            interval=interval or get_settings().delivery_poll_interval_seconds,
            fetch=self._fetch,
            apply=self._apply,
        )
        trip.add_listener(self._on_trip_transition)

    def add_listener(self, listener: DeliveredListener) -> None:
        self._listeners.append(listener)

    @property
    def running(self) -> bool:
        return self._loop.running

    async def _fetch(self) -> Optional[ShipmentStatus]:
        return await self._gateway.fetch_shipment_status(self.shipment_id)

    def _apply(self, status: Optional[ShipmentStatus]) -> None:
        if status is None:
            return
        self.last_status = status
        if status is ShipmentStatus.DELIVERED:
            self.handle_delivered()

    def handle_delivered(self) -> bool:
        """Drive the trip to DELIVERED once; returns False for repeat observations."""
        if self.delivered:
            return False
        changed = self._trip.mark_delivered()
        self.delivered = True
        self.stop()
        if changed:
            logger.info("Delivery confirmed by depot", shipment_id=self.shipment_id)
            for listener in list(self._listeners):
                listener(self.shipment_id)
        return changed

    def _on_trip_transition(self, old_state: TripState, new_state: TripState) -> None:
        if old_state is TripState.AWAITING_DELIVERY_CONFIRMATION and new_state is TripState.EN_ROUTE:
            logger.info("Handoff dismissed; stopping delivery poll", shipment_id=self.shipment_id)
            self.stop()

    async def poll_once(self) -> bool:
        return await self._loop.poll_once()

    def start(self) -> "DeliveryPoller":
        self._loop.start()
        return self

    def stop(self) -> None:
        self._loop.stop()
        self._trip.remove_listener(self._on_trip_transition)

    async def aclose(self) -> None:
        self.stop()
        await self._loop.aclose()

    async def __aenter__(self) -> "DeliveryPoller":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
