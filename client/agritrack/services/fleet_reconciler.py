"""Dashboard-side reconciliation of the live fleet feed.

The shipment service only lists shipments that are currently active, so an
arrival shows up as a carrier disappearing between two successive snapshots.
A failed poll is "no update", never "empty fleet": it must not produce
arrival events.
"""
from __future__ import annotations

from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from agritrack.core.config import get_settings
from agritrack.core.logging import logger
from agritrack.models.shipment import (
    ArrivalEvent,
    Coordinates,
    DashboardSummary,
    FleetBounds,
    FleetSnapshot,
    RemoteIncident,
)
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.polling import PollLoop


ArrivalListener = Callable[[ArrivalEvent], None]
SnapshotListener = Callable[[FleetSnapshot], None]
SummaryListener = Callable[[DashboardSummary], None]


def fleet_bounds(snapshot: FleetSnapshot) -> Optional[FleetBounds]:
    points: List[Coordinates] = []
    for entry in snapshot.entries:
        points.append(entry.current)
        points.append(entry.destination)
    return FleetBounds.enclosing(points)


class FleetReconciler:
    """Keeps the fleet map, arrival feed and statistics in step with the service.

    Fleet, summary and incident polls run on independent cadences and each
    can be stopped on its own.
    """

    def __init__(
        self,
        gateway: ShipmentGateway,
        fleet_interval: Optional[float] = None,
        summary_interval: Optional[float] = None,
        incident_interval: Optional[float] = None,
        time_range: Optional[str] = None,
        arrival_history: int = 50,
    ) -> None:
        settings = get_settings()
        self._gateway = gateway
        self.fleet_interval = fleet_interval or settings.fleet_poll_interval_seconds
        self.summary_interval = summary_interval or settings.summary_poll_interval_seconds
        self.incident_interval = incident_interval or settings.incident_poll_interval_seconds
        self.time_range = time_range or settings.normalized_time_range()

        self.snapshot: Optional[FleetSnapshot] = None
        self.bounds: Optional[FleetBounds] = None
        self.summary = DashboardSummary(time_range=self.time_range)
        self.incidents: List[RemoteIncident] = []
        self.recent_arrivals: Deque[ArrivalEvent] = deque(maxlen=arrival_history)
        self.skipped_polls = 0

        self._known_carriers: Set[str] = set()
        self._shipment_by_carrier: Dict[str, str] = {}
        self._arrival_listeners: List[ArrivalListener] = []
        self._snapshot_listeners: List[SnapshotListener] = []
        self._summary_listeners: List[SummaryListener] = []

        self.fleet_loop: Optional[PollLoop[FleetSnapshot]] = None
        self.summary_loop: Optional[PollLoop[DashboardSummary]] = None
        self.incident_loop: Optional[PollLoop[Optional[List[RemoteIncident]]]] = None

    @property
    def known_carriers(self) -> Set[str]:
        return set(self._known_carriers)

    def add_arrival_listener(self, listener: ArrivalListener) -> None:
        self._arrival_listeners.append(listener)

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    def add_summary_listener(self, listener: SummaryListener) -> None:
        self._summary_listeners.append(listener)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, snapshot: FleetSnapshot) -> List[ArrivalEvent]:
        """Apply one fleet poll and return the arrival events it produced."""
        if snapshot.degraded:
            self.skipped_polls += 1
            logger.info("Fleet poll degraded; keeping previous snapshot", skipped=self.skipped_polls)
            return []

        current = snapshot.carrier_ids()
        departed = sorted(self._known_carriers - current)
        arrivals = [
            ArrivalEvent(
                carrier_id=carrier_id,
                shipment_id=self._shipment_by_carrier.get(carrier_id),
                observed_at=snapshot.fetched_at,
            )
            for carrier_id in departed
        ]

        self._known_carriers = current
        self._shipment_by_carrier = {
            carrier_id: shipment_id
            for carrier_id, shipment_id in self._shipment_by_carrier.items()
            if carrier_id in snapshot.unreadable_carriers
        }
        for entry in snapshot.entries:
            if entry.carrier_id:
                self._shipment_by_carrier[entry.carrier_id] = entry.shipment_id
        self.snapshot = snapshot
        self.bounds = fleet_bounds(snapshot)

        for listener in list(self._snapshot_listeners):
            listener(snapshot)
        for event in arrivals:
            self.recent_arrivals.appendleft(event)
            logger.info("Carrier arrived", carrier_id=event.carrier_id, shipment_id=event.shipment_id)
            for listener in list(self._arrival_listeners):
                listener(event)
        return arrivals

    def apply_summary(self, summary: DashboardSummary) -> None:
        if summary.degraded:
            logger.info("Summary poll degraded; keeping previous figures")
            return
        self.summary = summary
        for listener in list(self._summary_listeners):
            listener(summary)

    def apply_incidents(self, incidents: Optional[List[RemoteIncident]]) -> None:
        if incidents is None:
            return
        self.incidents = incidents

    async def _fetch_summary(self) -> DashboardSummary:
        return await self._gateway.fetch_summary(self.time_range)

    async def poll_fleet_once(self) -> List[ArrivalEvent]:
        return self.reconcile(await self._gateway.list_active_shipments())

    # ------------------------------------------------------------------
    # Poll lifecycles
    # ------------------------------------------------------------------

    def start_fleet(self) -> PollLoop[FleetSnapshot]:
        if self.fleet_loop is None or self.fleet_loop.stopped:
            self.fleet_loop = PollLoop(
                "fleet",
                self.fleet_interval,
                self._gateway.list_active_shipments,
                self.reconcile,
            ).start()
        return self.fleet_loop

    def start_summary(self) -> PollLoop[DashboardSummary]:
        if self.summary_loop is None or self.summary_loop.stopped:
            self.summary_loop = PollLoop(
                "summary",
                self.summary_interval,
                self._fetch_summary,
                self.apply_summary,
            ).start()
        return self.summary_loop

    def start_incidents(self) -> PollLoop[Optional[List[RemoteIncident]]]:
        if self.incident_loop is None or self.incident_loop.stopped:
            self.incident_loop = PollLoop(
                "incidents",
                self.incident_interval,
                self._gateway.list_recent_incidents,
                self.apply_incidents,
            ).start()
        return self.incident_loop

    def start(self) -> "FleetReconciler":
        self.start_fleet()
        self.start_summary()
        self.start_incidents()
        return self

    def stop(self) -> None:
        for loop in (self.fleet_loop, self.summary_loop, self.incident_loop):
            if loop is not None:
                loop.stop()

    async def aclose(self) -> None:
        for loop in (self.fleet_loop, self.summary_loop, self.incident_loop):
            if loop is not None:
                await loop.aclose()

    async def __aenter__(self) -> "FleetReconciler":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
