"""In-memory registry of driver devices served by the web shell."""
from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, Optional

from agritrack.core.config import get_settings
from agritrack.core.logging import logger
from agritrack.services.delivery_poller import DeliveryPoller
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.session_guard import CredentialDecodeError, decode_claims
from agritrack.services.session_store import SessionStore
from agritrack.services.trip_lifecycle import TripLifecycle


class DriverDevice:
    """A driver's page session: its trip, host storage and handoff watcher."""

    def __init__(self, trip: TripLifecycle, store: SessionStore) -> None:
        self.trip = trip
        self.store = store
        self.delivery_poller: Optional[DeliveryPoller] = None

    def stop(self) -> None:
        if self.delivery_poller is not None:
            self.delivery_poller.stop()
            self.delivery_poller = None

    async def close(self) -> None:
        if self.delivery_poller is not None:
            await self.delivery_poller.aclose()
            self.delivery_poller = None


def _store_path(token: str) -> Optional[str]:
    state_dir = get_settings().session_state_path.strip()
    if not state_dir:
        return None
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:24]
    return str(Path(state_dir) / f"{digest}.json")


def _credential_live(token: str) -> bool:
    try:
        decode_claims(token)
    except CredentialDecodeError:
        return False
    return True


class DriverDeviceRegistry:
    """Maps a session credential to its driver device.

    Devices whose credential has expired are evicted on the next lookup.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, DriverDevice] = {}

    def get(self, token: str) -> Optional[DriverDevice]:
        self.evict_expired()
        return self._devices.get(token)

    def get_or_create(self, token: str, gateway: ShipmentGateway, host_state: Dict[str, str]) -> DriverDevice:
        self.evict_expired()
        device = self._devices.get(token)
        if device is None:
            store = SessionStore(path=_store_path(token), initial=host_state)
            device = DriverDevice(TripLifecycle(gateway, store), store)
            self._devices[token] = device
            logger.info("Driver device attached", state=device.trip.state.value, shipment_id=device.trip.shipment_id)
        return device

    def evict_expired(self) -> int:
        """Drop devices whose credential no longer decodes; returns how many."""
        expired = [token for token in self._devices if not _credential_live(token)]
        for token in expired:
            device = self._devices.pop(token)
            device.stop()
            logger.info("Driver device evicted", shipment_id=device.trip.shipment_id)
        return len(expired)

    async def drop(self, token: str) -> None:
        device = self._devices.pop(token, None)
        if device is not None:
            await device.close()
            device.store.clear()

    async def aclose(self) -> None:
        for token in list(self._devices):
            device = self._devices.pop(token)
            await device.close()

    def __len__(self) -> int:
        return len(self._devices)


driver_devices = DriverDeviceRegistry()
