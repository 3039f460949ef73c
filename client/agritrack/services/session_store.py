"""Host-side storage for the session credential and the active trip binding."""
from __future__ import annotations

import json
from pathlib import Path
from threading import Lock
from typing import Dict, Optional

from agritrack.core.logging import logger
from agritrack.models.shipment import CarrierBinding


TOKEN_KEY = "token"
ROLE_KEY = "user_role"
SHIPMENT_KEY = "active_shipment"
CARRIER_KEY = "active_truck"


class SessionStore:
    """Small string key/value store, readable synchronously at startup.

    With a path it is backed by a JSON file that survives a reload; without
    one it lives in memory only (the web shell seeds it from cookies).
    """

    def __init__(self, path: Optional[str] = None, initial: Optional[Dict[str, str]] = None) -> None:
        self._path = Path(path) if path else None
        self._lock = Lock()
        self._state: Dict[str, str] = {}
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._load()
        for key, value in (initial or {}).items():
            if value:
                self._state[key] = str(value)

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            if isinstance(payload, dict):
                self._state = {str(k): str(v) for k, v in payload.items() if v is not None}
        except Exception as exc:
            logger.warning(
                "Failed to load session state; starting empty",
                path=str(self._path),
                error=str(exc),
            )

    def _save(self) -> None:
        if self._path is None:
            return
        tmp_path = self._path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, ensure_ascii=True)
        tmp_path.replace(self._path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._state.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._state[key] = str(value)
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._state.pop(key, None) is not None:
                self._save()

    def clear(self) -> None:
        with self._lock:
            self._state = {}
            self._save()

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._state)

    def remember_binding(self, binding: CarrierBinding) -> None:
        with self._lock:
            self._state[SHIPMENT_KEY] = binding.shipment_id
            self._state[CARRIER_KEY] = binding.carrier_id
            self._save()

    def load_binding(self) -> Optional[CarrierBinding]:
        with self._lock:
            shipment_id = (self._state.get(SHIPMENT_KEY) or "").strip()
            carrier_id = (self._state.get(CARRIER_KEY) or "").strip()
        if not shipment_id or not carrier_id:
            return None
        return CarrierBinding(shipment_id=shipment_id, carrier_id=carrier_id)

    def forget_binding(self) -> None:
        with self._lock:
            self._state.pop(SHIPMENT_KEY, None)
            self._state.pop(CARRIER_KEY, None)
            self._save()
