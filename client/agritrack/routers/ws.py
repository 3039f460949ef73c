"""Live feeds: the depot fleet map and the driver's handoff screen.

Each socket owns its pollers; closing the socket stops them.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from agritrack.core.auth import get_session, get_transport
from agritrack.core.config import get_settings
from agritrack.core.errors import AgriTrackError
from agritrack.core.logging import logger
from agritrack.models.session import Role, Session
from agritrack.models.shipment import ArrivalEvent, DashboardSummary, FleetSnapshot, TripState
from agritrack.services.delivery_poller import DeliveryPoller
from agritrack.services.driver_devices import driver_devices
from agritrack.services.fleet_reconciler import FleetReconciler
from agritrack.services.gateway import ShipmentGateway
from agritrack.services.session_store import CARRIER_KEY, SHIPMENT_KEY

router = APIRouter(tags=["live"])


async def _admit(ws: WebSocket, role: Role) -> Optional[Session]:
    session = get_session(ws)
    if session is None or session.role is not role:
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    await ws.accept()
    return session


async def _pump(ws: WebSocket, queue: "asyncio.Queue[Dict[str, Any]]") -> None:
    while True:
        message = await queue.get()
        await ws.send_json(message)


@router.websocket("/ws/fleet")
async def fleet_feed(ws: WebSocket, transport: Optional[httpx.AsyncBaseTransport] = Depends(get_transport)):
    session = await _admit(ws, Role.DEPOT_OPERATOR)
    if session is None:
        return

    settings = get_settings()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    reconciler = FleetReconciler(
        ShipmentGateway(session=session, transport=transport),
        time_range=settings.normalized_time_range(ws.query_params.get("range")),
    )

    def on_snapshot(snapshot: FleetSnapshot) -> None:
        queue.put_nowait({
            "type": "fleet",
            "shipments": [entry.model_dump(mode="json") for entry in snapshot.entries],
            "bounds": reconciler.bounds.model_dump() if reconciler.bounds else None,
        })

    def on_arrival(event: ArrivalEvent) -> None:
        queue.put_nowait({"type": "arrival", **event.model_dump(mode="json")})

    def on_summary(summary: DashboardSummary) -> None:
        queue.put_nowait({"type": "summary", **summary.model_dump()})

    reconciler.add_snapshot_listener(on_snapshot)
    reconciler.add_arrival_listener(on_arrival)
    reconciler.add_summary_listener(on_summary)

    sender = asyncio.create_task(_pump(ws, queue))
    reconciler.start()
    logger.info("Fleet feed opened", time_range=reconciler.time_range)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        reconciler.stop()
        sender.cancel()
        await reconciler.aclose()
        logger.info("Fleet feed closed", skipped_polls=reconciler.skipped_polls)


@router.websocket("/ws/delivery")
async def delivery_feed(ws: WebSocket, transport: Optional[httpx.AsyncBaseTransport] = Depends(get_transport)):
    session = await _admit(ws, Role.DRIVER)
    if session is None:
        return

    settings = get_settings()
    gateway = ShipmentGateway(session=session, transport=transport)
    device = driver_devices.get_or_create(
        session.token,
        gateway,
        {
            SHIPMENT_KEY: ws.cookies.get(settings.active_shipment_cookie, ""),
            CARRIER_KEY: ws.cookies.get(settings.active_carrier_cookie, ""),
        },
    )
    await device.close()
    try:
        poller = DeliveryPoller(gateway, device.trip)
    except AgriTrackError as exc:
        await ws.send_json({"type": "error", **exc.to_dict()})
        await ws.close()
        return

    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
    poller.add_listener(lambda shipment_id: queue.put_nowait({"type": "delivered", "shipment_id": shipment_id}))
    device.delivery_poller = poller

    await ws.send_json({"type": "handoff", "shipment_id": poller.shipment_id, "handoff_token": poller.handoff_token})
    sender = asyncio.create_task(_pump(ws, queue))
    poller.start()
    try:
        while True:
            command = (await ws.receive_text()).strip().lower()
            if command == "cancel" and device.trip.state is TripState.AWAITING_DELIVERY_CONFIRMATION:
                device.trip.cancel_arrival()
                queue.put_nowait({"type": "state", "state": device.trip.state.value})
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await poller.aclose()
        if device.delivery_poller is poller:
            device.delivery_poller = None
