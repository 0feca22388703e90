"""
Realtime relay: WS /v1/ws?token=...

Bridges NotificationBus topics (Redis pub/sub) to a client socket:
  - drivers listen on ``all-drivers`` and ``driver-<id>``; when a
    ``trip-assigned`` event arrives they are joined to that trip's room
  - any participant may send {"action": "join" | "leave", "trip_id": ...}
  - the caller's current open trip room is joined on connect

A driver's socket is recorded as its channel handle and cleared on close.
"""
import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from redis.asyncio.client import PubSub

from app.dependencies import Services, get_ws_services
from app.errors import DispatchError
from app.middleware.auth import Identity, Role, decode_identity
from app.services.notifications import ALL_DRIVERS_TOPIC, TRIP_ASSIGNED, driver_topic, trip_topic

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1", tags=["Realtime"])


def base_topics(identity: Identity) -> list[str]:
    if identity.role is Role.driver:
        return [ALL_DRIVERS_TOPIC, driver_topic(identity.subject_id)]
    return []


@router.websocket("/ws")
async def realtime(websocket: WebSocket, token: str, services: Services = Depends(get_ws_services)):
    try:
        identity = decode_identity(token)
    except DispatchError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    channel_id = uuid.uuid4().hex
    pubsub = services.redis.pubsub()

    topics = base_topics(identity)
    active = await services.lifecycle.active_trip(identity)
    if active is not None:
        topics.append(trip_topic(active.id))
    if topics:
        await pubsub.subscribe(*topics)

    if identity.role is Role.driver:
        await services.store.set_driver_channel(identity.subject_id, channel_id)
    logger.info("Realtime channel %s opened for %s %s", channel_id, identity.role.value, identity.subject_id)

    forwarder = asyncio.create_task(_forward(websocket, pubsub))
    try:
        while True:
            message = await websocket.receive_json()
            await _handle_client_message(websocket, pubsub, services, identity, message)
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
        await pubsub.aclose()
        if identity.role is Role.driver:
            await services.store.set_driver_channel(identity.subject_id, None, expected=channel_id)
        logger.info("Realtime channel %s closed", channel_id)


async def _handle_client_message(
    websocket: WebSocket,
    pubsub: PubSub,
    services: Services,
    identity: Identity,
    message: dict,
) -> None:
    action = message.get("action")
    trip_id = message.get("trip_id")
    if action not in ("join", "leave") or not isinstance(trip_id, str):
        await websocket.send_json({"type": "error", "error": "Unknown action", "kind": "invalid_input"})
        return

    if action == "leave":
        await pubsub.unsubscribe(trip_topic(trip_id))
        await websocket.send_json({"type": "left", "trip_id": trip_id})
        return

    try:
        await services.lifecycle.get_trip(trip_id, identity)
    except DispatchError as exc:
        await websocket.send_json({"type": "error", **exc.to_dict()})
        return
    await pubsub.subscribe(trip_topic(trip_id))
    await websocket.send_json({"type": "joined", "trip_id": trip_id})


async def _forward(websocket: WebSocket, pubsub: PubSub) -> None:
    while True:
        if not pubsub.subscribed:
            await asyncio.sleep(0.5)
            continue
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        if message is None:
            continue
        try:
            payload = json.loads(message["data"])
        except (TypeError, ValueError):
            logger.warning("Dropping malformed bus message on %s", message.get("channel"))
            continue
        await websocket.send_json({"topic": message["channel"], **payload})

        # Assigned driver joins the trip room, like a forced socket join
        if payload.get("event") == TRIP_ASSIGNED:
            trip = (payload.get("data") or {}).get("trip") or {}
            if trip.get("id"):
                await pubsub.subscribe(trip_topic(trip["id"]))
