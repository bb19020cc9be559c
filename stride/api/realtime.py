"""
Realtime WebSocket endpoint.

One connection subscribes to one topic:

    /ws/realtime/{topic}?user_id=U1&username=alex

Client -> server frames (JSON text, or the literal "ping"):
    {"type": "broadcast", "event": "typing", "payload": {...}}
    {"type": "presence", "event": "track", "payload": {...}}
    {"type": "presence", "event": "untrack"}

Server -> client frames are RealtimeEvent envelopes. A sender never
receives its own broadcast.
"""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from stride.realtime.hub import RealtimeHub
from stride.utils.logging_config import get_logger


logger = get_logger("websocket")

router = APIRouter(tags=["Realtime"])

HEARTBEAT_SECONDS = 30.0


async def _handle_frame(
    hub: RealtimeHub,
    topic: str,
    websocket: WebSocket,
    user_id: Optional[str],
    username: Optional[str],
    frame: dict,
) -> bool:
    """
    Apply one client frame. Returns True when the caller is now tracked
    in the topic's presence set.
    """
    frame_type = frame.get("type")
    event = frame.get("event")
    payload = frame.get("payload") or {}

    if frame_type == "broadcast" and event:
        await hub.broadcast(topic, event, payload, exclude=websocket)
        return False

    if frame_type == "presence" and user_id:
        if event == "track":
            meta = {"username": username or "Unknown", **payload}
            await hub.track(topic, user_id, meta)
            return True
        if event == "untrack":
            await hub.untrack(topic, user_id)
            return False

    await websocket.send_json({"type": "error", "message": "Unsupported frame"})
    return False


async def _release_connection(
    hub: RealtimeHub,
    topic: str,
    websocket: WebSocket,
    tracked_user_id: Optional[str],
) -> None:
    """
    Drop a closed connection from its topic.

    The presence leave runs shielded: teardown is often cancelled once the
    client has gone, and the remaining members must still see the leave.
    """
    hub.unsubscribe(topic, websocket)
    if tracked_user_id:
        await asyncio.shield(hub.untrack(topic, tracked_user_id))


@router.websocket("/ws/realtime/{topic}")
async def realtime_websocket(
    websocket: WebSocket,
    topic: str,
    user_id: Optional[str] = None,
    username: Optional[str] = None,
):
    """
    WebSocket endpoint for topic subscriptions.

    Presence is only available to connections that identify with
    ``user_id``; anonymous connections can still broadcast and listen.
    """
    hub: RealtimeHub = websocket.app.state.realtime_hub

    await websocket.accept()
    await hub.subscribe(topic, websocket)
    await hub.sync_presence(topic, websocket)
    logger.info(f"WebSocket subscribed to {topic}", extra={"user_id": user_id})

    tracked = False
    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=HEARTBEAT_SECONDS,
                )
            except asyncio.TimeoutError:
                try:
                    await websocket.send_text('{"type": "heartbeat"}')
                except Exception:
                    break
                continue

            if data == "ping":
                await websocket.send_text("pong")
                continue

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(frame, dict):
                await websocket.send_json({"type": "error", "message": "Invalid frame"})
                continue

            tracked = await _handle_frame(
                hub, topic, websocket, user_id, username, frame
            ) or (tracked and frame.get("event") != "untrack")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected from {topic}", extra={"user_id": user_id})
    finally:
        await _release_connection(hub, topic, websocket, user_id if tracked else None)
