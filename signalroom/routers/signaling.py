"""Signaling WebSocket and room lookup endpoints."""
from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ..core.config import settings
from ..schemas.rtc import RoomStatusResponse
from ..services.errors import InvalidMessage, InvalidRoomId
from ..services.identity import invite_url, normalize_room_id
from ..services.signaling import relay

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/rooms/{room_id}", response_model=RoomStatusResponse)
async def get_room(room_id: str) -> RoomStatusResponse:
    """Report whether an invite link still points at a live room."""

    try:
        normalized = normalize_room_id(room_id)
    except InvalidRoomId as exc:
        raise HTTPException(status_code=422, detail=exc.message) from exc

    members = relay.registry.members(normalized)
    return RoomStatusResponse(
        room_id=normalized,
        exists=relay.registry.exists(normalized),
        participants=len(members),
        invite_url=invite_url(settings.public_base_url, normalized),
    )


@router.websocket("/signaling/ws")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Relay create/join/offer/answer/candidate/control messages between room members."""

    await websocket.accept()
    connection = await relay.connect(websocket.send_json)
    connection_id = connection.connection_id

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            raw = frame.get("text")
            if raw is None:
                await relay.send_error(connection_id, InvalidMessage("Binary frames are not supported"))
                continue
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await relay.send_error(connection_id, InvalidMessage("Messages must be valid JSON"))
                continue

            try:
                await relay.handle(connection_id, message)
            except Exception as exc:  # noqa: BLE001 - one bad message must not end the session
                logger.exception("Failed handling message from %s: %s", connection_id, exc)
    except WebSocketDisconnect:
        pass
    finally:
        await asyncio.shield(relay.disconnect(connection_id))
