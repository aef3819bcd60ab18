"""In-memory WebRTC signaling relay."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable
from uuid import uuid4

from pydantic import ValidationError

from ..core.config import settings
from ..schemas.signaling import ClientMessage, ClientMessageType, ErrorPayload, RelayEvent, RelayEventType
from .errors import InvalidMessage, InvalidRoomId, NotInRoom, SignalingError
from .identity import normalize_room_id
from .registry import RoomRegistry

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]

FORWARDED_TYPES = {
    ClientMessageType.OFFER: RelayEventType.OFFER,
    ClientMessageType.ANSWER: RelayEventType.ANSWER,
    ClientMessageType.ICE_CANDIDATE: RelayEventType.ICE_CANDIDATE,
    ClientMessageType.TOGGLE_AUDIO: RelayEventType.USER_AUDIO_TOGGLE,
    ClientMessageType.CHAT_MESSAGE: RelayEventType.CHAT_MESSAGE,
}


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def deliver(self, message: dict) -> None:
        """Send one frame; frames to the same connection never interleave."""

        async with self._send_lock:
            await self.send(message)


@dataclass(slots=True)
class _Delivery:
    targets: list[SignalingConnection]
    event: RelayEvent


class SignalingRelay:
    """Route signaling messages between the members of a room.

    Registry mutations and target resolution happen under one lock; sends
    happen outside it so a slow peer cannot stall other rooms.
    """

    def __init__(self, registry: RoomRegistry | None = None) -> None:
        self.registry = registry if registry is not None else RoomRegistry(
            mode=settings.room_creation, id_length=settings.room_id_length
        )
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, send: SendCallable, connection_id: str | None = None) -> SignalingConnection:
        """Register a client channel and greet it with its identity token."""

        connection = SignalingConnection(connection_id=connection_id or uuid4().hex, send=send)
        async with self._lock:
            self._connections[connection.connection_id] = connection
        logger.info("Connection %s opened", connection.connection_id)
        await self._deliver(
            [connection],
            RelayEvent(type=RelayEventType.CONNECTED, participant_id=connection.connection_id),
        )
        return connection

    async def disconnect(self, connection_id: str) -> None:
        """Drop a channel and notify every room it was still in."""

        async with self._lock:
            self._connections.pop(connection_id, None)
            deliveries = [
                self._user_left(room_id, connection_id, self.registry.members_except(room_id, connection_id))
                for room_id in self.registry.leave_all(connection_id)
            ]
        logger.info("Connection %s closed (left %d room(s))", connection_id, len(deliveries))
        for delivery in deliveries:
            await self._deliver(delivery.targets, delivery.event)

    async def handle(self, connection_id: str, message: Any) -> None:
        """Process one inbound message; errors are reported to the sender only."""

        try:
            if not isinstance(message, dict):
                raise InvalidMessage("Messages must be JSON objects")
            try:
                parsed = ClientMessage.model_validate(message)
            except ValidationError as exc:
                raise InvalidMessage(f"Malformed message: {exc.error_count()} validation error(s)") from exc

            async with self._lock:
                deliveries = self._route(connection_id, parsed)
        except SignalingError as exc:
            logger.info("Rejected message from %s: %s", connection_id, exc.message)
            await self.send_error(connection_id, exc)
            return

        for delivery in deliveries:
            await self._deliver(delivery.targets, delivery.event)

    async def send_error(self, connection_id: str, error: SignalingError) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        payload = ErrorPayload(code=error.code, message=error.message)
        await self._deliver(
            [connection], RelayEvent(type=RelayEventType.ERROR, payload=payload.model_dump())
        )

    def _route(self, sender_id: str, message: ClientMessage) -> list[_Delivery]:
        if message.type is ClientMessageType.CREATE_ROOM:
            deliveries = self._leave_current(sender_id)
            room_id = self.registry.create_room(sender_id)
            logger.info("Room %s created by %s", room_id, sender_id)
            deliveries.append(
                _Delivery(
                    self._lookup([sender_id]),
                    RelayEvent(type=RelayEventType.ROOM_CREATED, room_id=room_id, participants=[sender_id]),
                )
            )
            return deliveries

        if message.type is ClientMessageType.JOIN_ROOM:
            room_id = normalize_room_id(message.room_id or _payload_room(message.payload))
            if room_id in self.registry.rooms_of(sender_id):
                others = self.registry.members_except(room_id, sender_id)
                return [self._joined_reply(sender_id, room_id, others)]
            self.registry.join(room_id, sender_id)
            deliveries = self._leave_current(sender_id, keep=room_id)
            others = self.registry.members_except(room_id, sender_id)
            logger.info("Connection %s joined room %s (%d other member(s))", sender_id, room_id, len(others))
            deliveries.append(self._joined_reply(sender_id, room_id, others))
            deliveries.append(
                _Delivery(
                    self._lookup(others),
                    RelayEvent(type=RelayEventType.USER_JOINED, room_id=room_id, participant_id=sender_id),
                )
            )
            return deliveries

        room_id = self._resolve_room(sender_id, message)

        if message.type is ClientMessageType.LEAVE_ROOM:
            others = self.registry.members_except(room_id, sender_id)
            self.registry.leave(room_id, sender_id)
            logger.info("Connection %s left room %s", sender_id, room_id)
            return [self._user_left(room_id, sender_id, others)]

        event = RelayEvent(
            type=FORWARDED_TYPES[message.type],
            room_id=room_id,
            participant_id=sender_id,
            payload=message.payload,
        )
        return [_Delivery(self._lookup(self.registry.members_except(room_id, sender_id)), event)]

    def _resolve_room(self, sender_id: str, message: ClientMessage) -> str:
        rooms = self.registry.rooms_of(sender_id)
        room_id = message.room_id
        if room_id is None and message.type is ClientMessageType.LEAVE_ROOM and isinstance(message.payload, str):
            room_id = message.payload
        if room_id is None:
            if not rooms:
                raise NotInRoom("Join a room first")
            return next(iter(rooms))
        if room_id not in rooms:
            raise NotInRoom(f"Not a member of room {room_id!r}")
        return room_id

    def _leave_current(self, sender_id: str, keep: str | None = None) -> list[_Delivery]:
        deliveries = []
        for room_id in self.registry.rooms_of(sender_id) - {keep}:
            others = self.registry.members_except(room_id, sender_id)
            self.registry.leave(room_id, sender_id)
            deliveries.append(self._user_left(room_id, sender_id, others))
        return deliveries

    def _joined_reply(self, sender_id: str, room_id: str, others: Iterable[str]) -> _Delivery:
        return _Delivery(
            self._lookup([sender_id]),
            RelayEvent(type=RelayEventType.ROOM_JOINED, room_id=room_id, participants=sorted(others)),
        )

    def _user_left(self, room_id: str, member_id: str, recipients: Iterable[str]) -> _Delivery:
        return _Delivery(
            self._lookup(recipients),
            RelayEvent(type=RelayEventType.USER_LEFT, room_id=room_id, participant_id=member_id),
        )

    def _lookup(self, connection_ids: Iterable[str]) -> list[SignalingConnection]:
        return [self._connections[cid] for cid in connection_ids if cid in self._connections]

    async def _deliver(self, targets: list[SignalingConnection], event: RelayEvent) -> None:
        if not targets:
            return
        wire = event.to_wire()
        results = await asyncio.gather(*(target.deliver(wire) for target in targets), return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.debug("Dropped %s for %s: %s", event.type.value, target.connection_id, result)


def _payload_room(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("room_id"), str):
        return payload["room_id"]
    raise InvalidRoomId("join-room requires a room id")


relay = SignalingRelay()
