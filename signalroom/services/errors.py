"""Error taxonomy shared by the relay and the call client."""
from __future__ import annotations


class SignalingError(Exception):
    """Base error; ``code`` is what goes on the wire in ``error`` events."""

    code = "signaling-error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class RoomNotFound(SignalingError):
    code = "room-not-found"

    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id!r} does not exist")
        self.room_id = room_id


class NotInRoom(SignalingError):
    code = "not-in-room"


class InvalidMessage(SignalingError):
    code = "invalid-message"


class InvalidRoomId(SignalingError, ValueError):
    code = "invalid-room-id"


class LocalMediaUnavailable(SignalingError):
    code = "local-media-unavailable"


class NegotiationFailure(SignalingError):
    code = "negotiation-failed"


class RelayDisconnected(SignalingError):
    code = "relay-disconnected"
