"""Wire envelopes exchanged over the signaling WebSocket."""
from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ClientMessageType(str, enum.Enum):
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    TOGGLE_AUDIO = "toggle-audio"
    CHAT_MESSAGE = "chat-message"
    LEAVE_ROOM = "leave-room"


class RelayEventType(str, enum.Enum):
    CONNECTED = "connected"
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    USER_AUDIO_TOGGLE = "user-audio-toggle"
    CHAT_MESSAGE = "chat-message"
    ERROR = "error"


class ClientMessage(BaseModel):
    """Message sent by a client to the relay."""

    model_config = ConfigDict(extra="ignore")

    type: ClientMessageType
    room_id: str | None = Field(default=None, description="Target room; defaults to the sender's room")
    payload: Any = Field(default=None, description="Opaque cargo, forwarded untouched")


class RelayEvent(BaseModel):
    """Event pushed by the relay to a client."""

    type: RelayEventType
    room_id: str | None = None
    participant_id: str | None = Field(default=None, description="Connection the event originates from")
    participants: list[str] | None = None
    payload: Any = None

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True, exclude={"payload"})
        if self.payload is not None:
            data["payload"] = self.payload
        return data


class ErrorPayload(BaseModel):
    code: str
    message: str
