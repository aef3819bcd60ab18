"""Data contracts for RTC configuration endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class IceServer(BaseModel):
    urls: list[str] = Field(..., min_length=1, description="STUN/TURN server URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls", mode="before")
    @classmethod
    def _wrap_single_url(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value


class RtcConfigResponse(BaseModel):
    relay_url: str = Field(..., description="WebSocket endpoint of the signaling relay")
    ice_servers: list[IceServer] = Field(default_factory=list)


class RoomStatusResponse(BaseModel):
    room_id: str
    exists: bool
    participants: int = Field(..., ge=0, description="Connections currently in the room")
    invite_url: str = Field(..., description="Shareable link that opens the room")
