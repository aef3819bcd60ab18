"""Application configuration for the signaling service and call client."""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..schemas.rtc import IceServer


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")

    public_base_url: str = Field(default="http://localhost:3000")
    relay_url: str = Field(default="ws://localhost:8000/api/signaling/ws")
    ice_servers: Annotated[list[IceServer], NoDecode] = Field(
        default_factory=lambda: [IceServer(urls=["stun:stun.l.google.com:19302"])]
    )

    room_id_length: int = Field(default=8, ge=4, le=64)
    room_creation: Literal["explicit", "implicit"] = Field(default="explicit")

    media_source: str | None = Field(default=None, description="Device or file opened for local capture")
    media_format: str | None = Field(default=None, description="ffmpeg input format, e.g. v4l2 or avfoundation")

    @field_validator("ice_servers", mode="before")
    @classmethod
    def _parse_ice_servers(cls, value: object) -> object:
        """Accept a JSON list of descriptors or comma-separated server URLs."""

        if isinstance(value, str):
            text = value.strip()
            if not text:
                return []
            if text.startswith("["):
                return json.loads(text)
            return [{"urls": [item.strip()]} for item in text.split(",") if item.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
