"""RTC client configuration.

Clients never discover STUN/TURN servers on their own; they receive the
deployment's list from here together with the relay endpoint."""
from __future__ import annotations

from dataclasses import dataclass

from ..core.config import Settings, settings as default_settings
from ..schemas.rtc import IceServer


@dataclass(slots=True)
class RtcClientConfig:
    relay_url: str
    ice_servers: list[IceServer]


def build_client_config(settings: Settings | None = None) -> RtcClientConfig:
    """Return the relay URL and ICE servers a call client should use."""

    current = settings or default_settings
    return RtcClientConfig(
        relay_url=current.relay_url,
        ice_servers=[server.model_copy() for server in current.ice_servers],
    )
