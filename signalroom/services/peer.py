"""aiortc-backed peer connection and local capture for the call client."""
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from ..core.config import Settings, settings as default_settings
from ..schemas.rtc import IceServer
from .errors import LocalMediaUnavailable

logger = logging.getLogger(__name__)

TrackHandler = Callable[[Any], None]
StateHandler = Callable[[str], None]


class LocalMedia:
    """Locally captured tracks plus their enabled flags."""

    def __init__(self, audio: Any = None, video: Any = None) -> None:
        self.audio = audio
        self.video = video
        self.audio_enabled = True
        self.video_enabled = True

    def tracks(self) -> list[tuple[str, Any]]:
        return [(kind, track) for kind, track in (("audio", self.audio), ("video", self.video)) if track is not None]

    def is_enabled(self, kind: str) -> bool:
        return self.audio_enabled if kind == "audio" else self.video_enabled

    def stop(self) -> None:
        for _, track in self.tracks():
            track.stop()
        self.audio = None
        self.video = None


async def open_local_media(settings: Settings | None = None) -> LocalMedia:
    """Open the configured capture device through ffmpeg."""

    current = settings or default_settings
    if not current.media_source:
        raise LocalMediaUnavailable("No capture source configured (MEDIA_SOURCE)")
    try:
        player = MediaPlayer(current.media_source, format=current.media_format)
    except Exception as exc:  # noqa: BLE001 - av raises a zoo of errors for missing devices
        raise LocalMediaUnavailable(f"Could not open {current.media_source!r}: {exc}") from exc
    if player.audio is None and player.video is None:
        raise LocalMediaUnavailable(f"{current.media_source!r} has no audio or video stream")
    return LocalMedia(audio=player.audio, video=player.video)


def build_configuration(ice_servers: Iterable[IceServer]) -> RTCConfiguration:
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def candidate_from_dict(data: dict[str, Any]) -> RTCIceCandidate | None:
    """Convert a browser ``RTCIceCandidateInit`` into an aiortc candidate.

    Returns None for the empty end-of-candidates marker.
    """

    line = data.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    if not line:
        return None
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class AiortcPeer:
    """Thin wrapper exposing the operations the negotiator drives."""

    def __init__(
        self,
        on_track: TrackHandler,
        on_state_change: StateHandler,
        ice_servers: Iterable[IceServer] | None = None,
    ) -> None:
        servers = default_settings.ice_servers if ice_servers is None else ice_servers
        self._pc = RTCPeerConnection(build_configuration(servers))
        self._senders: dict[str, tuple[Any, Any]] = {}

        @self._pc.on("track")
        def _on_track(track: Any) -> None:
            on_track(track)

        @self._pc.on("connectionstatechange")
        def _on_state() -> None:
            on_state_change(self._pc.connectionState)

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def add_local_media(self, media: LocalMedia) -> None:
        for kind, track in media.tracks():
            sender = self._pc.addTrack(track)
            self._senders[kind] = (sender, track)
            if not media.is_enabled(kind):
                self.set_sending(kind, False)

    def set_sending(self, kind: str, enabled: bool) -> None:
        entry = self._senders.get(kind)
        if entry is None:
            return
        sender, track = entry
        sender.replaceTrack(track if enabled else None)

    async def create_offer(self) -> dict[str, str]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> dict[str, str]:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, data: dict[str, Any]) -> None:
        candidate = candidate_from_dict(data)
        if candidate is None:
            logger.debug("Remote peer finished gathering candidates")
            return
        await self._pc.addIceCandidate(candidate)

    async def close(self) -> None:
        await self._pc.close()
