"""Tests for the aiortc adapter helpers."""
from __future__ import annotations

import pytest

from signalroom.core.config import Settings
from signalroom.schemas.rtc import IceServer
from signalroom.services import peer
from signalroom.services.errors import LocalMediaUnavailable


def test_candidate_from_browser_payload():
    candidate = peer.candidate_from_dict(
        {
            "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx raddr 0.0.0.0 rport 0",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        }
    )

    assert candidate.ip == "203.0.113.7"
    assert candidate.port == 46154
    assert candidate.type == "srflx"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


def test_end_of_candidates_marker_is_none():
    assert peer.candidate_from_dict({"candidate": "", "sdpMid": "0"}) is None


def test_configuration_carries_turn_credentials():
    configuration = peer.build_configuration(
        [IceServer(urls="turn:turn.example.org", username="u", credential="p")]
    )

    (server,) = configuration.iceServers
    assert server.urls == ["turn:turn.example.org"]
    assert server.username == "u"
    assert server.credential == "p"


def test_local_media_stop_releases_tracks():
    class Track:
        stopped = False

        def stop(self) -> None:
            self.stopped = True

    audio, video = Track(), Track()
    media = peer.LocalMedia(audio=audio, video=video)

    media.stop()

    assert audio.stopped and video.stopped
    assert media.tracks() == []


@pytest.mark.asyncio
async def test_open_local_media_requires_a_source():
    with pytest.raises(LocalMediaUnavailable):
        await peer.open_local_media(Settings(_env_file=None, media_source=None))


@pytest.mark.asyncio
async def test_open_local_media_wraps_player_errors(monkeypatch):
    def broken_player(*args, **kwargs):
        raise OSError("No such device")

    monkeypatch.setattr(peer, "MediaPlayer", broken_player)

    with pytest.raises(LocalMediaUnavailable) as exc:
        await peer.open_local_media(Settings(_env_file=None, media_source="/dev/video9"))

    assert "No such device" in str(exc.value)
