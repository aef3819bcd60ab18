"""Tests for the relay WebSocket client and call client."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from signalroom.services import relay_client
from signalroom.services.errors import RelayDisconnected, RoomNotFound
from signalroom.services.negotiation import NegotiationState
from signalroom.services.peer import LocalMedia
from signalroom.services.relay_client import CallClient, RelayStatus

_CLOSE = object()


class DummyWebSocket:
    def __init__(self, on_send=None) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._messages: asyncio.Queue = asyncio.Queue()
        self._on_send = on_send

    async def send(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if self._on_send is not None:
            self._on_send(self, message)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._messages.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    def push(self, payload: dict) -> None:
        self._messages.put_nowait(json.dumps(payload))

    def push_raw(self, raw: str | bytes) -> None:
        self._messages.put_nowait(raw)

    def drop(self) -> None:
        self._messages.put_nowait(_CLOSE)


class DummyConnect:
    """Stands in for ``websockets.connect``: context manager and reconnecting iterator."""

    def __init__(self, sockets: list[DummyWebSocket]) -> None:
        self._sockets = sockets
        self.attempts = 0

    async def __aenter__(self) -> DummyWebSocket:
        return self._sockets[0]

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    async def __aiter__(self):
        for ws in self._sockets:
            self.attempts += 1
            yield ws
        await asyncio.Event().wait()


class DummyPeer:
    def __init__(self, on_track, on_state_change) -> None:
        self.remote = None
        self.closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote is not None

    def add_local_media(self, media) -> None:
        pass

    def set_sending(self, kind: str, enabled: bool) -> None:
        pass

    async def create_offer(self) -> dict:
        return {"type": "offer", "sdp": "o"}

    async def create_answer(self) -> dict:
        return {"type": "answer", "sdp": "a"}

    async def set_remote_description(self, description: dict) -> None:
        self.remote = description

    async def add_ice_candidate(self, candidate: dict) -> None:
        pass

    async def close(self) -> None:
        self.closed = True


async def fake_media() -> LocalMedia:
    return LocalMedia()


def relay_replies(ws: DummyWebSocket, message: dict) -> None:
    if message["type"] == "create-room":
        ws.push({"type": "room-created", "room_id": "AB12CD34", "participants": ["me"]})
    elif message["type"] == "join-room":
        ws.push({"type": "room-joined", "room_id": message["room_id"], "participants": ["other"]})


def patch_connect(monkeypatch, sockets: list[DummyWebSocket]) -> DummyConnect:
    connector = DummyConnect(sockets)
    monkeypatch.setattr(relay_client, "websockets", SimpleNamespace(connect=lambda *args, **kwargs: connector))
    return connector


async def until(predicate, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_channel_sends_json_and_yields_events(monkeypatch):
    ws = DummyWebSocket()
    patch_connect(monkeypatch, [ws])
    events: list[dict] = []

    async def handle(event: dict) -> None:
        events.append(event)

    async with relay_client.connect_channel("ws://relay", on_event=handle) as channel:
        ws.push_raw(b"\x00binary")
        ws.push_raw("not json")
        ws.push({"type": "connected", "participant_id": "me"})
        await channel.send({"type": "create-room"})
        await until(lambda: events)

    assert ws.sent == [{"type": "create-room"}]
    assert events == [{"type": "connected", "participant_id": "me"}]
    assert ws.closed


@pytest.mark.asyncio
async def test_create_room_resolves_with_relay_id(monkeypatch):
    ws = DummyWebSocket(on_send=relay_replies)
    patch_connect(monkeypatch, [ws])
    relay_states: list[RelayStatus] = []
    client = CallClient(
        "ws://relay",
        peer_factory=DummyPeer,
        media_factory=fake_media,
        on_relay_status=relay_states.append,
    )

    room_id = await client.create_room()
    await client.negotiator.drain()

    assert room_id == "AB12CD34"
    assert client.negotiator.state is NegotiationState.WAITING
    assert relay_states == [RelayStatus.CONNECTING, RelayStatus.ONLINE]

    await client.leave()
    assert ws.sent[-1] == {"type": "leave-room", "room_id": "AB12CD34"}
    assert client.negotiator.state is NegotiationState.ENDED
    assert client.relay_status is RelayStatus.OFFLINE


@pytest.mark.asyncio
async def test_join_unknown_room_raises(monkeypatch):
    def reject(ws: DummyWebSocket, message: dict) -> None:
        if message["type"] == "join-room":
            ws.push({"type": "error", "payload": {"code": "room-not-found", "message": "nope"}})

    patch_connect(monkeypatch, [DummyWebSocket(on_send=reject)])
    client = CallClient("ws://relay", peer_factory=DummyPeer, media_factory=fake_media)

    with pytest.raises(RoomNotFound):
        await client.join_room(" missing1 ")

    assert client.negotiator.state is NegotiationState.ENDED


@pytest.mark.asyncio
async def test_chat_messages_reach_callback_and_are_sent(monkeypatch):
    ws = DummyWebSocket(on_send=relay_replies)
    patch_connect(monkeypatch, [ws])
    chats: list[tuple] = []
    client = CallClient(
        "ws://relay",
        peer_factory=DummyPeer,
        media_factory=fake_media,
        on_chat=lambda sender, payload: chats.append((sender, payload)),
    )
    await client.join_room("AB12CD34")

    ws.push({"type": "chat-message", "participant_id": "other", "payload": {"text": "hey", "time": "09:00:00"}})
    await client.send_chat("  hello  ", time="09:00:01")
    await client.send_chat("   ")
    await until(lambda: chats)

    assert chats == [("other", {"text": "hey", "time": "09:00:00"})]
    assert ws.sent[-1] == {
        "type": "chat-message",
        "room_id": "AB12CD34",
        "payload": {"text": "hello", "time": "09:00:01"},
    }
    await client.leave()


@pytest.mark.asyncio
async def test_reconnect_rejoins_and_resets_negotiation(monkeypatch):
    first = DummyWebSocket(on_send=relay_replies)
    second = DummyWebSocket(on_send=relay_replies)
    connector = patch_connect(monkeypatch, [first, second])
    statuses = []
    client = CallClient(
        "ws://relay",
        peer_factory=DummyPeer,
        media_factory=fake_media,
        on_status=statuses.append,
    )
    await client.join_room("AB12CD34")

    first.push({"type": "offer", "participant_id": "other", "payload": {"type": "offer", "sdp": "o"}})
    await until(lambda: client.negotiator.state is NegotiationState.ACTIVE)

    first.drop()
    await until(lambda: second.sent)
    await client.negotiator.drain()

    assert connector.attempts == 2
    assert second.sent == [{"type": "join-room", "room_id": "AB12CD34"}]
    assert client.negotiator.state is NegotiationState.WAITING
    assert any(status.error == "relay-disconnected" for status in statuses)
    await client.leave()


class RejectingConnect:
    """Handshake refused outright, the way ``websockets`` reports an HTTP 403."""

    def __init__(self) -> None:
        self.attempts = 0

    async def __aiter__(self):
        self.attempts += 1
        raise OSError("server rejected WebSocket connection: HTTP 403")
        yield


@pytest.mark.asyncio
async def test_rejected_handshake_fails_join_and_releases_media(monkeypatch):
    connector = RejectingConnect()
    monkeypatch.setattr(relay_client, "websockets", SimpleNamespace(connect=lambda *args, **kwargs: connector))
    stopped: list[str] = []

    class Track:
        def __init__(self, kind: str) -> None:
            self.kind = kind

        def stop(self) -> None:
            stopped.append(self.kind)

    async def media() -> LocalMedia:
        return LocalMedia(audio=Track("audio"), video=Track("video"))

    client = CallClient("ws://relay", peer_factory=DummyPeer, media_factory=media)

    with pytest.raises(RelayDisconnected) as exc:
        await asyncio.wait_for(client.join_room("AB12CD34"), 1.0)

    assert "HTTP 403" in str(exc.value)
    assert connector.attempts == 1
    assert client.negotiator.state is NegotiationState.ENDED
    assert sorted(stopped) == ["audio", "video"]
    assert client.relay_status is RelayStatus.OFFLINE


def test_invite_url_follows_room(monkeypatch):
    monkeypatch.setattr(relay_client.settings, "public_base_url", "https://call.example/")
    client = CallClient("ws://relay", peer_factory=DummyPeer, media_factory=fake_media)

    assert client.invite_url is None
    client.room_id = "AB12CD34"
    assert client.invite_url == "https://call.example/room/AB12CD34"
