"""WebSocket client for the signaling relay."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from .errors import RelayDisconnected, RoomNotFound, SignalingError
from .identity import invite_url, normalize_room_id
from .negotiation import MediaFactory, PeerFactory, SessionNegotiator, StatusHandler

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None]]
ChatHandler = Callable[[str | None, dict], None]


class RelayStatus(str, enum.Enum):
    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"


class RelayChannel:
    """One relay connection; its receive task dies with it."""

    def __init__(self, ws: ClientConnection, on_event: EventHandler | None = None) -> None:
        self._ws = ws
        self._on_event = on_event
        self._receive_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "RelayChannel":
        self._receive_task = asyncio.create_task(self._receive_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
        await self._ws.close()

    async def send(self, message: dict) -> None:
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise RelayDisconnected("Relay connection closed") from exc

    async def wait_closed(self) -> None:
        """Block until the relay stops sending (the connection ended)."""

        if self._receive_task:
            await self._receive_task

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Discarding non-JSON frame from relay")
                    continue
                if self._on_event:
                    try:
                        await self._on_event(payload)
                    except Exception:  # noqa: BLE001 - keep reading after a handler bug
                        logger.exception("Relay event handler failed for %s", payload.get("type"))
        except ConnectionClosed as exc:
            logger.info("Relay connection closed: %s", exc)


@asynccontextmanager
async def connect_channel(url: str | None = None, on_event: EventHandler | None = None) -> AsyncIterator[RelayChannel]:
    """Open a single relay connection without reconnecting."""

    async with websockets.connect(url or settings.relay_url) as ws:
        async with RelayChannel(ws, on_event=on_event) as channel:
            yield channel


class CallClient:
    """Join or create a room and keep the negotiator fed across reconnects.

    Reconnection and backoff come from ``websockets.connect`` used as an
    async iterator. Every new connection re-joins the room explicitly under a
    fresh identity; negotiation restarts from waiting.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        peer_factory: PeerFactory | None = None,
        media_factory: MediaFactory | None = None,
        on_status: StatusHandler | None = None,
        on_relay_status: Callable[[RelayStatus], None] | None = None,
        on_chat: ChatHandler | None = None,
    ) -> None:
        self.url = url or settings.relay_url
        self.negotiator = SessionNegotiator(
            self._send,
            peer_factory=peer_factory,
            media_factory=media_factory,
            on_status=on_status,
        )
        self.relay_status = RelayStatus.OFFLINE
        self.room_id: str | None = None
        self._on_relay_status = on_relay_status
        self._on_chat = on_chat
        self._channel: RelayChannel | None = None
        self._room_ready: asyncio.Future[str] | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._leaving = False

    async def create_room(self) -> str:
        """Ask the relay for a fresh room; returns its id once created."""

        return await self._start(None)

    async def join_room(self, room_id: str) -> str:
        return await self._start(normalize_room_id(room_id))

    async def send_chat(self, text: str, time: str | None = None) -> None:
        text = text.strip()
        if not text:
            return
        stamp = time or datetime.now().strftime("%H:%M:%S")
        await self._send({"type": "chat-message", "room_id": self.room_id, "payload": {"text": text, "time": stamp}})

    async def set_audio_enabled(self, enabled: bool) -> None:
        await self.negotiator.set_audio_enabled(enabled)

    @property
    def invite_url(self) -> str | None:
        if self.room_id is None:
            return None
        return invite_url(settings.public_base_url, self.room_id)

    def set_video_enabled(self, enabled: bool) -> None:
        self.negotiator.set_video_enabled(enabled)

    async def leave(self) -> None:
        """Leave the room, release media and stop reconnecting."""

        self._leaving = True
        await self.negotiator.leave()
        task, self._run_task = self._run_task, None
        if task is not None:
            task.cancel()
            (outcome,) = await asyncio.gather(task, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.info("Relay connection had ended with %r", outcome)
        self._set_relay_status(RelayStatus.OFFLINE)

    async def _start(self, room_id: str | None) -> str:
        if self._run_task is not None:
            raise RuntimeError("CallClient already started")
        await self.negotiator.open()
        self.room_id = room_id
        self._room_ready = asyncio.get_running_loop().create_future()
        self._run_task = asyncio.create_task(self._run())
        try:
            return await self._wait_room(self._room_ready, self._run_task)
        except SignalingError:
            await self.leave()
            raise

    @staticmethod
    async def _wait_room(ready: asyncio.Future[str], run_task: asyncio.Task[None]) -> str:
        """Resolve with the room id, or fail if the relay task ends first."""

        done, _ = await asyncio.wait({ready, run_task}, return_when=asyncio.FIRST_COMPLETED)
        if ready in done:
            return ready.result()
        error = None if run_task.cancelled() else run_task.exception()
        raise RelayDisconnected(f"Could not reach the relay: {error}") from error

    async def _run(self) -> None:
        self._set_relay_status(RelayStatus.CONNECTING)
        try:
            await self._connect_loop()
        except Exception:
            self._set_relay_status(RelayStatus.OFFLINE)
            self.negotiator.relay_lost()
            raise

    async def _connect_loop(self) -> None:
        async for ws in websockets.connect(self.url):
            try:
                async with RelayChannel(ws, on_event=self._on_event) as channel:
                    self._channel = channel
                    self._set_relay_status(RelayStatus.ONLINE)
                    with suppress(RelayDisconnected):
                        await self._enter_room(channel)
                    await channel.wait_closed()
            finally:
                self._channel = None
            if self._leaving:
                return
            self._set_relay_status(RelayStatus.OFFLINE)
            self.negotiator.relay_lost()
            self._set_relay_status(RelayStatus.CONNECTING)

    async def _enter_room(self, channel: RelayChannel) -> None:
        if self.room_id is None:
            await channel.send({"type": "create-room"})
        else:
            await channel.send({"type": "join-room", "room_id": self.room_id})

    async def _on_event(self, event: dict) -> None:
        kind = event.get("type")
        if kind in ("room-created", "room-joined"):
            self.room_id = event.get("room_id")
            if self._room_ready is not None and not self._room_ready.done():
                self._room_ready.set_result(self.room_id)
        elif kind == "error":
            self._fail_pending(event.get("payload") or {})
        elif kind == "chat-message":
            if self._on_chat is not None:
                self._on_chat(event.get("participant_id"), event.get("payload") or {})
            return
        self.negotiator.dispatch(event)

    def _fail_pending(self, payload: dict) -> None:
        if self._room_ready is None or self._room_ready.done():
            return
        if payload.get("code") == RoomNotFound.code and self.room_id is not None:
            self._room_ready.set_exception(RoomNotFound(self.room_id))
        else:
            self._room_ready.set_exception(SignalingError(payload.get("message")))

    async def _send(self, message: dict) -> None:
        channel = self._channel
        if channel is None:
            raise RelayDisconnected("Not connected to the relay")
        await channel.send(message)

    def _set_relay_status(self, status: RelayStatus) -> None:
        if status is self.relay_status:
            return
        self.relay_status = status
        if self._on_relay_status is not None:
            self._on_relay_status(status)
