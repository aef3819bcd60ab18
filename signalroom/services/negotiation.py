"""Client-side session negotiation state machine.

One ``SessionNegotiator`` drives one peer relationship through the
offer/answer/candidate exchange. Relay events are queued and handled one at a
time by a single worker task, so a candidate that arrives while an offer is
being applied waits for that transition to finish.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .errors import LocalMediaUnavailable, NegotiationFailure, RelayDisconnected
from .peer import AiortcPeer, LocalMedia, open_local_media

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]
PeerFactory = Callable[[Callable[[Any], None], Callable[[str], None]], Any]
MediaFactory = Callable[[], Awaitable[LocalMedia]]
StatusHandler = Callable[["NegotiationStatus"], None]

TERMINAL_PEER_STATES = frozenset({"failed", "disconnected", "closed"})


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    OFFERING = "offering"
    ANSWERING = "answering"
    ACTIVE = "active"
    ENDED = "ended"


NEGOTIATING = frozenset({NegotiationState.OFFERING, NegotiationState.ANSWERING, NegotiationState.ACTIVE})


@dataclass(frozen=True, slots=True)
class NegotiationStatus:
    """Snapshot handed to presentation layers on every transition."""

    state: NegotiationState
    room_id: str | None = None
    peer_id: str | None = None
    remote_tracks: tuple[Any, ...] = ()
    peer_audio_enabled: bool = True
    error: str | None = None

    @property
    def has_remote_peer(self) -> bool:
        return self.state is NegotiationState.ACTIVE and bool(self.remote_tracks)


def _default_peer_factory(on_track: Callable[[Any], None], on_state_change: Callable[[str], None]) -> AiortcPeer:
    return AiortcPeer(on_track, on_state_change)


class SessionNegotiator:
    """Drive a peer connection from relay events."""

    def __init__(
        self,
        send: SendCallable,
        *,
        peer_factory: PeerFactory | None = None,
        media_factory: MediaFactory | None = None,
        on_status: StatusHandler | None = None,
    ) -> None:
        self._send = send
        self._peer_factory = peer_factory or _default_peer_factory
        self._media_factory = media_factory or open_local_media
        self._on_status = on_status

        self.state = NegotiationState.IDLE
        self.room_id: str | None = None
        self.participant_id: str | None = None
        self.peer_id: str | None = None
        self.error: str | None = None
        self.peer_audio_enabled = True

        self.media: LocalMedia | None = None
        self._peer: Any = None
        self._generation = 0
        self._remote_tracks: list[Any] = []
        self._pending_candidates: list[dict] = []
        self._queue: asyncio.Queue[dict] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    @property
    def status(self) -> NegotiationStatus:
        return NegotiationStatus(
            state=self.state,
            room_id=self.room_id,
            peer_id=self.peer_id,
            remote_tracks=tuple(self._remote_tracks) if self.state is NegotiationState.ACTIVE else (),
            peer_audio_enabled=self.peer_audio_enabled,
            error=self.error,
        )

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)

    async def open(self) -> LocalMedia:
        """Acquire local capture and start consuming relay events."""

        if self.state is NegotiationState.ENDED:
            raise RuntimeError("Negotiator already ended")
        if self.media is None:
            try:
                self.media = await self._media_factory()
            except LocalMediaUnavailable as exc:
                self._transition(NegotiationState.ENDED, error=exc.code)
                raise
            except Exception as exc:  # noqa: BLE001 - any capture failure is fatal for this attempt
                error = LocalMediaUnavailable(str(exc))
                self._transition(NegotiationState.ENDED, error=error.code)
                raise error from exc
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        return self.media

    def dispatch(self, event: dict) -> None:
        """Queue a relay event for in-order processing."""

        if self.state is NegotiationState.ENDED:
            return
        self._queue.put_nowait(event)

    def relay_lost(self) -> None:
        """The relay channel dropped; the room must be re-joined explicitly."""

        self.dispatch({"type": "relay-lost"})

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""

        if self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def set_audio_enabled(self, enabled: bool) -> None:
        if self.media is None:
            return
        self.media.audio_enabled = enabled
        if self._peer is not None:
            self._peer.set_sending("audio", enabled)
        if self.room_id is not None:
            try:
                await self._send({"type": "toggle-audio", "room_id": self.room_id, "payload": {"enabled": enabled}})
            except RelayDisconnected:
                logger.debug("Audio toggle not relayed, channel is down")

    def set_video_enabled(self, enabled: bool) -> None:
        if self.media is None:
            return
        self.media.video_enabled = enabled
        if self._peer is not None:
            self._peer.set_sending("video", enabled)

    async def leave(self) -> None:
        """Leave the room and release every local resource."""

        if self.state is NegotiationState.ENDED:
            return

        if self._worker is not None:
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

        if self.room_id is not None:
            try:
                await self._send({"type": "leave-room", "room_id": self.room_id})
            except Exception as exc:  # noqa: BLE001 - leaving must always release resources
                logger.debug("Could not relay leave-room: %s", exc)

        await self._teardown_peer()
        if self.media is not None:
            self.media.stop()
            self.media = None
        self._transition(NegotiationState.ENDED)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - map every negotiation failure to a transition
                await self._fail(event, exc)
            finally:
                self._queue.task_done()

    async def _handle(self, event: dict) -> None:
        kind = event.get("type")
        sender = event.get("participant_id")
        payload = event.get("payload")

        if kind == "connected":
            self.participant_id = sender
        elif kind in ("room-created", "room-joined"):
            await self._on_room_entered(event.get("room_id"))
        elif kind == "user-joined":
            await self._on_user_joined(sender)
        elif kind == "offer":
            await self._on_offer(sender, payload)
        elif kind == "answer":
            await self._on_answer(sender, payload)
        elif kind == "ice-candidate":
            await self._on_candidate(sender, payload)
        elif kind == "user-left":
            await self._on_user_left(sender)
        elif kind == "user-audio-toggle":
            if sender == self.peer_id and isinstance(payload, dict):
                self.peer_audio_enabled = bool(payload.get("enabled", True))
                self._emit()
        elif kind == "peer-state":
            await self._on_peer_state(event["generation"], event["state"])
        elif kind == "relay-lost":
            if self.state is NegotiationState.IDLE:
                self.error = RelayDisconnected.code
                self._emit()
            else:
                await self._reset_to_waiting(error=RelayDisconnected.code)
        elif kind == "error":
            code = payload.get("code") if isinstance(payload, dict) else None
            self.error = code or "relay-error"
            self._emit()

    async def _on_room_entered(self, room_id: str | None) -> None:
        self.room_id = room_id
        await self._reset_to_waiting()

    async def _on_user_joined(self, sender: str | None) -> None:
        if self.state is not NegotiationState.WAITING:
            if self.state in NEGOTIATING:
                logger.warning("Ignoring %s joining room %s: already paired with %s", sender, self.room_id, self.peer_id)
            return

        self.peer_id = sender
        self._transition(NegotiationState.OFFERING)
        peer = self._create_peer()
        offer = await peer.create_offer()
        await self._send({"type": "offer", "room_id": self.room_id, "payload": offer})

    async def _on_offer(self, sender: str | None, offer: Any) -> None:
        if self.state is NegotiationState.IDLE:
            logger.warning("Offer from %s before joining a room", sender)
            return
        if self.peer_id is not None and sender != self.peer_id:
            logger.warning("Ignoring offer from %s: already paired with %s", sender, self.peer_id)
            return
        if self.state is NegotiationState.OFFERING:
            if not self._is_polite(sender):
                logger.info("Offer collision with %s; keeping our own offer", sender)
                return
            logger.info("Offer collision with %s; dropping our offer and answering", sender)
        if self.state is not NegotiationState.WAITING:
            await self._teardown_peer(keep_candidates=True)

        self.peer_id = sender
        self._transition(NegotiationState.ANSWERING)
        peer = self._create_peer()
        await peer.set_remote_description(_require_description(offer, "offer"))
        await self._flush_candidates()
        answer = await peer.create_answer()
        await self._send({"type": "answer", "room_id": self.room_id, "payload": answer})
        self._transition(NegotiationState.ACTIVE)

    async def _on_answer(self, sender: str | None, answer: Any) -> None:
        if self.state is not NegotiationState.OFFERING or sender != self.peer_id:
            logger.warning("Unexpected answer from %s in state %s", sender, self.state.value)
            return
        await self._peer.set_remote_description(_require_description(answer, "answer"))
        await self._flush_candidates()
        self._transition(NegotiationState.ACTIVE)

    async def _on_candidate(self, sender: str | None, candidate: Any) -> None:
        if self.peer_id is not None and sender != self.peer_id:
            logger.warning("Ignoring candidate from %s: paired with %s", sender, self.peer_id)
            return
        if not isinstance(candidate, dict):
            raise NegotiationFailure("ICE candidate payload must be an object")
        if self._peer is not None and self._peer.has_remote_description:
            await self._peer.add_ice_candidate(candidate)
        else:
            self._pending_candidates.append(candidate)

    async def _on_user_left(self, sender: str | None) -> None:
        if self.state not in NEGOTIATING:
            return
        if sender is not None and sender != self.peer_id:
            return
        logger.info("Peer %s left room %s", sender, self.room_id)
        await self._reset_to_waiting()

    async def _on_peer_state(self, generation: int, state: str) -> None:
        if generation != self._generation or self.state not in NEGOTIATING:
            return
        if state in TERMINAL_PEER_STATES:
            logger.info("Peer connection %s with %s", state, self.peer_id)
            await self._reset_to_waiting()

    async def _fail(self, event: dict, exc: Exception) -> None:
        logger.exception("Negotiation failed handling %s: %s", event.get("type"), exc)
        try:
            await self._reset_to_waiting(error=NegotiationFailure.code)
        except Exception:  # noqa: BLE001 - teardown failures must not kill the worker
            logger.exception("Teardown after negotiation failure also failed")

    async def _reset_to_waiting(self, error: str | None = None) -> None:
        await self._teardown_peer()
        self.peer_id = None
        self.peer_audio_enabled = True
        self._transition(NegotiationState.WAITING, error=error)

    def _create_peer(self) -> Any:
        self._generation += 1
        generation = self._generation

        def on_track(track: Any) -> None:
            if generation == self._generation:
                self._remote_tracks.append(track)

        def on_state_change(state: str) -> None:
            self.dispatch({"type": "peer-state", "generation": generation, "state": state})

        peer = self._peer_factory(on_track, on_state_change)
        if self.media is not None:
            peer.add_local_media(self.media)
        self._peer = peer
        return peer

    async def _teardown_peer(self, keep_candidates: bool = False) -> None:
        peer, self._peer = self._peer, None
        self._generation += 1
        self._remote_tracks.clear()
        if not keep_candidates:
            self._pending_candidates.clear()
        if peer is not None:
            await peer.close()

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._peer.add_ice_candidate(candidate)

    def _is_polite(self, other: str | None) -> bool:
        return (self.participant_id or "") < (other or "")

    def _transition(self, state: NegotiationState, error: str | None = None) -> None:
        previous = self.state
        self.state = state
        self.error = error
        logger.debug("Negotiation %s -> %s (room=%s peer=%s)", previous.value, state.value, self.room_id, self.peer_id)
        self._emit()

    def _emit(self) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(self.status)
        except Exception:  # noqa: BLE001 - a broken UI hook must not stall negotiation
            logger.exception("Status handler failed")


def _require_description(value: Any, expected: str) -> dict:
    if not isinstance(value, dict) or "sdp" not in value:
        raise NegotiationFailure(f"Malformed {expected} payload")
    description = dict(value)
    description.setdefault("type", expected)
    return description
