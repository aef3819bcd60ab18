"""In-memory room membership registry."""
from __future__ import annotations

from typing import Callable, Dict, Literal, Set

from .errors import RoomNotFound
from .identity import generate_room_id

CreationMode = Literal["explicit", "implicit"]


class RoomRegistry:
    """Map room ids to member connection ids.

    Rooms are ephemeral: an entry is removed as soon as its last member
    leaves. The registry does no locking; callers serialize mutations.
    """

    def __init__(
        self,
        *,
        mode: CreationMode = "explicit",
        id_length: int = 8,
        id_factory: Callable[[int], str] = generate_room_id,
    ) -> None:
        self.mode = mode
        self._id_length = id_length
        self._id_factory = id_factory
        self._rooms: Dict[str, Set[str]] = {}
        self._memberships: Dict[str, Set[str]] = {}

    def create_room(self, member_id: str | None = None) -> str:
        """Allocate a fresh room id, optionally seeding it with its creator.

        Without a creator the room is reserved empty so that a join right after
        creation succeeds. A reserved room is the one exception to "exists only
        while it has members": it stays until someone joins and then leaves it,
        or until ``release`` drops it.
        """

        room_id = self._id_factory(self._id_length)
        while room_id in self._rooms:
            room_id = self._id_factory(self._id_length)
        self._rooms[room_id] = set()
        if member_id is not None:
            self._add(room_id, member_id)
        return room_id

    def join(self, room_id: str, member_id: str) -> None:
        if room_id not in self._rooms:
            if self.mode != "implicit":
                raise RoomNotFound(room_id)
            self._rooms[room_id] = set()
        self._add(room_id, member_id)

    def leave(self, room_id: str, member_id: str) -> bool:
        """Remove a member; return True if it was in the room."""

        members = self._rooms.get(room_id)
        if members is None or member_id not in members:
            return False
        members.discard(member_id)
        if not members:
            del self._rooms[room_id]

        rooms = self._memberships.get(member_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[member_id]
        return True

    def release(self, room_id: str) -> bool:
        """Drop a reserved room nobody has joined; return True if it was dropped."""

        if self._rooms.get(room_id) == set():
            del self._rooms[room_id]
            return True
        return False

    def leave_all(self, member_id: str) -> list[str]:
        """Remove a member from every room it belongs to and return those rooms."""

        affected = sorted(self._memberships.get(member_id, ()))
        for room_id in affected:
            self.leave(room_id, member_id)
        return affected

    def members(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, ()))

    def members_except(self, room_id: str, member_id: str) -> set[str]:
        return {member for member in self._rooms.get(room_id, ()) if member != member_id}

    def rooms_of(self, member_id: str) -> set[str]:
        return set(self._memberships.get(member_id, ()))

    def exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def _add(self, room_id: str, member_id: str) -> None:
        self._rooms[room_id].add(member_id)
        self._memberships.setdefault(member_id, set()).add(room_id)
