"""Room identifiers: generation, validation and invite links."""
from __future__ import annotations

import re
import secrets
import string

from .errors import InvalidRoomId

ALPHABET = string.ascii_letters + string.digits
ROOM_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


def generate_room_id(length: int = 8) -> str:
    """Return a random base62 room code that is safe as a URL path segment."""

    if length < 1:
        raise ValueError("length must be positive")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_room_id(value: str) -> str:
    """Validate a generated or user-supplied room id.

    Surrounding whitespace is dropped. Case is kept: ids match exactly.
    """

    if not isinstance(value, str):
        raise InvalidRoomId("Room id must be a string")
    candidate = value.strip()
    if not ROOM_ID_PATTERN.fullmatch(candidate):
        raise InvalidRoomId(f"Invalid room id {value!r}")
    return candidate


def invite_url(base_url: str, room_id: str) -> str:
    return f"{base_url.rstrip('/')}/room/{normalize_room_id(room_id)}"
