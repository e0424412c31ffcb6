"""Canonical conversation keys derived from participant identities."""

from __future__ import annotations

from typing import FrozenSet, Tuple
from urllib.parse import quote, unquote

from .errors import InvalidTarget

BROADCAST_KEY = "general"
PRIVATE_PREFIX = "dm:"

KIND_BROADCAST = "broadcast"
KIND_PRIVATE = "private"


def _require_id(user_id: object) -> str:
    if not isinstance(user_id, str) or not user_id:
        raise InvalidTarget("participant id must be a non-empty string")
    return user_id


def resolve(self_id: str, other_id: str) -> str:
    """Return the private conversation key shared by two users.

    The key is identical whichever side computes it. Ids are percent-encoded
    before joining so no two distinct pairs produce the same key.
    """

    _require_id(self_id)
    _require_id(other_id)
    if self_id == other_id:
        raise InvalidTarget("cannot start a conversation with yourself")
    low, high = sorted((self_id, other_id))
    return f"{PRIVATE_PREFIX}{quote(low, safe='')}:{quote(high, safe='')}"


def resolve_broadcast() -> str:
    return BROADCAST_KEY


def parse_key(conv_key: str) -> Tuple[str, FrozenSet[str]]:
    """Return ``(kind, participant_ids)`` for a canonical key."""

    if conv_key == BROADCAST_KEY:
        return KIND_BROADCAST, frozenset()
    if not isinstance(conv_key, str) or not conv_key.startswith(PRIVATE_PREFIX):
        raise InvalidTarget(f"malformed conversation key: {conv_key!r}")
    parts = conv_key[len(PRIVATE_PREFIX) :].split(":")
    if len(parts) != 2 or not all(parts):
        raise InvalidTarget(f"malformed conversation key: {conv_key!r}")
    first, second = (unquote(part) for part in parts)
    # Only the exact output of resolve() is accepted.
    if resolve(first, second) != conv_key:
        raise InvalidTarget(f"non-canonical conversation key: {conv_key!r}")
    return KIND_PRIVATE, frozenset((first, second))


def partner_of(conv_key: str, self_id: str) -> str | None:
    kind, participants = parse_key(conv_key)
    if kind != KIND_PRIVATE or self_id not in participants:
        return None
    (other,) = participants - {self_id}
    return other
