"""User profiles and discovery by contact address."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import sqlite3

from .errors import AddressTaken, NotFound
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    display_name: str
    contact_address: str
    avatar_ref: Optional[str]
    created_at_ms: int


def normalize_address(contact_address: str) -> str:
    return contact_address.strip().lower()


def _check_optional_text(field: str, value: object) -> None:
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{field} must be a string")


def _validated(
    user_id: str, display_name: str | None, contact_address: str, avatar_ref: str | None = None
) -> Tuple[str, str]:
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("user_id must be a non-empty string")
    if not isinstance(contact_address, str) or not normalize_address(contact_address):
        raise ValueError("contact_address must be a non-empty string")
    _check_optional_text("display_name", display_name)
    _check_optional_text("avatar_ref", avatar_ref)
    address = normalize_address(contact_address)
    name = (display_name or "").strip() or address
    return name, address


def _sort_key(profile: UserProfile) -> Tuple[str, str]:
    return profile.display_name.lower(), profile.user_id


class InMemoryDirectory:
    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._lock = threading.Lock()
        self._by_id: Dict[str, UserProfile] = {}
        self._by_address: Dict[str, str] = {}

    def register(
        self,
        user_id: str,
        display_name: str | None,
        contact_address: str,
        avatar_ref: str | None = None,
    ) -> Tuple[UserProfile, bool]:
        """Create the profile unless ``user_id`` already exists.

        Returns ``(profile, created)``. An existing profile is returned as
        stored; a contact address owned by another user raises
        :class:`AddressTaken`.
        """

        name, address = _validated(user_id, display_name, contact_address, avatar_ref)
        with self._lock:
            existing = self._by_id.get(user_id)
            if existing is not None:
                return existing, False
            owner = self._by_address.get(address)
            if owner is not None:
                raise AddressTaken(f"contact address already registered: {address}")
            profile = UserProfile(
                user_id=user_id,
                display_name=name,
                contact_address=address,
                avatar_ref=avatar_ref,
                created_at_ms=self._now(),
            )
            self._by_id[user_id] = profile
            self._by_address[address] = user_id
            return profile, True

    def update(self, user_id: str, display_name: str | None = None, avatar_ref: str | None = None) -> UserProfile:
        _check_optional_text("display_name", display_name)
        _check_optional_text("avatar_ref", avatar_ref)
        with self._lock:
            profile = self._by_id.get(user_id)
            if profile is None:
                raise NotFound(f"unknown user: {user_id}")
            if display_name is not None and display_name.strip():
                profile = replace(profile, display_name=display_name.strip())
            if avatar_ref is not None:
                profile = replace(profile, avatar_ref=avatar_ref or None)
            self._by_id[user_id] = profile
            return profile

    def get(self, user_id: str) -> UserProfile | None:
        with self._lock:
            return self._by_id.get(user_id)

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        with self._lock:
            return {uid: self._by_id[uid] for uid in set(user_ids) if uid in self._by_id}

    def find_by_address(self, contact_address: str) -> UserProfile | None:
        address = normalize_address(contact_address)
        with self._lock:
            user_id = self._by_address.get(address)
            if user_id is None:
                return None
            return self._by_id[user_id]

    def list_users(self, exclude_user_id: str | None = None) -> List[UserProfile]:
        with self._lock:
            profiles = [p for p in self._by_id.values() if p.user_id != exclude_user_id]
        return sorted(profiles, key=_sort_key)


class SQLiteDirectory:
    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._backend = backend
        self._now = now_func

    def register(
        self,
        user_id: str,
        display_name: str | None,
        contact_address: str,
        avatar_ref: str | None = None,
    ) -> Tuple[UserProfile, bool]:
        name, address = _validated(user_id, display_name, contact_address, avatar_ref)
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(_SELECT_USER + " WHERE user_id=?", (user_id,)).fetchone()
                if row is not None:
                    conn.commit()
                    return _row_to_profile(row), False
                owner = cursor.execute(
                    "SELECT user_id FROM users WHERE contact_address=?", (address,)
                ).fetchone()
                if owner is not None:
                    raise AddressTaken(f"contact address already registered: {address}")
                profile = UserProfile(
                    user_id=user_id,
                    display_name=name,
                    contact_address=address,
                    avatar_ref=avatar_ref,
                    created_at_ms=self._now(),
                )
                cursor.execute(
                    """
                    INSERT INTO users (user_id, display_name, contact_address, avatar_ref, created_at_ms)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (profile.user_id, profile.display_name, profile.contact_address, profile.avatar_ref, profile.created_at_ms),
                )
                conn.commit()
                return profile, True
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def update(self, user_id: str, display_name: str | None = None, avatar_ref: str | None = None) -> UserProfile:
        _check_optional_text("display_name", display_name)
        _check_optional_text("avatar_ref", avatar_ref)
        with self._backend.lock:
            conn = self._backend.connection
            if display_name is not None and display_name.strip():
                conn.execute("UPDATE users SET display_name=? WHERE user_id=?", (display_name.strip(), user_id))
            if avatar_ref is not None:
                conn.execute("UPDATE users SET avatar_ref=? WHERE user_id=?", (avatar_ref or None, user_id))
            row = conn.execute(_SELECT_USER + " WHERE user_id=?", (user_id,)).fetchone()
        if row is None:
            raise NotFound(f"unknown user: {user_id}")
        return _row_to_profile(row)

    def get(self, user_id: str) -> UserProfile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(_SELECT_USER + " WHERE user_id=?", (user_id,)).fetchone()
        return None if row is None else _row_to_profile(row)

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        """Load several profiles in one query; unknown ids are left out."""

        wanted = sorted(set(user_ids))
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                _SELECT_USER + f" WHERE user_id IN ({placeholders})", wanted
            ).fetchall()
        return {row[0]: _row_to_profile(row) for row in rows}

    def find_by_address(self, contact_address: str) -> UserProfile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                _SELECT_USER + " WHERE contact_address=?", (normalize_address(contact_address),)
            ).fetchone()
        return None if row is None else _row_to_profile(row)

    def list_users(self, exclude_user_id: str | None = None) -> List[UserProfile]:
        with self._backend.lock:
            rows = self._backend.connection.execute(_SELECT_USER).fetchall()
        profiles = [_row_to_profile(row) for row in rows if row[0] != exclude_user_id]
        return sorted(profiles, key=_sort_key)


_SELECT_USER = "SELECT user_id, display_name, contact_address, avatar_ref, created_at_ms FROM users"


def _row_to_profile(row: sqlite3.Row) -> UserProfile:
    return UserProfile(
        user_id=row[0],
        display_name=row[1],
        contact_address=row[2],
        avatar_ref=row[3],
        created_at_ms=row[4],
    )
