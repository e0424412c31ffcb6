from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from .errors import InvalidTarget
from .resolver import KIND_BROADCAST, parse_key
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:
    from .hub import SyncChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationMetadata:
    conv_key: str
    kind: str
    participant_ids: FrozenSet[str]
    last_message_preview: Optional[str]
    last_activity_ms: int
    created_at_ms: int
    revision: int = 1

    def includes(self, user_id: str) -> bool:
        return self.kind == KIND_BROADCAST or user_id in self.participant_ids


def activity_order(metadata: ConversationMetadata) -> Tuple[int, str]:
    """Sort key for most recent activity first."""

    return -metadata.last_activity_ms, metadata.conv_key


def _validated(conv_key: str, kind: str, participant_ids: Iterable[str] | None) -> FrozenSet[str]:
    expected_kind, expected = parse_key(conv_key)
    if kind != expected_kind:
        raise InvalidTarget(f"{conv_key!r} is a {expected_kind} conversation, not {kind}")
    if frozenset(participant_ids or ()) != expected:
        raise InvalidTarget(f"participants do not match conversation key {conv_key!r}")
    return expected


class InMemoryConversationStore:
    def __init__(self, channel: SyncChannel | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._channel = channel
        self._now = now_func
        self._lock = threading.RLock()
        self._records: Dict[str, ConversationMetadata] = {}

    def ensure(
        self, conv_key: str, kind: str, participant_ids: Iterable[str] | None = None
    ) -> Tuple[ConversationMetadata, bool]:
        """Create the record for ``conv_key`` unless it exists.

        An existing record is returned unchanged together with ``False``.
        """

        participants = _validated(conv_key, kind, participant_ids)
        with self._lock:
            existing = self._records.get(conv_key)
            if existing is not None:
                return existing, False
            now_ms = self._now()
            metadata = ConversationMetadata(
                conv_key=conv_key,
                kind=kind,
                participant_ids=participants,
                last_message_preview=None,
                last_activity_ms=now_ms,
                created_at_ms=now_ms,
            )
            self._records[conv_key] = metadata
            logger.info("created %s conversation %s", kind, conv_key)
            if self._channel is not None:
                self._channel.publish_metadata(metadata)
            return metadata, True

    def touch_on_message(self, conv_key: str, preview: str, activity_ms: int) -> ConversationMetadata:
        kind, participants = parse_key(conv_key)
        with self._lock:
            current, _ = self.ensure(conv_key, kind, participants)
            metadata = replace(
                current,
                last_message_preview=preview,
                last_activity_ms=max(current.last_activity_ms, activity_ms),
                revision=current.revision + 1,
            )
            self._records[conv_key] = metadata
            if self._channel is not None:
                self._channel.publish_metadata(metadata)
            return metadata

    def get(self, conv_key: str) -> ConversationMetadata | None:
        with self._lock:
            return self._records.get(conv_key)

    def list_for_participant(self, user_id: str) -> Iterator[ConversationMetadata]:
        with self._lock:
            matching = [m for m in self._records.values() if m.includes(user_id)]
        yield from sorted(matching, key=activity_order)


class SQLiteConversationStore:
    def __init__(
        self,
        backend: SQLiteBackend,
        channel: SyncChannel | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._channel = channel
        self._now = now_func

    def ensure(
        self, conv_key: str, kind: str, participant_ids: Iterable[str] | None = None
    ) -> Tuple[ConversationMetadata, bool]:
        participants = _validated(conv_key, kind, participant_ids)
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                created = self.ensure_in_transaction(cursor, conv_key, kind, participants, self._now())
                metadata = self.load(cursor, conv_key)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
            if created:
                logger.info("created %s conversation %s", kind, conv_key)
                if self._channel is not None:
                    self._channel.publish_metadata(metadata)
        return metadata, created

    def touch_on_message(self, conv_key: str, preview: str, activity_ms: int) -> ConversationMetadata:
        kind, participants = parse_key(conv_key)
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                self.ensure_in_transaction(cursor, conv_key, kind, participants, activity_ms)
                self.touch_in_transaction(cursor, conv_key, preview, activity_ms)
                metadata = self.load(cursor, conv_key)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
            if self._channel is not None:
                self._channel.publish_metadata(metadata)
        return metadata

    def get(self, conv_key: str) -> ConversationMetadata | None:
        with self._backend.lock:
            cursor = self._backend.connection.cursor()
            try:
                return self.load(cursor, conv_key, required=False)
            finally:
                cursor.close()

    def list_for_participant(self, user_id: str) -> Iterator[ConversationMetadata]:
        with self._backend.lock:
            conn = self._backend.connection
            rows = conn.execute(
                _SELECT_CONVERSATION
                + """
                WHERE kind=? OR conv_key IN (
                    SELECT conv_key FROM conversation_participants WHERE user_id=?
                )
                ORDER BY last_activity_ms DESC, conv_key ASC
                """,
                (KIND_BROADCAST, user_id),
            ).fetchall()
            members = self._participants_for(conn, [row[0] for row in rows])
        for row in rows:
            yield _row_to_metadata(row, members.get(row[0], frozenset()))

    # Transaction-scoped helpers: the caller owns BEGIN and COMMIT.

    @staticmethod
    def ensure_in_transaction(
        cursor: sqlite3.Cursor, conv_key: str, kind: str, participants: FrozenSet[str], now_ms: int
    ) -> bool:
        cursor.execute(
            """
            INSERT OR IGNORE INTO conversations
                (conv_key, kind, last_message_preview, last_activity_ms, created_at_ms, revision)
            VALUES (?, ?, NULL, ?, ?, 1)
            """,
            (conv_key, kind, now_ms, now_ms),
        )
        created = cursor.rowcount == 1
        for user_id in sorted(participants):
            cursor.execute(
                "INSERT OR IGNORE INTO conversation_participants (conv_key, user_id) VALUES (?, ?)",
                (conv_key, user_id),
            )
        return created

    @staticmethod
    def touch_in_transaction(cursor: sqlite3.Cursor, conv_key: str, preview: str, activity_ms: int) -> None:
        cursor.execute(
            """
            UPDATE conversations
            SET last_message_preview=?,
                last_activity_ms=MAX(last_activity_ms, ?),
                revision=revision + 1
            WHERE conv_key=?
            """,
            (preview, activity_ms, conv_key),
        )

    @classmethod
    def load(cls, cursor: sqlite3.Cursor, conv_key: str, *, required: bool = True) -> ConversationMetadata | None:
        row = cursor.execute(_SELECT_CONVERSATION + " WHERE conv_key=?", (conv_key,)).fetchone()
        if row is None:
            if required:
                raise LookupError(f"conversation row missing: {conv_key}")
            return None
        members = cls._participants_for(cursor, [conv_key])
        return _row_to_metadata(row, members.get(conv_key, frozenset()))

    @staticmethod
    def _participants_for(conn, conv_keys: List[str]) -> Dict[str, FrozenSet[str]]:
        if not conv_keys:
            return {}
        placeholders = ",".join("?" for _ in conv_keys)
        rows = conn.execute(
            f"SELECT conv_key, user_id FROM conversation_participants WHERE conv_key IN ({placeholders})",
            conv_keys,
        ).fetchall()
        grouped: Dict[str, set] = {}
        for row in rows:
            grouped.setdefault(row[0], set()).add(row[1])
        return {key: frozenset(users) for key, users in grouped.items()}


_SELECT_CONVERSATION = (
    "SELECT conv_key, kind, last_message_preview, last_activity_ms, created_at_ms, revision FROM conversations"
)


def _row_to_metadata(row: sqlite3.Row, participants: FrozenSet[str]) -> ConversationMetadata:
    return ConversationMetadata(
        conv_key=row[0],
        kind=row[1],
        participant_ids=participants,
        last_message_preview=row[2],
        last_activity_ms=row[3],
        created_at_ms=row[4],
        revision=row[5],
    )
