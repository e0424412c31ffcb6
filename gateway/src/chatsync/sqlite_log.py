from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Tuple

import sqlite3

from .conversations import ConversationMetadata, SQLiteConversationStore
from .log import (
    DEFAULT_MAX_MESSAGE_CHARS,
    DEFAULT_PREVIEW_CHARS,
    Message,
    check_sender,
    clean_text,
    new_msg_id,
    preview,
)
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend

if TYPE_CHECKING:
    from .hub import SyncChannel

logger = logging.getLogger(__name__)

_SELECT_MESSAGE = "SELECT msg_id, conv_key, seq, sender_id, text, sent_at_ms FROM messages"


class SQLiteMessageLog:
    """Durable message log backed by SQLite.

    The message insert and the metadata merge share one transaction.
    """

    def __init__(
        self,
        backend: SQLiteBackend,
        conversations: SQLiteConversationStore,
        channel: SyncChannel | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    ) -> None:
        self._backend = backend
        self._conversations = conversations
        self._channel = channel
        self._now = now_func
        self._preview_chars = preview_chars
        self._max_message_chars = max_message_chars

    def append(self, conv_key: str, sender_id: str, text: str) -> Message:
        cleaned = clean_text(text, self._max_message_chars)
        kind, participants = check_sender(conv_key, sender_id)
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                now_ms = self._now()
                created = self._conversations.ensure_in_transaction(cursor, conv_key, kind, participants, now_ms)
                tail = cursor.execute(
                    "SELECT seq, sent_at_ms FROM messages WHERE conv_key=? ORDER BY seq DESC LIMIT 1",
                    (conv_key,),
                ).fetchone()
                seq = 1 if tail is None else int(tail[0]) + 1
                sent_at_ms = now_ms if tail is None else max(now_ms, int(tail[1]))
                message = Message(
                    msg_id=new_msg_id(),
                    conv_key=conv_key,
                    seq=seq,
                    sender_id=sender_id,
                    text=cleaned,
                    sent_at_ms=sent_at_ms,
                )
                cursor.execute(
                    """
                    INSERT INTO messages (conv_key, seq, msg_id, sender_id, text, sent_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (conv_key, seq, message.msg_id, sender_id, cleaned, sent_at_ms),
                )
                self._conversations.touch_in_transaction(
                    cursor, conv_key, preview(cleaned, self._preview_chars), sent_at_ms
                )
                metadata = self._conversations.load(cursor, conv_key)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

            if created:
                logger.info("created %s conversation %s on first message", kind, conv_key)
            if self._channel is not None:
                self._channel.publish_message(message)
                self._channel.publish_metadata(metadata)
        logger.debug("appended %s seq=%d to %s", message.msg_id, message.seq, conv_key)
        return message

    def read(self, conv_key: str) -> Iterator[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                _SELECT_MESSAGE + " WHERE conv_key=? ORDER BY seq ASC", (conv_key,)
            ).fetchall()
        for row in rows:
            yield _row_to_message(row)

    def list_from(self, conv_key: str, from_seq: int, limit: int | None = None) -> list[Message]:
        if from_seq < 1:
            raise ValueError("from_seq must be at least 1")

        query = _SELECT_MESSAGE + " WHERE conv_key=? AND seq>=? ORDER BY seq ASC"
        params: list[object] = [conv_key, from_seq]
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))

        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_row_to_message(row) for row in rows]

    def last_seq(self, conv_key: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT MAX(seq) FROM messages WHERE conv_key=?", (conv_key,)
            ).fetchone()
        return int(row[0] or 0)

    def snapshot(self, conv_key: str) -> Tuple[Optional[ConversationMetadata], List[Message]]:
        with self._backend.lock:
            cursor = self._backend.connection.cursor()
            try:
                metadata = self._conversations.load(cursor, conv_key, required=False)
                rows = cursor.execute(
                    _SELECT_MESSAGE + " WHERE conv_key=? ORDER BY seq ASC", (conv_key,)
                ).fetchall()
            finally:
                cursor.close()
        return metadata, [_row_to_message(row) for row in rows]


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        msg_id=row[0],
        conv_key=row[1],
        seq=row[2],
        sender_id=row[3],
        text=row[4],
        sent_at_ms=row[5],
    )
