from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class SQLiteBackend:
    """Owns the shared SQLite connection and applies chatsync migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        self._path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._closed = False
        try:
            self._configure()
            self._apply_migrations()
        except Exception:
            self._conn.close()
            raise
        logger.info("opened sqlite backend at %s", db_path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.info("closed sqlite backend at %s", self._path)

    def _configure(self) -> None:
        cursor = self._conn.cursor()
        if self._path != ":memory:":
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version == 0:
            self._create_v1_schema()
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        elif user_version != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                contact_address TEXT NOT NULL UNIQUE,
                avatar_ref TEXT,
                created_at_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conv_key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                last_message_preview TEXT,
                last_activity_ms INTEGER NOT NULL,
                created_at_ms INTEGER NOT NULL,
                revision INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_participants (
                conv_key TEXT NOT NULL REFERENCES conversations (conv_key),
                user_id TEXT NOT NULL,
                PRIMARY KEY (conv_key, user_id)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_participants_user ON conversation_participants (user_id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                conv_key TEXT NOT NULL REFERENCES conversations (conv_key),
                seq INTEGER NOT NULL,
                msg_id TEXT NOT NULL UNIQUE,
                sender_id TEXT NOT NULL,
                text TEXT NOT NULL,
                sent_at_ms INTEGER NOT NULL,
                PRIMARY KEY (conv_key, seq)
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_token TEXT PRIMARY KEY,
                resume_token TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                expires_at_ms INTEGER NOT NULL
            )
            """
        )
