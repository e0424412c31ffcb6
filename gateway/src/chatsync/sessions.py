"""Gateway sessions: a session token for requests and a single-use resume token."""

from __future__ import annotations

import secrets
import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict

from .sqlite_backend import SQLiteBackend

DEFAULT_TTL_MS = 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Session:
    user_id: str
    session_token: str
    resume_token: str
    expires_at_ms: int

    def expired(self, now_ms: int) -> bool:
        return self.expires_at_ms <= now_ms


def _issue(user_id: str, expires_at_ms: int) -> Session:
    return Session(
        user_id=user_id,
        session_token=f"st_{secrets.token_urlsafe(16)}",
        resume_token=f"rt_{secrets.token_urlsafe(16)}",
        expires_at_ms=expires_at_ms,
    )


def _rotated(session: Session, expires_at_ms: int) -> Session:
    return replace(session, resume_token=f"rt_{secrets.token_urlsafe(16)}", expires_at_ms=expires_at_ms)


class SessionStore:
    """Sessions for a single process, lost on restart."""

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._lock = threading.Lock()
        self._by_session: Dict[str, Session] = {}
        self._by_resume: Dict[str, str] = {}

    def create(self, user_id: str) -> Session:
        session = _issue(user_id, self._now() + self._ttl_ms)
        with self._lock:
            self._store(session)
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        with self._lock:
            session = self._by_session.get(session_token)
            if session is None:
                return None
            if session.expired(self._now()):
                self._drop(session)
                return None
            return session

    def consume_resume(self, resume_token: str) -> Session | None:
        """Exchange ``resume_token`` for the session with a fresh resume token.

        Each resume token works once; expired sessions are dropped.
        """

        with self._lock:
            session_token = self._by_resume.pop(resume_token, None)
            session = self._by_session.get(session_token) if session_token else None
            if session is None:
                return None
            now_ms = self._now()
            if session.expired(now_ms):
                self._drop(session)
                return None
            rotated = _rotated(session, now_ms + self._ttl_ms)
            self._store(rotated)
            return rotated

    def invalidate(self, session: Session) -> None:
        with self._lock:
            self._drop(session)

    def _drop(self, session: Session) -> None:
        current = self._by_session.pop(session.session_token, None)
        if current is not None:
            self._by_resume.pop(current.resume_token, None)

    def _store(self, session: Session) -> None:
        self._by_session[session.session_token] = session
        self._by_resume[session.resume_token] = session.session_token


_SELECT_SESSION = "SELECT user_id, session_token, resume_token, expires_at_ms FROM sessions"


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(user_id=row[0], session_token=row[1], resume_token=row[2], expires_at_ms=row[3])


class SQLiteSessionStore:
    """Sessions kept in the shared SQLite database so resume survives restarts."""

    def __init__(
        self,
        backend: SQLiteBackend,
        ttl_ms: int = DEFAULT_TTL_MS,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms
        self._now = now_func

    def create(self, user_id: str) -> Session:
        session = _issue(user_id, self._now() + self._ttl_ms)
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO sessions (session_token, resume_token, user_id, expires_at_ms)
                VALUES (?, ?, ?, ?)
                """,
                (session.session_token, session.resume_token, session.user_id, session.expires_at_ms),
            )
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                _SELECT_SESSION + " WHERE session_token=?", (session_token,)
            ).fetchone()
        if row is None:
            return None
        session = _row_to_session(row)
        if session.expired(self._now()):
            self.invalidate(session)
            return None
        return session

    def consume_resume(self, resume_token: str) -> Session | None:
        now_ms = self._now()
        with self._backend.lock:
            conn = self._backend.connection
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(_SELECT_SESSION + " WHERE resume_token=?", (resume_token,)).fetchone()
                rotated = None
                if row is not None:
                    session = _row_to_session(row)
                    if session.expired(now_ms):
                        conn.execute("DELETE FROM sessions WHERE session_token=?", (session.session_token,))
                    else:
                        rotated = _rotated(session, now_ms + self._ttl_ms)
                        conn.execute(
                            "UPDATE sessions SET resume_token=?, expires_at_ms=? WHERE session_token=?",
                            (rotated.resume_token, rotated.expires_at_ms, rotated.session_token),
                        )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return rotated

    def invalidate(self, session: Session) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "DELETE FROM sessions WHERE session_token=?",
                (session.session_token,),
            )
