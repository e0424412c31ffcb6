from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ChatConfig:
    db_path: str | None = None
    operation_timeout_s: float = 10.0
    preview_chars: int = 80
    max_message_chars: int = 4000
    session_ttl_s: int = 60 * 60
    log_level: str = "INFO"

    @property
    def durable(self) -> bool:
        return self.db_path is not None

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000


def _parse_positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_positive_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_log_level(environ: Mapping[str, str], name: str, default: str) -> str:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env(environ: Mapping[str, str] | None = None) -> ChatConfig:
    env = os.environ if environ is None else environ
    defaults = ChatConfig()
    return ChatConfig(
        db_path=env.get("CHATSYNC_DB_PATH") or None,
        operation_timeout_s=_parse_positive_float(env, "CHATSYNC_OPERATION_TIMEOUT_S", defaults.operation_timeout_s),
        preview_chars=_parse_positive_int(env, "CHATSYNC_PREVIEW_CHARS", defaults.preview_chars),
        max_message_chars=_parse_positive_int(env, "CHATSYNC_MAX_MESSAGE_CHARS", defaults.max_message_chars),
        session_ttl_s=_parse_positive_int(env, "CHATSYNC_SESSION_TTL_S", defaults.session_ttl_s),
        log_level=_parse_log_level(env, "CHATSYNC_LOG_LEVEL", defaults.log_level),
    )
