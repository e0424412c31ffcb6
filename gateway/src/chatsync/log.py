from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .conversations import ConversationMetadata, InMemoryConversationStore
from .errors import InvalidMessage, InvalidTarget
from .resolver import KIND_PRIVATE, parse_key
from .sessions import _now_ms

if TYPE_CHECKING:
    from .hub import SyncChannel

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_CHARS = 80
DEFAULT_MAX_MESSAGE_CHARS = 4000


@dataclass(frozen=True)
class Message:
    """An immutable entry of a conversation's message log."""

    msg_id: str
    conv_key: str
    seq: int
    sender_id: str
    text: str
    sent_at_ms: int


def new_msg_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


def clean_text(text: object, max_chars: int = DEFAULT_MAX_MESSAGE_CHARS) -> str:
    if not isinstance(text, str):
        raise InvalidMessage("message text must be a string")
    cleaned = text.strip()
    if not cleaned:
        raise InvalidMessage("message text must not be empty")
    if len(cleaned) > max_chars:
        raise InvalidMessage(f"message text exceeds {max_chars} characters")
    return cleaned


def preview(text: str, limit: int = DEFAULT_PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"


def check_sender(conv_key: str, sender_id: object) -> Tuple[str, FrozenSet[str]]:
    """Validate the key and sender, returning ``(kind, participant_ids)``."""

    kind, participants = parse_key(conv_key)
    if not isinstance(sender_id, str) or not sender_id:
        raise InvalidTarget("sender_id must be a non-empty string")
    if kind == KIND_PRIVATE and sender_id not in participants:
        raise InvalidTarget(f"{sender_id} is not a participant of {conv_key}")
    return kind, participants


class MessageLog:
    """In-memory, append-only message log.

    ``append`` is the single write path: it also merges the conversation
    metadata and publishes both deltas while holding the log lock, so
    observers see changes in commit order.
    """

    def __init__(
        self,
        conversations: InMemoryConversationStore,
        channel: SyncChannel | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    ) -> None:
        self._conversations = conversations
        self._channel = channel
        self._now = now_func
        self._preview_chars = preview_chars
        self._max_message_chars = max_message_chars
        self._lock = threading.Lock()
        self._messages: Dict[str, List[Message]] = {}

    def append(self, conv_key: str, sender_id: str, text: str) -> Message:
        cleaned = clean_text(text, self._max_message_chars)
        kind, participants = check_sender(conv_key, sender_id)
        with self._lock:
            self._conversations.ensure(conv_key, kind, participants)
            messages = self._messages.setdefault(conv_key, [])
            sent_at_ms = self._now()
            if messages:
                sent_at_ms = max(sent_at_ms, messages[-1].sent_at_ms)
            message = Message(
                msg_id=new_msg_id(),
                conv_key=conv_key,
                seq=len(messages) + 1,
                sender_id=sender_id,
                text=cleaned,
                sent_at_ms=sent_at_ms,
            )
            messages.append(message)
            if self._channel is not None:
                self._channel.publish_message(message)
            self._conversations.touch_on_message(conv_key, preview(cleaned, self._preview_chars), sent_at_ms)
        logger.debug("appended %s seq=%d to %s", message.msg_id, message.seq, conv_key)
        return message

    def read(self, conv_key: str) -> Iterator[Message]:
        """Yield the full history of ``conv_key`` as of the call, oldest first."""

        with self._lock:
            messages = list(self._messages.get(conv_key, ()))
        yield from messages

    def list_from(self, conv_key: str, from_seq: int, limit: int | None = None) -> list[Message]:
        if from_seq < 1:
            raise ValueError("from_seq must be at least 1")
        with self._lock:
            messages = self._messages.get(conv_key, [])
            end = None if limit is None else from_seq - 1 + max(limit, 0)
            return list(messages[from_seq - 1 : end])

    def last_seq(self, conv_key: str) -> int:
        with self._lock:
            return len(self._messages.get(conv_key, ()))

    def snapshot(self, conv_key: str) -> Tuple[Optional[ConversationMetadata], List[Message]]:
        """Return metadata and history consistent with each other."""

        with self._lock:
            return self._conversations.get(conv_key), list(self._messages.get(conv_key, ()))
