"""Async facade the view layers and the gateway call into."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from .config import ChatConfig
from .conversations import (
    ConversationMetadata,
    InMemoryConversationStore,
    SQLiteConversationStore,
    activity_order,
)
from .directory import InMemoryDirectory, SQLiteDirectory, UserProfile
from .errors import Unavailable
from .hub import (
    BROADCAST_INBOX_TOPIC,
    EVENT_INBOX_SNAPSHOT,
    EVENT_MESSAGE,
    EVENT_METADATA,
    EVENT_SNAPSHOT,
    Observer,
    Subscription,
    SyncChannel,
    SyncEvent,
    conversation_topic,
    inbox_topic,
)
from .log import Message, MessageLog
from .resolver import KIND_PRIVATE, parse_key, partner_of, resolve
from .sqlite_backend import SQLiteBackend
from .sqlite_log import SQLiteMessageLog

logger = logging.getLogger(__name__)


def _require_user_id(user_id: object) -> str:
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("user id must be a non-empty string")
    return user_id


class ConversationView:
    """An open conversation: metadata and history kept current by the channel."""

    def __init__(
        self,
        conv_key: str,
        metadata: ConversationMetadata | None,
        history: List[Message],
        channel: SyncChannel,
        observer: Observer | None = None,
    ) -> None:
        self.conv_key = conv_key
        self._channel = channel
        self.metadata = metadata
        self.history = history
        self.handle: Subscription | None = None
        self._observer = observer

    @property
    def last_seq(self) -> int:
        return self.history[-1].seq if self.history else 0

    @property
    def revision(self) -> int:
        return self.metadata.revision if self.metadata is not None else 0

    def is_stale(self, event: SyncEvent) -> bool:
        if event.type == EVENT_MESSAGE and event.message is not None:
            return event.message.seq <= self.last_seq
        if event.type == EVENT_METADATA and event.metadata is not None:
            return event.metadata.revision <= self.revision
        return False

    def apply(self, event: SyncEvent) -> None:
        if event.type != EVENT_SNAPSHOT and self.is_stale(event):
            return
        if event.type == EVENT_MESSAGE and event.message is not None:
            self.history.append(event.message)
        elif event.type == EVENT_METADATA and event.metadata is not None:
            self.metadata = event.metadata
        if self._observer is not None:
            self._observer(event)

    def close(self) -> None:
        if self.handle is not None:
            self._channel.unsubscribe(self.handle)


class LiveConversationList:
    """A user's conversations ordered by most recent activity.

    Iterating yields the current state; the channel keeps it up to date until
    :meth:`close` is called.
    """

    def __init__(
        self,
        user_id: str,
        channel: SyncChannel,
        on_change: Callable[["LiveConversationList"], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self.handle: Subscription | None = None
        self._items: Dict[str, ConversationMetadata] = {}
        self._on_change = on_change
        self._channel = channel

    def __iter__(self) -> Iterator[ConversationMetadata]:
        return iter(sorted(self._items.values(), key=activity_order))

    def __len__(self) -> int:
        return len(self._items)

    def get(self, conv_key: str) -> ConversationMetadata | None:
        return self._items.get(conv_key)

    def load(self, conversations: List[ConversationMetadata]) -> None:
        self._items = {metadata.conv_key: metadata for metadata in conversations}

    def is_stale(self, event: SyncEvent) -> bool:
        if event.metadata is None:
            return False
        current = self._items.get(event.metadata.conv_key)
        return current is not None and event.metadata.revision <= current.revision

    def apply(self, event: SyncEvent) -> None:
        if event.type == EVENT_METADATA and event.metadata is not None:
            if self.is_stale(event) or not event.metadata.includes(self.user_id):
                return
            self._items[event.metadata.conv_key] = event.metadata
        elif event.type != EVENT_INBOX_SNAPSHOT:
            return
        if self._on_change is not None:
            self._on_change(self)

    def close(self) -> None:
        if self.handle is not None:
            self._channel.unsubscribe(self.handle)


Handle = Union[Subscription, ConversationView, LiveConversationList]


class ChatService:
    """Conversation identity, message log and live sync behind async calls.

    Storage work runs in worker threads bounded by the configured timeout;
    storage failures and timeouts are reported as :class:`Unavailable`.
    """

    def __init__(
        self,
        *,
        directory: Any,
        conversations: Any,
        log: Any,
        channel: SyncChannel,
        config: ChatConfig | None = None,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.directory = directory
        self.conversations = conversations
        self.log = log
        self.channel = channel
        self.config = config or ChatConfig()
        self.backend = backend
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        if self._closed:
            raise Unavailable("chat service is closed")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.config.operation_timeout_s,
            )
        except sqlite3.Error as exc:
            logger.warning("storage failure in %s: %s", getattr(func, "__name__", func), exc)
            raise Unavailable("backing store unavailable") from exc
        except asyncio.TimeoutError as exc:
            logger.warning("storage call %s timed out", getattr(func, "__name__", func))
            raise Unavailable("backing store timed out") from exc

    async def run_storage(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking call against this service's stores off the event loop.

        Used by the gateway for session lookups so they share the timeout and
        the :class:`Unavailable` mapping of every other storage call.
        """

        return await self._call(func, *args)

    # Identity directory

    async def register_user(
        self,
        user_id: str,
        display_name: str | None,
        contact_address: str,
        avatar_ref: str | None = None,
    ) -> UserProfile:
        profile, created = await self._call(self.directory.register, user_id, display_name, contact_address, avatar_ref)
        if created:
            logger.info("registered user %s", user_id)
        return profile

    async def update_profile(
        self, user_id: str, display_name: str | None = None, avatar_ref: str | None = None
    ) -> UserProfile:
        return await self._call(self.directory.update, user_id, display_name, avatar_ref)

    async def get_user(self, user_id: str) -> UserProfile | None:
        return await self._call(self.directory.get, user_id)

    async def find_user_by_address(self, contact_address: str) -> UserProfile | None:
        """Return the profile owning ``contact_address``, or ``None``."""

        return await self._call(self.directory.find_by_address, contact_address)

    async def list_users(self, exclude_user_id: str | None = None) -> List[UserProfile]:
        return await self._call(self.directory.list_users, exclude_user_id)

    async def conversation_partner(self, conv_key: str, self_id: str) -> UserProfile | None:
        other_id = partner_of(conv_key, self_id)
        if other_id is None:
            return None
        return await self.get_user(other_id)

    async def conversation_partners(
        self, conversations: List[ConversationMetadata], self_id: str
    ) -> Dict[str, UserProfile | None]:
        """Partner profile per conversation key, loaded in a single storage call."""

        others = {m.conv_key: partner_of(m.conv_key, self_id) for m in conversations}
        wanted = [uid for uid in others.values() if uid is not None]
        profiles = await self._call(self.directory.get_many, wanted) if wanted else {}
        return {conv_key: profiles.get(uid) if uid else None for conv_key, uid in others.items()}

    # Conversations

    async def start_private_conversation(self, self_id: str, other_id: str) -> str:
        conv_key = resolve(self_id, other_id)
        _, created = await self._call(self.conversations.ensure, conv_key, KIND_PRIVATE, {self_id, other_id})
        if created:
            logger.info("%s started conversation %s", self_id, conv_key)
        return conv_key

    async def get_conversation(self, conv_key: str) -> ConversationMetadata | None:
        parse_key(conv_key)
        return await self._call(self.conversations.get, conv_key)

    async def open_conversation(self, conv_key: str, observer: Observer | None = None) -> ConversationView:
        """Snapshot ``conv_key`` and subscribe to its deltas.

        The observer receives a ``snapshot`` event first, then every
        ``message`` and ``metadata`` delta committed after the snapshot.
        """

        parse_key(conv_key)
        view = ConversationView(conv_key, None, [], self.channel, observer)
        handle = self.channel.subscribe([conversation_topic(conv_key)], view.apply, buffering=True)
        try:
            metadata, history = await self._call(self.log.snapshot, conv_key)
        except BaseException:
            self.channel.unsubscribe(handle)
            raise
        view.metadata = metadata
        view.history = list(history)
        view.handle = handle
        snapshot = SyncEvent(type=EVENT_SNAPSHOT, conv_key=conv_key, metadata=metadata, history=tuple(history))
        handle.release(snapshot, view.is_stale)
        return view

    async def read_messages(self, conv_key: str, from_seq: int = 1, limit: int | None = None) -> List[Message]:
        parse_key(conv_key)
        return await self._call(self.log.list_from, conv_key, from_seq, limit)

    async def send_message(self, conv_key: str, sender_id: str, text: str) -> Message:
        return await self._call(self.log.append, conv_key, sender_id, text)

    async def list_my_conversations(
        self,
        self_id: str,
        on_change: Callable[[LiveConversationList], None] | None = None,
    ) -> LiveConversationList:
        _require_user_id(self_id)
        listing = LiveConversationList(self_id, self.channel, on_change)
        handle = self.channel.subscribe(
            [inbox_topic(self_id), BROADCAST_INBOX_TOPIC], listing.apply, buffering=True
        )
        try:
            conversations = await self._call(self._list_for_participant, self_id)
        except BaseException:
            self.channel.unsubscribe(handle)
            raise
        listing.load(conversations)
        listing.handle = handle
        snapshot = SyncEvent(type=EVENT_INBOX_SNAPSHOT, conversations=tuple(conversations))
        handle.release(snapshot, listing.is_stale)
        return listing

    async def list_conversations(self, self_id: str) -> List[ConversationMetadata]:
        """One-shot listing ordered by most recent activity."""

        _require_user_id(self_id)
        return await self._call(self._list_for_participant, self_id)

    def _list_for_participant(self, user_id: str) -> List[ConversationMetadata]:
        return list(self.conversations.list_for_participant(user_id))

    def close_conversation_view(self, handle: Handle) -> None:
        if isinstance(handle, (ConversationView, LiveConversationList)):
            handle = handle.handle
        if handle is not None:
            self.channel.unsubscribe(handle)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.channel.close()
        if self.backend is not None:
            self.backend.close()
        logger.info("chat service closed")


def create_service(config: ChatConfig | None = None, *, now_func: Optional[Callable[[], int]] = None) -> ChatService:
    """Build a service with in-memory stores, or SQLite ones when ``db_path`` is set."""

    config = config or ChatConfig()
    channel = SyncChannel()
    clock: Dict[str, Any] = {} if now_func is None else {"now_func": now_func}
    limits = {"preview_chars": config.preview_chars, "max_message_chars": config.max_message_chars}
    if config.db_path is not None:
        backend = SQLiteBackend(config.db_path)
        directory: Any = SQLiteDirectory(backend, **clock)
        conversations: Any = SQLiteConversationStore(backend, channel, **clock)
        log: Any = SQLiteMessageLog(backend, conversations, channel, **clock, **limits)
    else:
        backend = None
        directory = InMemoryDirectory(**clock)
        conversations = InMemoryConversationStore(channel, **clock)
        log = MessageLog(conversations, channel, **clock, **limits)
    return ChatService(
        directory=directory,
        conversations=conversations,
        log=log,
        channel=channel,
        config=config,
        backend=backend,
    )
