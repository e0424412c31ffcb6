from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .conversations import ConversationMetadata
from .log import Message
from .resolver import KIND_BROADCAST

logger = logging.getLogger(__name__)

BROADCAST_INBOX_TOPIC = "inbox:*"

EVENT_SNAPSHOT = "snapshot"
EVENT_MESSAGE = "message"
EVENT_METADATA = "metadata"
EVENT_INBOX_SNAPSHOT = "inbox.snapshot"


def conversation_topic(conv_key: str) -> str:
    return f"conv:{conv_key}"


def inbox_topic(user_id: str) -> str:
    return f"inbox:{user_id}"


@dataclass(frozen=True)
class SyncEvent:
    """A state change pushed to observers."""

    type: str
    conv_key: Optional[str] = None
    message: Optional[Message] = None
    metadata: Optional[ConversationMetadata] = None
    history: Tuple[Message, ...] = ()
    conversations: Tuple[ConversationMetadata, ...] = ()


Observer = Callable[[SyncEvent], None]
StalePredicate = Callable[[SyncEvent], bool]


class Subscription:
    """Handle for one observer registered on one or more topics.

    Deliveries are scheduled on the loop that created the subscription and
    run in publish order. Once ``active`` is cleared nothing else reaches
    the observer, including deliveries that were already scheduled.
    """

    def __init__(
        self,
        topics: Iterable[str],
        observer: Observer,
        loop: asyncio.AbstractEventLoop,
        *,
        buffering: bool = False,
    ) -> None:
        self.topics = tuple(topics)
        self.active = True
        self._observer = observer
        self._loop = loop
        self._buffer: List[SyncEvent] | None = [] if buffering else None

    def deliver(self, event: SyncEvent) -> None:
        if not self.active:
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, event)
        except RuntimeError:
            logger.warning("dropping %s event for %s: event loop is closed", event.type, self.topics)

    def release(self, snapshot: SyncEvent, is_stale: StalePredicate) -> None:
        """Deliver ``snapshot``, then buffered deltas it does not already cover."""

        def flush() -> None:
            buffered = self._buffer or []
            self._buffer = None
            if not self.active:
                return
            self._invoke(snapshot)
            for event in buffered:
                if not self.active:
                    return
                if not is_stale(event):
                    self._invoke(event)

        self._loop.call_soon(flush)

    def _dispatch(self, event: SyncEvent) -> None:
        if not self.active:
            return
        if self._buffer is not None:
            self._buffer.append(event)
            return
        self._invoke(event)

    def _invoke(self, event: SyncEvent) -> None:
        try:
            self._observer(event)
        except Exception:
            logger.exception("observer on %s failed handling %s event", self.topics, event.type)


class SyncChannel:
    """Routes conversation deltas to every subscription of the affected topics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        topics: Iterable[str],
        observer: Observer,
        *,
        buffering: bool = False,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Subscription:
        subscription = Subscription(topics, observer, loop or asyncio.get_running_loop(), buffering=buffering)
        with self._lock:
            for topic in subscription.topics:
                self._subscriptions.setdefault(topic, []).append(subscription)
        logger.debug("subscribed to %s", subscription.topics)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        with self._lock:
            for topic in subscription.topics:
                subs = self._subscriptions.get(topic)
                if not subs:
                    continue
                try:
                    subs.remove(subscription)
                except ValueError:
                    continue
                if not subs:
                    self._subscriptions.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(topic, ()))

    def publish_message(self, message: Message) -> None:
        event = SyncEvent(type=EVENT_MESSAGE, conv_key=message.conv_key, message=message)
        self._fanout([conversation_topic(message.conv_key)], event)

    def publish_metadata(self, metadata: ConversationMetadata) -> None:
        topics = [conversation_topic(metadata.conv_key)]
        if metadata.kind == KIND_BROADCAST:
            topics.append(BROADCAST_INBOX_TOPIC)
        else:
            topics.extend(inbox_topic(user_id) for user_id in sorted(metadata.participant_ids))
        event = SyncEvent(type=EVENT_METADATA, conv_key=metadata.conv_key, metadata=metadata)
        self._fanout(topics, event)

    def close(self) -> None:
        with self._lock:
            subscriptions = {id(s): s for subs in self._subscriptions.values() for s in subs}
            self._subscriptions.clear()
        for subscription in subscriptions.values():
            subscription.active = False
        if subscriptions:
            logger.info("closed %d live subscriptions", len(subscriptions))

    def _fanout(self, topics: Iterable[str], event: SyncEvent) -> None:
        seen: set[int] = set()
        with self._lock:
            targets: List[Subscription] = []
            for topic in topics:
                for subscription in self._subscriptions.get(topic, ()):
                    if id(subscription) not in seen:
                        seen.add(id(subscription))
                        targets.append(subscription)
        for subscription in targets:
            subscription.deliver(event)
