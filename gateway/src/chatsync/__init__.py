"""Conversation identity, message log and live sync for chatsync."""

from .config import ChatConfig, load_config_from_env
from .conversations import ConversationMetadata
from .directory import UserProfile
from .errors import AddressTaken, ChatError, InvalidMessage, InvalidTarget, NotFound, Unavailable
from .hub import Subscription, SyncChannel, SyncEvent
from .log import Message
from .resolver import BROADCAST_KEY, resolve, resolve_broadcast
from .service import ChatService, ConversationView, LiveConversationList, create_service

__all__ = [
    "AddressTaken",
    "BROADCAST_KEY",
    "ChatConfig",
    "ChatError",
    "ChatService",
    "ConversationMetadata",
    "ConversationView",
    "InvalidMessage",
    "InvalidTarget",
    "LiveConversationList",
    "Message",
    "NotFound",
    "Subscription",
    "SyncChannel",
    "SyncEvent",
    "Unavailable",
    "UserProfile",
    "create_service",
    "load_config_from_env",
    "resolve",
    "resolve_broadcast",
]
