# src/chat_sync/models/__init__.py
"""SQLAlchemy models for the local cache store."""

from .chat import Chat, ChatParticipant
from .message import Message, MessageDelivery
from .outbound import OutboundMessage
from .system import SchemaVersion
from .user import User

__all__ = [
    "Chat", "ChatParticipant",
    "Message", "MessageDelivery",
    "OutboundMessage",
    "SchemaVersion",
    "User",
]
