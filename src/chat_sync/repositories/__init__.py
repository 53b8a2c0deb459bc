"""Local CRUD helpers over the shared :class:`~chat_sync.db.LocalStore`."""

from .chat_repo import ChatRepository
from .message_repo import MessageRepository
from .outbound_repo import OutboundRepository
from .user_repo import UserRepository

__all__ = [
    "ChatRepository",
    "MessageRepository",
    "OutboundRepository",
    "UserRepository",
]
