"""Pydantic records exchanged between the local store, remote store and callers."""

from .chat import ChatRecord, ChatType, LastMessage
from .message import DeliveryReceipt, DeliveryStatus, MessageMetadata, MessageRecord, MessageType
from .queue import QueueItem, QueueStatus
from .user import UserRecord

__all__ = [
    "ChatRecord",
    "ChatType",
    "DeliveryReceipt",
    "DeliveryStatus",
    "LastMessage",
    "MessageMetadata",
    "MessageRecord",
    "MessageType",
    "QueueItem",
    "QueueStatus",
    "UserRecord",
]
