"""Chat record schemas."""

from enum import Enum

from pydantic import Field, field_validator

from chat_sync.schemas.common import Record
from chat_sync.schemas.message import MessageType


class ChatType(str, Enum):
    ONE_TO_ONE = "1:1"
    GROUP = "group"


class LastMessage(Record):
    """Preview of the newest message, shown in the chat list."""

    content: str
    sender_id: str
    timestamp: int
    type: MessageType = MessageType.TEXT


class ChatRecord(Record):
    """A one-to-one or group conversation.

    ``participant_ids`` is an ordered set: duplicates are dropped, first
    occurrence wins, and the list may not be empty.
    """

    id: str = Field(..., min_length=1)
    type: ChatType = ChatType.ONE_TO_ONE
    participant_ids: list[str]
    name: str | None = None
    created_at: int = 0
    last_message: LastMessage | None = None
    unread_counts: dict[str, int] = Field(default_factory=dict)

    @field_validator("participant_ids")
    @classmethod
    def _ordered_unique(cls, value: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for uid in value:
            if not uid:
                raise ValueError("participant ids must be non-empty strings")
            seen.setdefault(uid, None)
        if not seen:
            raise ValueError("a chat needs at least one participant")
        return list(seen)

    @property
    def is_group(self) -> bool:
        return self.type is ChatType.GROUP
