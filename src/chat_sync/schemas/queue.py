"""Outbound queue item schema."""

from enum import Enum

from pydantic import BaseModel

from chat_sync.schemas.message import MessageRecord


class QueueStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"


class QueueItem(BaseModel):
    """A message waiting for remote confirmation.

    ``remote_id`` is reserved when the item is first queued and reused by
    every retry, so a send whose response was lost overwrites rather than
    duplicates on the next attempt.
    """

    local_id: str
    seq: int
    message: MessageRecord
    remote_id: str
    status: QueueStatus = QueueStatus.PENDING
    attempt: int = 0
    enqueued_at: int
    last_attempt_at: int | None = None
    last_error: str | None = None
    stalled: bool = False

    @property
    def chat_id(self) -> str:
        return self.message.chat_id
