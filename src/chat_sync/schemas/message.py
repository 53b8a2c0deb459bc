"""Message record schemas."""

from enum import Enum

from pydantic import BaseModel, Field

from chat_sync.schemas.common import Record


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class DeliveryStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class MessageMetadata(Record):
    image_width: int | None = None
    image_height: int | None = None
    image_size: int | None = None


class MessageRecord(Record):
    """A chat message.

    ``id`` is empty until the remote store has confirmed the message;
    ``local_id`` correlates the optimistic copy with its queue entry.
    ``status`` is a stored snapshot; use ``services.delivery.compute_status``
    for what to display.
    """

    id: str = ""
    chat_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    type: MessageType = MessageType.TEXT
    content: str
    timestamp: int
    status: DeliveryStatus = DeliveryStatus.SENDING
    local_id: str | None = None
    delivered_to: list[str] = Field(default_factory=list)
    read_by: list[str] = Field(default_factory=list)
    metadata: MessageMetadata | None = None

    @property
    def is_persisted(self) -> bool:
        return bool(self.id)


class DeliveryReceipt(BaseModel):
    """Delivered/read flags for one recipient."""

    delivered: bool = False
    read: bool = False
