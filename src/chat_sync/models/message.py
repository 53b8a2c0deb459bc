# src/chat_sync/models/message.py
"""Models describing chat messages and per-recipient receipts."""

from sqlalchemy import BigInteger, Boolean, CheckConstraint, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from chat_sync.db.session import Base


class Message(Base):
    """A chat message, either confirmed remotely or still local-only.

    ``id`` is assigned by the remote store and stays NULL until the send is
    confirmed; ``local_id`` is the client correlation key. Both are unique.
    """

    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("type IN ('text', 'image')", name="ck_messages_type"),
        CheckConstraint(
            "status IN ('sending', 'sent', 'delivered', 'read')",
            name="ck_messages_status",
        ),
        Index("idx_messages_chat_id_timestamp", "chat_id", "timestamp"),
    )

    row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)
    local_id: Mapped[str | None] = mapped_column(Text, unique=True, nullable=True)

    chat_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(Text, ForeignKey("users.uid"), nullable=False)

    type: Mapped[str] = mapped_column(Text, nullable=False, default="text")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="sending")

    image_width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    image_size: Mapped[int | None] = mapped_column(Integer, nullable=True)


class MessageDelivery(Base):
    """Delivered/read flags for one recipient of one confirmed message."""

    __tablename__ = "message_delivery"

    message_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    # Recipients are not constrained to local users; receipts can name members
    # who left the chat before we pulled it.
    user_id: Mapped[str] = mapped_column(Text, primary_key=True)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
