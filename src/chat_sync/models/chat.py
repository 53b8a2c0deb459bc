# src/chat_sync/models/chat.py
"""Models describing conversations and their membership."""

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from chat_sync.db.session import Base


class Chat(Base):
    """One-to-one or group conversation.

    The last-message preview is denormalized onto the row so the chat list
    can be rendered without touching ``messages``.
    """

    __tablename__ = "chats"
    __table_args__ = (
        CheckConstraint("type IN ('1:1', 'group')", name="ck_chats_type"),
        Index("idx_chats_last_message", "last_message_timestamp"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # The sender is not a foreign key: previews may name users we never pulled.
    last_message_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_sender_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_timestamp: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_message_type: Mapped[str | None] = mapped_column(Text, nullable=True)


class ChatParticipant(Base):
    """Membership row; ``position`` keeps the participant list ordered."""

    __tablename__ = "chat_participants"
    __table_args__ = (Index("idx_chat_participants_user_id", "user_id"),)

    chat_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("chats.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("users.uid", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
