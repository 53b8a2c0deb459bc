"""SQLAlchemy model for outbound messages awaiting remote confirmation."""

from sqlalchemy import BigInteger, Integer, SmallInteger, Text, VARCHAR
from sqlalchemy.orm import Mapped, mapped_column

from chat_sync.db.session import Base


class OutboundMessage(Base):
    """Queue entry for a message the remote store has not yet confirmed."""

    __tablename__ = "outbound_queue"

    local_id: Mapped[str] = mapped_column(Text, primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)  # FIFO position
    chat_id: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # MessageRecord JSON
    remote_id: Mapped[str] = mapped_column(Text, nullable=False)  # reserved push id
    status: Mapped[str] = mapped_column(
        VARCHAR(16), nullable=False, default="pending"
    )  # 'pending', 'sending'
    attempt: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    enqueued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_attempt_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
