# src/chat_sync/models/user.py
"""Local cache copy of remote user records."""

from sqlalchemy import BigInteger, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column

from chat_sync.db.session import Base


class User(Base):
    """A user as last pulled from the remote store, keyed by uid."""

    __tablename__ = "users"

    uid: Mapped[str] = mapped_column(Text, primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False, default="")
    display_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_seen: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    fcm_token: Mapped[str | None] = mapped_column(Text, nullable=True)
