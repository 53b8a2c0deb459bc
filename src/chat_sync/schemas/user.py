"""User record schema."""

from pydantic import Field

from chat_sync.schemas.common import Record


class UserRecord(Record):
    """A registered user as stored remotely and cached locally."""

    uid: str = Field(..., min_length=1)
    email: str = ""
    display_name: str = ""
    created_at: int = 0
    last_seen: int = 0
    is_online: bool = False
    fcm_token: str | None = None
