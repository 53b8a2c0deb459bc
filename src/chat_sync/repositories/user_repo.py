"""Data access helpers for cached users."""
from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import Insert, insert

from chat_sync.db.store import LocalStore
from chat_sync.models import User
from chat_sync.schemas.user import UserRecord

__all__ = ["UserRepository"]

users = User.__table__


def _to_record(row: dict[str, Any]) -> UserRecord:
    return UserRecord(
        uid=row["uid"],
        email=row["email"],
        display_name=row["display_name"],
        created_at=row["created_at"],
        last_seen=row["last_seen"] or 0,
        is_online=row["is_online"],
        fcm_token=row["fcm_token"],
    )


class UserRepository:
    """Thin wrapper around local store access for user rows."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    @staticmethod
    def upsert_statement(user: UserRecord) -> Insert:
        """Build an insert that overwrites every field of an existing row.

        ``ON CONFLICT DO UPDATE`` keeps the row in place; ``INSERT OR REPLACE``
        would delete it first and cascade into participant rows.
        """
        values = {
            "uid": user.uid,
            "email": user.email,
            "display_name": user.display_name,
            "created_at": user.created_at,
            "last_seen": user.last_seen,
            "is_online": user.is_online,
            "fcm_token": user.fcm_token,
        }
        stmt = insert(users).values(**values)
        return stmt.on_conflict_do_update(
            index_elements=[users.c.uid],
            set_={key: stmt.excluded[key] for key in values if key != "uid"},
        )

    async def upsert(self, user: UserRecord) -> None:
        await self.store.execute(self.upsert_statement(user))

    async def get(self, uid: str) -> UserRecord | None:
        rows = await self.store.query(select(users).where(users.c.uid == uid))
        return _to_record(rows[0]) if rows else None

    async def get_many(self, uids: Iterable[str]) -> list[UserRecord]:
        """Return the cached users among ``uids``; unknown ids are skipped."""
        wanted = list(dict.fromkeys(uids))
        if not wanted:
            return []
        rows = await self.store.query(select(users).where(users.c.uid.in_(wanted)))
        return [_to_record(row) for row in rows]

    async def exists(self, uid: str) -> bool:
        rows = await self.store.query(select(users.c.uid).where(users.c.uid == uid))
        return bool(rows)

    async def list_all(self) -> list[UserRecord]:
        rows = await self.store.query(select(users).order_by(users.c.display_name.asc()))
        return [_to_record(row) for row in rows]

    async def update_presence(self, uid: str, is_online: bool, last_seen: int) -> bool:
        """Update presence fields; returns False when the user is not cached."""
        result = await self.store.execute(
            update(users)
            .where(users.c.uid == uid)
            .values(is_online=is_online, last_seen=last_seen)
        )
        return result.changes > 0

    async def update_fcm_token(self, uid: str, fcm_token: str | None) -> bool:
        result = await self.store.execute(
            update(users).where(users.c.uid == uid).values(fcm_token=fcm_token)
        )
        return result.changes > 0
