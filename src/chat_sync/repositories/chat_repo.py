"""Data access helpers for cached chats and their participants."""
from __future__ import annotations

from collections import defaultdict
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert

from chat_sync.db.store import LocalStore, Operation
from chat_sync.models import Chat, ChatParticipant
from chat_sync.schemas.chat import ChatRecord, LastMessage

__all__ = ["ChatRepository"]

chats = Chat.__table__
participants = ChatParticipant.__table__


def _to_record(row: dict[str, Any], members: list[dict[str, Any]]) -> ChatRecord:
    last_message = None
    if row["last_message_timestamp"] is not None:
        last_message = LastMessage(
            content=row["last_message_content"] or "",
            sender_id=row["last_message_sender_id"] or "",
            timestamp=row["last_message_timestamp"],
            type=row["last_message_type"] or "text",
        )
    return ChatRecord(
        id=row["id"],
        type=row["type"],
        name=row["name"],
        created_at=row["created_at"],
        participant_ids=[member["user_id"] for member in members],
        unread_counts={member["user_id"]: member["unread_count"] for member in members},
        last_message=last_message,
    )


class ChatRepository:
    """Thin wrapper around local store access for chat rows."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    @staticmethod
    def upsert_ops(chat: ChatRecord) -> list[Operation]:
        """Return the statements that write ``chat`` and replace its participants.

        One insert per participant, so a foreign-key failure names the
        missing user.
        """
        last = chat.last_message
        values = {
            "id": chat.id,
            "type": chat.type.value,
            "name": chat.name,
            "created_at": chat.created_at,
            "last_message_content": last.content if last else None,
            "last_message_sender_id": last.sender_id if last else None,
            "last_message_timestamp": last.timestamp if last else None,
            "last_message_type": last.type.value if last else None,
        }
        stmt = insert(chats).values(**values)
        ops: list[Operation] = [
            stmt.on_conflict_do_update(
                index_elements=[chats.c.id],
                set_={key: stmt.excluded[key] for key in values if key != "id"},
            ),
            delete(participants).where(participants.c.chat_id == chat.id),
        ]
        for position, uid in enumerate(chat.participant_ids):
            ops.append(
                insert(participants).values(
                    chat_id=chat.id,
                    user_id=uid,
                    position=position,
                    unread_count=chat.unread_counts.get(uid, 0),
                )
            )
        return ops

    async def upsert(self, chat: ChatRecord) -> None:
        """Write the chat row and its participant rows in one transaction."""
        await self.store.transaction(self.upsert_ops(chat))

    async def _members(self, chat_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
        rows = await self.store.query(
            select(participants)
            .where(participants.c.chat_id.in_(chat_ids))
            .order_by(participants.c.chat_id, participants.c.position)
        )
        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            grouped[row["chat_id"]].append(row)
        return grouped

    async def get(self, chat_id: str) -> ChatRecord | None:
        rows = await self.store.query(select(chats).where(chats.c.id == chat_id))
        if not rows:
            return None
        members = await self._members([chat_id])
        return _to_record(rows[0], members[chat_id])

    async def exists(self, chat_id: str) -> bool:
        rows = await self.store.query(select(chats.c.id).where(chats.c.id == chat_id))
        return bool(rows)

    async def list_for_user(self, uid: str) -> list[ChatRecord]:
        """Return the user's chats, most recently active first."""
        rows = await self.store.query(
            select(chats)
            .join(participants, participants.c.chat_id == chats.c.id)
            .where(participants.c.user_id == uid)
            .order_by(
                chats.c.last_message_timestamp.desc().nulls_last(),
                chats.c.created_at.desc(),
            )
        )
        if not rows:
            return []
        members = await self._members([row["id"] for row in rows])
        return [_to_record(row, members[row["id"]]) for row in rows]

    async def update_last_message(self, chat_id: str, last: LastMessage) -> bool:
        result = await self.store.execute(
            update(chats)
            .where(chats.c.id == chat_id)
            .values(
                last_message_content=last.content,
                last_message_sender_id=last.sender_id,
                last_message_timestamp=last.timestamp,
                last_message_type=last.type.value,
            )
        )
        return result.changes > 0

    async def get_unread_count(self, chat_id: str, uid: str) -> int:
        rows = await self.store.query(
            select(participants.c.unread_count).where(
                participants.c.chat_id == chat_id,
                participants.c.user_id == uid,
            )
        )
        return int(rows[0]["unread_count"]) if rows else 0

    async def set_unread_count(self, chat_id: str, uid: str, count: int) -> bool:
        result = await self.store.execute(
            update(participants)
            .where(participants.c.chat_id == chat_id, participants.c.user_id == uid)
            .values(unread_count=max(count, 0))
        )
        return result.changes > 0
