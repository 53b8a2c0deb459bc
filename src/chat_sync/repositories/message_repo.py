"""Data access helpers for cached messages and delivery receipts."""
from __future__ import annotations

from collections import defaultdict
from typing import Any

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.dialects.sqlite import insert

from chat_sync.db.store import LocalStore, Operation
from chat_sync.models import Message, MessageDelivery
from chat_sync.schemas.message import (
    DeliveryReceipt,
    DeliveryStatus,
    MessageMetadata,
    MessageRecord,
)

__all__ = ["MessageRepository"]

messages = Message.__table__
deliveries = MessageDelivery.__table__
confirmed = messages.alias("confirmed")


def _to_record(row: dict[str, Any], receipts: list[dict[str, Any]]) -> MessageRecord:
    metadata = None
    if any(row[key] is not None for key in ("image_width", "image_height", "image_size")):
        metadata = MessageMetadata(
            image_width=row["image_width"],
            image_height=row["image_height"],
            image_size=row["image_size"],
        )
    return MessageRecord(
        id=row["id"] or "",
        chat_id=row["chat_id"],
        sender_id=row["sender_id"],
        type=row["type"],
        content=row["content"],
        timestamp=row["timestamp"],
        status=row["status"],
        local_id=row["local_id"],
        delivered_to=[r["user_id"] for r in receipts if r["delivered"]],
        read_by=[r["user_id"] for r in receipts if r["read"]],
        metadata=metadata,
    )


def _receipt_rows(message: MessageRecord) -> list[dict[str, Any]]:
    """Flatten ``delivered_to``/``read_by`` into rows; read implies delivered."""
    read = set(message.read_by)
    recipients = list(dict.fromkeys([*message.delivered_to, *message.read_by]))
    return [
        {"message_id": message.id, "user_id": uid, "delivered": True, "read": uid in read}
        for uid in recipients
    ]


class MessageRepository:
    """Thin wrapper around local store access for message rows."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    @staticmethod
    def upsert_ops(message: MessageRecord) -> list[Operation]:
        """Return the statements that write ``message`` and its receipts.

        A confirmed message (non-empty ``id``) is matched by remote id. If an
        optimistic row with the same ``local_id`` is still waiting for its id,
        that row is adopted instead of inserting a second copy; if the
        confirmed row already arrived through a subscription, the optimistic
        row is dropped. Receipt rows are replaced wholesale.
        """
        meta = message.metadata
        values = {
            "id": message.id or None,
            "local_id": message.local_id,
            "chat_id": message.chat_id,
            "sender_id": message.sender_id,
            "type": message.type.value,
            "content": message.content,
            "timestamp": message.timestamp,
            "status": message.status.value,
            "image_width": meta.image_width if meta else None,
            "image_height": meta.image_height if meta else None,
            "image_size": meta.image_size if meta else None,
        }
        ops: list[Operation] = []

        if not message.id:
            stmt = insert(messages).values(**values)
            ops.append(
                stmt.on_conflict_do_update(
                    index_elements=[messages.c.local_id],
                    set_={
                        key: stmt.excluded[key]
                        for key in values
                        if key not in ("id", "local_id")
                    },
                )
            )
            return ops

        if message.local_id:
            pending = (messages.c.local_id == message.local_id) & messages.c.id.is_(None)
            ops.append(
                delete(messages).where(
                    pending,
                    exists().where(confirmed.c.id == message.id),
                )
            )
            ops.append(update(messages).where(pending).values(id=message.id))

        stmt = insert(messages).values(**values)
        update_values: dict[str, Any] = {
            key: stmt.excluded[key] for key in values if key not in ("id", "local_id")
        }
        update_values["local_id"] = func.coalesce(stmt.excluded.local_id, messages.c.local_id)
        ops.append(
            stmt.on_conflict_do_update(index_elements=[messages.c.id], set_=update_values)
        )
        ops.append(delete(deliveries).where(deliveries.c.message_id == message.id))
        for receipt in _receipt_rows(message):
            ops.append(insert(deliveries).values(**receipt))
        return ops

    async def upsert(self, message: MessageRecord) -> None:
        await self.store.transaction(self.upsert_ops(message))

    async def _receipts(self, message_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
        ids = [mid for mid in message_ids if mid]
        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        if not ids:
            return grouped
        rows = await self.store.query(
            select(deliveries)
            .where(deliveries.c.message_id.in_(ids))
            .order_by(deliveries.c.message_id, deliveries.c.user_id)
        )
        for row in rows:
            grouped[row["message_id"]].append(row)
        return grouped

    async def _records(self, rows: list[dict[str, Any]]) -> list[MessageRecord]:
        receipts = await self._receipts([row["id"] for row in rows])
        return [_to_record(row, receipts.get(row["id"], [])) for row in rows]

    async def get(self, message_id: str) -> MessageRecord | None:
        rows = await self.store.query(select(messages).where(messages.c.id == message_id))
        records = await self._records(rows)
        return records[0] if records else None

    async def get_by_local_id(self, local_id: str) -> MessageRecord | None:
        rows = await self.store.query(select(messages).where(messages.c.local_id == local_id))
        records = await self._records(rows)
        return records[0] if records else None

    async def list_for_chat(
        self,
        chat_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MessageRecord]:
        """Return one page of a chat's messages, newest first."""
        rows = await self.store.query(
            select(messages)
            .where(messages.c.chat_id == chat_id)
            .order_by(messages.c.timestamp.desc(), messages.c.row_id.desc())
            .limit(limit)
            .offset(offset)
        )
        return await self._records(rows)

    async def list_pending(self) -> list[MessageRecord]:
        """Return messages still waiting for remote confirmation, oldest first."""
        rows = await self.store.query(
            select(messages)
            .where(messages.c.status == DeliveryStatus.SENDING.value)
            .order_by(messages.c.timestamp.asc(), messages.c.row_id.asc())
        )
        return await self._records(rows)

    async def count_for_chat(self, chat_id: str) -> int:
        rows = await self.store.query(
            select(func.count().label("n")).where(messages.c.chat_id == chat_id)
        )
        return int(rows[0]["n"])

    async def update_status(self, message_id: str, status: DeliveryStatus) -> bool:
        result = await self.store.execute(
            update(messages).where(messages.c.id == message_id).values(status=status.value)
        )
        return result.changes > 0

    async def set_delivery(self, message_id: str, uid: str, *, read: bool = False) -> None:
        """Mark one recipient as delivered, and as read when ``read``.

        Flags are only ever raised, never cleared; read implies delivered.
        """
        stmt = insert(deliveries).values(
            message_id=message_id,
            user_id=uid,
            delivered=True,
            read=read,
        )
        set_: dict[str, Any] = {"delivered": True}
        if read:
            set_["read"] = True
        await self.store.execute(
            stmt.on_conflict_do_update(
                index_elements=[deliveries.c.message_id, deliveries.c.user_id],
                set_=set_,
            )
        )

    @staticmethod
    def replace_delivery_ops(
        message_id: str, state: dict[str, DeliveryReceipt]
    ) -> list[Operation]:
        ops: list[Operation] = [delete(deliveries).where(deliveries.c.message_id == message_id)]
        for uid, receipt in state.items():
            ops.append(
                insert(deliveries).values(
                    message_id=message_id,
                    user_id=uid,
                    delivered=receipt.delivered or receipt.read,
                    read=receipt.read,
                )
            )
        return ops

    async def delivery_state(self, message_id: str) -> dict[str, DeliveryReceipt]:
        receipts = await self._receipts([message_id])
        return {
            row["user_id"]: DeliveryReceipt(delivered=row["delivered"], read=row["read"])
            for row in receipts.get(message_id, [])
        }
