"""Data access helpers for the persistent outbound queue."""
from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import Insert, insert
from sqlalchemy.sql.dml import Delete

from chat_sync.db.store import LocalStore
from chat_sync.models import OutboundMessage
from chat_sync.schemas.message import MessageRecord
from chat_sync.schemas.queue import QueueItem, QueueStatus
from chat_sync.utils.time import now_ms

__all__ = ["OutboundRepository"]

queue = OutboundMessage.__table__


class OutboundRepository:
    """Queue table access. Items are returned in FIFO (``seq``) order.

    Args:
        store: Shared local store.
        max_attempts: Attempt count at which an item is reported as stalled.
    """

    def __init__(self, store: LocalStore, max_attempts: int = 5) -> None:
        self.store = store
        self.max_attempts = max_attempts

    def _to_item(self, row: dict[str, Any]) -> QueueItem:
        return QueueItem(
            local_id=row["local_id"],
            seq=row["seq"],
            message=MessageRecord.model_validate_json(row["payload"]),
            remote_id=row["remote_id"],
            status=row["status"],
            attempt=row["attempt"],
            enqueued_at=row["enqueued_at"],
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
            stalled=row["attempt"] >= self.max_attempts,
        )

    @staticmethod
    def upsert_statement(message: MessageRecord, remote_id: str) -> Insert:
        """Insert at the tail of the queue, or refresh the payload in place.

        An existing item keeps its ``seq``, reserved ``remote_id`` and retry
        state, so re-queueing never reorders or duplicates.
        """
        if not message.local_id:
            raise ValueError("queued messages need a local_id")
        next_seq = select(func.coalesce(func.max(queue.c.seq), 0) + 1).scalar_subquery()
        stmt = insert(queue).values(
            local_id=message.local_id,
            seq=next_seq,
            chat_id=message.chat_id,
            payload=message.model_dump_json(),
            remote_id=remote_id,
            status=QueueStatus.PENDING.value,
            attempt=0,
            enqueued_at=now_ms(),
        )
        return stmt.on_conflict_do_update(
            index_elements=[queue.c.local_id],
            set_={"chat_id": stmt.excluded.chat_id, "payload": stmt.excluded.payload},
        )

    async def upsert(self, message: MessageRecord, remote_id: str) -> None:
        await self.store.execute(self.upsert_statement(message, remote_id))

    async def get(self, local_id: str) -> QueueItem | None:
        rows = await self.store.query(select(queue).where(queue.c.local_id == local_id))
        return self._to_item(rows[0]) if rows else None

    async def list_all(self) -> list[QueueItem]:
        rows = await self.store.query(select(queue).order_by(queue.c.seq.asc()))
        return [self._to_item(row) for row in rows]

    async def list_pending(self) -> list[QueueItem]:
        rows = await self.store.query(
            select(queue)
            .where(queue.c.status == QueueStatus.PENDING.value)
            .order_by(queue.c.seq.asc())
        )
        return [self._to_item(row) for row in rows]

    async def mark_sending(self, local_id: str) -> bool:
        result = await self.store.execute(
            update(queue)
            .where(queue.c.local_id == local_id)
            .values(status=QueueStatus.SENDING.value, last_attempt_at=now_ms())
        )
        return result.changes > 0

    async def record_failure(self, local_id: str, error: str) -> int:
        """Return the item to ``pending`` with one more attempt; returns the new count."""
        await self.store.execute(
            update(queue)
            .where(queue.c.local_id == local_id)
            .values(
                status=QueueStatus.PENDING.value,
                attempt=queue.c.attempt + 1,
                last_error=error,
            )
        )
        item = await self.get(local_id)
        return item.attempt if item else 0

    @staticmethod
    def remove_statement(local_id: str) -> Delete:
        return delete(queue).where(queue.c.local_id == local_id)

    async def remove(self, local_id: str) -> bool:
        result = await self.store.execute(self.remove_statement(local_id))
        return result.changes > 0

    async def reset_in_flight(self) -> int:
        """Return items left in ``sending`` by an interrupted run to ``pending``."""
        result = await self.store.execute(
            update(queue)
            .where(queue.c.status == QueueStatus.SENDING.value)
            .values(status=QueueStatus.PENDING.value)
        )
        return result.changes

    async def count(self) -> int:
        rows = await self.store.query(select(func.count().label("n")).select_from(queue))
        return int(rows[0]["n"])
