"""Persistent outbound message queue.

Messages written while offline (or whose send failed) wait here until the
remote store confirms them. Each item moves through::

    pending -> sending -> removed        (confirmed)
                       -> pending, +1    (failed; retried on the next trigger)

A drain runs when the connectivity monitor reports online (including at
start), and right after an enqueue while online. At most one drain runs at a
time and items are sent in the order they were queued.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy import update

from chat_sync.core.errors import NetworkError, RemoteError, StoreError, StoreErrorKind, SyncError
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.db.store import LocalStore, Operation
from chat_sync.repositories.chat_repo import chats as chats_table
from chat_sync.repositories.message_repo import MessageRepository
from chat_sync.repositories.outbound_repo import OutboundRepository
from chat_sync.schemas.message import DeliveryStatus, MessageRecord
from chat_sync.schemas.queue import QueueItem
from chat_sync.services.connectivity import ConnectivityMonitor, Unsubscribe
from chat_sync.services.sync_engine import EntitySyncEngine
from chat_sync.utils.ids import generate_local_id, generate_push_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrainReport:
    """Outcome of one :meth:`OutboundQueue.drain` call.

    ``ran`` is False when the call found another drain in progress or the
    device offline, and did nothing.
    """

    ran: bool
    sent: int = 0
    failed: int = 0
    remaining: int = 0


class OutboundQueue:
    """Offline-first send path for messages.

    Args:
        store: Initialized local store.
        engine: Sync engine used for sends and for backfilling local rows.
        connectivity: Monitor whose online transitions trigger drains.
        config: Settings (``outbound_max_attempts``).
    """

    def __init__(
        self,
        store: LocalStore,
        engine: EntitySyncEngine,
        connectivity: ConnectivityMonitor,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.engine = engine
        self.connectivity = connectivity
        self.items = OutboundRepository(store, max_attempts=self.config.outbound_max_attempts)
        self._draining = False
        self._rerun = False
        self._stopped = False
        self._drain_task: asyncio.Task[DrainReport] | None = None
        self._unsubscribe: Unsubscribe | None = None

    @property
    def draining(self) -> bool:
        return self._draining

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover items a crash left in flight and follow connectivity.

        The monitor reports its current state on subscribe, so starting while
        online drains anything left from a previous session.
        """
        self._stopped = False
        if self._unsubscribe is not None:
            return
        recovered = await self.items.reset_in_flight()
        if recovered:
            logger.info("Returned %d interrupted outbound item(s) to pending", recovered)
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity)

    async def stop(self) -> None:
        """Stop following connectivity and wait for an active drain to finish."""
        self._stopped = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.trigger()

    def trigger(self) -> asyncio.Task[DrainReport] | None:
        """Start a background drain unless one is already running."""
        if self._draining or (self._drain_task is not None and not self._drain_task.done()):
            # Items queued after the running pass listed them get a follow-up pass.
            self._rerun = True
            return None
        task = asyncio.ensure_future(self.drain())
        self._drain_task = task
        task.add_done_callback(self._drain_done)
        return task

    async def join(self) -> None:
        """Wait until no background drain is running, follow-up passes included."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.gather(self._drain_task, return_exceptions=True)

    def _drain_done(self, task: asyncio.Task[DrainReport]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Outbound drain failed", exc_info=exc)
        if self._rerun and not self._stopped and self.connectivity.online:
            self._rerun = False
            self.trigger()

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, message: MessageRecord) -> QueueItem:
        """Persist ``message`` for sending and return its queue item.

        The optimistic local message (status ``sending``) and the queue item
        are written together. Re-enqueueing the same ``local_id`` updates the
        existing item in place. If the chat or sender is not cached yet, only
        the queue item is stored; the message row follows the confirmed send.
        """
        local_id = message.local_id or generate_local_id()
        message = message.model_copy(
            update={"id": "", "local_id": local_id, "status": DeliveryStatus.SENDING}
        )

        existing = await self.items.get(local_id)
        remote_id = existing.remote_id if existing else generate_push_id(message.timestamp)
        queue_op = OutboundRepository.upsert_statement(message, remote_id)

        ops: list[Operation] = [*MessageRepository.upsert_ops(message), queue_op]
        if message.timestamp:
            ops.append(
                update(chats_table)
                .where(
                    chats_table.c.id == message.chat_id,
                    (chats_table.c.last_message_timestamp.is_(None))
                    | (chats_table.c.last_message_timestamp <= message.timestamp),
                )
                .values(
                    last_message_content=message.content,
                    last_message_sender_id=message.sender_id,
                    last_message_timestamp=message.timestamp,
                    last_message_type=message.type.value,
                )
            )
        try:
            await self.store.transaction(ops)
        except StoreError as exc:
            if not exc.is_constraint_violation:
                raise
            missing = exc.violation.missing if exc.violation else "constraint"
            logger.info("Queueing %s without local copy (%s)", local_id, missing)
            await self.store.execute(queue_op)

        logger.debug("Enqueued outbound message %s", local_id)
        item = await self.items.get(local_id)
        if item is None:
            raise StoreError(StoreErrorKind.IO_ERROR, f"Queue item {local_id} was not persisted")

        if self.connectivity.online:
            self.trigger()
        return item

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self) -> DrainReport:
        """Send pending items in FIFO order while online.

        Single-flight: a call made while another drain runs returns
        ``DrainReport(ran=False)`` at once. A network failure ends the pass;
        a remote rejection marks that item failed and moves on. Each item is
        attempted at most once per pass.
        """
        if self._draining:
            return DrainReport(ran=False)
        # Set before the first await: this is the single-flight guard.
        self._draining = True
        try:
            return await self._drain_pass()
        finally:
            self._draining = False

    async def _drain_pass(self) -> DrainReport:
        sent = failed = 0
        attempted: set[str] = set()
        # No other pass is running, so anything still marked sending was orphaned.
        await self.items.reset_in_flight()

        while True:
            if not await self.connectivity.is_online():
                logger.debug("Offline; stopping outbound drain")
                break
            item = next(
                (i for i in await self.items.list_pending() if i.local_id not in attempted),
                None,
            )
            if item is None:
                break
            attempted.add(item.local_id)

            outcome = await self._send(item)
            if outcome is True:
                sent += 1
            elif outcome is False:
                failed += 1
            else:
                failed += 1
                break

        remaining = await self.items.count()
        if sent or failed:
            logger.info(
                "Outbound drain: %d sent, %d failed, %d remaining", sent, failed, remaining
            )
        return DrainReport(ran=True, sent=sent, failed=failed, remaining=remaining)

    async def _send(self, item: QueueItem) -> bool | None:
        """Attempt one item: True sent, False failed, None stop the pass.

        Whatever goes wrong after ``mark_sending``, the item is returned to
        ``pending`` with its attempt counted.
        """
        await self.items.mark_sending(item.local_id)
        try:
            remote_id = await self.engine.push_message(item.message, item.remote_id)
            await self._confirm(item, remote_id)
        except NetworkError as exc:
            await self._record_failure(item, exc)
            return None
        except RemoteError as exc:
            await self._record_failure(item, exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Unexpected error sending outbound message %s", item.local_id, exc_info=True
            )
            await self._record_failure(item, exc)
            return None
        return True

    async def _record_failure(self, item: QueueItem, exc: Exception) -> None:
        error = str(exc) if isinstance(exc, SyncError) else f"{type(exc).__name__}: {exc}"
        attempts = await self.items.record_failure(item.local_id, error)
        if attempts >= self.config.outbound_max_attempts:
            logger.warning(
                "Outbound message %s has failed %d times: %s", item.local_id, attempts, error
            )
        else:
            logger.info("Outbound message %s failed (attempt %d): %s", item.local_id, attempts, error)

    async def _confirm(self, item: QueueItem, remote_id: str) -> None:
        """Record a confirmed send: update the local message, drop the item."""
        confirmed = item.message.model_copy(update={"id": remote_id, "status": DeliveryStatus.SENT})
        try:
            await self.store.transaction(
                [
                    *MessageRepository.upsert_ops(confirmed),
                    OutboundRepository.remove_statement(item.local_id),
                ]
            )
        except StoreError as exc:
            if not exc.is_constraint_violation:
                raise
            # Chat or sender not cached yet: backfill through the engine.
            if not await self.engine.sync_message_to_local(confirmed):
                logger.warning(
                    "Message %s was sent as %s but could not be cached locally",
                    item.local_id,
                    remote_id,
                )
            await self.items.remove(item.local_id)
        logger.debug("Outbound message %s confirmed as %s", item.local_id, remote_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def pending(self) -> list[QueueItem]:
        """Every queued item in FIFO order, including stalled ones."""
        return await self.items.list_all()

    async def retry(self, local_id: str | None = None) -> DrainReport:
        """Drain now; with ``local_id``, only if that item is still queued."""
        if local_id is not None and await self.items.get(local_id) is None:
            return DrainReport(ran=False, remaining=await self.items.count())
        return await self.drain()
