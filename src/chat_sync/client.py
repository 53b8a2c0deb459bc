"""Client facade wiring the local store, remote store and sync services.

Typical host usage::

    client = MessagingClient.from_settings(reachability=platform_source)
    await client.start(uid)
    await client.send_message(chat_id, "hi")
    ...
    await client.close()
"""

from __future__ import annotations

import logging

import httpx

from chat_sync.core.errors import SyncError
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.db.store import LocalStore
from chat_sync.repositories.chat_repo import ChatRepository
from chat_sync.repositories.message_repo import MessageRepository
from chat_sync.schemas.chat import ChatRecord
from chat_sync.schemas.message import DeliveryStatus, MessageMetadata, MessageRecord, MessageType
from chat_sync.schemas.queue import QueueItem
from chat_sync.services.connectivity import ConnectivityMonitor, ManualReachability, ReachabilitySource
from chat_sync.services.delivery import DeliveryTracker, compute_status
from chat_sync.services.firebase import FirebaseRemoteStore
from chat_sync.services.outbound_queue import OutboundQueue
from chat_sync.services.remote import RemoteStore, with_timeout
from chat_sync.services.sync_engine import EntitySyncEngine, RealtimeSync, SyncReport
from chat_sync.utils.ids import generate_local_id
from chat_sync.utils.time import now_ms

logger = logging.getLogger(__name__)


class MessagingClient:
    """One signed-in user's view of the messaging data."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        reachability: ReachabilitySource | None = None,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.remote = remote
        self.connectivity = ConnectivityMonitor(reachability or ManualReachability(), self.config)
        self.engine = EntitySyncEngine(store, remote, self.config)
        self.queue = OutboundQueue(store, self.engine, self.connectivity, self.config)
        self.delivery = DeliveryTracker(store, remote, self.config)
        self.chats = ChatRepository(store)
        self.messages = MessageRepository(store)
        self.uid: str | None = None
        self._realtime: RealtimeSync | None = None

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        *,
        reachability: ReachabilitySource | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> MessagingClient:
        """Build a client on SQLite and Firebase from ``config``."""
        cfg = config or default_settings
        return cls(
            LocalStore(config=cfg),
            FirebaseRemoteStore(cfg, transport=transport),
            reachability,
            cfg,
        )

    def _require_uid(self) -> str:
        if self.uid is None:
            raise SyncError("Client not started. Call start(uid) first.")
        return self.uid

    async def start(self, uid: str, *, initial_sync: bool = True) -> SyncReport | None:
        """Open the store, pull ``uid``'s data and start live sync and sending.

        A failure during the initial pull (network or remote) is logged and
        skipped, and ``None`` is returned; real-time sync and the outbound
        queue start regardless.
        """
        await self.store.init()
        await self.connectivity.start()
        self.uid = uid

        report: SyncReport | None = None
        if initial_sync and await self.connectivity.is_online():
            try:
                report = await self.engine.initial_sync(uid)
            except SyncError as exc:
                logger.warning("Initial sync for %s skipped: %s", uid, exc)

        self._realtime = self.engine.start_realtime_sync(uid)
        await self.queue.start()
        return report

    async def stop(self) -> None:
        """Tear down subscriptions and wait for an in-flight drain."""
        if self._realtime is not None:
            self._realtime()
            self._realtime = None
        await self.queue.stop()
        self.connectivity.stop()
        self.uid = None

    async def close(self) -> None:
        await self.stop()
        await self.remote.close()
        await self.store.close()

    async def send_message(
        self,
        chat_id: str,
        content: str,
        *,
        type: MessageType = MessageType.TEXT,
        metadata: MessageMetadata | None = None,
    ) -> QueueItem:
        """Queue a message from the current user; it is sent as soon as possible."""
        message = MessageRecord(
            chat_id=chat_id,
            sender_id=self._require_uid(),
            type=type,
            content=content,
            timestamp=now_ms(),
            local_id=generate_local_id(),
            metadata=metadata,
        )
        return await self.queue.enqueue(message)

    async def list_chats(self) -> list[ChatRecord]:
        return await self.chats.list_for_user(self._require_uid())

    async def list_messages(self, chat_id: str, limit: int = 50, offset: int = 0) -> list[MessageRecord]:
        return await self.messages.list_for_chat(chat_id, limit, offset)

    def status_of(self, message: MessageRecord) -> DeliveryStatus:
        return compute_status(message, self._require_uid())

    async def mark_delivered(self, message: MessageRecord) -> None:
        await self.delivery.mark_delivered(message.id, message.chat_id, self._require_uid())

    async def mark_read(self, message: MessageRecord) -> None:
        await self.delivery.mark_read(message.id, message.chat_id, self._require_uid())

    async def mark_chat_read(self, chat_id: str) -> None:
        """Reset the current user's unread counter locally and remotely."""
        uid = self._require_uid()
        await self.chats.set_unread_count(chat_id, uid, 0)
        try:
            await with_timeout(
                self.remote.update_chat(chat_id, {f"unreadCounts/{uid}": 0}),
                self.config.remote_timeout_seconds,
                "update_chat",
            )
        except SyncError as exc:
            logger.info("Could not reset remote unread count for %s: %s", chat_id, exc)
