# tests/conftest.py
"""Shared fixtures: isolated settings, an in-memory local store and a fake remote."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

from chat_sync.core.errors import NetworkError, NetworkErrorKind, RemoteError, RemoteErrorKind
from chat_sync.core.settings import Settings
from chat_sync.db.store import LocalStore
from chat_sync.schemas.chat import ChatRecord
from chat_sync.schemas.message import DeliveryReceipt, DeliveryStatus, MessageRecord
from chat_sync.schemas.user import UserRecord
from chat_sync.services.connectivity import ConnectivityMonitor, ManualReachability
from chat_sync.services.outbound_queue import OutboundQueue
from chat_sync.services.remote import Listener, Unsubscribe, notify
from chat_sync.services.sync_engine import EntitySyncEngine
from chat_sync.utils.ids import generate_push_id

TEST_DB_URL = "sqlite+aiosqlite://"


class InMemoryRemoteStore:
    """Remote store double with failure injection.

    - ``offline``: every call raises ``NetworkError(UNREACHABLE)``
    - ``send_failures``: exceptions raised by the next ``send_message`` calls
      before anything is written
    - ``lost_responses``: number of upcoming sends that are written but then
      report a timeout, as if the response never arrived
    - ``send_delay``: seconds each send waits before writing
    """

    def __init__(self) -> None:
        self.users: dict[str, UserRecord] = {}
        self.chats: dict[str, ChatRecord] = {}
        self.messages: dict[str, dict[str, MessageRecord]] = {}
        self.offline = False
        self.send_failures: list[Exception] = []
        self.lost_responses = 0
        self.send_delay = 0.0
        self.send_log: list[tuple[str | None, str]] = []
        self.calls: list[str] = []
        self._chat_listeners: list[tuple[str, Listener[list[ChatRecord]]]] = []
        self._user_listeners: list[tuple[str, Listener[UserRecord]]] = []
        self._message_listeners: list[tuple[str, Listener[MessageRecord]]] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self.closed = False

    # -- helpers -------------------------------------------------------

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.offline:
            raise NetworkError(NetworkErrorKind.UNREACHABLE, f"{name}: offline")

    def _schedule(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def settle(self) -> None:
        """Wait until every scheduled listener notification has run."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
        await asyncio.sleep(0)

    def seed_user(self, uid: str, name: str | None = None) -> UserRecord:
        user = UserRecord(uid=uid, email=f"{uid}@example.com", display_name=name or uid.upper())
        self.users[uid] = user
        return user

    def seed_chat(self, chat_id: str, participants: list[str], **fields: Any) -> ChatRecord:
        chat = ChatRecord(id=chat_id, participant_ids=participants, **fields)
        self.chats[chat_id] = chat
        return chat

    def seed_message(
        self,
        chat_id: str,
        message_id: str,
        sender_id: str,
        content: str,
        timestamp: int,
        **fields: Any,
    ) -> MessageRecord:
        message = MessageRecord(
            id=message_id,
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            timestamp=timestamp,
            status=DeliveryStatus.SENT,
            **fields,
        )
        self.messages.setdefault(chat_id, {})[message_id] = message
        return message

    def all_messages(self, chat_id: str) -> list[MessageRecord]:
        return sorted(self.messages.get(chat_id, {}).values(), key=lambda m: (m.timestamp, m.id))

    def _chats_of(self, uid: str) -> list[ChatRecord]:
        return [chat for chat in self.chats.values() if uid in chat.participant_ids]

    async def _emit_chats(self) -> None:
        for uid, listener in list(self._chat_listeners):
            await notify(listener, self._chats_of(uid))

    async def _emit_message(self, message: MessageRecord) -> None:
        for chat_id, listener in list(self._message_listeners):
            if chat_id == message.chat_id:
                await notify(listener, message)

    # -- users ---------------------------------------------------------

    async def get_user(self, uid: str) -> UserRecord:
        self._check("get_user")
        if uid not in self.users:
            raise RemoteError(RemoteErrorKind.NOT_FOUND, f"users/{uid} not found")
        return self.users[uid]

    async def put_user(self, user: UserRecord) -> None:
        self._check("put_user")
        self.users[user.uid] = user
        for uid, listener in list(self._user_listeners):
            if uid == user.uid:
                await notify(listener, user)

    # -- chats ---------------------------------------------------------

    async def get_chat(self, chat_id: str) -> ChatRecord:
        self._check("get_chat")
        if chat_id not in self.chats:
            raise RemoteError(RemoteErrorKind.NOT_FOUND, f"chats/{chat_id} not found")
        return self.chats[chat_id]

    async def put_chat(self, chat: ChatRecord) -> None:
        self._check("put_chat")
        self.chats[chat.id] = chat
        await self._emit_chats()

    async def update_chat(self, chat_id: str, updates: Mapping[str, Any]) -> None:
        self._check("update_chat")
        chat = await self.get_chat(chat_id)
        fields = {key: value for key, value in updates.items() if "/" not in key}
        counts = dict(chat.unread_counts)
        for key, value in updates.items():
            if key.startswith("unreadCounts/"):
                counts[key.split("/", 1)[1]] = value
        fields["unread_counts"] = counts
        self.chats[chat_id] = chat.model_copy(update=fields)
        await self._emit_chats()

    async def get_user_chats(self, uid: str) -> list[ChatRecord]:
        self._check("get_user_chats")
        return self._chats_of(uid)

    # -- messages ------------------------------------------------------

    async def get_messages(self, chat_id: str, limit: int = 50) -> list[MessageRecord]:
        self._check("get_messages")
        return self.all_messages(chat_id)[-limit:]

    async def send_message(self, message: MessageRecord, message_id: str | None = None) -> str:
        self._check("send_message")
        if self.send_failures:
            raise self.send_failures.pop(0)
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        remote_id = message_id or message.id or generate_push_id()
        stored = message.model_copy(update={"id": remote_id, "status": DeliveryStatus.SENT})
        self.messages.setdefault(message.chat_id, {})[remote_id] = stored
        self.send_log.append((message.local_id, remote_id))
        await self._emit_message(stored)
        if self.lost_responses:
            self.lost_responses -= 1
            raise NetworkError(NetworkErrorKind.TIMEOUT, "response lost")
        return remote_id

    def _message(self, message_id: str, chat_id: str) -> MessageRecord:
        try:
            return self.messages[chat_id][message_id]
        except KeyError:
            raise RemoteError(RemoteErrorKind.NOT_FOUND, f"messages/{chat_id}/{message_id}") from None

    async def mark_delivered(self, message_id: str, chat_id: str, uid: str) -> None:
        self._check("mark_delivered")
        message = self._message(message_id, chat_id)
        if uid not in message.delivered_to:
            self.messages[chat_id][message_id] = message.model_copy(
                update={"delivered_to": [*message.delivered_to, uid]}
            )

    async def mark_read(self, message_id: str, chat_id: str, uid: str) -> None:
        self._check("mark_read")
        message = self._message(message_id, chat_id)
        if uid not in message.read_by:
            self.messages[chat_id][message_id] = message.model_copy(
                update={"read_by": [*message.read_by, uid]}
            )

    async def get_delivery_state(self, message_id: str, chat_id: str) -> dict[str, DeliveryReceipt]:
        self._check("get_delivery_state")
        message = self.messages.get(chat_id, {}).get(message_id)
        if message is None:
            return {}
        state = {
            uid: DeliveryReceipt(delivered=True, read=uid in message.read_by)
            for uid in message.delivered_to
        }
        for uid in message.read_by:
            state.setdefault(uid, DeliveryReceipt(delivered=True, read=True))
        return state

    # -- subscriptions -------------------------------------------------

    def _register(self, registry: list[Any], entry: Any) -> Unsubscribe:
        registry.append(entry)

        def unsubscribe() -> None:
            if entry in registry:
                registry.remove(entry)

        return unsubscribe

    def subscribe_to_user_chats(
        self, uid: str, listener: Listener[list[ChatRecord]]
    ) -> Unsubscribe:
        entry = (uid, listener)
        self._schedule(notify(listener, self._chats_of(uid)))
        return self._register(self._chat_listeners, entry)

    def subscribe_to_user(self, uid: str, listener: Listener[UserRecord]) -> Unsubscribe:
        entry = (uid, listener)
        if uid in self.users:
            self._schedule(notify(listener, self.users[uid]))
        return self._register(self._user_listeners, entry)

    def subscribe_to_messages(
        self, chat_id: str, listener: Listener[MessageRecord]
    ) -> Unsubscribe:
        entry = (chat_id, listener)

        async def replay() -> None:
            for message in self.all_messages(chat_id):
                await notify(listener, message)

        self._schedule(replay())
        return self._register(self._message_listeners, entry)

    def listener_counts(self) -> dict[str, int]:
        return {
            "chats": len(self._chat_listeners),
            "users": len(self._user_listeners),
            "messages": len(self._message_listeners),
        }

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        database_url=TEST_DB_URL,
        firebase_database_url="https://chat-sync-test.firebaseio.com",
        firebase_auth_token="test-token",
        remote_timeout_seconds=1.0,
        remote_stream_retry_seconds=0.01,
        circuit_failure_threshold=3,
        circuit_recovery_seconds=60.0,
        initial_sync_message_limit=50,
        outbound_max_attempts=3,
        connectivity_debounce_seconds=0.0,
    )


@pytest.fixture()
async def store(test_settings: Settings) -> AsyncIterator[LocalStore]:
    local = LocalStore(TEST_DB_URL, config=test_settings)
    await local.init()
    try:
        yield local
    finally:
        await local.close()


@pytest.fixture()
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture()
def reachability() -> ManualReachability:
    return ManualReachability(True)


@pytest.fixture()
async def connectivity(
    reachability: ManualReachability, test_settings: Settings
) -> AsyncIterator[ConnectivityMonitor]:
    monitor = ConnectivityMonitor(reachability, test_settings)
    await monitor.start()
    try:
        yield monitor
    finally:
        monitor.stop()


@pytest.fixture()
def engine(
    store: LocalStore, remote: InMemoryRemoteStore, test_settings: Settings
) -> EntitySyncEngine:
    return EntitySyncEngine(store, remote, test_settings)


@pytest.fixture()
async def queue(
    store: LocalStore,
    engine: EntitySyncEngine,
    connectivity: ConnectivityMonitor,
    test_settings: Settings,
) -> AsyncIterator[OutboundQueue]:
    outbound = OutboundQueue(store, engine, connectivity, test_settings)
    try:
        yield outbound
    finally:
        await outbound.stop()
