"""Entity synchronization between the remote store and the local cache.

Every path that writes locally keeps the dependency order users, then
chats, then messages, so the cache's foreign keys are satisfied:

- ``initial_sync`` pulls a user's chats once at sign-in
- ``start_realtime_sync`` keeps the cache current from remote subscriptions
- ``sync_message_to_local`` backfills a missing chat or sender on demand

The remote store is the source of truth. A remote version always replaces
the cached row whole, with no field-level merge.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

from chat_sync.core.errors import RemoteError, StoreError, SyncError
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.db.store import LocalStore
from chat_sync.repositories.chat_repo import ChatRepository
from chat_sync.repositories.message_repo import MessageRepository
from chat_sync.repositories.user_repo import UserRepository
from chat_sync.schemas.chat import ChatRecord
from chat_sync.schemas.message import MessageRecord
from chat_sync.schemas.user import UserRecord
from chat_sync.services.remote import RemoteStore, Unsubscribe, with_timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SyncReport:
    """Outcome of :meth:`EntitySyncEngine.initial_sync`."""

    users: int = 0
    chats: int = 0
    messages: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class SyncStatus:
    active: bool
    chat_list_subscribed: bool
    message_subscriptions: int
    user_subscriptions: int


class RealtimeSync:
    """Handle for one user's real-time subscriptions.

    Calling the handle unsubscribes everything it opened.
    """

    def __init__(self, uid: str) -> None:
        self.uid = uid
        self.active = True
        self._chat_list: Unsubscribe | None = None
        self._messages: dict[str, Unsubscribe] = {}
        self._users: dict[str, Unsubscribe] = {}

    def __call__(self) -> None:
        self.active = False
        unsubscribers = list(self._messages.values()) + list(self._users.values())
        if self._chat_list is not None:
            unsubscribers.insert(0, self._chat_list)
        self._chat_list = None
        self._messages.clear()
        self._users.clear()
        for unsubscribe in unsubscribers:
            try:
                unsubscribe()
            except Exception:  # noqa: BLE001
                logger.exception("Unsubscribe failed for user %s", self.uid)

    def status(self) -> SyncStatus:
        return SyncStatus(
            active=self.active,
            chat_list_subscribed=self._chat_list is not None,
            message_subscriptions=len(self._messages),
            user_subscriptions=len(self._users),
        )


class EntitySyncEngine:
    """Moves users, chats and messages between the remote store and the cache.

    Args:
        store: Initialized local store shared with the rest of the client.
        remote: Remote store implementation.
        config: Settings for timeouts and the initial history size.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.remote = remote
        self.users = UserRepository(store)
        self.chats = ChatRepository(store)
        self.messages = MessageRepository(store)
        self._realtime: dict[str, RealtimeSync] = {}

    async def _call(self, call: Awaitable[T], what: str) -> T:
        return await with_timeout(call, self.config.remote_timeout_seconds, what)

    # ------------------------------------------------------------------
    # Remote -> local
    # ------------------------------------------------------------------

    async def sync_user_to_local(self, user: UserRecord) -> None:
        await self.users.upsert(user)

    async def sync_chat_to_local(self, chat: ChatRecord) -> None:
        """Write ``chat``; every participant must already be cached."""
        await self.chats.upsert(chat)

    async def _pull_user(self, uid: str) -> UserRecord:
        user = await self._call(self.remote.get_user(uid), "get_user")
        await self.sync_user_to_local(user)
        return user

    async def sync_chat_with_participants(self, chat: ChatRecord) -> int:
        """Pull every participant, the current user included, then write ``chat``.

        Returns the number of participants pulled. A participant missing
        remotely is skipped; if that leaves the chat row without a cached
        member, the missing user is fetched once more before giving up.
        """
        pulled = 0
        for uid in chat.participant_ids:
            try:
                await self._pull_user(uid)
                pulled += 1
            except RemoteError as exc:
                if not exc.is_not_found:
                    raise
                logger.warning("Participant %s of chat %s not found remotely", uid, chat.id)

        try:
            await self.sync_chat_to_local(chat)
        except StoreError as exc:
            violation = exc.violation
            if violation is None or violation.referred_table != "users":
                raise
            logger.info("Chat %s: %s (%s); retrying once", chat.id, violation.missing, violation.value)
            await self._pull_user(str(violation.value))
            await self.sync_chat_to_local(chat)
        return pulled

    async def sync_message_to_local(self, message: MessageRecord) -> bool:
        """Write ``message``, backfilling its chat and sender if needed.

        Never raises for a single message: returns ``False`` after logging
        when the message could not be stored.
        """
        try:
            await self.messages.upsert(message)
            return True
        except StoreError as exc:
            if not exc.is_constraint_violation:
                logger.error("Failed to store message %s", message.id or message.local_id, exc_info=True)
                return False
            missing = exc.violation.missing if exc.violation else "parent missing"
            logger.info(
                "Message %s: %s; backfilling chat %s",
                message.id or message.local_id,
                missing,
                message.chat_id,
            )

        try:
            await self._backfill(message)
            await self.messages.upsert(message)
            return True
        except SyncError:
            logger.warning(
                "Giving up on message %s in chat %s",
                message.id or message.local_id,
                message.chat_id,
                exc_info=True,
            )
            return False

    async def _backfill(self, message: MessageRecord) -> None:
        if not await self.chats.exists(message.chat_id):
            chat = await self._call(self.remote.get_chat(message.chat_id), "get_chat")
            await self.sync_chat_with_participants(chat)
        # A sender is not always a current participant (e.g. someone who left).
        if not await self.users.exists(message.sender_id):
            await self._pull_user(message.sender_id)

    async def initial_sync(self, uid: str) -> SyncReport:
        """Pull every chat of ``uid`` with its participants and recent history.

        A failing chat or message is recorded in the report and does not stop
        the others. Only failing to list the chats at all raises.
        """
        report = SyncReport()
        chats = await self._call(self.remote.get_user_chats(uid), "get_user_chats")
        logger.info("Initial sync for %s: %d chats", uid, len(chats))
        synced_users: set[str] = set()

        for chat in chats:
            try:
                await self.sync_chat_with_participants(chat)
            except SyncError as exc:
                logger.warning("Initial sync skipped chat %s: %s", chat.id, exc)
                report.failures.append(f"chat {chat.id}: {exc}")
                continue
            report.chats += 1
            synced_users.update(chat.participant_ids)

            limit = self.config.initial_sync_message_limit
            if limit <= 0:
                continue
            try:
                history = await self._call(self.remote.get_messages(chat.id, limit), "get_messages")
            except SyncError as exc:
                logger.warning("Initial sync could not fetch messages of %s: %s", chat.id, exc)
                report.failures.append(f"messages of {chat.id}: {exc}")
                continue
            for message in history:
                if await self.sync_message_to_local(message):
                    report.messages += 1
                    synced_users.add(message.sender_id)
                else:
                    report.failures.append(f"message {message.id} of {chat.id}")

        report.users = len(synced_users)
        logger.info(
            "Initial sync for %s done: %d chats, %d users, %d messages, %d failures",
            uid,
            report.chats,
            report.users,
            report.messages,
            len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Real-time
    # ------------------------------------------------------------------

    def start_realtime_sync(self, uid: str) -> RealtimeSync:
        """Subscribe to ``uid``'s chats, their messages and their participants.

        Returns the already-running handle if there is one.
        """
        existing = self._realtime.get(uid)
        if existing is not None and existing.active:
            return existing

        handle = RealtimeSync(uid)
        self._realtime[uid] = handle

        async def on_chats(chats: list[ChatRecord]) -> None:
            for chat in chats:
                if not handle.active:
                    return
                try:
                    await self.sync_chat_with_participants(chat)
                except SyncError as exc:
                    logger.warning("Real-time sync skipped chat %s: %s", chat.id, exc)
                    continue
                self._watch_chat(handle, chat)

        handle._chat_list = self.remote.subscribe_to_user_chats(uid, on_chats)
        logger.info("Real-time sync started for %s", uid)
        return handle

    def _watch_chat(self, handle: RealtimeSync, chat: ChatRecord) -> None:
        if chat.id not in handle._messages:

            async def on_message(message: MessageRecord) -> None:
                if handle.active:
                    await self.sync_message_to_local(message)

            handle._messages[chat.id] = self.remote.subscribe_to_messages(chat.id, on_message)

        for uid in chat.participant_ids:
            if uid in handle._users:
                continue

            async def on_user(user: UserRecord) -> None:
                if not handle.active:
                    return
                try:
                    await self.sync_user_to_local(user)
                except StoreError as exc:
                    logger.warning("Failed to store user %s: %s", user.uid, exc)

            handle._users[uid] = self.remote.subscribe_to_user(uid, on_user)

    def stop_realtime_sync(self) -> None:
        handles, self._realtime = list(self._realtime.values()), {}
        for handle in handles:
            handle()

    def sync_status(self, uid: str) -> SyncStatus:
        handle = self._realtime.get(uid)
        if handle is None:
            return SyncStatus(False, False, 0, 0)
        return handle.status()

    # ------------------------------------------------------------------
    # Local -> remote
    # ------------------------------------------------------------------

    async def push_user(self, user: UserRecord) -> None:
        await self._call(self.remote.put_user(user), "put_user")

    async def push_chat(self, chat: ChatRecord) -> None:
        await self._call(self.remote.put_chat(chat), "put_chat")

    async def push_message(self, message: MessageRecord, message_id: str | None = None) -> str:
        """Send ``message`` and return its remote id."""
        return await self._call(self.remote.send_message(message, message_id), "send_message")
