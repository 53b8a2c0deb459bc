"""Delivery and read tracking.

Display status is never stored as truth: it is derived on every read from
the message id and its receipt lists, which change independently of the
message itself.
"""

from __future__ import annotations

import logging

from chat_sync.core.errors import StoreError
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.db.store import LocalStore
from chat_sync.repositories.message_repo import MessageRepository
from chat_sync.schemas.message import DeliveryReceipt, DeliveryStatus, MessageRecord
from chat_sync.services.remote import RemoteStore, with_timeout

logger = logging.getLogger(__name__)


def compute_status(message: MessageRecord, current_uid: str) -> DeliveryStatus:
    """Return the status ``current_uid`` should see for ``message``."""
    if message.sender_id != current_uid:
        return DeliveryStatus.SENT
    if not message.id:
        return DeliveryStatus.SENDING
    if message.read_by:
        return DeliveryStatus.READ
    if message.delivered_to:
        return DeliveryStatus.DELIVERED
    return DeliveryStatus.SENT


def is_sending(message: MessageRecord) -> bool:
    return not message.id


def is_persisted(message: MessageRecord) -> bool:
    return bool(message.id)


def is_delivered(message: MessageRecord) -> bool:
    return bool(message.delivered_to) or bool(message.read_by)


def is_read(message: MessageRecord) -> bool:
    return bool(message.read_by)


def delivery_count(message: MessageRecord) -> int:
    return len(set(message.delivered_to) | set(message.read_by))


def read_count(message: MessageRecord) -> int:
    return len(set(message.read_by))


def has_user_received(message: MessageRecord, uid: str) -> bool:
    return uid in message.delivered_to or uid in message.read_by


def has_user_read(message: MessageRecord, uid: str) -> bool:
    return uid in message.read_by


class DeliveryTracker:
    """Writes receipts to the remote store and mirrors them locally.

    The remote write comes first; the local row is a cache of it. A receipt
    for a message that is not cached locally only lands remotely.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        config: Settings | None = None,
    ) -> None:
        self.config = config or default_settings
        self.remote = remote
        self.messages = MessageRepository(store)

    async def mark_delivered(self, message_id: str, chat_id: str, uid: str) -> None:
        await with_timeout(
            self.remote.mark_delivered(message_id, chat_id, uid),
            self.config.remote_timeout_seconds,
            "mark_delivered",
        )
        await self._record_locally(message_id, uid, read=False)

    async def mark_read(self, message_id: str, chat_id: str, uid: str) -> None:
        """Mark read remotely; locally read also sets delivered."""
        await with_timeout(
            self.remote.mark_read(message_id, chat_id, uid),
            self.config.remote_timeout_seconds,
            "mark_read",
        )
        await self._record_locally(message_id, uid, read=True)

    async def _record_locally(self, message_id: str, uid: str, *, read: bool) -> None:
        try:
            await self.messages.set_delivery(message_id, uid, read=read)
        except StoreError as exc:
            if not exc.is_constraint_violation:
                raise
            logger.debug("Message %s not cached locally; receipt stored remotely only", message_id)

    async def refresh(self, message_id: str, chat_id: str) -> dict[str, DeliveryReceipt]:
        """Replace the local receipts of a message with the remote ones."""
        state = await with_timeout(
            self.remote.get_delivery_state(message_id, chat_id),
            self.config.remote_timeout_seconds,
            "get_delivery_state",
        )
        try:
            await self.messages.store.transaction(
                MessageRepository.replace_delivery_ops(message_id, state)
            )
        except StoreError as exc:
            if not exc.is_constraint_violation:
                raise
            logger.debug("Message %s not cached locally; skipping receipt refresh", message_id)
        return state
