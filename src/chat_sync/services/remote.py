"""Contract for the authoritative remote store plus its document shapes.

The canonical in-process representation of a chat's members is the ordered
``participant_ids`` list. The remote document stores them as a
``{uid: true}`` map; the conversion happens only in :func:`encode_chat` and
:func:`decode_chat`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, TypeVar, Union

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from chat_sync.core.errors import NetworkError, NetworkErrorKind, RemoteError, RemoteErrorKind
from chat_sync.schemas.chat import ChatRecord
from chat_sync.schemas.message import DeliveryReceipt, DeliveryStatus, MessageRecord
from chat_sync.schemas.user import UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]
Listener = Callable[[T], Union[None, Awaitable[None]]]


class RemoteStore(Protocol):
    """Document store with path-scoped CRUD and change subscriptions.

    Lookups of absent documents raise ``RemoteError(NOT_FOUND)``; transport
    problems raise ``NetworkError``. Listener callbacks may be plain or
    coroutine functions, and the emissions of one subscription are
    delivered one at a time.
    """

    async def get_user(self, uid: str) -> UserRecord: ...

    async def put_user(self, user: UserRecord) -> None: ...

    async def get_chat(self, chat_id: str) -> ChatRecord: ...

    async def put_chat(self, chat: ChatRecord) -> None: ...

    async def update_chat(self, chat_id: str, updates: Mapping[str, Any]) -> None: ...

    async def get_user_chats(self, uid: str) -> list[ChatRecord]: ...

    async def get_messages(self, chat_id: str, limit: int = 50) -> list[MessageRecord]: ...

    async def send_message(self, message: MessageRecord, message_id: str | None = None) -> str: ...

    async def mark_delivered(self, message_id: str, chat_id: str, uid: str) -> None: ...

    async def mark_read(self, message_id: str, chat_id: str, uid: str) -> None: ...

    async def get_delivery_state(
        self, message_id: str, chat_id: str
    ) -> dict[str, DeliveryReceipt]: ...

    def subscribe_to_user_chats(
        self, uid: str, listener: Listener[list[ChatRecord]]
    ) -> Unsubscribe: ...

    def subscribe_to_user(self, uid: str, listener: Listener[UserRecord]) -> Unsubscribe: ...

    def subscribe_to_messages(
        self, chat_id: str, listener: Listener[MessageRecord]
    ) -> Unsubscribe: ...

    async def close(self) -> None: ...


async def with_timeout(call: Awaitable[T], timeout: float, what: str = "remote call") -> T:
    """Await ``call`` for at most ``timeout`` seconds.

    A hung request becomes ``NetworkError(TIMEOUT)`` so it is retried like any
    other network failure.
    """
    try:
        return await asyncio.wait_for(call, timeout)
    except asyncio.TimeoutError as exc:
        raise NetworkError(NetworkErrorKind.TIMEOUT, f"{what} timed out after {timeout}s") from exc


async def notify(listener: Listener[T], value: T) -> None:
    """Invoke ``listener`` and await it if it returned an awaitable.

    Listener failures are logged so one bad callback cannot end the stream.
    """
    try:
        result = listener(value)
        if inspect.isawaitable(result):
            await result
    except Exception:  # noqa: BLE001
        logger.exception("Remote subscription listener failed")


def as_list(value: Any) -> list[Any]:
    """Arrays may come back as index-keyed objects; normalize to a list."""
    if value is None:
        return []
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: int(kv[0]) if str(kv[0]).isdigit() else 0)
        return [item for _, item in items if item is not None]
    return [item for item in value if item is not None]


def _invalid(kind: str, key: str, exc: ValidationError) -> RemoteError:
    return RemoteError(RemoteErrorKind.UNKNOWN, f"Malformed remote {kind} {key!r}: {exc}")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def encode_user(user: UserRecord) -> dict[str, Any]:
    return user.to_wire()


def decode_user(uid: str, data: Mapping[str, Any]) -> UserRecord:
    payload = dict(data)
    payload.setdefault("uid", uid)
    try:
        return UserRecord.model_validate(payload)
    except ValidationError as exc:
        raise _invalid("user", uid, exc) from exc


# ---------------------------------------------------------------------------
# Chats
# ---------------------------------------------------------------------------


def encode_chat(chat: ChatRecord) -> dict[str, Any]:
    doc = chat.to_wire()
    doc["participantIds"] = {uid: True for uid in chat.participant_ids}
    doc["unreadCounts"] = dict(chat.unread_counts)
    return doc


def encode_chat_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a partial chat update into remote field names and shapes."""
    doc: dict[str, Any] = {}
    for key, value in updates.items():
        wire_key = to_camel(key) if key in ChatRecord.model_fields else key
        if wire_key == "participantIds":
            value = {uid: True for uid in value}
        elif hasattr(value, "to_wire"):
            value = value.to_wire()
        elif hasattr(value, "value"):
            value = value.value
        doc[wire_key] = value
    return doc


def participant_ids_of(data: Mapping[str, Any]) -> list[str]:
    raw = data.get("participantIds")
    if isinstance(raw, Mapping):
        return [uid for uid, member in raw.items() if member]
    return [uid for uid in as_list(raw) if isinstance(uid, str)]


def decode_chat(chat_id: str, data: Mapping[str, Any]) -> ChatRecord:
    payload = dict(data)
    payload.setdefault("id", chat_id)
    payload["participantIds"] = participant_ids_of(data)
    payload["unreadCounts"] = {
        uid: int(count) for uid, count in (data.get("unreadCounts") or {}).items()
    }
    try:
        return ChatRecord.model_validate(payload)
    except ValidationError as exc:
        raise _invalid("chat", chat_id, exc) from exc


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def encode_message(message: MessageRecord, message_id: str) -> dict[str, Any]:
    """Return the remote document for a sent message.

    A document in the remote store is ``sent`` by definition; delivery and
    read state live in ``deliveredTo``/``readBy``.
    """
    doc = message.model_copy(
        update={"id": message_id, "status": DeliveryStatus.SENT}
    ).to_wire()
    doc["deliveredTo"] = list(message.delivered_to)
    doc["readBy"] = list(message.read_by)
    return doc


def decode_message(message_id: str, data: Mapping[str, Any]) -> MessageRecord:
    payload = dict(data)
    payload["id"] = payload.get("id") or message_id
    payload["deliveredTo"] = as_list(data.get("deliveredTo"))
    payload["readBy"] = as_list(data.get("readBy"))
    payload.setdefault("status", DeliveryStatus.SENT.value)
    if payload.get("metadata") is None:
        payload.pop("metadata", None)
    try:
        return MessageRecord.model_validate(payload)
    except ValidationError as exc:
        raise _invalid("message", message_id, exc) from exc


def delivery_state_of(data: Mapping[str, Any] | None) -> dict[str, DeliveryReceipt]:
    """Fold ``deliveredTo``/``readBy`` arrays into per-recipient receipts."""
    if not data:
        return {}
    read_by = as_list(data.get("readBy"))
    state = {
        uid: DeliveryReceipt(delivered=True, read=uid in read_by)
        for uid in as_list(data.get("deliveredTo"))
    }
    for uid in read_by:
        state.setdefault(uid, DeliveryReceipt(delivered=True, read=True))
    return state
