# tests/services/test_delivery.py
from __future__ import annotations

import pytest

from chat_sync.core.errors import NetworkError
from chat_sync.repositories import ChatRepository, MessageRepository, UserRepository
from chat_sync.schemas.message import DeliveryReceipt, DeliveryStatus, MessageRecord
from chat_sync.schemas.user import UserRecord
from chat_sync.services import delivery
from chat_sync.services.delivery import DeliveryTracker, compute_status


def _message(**fields) -> MessageRecord:
    values = {"id": "m1", "chat_id": "c1", "sender_id": "u1", "content": "hi", "timestamp": 1}
    values.update(fields)
    return MessageRecord(**values)


@pytest.mark.parametrize(
    ("fields", "viewer", "expected"),
    [
        ({}, "u2", DeliveryStatus.SENT),
        ({"id": "", "read_by": ["u2"]}, "u2", DeliveryStatus.SENT),
        ({"id": ""}, "u1", DeliveryStatus.SENDING),
        ({"id": "", "delivered_to": ["u2"]}, "u1", DeliveryStatus.SENDING),
        ({}, "u1", DeliveryStatus.SENT),
        ({"delivered_to": ["u2"]}, "u1", DeliveryStatus.DELIVERED),
        ({"delivered_to": ["u2"], "read_by": ["u2"]}, "u1", DeliveryStatus.READ),
        ({"read_by": ["u3"]}, "u1", DeliveryStatus.READ),
    ],
)
def test_compute_status(fields, viewer, expected) -> None:
    assert compute_status(_message(**fields), viewer) is expected


def test_compute_status_ignores_the_stored_snapshot() -> None:
    message = _message(status=DeliveryStatus.READ)
    assert compute_status(message, "u1") is DeliveryStatus.SENT


def test_receipt_helpers() -> None:
    message = _message(delivered_to=["u2"], read_by=["u3"])

    assert delivery.is_persisted(message)
    assert not delivery.is_sending(message)
    assert delivery.is_delivered(message)
    assert delivery.is_read(message)
    assert delivery.delivery_count(message) == 2
    assert delivery.read_count(message) == 1
    assert delivery.has_user_received(message, "u3")
    assert not delivery.has_user_read(message, "u2")


@pytest.fixture()
async def cached_message(store, remote) -> MessageRecord:
    for uid in ("u1", "u2"):
        remote.seed_user(uid)
        await UserRepository(store).upsert(UserRecord(uid=uid))
    await ChatRepository(store).upsert(remote.seed_chat("c1", ["u1", "u2"]))
    message = remote.seed_message("c1", "m1", "u1", "hi", 1_000)
    await MessageRepository(store).upsert(message)
    return message


@pytest.fixture()
def tracker(store, remote, test_settings) -> DeliveryTracker:
    return DeliveryTracker(store, remote, test_settings)


@pytest.mark.asyncio
async def test_mark_delivered_writes_remote_then_local(
    tracker: DeliveryTracker, cached_message, remote, store
) -> None:
    await tracker.mark_delivered("m1", "c1", "u2")

    assert remote.messages["c1"]["m1"].delivered_to == ["u2"]
    local = await MessageRepository(store).get("m1")
    assert local is not None
    assert compute_status(local, "u1") is DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_mark_read_also_marks_delivered_locally(
    tracker: DeliveryTracker, cached_message, remote, store
) -> None:
    await tracker.mark_read("m1", "c1", "u2")

    assert remote.messages["c1"]["m1"].read_by == ["u2"]
    assert await MessageRepository(store).delivery_state("m1") == {
        "u2": DeliveryReceipt(delivered=True, read=True)
    }


@pytest.mark.asyncio
async def test_receipt_for_uncached_message_lands_remotely_only(
    tracker: DeliveryTracker, remote, store
) -> None:
    remote.seed_message("c1", "m7", "u1", "not cached", 1)

    await tracker.mark_read("m7", "c1", "u2")

    assert remote.messages["c1"]["m7"].read_by == ["u2"]
    assert await MessageRepository(store).get("m7") is None


@pytest.mark.asyncio
async def test_remote_failure_skips_the_local_write(
    tracker: DeliveryTracker, cached_message, remote, store
) -> None:
    remote.offline = True

    with pytest.raises(NetworkError):
        await tracker.mark_delivered("m1", "c1", "u2")

    assert await MessageRepository(store).delivery_state("m1") == {}


@pytest.mark.asyncio
async def test_refresh_replaces_local_receipts(
    tracker: DeliveryTracker, cached_message, remote, store
) -> None:
    await MessageRepository(store).set_delivery("m1", "u9")
    remote.messages["c1"]["m1"] = cached_message.model_copy(
        update={"delivered_to": ["u2"], "read_by": ["u2"]}
    )

    state = await tracker.refresh("m1", "c1")

    assert state == {"u2": DeliveryReceipt(delivered=True, read=True)}
    assert await MessageRepository(store).delivery_state("m1") == state
