# tests/services/test_firebase_remote.py
from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from chat_sync.core.errors import NetworkError, NetworkErrorKind, RemoteError, RemoteErrorKind
from chat_sync.schemas.chat import ChatRecord, ChatType, LastMessage
from chat_sync.schemas.message import DeliveryReceipt, DeliveryStatus, MessageRecord
from chat_sync.schemas.user import UserRecord
from chat_sync.services.firebase import CircuitBreaker, CircuitState, FirebaseRemoteStore, apply_event
from chat_sync.services.remote import decode_chat, encode_chat, encode_chat_updates


class Recorder:
    """Routes requests by method and path, recording every call."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Any] = {}

    def route(self, method: str, path: str, response: Any) -> None:
        self.routes[(method, path)] = response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get(
            (request.method, request.url.path), httpx.Response(200, content=b"null")
        )
        if isinstance(response, Exception):
            raise response
        # Fresh copy per call; a response body can only be consumed once.
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture()
async def firebase(test_settings, recorder: Recorder):
    remote = FirebaseRemoteStore(test_settings, transport=httpx.MockTransport(recorder))
    try:
        yield remote
    finally:
        await remote.close()


def test_requires_a_database_url(test_settings) -> None:
    test_settings.firebase_database_url = None
    with pytest.raises(ValueError):
        FirebaseRemoteStore(test_settings)


@pytest.mark.asyncio
async def test_get_user_reads_the_json_path_with_auth(firebase, recorder: Recorder) -> None:
    recorder.route(
        "GET",
        "/users/u1.json",
        httpx.Response(200, json={"email": "a@example.com", "displayName": "Ann", "isOnline": True}),
    )

    user = await firebase.get_user("u1")

    assert user == UserRecord(uid="u1", email="a@example.com", display_name="Ann", is_online=True)
    assert recorder.requests[0].url.params["auth"] == "test-token"


@pytest.mark.asyncio
async def test_absent_document_is_not_found(firebase) -> None:
    with pytest.raises(RemoteError) as excinfo:
        await firebase.get_chat("nope")
    assert excinfo.value.kind is RemoteErrorKind.NOT_FOUND


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (401, RemoteErrorKind.PERMISSION_DENIED),
        (403, RemoteErrorKind.PERMISSION_DENIED),
        (404, RemoteErrorKind.NOT_FOUND),
        (400, RemoteErrorKind.UNKNOWN),
        (503, RemoteErrorKind.UNKNOWN),
    ],
)
@pytest.mark.asyncio
async def test_error_statuses_map_to_remote_errors(firebase, recorder: Recorder, status, kind) -> None:
    recorder.route("GET", "/users/u1.json", httpx.Response(status, json={"error": "x"}))

    with pytest.raises(RemoteError) as excinfo:
        await firebase.get_user("u1")
    assert excinfo.value.kind is kind


@pytest.mark.asyncio
async def test_transport_failures_map_to_network_errors(firebase, recorder: Recorder) -> None:
    recorder.route("GET", "/users/u1.json", httpx.ConnectError("refused"))
    recorder.route("GET", "/users/u2.json", httpx.ReadTimeout("slow"))

    with pytest.raises(NetworkError) as unreachable:
        await firebase.get_user("u1")
    with pytest.raises(NetworkError) as timeout:
        await firebase.get_user("u2")

    assert unreachable.value.kind is NetworkErrorKind.UNREACHABLE
    assert timeout.value.kind is NetworkErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures(firebase, recorder: Recorder) -> None:
    recorder.route("GET", "/users/u1.json", httpx.ConnectError("refused"))

    for _ in range(3):
        with pytest.raises(NetworkError):
            await firebase.get_user("u1")
    calls = len(recorder.requests)

    with pytest.raises(NetworkError) as excinfo:
        await firebase.get_user("u1")

    assert "circuit breaker is open" in str(excinfo.value)
    assert len(recorder.requests) == calls
    assert firebase.circuit_breaker.get_state() is CircuitState.OPEN


def test_circuit_breaker_half_opens_after_recovery_timeout() -> None:
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.0)
    breaker.record_failure()
    assert breaker.get_state() is CircuitState.OPEN

    assert breaker.is_open() is False
    assert breaker.get_state() is CircuitState.HALF_OPEN

    breaker.record_success()
    assert breaker.get_state() is CircuitState.CLOSED
    assert breaker.get_failure_count() == 0


@pytest.mark.asyncio
async def test_put_chat_stores_participants_as_a_map(firebase, recorder: Recorder) -> None:
    chat = ChatRecord(
        id="c1",
        type=ChatType.GROUP,
        name="Team",
        participant_ids=["u1", "u2"],
        last_message=LastMessage(content="hi", sender_id="u1", timestamp=5),
    )

    await firebase.put_chat(chat)

    [request] = recorder.requests
    assert request.method == "PUT"
    assert request.url.path == "/chats/c1.json"
    body = json.loads(request.content)
    assert body["participantIds"] == {"u1": True, "u2": True}
    assert body["lastMessage"] == {"content": "hi", "senderId": "u1", "timestamp": 5, "type": "text"}
    assert body["type"] == "group"


def test_chat_codec_round_trip_keeps_participant_order() -> None:
    chat = ChatRecord(id="c1", participant_ids=["u2", "u1"], unread_counts={"u1": 2})
    assert decode_chat("c1", encode_chat(chat)) == chat


def test_decode_chat_accepts_a_participant_list() -> None:
    chat = decode_chat("c1", {"type": "1:1", "participantIds": ["u1", "u2", "u1"]})
    assert chat.participant_ids == ["u1", "u2"]


def test_chat_updates_use_remote_field_names() -> None:
    updates = encode_chat_updates(
        {
            "name": "New",
            "participant_ids": ["u1"],
            "last_message": LastMessage(content="x", sender_id="u1", timestamp=1),
            "unreadCounts/u1": 0,
        }
    )
    assert updates == {
        "name": "New",
        "participantIds": {"u1": True},
        "lastMessage": {"content": "x", "senderId": "u1", "timestamp": 1, "type": "text"},
        "unreadCounts/u1": 0,
    }


@pytest.mark.asyncio
async def test_get_user_chats_keeps_only_the_users_chats(firebase, recorder: Recorder) -> None:
    recorder.route(
        "GET",
        "/chats.json",
        httpx.Response(
            200,
            json={
                "c1": {"type": "1:1", "participantIds": {"u1": True, "u2": True}},
                "c2": {"type": "1:1", "participantIds": {"u2": True, "u3": True}},
                "c3": {"type": "group", "name": "G", "participantIds": {"u1": True}},
            },
        ),
    )

    chats = await firebase.get_user_chats("u1")

    assert [chat.id for chat in chats] == ["c1", "c3"]


@pytest.mark.asyncio
async def test_get_messages_queries_newest_and_returns_oldest_first(
    firebase, recorder: Recorder
) -> None:
    recorder.route(
        "GET",
        "/messages/c1.json",
        httpx.Response(
            200,
            json={
                "-b": {"chatId": "c1", "senderId": "u2", "content": "two", "timestamp": 2},
                "-a": {"chatId": "c1", "senderId": "u1", "content": "one", "timestamp": 1,
                       "readBy": ["u2"]},
            },
        ),
    )

    messages = await firebase.get_messages("c1", limit=2)

    params = recorder.requests[0].url.params
    assert params["orderBy"] == '"timestamp"'
    assert params["limitToLast"] == "2"
    assert [m.id for m in messages] == ["-a", "-b"]
    assert messages[0].read_by == ["u2"]
    assert all(m.status is DeliveryStatus.SENT for m in messages)


@pytest.mark.asyncio
async def test_send_message_puts_at_the_reserved_id(firebase, recorder: Recorder) -> None:
    message = MessageRecord(
        chat_id="c1", sender_id="u1", content="hi", timestamp=9, local_id="local_1"
    )

    remote_id = await firebase.send_message(message, "-reserved")

    assert remote_id == "-reserved"
    [request] = recorder.requests
    assert request.method == "PUT"
    assert request.url.path == "/messages/c1/-reserved.json"
    body = json.loads(request.content)
    assert body["id"] == "-reserved"
    assert body["status"] == "sent"
    assert body["localId"] == "local_1"
    assert body["deliveredTo"] == [] and body["readBy"] == []


@pytest.mark.asyncio
async def test_non_json_success_body_is_a_remote_error(firebase, recorder: Recorder) -> None:
    recorder.route(
        "PUT",
        "/messages/c1/-reserved.json",
        httpx.Response(
            200, headers={"content-type": "text/html"}, content=b"<html>captive portal</html>"
        ),
    )
    message = MessageRecord(chat_id="c1", sender_id="u1", content="hi", timestamp=9)

    with pytest.raises(RemoteError) as excinfo:
        await firebase.send_message(message, "-reserved")

    assert excinfo.value.kind is RemoteErrorKind.UNKNOWN
    assert "text/html" in str(excinfo.value)


@pytest.mark.asyncio
async def test_mark_read_appends_to_the_receipt_list(firebase, recorder: Recorder) -> None:
    recorder.route(
        "GET",
        "/messages/c1/m1.json",
        httpx.Response(200, json={"chatId": "c1", "readBy": ["u3"]}),
    )

    await firebase.mark_read("m1", "c1", "u2")
    await firebase.mark_read("m1", "c1", "u3")

    patches = [r for r in recorder.requests if r.method == "PATCH"]
    assert len(patches) == 1
    assert json.loads(patches[0].content) == {"readBy": ["u3", "u2"]}


@pytest.mark.asyncio
async def test_get_delivery_state(firebase, recorder: Recorder) -> None:
    recorder.route(
        "GET",
        "/messages/c1/m1.json",
        httpx.Response(200, json={"deliveredTo": {"0": "u2"}, "readBy": ["u3"]}),
    )

    state = await firebase.get_delivery_state("m1", "c1")

    assert state == {
        "u2": DeliveryReceipt(delivered=True, read=False),
        "u3": DeliveryReceipt(delivered=True, read=True),
    }


def test_apply_event_put_and_patch() -> None:
    tree = apply_event(None, "/", {"a": {"x": 1}, "b": {"y": 2}})
    tree = apply_event(tree, "/a/x", 5)
    tree = apply_event(tree, "/b", {"z": 3}, merge=True)
    tree = apply_event(tree, "/c", {"n": 1})

    assert tree == {"a": {"x": 5}, "b": {"y": 2, "z": 3}, "c": {"n": 1}}

    tree = apply_event(tree, "/a/x", None)
    assert tree == {"b": {"y": 2, "z": 3}, "c": {"n": 1}}
    assert apply_event(tree, "/", None) is None


def _sse(*events: tuple[str, dict[str, Any]]) -> bytes:
    chunks = [f"event: {name}\ndata: {json.dumps(body)}\n\n" for name, body in events]
    return "".join(chunks).encode()


@pytest.mark.asyncio
async def test_message_subscription_emits_new_and_changed_messages(
    firebase, recorder: Recorder, test_settings
) -> None:
    stream = _sse(
        (
            "put",
            {
                "path": "/",
                "data": {"-a": {"chatId": "c1", "senderId": "u1", "content": "one", "timestamp": 1}},
            },
        ),
        ("keep-alive", {}),
        (
            "put",
            {
                "path": "/-b",
                "data": {"chatId": "c1", "senderId": "u2", "content": "two", "timestamp": 2},
            },
        ),
        ("patch", {"path": "/-a", "data": {"readBy": ["u2"]}}),
    )
    recorder.route(
        "GET",
        "/messages/c1.json",
        httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream),
    )
    test_settings.remote_stream_retry_seconds = 5.0
    received: list[MessageRecord] = []

    unsubscribe = firebase.subscribe_to_messages("c1", received.append)
    for _ in range(100):
        if len(received) >= 3:
            break
        await asyncio.sleep(0.01)
    unsubscribe()

    assert [(m.id, m.read_by) for m in received[:3]] == [("-a", []), ("-b", []), ("-a", ["u2"])]
    assert len(received) == 3
    assert recorder.requests[0].headers["accept"] == "text/event-stream"


@pytest.mark.asyncio
async def test_chat_subscription_filters_by_membership(
    firebase, recorder: Recorder, test_settings
) -> None:
    stream = _sse(
        (
            "put",
            {
                "path": "/",
                "data": {
                    "c1": {"type": "1:1", "participantIds": {"u1": True, "u2": True}},
                    "c2": {"type": "1:1", "participantIds": {"u2": True, "u3": True}},
                },
            },
        ),
    )
    recorder.route(
        "GET",
        "/chats.json",
        httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream),
    )
    test_settings.remote_stream_retry_seconds = 5.0
    snapshots: list[list[ChatRecord]] = []

    unsubscribe = firebase.subscribe_to_user_chats("u1", snapshots.append)
    for _ in range(100):
        if snapshots:
            break
        await asyncio.sleep(0.01)
    unsubscribe()

    assert [chat.id for chat in snapshots[0]] == ["c1"]
