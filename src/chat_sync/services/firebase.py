"""Firebase Realtime Database adapter for the remote store contract.

Talks to the database over its REST API:

- ``GET``/``PUT``/``PATCH`` on ``<path>.json`` with the ``auth`` query
  parameter for CRUD
- the REST streaming protocol (Server-Sent Events) for subscriptions, with
  ``put``/``patch`` events folded into an in-memory mirror of the subtree
- a circuit breaker that fails fast after repeated network failures
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from chat_sync.core.errors import NetworkError, NetworkErrorKind, RemoteError, RemoteErrorKind
from chat_sync.core.settings import Settings, settings as default_settings
from chat_sync.schemas.chat import ChatRecord
from chat_sync.schemas.message import DeliveryReceipt, MessageRecord
from chat_sync.schemas.user import UserRecord
from chat_sync.services.remote import (
    Listener,
    Unsubscribe,
    as_list,
    decode_chat,
    decode_message,
    decode_user,
    delivery_state_of,
    encode_chat,
    encode_chat_updates,
    encode_message,
    encode_user,
    notify,
    participant_ids_of,
)
from chat_sync.utils.ids import generate_push_id

logger = logging.getLogger(__name__)

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_SERVER_ERROR = 500


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Circuit breaker for remote store requests."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                # Let one probe request through.
                self._state = CircuitState.HALF_OPEN
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def get_state(self) -> CircuitState:
        return self._state

    def get_failure_count(self) -> int:
        return self._failure_count


def apply_event(tree: Any, path: str, data: Any, *, merge: bool = False) -> Any:
    """Return ``tree`` with a streaming ``put`` (or ``patch`` if ``merge``) applied.

    ``None`` deletes; empty containers collapse to ``None`` like the database
    does.
    """
    parts = [part for part in path.split("/") if part]
    if not parts:
        if not merge:
            return data
        base = dict(tree) if isinstance(tree, dict) else {}
        for key, value in (data or {}).items():
            base = apply_event(base, key, value) or {}
        return base or None

    head, rest = parts[0], "/".join(parts[1:])
    base = dict(tree) if isinstance(tree, dict) else {}
    child = apply_event(base.get(head), rest, data, merge=merge)
    if child is None:
        base.pop(head, None)
    else:
        base[head] = child
    return base or None


class _Stream:
    """One streaming subscription: a reconnecting task feeding a mirror."""

    def __init__(
        self,
        remote: FirebaseRemoteStore,
        path: str,
        on_snapshot: Callable[[Any], Any],
    ) -> None:
        self._remote = remote
        self._path = path
        self._on_snapshot = on_snapshot
        self._mirror: Any = None
        self._task: asyncio.Task[None] = asyncio.get_running_loop().create_task(
            self._run(), name=f"firebase-stream:{path}"
        )

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def done(self) -> bool:
        return self._task.done()

    async def _run(self) -> None:
        retry = self._remote.config.remote_stream_retry_seconds
        while True:
            try:
                await self._consume()
                logger.debug("Stream for %s closed by server; reconnecting", self._path)
            except asyncio.CancelledError:
                raise
            except (httpx.HTTPError, RemoteError, ValueError) as exc:
                logger.warning("Stream for %s failed: %s", self._path, exc)
            await asyncio.sleep(retry)

    async def _consume(self) -> None:
        client = await self._remote._ensure_client()
        headers = {"Accept": "text/event-stream"}
        timeout = httpx.Timeout(self._remote.config.remote_timeout_seconds, read=None)
        async with client.stream(
            "GET",
            self._remote._url(self._path),
            params=self._remote._params(),
            headers=headers,
            timeout=timeout,
        ) as response:
            if response.status_code >= 400:
                raise self._remote._status_error(response.status_code, self._path)

            event: str | None = None
            async for line in response.aiter_lines():
                if line.startswith("event:"):
                    event = line[len("event:"):].strip()
                elif line.startswith("data:"):
                    await self._handle(event, line[len("data:"):].strip())
                elif not line:
                    event = None

    async def _handle(self, event: str | None, raw: str) -> None:
        if event in ("put", "patch"):
            body = json.loads(raw)
            self._mirror = apply_event(
                self._mirror, body.get("path", "/"), body.get("data"), merge=event == "patch"
            )
            await self._on_snapshot(self._mirror)
        elif event == "cancel":
            raise RemoteError(RemoteErrorKind.PERMISSION_DENIED, f"Stream {self._path} cancelled")
        elif event == "auth_revoked":
            raise RemoteError(RemoteErrorKind.PERMISSION_DENIED, f"Stream {self._path} auth revoked")
        # keep-alive carries nothing


class FirebaseRemoteStore:
    """Remote store backed by the Firebase Realtime Database REST API.

    Args:
        config: Settings with the database URL, auth token and timeouts.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or default_settings
        if not self.config.firebase_database_url:
            raise ValueError("FIREBASE_DATABASE_URL is not configured")
        self._base_url = self.config.firebase_database_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_seconds,
        )
        self._streams: set[_Stream] = set()

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.remote_timeout_seconds),
                    transport=self._transport,
                    follow_redirects=True,
                )
        return self._client

    async def close(self) -> None:
        """Cancel every subscription and close the HTTP client."""
        streams, self._streams = list(self._streams), set()
        for stream in streams:
            stream.cancel()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.strip('/')}.json"

    def _params(self, extra: Mapping[str, Any] | None = None) -> dict[str, Any]:
        params: dict[str, Any] = dict(extra or {})
        if self.config.firebase_auth_token:
            params["auth"] = self.config.firebase_auth_token
        return params

    @staticmethod
    def _status_error(status: int, path: str) -> RemoteError:
        if status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN):
            return RemoteError(RemoteErrorKind.PERMISSION_DENIED, f"Permission denied for {path}")
        if status == HTTP_NOT_FOUND:
            return RemoteError(RemoteErrorKind.NOT_FOUND, f"{path} not found")
        return RemoteError(RemoteErrorKind.UNKNOWN, f"Remote responded with {status} for {path}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        if self._circuit_breaker.is_open():
            raise NetworkError(
                NetworkErrorKind.UNREACHABLE,
                "Remote circuit breaker is open - service unavailable",
            )

        client = await self._ensure_client()
        try:
            response = await client.request(
                method,
                self._url(path),
                json=json_data,
                params=self._params(params),
            )
        except httpx.TimeoutException as exc:
            self._circuit_breaker.record_failure()
            raise NetworkError(NetworkErrorKind.TIMEOUT, f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            self._circuit_breaker.record_failure()
            raise NetworkError(
                NetworkErrorKind.UNREACHABLE, f"{method} {path} failed: {exc}"
            ) from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
        else:
            self._circuit_breaker.record_success()
        if response.status_code >= 400:
            raise self._status_error(response.status_code, path)
        try:
            return response.json()
        except ValueError as exc:
            # e.g. a captive portal answering with an HTML page
            content_type = response.headers.get("content-type", "unknown")
            raise RemoteError(
                RemoteErrorKind.UNKNOWN,
                f"{method} {path} returned a non-JSON body ({content_type})",
            ) from exc

    async def _get_document(self, path: str) -> Any:
        data = await self._request("GET", path)
        if data is None:
            raise RemoteError(RemoteErrorKind.NOT_FOUND, f"{path} not found")
        return data

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, uid: str) -> UserRecord:
        return decode_user(uid, await self._get_document(f"users/{uid}"))

    async def put_user(self, user: UserRecord) -> None:
        await self._request("PUT", f"users/{user.uid}", json_data=encode_user(user))

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def get_chat(self, chat_id: str) -> ChatRecord:
        return decode_chat(chat_id, await self._get_document(f"chats/{chat_id}"))

    async def put_chat(self, chat: ChatRecord) -> None:
        await self._request("PUT", f"chats/{chat.id}", json_data=encode_chat(chat))

    async def update_chat(self, chat_id: str, updates: Mapping[str, Any]) -> None:
        await self._request("PATCH", f"chats/{chat_id}", json_data=encode_chat_updates(updates))

    async def get_user_chats(self, uid: str) -> list[ChatRecord]:
        data = await self._request("GET", "chats")
        return self._chats_for(uid, data)

    @staticmethod
    def _chats_for(uid: str, data: Any) -> list[ChatRecord]:
        chats: list[ChatRecord] = []
        for chat_id, doc in (data or {}).items():
            if not isinstance(doc, Mapping) or uid not in participant_ids_of(doc):
                continue
            try:
                chats.append(decode_chat(chat_id, doc))
            except RemoteError as exc:
                logger.warning("Skipping chat %s: %s", chat_id, exc)
        return chats

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def get_messages(self, chat_id: str, limit: int = 50) -> list[MessageRecord]:
        """Return the newest ``limit`` messages of a chat, oldest first."""
        data = await self._request(
            "GET",
            f"messages/{chat_id}",
            params={"orderBy": json.dumps("timestamp"), "limitToLast": limit},
        )
        return self._decode_messages(data)

    @staticmethod
    def _decode_messages(data: Any) -> list[MessageRecord]:
        messages: list[MessageRecord] = []
        for message_id, doc in (data or {}).items():
            if not isinstance(doc, Mapping):
                continue
            try:
                messages.append(decode_message(message_id, doc))
            except RemoteError as exc:
                logger.warning("Skipping message %s: %s", message_id, exc)
        messages.sort(key=lambda m: (m.timestamp, m.id))
        return messages

    async def send_message(self, message: MessageRecord, message_id: str | None = None) -> str:
        """Write ``message`` at ``message_id`` (or a fresh push id) and return the id.

        PUT at a known id makes a retried send overwrite the first copy.
        """
        remote_id = message_id or message.id or generate_push_id()
        await self._request(
            "PUT",
            f"messages/{message.chat_id}/{remote_id}",
            json_data=encode_message(message, remote_id),
        )
        return remote_id

    async def _add_receipt(self, message_id: str, chat_id: str, uid: str, field: str) -> None:
        path = f"messages/{chat_id}/{message_id}"
        doc = await self._get_document(path)
        current = as_list(doc.get(field))
        if uid in current:
            return
        await self._request("PATCH", path, json_data={field: [*current, uid]})

    async def mark_delivered(self, message_id: str, chat_id: str, uid: str) -> None:
        await self._add_receipt(message_id, chat_id, uid, "deliveredTo")

    async def mark_read(self, message_id: str, chat_id: str, uid: str) -> None:
        await self._add_receipt(message_id, chat_id, uid, "readBy")

    async def get_delivery_state(self, message_id: str, chat_id: str) -> dict[str, DeliveryReceipt]:
        return delivery_state_of(await self._request("GET", f"messages/{chat_id}/{message_id}"))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _subscribe(self, path: str, on_snapshot: Callable[[Any], Any]) -> Unsubscribe:
        stream = _Stream(self, path, on_snapshot)
        self._streams.add(stream)

        def unsubscribe() -> None:
            self._streams.discard(stream)
            stream.cancel()

        return unsubscribe

    def subscribe_to_user_chats(
        self, uid: str, listener: Listener[list[ChatRecord]]
    ) -> Unsubscribe:
        async def on_snapshot(tree: Any) -> None:
            await notify(listener, self._chats_for(uid, tree))

        return self._subscribe("chats", on_snapshot)

    def subscribe_to_user(self, uid: str, listener: Listener[UserRecord]) -> Unsubscribe:
        async def on_snapshot(tree: Any) -> None:
            if not isinstance(tree, Mapping):
                return
            try:
                user = decode_user(uid, tree)
            except RemoteError as exc:
                logger.warning("Ignoring malformed user %s: %s", uid, exc)
                return
            await notify(listener, user)

        return self._subscribe(f"users/{uid}", on_snapshot)

    def subscribe_to_messages(
        self, chat_id: str, listener: Listener[MessageRecord]
    ) -> Unsubscribe:
        """Emit every message that is new or changed since the previous event."""
        seen: dict[str, Any] = {}

        async def on_snapshot(tree: Any) -> None:
            docs = tree if isinstance(tree, Mapping) else {}
            changed = {mid: doc for mid, doc in docs.items() if seen.get(mid) != doc}
            seen.clear()
            seen.update(docs)
            for message in self._decode_messages(changed):
                await notify(listener, message)

        return self._subscribe(f"messages/{chat_id}", on_snapshot)
