"""Identifier generation for messages.

Remote ids follow the Firebase push-id layout: 8 characters of timestamp
followed by 12 random characters, drawn from an alphabet whose ASCII order
matches its numeric order. Ids generated later therefore sort after earlier
ones, and ids generated in the same millisecond still sort in creation order.
"""

from __future__ import annotations

import secrets
import threading
import uuid

from chat_sync.utils.time import now_ms

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_lock = threading.Lock()
_last_push_time = 0
_last_rand_chars = [0] * 12


def generate_push_id(timestamp_ms: int | None = None) -> str:
    """Return a new chronologically sortable 20 character id."""
    global _last_push_time

    now = now_ms() if timestamp_ms is None else timestamp_ms
    with _lock:
        duplicate_time = now == _last_push_time
        _last_push_time = now

        time_chars = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        time_part = "".join(reversed(time_chars))

        if not duplicate_time:
            for i in range(12):
                _last_rand_chars[i] = secrets.randbelow(64)
        else:
            # Same millisecond: increment the random suffix by one.
            i = 11
            while i >= 0 and _last_rand_chars[i] == 63:
                _last_rand_chars[i] = 0
                i -= 1
            if i >= 0:
                _last_rand_chars[i] += 1

        return time_part + "".join(PUSH_CHARS[c] for c in _last_rand_chars)


def generate_local_id() -> str:
    """Return a client correlation id for an optimistic message."""
    return f"local_{now_ms()}_{uuid.uuid4().hex[:12]}"
