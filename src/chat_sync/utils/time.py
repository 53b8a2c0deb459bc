# src/chat_sync/utils/time.py
"""Time utilities for stored timestamps."""

import time


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)
