"""Local/remote sync engine and offline outbound queue for a messaging client."""

from chat_sync.client import MessagingClient
from chat_sync.core.errors import NetworkError, RemoteError, StoreError, SyncError

__all__ = [
    "MessagingClient",
    "NetworkError",
    "RemoteError",
    "StoreError",
    "SyncError",
]
