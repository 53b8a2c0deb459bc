"""Error taxonomy shared by the local store, remote store and sync services."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class SyncError(RuntimeError):
    """Base class for every error raised by the sync library."""


class StoreErrorKind(str, Enum):
    CONSTRAINT_VIOLATION = "constraint_violation"
    IO_ERROR = "io_error"
    NOT_INITIALIZED = "not_initialized"


@dataclass(frozen=True)
class ForeignKeyViolation:
    """The parent row a failed write pointed at but could not find."""

    table: str
    column: str
    referred_table: str
    value: Any

    @property
    def missing(self) -> str:
        """Short diagnostic label such as ``"chat missing"``."""
        if self.referred_table == "users":
            return "user missing"
        if self.referred_table == "chats":
            return "chat missing"
        if self.referred_table == "messages":
            return "message missing"
        return f"{self.referred_table} missing"


class StoreError(SyncError):
    """Raised by the local store.

    ``violation`` is populated for foreign-key failures on Core statements so
    callers can tell a missing chat from a missing user.
    """

    def __init__(
        self,
        kind: StoreErrorKind,
        message: str,
        *,
        violation: ForeignKeyViolation | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.violation = violation

    @property
    def is_constraint_violation(self) -> bool:
        return self.kind is StoreErrorKind.CONSTRAINT_VIOLATION


class NetworkErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"


class NetworkError(SyncError):
    """The remote store could not be reached or did not answer in time."""

    def __init__(self, kind: NetworkErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class RemoteErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    UNKNOWN = "unknown"


class RemoteError(SyncError):
    """The remote store answered, but with an error."""

    def __init__(self, kind: RemoteErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def is_not_found(self) -> bool:
        return self.kind is RemoteErrorKind.NOT_FOUND
