"""Error taxonomy and result type shared by the sync engine.

Retriable failures are folded into queue state by callers; only
user-invoked actions without a retry path surface the message.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class SyncErrorKind(str, Enum):
    """Classification of sync failures."""

    OFFLINE = "offline"  # Retriable, network steps skipped
    AUTH = "auth"  # 401/403 after one forced token refresh
    NOT_FOUND = "not_found"  # 404, endpoint missing or record gone
    PERMISSION = "permission"  # 403 on an upload, not retriable
    VALIDATION = "validation"  # Session below threshold, discarded
    SERVER = "server"  # 5xx, timeout or malformed response
    REJECTED = "rejected"  # Other 4xx
    STORAGE = "storage"  # Local persistence failure
    CONFIG = "config"  # Server URL or credentials missing


# Kinds that a later sync pass may clear up on its own
RETRIABLE_KINDS = {
    SyncErrorKind.OFFLINE,
    SyncErrorKind.SERVER,
    SyncErrorKind.NOT_FOUND,
    SyncErrorKind.REJECTED,
}


class SyncError(Exception):
    """Typed failure carrying its kind and, for HTTP failures, the status."""

    def __init__(self, kind: SyncErrorKind, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status = status

    @property
    def retriable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def __repr__(self) -> str:
        return f"SyncError({self.kind.value!r}, {self.message!r}, status={self.status})"


class StorageError(SyncError):
    """Local database failure."""

    def __init__(self, message: str) -> None:
        super().__init__(SyncErrorKind.STORAGE, message)


@dataclass
class Result(Generic[T]):
    """Outcome of an operation: a value or a SyncError, never both."""

    value: T | None = None
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retriable(self) -> bool:
        return self.error is not None and self.error.retriable

    @property
    def kind(self) -> SyncErrorKind | None:
        return self.error.kind if self.error else None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SyncError) -> "Result[T]":
        return cls(error=error)

    @classmethod
    def fail(cls, kind: SyncErrorKind, message: str, status: int | None = None) -> "Result[T]":
        return cls(error=SyncError(kind, message, status))

    def to_dict(self) -> dict:
        if self.error is None:
            return {"ok": True, "value": self.value}
        return {
            "ok": False,
            "error": self.error.kind.value,
            "message": self.error.message,
            "status": self.error.status,
        }
