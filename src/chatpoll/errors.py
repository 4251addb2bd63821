"""Error taxonomy for the polling client.

Every failure the loop can observe is mapped to an :class:`ErrorKind`. The
kind alone decides whether the loop retries (with backoff) or transitions the
session to `error`:

- `NETWORK`, `RATE_LIMITED`, `SERVER`, `STORAGE`: retryable.
- `AUTH`, `MALFORMED`, `UNKNOWN`: terminal on first occurrence.
- `PROCESSING`: per-event handler failure; reported only, never affects the
  loop or the cursor.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final


class ErrorKind(StrEnum):
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    AUTH = "auth"
    MALFORMED = "malformed"
    PROCESSING = "processing"
    STORAGE = "storage"
    UNKNOWN = "unknown"


RETRYABLE_KINDS: Final[frozenset[ErrorKind]] = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER,
        ErrorKind.STORAGE,
    }
)


class ChatPollError(Exception):
    """Base class for errors raised by `chatpoll`."""


class InvalidStateError(ChatPollError, RuntimeError):
    """Raised when a lifecycle operation is not legal in the current state."""


class OffsetStoreError(ChatPollError, ValueError):
    """Raised when persisted offset state exists but cannot be decoded."""


class TransportError(ChatPollError, RuntimeError):
    """Raised by a fetch transport; carries the classified failure kind.

    `retry_after` is an optional server hint in seconds (e.g. HTTP
    `Retry-After`) that the backoff policy treats as a lower bound.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def is_retryable(kind: ErrorKind) -> bool:
    return kind in RETRYABLE_KINDS


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception raised at the fetch/persist boundary to an `ErrorKind`.

    Unrecognized exception types are `UNKNOWN` (non-retryable): a transport
    that leaks arbitrary exceptions is treated as a protocol violation rather
    than retried forever.
    """

    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, (OffsetStoreError, sqlite3.Error)):
        return ErrorKind.STORAGE
    # `TimeoutError` is an `OSError` subclass; both are connection-level.
    if isinstance(exc, OSError):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN


@dataclass(frozen=True, slots=True)
class ErrorReport:
    """Payload delivered to a session's error handler.

    `event` is set only for `PROCESSING` reports. `terminal=True` means the
    session entered the `error` state because of this failure.
    """

    account_id: str
    kind: ErrorKind
    error: BaseException
    event: dict[str, Any] | None = None
    attempt: int = 0
    terminal: bool = False

    def describe(self) -> str:
        return f"{self.kind}: {type(self.error).__name__}: {self.error}"
