"""Fetch transport contract consumed by the polling client.

A transport performs exactly one long-poll request per `fetch()` call. It may
block for up to `timeout_seconds` (plus network slack) and must be
cancellable through the ambient anyio cancel scope; the polling client cancels
that scope on `stop()`/`pause()`.

Failures must be raised as :class:`~chatpoll.errors.TransportError` with the
appropriate :class:`~chatpoll.errors.ErrorKind`. Plain `OSError`s are
tolerated and classified as `NETWORK`; any other exception type is treated as
a non-retryable protocol violation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

RawEvent: TypeAlias = dict[str, Any]


@dataclass(frozen=True, slots=True)
class FetchResult:
    """One long-poll response.

    `events` are in transport order, which is authoritative. `next_cursor` is
    the opaque position after this batch; `None` means the transport did not
    issue a new cursor and the current one stays in effect.
    """

    events: list[RawEvent] = field(default_factory=list)
    next_cursor: str | None = None


@runtime_checkable
class FetchTransport(Protocol):
    async def fetch(self, cursor: str | None, timeout_seconds: int) -> FetchResult:
        """Fetch events after `cursor` (`None`: start of the retention window)."""


@runtime_checkable
class CredentialProvider(Protocol):
    async def get_token(self) -> str:
        """Return a bearer token, or raise `TransportError(kind=AUTH)`."""
