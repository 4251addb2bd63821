"""Shared protocol and record model for per-account cursor persistence.

Design notes / invariants:
- One :class:`OffsetRecord` per account id; stores never let one account
  observe or mutate another account's record.
- `write_cursor()` must be durable before it returns. The polling client
  relies on this for at-least-once delivery across crashes.
- Writes replace the whole record; readers never observe a partial write.
- A record whose `schema_version` differs from :data:`OFFSET_SCHEMA_VERSION`
  reads as absent (`None`), never as an error. Content that cannot be decoded
  at all raises :class:`~chatpoll.errors.OffsetStoreError`.
- Cross-process locking is not provided; last writer wins.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Final, Protocol, runtime_checkable

from pydantic import BaseModel, Field

OFFSET_SCHEMA_VERSION: Final[int] = 1


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class OffsetRecord(BaseModel):
    """Persisted cursor state for one account."""

    account_id: str
    cursor: str
    last_event_time: datetime | None = None
    updated_at: datetime = Field(default_factory=_utc_now)
    schema_version: int = OFFSET_SCHEMA_VERSION


@runtime_checkable
class OffsetStore(Protocol):
    """Protocol for durable `account_id -> cursor` persistence.

    Implementations are synchronous; async callers dispatch them through
    `anyio.to_thread.run_sync`. They must be safe under concurrent calls for
    distinct account ids.
    """

    def read_record(self, account_id: str) -> OffsetRecord | None:
        """Return the full record, or `None` if absent or of another schema."""

    def read_cursor(self, account_id: str) -> str | None:
        """Return the stored cursor, or `None` if absent."""

    def write_cursor(
        self,
        account_id: str,
        cursor: str,
        *,
        last_event_time: datetime | None = None,
    ) -> None:
        """Durably replace the account's record with `cursor`."""

    def delete_cursor(self, account_id: str) -> None:
        """Remove the account's record (idempotent)."""


def new_record(
    account_id: str,
    cursor: str,
    *,
    last_event_time: datetime | None = None,
) -> OffsetRecord:
    """Build a current-schema record, validating the inputs."""

    if not account_id:
        raise ValueError("account_id must not be empty")
    if not isinstance(cursor, str):
        raise TypeError(f"cursor must be a string; got {type(cursor).__name__}")
    return OffsetRecord(
        account_id=account_id,
        cursor=cursor,
        last_event_time=last_event_time,
    )


def record_if_current(raw: object) -> OffsetRecord | None:
    """Validate a decoded payload, mapping other schema versions to `None`.

    Raises:
        ValueError: If `raw` is a current-version payload that fails validation,
            or is not a JSON object at all.
    """

    if not isinstance(raw, dict):
        raise ValueError("expected JSON object")
    if raw.get("schema_version") != OFFSET_SCHEMA_VERSION:
        return None
    return OffsetRecord.model_validate(raw)
