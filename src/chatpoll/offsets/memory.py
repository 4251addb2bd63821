"""Process-local offset store (tests, dry runs)."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime

from chatpoll.offsets.store import OFFSET_SCHEMA_VERSION, OffsetRecord, new_record


@dataclass(slots=True)
class MemoryOffsetStore:
    """Dict-backed store; "durable" only for the lifetime of the process."""

    _records: dict[str, OffsetRecord] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def read_record(self, account_id: str) -> OffsetRecord | None:
        with self._lock:
            record = self._records.get(account_id)
        if record is None or record.schema_version != OFFSET_SCHEMA_VERSION:
            return None
        return record

    def read_cursor(self, account_id: str) -> str | None:
        record = self.read_record(account_id)
        return record.cursor if record is not None else None

    def write_cursor(
        self,
        account_id: str,
        cursor: str,
        *,
        last_event_time: datetime | None = None,
    ) -> None:
        record = new_record(account_id, cursor, last_event_time=last_event_time)
        with self._lock:
            self._records[account_id] = record

    def delete_cursor(self, account_id: str) -> None:
        with self._lock:
            self._records.pop(account_id, None)

    def put_record(self, record: OffsetRecord) -> None:
        """Store `record` verbatim, including foreign schema versions."""

        with self._lock:
            self._records[record.account_id] = record
