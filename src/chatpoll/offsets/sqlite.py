"""SQLite-backed offset store.

Table design:
- `offsets`: one row per `account_id` holding the serialized record plus its
  `schema_version` column, so foreign-version rows can be skipped without
  decoding them.

Each call opens its own connection (WAL mode), so the store is safe to use
from worker threads and from multiple processes; `INSERT ... ON CONFLICT`
makes writes last-writer-wins.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from chatpoll.errors import OffsetStoreError
from chatpoll.offsets.store import (
    OFFSET_SCHEMA_VERSION,
    OffsetRecord,
    new_record,
    record_if_current,
)


@dataclass(slots=True)
class SqliteOffsetStore:
    sqlite_path: Path

    def __post_init__(self) -> None:
        self.sqlite_path = Path(self.sqlite_path).expanduser()
        self.ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path, timeout=10.0)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            # FULL: the cursor write must be durable once `write_cursor` returns.
            conn.execute("PRAGMA synchronous=FULL;")
        except BaseException:
            conn.close()
            raise
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS offsets (
                        account_id TEXT PRIMARY KEY,
                        schema_version INTEGER NOT NULL,
                        record_json TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
        finally:
            conn.close()

    def read_record(self, account_id: str) -> OffsetRecord | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT schema_version, record_json FROM offsets WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None or row["schema_version"] != OFFSET_SCHEMA_VERSION:
            return None
        try:
            record = record_if_current(json.loads(row["record_json"]))
        except ValueError as e:  # JSONDecodeError and pydantic ValidationError
            raise OffsetStoreError(
                f"Invalid offset record for account {account_id!r} in {self.sqlite_path}: {e}"
            ) from e
        if record is not None and record.account_id != account_id:
            raise OffsetStoreError(
                f"Invalid offset record in {self.sqlite_path}: account_id "
                f"{record.account_id!r} does not match {account_id!r}"
            )
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
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO offsets(account_id, schema_version, record_json, updated_at)
                    VALUES(?, ?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        schema_version=excluded.schema_version,
                        record_json=excluded.record_json,
                        updated_at=excluded.updated_at
                    """,
                    (
                        record.account_id,
                        record.schema_version,
                        record.model_dump_json(),
                        record.updated_at.isoformat(),
                    ),
                )
        finally:
            conn.close()

    def delete_cursor(self, account_id: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM offsets WHERE account_id = ?", (account_id,))
        finally:
            conn.close()
