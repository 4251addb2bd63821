"""Directory-backed offset store: one JSON file per account.

Layout (relative to `root`):
- `<quoted account id>.json`: one JSON object, the serialized
  :class:`~chatpoll.offsets.store.OffsetRecord`.

Design notes / invariants:
- Account ids are URL-quoted (`safe=""`) into file names, so ids containing
  `/` or `..` cannot escape `root` or collide with each other.
- Writes go to a temporary sibling file, are flushed and fsynced, then
  atomically replace the target via `os.replace`. Readers see either the old
  or the new record, never a partial one.
- Distinct accounts touch distinct files; no locking is needed. Concurrent
  writers for the same account (multiple processes) resolve last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

from chatpoll.errors import OffsetStoreError
from chatpoll.offsets.store import OffsetRecord, new_record, record_if_current

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FileOffsetStore:
    root: Path

    def __post_init__(self) -> None:
        self.root = Path(self.root).expanduser()

    def path_for(self, account_id: str) -> Path:
        """Return the record path for `account_id`."""

        if not account_id:
            raise ValueError("account_id must not be empty")
        return self.root / f"{quote(account_id, safe='')}.json"

    def read_record(self, account_id: str) -> OffsetRecord | None:
        """Load the account's record.

        Raises:
            OffsetStoreError: If the file exists but is not a valid record.
        """

        path = self.path_for(account_id)
        try:
            raw_text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise OffsetStoreError(f"Invalid JSON at {path}: {e}") from e

        try:
            record = record_if_current(payload)
        except ValueError as e:  # includes pydantic `ValidationError`
            raise OffsetStoreError(f"Invalid offset record at {path}: {e}") from e

        if record is None:
            logger.warning(
                "ignoring offset record with foreign schema version path=%s", path
            )
            return None
        if record.account_id != account_id:
            raise OffsetStoreError(
                f"Invalid offset record at {path}: account_id {record.account_id!r} "
                f"does not match {account_id!r}"
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
        """Persist the account's record atomically and durably.

        Side effects:
        - Creates `root` when needed.
        - Atomically replaces the record file via temporary file + rename.
        """

        record = new_record(account_id, cursor, last_event_time=last_event_time)
        path = self.path_for(account_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tf:
            tmp_path = Path(tf.name)
            try:
                tf.write(record.model_dump_json())
                tf.write("\n")
                tf.flush()
                os.fsync(tf.fileno())
            except BaseException:
                tf.close()
                tmp_path.unlink(missing_ok=True)
                raise

        try:
            tmp_path.replace(path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        self._fsync_dir(path.parent)

    def delete_cursor(self, account_id: str) -> None:
        self.path_for(account_id).unlink(missing_ok=True)

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        # Persist the rename itself; not supported on every platform.
        try:
            fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)
