"""Per-account cursor persistence."""

from __future__ import annotations

from pathlib import Path

from chatpoll.offsets.file import FileOffsetStore
from chatpoll.offsets.memory import MemoryOffsetStore
from chatpoll.offsets.sqlite import SqliteOffsetStore
from chatpoll.offsets.store import (
    OFFSET_SCHEMA_VERSION,
    OffsetRecord,
    OffsetStore,
    new_record,
)


def open_offset_store(backend: str, state_dir: Path) -> OffsetStore:
    """Create the store selected by `backend` rooted at `state_dir`."""

    if backend == "file":
        return FileOffsetStore(root=state_dir / "offsets")
    if backend == "sqlite":
        return SqliteOffsetStore(sqlite_path=state_dir / "offsets.sqlite3")
    if backend == "memory":
        return MemoryOffsetStore()
    raise ValueError(f"Unknown offset store backend: {backend!r}")


__all__ = [
    "OFFSET_SCHEMA_VERSION",
    "FileOffsetStore",
    "MemoryOffsetStore",
    "OffsetRecord",
    "OffsetStore",
    "SqliteOffsetStore",
    "new_record",
    "open_offset_store",
]
