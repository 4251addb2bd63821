"""Long-poll event ingestion for chat platforms.

One :class:`PollingClient` per account pulls batches from a
:class:`FetchTransport`, hands events to a handler in order, and persists the
batch cursor to an :class:`OffsetStore` afterwards (at-least-once delivery).
:class:`AccountSupervisor` runs many accounts side by side.
"""

from chatpoll.client import PollingClient, SessionState
from chatpoll.config import AccountConfig, RetryPolicy, Settings, load_settings
from chatpoll.errors import (
    ChatPollError,
    ErrorKind,
    ErrorReport,
    InvalidStateError,
    OffsetStoreError,
    TransportError,
    classify_error,
)
from chatpoll.offsets import OffsetStore, open_offset_store
from chatpoll.supervisor import AccountSupervisor, build_supervisor
from chatpoll.transport import FetchResult, FetchTransport

__all__ = [
    "AccountConfig",
    "AccountSupervisor",
    "ChatPollError",
    "ErrorKind",
    "ErrorReport",
    "FetchResult",
    "FetchTransport",
    "InvalidStateError",
    "OffsetStore",
    "OffsetStoreError",
    "PollingClient",
    "RetryPolicy",
    "SessionState",
    "Settings",
    "TransportError",
    "build_supervisor",
    "classify_error",
    "load_settings",
    "open_offset_store",
]
