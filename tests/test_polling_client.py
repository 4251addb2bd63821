from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import anyio
import pytest

from chatpoll.client import PollingClient, SessionState
from chatpoll.config import RetryPolicy
from chatpoll.errors import ErrorKind, TransportError
from chatpoll.offsets import FileOffsetStore, MemoryOffsetStore, OffsetRecord, OffsetStore
from chatpoll.testing import (
    RecordingErrorHandler,
    RecordingProcessor,
    ScriptedTransport,
    wait_until,
)
from chatpoll.transport import FetchResult

FAST_RETRY = RetryPolicy(initial_delay_ms=1, max_delay_ms=5, jitter=0, rate_limit_floor_ms=0)


def _client(
    transport: ScriptedTransport,
    store: OffsetStore | None = None,
    processor: RecordingProcessor | None = None,
    **kwargs,
) -> PollingClient:
    kwargs.setdefault("retry", FAST_RETRY)
    return PollingClient(
        account_id="acct",
        transport=transport,
        store=store if store is not None else MemoryOffsetStore(),
        processor=processor if processor is not None else RecordingProcessor(),
        **kwargs,
    )


@dataclass
class FlakyStore:
    """Memory store that records writes and fails the first `fail_writes` of them."""

    inner: MemoryOffsetStore = field(default_factory=MemoryOffsetStore)
    fail_writes: int = 0
    writes: list[str] = field(default_factory=list)

    def read_record(self, account_id: str) -> OffsetRecord | None:
        return self.inner.read_record(account_id)

    def read_cursor(self, account_id: str) -> str | None:
        return self.inner.read_cursor(account_id)

    def write_cursor(
        self,
        account_id: str,
        cursor: str,
        *,
        last_event_time: datetime | None = None,
    ) -> None:
        if self.fail_writes:
            self.fail_writes -= 1
            raise OSError("disk full")
        self.writes.append(cursor)
        self.inner.write_cursor(account_id, cursor, last_event_time=last_event_time)

    def delete_cursor(self, account_id: str) -> None:
        self.inner.delete_cursor(account_id)


@pytest.mark.anyio
async def test_fresh_store_delivers_batch_then_persists_cursor() -> None:
    store = MemoryOffsetStore()
    transport = ScriptedTransport([FetchResult(events=[{"id": 1}, {"id": 2}], next_cursor="c1")])
    processor = RecordingProcessor()
    client = _client(transport, store, processor)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        assert client.state is SessionState.POLLING

        await wait_until(lambda: len(transport.calls) == 2)
        assert processor.events == [{"id": 1}, {"id": 2}]
        assert store.read_cursor("acct") == "c1"
        assert client.cursor == "c1"
        assert transport.calls == [None, "c1"]

        record = store.read_record("acct")
        assert record is not None
        assert record.last_event_time is not None

        await client.stop()

    assert client.state is SessionState.STOPPED


@pytest.mark.anyio
async def test_restart_resumes_from_stored_cursor() -> None:
    store = MemoryOffsetStore()
    store.write_cursor("acct", "c1")
    transport = ScriptedTransport([FetchResult(events=[{"id": 3}], next_cursor="c2")])
    client = _client(transport, store)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 2)
        await client.stop()

    assert transport.calls == ["c1", "c2"]
    assert store.read_cursor("acct") == "c2"


@pytest.mark.anyio
async def test_retryable_failures_then_success_reset_attempt_without_reporting() -> None:
    server_error = TransportError("HTTP 503", kind=ErrorKind.SERVER, status_code=503)
    transport = ScriptedTransport(
        [server_error, server_error, server_error, FetchResult(events=[{"id": 1}], next_cursor="c1")]
    )
    errors = RecordingErrorHandler()
    client = _client(transport)
    client.on_error(errors)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 5)

        assert client.state is SessionState.POLLING
        assert client.attempt == 0
        assert errors.reports == []
        assert client.last_error is None
        assert transport.calls == [None, None, None, None, "c1"]

        await client.stop()


@pytest.mark.anyio
async def test_auth_failure_enters_error_after_one_fetch() -> None:
    transport = ScriptedTransport([TransportError("HTTP 401", kind=ErrorKind.AUTH, status_code=401)])
    errors = RecordingErrorHandler()
    processor = RecordingProcessor()
    client = _client(transport, processor=processor)
    client.on_error(errors)

    async with anyio.create_task_group() as tg:
        with pytest.raises(TransportError) as exc_info:
            await client.start(tg)
        assert exc_info.value.kind is ErrorKind.AUTH

        assert client.state is SessionState.ERROR
        assert transport.calls == [None]
        assert processor.events == []
        assert len(errors.reports) == 1
        assert errors.reports[0].kind is ErrorKind.AUTH
        assert errors.reports[0].terminal is True
        assert client.last_error is errors.reports[0]

        await anyio.sleep(0.01)
        assert transport.calls == [None]

        await client.stop()

    assert client.state is SessionState.STOPPED


@pytest.mark.anyio
async def test_handler_failure_is_reported_and_batch_continues() -> None:
    store = MemoryOffsetStore()
    events = [{"id": 1}, {"id": 2}, {"id": 3}]
    transport = ScriptedTransport([FetchResult(events=events, next_cursor="c1")])
    processor = RecordingProcessor(fail_on={1})
    errors = RecordingErrorHandler()
    client = _client(transport, store, processor)
    client.on_error(errors)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 2)
        await client.stop()

    assert processor.events == events
    assert store.read_cursor("acct") == "c1"
    assert len(errors.reports) == 1
    report = errors.reports[0]
    assert report.kind is ErrorKind.PROCESSING
    assert report.event == {"id": 2}
    assert report.terminal is False


@pytest.mark.anyio
async def test_exhausted_retry_budget_enters_error_with_classified_error() -> None:
    refused = ConnectionRefusedError("refused")
    transport = ScriptedTransport([refused, refused, refused])
    errors = RecordingErrorHandler()
    client = _client(
        transport,
        retry=RetryPolicy(initial_delay_ms=1, max_delay_ms=5, jitter=0, max_retries=2),
    )
    client.on_error(errors)

    async with anyio.create_task_group() as tg:
        with pytest.raises(TransportError) as exc_info:
            await client.start(tg)
        await client.stop()

    assert exc_info.value.kind is ErrorKind.NETWORK
    assert exc_info.value.__cause__ is refused
    assert len(transport.calls) == 3
    assert [r.kind for r in errors.reports] == [ErrorKind.NETWORK]
    assert errors.reports[0].attempt == 2
    assert errors.reports[0].terminal is True


@pytest.mark.anyio
async def test_unchanged_cursor_on_empty_response_is_not_rewritten() -> None:
    store = FlakyStore()
    transport = ScriptedTransport(
        [
            FetchResult(events=[], next_cursor=None),
            FetchResult(events=[], next_cursor="c0"),
            FetchResult(events=[], next_cursor="c0"),
            FetchResult(events=[{"id": 1}], next_cursor="c0"),
        ]
    )
    client = _client(transport, store)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 5)
        await client.stop()

    assert store.writes == ["c0", "c0"]
    assert transport.calls == [None, None, "c0", "c0", "c0"]


@pytest.mark.anyio
async def test_storage_failure_is_retried_without_advancing_cursor() -> None:
    store = FlakyStore(fail_writes=1)
    batch = FetchResult(events=[{"id": 1}], next_cursor="c1")
    transport = ScriptedTransport([batch, batch])
    processor = RecordingProcessor()
    errors = RecordingErrorHandler()
    client = _client(transport, store, processor)
    client.on_error(errors)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 3)
        await client.stop()

    # The batch is re-fetched from the old cursor and delivered again.
    assert transport.calls == [None, None, "c1"]
    assert processor.events == [{"id": 1}, {"id": 1}]
    assert store.writes == ["c1"]
    assert errors.reports == []


@pytest.mark.anyio
async def test_corrupt_stored_cursor_starts_from_empty(tmp_path: Path) -> None:
    store = FileOffsetStore(tmp_path)
    store.path_for("acct").write_text("{corrupt", encoding="utf-8")
    transport = ScriptedTransport([FetchResult(events=[{"id": 1}], next_cursor="c1")])
    client = _client(transport, store)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 2)
        await client.stop()

    assert transport.calls == [None, "c1"]
    assert store.read_cursor("acct") == "c1"


@pytest.mark.anyio
async def test_stop_mid_batch_does_not_advance_cursor_and_batch_is_redelivered() -> None:
    store = MemoryOffsetStore()
    store.write_cursor("acct", "c0")
    batch = FetchResult(events=[{"id": 1}, {"id": 2}, {"id": 3}], next_cursor="c1")

    delivered: list[dict] = []
    blocked = anyio.Event()

    async def blocking_handler(event: dict) -> None:
        delivered.append(event)
        if event["id"] == 2:
            blocked.set()
            await anyio.sleep_forever()

    client = _client(ScriptedTransport([batch]), store)
    client.on_event(blocking_handler)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await blocked.wait()
        await client.stop()

    assert delivered == [{"id": 1}, {"id": 2}]
    assert store.read_cursor("acct") == "c0"

    processor = RecordingProcessor()
    transport = ScriptedTransport([batch])
    restarted = _client(transport, store, processor)

    async with anyio.create_task_group() as tg:
        await restarted.start(tg)
        await wait_until(lambda: len(transport.calls) == 2)
        await restarted.stop()

    assert transport.calls == ["c0", "c1"]
    assert processor.events == batch.events
    assert store.read_cursor("acct") == "c1"


@pytest.mark.anyio
async def test_cursor_never_moves_backwards_across_batches() -> None:
    store = FlakyStore()
    transport = ScriptedTransport(
        [FetchResult(events=[{"id": i}], next_cursor=f"c{i}") for i in range(1, 6)]
    )
    client = _client(transport, store)

    async with anyio.create_task_group() as tg:
        await client.start(tg)
        await wait_until(lambda: len(transport.calls) == 6)
        await client.stop()

    assert store.writes == ["c1", "c2", "c3", "c4", "c5"]
    assert transport.calls == [None, "c1", "c2", "c3", "c4", "c5"]
