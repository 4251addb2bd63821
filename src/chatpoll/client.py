"""Per-account long-poll client.

A :class:`PollingClient` owns one polling session: a state machine plus a
single background task that repeatedly fetches a batch, hands every event to
the registered handler, and then persists the batch cursor.

States and transitions:

    idle --start()--> connecting --(first fetch ok)--> polling <--> paused
    connecting|polling --(terminal failure)--> error --resume()--> connecting
    any --stop()--> stopped

Design notes / invariants:
- At most one fetch is in flight per session; fetch, dispatch and persist are
  strictly sequential inside the session task.
- The cursor is persisted (and only then advanced in memory) after every event
  of the batch was offered to the handler. Handler failures are reported with
  `ErrorKind.PROCESSING` and never stop the batch or block the cursor.
- An empty response whose cursor is unchanged does not rewrite the store.
- Retryable failures below the retry budget are logged, not reported. Terminal
  failures are reported and park the session in `error` (or, with
  `auto_resume`, re-enter `connecting` after a backoff interval that grows
  with each consecutive auto-resume until `polling` is reached).
- `pause()` aborts an in-flight fetch or backoff sleep without touching the
  cursor. `pause()` is legal from `polling` and `connecting` (no-op when
  already `paused`); `resume()` is legal from `paused` and `error` (no-op
  when `polling`). Any other call raises `InvalidStateError`.
- `stop()` cancels the session scope. A batch that was not fully handed off is
  never persisted; a persist already in progress is shielded so the stored
  and in-memory cursors cannot diverge.
- The session task never raises (except for cancellation by the enclosing
  task group), so sibling sessions in a shared task group are unaffected.
"""

from __future__ import annotations

import logging
import random
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import partial

import anyio
import anyio.to_thread as to_thread
from anyio.abc import TaskGroup

from chatpoll.backoff import backoff_delay, should_retry
from chatpoll.config import RetryPolicy
from chatpoll.errors import (
    ErrorKind,
    ErrorReport,
    InvalidStateError,
    OffsetStoreError,
    TransportError,
    classify_error,
)
from chatpoll.events import ErrorHandler, EventHandler, EventProcessor
from chatpoll.offsets.store import OffsetStore
from chatpoll.transport import FetchResult, FetchTransport, RawEvent

logger = logging.getLogger(__name__)

_STORE_ERRORS = (OSError, sqlite3.Error, OffsetStoreError)


class SessionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    POLLING = "polling"
    PAUSED = "paused"
    STOPPED = "stopped"
    ERROR = "error"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _as_transport_error(kind: ErrorKind, error: BaseException) -> TransportError:
    if isinstance(error, TransportError):
        return error
    wrapped = TransportError(f"{type(error).__name__}: {error}", kind=kind)
    wrapped.__cause__ = error
    return wrapped


@dataclass(slots=True)
class PollingClient:
    """Long-poll session for one account.

    Usage:

        async with anyio.create_task_group() as tg:
            client = PollingClient("acct", transport, store, processor=proc)
            await client.start(tg)
            ...
            await client.stop()

    `processor` (or a later `on_event()`) supplies the event handler; a
    handler must be registered before `start()`.
    """

    account_id: str
    transport: FetchTransport
    store: OffsetStore
    processor: EventProcessor | None = None
    timeout_seconds: int = 30
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    auto_resume: bool = False
    rng: random.Random | None = None

    _state: SessionState = field(default=SessionState.IDLE, init=False)
    _cursor: str | None = field(default=None, init=False)
    _last_event_time: datetime | None = field(default=None, init=False)
    _attempt: int = field(default=0, init=False)
    _last_error: ErrorReport | None = field(default=None, init=False)
    _reached_polling: bool = field(default=False, init=False)
    _auto_resumes: int = field(default=0, init=False)
    _startup_error: TransportError | None = field(default=None, init=False)
    _in_flight: bool = field(default=False, init=False)

    _event_handler: EventHandler | None = field(default=None, init=False, repr=False)
    _error_handler: ErrorHandler | None = field(default=None, init=False, repr=False)

    _changed: anyio.Event | None = field(default=None, init=False, repr=False)
    _first_outcome: anyio.Event | None = field(default=None, init=False, repr=False)
    _loop_done: anyio.Event | None = field(default=None, init=False, repr=False)
    _loop_task_id: int | None = field(default=None, init=False, repr=False)
    _run_scope: anyio.CancelScope | None = field(default=None, init=False, repr=False)
    _wait_scope: anyio.CancelScope | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.account_id:
            raise ValueError("account_id must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0; got {self.timeout_seconds}")
        if self.processor is not None:
            self._event_handler = self.processor.process

    # -- observability -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cursor(self) -> str | None:
        """In-memory cursor; equals the stored one except mid-batch."""

        return self._cursor

    @property
    def attempt(self) -> int:
        """Consecutive failures since the last successful iteration."""

        return self._attempt

    @property
    def last_error(self) -> ErrorReport | None:
        return self._last_error

    # -- handler registration ------------------------------------------------

    def on_event(self, handler: EventHandler) -> None:
        """Register the event handler, replacing any previous one."""

        self._event_handler = handler

    def on_error(self, handler: ErrorHandler | None) -> None:
        """Register the error handler, replacing any previous one."""

        self._error_handler = handler

    # -- lifecycle -----------------------------------------------------------

    async def start(self, task_group: TaskGroup) -> None:
        """Start the session task in `task_group`.

        Returns once the session first reaches `polling`, or quietly if it is
        stopped first.

        Raises:
            InvalidStateError: If the session is not `idle` or has no handler.
            TransportError: If the session reached `error` before ever
                reaching `polling`. With `auto_resume` the session keeps
                retrying in the background after this is raised.
        """

        if self._state is not SessionState.IDLE:
            raise InvalidStateError(
                f"start() requires state idle; account {self.account_id!r} is {self._state}"
            )
        if self._event_handler is None:
            raise InvalidStateError(
                f"start() requires an event handler; account {self.account_id!r} has none"
            )

        self._changed = anyio.Event()
        self._first_outcome = anyio.Event()
        self._loop_done = anyio.Event()
        self._set_state(SessionState.CONNECTING)
        task_group.start_soon(self._run, name=f"chatpoll:{self.account_id}")

        await self._first_outcome.wait()
        if self._startup_error is not None:
            raise self._startup_error

    async def stop(self) -> None:
        """Stop the session (idempotent, never raises).

        After this returns no further fetch is issued and no further event is
        dispatched. When called from inside the session task (e.g. from an
        event handler) it cannot wait for the task; the caller's next
        checkpoint is cancelled instead.
        """

        if self._state is not SessionState.STOPPED:
            self._set_state(SessionState.STOPPED)
        if self._run_scope is not None:
            self._run_scope.cancel()

        done = self._loop_done
        if done is not None and not done.is_set() and not self._in_session_task():
            await done.wait()

    def pause(self) -> None:
        """Stop issuing fetches; aborts an in-flight fetch or backoff sleep."""

        if self._state is SessionState.PAUSED:
            return
        if self._state not in (SessionState.POLLING, SessionState.CONNECTING):
            raise InvalidStateError(
                f"pause() requires state polling or connecting; account {self.account_id!r} is {self._state}"
            )
        self._set_state(SessionState.PAUSED)
        if self._wait_scope is not None:
            self._wait_scope.cancel()

    def resume(self) -> None:
        """Resume a paused session, or retry a session parked in `error`."""

        if self._state is SessionState.POLLING:
            return
        if self._state is SessionState.PAUSED:
            self._set_state(
                SessionState.POLLING if self._reached_polling else SessionState.CONNECTING
            )
            return
        if self._state is SessionState.ERROR:
            if self._loop_done is None or self._loop_done.is_set():
                raise InvalidStateError(
                    f"resume(): session task for account {self.account_id!r} is not running"
                )
            self._attempt = 0
            self._set_state(SessionState.CONNECTING)
            if self._wait_scope is not None:
                self._wait_scope.cancel()
            return
        raise InvalidStateError(
            f"resume() requires state paused or error; account {self.account_id!r} is {self._state}"
        )

    async def reset_cursor(self) -> None:
        """Forget the stored cursor; the next fetch starts from the beginning.

        Only legal while no fetch can be in flight.
        """

        if (
            self._state in (SessionState.CONNECTING, SessionState.POLLING)
            or self._in_flight
        ):
            raise InvalidStateError(
                f"reset_cursor() requires an inactive session; account {self.account_id!r} is {self._state}"
            )
        await to_thread.run_sync(self.store.delete_cursor, self.account_id)
        self._cursor = None
        self._last_event_time = None
        logger.info("account=%s cursor reset", self.account_id)

    # -- internals -----------------------------------------------------------

    def _in_session_task(self) -> bool:
        return (
            self._loop_task_id is not None
            and anyio.get_current_task().id == self._loop_task_id
        )

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.info("account=%s state %s -> %s", self.account_id, old_state, new_state)

        if new_state is SessionState.POLLING:
            self._reached_polling = True
            self._auto_resumes = 0
        if self._first_outcome is not None and new_state in (
            SessionState.POLLING,
            SessionState.ERROR,
            SessionState.STOPPED,
        ):
            self._first_outcome.set()

        if self._changed is not None:
            self._changed.set()
            self._changed = anyio.Event()

    async def _wait_for_change(self) -> None:
        if self._changed is None:
            self._changed = anyio.Event()
        await self._changed.wait()

    async def _run(self) -> None:
        self._loop_task_id = anyio.get_current_task().id
        try:
            with anyio.CancelScope() as scope:
                self._run_scope = scope
                if self._state is SessionState.STOPPED:
                    return
                await self._seed_cursor()
                await self._loop()
        except Exception as e:
            logger.exception("account=%s session task crashed", self.account_id)
            await self._enter_error(ErrorKind.UNKNOWN, e, allow_auto_resume=False)
        finally:
            self._run_scope = None
            self._wait_scope = None
            self._loop_task_id = None
            self._in_flight = False
            if self._state not in (SessionState.STOPPED, SessionState.ERROR):
                self._set_state(SessionState.STOPPED)
            if self._first_outcome is not None:
                self._first_outcome.set()
            if self._loop_done is not None:
                self._loop_done.set()

    async def _seed_cursor(self) -> None:
        try:
            record = await to_thread.run_sync(self.store.read_record, self.account_id)
        except _STORE_ERRORS as e:
            logger.warning(
                "account=%s offset load error, starting from empty cursor: %s: %s",
                self.account_id,
                type(e).__name__,
                e,
            )
            record = None

        self._cursor = record.cursor if record is not None else None
        self._last_event_time = record.last_event_time if record is not None else None
        logger.info(
            "account=%s session starting cursor=%s timeout_seconds=%d",
            self.account_id,
            "<none>" if self._cursor is None else "<stored>",
            self.timeout_seconds,
        )

    async def _loop(self) -> None:
        while True:
            state = self._state
            if state is SessionState.STOPPED:
                return
            if state in (SessionState.PAUSED, SessionState.ERROR):
                await self._wait_for_change()
                continue

            result = await self._fetch_once()
            if result is None:
                continue
            await self._handle_batch(result)

    async def _fetch_once(self) -> FetchResult | None:
        """Issue one fetch; `None` means it failed (and was handled) or was aborted."""

        error: Exception | None = None
        self._in_flight = True
        try:
            with anyio.CancelScope() as scope:
                self._wait_scope = scope
                try:
                    return await self.transport.fetch(self._cursor, self.timeout_seconds)
                except Exception as e:
                    error = e
                finally:
                    self._wait_scope = None
        finally:
            self._in_flight = False

        if error is None:
            logger.debug("account=%s in-flight fetch aborted", self.account_id)
            return None
        await self._on_failure(classify_error(error), error)
        return None

    async def _handle_batch(self, result: FetchResult) -> None:
        if self._state is SessionState.CONNECTING:
            self._set_state(SessionState.POLLING)

        self._in_flight = True
        try:
            for event in result.events:
                if self._state is SessionState.STOPPED:
                    return
                await self._dispatch(event)

            if self._state is SessionState.STOPPED:
                return

            next_cursor = result.next_cursor
            if next_cursor is not None and (
                result.events or next_cursor != self._cursor
            ):
                if not await self._persist(next_cursor, had_events=bool(result.events)):
                    return
        finally:
            self._in_flight = False

        self._attempt = 0
        if result.events:
            logger.debug(
                "account=%s batch handed off events=%d",
                self.account_id,
                len(result.events),
            )

    async def _dispatch(self, event: RawEvent) -> None:
        handler = self._event_handler
        if handler is None:
            raise InvalidStateError(
                f"account {self.account_id!r}: event handler was unregistered"
            )
        try:
            await handler(event)
        except Exception as e:
            logger.warning(
                "account=%s event handler failed: %s: %s",
                self.account_id,
                type(e).__name__,
                e,
            )
            await self._report(
                ErrorReport(
                    account_id=self.account_id,
                    kind=ErrorKind.PROCESSING,
                    error=e,
                    event=event,
                    attempt=self._attempt,
                )
            )

    async def _persist(self, next_cursor: str, *, had_events: bool) -> bool:
        last_event_time = _utc_now() if had_events else self._last_event_time
        try:
            # Shielded: once the write starts, memory must follow the store.
            with anyio.CancelScope(shield=True):
                await to_thread.run_sync(
                    partial(
                        self.store.write_cursor,
                        self.account_id,
                        next_cursor,
                        last_event_time=last_event_time,
                    )
                )
                self._cursor = next_cursor
                self._last_event_time = last_event_time
        except _STORE_ERRORS as e:
            await self._on_failure(ErrorKind.STORAGE, e)
            return False
        return True

    async def _on_failure(self, kind: ErrorKind, error: Exception) -> None:
        if not should_retry(kind, self._attempt, self.retry):
            await self._enter_error(kind, error)
            return

        retry_after = error.retry_after if isinstance(error, TransportError) else None
        delay = backoff_delay(
            self._attempt,
            self.retry,
            kind=kind,
            retry_after=retry_after,
            rng=self.rng,
        )
        self._attempt += 1
        logger.warning(
            "account=%s %s failure attempt=%d retry_in=%.3fs: %s: %s",
            self.account_id,
            kind,
            self._attempt,
            delay,
            type(error).__name__,
            error,
        )
        await self._interruptible_sleep(delay)

    async def _enter_error(
        self,
        kind: ErrorKind,
        error: Exception,
        *,
        allow_auto_resume: bool = True,
    ) -> None:
        if not self._reached_polling and self._startup_error is None:
            self._startup_error = _as_transport_error(kind, error)

        report = ErrorReport(
            account_id=self.account_id,
            kind=kind,
            error=error,
            attempt=self._attempt,
            terminal=True,
        )
        logger.error(
            "account=%s entering error state: %s", self.account_id, report.describe()
        )
        self._set_state(SessionState.ERROR)
        await self._report(report)

        if not (self.auto_resume and allow_auto_resume):
            return
        if self._state is not SessionState.ERROR:
            return
        # Consecutive auto-resumes back off until the session reaches polling.
        delay = backoff_delay(self._auto_resumes, self.retry, kind=kind, rng=self.rng)
        self._auto_resumes += 1
        logger.info(
            "account=%s auto-resume #%d in %.3fs",
            self.account_id,
            self._auto_resumes,
            delay,
        )
        await self._interruptible_sleep(delay)
        if self._state is SessionState.ERROR:
            self._attempt = 0
            self._set_state(SessionState.CONNECTING)

    async def _interruptible_sleep(self, delay: float) -> None:
        with anyio.CancelScope() as scope:
            self._wait_scope = scope
            try:
                await anyio.sleep(delay)
            finally:
                self._wait_scope = None

    async def _report(self, report: ErrorReport) -> None:
        self._last_error = report
        handler = self._error_handler
        if handler is None:
            return
        try:
            await handler(report)
        except Exception:
            logger.exception("account=%s error handler failed", self.account_id)
