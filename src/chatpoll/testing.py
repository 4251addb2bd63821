"""Deterministic doubles for exercising polling sessions without a network."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import anyio

from chatpoll.client import PollingClient, SessionState
from chatpoll.errors import ErrorReport
from chatpoll.transport import FetchResult, RawEvent


@dataclass(slots=True)
class ScriptedTransport:
    """Replay `steps` in order: a `FetchResult` is returned, an exception raised.

    Once the script is exhausted `fetch()` blocks until cancelled, like a
    long poll with no traffic. `calls` records the cursor of every fetch.
    """

    steps: list[FetchResult | Exception] = field(default_factory=list)
    calls: list[str | None] = field(default_factory=list, init=False)

    def push(self, *steps: FetchResult | Exception) -> None:
        self.steps.extend(steps)

    async def fetch(self, cursor: str | None, timeout_seconds: int) -> FetchResult:
        self.calls.append(cursor)
        if not self.steps:
            await anyio.sleep_forever()
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


@dataclass(slots=True)
class RecordingProcessor:
    """Record every event; raise for the zero-based positions in `fail_on`."""

    fail_on: set[int] = field(default_factory=set)
    events: list[RawEvent] = field(default_factory=list, init=False)

    async def process(self, event: RawEvent) -> None:
        index = len(self.events)
        self.events.append(event)
        if index in self.fail_on:
            raise RuntimeError(f"processing failed for event #{index}")


@dataclass(slots=True)
class RecordingErrorHandler:
    reports: list[ErrorReport] = field(default_factory=list, init=False)

    async def __call__(self, report: ErrorReport) -> None:
        self.reports.append(report)


async def wait_until(
    predicate: Callable[[], bool],
    *,
    timeout: float = 2.0,
    interval: float = 0.001,
) -> None:
    """Poll `predicate` until it holds; raises `TimeoutError` after `timeout`."""

    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(interval)


async def wait_for_state(
    client: PollingClient,
    *states: SessionState,
    timeout: float = 2.0,
) -> SessionState:
    await wait_until(lambda: client.state in states, timeout=timeout)
    return client.state
