"""Event delivery contract.

The polling client hands each raw event to exactly one registered handler,
sequentially and in transport order. A handler's completion is the client's
"handed off" point: once every event of a batch has been offered (whether or
not individual handlers raised), the batch cursor is persisted.

Handlers must tolerate re-delivery: a crash between dispatch and cursor
persistence replays the batch on restart.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeAlias, runtime_checkable

from rich import get_console, print, print_json

from chatpoll.errors import ErrorReport
from chatpoll.transport import RawEvent

EventHandler: TypeAlias = Callable[[RawEvent], Awaitable[None]]
ErrorHandler: TypeAlias = Callable[[ErrorReport], Awaitable[None]]


@runtime_checkable
class EventProcessor(Protocol):
    async def process(self, event: RawEvent) -> None:
        """Consume one event; raising reports a `PROCESSING` error."""


@dataclass(slots=True)
class ConsoleEventProcessor:
    """Echo events as JSON to the console (CLI default processor)."""

    account_id: str
    compact: bool = False

    async def process(self, event: RawEvent) -> None:
        if self.compact:
            # `markup=False`: JSON brackets must not be parsed as rich markup.
            line = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
            get_console().print(f"[{self.account_id}] {line}", markup=False)
            return
        print(f"[cyan]event[/cyan] account={self.account_id}")
        print_json(data=event)
