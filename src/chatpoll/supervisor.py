"""Multi-account supervision.

`AccountSupervisor` owns one :class:`~chatpoll.client.PollingClient` per
account and the anyio task group their session tasks run in. Sessions are
fully independent: a session task never raises, so one account's failures
cannot cancel its siblings, and each account has its own cursor, backoff
state and error channel.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Self

import anyio
from anyio.abc import TaskGroup

from chatpoll.client import PollingClient, SessionState
from chatpoll.config import AccountConfig, Settings
from chatpoll.errors import ChatPollError, ErrorReport
from chatpoll.events import ConsoleEventProcessor, EventProcessor
from chatpoll.http_transport import (
    EnvCredentialProvider,
    HttpLongPollTransport,
    StaticCredentialProvider,
)
from chatpoll.offsets import OffsetStore, open_offset_store
from chatpoll.transport import CredentialProvider, FetchTransport

logger = logging.getLogger(__name__)

_HEALTHY_STATES = frozenset({SessionState.POLLING, SessionState.PAUSED})


@dataclass(slots=True)
class AccountSupervisor:
    """Run many accounts' polling sessions in one task group.

    Usage:

        async with AccountSupervisor() as supervisor:
            supervisor.add(client)
            failures = await supervisor.start()

    Leaving the context stops every session and closes transports that
    expose `aclose()`.
    """

    _clients: dict[str, PollingClient] = field(default_factory=dict, init=False)
    _task_group: TaskGroup | None = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    async def __aenter__(self) -> Self:
        self._require_open()
        if self._task_group is not None:
            raise RuntimeError("AccountSupervisor is already running")
        task_group = anyio.create_task_group()
        await task_group.__aenter__()
        self._task_group = task_group
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool | None:
        task_group = self._task_group
        self._task_group = None
        self._closed = True
        # Neither step raises; sessions must be stopped before the group can exit.
        with anyio.CancelScope(shield=True):
            await self.stop()
            await self._close_transports()
        if task_group is None:
            return None
        return await task_group.__aexit__(exc_type, exc, tb)  # type: ignore[arg-type]

    def _require_open(self) -> None:
        if self._closed:
            raise RuntimeError("AccountSupervisor is closed")

    def _require_running(self) -> TaskGroup:
        self._require_open()
        if self._task_group is None:
            raise RuntimeError("AccountSupervisor must be entered with `async with`")
        return self._task_group

    @property
    def clients(self) -> dict[str, PollingClient]:
        return dict(self._clients)

    def get(self, account_id: str) -> PollingClient:
        try:
            return self._clients[account_id]
        except KeyError as e:
            raise KeyError(f"Unknown account_id: {account_id!r}") from e

    def add(self, client: PollingClient) -> None:
        """Register `client`; account ids must be unique."""

        self._require_open()
        if client.account_id in self._clients:
            raise ValueError(f"Duplicate account_id: {client.account_id!r}")
        self._clients[client.account_id] = client

    async def start(self) -> dict[str, ChatPollError]:
        """Start every idle session concurrently.

        Returns:
            `{account_id: exception}` for sessions whose startup failed. The
            other sessions are unaffected.
        """

        task_group = self._require_running()
        failures: dict[str, ChatPollError] = {}

        async def _start_one(client: PollingClient) -> None:
            try:
                await client.start(task_group)
            except ChatPollError as e:
                logger.error(
                    "account=%s failed to start: %s: %s",
                    client.account_id,
                    type(e).__name__,
                    e,
                )
                failures[client.account_id] = e

        async with anyio.create_task_group() as starters:
            for client in self._clients.values():
                if client.state is SessionState.IDLE:
                    starters.start_soon(_start_one, client)

        logger.info(
            "supervisor started accounts=%d failed=%d",
            len(self._clients),
            len(failures),
        )
        return failures

    async def stop(self) -> None:
        """Stop every session concurrently and wait until all are stopped."""

        async with anyio.create_task_group() as stoppers:
            for client in self._clients.values():
                stoppers.start_soon(client.stop)

    def status(self) -> dict[str, SessionState]:
        return {account_id: c.state for account_id, c in self._clients.items()}

    def healthy(self) -> bool:
        """True iff every registered account is `polling` or `paused`."""

        return all(c.state in _HEALTHY_STATES for c in self._clients.values())

    def last_errors(self) -> dict[str, ErrorReport]:
        return {
            account_id: c.last_error
            for account_id, c in self._clients.items()
            if c.last_error is not None
        }

    async def _close_transports(self) -> None:
        for client in self._clients.values():
            aclose = getattr(client.transport, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception:
                logger.exception("account=%s transport close failed", client.account_id)


def credentials_for(account: AccountConfig) -> CredentialProvider:
    if account.token is not None:
        return StaticCredentialProvider(account.token)
    if account.token_env is None:
        raise ValueError(
            f"account {account.account_id!r}: set exactly one of token or token_env"
        )
    return EnvCredentialProvider(account.token_env)


def build_supervisor(
    settings: Settings,
    *,
    store: OffsetStore | None = None,
    processor_factory: Callable[[str], EventProcessor] | None = None,
    transport_factory: Callable[[AccountConfig], FetchTransport] | None = None,
) -> AccountSupervisor:
    """Wire one client per configured account.

    Defaults: the store selected by `settings.store_backend`, an
    `HttpLongPollTransport` against `settings.base_url`, and a
    `ConsoleEventProcessor` per account.
    """

    if store is None:
        store = open_offset_store(settings.store_backend, settings.state_dir)
    if processor_factory is None:
        processor_factory = ConsoleEventProcessor

    supervisor = AccountSupervisor()
    for account in settings.accounts:
        if transport_factory is not None:
            transport = transport_factory(account)
        else:
            transport = HttpLongPollTransport(
                base_url=settings.base_url,
                credentials=credentials_for(account),
                batch_size=settings.batch_size,
            )
        supervisor.add(
            PollingClient(
                account_id=account.account_id,
                transport=transport,
                store=store,
                processor=processor_factory(account.account_id),
                timeout_seconds=settings.long_poll_timeout_seconds,
                retry=settings.retry,
                auto_resume=settings.auto_resume,
            )
        )
    return supervisor
