"""CLI entrypoint: poll every configured account and echo events as JSON."""

from __future__ import annotations

import argparse
import logging
from functools import partial
from pathlib import Path
from typing import Final

import anyio
import logfire
from rich import print

from chatpoll.config import Settings, load_settings
from chatpoll.events import ConsoleEventProcessor
from chatpoll.supervisor import build_supervisor

logger = logging.getLogger(__name__)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chatpoll",
        description="Long-poll chat events for every configured account.",
    )
    parser.add_argument(
        "--config",
        default="",
        help="Optional JSON settings file (accounts, retry policy, ...). "
        "Values in the file win over CHATPOLL_* environment variables.",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Events API base URL (GET {base_url}/events).",
    )
    parser.add_argument(
        "--state-dir",
        default=None,
        help="Directory holding persisted cursors (default: ~/.chatpoll).",
    )
    parser.add_argument(
        "--store",
        choices=("file", "sqlite", "memory"),
        default=None,
        help="Offset store backend (default: file).",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=None,
        help="Server-side long-poll timeout seconds (default: 30).",
    )
    parser.add_argument(
        "--auto-resume",
        action="store_true",
        default=None,
        help="Re-enter connecting after a terminal failure instead of parking in error.",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        help="Echo one JSON line per event instead of pretty-printed JSON.",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="INFO",
        help="Root log level (default: INFO).",
    )
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    raw_config = str(args.config).strip()
    config_path = Path(raw_config).expanduser() if raw_config else None
    return load_settings(
        config_path,
        base_url=args.base_url,
        state_dir=args.state_dir,
        store_backend=args.store,
        long_poll_timeout_seconds=args.timeout_seconds,
        auto_resume=args.auto_resume,
    )


def _configure_logging(level: str) -> None:
    logfire.configure(send_to_logfire="if-token-present")
    logging.basicConfig(level=level, handlers=[logfire.LogfireLoggingHandler()])


async def run(settings: Settings, *, compact: bool = False) -> None:
    """Function entrypoint: run until cancelled (e.g. Ctrl-C)."""

    if not settings.accounts:
        raise ValueError("No accounts configured; set `accounts` in the config file")

    supervisor = build_supervisor(
        settings,
        processor_factory=partial(ConsoleEventProcessor, compact=compact),
    )
    print(
        f"[bold]chatpoll[/bold] accounts={len(settings.accounts)} "
        f"store={settings.store_backend} state_dir={settings.state_dir} "
        f"timeout={settings.long_poll_timeout_seconds}s"
    )

    async with supervisor:
        failures = await supervisor.start()
        for account_id, error in failures.items():
            print(f"[red]account {account_id} failed to start:[/red] {error}")
        if failures and len(failures) == len(settings.accounts) and not settings.auto_resume:
            raise SystemExit(1)
        await anyio.sleep_forever()


async def main() -> None:
    """CLI entrypoint."""
    args = _parse_cli_args()
    _configure_logging(args.log_level)
    await run(settings_from_args(args), compact=args.compact)


def cli() -> None:
    """Console-script wrapper around :func:`main`."""
    try:
        anyio.run(main)
    except KeyboardInterrupt:
        logger.info("interrupted; exiting")
