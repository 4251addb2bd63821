"""`python -m chatpoll` entrypoint."""

from __future__ import annotations

import anyio

from chatpoll.cli import main

if __name__ == "__main__":
    anyio.run(main)
