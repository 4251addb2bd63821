"""HTTP long-poll transport built on `httpx`.

Wire contract:
- Request: `GET {base_url}/events?cursor=<cursor>&timeout=<seconds>&limit=<n>`
  with `Authorization: Bearer <token>`. `cursor` is omitted when absent.
- Response: `{"events": [<object>, ...], "next_cursor": "<opaque>" | null}`.

Status mapping:
- 401/403 -> `AUTH`
- 429 -> `RATE_LIMITED` (`Retry-After` seconds forwarded as `retry_after`)
- 5xx -> `SERVER`
- other non-2xx -> `MALFORMED`
- connect/read failures and timeouts -> `NETWORK`
- undecodable or schema-violating bodies -> `MALFORMED`

The token is never logged or included in error messages.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Final

import httpx
from pydantic import BaseModel, SecretStr, ValidationError

from chatpoll.errors import ErrorKind, TransportError
from chatpoll.transport import CredentialProvider, FetchResult

logger = logging.getLogger(__name__)

# Client-side timeout must exceed the server-side long-poll timeout.
_CLIENT_TIMEOUT_MARGIN_SECONDS: Final[float] = 15.0


class _EventsPage(BaseModel):
    events: list[dict[str, Any]]
    next_cursor: str | None = None


@dataclass(slots=True)
class StaticCredentialProvider:
    token: SecretStr

    async def get_token(self) -> str:
        return self.token.get_secret_value()


@dataclass(slots=True)
class EnvCredentialProvider:
    """Read the token from `env_name` on every call so rotations are picked up."""

    env_name: str

    async def get_token(self) -> str:
        token = os.environ.get(self.env_name)
        if not token:
            raise TransportError(
                f"credential env var {self.env_name} is unset or empty",
                kind=ErrorKind.AUTH,
            )
        return token


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        # HTTP-date form is not worth supporting; the policy floor applies.
        return None
    return seconds if seconds >= 0 else None


def error_for_status(response: httpx.Response) -> TransportError | None:
    """Return the classified error for a non-2xx response, else `None`."""

    status = response.status_code
    if 200 <= status < 300:
        return None
    if status in (401, 403):
        kind = ErrorKind.AUTH
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.SERVER
    else:
        kind = ErrorKind.MALFORMED
    return TransportError(
        f"events fetch failed: HTTP {status}",
        kind=kind,
        status_code=status,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
    )


@dataclass(slots=True)
class HttpLongPollTransport:
    """Long-poll `GET /events` client for one account.

    `client` may be injected (tests pass an `httpx.AsyncClient` with a
    `MockTransport`); otherwise one is created lazily and closed by `aclose()`.
    """

    base_url: str
    credentials: CredentialProvider
    batch_size: int = 100
    client: httpx.AsyncClient | None = None

    _owns_client: bool = field(default=False, init=False, repr=False)

    def _http(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient()
            self._owns_client = True
        return self.client

    async def aclose(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
            self._owns_client = False

    async def fetch(self, cursor: str | None, timeout_seconds: int) -> FetchResult:
        token = await self.credentials.get_token()

        params: dict[str, Any] = {"timeout": timeout_seconds, "limit": self.batch_size}
        if cursor is not None:
            params["cursor"] = cursor

        timeout = httpx.Timeout(
            timeout_seconds + _CLIENT_TIMEOUT_MARGIN_SECONDS, connect=10.0
        )
        try:
            response = await self._http().get(
                f"{self.base_url.rstrip('/')}/events",
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(
                "events fetch failed: timeout", kind=ErrorKind.NETWORK
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"events fetch failed: network error ({type(e).__name__})",
                kind=ErrorKind.NETWORK,
            ) from e

        error = error_for_status(response)
        if error is not None:
            raise error

        try:
            page = _EventsPage.model_validate_json(response.content)
        except ValidationError as e:
            raise TransportError(
                "events fetch failed: invalid response body",
                kind=ErrorKind.MALFORMED,
                status_code=response.status_code,
            ) from e

        logger.debug(
            "fetched events=%d cursor_changed=%s",
            len(page.events),
            page.next_cursor is not None and page.next_cursor != cursor,
        )
        return FetchResult(events=page.events, next_cursor=page.next_cursor)
