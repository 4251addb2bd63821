import httpx
import pytest
from pydantic import SecretStr

from chatpoll.errors import ErrorKind, TransportError
from chatpoll.http_transport import (
    EnvCredentialProvider,
    HttpLongPollTransport,
    StaticCredentialProvider,
)


def _transport(handler) -> HttpLongPollTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpLongPollTransport(
        base_url="http://events.test/api/",
        credentials=StaticCredentialProvider(SecretStr("s3cret")),
        batch_size=25,
        client=client,
    )


@pytest.mark.anyio
async def test_fetch_sends_cursor_timeout_limit_and_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"events": [{"id": 1}, {"id": 2}], "next_cursor": "c2"},
        )

    transport = _transport(handler)
    result = await transport.fetch("c1", 20)

    assert result.events == [{"id": 1}, {"id": 2}]
    assert result.next_cursor == "c2"

    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/api/events"
    assert request.url.params["cursor"] == "c1"
    assert request.url.params["timeout"] == "20"
    assert request.url.params["limit"] == "25"
    assert request.headers["Authorization"] == "Bearer s3cret"


@pytest.mark.anyio
async def test_fetch_without_cursor_omits_param_and_accepts_null_cursor() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"events": [], "next_cursor": None})

    result = await _transport(handler).fetch(None, 5)

    assert "cursor" not in seen[0].url.params
    assert result.events == []
    assert result.next_cursor is None


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (401, ErrorKind.AUTH),
        (403, ErrorKind.AUTH),
        (429, ErrorKind.RATE_LIMITED),
        (500, ErrorKind.SERVER),
        (503, ErrorKind.SERVER),
        (404, ErrorKind.MALFORMED),
    ],
)
async def test_fetch_maps_status_codes(status: int, kind: ErrorKind) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, headers={"Retry-After": "7"}, text="nope")

    with pytest.raises(TransportError) as exc_info:
        await _transport(handler).fetch(None, 5)

    assert exc_info.value.kind is kind
    assert exc_info.value.status_code == status
    assert exc_info.value.retry_after == 7.0
    assert "s3cret" not in str(exc_info.value)


@pytest.mark.anyio
async def test_fetch_maps_connection_errors_to_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as exc_info:
        await _transport(handler).fetch(None, 5)

    assert exc_info.value.kind is ErrorKind.NETWORK
    assert exc_info.value.retryable is True


@pytest.mark.anyio
async def test_fetch_maps_timeouts_to_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransportError) as exc_info:
        await _transport(handler).fetch(None, 5)

    assert exc_info.value.kind is ErrorKind.NETWORK


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [b"not json", b'{"next_cursor": "c1"}', b'{"events": [1, 2]}'],
)
async def test_fetch_maps_invalid_bodies_to_malformed(body: bytes) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body)

    with pytest.raises(TransportError) as exc_info:
        await _transport(handler).fetch(None, 5)

    assert exc_info.value.kind is ErrorKind.MALFORMED


@pytest.mark.anyio
async def test_env_credentials_are_read_per_call(monkeypatch) -> None:
    provider = EnvCredentialProvider("CHATPOLL_TEST_TOKEN")

    monkeypatch.delenv("CHATPOLL_TEST_TOKEN", raising=False)
    with pytest.raises(TransportError) as exc_info:
        await provider.get_token()
    assert exc_info.value.kind is ErrorKind.AUTH

    monkeypatch.setenv("CHATPOLL_TEST_TOKEN", "first")
    assert await provider.get_token() == "first"
    monkeypatch.setenv("CHATPOLL_TEST_TOKEN", "rotated")
    assert await provider.get_token() == "rotated"


@pytest.mark.anyio
async def test_aclose_only_closes_owned_client() -> None:
    injected = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200))
    )
    transport = HttpLongPollTransport(
        base_url="http://events.test",
        credentials=StaticCredentialProvider(SecretStr("t")),
        client=injected,
    )
    await transport.aclose()
    assert injected.is_closed is False
    await injected.aclose()

    owned = HttpLongPollTransport(
        base_url="http://events.test",
        credentials=StaticCredentialProvider(SecretStr("t")),
    )
    client = owned._http()
    await owned.aclose()
    assert client.is_closed is True
    assert owned.client is None
