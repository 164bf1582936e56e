from __future__ import annotations

import httpx
import pytest

from catcache.cache_proxy.keys import validate_key
from catcache.cache_proxy.upstream import (
    UPSTREAM_FAILURE_COUNTER,
    UPSTREAM_FETCH_COUNTER,
    UpstreamClient,
    UpstreamError,
    build_http_client,
)


@pytest.mark.asyncio
async def test_fetch_returns_body(origin) -> None:
    origin.images["200"] = b"ok"
    async with httpx.AsyncClient(transport=origin.transport()) as http:
        client = UpstreamClient("https://origin.test/", http)
        before = UPSTREAM_FETCH_COUNTER.value

        data = await client.fetch(validate_key("/200"))

    assert data == b"ok"
    assert client.url_for(validate_key("/200")) == "https://origin.test/200"
    assert UPSTREAM_FETCH_COUNTER.value == before + 1


@pytest.mark.asyncio
async def test_fetch_follows_redirects() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/301":
            return httpx.Response(301, headers={"Location": "https://origin.test/images/301.jpg"})
        return httpx.Response(200, content=b"moved-cat")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        data = await UpstreamClient("https://origin.test", http).fetch(validate_key("/301"))

    assert data == b"moved-cat"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, not_found", [(404, True), (500, False), (403, False)])
async def test_non_success_raises_with_status(status_code: int, not_found: bool) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code))
    failures_before = UPSTREAM_FAILURE_COUNTER.value

    async with httpx.AsyncClient(transport=transport) as http:
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamClient("https://origin.test", http).fetch(validate_key("/999"))

    assert exc_info.value.status_code == status_code
    assert exc_info.value.not_found is not_found
    assert UPSTREAM_FAILURE_COUNTER.value == failures_before + 1


@pytest.mark.asyncio
async def test_transport_error_has_no_status(origin) -> None:
    origin.unreachable = True
    async with httpx.AsyncClient(transport=origin.transport()) as http:
        with pytest.raises(UpstreamError) as exc_info:
            await UpstreamClient("https://origin.test", http).fetch(validate_key("/200"))

    assert exc_info.value.status_code is None
    assert not exc_info.value.not_found
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


def test_build_http_client_applies_timeout() -> None:
    client = build_http_client(2.5)
    assert client.timeout.connect == 2.5
    assert client.timeout.read == 2.5
