from __future__ import annotations

from pathlib import Path
from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from catcache.cache_proxy.app import create_app
from catcache.common.settings import CacheProxySettings


ORIGIN_URL = "https://origin.test"


class FakeOrigin:
    """Upstream stand-in served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.images: dict[str, bytes] = {}
        self.requests: list[str] = []
        self.unreachable = False
        self.status_override: Optional[int] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if self.unreachable:
            raise httpx.ConnectError("origin unreachable", request=request)
        if self.status_override is not None:
            return httpx.Response(self.status_override, text="origin error")
        image = self.images.get(request.url.path.lstrip("/"))
        if image is None:
            return httpx.Response(404, text="Not Found")
        return httpx.Response(200, content=image, headers={"content-type": "image/jpeg"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def cache_root(tmp_path: Path) -> Path:
    root = tmp_path / "cache"
    root.mkdir()
    return root


@pytest.fixture
def settings(cache_root: Path) -> CacheProxySettings:
    return CacheProxySettings(storage_path=cache_root, upstream_url=ORIGIN_URL, otel_sampler_ratio=1.0)


@pytest.fixture
def client(settings: CacheProxySettings, origin: FakeOrigin) -> TestClient:
    app = create_app(settings, transport=origin.transport())
    with TestClient(app) as test_client:
        yield test_client
