"""Client for the origin that cache misses are filled from."""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .keys import ResourceKey


LOGGER = structlog.get_logger("catcache.upstream")

UPSTREAM_FETCH_COUNTER = GLOBAL_REGISTRY.register(
    Counter("catcache_upstream_fetches_total", "Upstream fetches attempted on cache misses")
)
UPSTREAM_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("catcache_upstream_failures_total", "Upstream fetches that failed or returned non-success")
)


class UpstreamError(Exception):
    """The origin could not supply a resource.

    ``status_code`` is set when the origin answered with a non-success status
    and is ``None`` for transport failures.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == httpx.codes.NOT_FOUND


class UpstreamClient:
    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    def url_for(self, key: ResourceKey) -> str:
        return f"{self.base_url}/{key.text}"

    async def fetch(self, key: ResourceKey) -> bytes:
        url = self.url_for(key)
        UPSTREAM_FETCH_COUNTER.inc()
        try:
            response = await self._http.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            UPSTREAM_FAILURE_COUNTER.inc()
            raise UpstreamError(f"upstream request failed: {exc.__class__.__name__}") from exc
        if not response.is_success:
            UPSTREAM_FAILURE_COUNTER.inc()
            raise UpstreamError(
                f"upstream answered {response.status_code}",
                status_code=response.status_code,
            )
        LOGGER.debug("upstream_fetch", url=url, bytes=len(response.content))
        return response.content


def build_http_client(
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout), limits=limits, transport=transport)
