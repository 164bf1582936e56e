"""Read-through cache proxy serving status-code images from local disk."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from opentelemetry import trace
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..common.http_security import require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge, Histogram
from ..common.observability import bind_request_context, configure_observability, instrument_fastapi_app
from ..common.settings import CacheProxySettings
from .keys import InvalidResourceKey, ResourceKey, validate_key
from .store import CacheStore, LookupOutcome
from .upstream import UpstreamClient, build_http_client


LOGGER = structlog.get_logger("catcache.cache_proxy")
TRACER = trace.get_tracer("catcache.cache_proxy")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_requests_total", "Total cache proxy requests"))
SERVER_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("catcache_internal_errors_total", "Requests that failed with an unhandled error")
)
TOTAL_ENTRIES_GAUGE = GLOBAL_REGISTRY.register(Gauge("catcache_entries", "Number of files in the cache root"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "catcache_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
        description="Cache proxy request latency",
    )
)

IMAGE_MEDIA_TYPE = "image/jpeg"
BAD_REQUEST_MESSAGE = "Bad request: put an HTTP status code in the URL, e.g. /200"
SUPPORTED_METHODS = ("GET", "PUT", "DELETE")


class CacheProxyState:
    def __init__(self, settings: CacheProxySettings, store: CacheStore) -> None:
        self.settings = settings
        self.store = store


def build_store(settings: CacheProxySettings, http_client: httpx.AsyncClient) -> CacheStore:
    upstream = UpstreamClient(settings.upstream_url, http_client)
    return CacheStore(settings.storage_path, upstream, coalesce_fetches=settings.coalesce_fetches)


def get_state(request: Request) -> CacheProxyState:
    return request.app.state.cache_state  # type: ignore[attr-defined]


def require_resource_key(request: Request) -> ResourceKey:
    # the full path, not the route parameter: only the first slash is stripped
    try:
        return validate_key(request.url.path)
    except InvalidResourceKey as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=BAD_REQUEST_MESSAGE) from exc


def _not_found() -> PlainTextResponse:
    return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)


def _method_not_allowed() -> PlainTextResponse:
    return PlainTextResponse(
        "Method Not Allowed",
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        headers={"Allow": ", ".join(SUPPORTED_METHODS)},
    )


def create_app(
    settings: Optional[CacheProxySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the proxy application.

    ``transport`` replaces the network layer of the upstream client and is
    how tests stand in for the origin.
    """
    settings = settings or CacheProxySettings()
    configure_observability(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client = build_http_client(settings.upstream_timeout_seconds, transport)
        store = build_store(settings, http_client)
        app.state.cache_state = CacheProxyState(settings, store)
        TOTAL_ENTRIES_GAUGE.set_supplier(store.entry_count)
        LOGGER.info(
            "cache_proxy_started",
            storage_path=str(settings.storage_path),
            upstream=settings.upstream_url,
        )
        try:
            yield
        finally:
            await http_client.aclose()

    # no generated docs: every non-numeric path must answer 400
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)

    @app.exception_handler(StarletteHTTPException)
    async def plain_text_http_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            # the router rejects the verb first; a bad key still wins
            try:
                validate_key(request.url.path)
            except InvalidResourceKey:
                return PlainTextResponse(BAD_REQUEST_MESSAGE, status_code=status.HTTP_400_BAD_REQUEST)
            return _method_not_allowed()
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)

    @app.middleware("http")
    async def record_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        bind_request_context(request.method, request.url.path)
        REQUEST_COUNTER.inc()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            SERVER_ERROR_COUNTER.inc()
            LOGGER.exception("http_request_error", duration_ms=round(duration * 1000, 2))
            return PlainTextResponse("Internal Server Error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)

        log_kwargs = {"status": response.status_code, "duration_ms": round(duration * 1000, 2)}
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    if settings.ops_endpoints:
        _register_ops_routes(app)

    @app.api_route("/{resource_path:path}", methods=list(SUPPORTED_METHODS))
    async def resource(
        resource_path: str,
        request: Request,
        key: ResourceKey = Depends(require_resource_key),
        state: CacheProxyState = Depends(get_state),
    ) -> Response:
        if request.method == "GET":
            return await _get_resource(state, key)
        if request.method == "PUT":
            return await _put_resource(state, key, request)
        if request.method == "DELETE":
            return await _delete_resource(state, key)
        return _method_not_allowed()

    return app


async def _get_resource(state: CacheProxyState, key: ResourceKey) -> Response:
    with TRACER.start_as_current_span("cache_proxy.get", attributes={"catcache.key": key.text}) as span:
        result = await state.store.read(key)
        span.set_attribute("catcache.outcome", result.outcome.value)
    if not result.found:
        return _not_found()
    return Response(content=result.data, media_type=IMAGE_MEDIA_TYPE)


async def _put_resource(state: CacheProxyState, key: ResourceKey, request: Request) -> Response:
    with TRACER.start_as_current_span("cache_proxy.put", attributes={"catcache.key": key.text}) as span:
        body = await request.body()
        await state.store.write(key, body)
        span.set_attribute("catcache.bytes_written", len(body))
    return PlainTextResponse("Created", status_code=status.HTTP_201_CREATED)


async def _delete_resource(state: CacheProxyState, key: ResourceKey) -> Response:
    with TRACER.start_as_current_span("cache_proxy.delete", attributes={"catcache.key": key.text}) as span:
        outcome = await state.store.delete(key)
        span.set_attribute("catcache.outcome", outcome.value)
    if outcome is LookupOutcome.DELETED:
        return PlainTextResponse("Deleted", status_code=status.HTTP_200_OK)
    return _not_found()


def _register_ops_routes(app: FastAPI) -> None:
    @app.get("/-/healthz")
    async def health_check(state: CacheProxyState = Depends(get_state)) -> JSONResponse:
        writable = bool(state.store.status()["writable"])
        payload = {"status": "healthy" if writable else "unhealthy", "checks": {"writable": writable}}
        code = status.HTTP_200_OK if writable else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(payload, status_code=code)

    @app.get("/-/status")
    async def status_probe(state: CacheProxyState = Depends(get_state)) -> JSONResponse:
        return JSONResponse(state.store.status())

    @app.get("/-/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: CacheProxyState = Depends(get_state)) -> PlainTextResponse:
        token = state.settings.metrics_token.get_secret_value() if state.settings.metrics_token else None
        require_metrics_access(request, token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())
