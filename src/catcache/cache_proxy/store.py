"""Cache-aside resource store backed by a flat directory on local disk."""

from __future__ import annotations

import asyncio
import enum
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .keys import FILE_SUFFIX, ResourceKey
from .upstream import UpstreamClient, UpstreamError


LOGGER = structlog.get_logger("catcache.store")
TRACER = trace.get_tracer("catcache.store")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_hits_total", "Reads served from the cache root"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_misses_total", "Reads that missed the cache root"))
FILL_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_fills_total", "Misses filled from upstream"))
DELETE_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_deletes_total", "Entries removed by clients"))
BYTES_READ_COUNTER = GLOBAL_REGISTRY.register(Counter("catcache_bytes_read_total", "Bytes served"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("catcache_bytes_written_total", "Bytes written to the cache root")
)


class LookupOutcome(str, enum.Enum):
    HIT = "hit"
    FILLED = "filled"
    DELETED = "deleted"
    # both collapse to 404 on the wire
    NOT_FOUND_MISS = "not_found_miss"
    NOT_FOUND_ERROR = "not_found_error"

    @property
    def found(self) -> bool:
        return self in (LookupOutcome.HIT, LookupOutcome.FILLED, LookupOutcome.DELETED)


@dataclass(frozen=True)
class ReadResult:
    outcome: LookupOutcome
    data: Optional[bytes] = None

    @property
    def found(self) -> bool:
        return self.outcome.found


class CacheStore:
    """Owns the mapping between resource keys and files under ``root``.

    Reads fall back to the upstream origin and write the result back. Writes
    land in a hidden temporary file that is renamed over the entry, so a
    concurrent reader sees either the old bytes or the new ones. Concurrent
    misses for one key each fetch from upstream unless ``coalesce_fetches``
    is set, in which case they share a single in-flight fetch.
    """

    def __init__(self, root: Path, upstream: UpstreamClient, *, coalesce_fetches: bool = False) -> None:
        self.root = root
        self.upstream = upstream
        self.coalesce_fetches = coalesce_fetches
        self._inflight: dict[str, asyncio.Task[ReadResult]] = {}

    def path_for(self, key: ResourceKey) -> Path:
        return self.root / key.filename

    async def read(self, key: ResourceKey) -> ReadResult:
        data = await self._load(key)
        if data is not None:
            HIT_COUNTER.inc()
            BYTES_READ_COUNTER.inc(len(data))
            LOGGER.info("cache_hit", key=key.text, bytes=len(data))
            return ReadResult(LookupOutcome.HIT, data)

        MISS_COUNTER.inc()
        LOGGER.info("cache_miss", key=key.text)
        if self.coalesce_fetches:
            result = await self._fill_shared(key)
        else:
            result = await self._fill(key)
        if result.data is not None:
            BYTES_READ_COUNTER.inc(len(result.data))
        return result

    async def write(self, key: ResourceKey, data: bytes) -> None:
        await self._persist(key, data)
        LOGGER.info("cache_write", key=key.text, bytes=len(data))

    async def delete(self, key: ResourceKey) -> LookupOutcome:
        path = self.path_for(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return LookupOutcome.NOT_FOUND_MISS
        except OSError as exc:
            LOGGER.warning("cache_delete_failed", key=key.text, error=str(exc))
            return LookupOutcome.NOT_FOUND_ERROR
        DELETE_COUNTER.inc()
        LOGGER.info("cache_delete", key=key.text)
        return LookupOutcome.DELETED

    def entry_count(self) -> int:
        if not self.root.is_dir():
            return 0
        return sum(1 for item in self.root.iterdir() if item.suffix == FILE_SUFFIX and item.is_file())

    def status(self) -> dict[str, object]:
        return {
            "storage_path": str(self.root),
            "writable": self.root.is_dir() and os.access(self.root, os.W_OK),
            "entries": self.entry_count(),
            "upstream": self.upstream.base_url,
            "coalesce_fetches": self.coalesce_fetches,
        }

    async def _load(self, key: ResourceKey) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning("cache_read_failed", key=key.text, error=str(exc))
            return None

    async def _fill(self, key: ResourceKey) -> ReadResult:
        with TRACER.start_as_current_span("cache_store.fill", attributes={"catcache.key": key.text}) as span:
            try:
                data = await self.upstream.fetch(key)
            except UpstreamError as exc:
                outcome = LookupOutcome.NOT_FOUND_MISS if exc.not_found else LookupOutcome.NOT_FOUND_ERROR
                LOGGER.info(
                    "upstream_fetch_failed",
                    key=key.text,
                    upstream_status=exc.status_code,
                    reason=str(exc),
                )
                span.set_attribute("catcache.outcome", outcome.value)
                return ReadResult(outcome)

            try:
                await self._persist(key, data)
            except OSError as exc:
                LOGGER.warning("cache_fill_write_failed", key=key.text, error=str(exc))
                span.set_attribute("catcache.outcome", LookupOutcome.NOT_FOUND_ERROR.value)
                return ReadResult(LookupOutcome.NOT_FOUND_ERROR)

            FILL_COUNTER.inc()
            LOGGER.info("cache_fill", key=key.text, bytes=len(data))
            span.set_attribute("catcache.outcome", LookupOutcome.FILLED.value)
            span.set_attribute("catcache.bytes", len(data))
            return ReadResult(LookupOutcome.FILLED, data)

    async def _fill_shared(self, key: ResourceKey) -> ReadResult:
        task = self._inflight.get(key.text)
        if task is None:
            task = asyncio.ensure_future(self._fill(key))
            self._inflight[key.text] = task
            task.add_done_callback(lambda done, name=key.text: self._forget(name, done))
        # one waiter going away must not cancel the fetch for the others
        return await asyncio.shield(task)

    def _forget(self, name: str, task: asyncio.Task[ReadResult]) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]

    async def _persist(self, key: ResourceKey, data: bytes) -> None:
        await asyncio.to_thread(self._write_atomic, self.path_for(key), data)
        BYTES_WRITTEN_COUNTER.inc(len(data))

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
