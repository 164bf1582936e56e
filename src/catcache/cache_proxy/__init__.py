"""Cache proxy: key validation, the disk-backed store and its HTTP surface."""

from .keys import InvalidResourceKey, ResourceKey, validate_key
from .store import CacheStore, LookupOutcome, ReadResult
from .upstream import UpstreamClient, UpstreamError

__all__ = [
    "CacheStore",
    "InvalidResourceKey",
    "LookupOutcome",
    "ReadResult",
    "ResourceKey",
    "UpstreamClient",
    "UpstreamError",
    "validate_key",
]
