"""Resource key extraction and validation.

A key is accepted when the path text is a complete numeric literal under the
same rules a JavaScript ``Number("...")`` conversion uses, since clients were
written against a server that rejected keys with ``isNaN``. Trailing garbage
(``200abc``) is therefore rejected, while ``1e3``, ``.5``, ``0x1F`` and
``Infinity`` are accepted and kept verbatim.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass


FILE_SUFFIX = ".jpg"

_DECIMAL = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)
_INFINITY = re.compile(r"[+-]?Infinity")
_RADIX = {
    "0x": (re.compile(r"0[xX][0-9a-fA-F]+", re.ASCII), 16),
    "0o": (re.compile(r"0[oO][0-7]+", re.ASCII), 8),
    "0b": (re.compile(r"0[bB][01]+", re.ASCII), 2),
}


class InvalidResourceKey(ValueError):
    """Raised when a request path does not carry a usable resource key."""

    def __init__(self, raw: str) -> None:
        super().__init__(f"invalid resource key: {raw!r}")
        self.raw = raw


@dataclass(frozen=True)
class ResourceKey:
    text: str
    value: float

    @property
    def filename(self) -> str:
        return f"{self.text}{FILE_SUFFIX}"

    def __str__(self) -> str:
        return self.text


def parse_numeric(text: str) -> float | None:
    """Return the numeric value of ``text`` or ``None`` if it is not a number."""
    if _DECIMAL.fullmatch(text):
        return float(text)
    if _INFINITY.fullmatch(text):
        return -math.inf if text.startswith("-") else math.inf
    pattern, base = _RADIX.get(text[:2].lower(), (None, 0))
    if pattern is not None and pattern.fullmatch(text):
        try:
            return float(int(text[2:], base))
        except OverflowError:
            # beyond the largest double Number() yields Infinity
            return math.inf
    return None


def key_from_path(path: str) -> str:
    """Strip the first leading slash and surrounding whitespace from a request path."""
    if path.startswith("/"):
        path = path[1:]
    return path.strip()


def validate_key(path: str) -> ResourceKey:
    candidate = key_from_path(path)
    if not candidate:
        raise InvalidResourceKey(path)
    value = parse_numeric(candidate)
    if value is None:
        raise InvalidResourceKey(path)
    return ResourceKey(text=candidate, value=value)
