"""
Data models for the cache core.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Kind(str, Enum):
    """Kinds of values the codec can store, mapped to their one-byte wire tag."""
    NULL = "N"
    BOOL = "Z"
    BYTE = "B"
    CHAR = "C"
    SHORT = "S"
    INT = "I"
    LONG = "J"
    FLOAT = "F"
    DOUBLE = "D"
    STRING = "T"
    DATE = "d"
    DATETIME = "t"
    LIST = "L"
    MAP = "M"
    RECORD = "R"

    @property
    def tag(self) -> bytes:
        return self.value.encode("ascii")

    @classmethod
    def from_tag(cls, tag: str) -> "Kind":
        return cls(tag)


INTEGER_KINDS = frozenset({Kind.BYTE, Kind.SHORT, Kind.INT, Kind.LONG})
FLOAT_KINDS = frozenset({Kind.FLOAT, Kind.DOUBLE})
TEXT_KINDS = frozenset({Kind.CHAR, Kind.STRING})

# Inclusive bounds for the fixed-width integer kinds
INTEGER_BOUNDS = {
    Kind.BYTE: (0, 0xFF),
    Kind.SHORT: (-(1 << 15), (1 << 15) - 1),
    Kind.INT: (-(1 << 31), (1 << 31) - 1),
    Kind.LONG: (-(1 << 63), (1 << 63) - 1),
}


class _NotFound:
    """Marker for a value that is absent or not of the requested kind."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NOT_FOUND"


NOT_FOUND = _NotFound()


@dataclass(frozen=True)
class CacheEntry:
    """Encoded value together with its optional expiration."""
    payload: bytes
    expires_at_ms: Optional[int] = None

    HEADER_SEPARATOR = b"\n"

    @classmethod
    def create(cls, payload: bytes, ttl_seconds: Optional[float] = None) -> "CacheEntry":
        expires_at_ms = None
        if ttl_seconds is not None:
            expires_at_ms = int((time.time() + ttl_seconds) * 1000)
        return cls(payload=payload, expires_at_ms=expires_at_ms)

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at_ms is None:
            return False
        now_ms = int((time.time() if now is None else now) * 1000)
        return self.expires_at_ms <= now_ms

    def to_bytes(self) -> bytes:
        header = b"" if self.expires_at_ms is None else str(self.expires_at_ms).encode("ascii")
        return header + self.HEADER_SEPARATOR + self.payload

    @classmethod
    def from_bytes(cls, data: bytes) -> Optional["CacheEntry"]:
        """Parse stored bytes, returning None when the header is malformed."""
        header, separator, payload = data.partition(cls.HEADER_SEPARATOR)
        if not separator:
            return None
        if not header:
            return cls(payload=payload)
        try:
            return cls(payload=payload, expires_at_ms=int(header))
        except ValueError:
            return None
