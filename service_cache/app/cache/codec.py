"""
Type-preserving serialization codec for cached values.

Every stored value is a one-byte kind tag followed by a UTF-8 JSON payload.
Lists, string-keyed maps and records carry ``[tag, payload]`` pairs for
their elements, so the kind of every nested value survives the round trip
without guessing at decode time.
"""

import dataclasses
import functools
import json
import struct
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

import pydantic
from pydantic import BaseModel

from shared.errors import SerializationError
from shared.logging import get_logger

from .models import (
    FLOAT_KINDS,
    INTEGER_BOUNDS,
    INTEGER_KINDS,
    NOT_FOUND,
    TEXT_KINDS,
    Kind,
)

logger = get_logger("cache.codec")

Expected = Union[Kind, type, None]


def qualified_name(cls: type) -> str:
    """Name a record class the way it is written to the wire."""
    return f"{cls.__module__}.{cls.__qualname__}"


def is_record_class(cls: Any) -> bool:
    return isinstance(cls, type) and (issubclass(cls, BaseModel) or dataclasses.is_dataclass(cls))


def infer_kind(value: Any) -> Kind:
    """Pick the natural kind for a Python value."""
    if value is None:
        return Kind.NULL
    if isinstance(value, bool):
        return Kind.BOOL
    if isinstance(value, int):
        return Kind.LONG
    if isinstance(value, float):
        return Kind.DOUBLE
    if isinstance(value, str):
        return Kind.STRING
    # datetime is a subclass of date
    if isinstance(value, datetime):
        return Kind.DATETIME
    if isinstance(value, date):
        return Kind.DATE
    if isinstance(value, (list, tuple)):
        return Kind.LIST
    if isinstance(value, dict):
        return Kind.MAP
    if isinstance(value, BaseModel) or (dataclasses.is_dataclass(value) and not isinstance(value, type)):
        return Kind.RECORD
    raise SerializationError(
        f"Unsupported value type: {type(value).__name__}",
        {"type": type(value).__name__}
    )


def encode(value: Any, kind: Optional[Kind] = None) -> bytes:
    """Encode a value into its tagged byte representation."""
    if kind is None:
        kind = infer_kind(value)
    payload = _to_wire(value, kind)
    try:
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e), {"kind": kind.name}) from e
    return kind.tag + body.encode("utf-8")


def decode(data: Optional[bytes], expected: Expected = None) -> Any:
    """Decode stored bytes, returning NOT_FOUND when absent or incompatible."""
    if not data:
        return NOT_FOUND

    try:
        kind = Kind.from_tag(data[:1].decode("ascii"))
        payload = json.loads(data[1:].decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.debug("Undecodable cache payload", error=str(e))
        return NOT_FOUND

    if not _is_compatible(kind, expected):
        logger.debug(
            "Stored kind does not match requested kind",
            stored=kind.name,
            expected=_describe(expected)
        )
        return NOT_FOUND

    record_cls = expected if is_record_class(expected) else None
    try:
        value = _from_wire(kind, payload, record_cls)
    except (ValueError, TypeError, KeyError, pydantic.ValidationError) as e:
        logger.debug("Corrupt cache payload", kind=kind.name, error=str(e))
        return NOT_FOUND

    if expected is tuple and value is not NOT_FOUND:
        return tuple(value)
    return value


def _to_wire(value: Any, kind: Kind) -> Any:
    if kind is Kind.NULL:
        _require(value is None, value, kind)
        return None

    if kind is Kind.BOOL:
        _require(isinstance(value, bool), value, kind)
        return value

    if kind in INTEGER_KINDS:
        _require(isinstance(value, int) and not isinstance(value, bool), value, kind)
        low, high = INTEGER_BOUNDS[kind]
        if not low <= value <= high:
            raise SerializationError(
                f"Value {value} out of range for {kind.name}",
                {"kind": kind.name, "min": low, "max": high}
            )
        return value

    if kind in FLOAT_KINDS:
        _require(isinstance(value, (int, float)) and not isinstance(value, bool), value, kind)
        if kind is Kind.FLOAT:
            return _to_float32(float(value))
        return float(value)

    if kind is Kind.STRING:
        _require(isinstance(value, str), value, kind)
        return value

    if kind is Kind.CHAR:
        _require(isinstance(value, str) and len(value) == 1, value, kind)
        return value

    if kind is Kind.DATETIME:
        _require(isinstance(value, datetime), value, kind)
        return value.isoformat()

    if kind is Kind.DATE:
        _require(isinstance(value, date) and not isinstance(value, datetime), value, kind)
        return value.isoformat()

    if kind is Kind.LIST:
        _require(isinstance(value, (list, tuple)), value, kind)
        return [_pair(item) for item in value]

    if kind is Kind.MAP:
        _require(isinstance(value, dict), value, kind)
        for name in value:
            if not isinstance(name, str):
                raise SerializationError(
                    f"Map keys must be strings, got {type(name).__name__}",
                    {"kind": kind.name, "type": type(name).__name__}
                )
        return {name: _pair(item) for name, item in value.items()}

    if kind is Kind.RECORD:
        return _record_to_wire(value)

    raise SerializationError(f"Unsupported kind: {kind}")


def _pair(value: Any) -> List[Any]:
    kind = infer_kind(value)
    return [kind.value, _to_wire(value, kind)]


def _record_to_wire(value: Any) -> Dict[str, Any]:
    if isinstance(value, BaseModel):
        names = list(type(value).model_fields)
    elif dataclasses.is_dataclass(value) and not isinstance(value, type):
        names = [field.name for field in dataclasses.fields(value)]
    else:
        raise SerializationError(
            f"Not a record: {type(value).__name__}",
            {"type": type(value).__name__}
        )

    return {
        "type": qualified_name(type(value)),
        "fields": {name: _pair(getattr(value, name)) for name in names},
    }


def _from_wire(kind: Kind, payload: Any, record_cls: Optional[type] = None) -> Any:
    if kind is Kind.NULL:
        return None
    if kind is Kind.BOOL:
        return _check(payload, bool)
    if kind in INTEGER_KINDS:
        return _check(payload, int)
    if kind in FLOAT_KINDS:
        return float(_check(payload, (int, float)))
    if kind in TEXT_KINDS:
        text = _check(payload, str)
        if kind is Kind.CHAR and len(text) != 1:
            raise ValueError("CHAR payload must be a single code point")
        return text
    if kind is Kind.DATETIME:
        return datetime.fromisoformat(_check(payload, str))
    if kind is Kind.DATE:
        return date.fromisoformat(_check(payload, str))
    if kind is Kind.LIST:
        return [_from_pair(item) for item in _check(payload, list)]
    if kind is Kind.MAP:
        return {name: _from_pair(item) for name, item in _check(payload, dict).items()}
    if kind is Kind.RECORD:
        type_name = _check(payload["type"], str)
        fields = {
            name: _from_pair(item)
            for name, item in _check(payload["fields"], dict).items()
        }
        if record_cls is None:
            return fields
        if type_name != qualified_name(record_cls):
            logger.debug(
                "Stored record type does not match requested class",
                stored=type_name,
                expected=qualified_name(record_cls)
            )
            return NOT_FOUND
        if issubclass(record_cls, BaseModel):
            return record_cls.model_validate(fields)
        return _record_adapter(record_cls).validate_python(fields)
    raise ValueError(f"Unknown kind {kind}")


@functools.lru_cache(maxsize=None)
def _record_adapter(record_cls: type) -> pydantic.TypeAdapter:
    # Nested records arrive as plain dicts; the adapter rebuilds them from field annotations
    return pydantic.TypeAdapter(record_cls)


def _from_pair(item: Any) -> Any:
    tag, payload = _check(item, list)
    return _from_wire(Kind.from_tag(tag), payload)


def _is_compatible(stored: Kind, expected: Expected) -> bool:
    if expected is None:
        return True

    if isinstance(expected, Kind):
        if stored is expected:
            return True
        if stored in INTEGER_KINDS and expected in INTEGER_KINDS:
            stored_low, stored_high = INTEGER_BOUNDS[stored]
            low, high = INTEGER_BOUNDS[expected]
            return low <= stored_low and stored_high <= high
        return (stored, expected) in ((Kind.FLOAT, Kind.DOUBLE), (Kind.CHAR, Kind.STRING))

    if expected is type(None):
        return stored is Kind.NULL
    # bool is a subclass of int and datetime of date, test them first
    if expected is bool:
        return stored is Kind.BOOL
    if expected is int:
        return stored in INTEGER_KINDS
    if expected is float:
        return stored in FLOAT_KINDS
    if expected is str:
        return stored in TEXT_KINDS
    if expected is datetime:
        return stored is Kind.DATETIME
    if expected is date:
        return stored is Kind.DATE
    if expected in (list, tuple):
        return stored is Kind.LIST
    if expected is dict:
        return stored in (Kind.MAP, Kind.RECORD)
    if is_record_class(expected):
        return stored is Kind.RECORD
    return False


def _to_float32(value: float) -> float:
    """Round to single precision, keeping the shortest decimal that maps back to it."""
    try:
        packed = struct.pack(">f", value)
    except OverflowError as e:
        raise SerializationError(f"Value {value} out of range for FLOAT", {"kind": "FLOAT"}) from e

    single = struct.unpack(">f", packed)[0]
    for precision in range(1, 10):
        candidate = float(f"{single:.{precision}g}")
        if struct.pack(">f", candidate) == packed:
            return candidate
    return single


def _require(condition: bool, value: Any, kind: Kind) -> None:
    if not condition:
        raise SerializationError(
            f"Cannot encode {type(value).__name__} as {kind.name}",
            {"kind": kind.name, "type": type(value).__name__}
        )


def _check(value: Any, expected_type: Union[type, Tuple[type, ...]]) -> Any:
    if not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool)):
        raise TypeError(f"Expected {expected_type}, got {type(value).__name__}")
    return value


def _describe(expected: Expected) -> str:
    if isinstance(expected, Kind):
        return expected.name
    if isinstance(expected, type):
        return expected.__name__
    return repr(expected)
