"""
Conversion between Python values and Firestore REST ``Value`` JSON.

Also defines the write sentinels understood by ``FirestoreClient``:
``SERVER_TIMESTAMP``, ``DELETE_FIELD`` and ``Increment``.
"""

from __future__ import annotations

import datetime
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

_SIMPLE_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")
_FRACTION = re.compile(r"\.(\d+)")


class _Sentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")


@dataclass(frozen=True)
class Increment:
    amount: int | float


@dataclass(frozen=True)
class DocumentReference:
    path: str


FieldPathLike = str | tuple[str, ...]


def field_path_segments(path: FieldPathLike) -> tuple[str, ...]:
    """Split a dotted path into segments; tuples are taken as already split."""
    if isinstance(path, tuple):
        return path
    return tuple(path.split("."))


def quote_segment(segment: str) -> str:
    if _SIMPLE_SEGMENT.match(segment):
        return segment
    escaped = segment.replace("\\", "\\\\").replace("`", "\\`")
    return f"`{escaped}`"


def encode_field_path(path: FieldPathLike) -> str:
    return ".".join(quote_segment(segment) for segment in field_path_segments(path))


def to_rfc3339(value: datetime.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    value = value.astimezone(datetime.timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_rfc3339(text: str) -> datetime.datetime:
    normalized = text.strip().replace("Z", "+00:00")
    # Firestore emits nanoseconds; fromisoformat only takes microseconds.
    normalized = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1)
    parsed = datetime.datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def encode_value(value: Any, *, documents_root: str = "") -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        if math.isnan(value):
            return {"doubleValue": "NaN"}
        if math.isinf(value):
            return {"doubleValue": "Infinity" if value > 0 else "-Infinity"}
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime.datetime):
        return {"timestampValue": to_rfc3339(value)}
    if isinstance(value, DocumentReference):
        prefix = f"{documents_root}/" if documents_root else ""
        return {"referenceValue": f"{prefix}{value.path}"}
    if isinstance(value, dict):
        return {"mapValue": {"fields": encode_fields(value, documents_root=documents_root)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v, documents_root=documents_root) for v in value]}}
    raise TypeError(f"Unsupported Firestore value type: {type(value).__name__}")


def encode_fields(data: dict[str, Any], *, documents_root: str = "") -> dict[str, Any]:
    return {str(key): encode_value(value, documents_root=documents_root) for key, value in data.items()}


def decode_value(raw: dict[str, Any], *, documents_root: str = "") -> Any:
    if "nullValue" in raw:
        return None
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "doubleValue" in raw:
        return float(raw["doubleValue"])
    if "stringValue" in raw:
        return raw["stringValue"]
    if "timestampValue" in raw:
        return parse_rfc3339(raw["timestampValue"])
    if "referenceValue" in raw:
        ref = str(raw["referenceValue"])
        prefix = f"{documents_root}/" if documents_root else ""
        if prefix and ref.startswith(prefix):
            ref = ref[len(prefix):]
        return DocumentReference(ref)
    if "mapValue" in raw:
        return decode_fields(raw["mapValue"].get("fields") or {}, documents_root=documents_root)
    if "arrayValue" in raw:
        return [decode_value(v, documents_root=documents_root) for v in raw["arrayValue"].get("values") or []]
    if "bytesValue" in raw:
        return raw["bytesValue"]
    if "geoPointValue" in raw:
        return dict(raw["geoPointValue"])
    raise ValueError(f"Unknown Firestore value: {sorted(raw)}")


def decode_fields(fields: dict[str, Any], *, documents_root: str = "") -> dict[str, Any]:
    return {key: decode_value(value, documents_root=documents_root) for key, value in fields.items()}


def get_path(data: dict[str, Any], path: FieldPathLike) -> Any:
    current: Any = data
    for segment in field_path_segments(path):
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def iter_leaf_paths(data: dict[str, Any], prefix: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], Any]]:
    """Yield ``(segments, value)`` for every leaf; empty maps count as leaves."""
    for key, value in data.items():
        segments = prefix + (str(key),)
        if isinstance(value, dict) and value:
            yield from iter_leaf_paths(value, segments)
        else:
            yield segments, value


def nest_updates(updates: Iterable[tuple[tuple[str, ...], Any]]) -> dict[str, Any]:
    """Build a nested dict from ``(segments, value)`` pairs."""
    nested: dict[str, Any] = {}
    for segments, value in updates:
        target = nested
        for segment in segments[:-1]:
            child = target.get(segment)
            if not isinstance(child, dict):
                child = {}
                target[segment] = child
            target = child
        target[segments[-1]] = value
    return nested
