from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert snapshot payloads into JSON-primitive types.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]
    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def payload_checksum(value: Any) -> str:
    """Return the SHA-256 hex digest of the canonical JSON form of ``value``.

    Two payloads that differ only in key order or whitespace share a checksum,
    so the digest survives pretty-printing of the snapshot file.
    """
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
