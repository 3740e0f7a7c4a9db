from __future__ import annotations

import hashlib
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel


def _to_jcs_primitive(value: Any) -> Any:
    """Convert checkpoint state values into the primitives rfc8785 accepts.

    State documents hold JSON data already, but nodes may return pydantic models,
    enums, or tuples in an update before the reducers normalize them.

    Raises:
        TypeError: If value contains a type that has no JSON representation.
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, BaseModel):
        return _to_jcs_primitive(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(key): _to_jcs_primitive(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jcs_primitive(item) for item in value]
    if isinstance(value, Enum):
        return _to_jcs_primitive(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        "State fields must hold JSON-compatible data."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    return rfc8785.dumps(_to_jcs_primitive(value)).decode("utf-8")


def state_digest(state: Mapping[str, Any]) -> str:
    """Return the sha256 hex digest of a state document's canonical JSON form.

    Two documents with equal content produce equal digests regardless of key order,
    which is what checkpoint integrity checks and replay comparisons rely on.
    """
    return hashlib.sha256(to_canonical_json(state).encode("utf-8")).hexdigest()
