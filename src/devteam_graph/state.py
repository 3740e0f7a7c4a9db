"""State store: named fields, each owning the merge function for incoming partial updates.

Nodes never mutate a document. They return a partial update, and the engine folds it
into a new document through :meth:`StateStore.apply_update`. Two merge disciplines exist:

* replace: last non-null write wins (``None`` keeps the current value);
* accumulate: append, key-wise upsert, mapping merge, or usage-ledger addition.
  Accumulate fields never shrink through an update; only :meth:`StateStore.reset` does that.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel

from .errors import UnknownFieldError
from .models import UsageDelta, UsageLedger

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


def to_state_value(value: Any) -> Any:
    """Normalize an incoming value into the JSON-compatible form documents hold."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {key: to_state_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_state_value(item) for item in value]
    return value


def _as_items(incoming: Any) -> list[Any]:
    if isinstance(incoming, (list, tuple)):
        return list(incoming)
    return [incoming]


def replace(current: Any, incoming: Any) -> Any:
    return current if incoming is None else incoming


def append(current: list[Any], incoming: Any) -> list[Any]:
    if incoming is None:
        return current
    return [*current, *_as_items(incoming)]


def merge_mapping(current: dict[str, Any], incoming: Mapping[str, Any] | None) -> dict[str, Any]:
    if incoming is None:
        return current
    return {**current, **incoming}


def upsert_by(key: str) -> Reducer:
    """Build a reducer that replaces entries sharing ``key`` and appends new ones.

    Entries keep the position of their first appearance, so replacing one entry
    never reorders the others.
    """

    def _upsert(current: list[dict[str, Any]], incoming: Any) -> list[dict[str, Any]]:
        if incoming is None:
            return current
        merged: dict[Any, dict[str, Any]] = {entry[key]: entry for entry in current}
        for entry in _as_items(incoming):
            if key not in entry:
                raise ValueError(f"upsert entry is missing its identity key {key!r}: {entry!r}")
            merged[entry[key]] = entry
        return list(merged.values())

    _upsert.__name__ = f"upsert_by_{key}"
    return _upsert


def merge_usage(current: dict[str, Any], incoming: Mapping[str, Any] | None) -> dict[str, Any]:
    """Add one usage delta to the ledger.

    A delta whose call records are all present in the ledger already was applied
    before and is ignored, so the same delta can never be counted twice.
    """
    if incoming is None:
        return current
    ledger = UsageLedger.model_validate(current)
    delta = UsageDelta.model_validate(incoming)
    known = {record.call_id for record in ledger.calls}
    fresh = [record for record in delta.new_call_records if record.call_id not in known]
    if delta.new_call_records and not fresh:
        logger.debug("Usage delta for calls %s already recorded", [r.call_id for r in delta.new_call_records])
        return current
    ledger.calls.extend(fresh)
    ledger.total_input_units += delta.added_input_units
    ledger.total_output_units += delta.added_output_units
    ledger.estimated_cost += delta.added_cost
    return ledger.model_dump(mode="json")


@dataclass(frozen=True)
class FieldSpec:
    """Declaration of one state field: its default initializer and merge function."""

    name: str
    default: Callable[[], Any]
    reducer: Reducer = replace
    accumulate: bool = False


class StateStore:
    """Applies partial updates to state documents through per-field reducers."""

    def __init__(self, fields: Iterable[FieldSpec]) -> None:
        self._fields: dict[str, FieldSpec] = {}
        for spec in fields:
            if spec.name in self._fields:
                raise ValueError(f"Duplicate state field declaration: {spec.name}")
            self._fields[spec.name] = spec

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self._fields)

    def spec_for(self, name: str) -> FieldSpec:
        try:
            return self._fields[name]
        except KeyError:
            raise UnknownFieldError(
                f"Unknown state field {name!r}; declared fields: {', '.join(self._fields)}"
            ) from None

    def initial(self) -> dict[str, Any]:
        """Return a fresh document with every field at its default."""
        return {name: to_state_value(spec.default()) for name, spec in self._fields.items()}

    def apply(self, document: Mapping[str, Any], name: str, incoming: Any) -> dict[str, Any]:
        """Return a new document with ``incoming`` merged into field ``name``."""
        spec = self.spec_for(name)
        current = copy.deepcopy(document[name]) if name in document else to_state_value(spec.default())
        updated = dict(document)
        updated[name] = spec.reducer(current, to_state_value(incoming))
        return updated

    def apply_update(self, document: Mapping[str, Any], update: Mapping[str, Any] | None) -> dict[str, Any]:
        """Fold a partial update into a new document, one reducer call per named field.

        Raises:
            UnknownFieldError: If the update names a field the schema does not declare.
                No field is applied in that case.
        """
        if not update:
            return dict(document)
        unknown = sorted(set(update) - set(self._fields))
        if unknown:
            raise UnknownFieldError(
                f"Update names undeclared state field(s) {', '.join(unknown)}; "
                f"declared fields: {', '.join(self._fields)}"
            )
        result = dict(document)
        for name, incoming in update.items():
            result = self.apply(result, name, incoming)
        return result

    def reset(self, document: Mapping[str, Any], name: str) -> dict[str, Any]:
        """Return a new document with ``name`` back at its default, bypassing its reducer."""
        spec = self.spec_for(name)
        updated = dict(document)
        updated[name] = to_state_value(spec.default())
        return updated

    @staticmethod
    def snapshot(document: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return a deep-copied, read-only view handed to nodes and routers."""
        return MappingProxyType(copy.deepcopy(dict(document)))
