"""
State mapper: API JSON <-> flat attribute state, driven by a profile's field table.

- to_observed(raw): every profile field present; absent and null both become
  None (empty strings are kept); `presence: default` fields take their
  default; `presence: required` fields missing raise MappingError.
- to_remote_payload(desired, operation): nested request body built from the
  `source` paths of the writable fields the operation accepts.
- equivalent(field, desired, observed): the comparison reconcilers diff with.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import MappingError
from .profiles import FieldSpec, ResourceSpec
from .schema_tree import tree_from_api, tree_from_blocks, tree_to_api, tree_to_blocks

_MISSING = object()


def _lookup(raw: Mapping[str, Any], path: Tuple[str, ...]) -> Any:
    cursor: Any = raw
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return _MISSING
        cursor = cursor[part]
    return cursor


def _assign(payload: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    cursor = payload
    for part in path[:-1]:
        nxt = cursor.get(part)
        if not isinstance(nxt, dict):
            nxt = cursor[part] = {}
        cursor = nxt
    leaf = path[-1]
    if isinstance(value, dict) and isinstance(cursor.get(leaf), dict):
        cursor[leaf].update(copy.deepcopy(value))
    else:
        cursor[leaf] = copy.deepcopy(value)


def _sort_items(items: List[Any], key: str) -> List[Any]:
    return sorted(items, key=lambda i: str(i.get(key)) if isinstance(i, Mapping) else str(i))


class StateMapper:
    """Field-table driven conversion for one resource profile."""

    def __init__(self, spec: ResourceSpec) -> None:
        self.spec = spec
        # map field -> sub-keys owned by dedicated attributes (config.schema, ...)
        self._claimed: Dict[str, set] = {}
        for f in spec.fields.values():
            if f.type != "map":
                continue
            prefix = f.path
            self._claimed[f.name] = {
                other.path[len(prefix)]
                for other in spec.fields.values()
                if other is not f and len(other.path) == len(prefix) + 1 and other.path[: len(prefix)] == prefix
            }

    # ----- read side -----
    def to_observed(self, raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        raw = raw or {}
        out: Dict[str, Any] = {}
        for f in self.spec.fields.values():
            value = _lookup(raw, f.path)
            if value is _MISSING or value is None:
                if f.presence == "required":
                    raise MappingError(self.spec.resource, f.name, f.source)
                out[f.name] = f.default_value() if f.presence == "default" else None
                continue
            out[f.name] = self.normalize(f, self._read_value(f, value))
        return out

    def _read_value(self, f: FieldSpec, value: Any) -> Any:
        value = f.apply_transforms(copy.deepcopy(value))
        if f.type == "map" and isinstance(value, dict):
            for key in self._claimed.get(f.name, ()):
                value.pop(key, None)
        return value

    def normalize(self, f: FieldSpec, value: Any) -> Any:
        """Canonical form for comparison: transforms applied, unordered lists sorted."""
        if isinstance(value, (list, tuple)) and f.sort_key:
            return _sort_items(list(value), f.sort_key)
        return value

    # ----- write side -----
    def accepts(self, f: FieldSpec, operation: Optional[str]) -> bool:
        if f.computed:
            return False
        if operation == "create":
            return f.create
        if operation == "update":
            return f.mutable
        return True

    def to_remote_payload(self, desired: Mapping[str, Any], operation: Optional[str] = None) -> Dict[str, Any]:
        """
        Build a request body from desired attributes.

        `operation` is "create", "update" or None (every writable field).
        Unknown attributes and None values are not sent.
        """
        payload: Dict[str, Any] = {}
        for f in self.spec.fields.values():
            if f.name not in desired or desired[f.name] is None:
                continue
            if not self.accepts(f, operation):
                continue
            _assign(payload, f.path, desired[f.name])
        return payload

    # ----- comparison -----
    def equivalent(self, f: FieldSpec, desired: Any, observed: Any) -> bool:
        """
        True when `desired` is already satisfied by `observed`.

        Maps compare on the desired keys only; a masked secret in the
        response counts as equal.
        """
        if desired is None or observed is None:
            return desired is None and observed is None
        desired = self.normalize(f, f.apply_transforms(copy.deepcopy(desired)))
        if f.type == "map" and isinstance(desired, Mapping) and isinstance(observed, Mapping):
            masked = self.spec.masked_value
            return all(
                k in observed and (observed[k] == v or (masked is not None and observed[k] == masked))
                for k, v in desired.items()
            )
        return desired == observed


class SchemaConfigMapper(StateMapper):
    """
    Mapper for connector schema config: the API `schemas` dict-of-dicts
    becomes `schema` attribute blocks sorted by name.
    """

    def to_observed(self, raw: Optional[Mapping[str, Any]], connector_id: Optional[str] = None) -> Dict[str, Any]:
        raw = dict(raw or {})
        schemas = raw.pop("schemas", None)
        out = super().to_observed(raw)
        out["schema"] = tree_to_blocks(tree_from_api(schemas))
        if connector_id is not None:
            out[self.spec.id_field] = connector_id
        return out

    def to_remote_payload(self, desired: Mapping[str, Any], operation: Optional[str] = None) -> Dict[str, Any]:
        blocks = desired.get("schema")
        payload = super().to_remote_payload({k: v for k, v in desired.items() if k != "schema"}, operation)
        if blocks is not None and self.accepts(self.spec.fields["schema"], operation):
            payload["schemas"] = tree_to_api(tree_from_blocks(blocks))
        return payload
