"""
Resource profiles: one YAML document per Fivetran resource type.

A profile describes the endpoints of a resource and its field table, i.e. for
every attribute where it lives in the API JSON (`source`), whether the
response must carry it (`presence`: required | optional | default), whether
configuration must set it (`required`), and how it behaves on create/update
(`computed`, `mutable`, `create`, `required_on_update`, `echo`).

Profiles support `extends: "<parent>"` inheritance; `_defaults.yml` ships the
common identity section and the `field_defaults` merged into every field.
"""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml


class ProfileError(Exception):
    """A profile cannot be found or loaded."""


class ProfileValidationError(ProfileError):
    pass


class TransformError(ProfileError):
    """A field transform is unknown or rejected its input."""


# Transforms applied to observed values, named in a field's `transform` list.

def t_norm_str(value: Any, **_: Any) -> Optional[str]:
    """Trim and collapse whitespace; preserve case. None stays None."""
    if value is None:
        return None
    return re.sub(r"\s+", " ", str(value)).strip()


def t_to_str(value: Any, **_: Any) -> Optional[str]:
    """Stringify scalars (the API returns some offsets as numbers)."""
    return None if value is None else str(value)


_TRUTHY = {"1", "true", "yes", "y", "on"}


def t_to_bool(value: Any, **_: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def t_to_int(value: Any, **_: Any) -> Optional[int]:
    """Integers arrive as numbers or numeric strings; anything else is an error."""
    if value is None or isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        raise TransformError(f"Not an integer: {value!r}") from None


TRANSFORM_REGISTRY = {
    "norm_str": t_norm_str,
    "to_str": t_to_str,
    "to_bool": t_to_bool,
    "to_int": t_to_int,
}

PRESENCE = ("required", "optional", "default")
FIELD_TYPES = ("string", "bool", "int", "list", "map")


@dataclass(frozen=True)
class FieldSpec:
    """One row of a profile's field table."""

    name: str
    source: str
    type: str = "string"
    presence: str = "optional"
    default: Any = None
    required: bool = False
    computed: bool = False
    mutable: bool = True
    create: bool = True
    required_on_update: bool = False
    echo: bool = True
    sort_key: Optional[str] = None
    transform: Tuple[Any, ...] = ()

    @property
    def path(self) -> Tuple[str, ...]:
        return tuple(self.source.split("."))

    @property
    def round_trippable(self) -> bool:
        return self.echo and not self.computed

    def apply_transforms(self, value: Any) -> Any:
        for t in self.transform:
            if isinstance(t, str):
                fn, params = TRANSFORM_REGISTRY.get(t), {}
            elif isinstance(t, dict):
                fn = TRANSFORM_REGISTRY.get(t.get("fn"))
                params = {k: v for k, v in t.items() if k != "fn"}
            else:
                fn, params = None, {}
            if not fn:
                raise TransformError(f"Unknown transform for '{self.name}': {t!r}")
            value = fn(value, **params)
        return value

    def default_value(self) -> Any:
        return copy.deepcopy(self.default)


def _build_field(name: str, spec: Optional[Mapping[str, Any]], defaults: Mapping[str, Any], profile: str) -> FieldSpec:
    raw: Dict[str, Any] = dict(defaults)
    raw.update(spec or {})
    raw.setdefault("source", name)
    unknown = set(raw) - (set(FieldSpec.__dataclass_fields__) - {"name"})
    if unknown:
        raise ProfileValidationError(f"Profile '{profile}' field '{name}' has unknown keys: {sorted(unknown)}")
    if raw.get("presence", "optional") not in PRESENCE:
        raise ProfileValidationError(f"Profile '{profile}' field '{name}': presence must be one of {PRESENCE}")
    if raw.get("type", "string") not in FIELD_TYPES:
        raise ProfileValidationError(f"Profile '{profile}' field '{name}': type must be one of {FIELD_TYPES}")
    raw["transform"] = tuple(raw.get("transform") or ())
    return FieldSpec(name=name, **raw)


@dataclass
class ResourceSpec:
    """Typed wrapper around a validated profile configuration."""

    name: str
    cfg: Dict[str, Any]
    fields: Dict[str, FieldSpec] = field(init=False)

    def __post_init__(self) -> None:
        defaults = self.cfg.get("field_defaults") or {}
        self.fields = {
            fname: _build_field(fname, fspec, defaults, self.name)
            for fname, fspec in (self.cfg.get("fields") or {}).items()
        }

    @property
    def resource(self) -> str:
        return str(self.cfg.get("resource", self.name))

    @property
    def id_field(self) -> str:
        return self.cfg.get("identity", {}).get("id_field", "id")

    def endpoint(self, op: str) -> Optional[str]:
        return (self.cfg.get("endpoint") or {}).get(op)

    def path_for(self, op: str, **values: Any) -> str:
        """Render the `endpoint.<op>` template, e.g. "/connectors/{id}"."""
        template = self.endpoint(op)
        if not template:
            raise ProfileValidationError(f"Profile '{self.name}' has no endpoint.{op}")

        def repl(m: re.Match[str]) -> str:
            v = values.get(m.group(1))
            if v is None or v == "":
                raise ProfileValidationError(
                    f"Profile '{self.name}' endpoint.{op} needs a value for '{m.group(1)}'"
                )
            return str(v)

        return re.sub(r"\{([A-Za-z_][A-Za-z0-9_]*)\}", repl, template)

    def writable_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields.values() if not f.computed]

    def required_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields.values() if f.required and not f.computed]

    def round_trippable_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields.values() if f.round_trippable]

    @property
    def masked_value(self) -> Optional[str]:
        """Placeholder the API returns instead of secret config values."""
        return self.cfg.get("masked_value")


BUNDLED_PROFILES = str(Path(__file__).resolve().parent.parent / "resources" / "profiles")
REQUIRED_SECTIONS = ("resource", "identity", "endpoint", "fields")


def _overlay(parent: Mapping[str, Any], child: Mapping[str, Any]) -> Dict[str, Any]:
    """`child` on top of `parent`; nested mappings merge, anything else replaces."""
    merged = copy.deepcopy(dict(parent))
    for key, value in child.items():
        below = merged.get(key)
        merged[key] = _overlay(below, value) if isinstance(value, dict) and isinstance(below, dict) else copy.deepcopy(value)
    return merged


class ProfileLoader:
    """
    Find `<name>.yml` on the search path (user directories first, bundled
    profiles last), resolve `extends` chains and validate the result.
    Loaded profiles are cached per loader.
    """

    def __init__(self, search_paths: Optional[List[str]] = None) -> None:
        self.search_paths = [p for p in (search_paths or []) if p != BUNDLED_PROFILES] + [BUNDLED_PROFILES]
        self._cache: Dict[str, ResourceSpec] = {}

    def _read(self, name: str) -> Dict[str, Any]:
        path = next(
            (os.path.join(d, f"{name}.yml") for d in self.search_paths if os.path.isfile(os.path.join(d, f"{name}.yml"))),
            None,
        )
        if path is None:
            raise ProfileError(f"No profile named '{name}' in {self.search_paths}")
        with open(path, "r", encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
        if doc is None:
            return {}
        if not isinstance(doc, dict):
            raise ProfileValidationError(f"Profile file {path} must contain a mapping")
        return doc

    def _resolve(self, name: str, chain: Tuple[str, ...] = ()) -> Dict[str, Any]:
        if name in chain:
            raise ProfileValidationError("Profile inheritance cycle: " + " -> ".join(chain + (name,)))
        doc = self._read(name)
        parent = doc.get("extends")
        return _overlay(self._resolve(parent, chain + (name,)), doc) if parent else doc

    def load(self, name: str) -> ResourceSpec:
        if name not in self._cache:
            data = self._resolve(name)
            absent = [s for s in REQUIRED_SECTIONS if s not in data]
            if absent:
                raise ProfileValidationError(f"Profile '{name}' lacks section(s): {', '.join(absent)}")
            spec = ResourceSpec(name=name, cfg=data)
            if spec.id_field not in spec.fields:
                raise ProfileValidationError(f"Profile '{name}' does not declare its id field '{spec.id_field}'")
            self._cache[name] = spec
        return self._cache[name]
