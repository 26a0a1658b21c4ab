"""Patch operations produced by diffing and consumed by reconcilers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Tuple

PatchKind = Literal["set-field", "add-child", "remove-child", "no-op"]

SET_FIELD: PatchKind = "set-field"
ADD_CHILD: PatchKind = "add-child"
REMOVE_CHILD: PatchKind = "remove-child"
NO_OP: PatchKind = "no-op"


@dataclass(frozen=True)
class PatchOp:
    """
    A single minimal remote mutation.

    Attributes:
        kind: set-field, add-child, remove-child or no-op.
        path: Node names from the root, e.g. ("schema_a", "table_x", "col_1").
        field: Attribute touched by a set-field op ("enabled", "hashed", ...).
        value: New value (set-field), child payload (add-child) or remote id (remove-child).
    """
    kind: PatchKind
    path: Tuple[str, ...]
    field: str = ""
    value: Any = None

    @classmethod
    def set_field(cls, path: Tuple[str, ...], field: str, value: Any) -> "PatchOp":
        return cls(SET_FIELD, tuple(path), field, value)

    def __str__(self) -> str:
        where = ".".join(self.path + ((self.field,) if self.field else ()))
        return f"{self.kind}({where}, {self.value!r})"


@dataclass(frozen=True)
class Drift:
    """An unmanaged remote node that disagrees with its managed ancestor."""
    path: Tuple[str, ...]
    observed: Any
    expected: Any

    def __str__(self) -> str:
        return f"{'.'.join(self.path)}: remote={self.observed!r} inherited={self.expected!r}"
