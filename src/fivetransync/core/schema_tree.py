"""
Connector schema trees (schema -> table -> column) and their conversions.

Three shapes of the same data meet here:

- the API `schemas` object, dicts keyed by name:
    {"s": {"enabled": true, "tables": {"t": {"enabled": true, "columns": {"c": {...}}}}}}
- the attribute blocks used in desired/observed state, lists sorted by name:
    [{"name": "s", "enabled": true, "table": [{"name": "t", "column": [...]}]}]
- SchemaTreeNode, the form the differ works on.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .patches import SET_FIELD, PatchOp

# Per-level settings carried next to `enabled`.
LEVELS: Tuple[Tuple[str, str, Tuple[str, ...]], ...] = (
    # (block key, API children key, attrs)
    ("schema", "schemas", ()),
    ("table", "tables", ("sync_mode",)),
    ("column", "columns", ("hashed",)),
)


@dataclass
class SchemaTreeNode:
    """
    One schema, table or column.

    `enabled` is None when the node carries no explicit decision; its
    effective inclusion is then inherited from the nearest ancestor.
    """
    name: str
    enabled: Optional[bool] = None
    attrs: Dict[str, Any] = field(default_factory=dict)
    children: Dict[str, "SchemaTreeNode"] = field(default_factory=dict)

    def find(self, path: Sequence[str]) -> Optional["SchemaTreeNode"]:
        node: Optional[SchemaTreeNode] = self
        for name in path:
            if node is None:
                return None
            node = node.children.get(name)
        return node


def _as_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# ----- API <-> tree -----

def tree_from_api(schemas: Optional[Mapping[str, Any]], depth: int = 0, name: str = "") -> SchemaTreeNode:
    """Build a tree from the API `schemas` object."""
    root = SchemaTreeNode(name=name)
    if depth >= len(LEVELS):
        return root
    _, _, attrs = LEVELS[depth]
    next_key = LEVELS[depth + 1][1] if depth + 1 < len(LEVELS) else None
    for child_name, body in (schemas or {}).items():
        body = body or {}
        node = tree_from_api(body.get(next_key) if next_key else None, depth + 1, child_name)
        node.enabled = _as_bool(body.get("enabled"))
        node.attrs = {a: body[a] for a in attrs if body.get(a) is not None}
        root.children[child_name] = node
    return root


def tree_to_api(root: SchemaTreeNode, depth: int = 0) -> Dict[str, Any]:
    """Render a tree as the API `schemas` object (inverse of tree_from_api)."""
    if depth >= len(LEVELS):
        return {}
    next_key = LEVELS[depth + 1][1] if depth + 1 < len(LEVELS) else None
    out: Dict[str, Any] = {}
    for child_name in sorted(root.children):
        node = root.children[child_name]
        body: Dict[str, Any] = {}
        if node.enabled is not None:
            body["enabled"] = node.enabled
        body.update(node.attrs)
        if next_key and node.children:
            body[next_key] = tree_to_api(node, depth + 1)
        out[child_name] = body
    return out


def patches_to_payload(ops: Iterable[PatchOp]) -> Dict[str, Any]:
    """Render set-field ops as one nested `PATCH .../schemas` body."""
    schemas: Dict[str, Any] = {}
    for op in ops:
        if op.kind != SET_FIELD or not op.path:
            continue
        cursor = schemas
        for depth, name in enumerate(op.path):
            node = cursor.setdefault(name, {})
            if depth == len(op.path) - 1:
                node[op.field] = op.value
            else:
                cursor = node.setdefault(LEVELS[depth + 1][1], {})
    return {"schemas": schemas}


# ----- blocks <-> tree -----

def tree_from_blocks(blocks: Optional[Sequence[Mapping[str, Any]]], depth: int = 0, name: str = "") -> SchemaTreeNode:
    """Build a tree from attribute blocks; missing `enabled` stays None."""
    root = SchemaTreeNode(name=name)
    if depth >= len(LEVELS):
        return root
    _, _, attrs = LEVELS[depth]
    next_block = LEVELS[depth + 1][0] if depth + 1 < len(LEVELS) else None
    for block in blocks or []:
        child_name = str(block["name"])
        node = tree_from_blocks(block.get(next_block) if next_block else None, depth + 1, child_name)
        node.enabled = _as_bool(block.get("enabled"))
        node.attrs = {a: block[a] for a in attrs if block.get(a) is not None}
        root.children[child_name] = node
    return root


def tree_to_blocks(root: SchemaTreeNode, depth: int = 0) -> List[Dict[str, Any]]:
    """Render a tree as attribute blocks sorted by name."""
    if depth >= len(LEVELS):
        return []
    next_block = LEVELS[depth + 1][0] if depth + 1 < len(LEVELS) else None
    out: List[Dict[str, Any]] = []
    for child_name in sorted(root.children):
        node = root.children[child_name]
        block: Dict[str, Any] = {"name": child_name}
        if node.enabled is not None:
            block["enabled"] = node.enabled
        block.update(node.attrs)
        if next_block and node.children:
            block[next_block] = tree_to_blocks(node, depth + 1)
        out.append(block)
    return out


def apply_patches(root: SchemaTreeNode, ops: Iterable[PatchOp]) -> SchemaTreeNode:
    """Return a copy of `root` with set-field ops applied (local preview)."""
    out = copy.deepcopy(root)
    for op in ops:
        if op.kind != SET_FIELD:
            continue
        node = out.find(op.path)
        if node is None:
            continue
        if op.field == "enabled":
            node.enabled = op.value
        else:
            node.attrs[op.field] = op.value
    return out
