"""
Schema tree differ.

    ops = diff(desired_tree, observed_tree)

Rules:
- Omitting a branch from the desired tree leaves the remote untouched; only an
  explicit `enabled: false` excludes.
- A node's observed effective inclusion is its own flag, or the flag inherited
  from its parent after the parent's own patch is applied. The inherited flag
  is passed down the recursion, never stored on the nodes.
- Ops come out in pre-order: schema before its tables, table before its columns.
- Every desired path is checked against the observed tree before any op is
  produced; unknown paths raise SchemaReferenceError.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Tuple

from .errors import SchemaReferenceError
from .patches import Drift, PatchOp
from .schema_tree import SchemaTreeNode

Path = Tuple[str, ...]

__all__ = ["diff", "unknown_paths"]


def unknown_paths(desired: SchemaTreeNode, observed: SchemaTreeNode, path: Path = ()) -> Iterator[Path]:
    """Yield desired paths the observed tree does not contain (topmost only)."""
    for name in sorted(desired.children):
        child_path = path + (name,)
        remote = observed.children.get(name)
        if remote is None:
            yield child_path
        else:
            yield from unknown_paths(desired.children[name], remote, child_path)


def diff(
    desired: SchemaTreeNode,
    observed: SchemaTreeNode,
    *,
    drift: Optional[List[Drift]] = None,
) -> List[PatchOp]:
    """
    Compute the ordered set-field ops turning `observed` into `desired`.

    When `drift` is a list, unmanaged observed nodes excluded remotely while
    their nearest managed ancestor is included are appended to it.
    """
    missing = list(unknown_paths(desired, observed))
    if missing:
        raise SchemaReferenceError(missing)

    ops: List[PatchOp] = []
    _diff_node(desired, observed, (), True, None, ops, drift)
    return ops


def _diff_node(
    desired: Optional[SchemaTreeNode],
    observed: SchemaTreeNode,
    path: Path,
    inherited: bool,
    managed: Optional[bool],
    ops: List[PatchOp],
    drift: Optional[List[Drift]],
) -> None:
    if desired is None:
        if drift is not None:
            _collect_drift(observed, path, managed, drift)
        return

    observed_effective = observed.enabled if observed.enabled is not None else inherited
    if desired.enabled is not None and desired.enabled != observed_effective:
        ops.append(PatchOp.set_field(path, "enabled", desired.enabled))

    for attr in sorted(desired.attrs):
        value = desired.attrs[attr]
        if value is not None and observed.attrs.get(attr) != value:
            ops.append(PatchOp.set_field(path, attr, value))

    effective = desired.enabled if desired.enabled is not None else observed_effective
    if desired.enabled is not None:
        managed = desired.enabled

    for name in sorted(set(desired.children) | set(observed.children)):
        _diff_node(
            desired.children.get(name),
            observed.children[name],
            path + (name,),
            effective,
            managed,
            ops,
            drift,
        )


def _collect_drift(node: SchemaTreeNode, path: Path, managed: Optional[bool], drift: List[Drift]) -> None:
    # Below an excluded ancestor nothing syncs, so only exclusions under an
    # included ancestor are reported; descendants of a reported node are not.
    if managed is not True:
        return
    if node.enabled is False:
        drift.append(Drift(path=path, observed=False, expected=True))
        return
    for name in sorted(node.children):
        _collect_drift(node.children[name], path + (name,), managed, drift)
