from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import FivetranSyncError, MappingError, NotFoundError, UpdateError
from .fivetran_client import FivetranClient
from .logging_setup import get_logger
from .profiles import ProfileError, ProfileLoader, TransformError
from .reconciler import ResourceReconciler
from .registry import get_type

Attributes = Dict[str, Any]
State = Dict[str, str]

# Placeholder for values only known once an earlier resource is created.
UNKNOWN = "(known after apply)"

_REF = re.compile(r"\$\{([A-Za-z0-9_]+)\.([A-Za-z0-9_-]+)\.([A-Za-z0-9_.]+)\}")


class DocumentError(FivetranSyncError):
    """Desired-state document is malformed."""


class UnresolvedReferenceError(FivetranSyncError):
    """A ${type.name.attr} reference names no earlier resource or attribute."""


@dataclass(frozen=True)
class ResourceDecl:
    index: int
    type: str
    name: str
    attributes: Attributes
    id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.type}.{self.name}"


@dataclass(frozen=True)
class ApplyResult:
    index: int
    key: str
    status: str
    identifier: Optional[str] = None
    reason: str = ""
    error: str = ""
    changes: Tuple[str, ...] = field(default_factory=tuple)


def parse_document(doc: Any) -> List[ResourceDecl]:
    """Validate a `resources: [{type, name, id?, attributes}]` document."""
    if not isinstance(doc, Mapping) or not isinstance(doc.get("resources"), list):
        raise DocumentError("Document must be a mapping with a 'resources' list")
    out: List[ResourceDecl] = []
    seen = set()
    for idx, raw in enumerate(doc["resources"]):
        if not isinstance(raw, Mapping) or not raw.get("type") or not raw.get("name"):
            raise DocumentError(f"resources[{idx}] needs 'type' and 'name'")
        get_type(str(raw["type"]))
        decl = ResourceDecl(
            index=idx,
            type=str(raw["type"]),
            name=str(raw["name"]),
            attributes=dict(raw.get("attributes") or {}),
            id=str(raw["id"]) if raw.get("id") else None,
        )
        if decl.key in seen:
            raise DocumentError(f"Duplicate resource '{decl.key}'")
        seen.add(decl.key)
        out.append(decl)
    return out


def load_document(path: str) -> List[ResourceDecl]:
    with open(path, "r", encoding="utf-8") as f:
        return parse_document(yaml.safe_load(f) or {})


def _attr(values: Mapping[str, Any], dotted: str) -> Any:
    cursor: Any = values
    for part in dotted.split("."):
        if not isinstance(cursor, Mapping) or part not in cursor:
            raise KeyError(part)
        cursor = cursor[part]
    return cursor


def resolve_references(value: Any, outputs: Mapping[str, Mapping[str, Any]]) -> Any:
    """
    Substitute ${type.name.attr} references with values of earlier resources.

    A string that is exactly one reference takes the referenced value as is
    (keeps ints, bools, lists); references inside longer strings are
    interpolated as text.
    """
    if isinstance(value, dict):
        return {k: resolve_references(v, outputs) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, outputs) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    def lookup(m: re.Match[str]) -> Any:
        rtype, name, attr = m.groups()
        key = f"{rtype}.{name}"
        if key not in outputs:
            raise UnresolvedReferenceError(f"Reference '{m.group(0)}' names no earlier resource")
        try:
            return _attr(outputs[key], attr)
        except KeyError:
            raise UnresolvedReferenceError(f"Reference '{m.group(0)}': '{key}' has no attribute '{attr}'") from None

    whole = _REF.fullmatch(value)
    if whole:
        return lookup(whole)
    return _REF.sub(lambda m: str(lookup(m)), value)


class Applier:
    """
    Apply a desired-state document resource by resource, in document order.

    Failures are recorded per resource and never abort the run; a resource
    whose references cannot be resolved fails on its own.
    """

    def __init__(
        self,
        client: FivetranClient,
        loader: Optional[ProfileLoader] = None,
        *,
        options: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.loader = loader or ProfileLoader()
        self.options = options or {}
        self.log = logger or get_logger("ftsync.applier")
        self._reconcilers: Dict[str, ResourceReconciler] = {}

    def reconciler(self, rtype: str) -> ResourceReconciler:
        if rtype not in self._reconcilers:
            t = get_type(rtype)
            kwargs = {k: self.options[k] for k in t.options if k in self.options}
            log = logging.LoggerAdapter(self.log.logger, {**(self.log.extra or {}), "resource": rtype})
            self._reconcilers[rtype] = t.load_class()(self.loader.load(t.profile), self.client, logger=log, **kwargs)
        return self._reconcilers[rtype]

    def _identifier(self, decl: ResourceDecl, attrs: Mapping[str, Any], state: Mapping[str, str]) -> Optional[str]:
        if decl.id:
            return decl.id
        if decl.key in state:
            return state[decl.key]
        id_field = self.reconciler(decl.type).spec.id_field
        if id_field != "id" and attrs.get(id_field) and attrs.get(id_field) != UNKNOWN:
            return str(attrs[id_field])
        return None

    # ----- plan -----
    def plan(
        self, decls: List[ResourceDecl], state: Optional[State] = None
    ) -> Tuple[List[ApplyResult], Dict[str, int]]:
        state = dict(state or {})
        outputs: Dict[str, Dict[str, Any]] = {}
        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}

        for decl in decls:
            try:
                attrs = resolve_references(decl.attributes, outputs)
                identifier = self._identifier(decl, attrs, state)
                plan = self.reconciler(decl.type).plan(identifier, attrs)
                outputs[decl.key] = {**attrs, "id": plan.identifier or UNKNOWN}
                reason = plan.reason or "; ".join(str(op) for op in plan.ops[:20])
                for d in plan.drift:
                    self.log.warning("%s: unmanaged drift %s", decl.key, d)
                self._append(
                    results,
                    counts,
                    ApplyResult(decl.index, decl.key, plan.action, plan.identifier, reason, changes=tuple(sorted(plan.changes))),
                )
            except (FivetranSyncError, ProfileError, TransformError) as e:
                outputs[decl.key] = {**decl.attributes, "id": UNKNOWN}
                self._append(results, counts, ApplyResult(decl.index, decl.key, "ERROR", error=str(e)))
            except Exception as e:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "EXCEPTION", error=str(e)))

        return results, counts

    # ----- apply -----
    def apply(
        self, decls: List[ResourceDecl], state: Optional[State] = None
    ) -> Tuple[List[ApplyResult], Dict[str, int], State]:
        """Create or update every resource; returns results, counts and the new state."""
        state = dict(state or {})
        outputs: Dict[str, Dict[str, Any]] = {}
        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}

        for decl in decls:
            identifier: Optional[str] = None
            try:
                attrs = resolve_references(decl.attributes, outputs)
                rec = self.reconciler(decl.type)
                identifier = self._identifier(decl, attrs, state)

                observed = None
                if identifier:
                    try:
                        observed = rec.read(identifier)
                    except NotFoundError:
                        self.log.warning("%s id=%s not found remotely, creating it", decl.key, identifier)
                        if decl.id or decl.key in state:
                            identifier = None
                        state.pop(decl.key, None)

                if observed is None:
                    identifier, observed = rec.create(attrs)
                    status = "CREATED"
                    changed: Tuple[str, ...] = tuple(sorted(k for k, v in attrs.items() if v is not None))
                else:
                    changed = tuple(sorted(rec.diff(attrs, observed)))
                    after = rec.update(identifier, attrs, observed)
                    status = "UNCHANGED" if after == observed else "UPDATED"
                    observed = after

                state[decl.key] = identifier
                outputs[decl.key] = {**observed, "id": identifier}
                self._append(results, counts, ApplyResult(decl.index, decl.key, status, identifier, changes=changed))

            except (UpdateError, MappingError) as e:
                if e.identifier:
                    # the remote object exists even though the call failed: keep tracking it
                    state[decl.key] = e.identifier
                    outputs[decl.key] = {**decl.attributes, "id": e.identifier}
                self._append(
                    results, counts, ApplyResult(decl.index, decl.key, "ERROR", e.identifier or identifier, error=str(e))
                )
            except (FivetranSyncError, ProfileError, TransformError) as e:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "ERROR", identifier, error=str(e)))
            except Exception as e:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "EXCEPTION", identifier, error=str(e)))

        return results, counts, state

    # ----- destroy -----
    def destroy(
        self, decls: List[ResourceDecl], state: Optional[State] = None
    ) -> Tuple[List[ApplyResult], Dict[str, int], State]:
        """Delete tracked resources in reverse document order."""
        state = dict(state or {})
        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}

        for decl in reversed(decls):
            identifier = decl.id or state.get(decl.key)
            if not identifier:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "SKIP", reason="not tracked"))
                continue
            try:
                removed = self.reconciler(decl.type).delete(identifier)
                state.pop(decl.key, None)
                status = "DELETED" if removed else "ABSENT"
                self._append(results, counts, ApplyResult(decl.index, decl.key, status, identifier))
            except (FivetranSyncError, ProfileError) as e:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "ERROR", identifier, error=str(e)))
            except Exception as e:
                self._append(results, counts, ApplyResult(decl.index, decl.key, "EXCEPTION", identifier, error=str(e)))

        return results, counts, state

    @staticmethod
    def _append(results: List[ApplyResult], counts: Dict[str, int], res: ApplyResult) -> None:
        results.append(res)
        counts[res.status] = counts.get(res.status, 0) + 1
