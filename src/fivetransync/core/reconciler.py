from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ApiError, CreateError, MappingError, NotFoundError, UpdateError
from .fivetran_client import FivetranClient
from .logging_setup import get_logger
from .patches import Drift, PatchOp
from .profiles import ResourceSpec
from .state_mapper import StateMapper

DesiredState = Mapping[str, Any]
ObservedState = Dict[str, Any]
Changes = Dict[str, Tuple[Any, Any]]


@dataclass
class Plan:
    """Outcome of diffing desired state against the remote, without writing."""
    action: str                      # CREATE | UPDATE | UNCHANGED | REPLACE
    identifier: Optional[str]
    changes: Changes = field(default_factory=dict)
    ops: List[PatchOp] = field(default_factory=list)
    drift: List[Drift] = field(default_factory=list)
    reason: str = ""


class ResourceReconciler:
    """
    Create/Read/Update/Delete for one resource type, driven by its profile.

    Stateless: every call works only from its arguments and the remote API, so
    one instance can serve concurrent calls on distinct identifiers.
    """

    mapper_cls = StateMapper

    def __init__(
        self,
        spec: ResourceSpec,
        client: FivetranClient,
        *,
        context: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.spec = spec
        self.client = client
        self.ctx = context or {}
        self.mapper = self.mapper_cls(spec)
        self.log = logger or get_logger(f"ftsync.{spec.name}", resource=spec.resource)

    # ----- helpers -----
    def _path(self, op: str, identifier: Optional[str] = None, values: Optional[Mapping[str, Any]] = None) -> str:
        sources: Dict[str, Any] = dict(self.ctx)
        sources.update({k: v for k, v in (values or {}).items() if isinstance(v, (str, int))})
        if identifier is not None:
            sources["id"] = identifier
            sources[self.spec.id_field] = identifier
        return self.spec.path_for(op, **sources)

    @staticmethod
    def _data(body: Mapping[str, Any]) -> Dict[str, Any]:
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    # ----- diff -----
    def diff(self, desired: DesiredState, observed: Mapping[str, Any]) -> Changes:
        """
        Attribute-level difference: {field: (observed, desired)}.

        Only attributes present (and not None) in `desired` are compared;
        computed and write-only attributes never count as changes.
        """
        changes: Changes = {}
        for name, value in desired.items():
            f = self.spec.fields.get(name)
            if f is None or f.computed or not f.echo or value is None:
                continue
            current = observed.get(name)
            if not self.mapper.equivalent(f, value, current):
                changes[name] = (current, value)
        return changes

    def _immutable(self, changes: Changes) -> List[str]:
        return [n for n in changes if not self.spec.fields[n].mutable]

    # ----- CRUD -----
    def create(self, desired: DesiredState) -> Tuple[str, ObservedState]:
        """
        POST the attributes the create endpoint accepts, then PATCH the ones
        it ignores. No identifier escapes when the POST itself fails.
        """
        url_hint = self.spec.endpoint("create") or ""
        missing = [f.name for f in self.spec.required_fields() if desired.get(f.name) in (None, "")]
        if missing:
            raise CreateError(status=0, url=url_hint, message=f"missing required attribute(s): {', '.join(missing)}")

        payload = self.mapper.to_remote_payload(desired, "create")
        path = self._path("create", values=desired)
        try:
            _, body = self.client.post(path, payload)
        except ApiError as e:
            raise e.as_(CreateError) from e

        data = self._data(body)
        try:
            observed = self.mapper.to_observed(data)
        except MappingError as e:
            if data.get(self.spec.id_field) is not None:
                e.identifier = str(data[self.spec.id_field])
            raise
        identifier = str(observed[self.spec.id_field])
        self.log.info("Created %s id=%s", self.spec.resource, identifier)

        deferred = {
            f.name: desired[f.name]
            for f in self.spec.writable_fields()
            if desired.get(f.name) is not None and (not f.create or f.required_on_update)
        }
        if any(not self.spec.fields[n].create for n in deferred):
            self.log.info("Applying attributes the create endpoint ignores: %s", sorted(deferred))
            try:
                observed = self.update(identifier, deferred, observed)
            except UpdateError as e:
                e.identifier = identifier
                raise
        return identifier, observed

    def read(self, identifier: str) -> ObservedState:
        """Fetch remote state; NotFoundError means the resource is gone."""
        _, body = self.client.get(self._path("read", identifier))
        return self.mapper.to_observed(self._data(body))

    def update(
        self,
        identifier: str,
        desired: DesiredState,
        observed: Optional[Mapping[str, Any]] = None,
    ) -> ObservedState:
        """PATCH only the attributes that differ; absent attributes are untouched."""
        path = self._path("update", identifier)
        missing = [f.name for f in self.spec.fields.values() if f.required_on_update and desired.get(f.name) is None]
        if missing:
            raise UpdateError(
                status=0, url=path, message=f"attribute(s) required on update: {', '.join(missing)}", identifier=identifier
            )
        if observed is None:
            observed = self.read(identifier)

        changes = self.diff(desired, observed)
        immutable = self._immutable(changes)
        if immutable:
            raise UpdateError(
                status=0,
                url=path,
                message=f"immutable attribute(s) changed, resource must be replaced: {', '.join(sorted(immutable))}",
                identifier=identifier,
            )
        if not changes:
            self.log.debug("No changes for %s id=%s", self.spec.resource, identifier)
            return dict(observed)

        outgoing = {n: desired[n] for n in changes}
        # write-only attributes ride along with a real change
        outgoing.update({
            f.name: desired[f.name]
            for f in self.spec.writable_fields()
            if not f.echo and f.mutable and desired.get(f.name) is not None
        })
        payload = self.mapper.to_remote_payload(outgoing, "update")
        self.log.info("Updating %s id=%s fields=%s", self.spec.resource, identifier, sorted(changes))
        try:
            _, body = self.client.patch(path, payload)
        except NotFoundError:
            raise
        except ApiError as e:
            raise e.as_(UpdateError, identifier=identifier) from e

        data = self._data(body)
        return self.mapper.to_observed(data) if data else self.read(identifier)

    def delete(self, identifier: str) -> bool:
        """Idempotent delete: True when removed, False when already absent."""
        try:
            self.client.delete(self._path("delete", identifier))
        except NotFoundError:
            self.log.info("%s id=%s already absent", self.spec.resource, identifier)
            return False
        self.log.info("Deleted %s id=%s", self.spec.resource, identifier)
        return True

    # ----- plan -----
    def plan(self, identifier: Optional[str], desired: DesiredState) -> Plan:
        """Diff against the remote without writing anything."""
        if not identifier:
            return Plan("CREATE", None, changes={k: (None, v) for k, v in desired.items() if v is not None})
        try:
            observed = self.read(identifier)
        except NotFoundError:
            return Plan(
                "CREATE",
                identifier,
                changes={k: (None, v) for k, v in desired.items() if v is not None},
                reason="not found remotely",
            )
        changes = self.diff(desired, observed)
        immutable = self._immutable(changes)
        if immutable:
            return Plan("REPLACE", identifier, changes, reason=f"immutable: {', '.join(sorted(immutable))}")
        return Plan("UPDATE" if changes else "UNCHANGED", identifier, changes)
