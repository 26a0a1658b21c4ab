"""
Reconciler for fivetran_connector_schema_config.

The identifier is the connector id. Desired state carries
`schema_change_handling` and `schema` blocks; the blocks are diffed as a tree
and the resulting ops are sent as batched nested PATCH bodies.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from retrying import Retrying

from .errors import ApiError, CreateError, NotFoundError, RateLimitError, UpdateError
from .fivetran_client import FivetranClient
from .patches import Drift, PatchOp
from .profiles import ResourceSpec
from .reconciler import Changes, DesiredState, ObservedState, Plan, ResourceReconciler
from .schema_differ import diff as diff_trees
from .schema_tree import SchemaTreeNode, patches_to_payload, tree_from_api, tree_from_blocks
from .state_mapper import SchemaConfigMapper

TREE_FIELD = "schema"


class SchemaConfigReconciler(ResourceReconciler):
    mapper_cls = SchemaConfigMapper

    def __init__(
        self,
        spec: ResourceSpec,
        client: FivetranClient,
        *,
        patch_batch_size: int = 100,
        rate_limit_backoff_sec: float = 5.0,
        context: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        super().__init__(spec, client, context=context, logger=logger)
        self.batch_size = max(1, int(patch_batch_size))
        self.backoff = float(rate_limit_backoff_sec)

    # ----- remote -----
    def read(self, identifier: str) -> ObservedState:
        _, body = self.client.get(self._path("read", identifier))
        return self.mapper.to_observed(self._data(body), connector_id=identifier)

    def _reload(self, connector_id: str) -> None:
        self.log.info("Schema of connector %s not loaded yet, reloading", connector_id)
        try:
            self.client.post(self._path("reload", connector_id), {"exclude_mode": "PRESERVE"})
        except NotFoundError:
            raise
        except ApiError as e:
            raise e.as_(CreateError) from e

    def _load_columns(self, connector_id: str, desired: SchemaTreeNode, observed: SchemaTreeNode) -> None:
        """Fetch column listings the schema endpoint left out but desired state needs."""
        for schema_name, schema in desired.children.items():
            for table_name, table in schema.children.items():
                remote = observed.find((schema_name, table_name))
                if not table.children or remote is None or remote.children:
                    continue
                path = self._path("columns", connector_id, {"schema": schema_name, "table": table_name})
                _, body = self.client.get(path)
                columns = self._data(body).get("columns") or {}
                remote.children = tree_from_api(columns, depth=2).children

    def _patch(self, connector_id: str, payload: Dict[str, Any]) -> None:
        path = self._path("update", connector_id)

        def _rate_limited(exc: Exception) -> bool:
            if isinstance(exc, RateLimitError):
                self.log.warning("Rate limited on %s, retrying once in %.1fs", path, self.backoff)
                return True
            return False

        retrying = Retrying(
            retry_on_exception=_rate_limited,
            stop_max_attempt_number=2,
            wait_fixed=int(self.backoff * 1000),
        )
        try:
            retrying.call(self.client.patch, path, payload)
        except (RateLimitError, NotFoundError):
            raise
        except ApiError as e:
            raise e.as_(UpdateError, identifier=connector_id) from e

    # ----- diff -----
    def diff(self, desired: DesiredState, observed: Mapping[str, Any]) -> Changes:
        flat = {k: v for k, v in desired.items() if k != TREE_FIELD}
        return super().diff(flat, observed)

    def tree_ops(
        self, connector_id: str, desired: DesiredState, observed: Mapping[str, Any]
    ) -> Tuple[List[PatchOp], List[Drift]]:
        """Validate the desired tree against the remote one and diff them."""
        if desired.get(TREE_FIELD) is None:
            return [], []
        wanted = tree_from_blocks(desired[TREE_FIELD])
        remote = tree_from_blocks(observed.get(TREE_FIELD))
        self._load_columns(connector_id, wanted, remote)
        drift: List[Drift] = []
        ops = diff_trees(wanted, remote, drift=drift)
        return ops, drift

    def _payloads(self, changes: Changes, ops: List[PatchOp]) -> List[Dict[str, Any]]:
        payloads = [
            patches_to_payload(ops[i:i + self.batch_size]) for i in range(0, len(ops), self.batch_size)
        ]
        if changes:
            flat = self.mapper.to_remote_payload({n: v for n, (_, v) in changes.items()}, "update")
            if payloads:
                payloads[0].update(flat)
            else:
                payloads.append(flat)
        return payloads

    # ----- CRUD -----
    def create(self, desired: DesiredState) -> Tuple[str, ObservedState]:
        connector_id = desired.get(self.spec.id_field)
        if not connector_id:
            raise CreateError(status=0, url=self.spec.endpoint("read") or "", message="connector_id is required")
        connector_id = str(connector_id)
        try:
            observed = self.read(connector_id)
        except NotFoundError:
            self._reload(connector_id)
            observed = self.read(connector_id)
        try:
            return connector_id, self.update(connector_id, desired, observed)
        except UpdateError as e:
            e.identifier = connector_id
            raise

    def update(
        self,
        identifier: str,
        desired: DesiredState,
        observed: Optional[Mapping[str, Any]] = None,
    ) -> ObservedState:
        """
        Patch schema_change_handling and the schema tree.

        The whole desired tree is validated before the first PATCH is sent.
        """
        missing = [f.name for f in self.spec.fields.values() if f.required_on_update and desired.get(f.name) is None]
        if missing:
            raise UpdateError(
                status=0,
                url=self._path("update", identifier),
                message=f"attribute(s) required on update: {', '.join(missing)}",
                identifier=identifier,
            )
        if observed is None:
            observed = self.read(identifier)

        changes = self.diff(desired, observed)
        immutable = self._immutable(changes)
        if immutable:
            raise UpdateError(
                status=0,
                url=self._path("update", identifier),
                message=f"immutable attribute(s) changed: {', '.join(sorted(immutable))}",
                identifier=identifier,
            )
        ops, drift = self.tree_ops(identifier, desired, observed)
        for d in drift:
            self.log.warning("Unmanaged schema drift on connector %s: %s", identifier, d)

        payloads = self._payloads(changes, ops)
        if not payloads:
            self.log.debug("Schema config of connector %s unchanged", identifier)
            return dict(observed)

        self.log.info(
            "Patching schema config of connector %s: %d op(s) in %d request(s)", identifier, len(ops), len(payloads)
        )
        for payload in payloads:
            self._patch(identifier, payload)
        return self.read(identifier)

    def delete(self, identifier: str) -> bool:
        """The API has no schema-config delete; only local tracking ends."""
        self.log.info("Releasing schema config of connector %s (no remote call)", identifier)
        return True

    def plan(self, identifier: Optional[str], desired: DesiredState) -> Plan:
        if not identifier:
            return Plan("CREATE", None, reason="connector id unknown until apply")
        try:
            observed = self.read(str(identifier))
        except NotFoundError:
            return Plan("CREATE", str(identifier), reason="schema not loaded")
        changes = self.diff(desired, observed)
        ops, drift = self.tree_ops(str(identifier), desired, observed)
        action = "UPDATE" if changes or ops else "UNCHANGED"
        return Plan(action, str(identifier), changes, ops=ops, drift=drift)
