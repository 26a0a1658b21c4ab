from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ApiError, CreateError, NotFoundError, UpdateError
from .patches import ADD_CHILD, REMOVE_CHILD, PatchOp
from .reconciler import Changes, DesiredState, ObservedState, Plan, ResourceReconciler

Member = Dict[str, Any]


def _email(item: Mapping[str, Any]) -> str:
    return str(item.get("email") or "").strip().lower()


def membership_ops(desired: Sequence[Mapping[str, Any]], observed: Sequence[Mapping[str, Any]]) -> List[PatchOp]:
    """
    Ops turning the observed member list into the desired one.

    Members are keyed by lower-cased email. Removals come first, sorted by
    email, then additions; a role change is a removal plus an addition.
    A desired member without a role keeps whatever role it has.
    """
    want = {_email(m): m.get("role") for m in desired if _email(m)}
    have = {_email(m): m for m in observed if _email(m)}

    removes: List[PatchOp] = []
    adds: List[PatchOp] = []
    for email in sorted(have):
        role = want.get(email)
        if email not in want or (role is not None and role != have[email].get("role")):
            removes.append(PatchOp(REMOVE_CHILD, (email,), "user", have[email].get("id")))
    for email in sorted(want):
        current = have.get(email)
        role = want[email]
        if current is None or (role is not None and role != current.get("role")):
            adds.append(PatchOp(ADD_CHILD, (email,), "user", {"email": email, "role": role}))
    return removes + adds


class GroupUsersReconciler(ResourceReconciler):
    """
    fivetran_group_users: the desired `user` list is the complete membership
    of the group identified by `group_id`.
    """

    def _members(self, group_id: str) -> List[Member]:
        members = [
            {"id": u.get("id"), "email": u.get("email"), "role": u.get("role")}
            for u in self.client.list(self._path("list", group_id))
        ]
        return sorted(members, key=_email)

    def read(self, identifier: str) -> ObservedState:
        return self.mapper.to_observed({self.spec.id_field: identifier, "user": self._members(identifier)})

    def diff(self, desired: DesiredState, observed: Mapping[str, Any]) -> Changes:
        if desired.get("user") is None:
            return {}
        ops = membership_ops(desired["user"], observed.get("user") or [])
        return {"user": (observed.get("user"), desired["user"])} if ops else {}

    def _apply_ops(self, group_id: str, ops: List[PatchOp]) -> None:
        for op in ops:
            if op.kind == REMOVE_CHILD:
                self.log.info("Removing %s from group %s", op.path[0], group_id)
                try:
                    self.client.delete(self._path("delete", group_id, {"user_id": op.value}))
                except NotFoundError:
                    self.log.info("User %s already left group %s", op.path[0], group_id)
            elif op.kind == ADD_CHILD:
                self.log.info("Adding %s to group %s as %s", op.path[0], group_id, op.value.get("role"))
                body = {k: v for k, v in op.value.items() if v is not None}
                self.client.post(self._path("create", group_id), body)

    def create(self, desired: DesiredState) -> Tuple[str, ObservedState]:
        group_id = desired.get(self.spec.id_field)
        if not group_id:
            raise CreateError(status=0, url=self.spec.endpoint("create") or "", message="group_id is required")
        group_id = str(group_id)
        try:
            ops = membership_ops(desired.get("user") or [], self._members(group_id))
            self._apply_ops(group_id, ops)
        except ApiError as e:
            raise e.as_(CreateError) from e
        return group_id, self.read(group_id)

    def update(
        self,
        identifier: str,
        desired: DesiredState,
        observed: Optional[Mapping[str, Any]] = None,
    ) -> ObservedState:
        if observed is None:
            observed = self.read(identifier)
        if desired.get("user") is None:
            return dict(observed)
        ops = membership_ops(desired["user"], observed.get("user") or [])
        if not ops:
            self.log.debug("Membership of group %s unchanged", identifier)
            return dict(observed)
        try:
            self._apply_ops(identifier, ops)
        except NotFoundError:
            raise
        except ApiError as e:
            raise e.as_(UpdateError, identifier=identifier) from e
        return self.read(identifier)

    def delete(self, identifier: str) -> bool:
        """Remove every member; a vanished group counts as already clean."""
        try:
            observed = self.read(identifier)
        except NotFoundError:
            return False
        ops = membership_ops([], observed.get("user") or [])
        self._apply_ops(identifier, ops)
        return bool(ops)

    def plan(self, identifier: Optional[str], desired: DesiredState) -> Plan:
        if not identifier:
            return Plan("CREATE", None, reason="group id unknown until apply")
        try:
            observed = self.read(str(identifier))
        except NotFoundError:
            return Plan("CREATE", str(identifier), reason="group not found remotely")
        ops: List[PatchOp] = []
        if desired.get("user") is not None:
            ops = membership_ops(desired["user"], observed.get("user") or [])
        changes = {"user": (observed.get("user"), desired.get("user"))} if ops else {}
        return Plan("UPDATE" if ops else "UNCHANGED", str(identifier), changes, ops=ops)
