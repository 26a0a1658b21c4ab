import pytest

from fivetransync.core.errors import CreateError, NotFoundError
from fivetransync.core.group_users import GroupUsersReconciler, membership_ops
from fivetransync.core.patches import ADD_CHILD, REMOVE_CHILD
from fivetransync.core.profiles import ProfileLoader


@pytest.fixture
def rec(client):
    return GroupUsersReconciler(ProfileLoader().load("group_users"), client)


@pytest.fixture
def team(fake):
    fake.groups["g1"] = {"id": "g1", "name": "Main"}
    for uid, email in (("u1", "amy@x.io"), ("u2", "bob@x.io"), ("u3", "cat@x.io")):
        fake.users[uid] = {"id": uid, "email": email, "given_name": email[:3], "family_name": "X"}
    fake.members["g1"] = {"u2": "Destination Reviewer", "u1": "Destination Administrator"}
    return fake


def test_membership_ops_order_and_role_change():
    observed = [
        {"id": "u1", "email": "amy@x.io", "role": "Admin"},
        {"id": "u2", "email": "bob@x.io", "role": "Reviewer"},
    ]
    desired = [{"email": "Cat@x.io", "role": "Reviewer"}, {"email": "amy@x.io", "role": "Reviewer"}]
    ops = membership_ops(desired, observed)
    assert [(op.kind, op.path) for op in ops] == [
        (REMOVE_CHILD, ("amy@x.io",)),
        (REMOVE_CHILD, ("bob@x.io",)),
        (ADD_CHILD, ("amy@x.io",)),
        (ADD_CHILD, ("cat@x.io",)),
    ]
    assert ops[0].value == "u1"
    assert ops[2].value == {"email": "amy@x.io", "role": "Reviewer"}


def test_role_less_member_keeps_role():
    observed = [{"id": "u1", "email": "amy@x.io", "role": "Admin"}]
    assert membership_ops([{"email": "amy@x.io"}], observed) == []


def test_read_is_sorted_by_email(team, rec):
    observed = rec.read("g1")
    assert observed["group_id"] == "g1"
    assert [u["email"] for u in observed["user"]] == ["amy@x.io", "bob@x.io"]


def test_update_adds_and_removes(team, rec):
    out = rec.update("g1", {"group_id": "g1", "user": [
        {"email": "amy@x.io", "role": "Destination Administrator"},
        {"email": "cat@x.io", "role": "Destination Analyst"},
    ]})
    assert [c[:2] for c in team.writes()] == [
        ("DELETE", "/groups/g1/users/u2"),
        ("POST", "/groups/g1/users"),
    ]
    assert team.writes()[1][3] == {"email": "cat@x.io", "role": "Destination Analyst"}
    assert [u["email"] for u in out["user"]] == ["amy@x.io", "cat@x.io"]


def test_update_is_idempotent(team, rec):
    desired = {"group_id": "g1", "user": [
        {"email": "bob@x.io", "role": "Destination Reviewer"},
        {"email": "amy@x.io", "role": "Destination Administrator"},
    ]}
    assert rec.plan("g1", desired).action == "UNCHANGED"
    rec.update("g1", desired)
    assert team.writes() == []


def test_create_and_delete(team, rec):
    team.members["g1"] = {}
    identifier, observed = rec.create({"group_id": "g1", "user": [{"email": "cat@x.io", "role": "Account Reviewer"}]})
    assert identifier == "g1"
    assert observed["user"] == [{"id": "u3", "email": "cat@x.io", "role": "Account Reviewer"}]

    assert rec.delete("g1") is True
    assert team.members["g1"] == {}
    assert rec.delete("g1") is False


def test_unknown_user_fails_create(team, rec):
    with pytest.raises(CreateError) as exc:
        rec.create({"group_id": "g1", "user": [{"email": "nobody@x.io", "role": "Account Reviewer"}]})
    assert "nobody@x.io" in exc.value.message


def test_vanished_group(fake, rec):
    with pytest.raises(NotFoundError):
        rec.read("g_gone")
    assert rec.delete("g_gone") is False


def test_create_replaces_existing_membership(team, rec):
    identifier, observed = rec.create({"group_id": "g1", "user": [
        {"email": "amy@x.io", "role": "Destination Administrator"},
        {"email": "cat@x.io", "role": "Account Reviewer"},
    ]})
    assert [c[:2] for c in team.writes()] == [
        ("DELETE", "/groups/g1/users/u2"),
        ("POST", "/groups/g1/users"),
    ]
    assert [u["email"] for u in observed["user"]] == ["amy@x.io", "cat@x.io"]
    assert rec.plan(identifier, {"group_id": "g1", "user": [
        {"email": "amy@x.io", "role": "Destination Administrator"},
        {"email": "cat@x.io", "role": "Account Reviewer"},
    ]}).action == "UNCHANGED"


def test_plan_for_missing_group_is_create(fake, rec):
    plan = rec.plan("g_gone", {"group_id": "g_gone", "user": [{"email": "amy@x.io"}]})
    assert plan.action == "CREATE"
    assert plan.identifier == "g_gone"
    assert fake.writes() == []
