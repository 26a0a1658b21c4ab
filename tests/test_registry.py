import pytest

from fivetransync.core.group_users import GroupUsersReconciler
from fivetransync.core.profiles import ProfileLoader
from fivetransync.core.reconciler import ResourceReconciler
from fivetransync.core.registry import get_type, iter_types
from fivetransync.core.schema_config import SchemaConfigReconciler


def test_every_type_has_a_loadable_profile_and_class():
    loader = ProfileLoader()
    keys = []
    for rtype in iter_types():
        keys.append(rtype.key)
        assert issubclass(rtype.load_class(), ResourceReconciler)
        assert loader.load(rtype.profile).resource == rtype.key
    assert sorted(keys) == [
        "fivetran_connector",
        "fivetran_connector_schema_config",
        "fivetran_destination",
        "fivetran_group",
        "fivetran_group_users",
        "fivetran_user",
    ]


def test_specialised_reconcilers():
    assert get_type("fivetran_group_users").load_class() is GroupUsersReconciler
    schema = get_type("fivetran_connector_schema_config")
    assert schema.load_class() is SchemaConfigReconciler
    assert schema.options == ("patch_batch_size", "rate_limit_backoff_sec")


def test_unknown_type():
    with pytest.raises(KeyError, match="known: fivetran_connector"):
        get_type("fivetran_team")
