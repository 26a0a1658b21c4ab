"""Resource type registry: type name -> profile + reconciler class."""

from __future__ import annotations

from dataclasses import dataclass
from importlib import import_module
from typing import Dict, Iterable, Tuple


@dataclass(frozen=True)
class ResourceType:
    key: str                # resource type used in desired-state documents
    profile: str            # profile name (without .yml)
    help: str
    module: str             # module path of the reconciler
    class_name: str         # reconciler class symbol in module
    options: Tuple[str, ...] = ()  # reconcile.* settings passed to the constructor

    def load_class(self):
        mod = import_module(self.module)
        return getattr(mod, self.class_name)


_BASE = "fivetransync.core.reconciler"

_TYPES: Dict[str, ResourceType] = {
    "fivetran_user": ResourceType(
        key="fivetran_user",
        profile="user",
        help="Account users",
        module=_BASE,
        class_name="ResourceReconciler",
    ),
    "fivetran_group": ResourceType(
        key="fivetran_group",
        profile="group",
        help="Groups (one destination each)",
        module=_BASE,
        class_name="ResourceReconciler",
    ),
    "fivetran_group_users": ResourceType(
        key="fivetran_group_users",
        profile="group_users",
        help="Complete membership of a group",
        module="fivetransync.core.group_users",
        class_name="GroupUsersReconciler",
    ),
    "fivetran_destination": ResourceType(
        key="fivetran_destination",
        profile="destination",
        help="Warehouse destinations",
        module=_BASE,
        class_name="ResourceReconciler",
    ),
    "fivetran_connector": ResourceType(
        key="fivetran_connector",
        profile="connector",
        help="Connectors",
        module=_BASE,
        class_name="ResourceReconciler",
    ),
    "fivetran_connector_schema_config": ResourceType(
        key="fivetran_connector_schema_config",
        profile="connector_schema_config",
        help="Schema/table/column selection of a connector",
        module="fivetransync.core.schema_config",
        class_name="SchemaConfigReconciler",
        options=("patch_batch_size", "rate_limit_backoff_sec"),
    ),
}


def get_type(key: str) -> ResourceType:
    try:
        return _TYPES[key]
    except KeyError:
        raise KeyError(f"Unknown resource type '{key}' (known: {', '.join(sorted(_TYPES))})") from None


def iter_types() -> Iterable[ResourceType]:
    return _TYPES.values()
