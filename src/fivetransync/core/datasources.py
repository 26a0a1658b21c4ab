"""
Read-only lookups (the provider's data sources).

Each lookup renders a profile endpoint, fetches one object or walks a
paginated list, and maps every item through the profile's StateMapper.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .fivetran_client import FivetranClient
from .logging_setup import get_logger
from .profiles import ProfileLoader
from .state_mapper import StateMapper


class DataSources:
    def __init__(
        self,
        client: FivetranClient,
        loader: Optional[ProfileLoader] = None,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.loader = loader or ProfileLoader()
        self.log = logger or get_logger("ftsync.datasources")
        self._mappers: Dict[str, StateMapper] = {}

    def _mapper(self, profile: str) -> StateMapper:
        if profile not in self._mappers:
            self._mappers[profile] = StateMapper(self.loader.load(profile))
        return self._mappers[profile]

    def _one(self, profile: str, identifier: str) -> Dict[str, Any]:
        mapper = self._mapper(profile)
        _, body = self.client.get(mapper.spec.path_for("read", id=identifier))
        data = body.get("data")
        return mapper.to_observed(data if isinstance(data, dict) else {})

    def _many(self, profile: str, *, endpoint_of: Optional[str] = None, **values: Any) -> List[Dict[str, Any]]:
        mapper = self._mapper(profile)
        path = self._mapper(endpoint_of or profile).spec.path_for("list", **values)
        items = [mapper.to_observed(item) for item in self.client.list(path)]
        self.log.debug("Listed %d %s item(s) from %s", len(items), profile, path)
        return items

    # ----- users -----
    def user(self, id: str) -> Dict[str, Any]:
        return self._one("user", id)

    def users(self) -> List[Dict[str, Any]]:
        return self._many("user")

    # ----- groups -----
    def group(self, id: str) -> Dict[str, Any]:
        return self._one("group", id)

    def groups(self) -> List[Dict[str, Any]]:
        return self._many("group")

    def group_connectors(self, id: str, schema: Optional[str] = None) -> List[Dict[str, Any]]:
        """Connectors of a group, optionally filtered by destination schema name."""
        items = self._many("connector", group_id=id)
        if schema:
            items = [c for c in items if c.get("name") == schema]
        return items

    def group_users(self, id: str) -> List[Dict[str, Any]]:
        return self._many("user", endpoint_of="group_users", group_id=id)

    # ----- destinations / connectors -----
    def destination(self, id: str) -> Dict[str, Any]:
        return self._one("destination", id)

    def connector(self, id: str) -> Dict[str, Any]:
        return self._one("connector", id)

    def connectors_metadata(self) -> List[Dict[str, Any]]:
        return self._many("connectors_metadata")

    def lookup(self, kind: str) -> Callable[..., Any]:
        """Resolve a data source by name, e.g. lookup("group_connectors")(id="grp")."""
        fn = getattr(self, kind, None) if kind in DATA_SOURCES else None
        if fn is None:
            raise KeyError(f"Unknown data source '{kind}' (known: {', '.join(DATA_SOURCES)})")
        return fn


DATA_SOURCES = (
    "user",
    "users",
    "group",
    "groups",
    "group_connectors",
    "group_users",
    "destination",
    "connector",
    "connectors_metadata",
)

# Data sources that take no id argument.
LIST_SOURCES = ("users", "groups", "connectors_metadata")
