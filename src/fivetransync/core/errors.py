"""
Error taxonomy for FivetranSync.

- ApiError: any non-2xx answer from the Fivetran API (status, url, envelope code
  and the remote message, kept verbatim).
- NotFoundError / RateLimitError: status-specific ApiErrors raised by the client.
- CreateError / UpdateError: the remote rejected a create/update payload.
- SchemaReferenceError: desired schema config names a schema/table/column the
  remote catalog does not know.
- MappingError: a successful response lacks a field the profile marks required.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple, Type, TypeVar

E = TypeVar("E", bound="ApiError")


class FivetranSyncError(Exception):
    """Base class for every error raised by FivetranSync."""


@dataclass(eq=False)
class ApiError(FivetranSyncError):
    """HTTP/transport error with context."""
    status: int
    url: str
    code: str = ""
    message: str = ""
    body: str = ""

    def __str__(self) -> str:
        base = f"{type(self).__name__}(status={self.status}, url={self.url})"
        if self.code:
            base += f" code={self.code}"
        if self.message:
            base += f": {self.message}"
        elif self.body:
            base += f" body={self.body[:200]}"
        return base

    def as_(self, cls: Type[E], **extra: Any) -> E:
        """Re-type this error (e.g. ApiError -> CreateError), keeping every field."""
        fields = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        fields.update(extra)
        return cls(**fields)


class NotFoundError(ApiError):
    """Remote resource is absent (404). Callers drop local state."""


class RateLimitError(ApiError):
    """Remote throttling (429)."""


class CreateError(ApiError):
    """Remote rejected a creation payload."""


@dataclass(eq=False)
class UpdateError(ApiError):
    """
    Remote rejected an update payload, or the update is not allowed locally.

    `identifier` is set when the failing update followed a successful create.
    """
    identifier: Optional[str] = None


class SchemaReferenceError(FivetranSyncError):
    """Desired schema config addresses nodes unknown to the remote catalog."""

    def __init__(self, paths: Sequence[Tuple[str, ...]]) -> None:
        self.paths = [tuple(p) for p in paths]
        shown = ", ".join(".".join(p) for p in self.paths)
        super().__init__(f"Unknown schema path(s): {shown}")


class MappingError(FivetranSyncError):
    """
    A required field is missing from an otherwise successful response.

    `identifier` is set when the response belonged to a create that succeeded remotely.
    """

    def __init__(self, resource: str, field: str, source: str = "", identifier: Optional[str] = None) -> None:
        self.identifier = identifier
        self.resource = resource
        self.field = field
        self.source = source or field
        super().__init__(
            f"Response for '{resource}' is missing required field '{field}' (source '{self.source}')"
        )
