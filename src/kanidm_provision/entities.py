"""Typed view of remote Kanidm entities.

The server returns every entity as an attribute bag, a mapping from attribute
name to a list of strings. ``Entity`` wraps that bag with explicit decode
failures, and ``DirectoryState`` is the per-run snapshot of all entities that
the reconciler reads and refreshes at well-defined points.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kanidm_provision.errors import KanidmNotFoundError, KanidmValidationError

ENDPOINT_AUTH = "/v1/auth"
ENDPOINT_GROUP = "/v1/group"
ENDPOINT_PERSON = "/v1/person"
ENDPOINT_OAUTH2 = "/v1/oauth2"

# Class marking an OAuth2 resource server as public (PKCE, no secret).
CLASS_OAUTH2_PUBLIC = "oauth2_resource_server_public"


class EntityKind(str, Enum):
    """The entity kinds managed by the provisioner."""

    GROUP = "group"
    PERSON = "person"
    OAUTH2 = "oauth2"

    @property
    def endpoint(self) -> str:
        return {
            EntityKind.GROUP: ENDPOINT_GROUP,
            EntityKind.PERSON: ENDPOINT_PERSON,
            EntityKind.OAUTH2: ENDPOINT_OAUTH2,
        }[self]


@dataclass
class Entity:
    """A remote entity and its raw attribute bag."""

    kind: EntityKind
    name: str
    attrs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, kind: EntityKind, data: Any) -> "Entity | None":
        """Build an entity from a list response item.

        Returns None for items without a name, which the server may include
        for internal entries.
        """
        if not isinstance(data, dict) or not isinstance(data.get("attrs"), dict):
            raise KanidmValidationError(f"Invalid {kind.value} entity in response: {data!r}")
        entity = cls(kind=kind, name="", attrs=data["attrs"])
        names = entity.values("name")
        if not names:
            return None
        entity.name = names[0]
        return entity

    def values(self, attr: str) -> list[str]:
        """Get all values of an attribute.

        A missing attribute yields an empty list, a malformed one raises.
        """
        raw = self.attrs.get(attr)
        if raw is None:
            return []
        if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
            raise KanidmValidationError(
                f"Invalid value for {attr} of {self.kind.value} '{self.name}': {raw!r}"
            )
        return list(raw)

    def first(self, attr: str) -> str | None:
        """Get the first value of an attribute, or None."""
        values = self.values(attr)
        return values[0] if values else None

    @property
    def uuid(self) -> str:
        uuid = self.first("uuid")
        if not uuid:
            raise KanidmValidationError(f"Could not find uuid for {self.kind.value} '{self.name}'")
        return uuid

    @property
    def is_public(self) -> bool:
        """Whether an OAuth2 resource server is a public client."""
        return CLASS_OAUTH2_PUBLIC in self.values("class")


@dataclass
class DirectoryState:
    """Snapshot of the entities currently present on the server."""

    groups: dict[str, Entity] = field(default_factory=dict)
    persons: dict[str, Entity] = field(default_factory=dict)
    oauth2s: dict[str, Entity] = field(default_factory=dict)

    def of_kind(self, kind: EntityKind) -> dict[str, Entity]:
        return {
            EntityKind.GROUP: self.groups,
            EntityKind.PERSON: self.persons,
            EntityKind.OAUTH2: self.oauth2s,
        }[kind]

    def replace(self, kind: EntityKind, entities: dict[str, Entity]) -> None:
        """Replace the snapshot of one kind with freshly fetched entities."""
        current = self.of_kind(kind)
        current.clear()
        current.update(entities)

    def get(self, kind: EntityKind, name: str) -> Entity | None:
        return self.of_kind(kind).get(name)

    def require(self, kind: EntityKind, name: str) -> Entity:
        """Get an entity that must exist in the snapshot."""
        entity = self.get(kind, name)
        if entity is None:
            raise KanidmNotFoundError(f"Cannot update unknown {kind.value} '{name}'")
        return entity

    def kind_of(self, name: str) -> EntityKind | None:
        """Find which kind holds ``name`` (groups, then persons, then OAuth2)."""
        for kind in EntityKind:
            if name in self.of_kind(kind):
                return kind
        return None

    def all_names(self) -> set[str]:
        return set(self.groups) | set(self.persons) | set(self.oauth2s)
