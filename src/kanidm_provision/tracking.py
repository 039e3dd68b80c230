"""Provenance tracking and orphan removal.

Every entity the provisioner creates is recorded as a member of a synthetic
tracking group. Membership is only ever appended to, never replaced, so even a
run that fails half-way cannot lose track of an entity it created. Members
disappear only when the server deletes the underlying entity.

Entities that are tracked but no longer declared are orphans. They are deleted
at the very end of a run, unless auto-removal is disabled.
"""

from __future__ import annotations

import logging

from kanidm_provision.client import KanidmClient
from kanidm_provision.codec import strip_realm
from kanidm_provision.entities import DirectoryState, EntityKind
from kanidm_provision.errors import KanidmNotFoundError
from kanidm_provision.sync import sync_attr
from kanidm_provision.validation import PROVISION_TRACKING_GROUP

logger = logging.getLogger(__name__)


class ProvisionTracker:
    """Owns the tracking group."""

    def __init__(self, client: KanidmClient, group: str = PROVISION_TRACKING_GROUP):
        self._client = client
        self.group = group

    async def setup(self, current: DirectoryState) -> set[str]:
        """Create the tracking group if needed and read its members.

        Returns the names of all previously provisioned entities.
        """
        if current.get(EntityKind.GROUP, self.group) is None:
            await self._client.create_entity(
                EntityKind.GROUP, self.group, {"name": [self.group]}
            )
            current.replace(EntityKind.GROUP, await self._client.list_entities(EntityKind.GROUP))

        entity = current.get(EntityKind.GROUP, self.group)
        if entity is None:
            raise KanidmNotFoundError(
                f"Could not find provision tracking group '{self.group}'"
            )
        provisioned = {strip_realm(m) for m in entity.values("member")}
        logger.info("Found %d previously provisioned entities", len(provisioned))
        return provisioned

    async def track(self, current: DirectoryState, names: set[str]) -> list[str]:
        """Add ``names`` to the tracking group, never removing anyone.

        ``current`` must be a snapshot taken after all entities were created.
        Returns the names that were added.
        """
        entity = current.require(EntityKind.GROUP, self.group)
        members = {strip_realm(m) for m in entity.values("member")}
        appended = await sync_attr(
            self._client, current, EntityKind.GROUP, self.group, "member", sorted(names), append=True
        )
        if not appended:
            logger.debug("Tracking group is up to date")
            return []
        return sorted(names - members)


async def remove_orphans(
    client: KanidmClient,
    current: DirectoryState,
    provisioned: set[str],
    declared: set[str],
) -> list[tuple[EntityKind, str]]:
    """Delete provisioned entities that are no longer declared.

    Names found in none of the entity kinds were already removed and are
    skipped. Returns the deleted (kind, name) pairs.
    """
    deleted: list[tuple[EntityKind, str]] = []
    for name in sorted(provisioned - declared):
        kind = current.kind_of(name)
        if kind is None:
            logger.debug("Orphan %s no longer exists, skipping", name)
            continue
        await client.delete_entity(kind, name)
        deleted.append((kind, name))
    return deleted
