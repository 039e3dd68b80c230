"""Reconciliation of declared entities against the server.

Each declared entity is brought in line with its declaration attribute by
attribute. Desired and current values are normalized before comparison and a
request is only issued for attributes that differ, so repeating a run against
an unchanged server makes no changes.

Whenever an entity is created or deleted, the snapshot of its kind is refetched
before any further decision depends on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from kanidm_provision.client import KanidmClient
from kanidm_provision.codec import (
    JoinType,
    claim_join_type,
    decode_claim_map_entry,
    dedupe_values,
    find_claim_values,
    find_scopes,
    image_content_type,
    normalize_values,
)
from kanidm_provision.entities import DirectoryState, EntityKind
from kanidm_provision.errors import KanidmValidationError
from kanidm_provision.models import Oauth2Config, ProvisionState
from kanidm_provision.validation import ensure_name_available

logger = logging.getLogger(__name__)

ATTR_SCOPE_MAP = "oauth2_rs_scope_map"
ATTR_SUP_SCOPE_MAP = "oauth2_rs_sup_scope_map"
ATTR_CLAIM_MAP = "oauth2_rs_claim_map"


@dataclass
class SyncResult:
    """Result of a provisioning run."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    tracked: list[str] = field(default_factory=list)
    orphans_deleted: list[str] = field(default_factory=list)
    # Orphans left in place because auto-removal is disabled
    orphans_kept: list[str] = field(default_factory=list)

    warnings: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(
            self.created or self.updated or self.deleted or self.tracked or self.orphans_deleted
        )

    def summary(self) -> str:
        """Get a human-readable summary of the result."""
        lines = []

        if self.created:
            lines.append(f"Created {len(self.created)} entities:")
            lines.extend(f"  + {e}" for e in self.created)
        if self.updated:
            lines.append(f"Updated {len(self.updated)} attributes:")
            lines.extend(f"  ~ {e}" for e in self.updated)
        if self.deleted:
            lines.append(f"Deleted {len(self.deleted)} entities:")
            lines.extend(f"  - {e}" for e in self.deleted)

        if self.tracked:
            lines.append(f"Tracking {len(self.tracked)} new entities: {', '.join(self.tracked)}")
        if self.orphans_deleted:
            lines.append(f"Removed {len(self.orphans_deleted)} orphaned entities:")
            lines.extend(f"  - {e}" for e in self.orphans_deleted)
        if self.orphans_kept:
            lines.append(
                f"Orphaned entities (auto-removal disabled): {len(self.orphans_kept)}"
            )
            lines.extend(f"  ? {e}" for e in self.orphans_kept)

        if self.warnings:
            lines.append(f"Warnings: {len(self.warnings)}")
            lines.extend(f"  ! {w}" for w in self.warnings)

        if not lines:
            lines.append("No changes needed - Kanidm is in sync")

        return "\n".join(lines)


async def sync_attr(
    client: KanidmClient,
    current: DirectoryState,
    kind: EntityKind,
    name: str,
    attr: str,
    values: list[str],
    append: bool = False,
) -> bool:
    """Bring one attribute of an entity to the desired values.

    Issues at most one request: delete the attribute (no values), append the
    missing values (``append=True``, never removes anything) or replace all
    values. Returns whether a request was made.
    """
    entity = current.require(kind, name)
    have = normalize_values(attr, entity.values(attr))
    want = normalize_values(attr, values)

    if append:
        missing = [v for v in want if v not in have]
        if not missing:
            return False
        await client.append_attr(kind, entity.uuid, attr, missing)
        return True

    if have == want:
        return False
    if not want:
        await client.delete_attr(kind, entity.uuid, attr)
    else:
        await client.replace_attr(kind, entity.uuid, attr, dedupe_values(attr, values))
    return True


def _flag(value: bool) -> list[str]:
    return [str(value).lower()]


class Reconciler:
    """Reconciles the declared entities of every kind."""

    def __init__(
        self,
        client: KanidmClient,
        state: ProvisionState,
        current: DirectoryState,
        result: SyncResult | None = None,
    ):
        self._client = client
        self.state = state
        self.current = current
        self.result = result or SyncResult()

    async def refresh(self, kind: EntityKind) -> None:
        """Refetch the snapshot of one kind."""
        logger.debug("Refreshing %s snapshot", kind.value)
        self.current.replace(kind, await self._client.list_entities(kind))

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.result.warnings.append(message)

    async def _create(self, kind: EntityKind, name: str, attrs: dict[str, list[str]]) -> None:
        ensure_name_available(self.current, kind, name)
        await self._client.create_entity(kind, name, attrs)
        self.result.created.append(f"{kind.value}/{name}")
        await self.refresh(kind)

    async def _delete(self, kind: EntityKind, name: str) -> None:
        await self._client.delete_entity(kind, name)
        self.result.deleted.append(f"{kind.value}/{name}")
        await self.refresh(kind)

    async def _sync_attr(self, kind: EntityKind, name: str, attr: str, values: list[str]) -> None:
        if await sync_attr(self._client, self.current, kind, name, attr, values):
            self.result.updated.append(f"{kind.value}/{name} {attr}")

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def sync_groups(self) -> None:
        """Create declared groups and delete absent ones.

        Members are synced separately, once all entities exist.
        """
        logger.info("Syncing groups")
        for name, group in self.state.groups.items():
            exists = self.current.get(EntityKind.GROUP, name) is not None
            if group.present and not exists:
                await self._create(EntityKind.GROUP, name, {"name": [name]})
            elif not group.present and exists:
                await self._delete(EntityKind.GROUP, name)

    async def sync_group_members(self) -> None:
        logger.info("Syncing group members")
        for name, group in self.state.groups.items():
            if group.present:
                await self._sync_attr(EntityKind.GROUP, name, "member", group.members)

    # -------------------------------------------------------------------------
    # Persons
    # -------------------------------------------------------------------------

    async def sync_persons(self) -> None:
        logger.info("Syncing persons")
        for name, person in self.state.persons.items():
            exists = self.current.get(EntityKind.PERSON, name) is not None
            if not person.present:
                if exists:
                    await self._delete(EntityKind.PERSON, name)
                continue

            if not exists:
                await self._create(
                    EntityKind.PERSON,
                    name,
                    {"name": [name], "displayname": [person.display_name]},
                )

            for attr, values in (
                ("displayname", [person.display_name]),
                ("legalname", [person.legal_name] if person.legal_name else []),
                ("mail", list(person.mail_addresses or [])),
            ):
                await self._sync_attr(EntityKind.PERSON, name, attr, values)

    # -------------------------------------------------------------------------
    # OAuth2 resource servers
    # -------------------------------------------------------------------------

    async def sync_oauth2s(self) -> None:
        logger.info("Syncing oauth2 resource servers")
        for name, oauth2 in self.state.systems.oauth2.items():
            if not oauth2.present:
                if self.current.get(EntityKind.OAUTH2, name) is not None:
                    await self._delete(EntityKind.OAUTH2, name)
                continue

            await self._ensure_oauth2(name, oauth2)
            await self._sync_oauth2_attrs(name, oauth2)
            await self._sync_scope_maps(name, oauth2, supplementary=False)
            await self._sync_scope_maps(name, oauth2, supplementary=True)
            await self._sync_claim_maps(name, oauth2)
            await self._sync_basic_secret(name, oauth2)
            await self._upload_image(name, oauth2)

    async def _ensure_oauth2(self, name: str, oauth2: Oauth2Config) -> None:
        """Create the client, recreating it if its public/basic type differs.

        The client type cannot be changed in place.
        """
        entity = self.current.get(EntityKind.OAUTH2, name)
        if entity is not None:
            if entity.is_public == oauth2.public:
                return
            logger.info(
                "Recreating oauth2 %s as %s client", name, "public" if oauth2.public else "basic"
            )
            await self._client.delete_entity(EntityKind.OAUTH2, name)
            self.result.deleted.append(f"oauth2/{name}")
        else:
            ensure_name_available(self.current, EntityKind.OAUTH2, name)

        await self._client.create_oauth2_client(
            name,
            oauth2.public,
            {
                "name": [name],
                "oauth2_rs_origin": oauth2.origin_urls,
                "oauth2_rs_origin_landing": [oauth2.origin_landing],
                "displayname": [oauth2.display_name],
            },
        )
        self.result.created.append(f"oauth2/{name}")
        await self.refresh(EntityKind.OAUTH2)

    async def _sync_oauth2_attr(self, name: str, attr: str, values: list[str]) -> None:
        entity = self.current.require(EntityKind.OAUTH2, name)
        if normalize_values(attr, entity.values(attr)) == normalize_values(attr, values):
            return
        await self._client.patch_entity_attrs(
            EntityKind.OAUTH2, name, {attr: dedupe_values(attr, values)}
        )
        self.result.updated.append(f"oauth2/{name} {attr}")

    async def _sync_oauth2_attrs(self, name: str, oauth2: Oauth2Config) -> None:
        attrs: list[tuple[str, list[str]]] = [
            ("displayname", [oauth2.display_name]),
            ("oauth2_rs_origin_landing", [oauth2.origin_landing]),
        ]
        if oauth2.public:
            if oauth2.allow_insecure_client_disable_pkce:
                self._warn(f"Ignoring allowInsecureClientDisablePkce for public client {name}")
            attrs.append(
                ("oauth2_allow_localhost_redirect", _flag(oauth2.enable_localhost_redirects))
            )
        else:
            if oauth2.enable_localhost_redirects:
                self._warn(f"Ignoring enableLocalhostRedirects for non-public client {name}")
            attrs.append(
                (
                    "oauth2_allow_insecure_client_disable_pkce",
                    _flag(oauth2.allow_insecure_client_disable_pkce),
                )
            )
        attrs += [
            ("oauth2_jwt_legacy_crypto_enable", _flag(oauth2.enable_legacy_crypto)),
            ("oauth2_prefer_short_username", _flag(oauth2.prefer_short_username)),
            ("oauth2_rs_origin", oauth2.origin_urls),
        ]
        for attr, values in attrs:
            await self._sync_oauth2_attr(name, attr, values)

    async def _sync_scope_maps(self, name: str, oauth2: Oauth2Config, supplementary: bool) -> None:
        attr = ATTR_SUP_SCOPE_MAP if supplementary else ATTR_SCOPE_MAP
        maps = oauth2.supplementary_scope_maps if supplementary else oauth2.scope_maps
        entries = self.current.require(EntityKind.OAUTH2, name).values(attr)

        for group, scopes in maps.items():
            want = sorted(set(scopes))
            if find_scopes(entries, group) == want:
                continue
            if not want:
                await self._client.delete_scope_map(name, group, supplementary)
            else:
                await self._client.update_scope_map(name, group, want, supplementary)
            self.result.updated.append(f"oauth2/{name} {attr}/{group}")

    async def _sync_claim_maps(self, name: str, oauth2: Oauth2Config) -> None:
        entries = self.current.require(EntityKind.OAUTH2, name).values(ATTR_CLAIM_MAP)

        for claim, claim_map in oauth2.claim_maps.items():
            join_type = JoinType.from_literal(claim_map.join_type)

            for group, values in claim_map.values_by_group.items():
                want = sorted(set(values))
                if find_claim_values(entries, claim, group) == want:
                    continue
                if not want:
                    await self._client.delete_claim_map(name, claim, group)
                else:
                    await self._client.update_claim_map(name, claim, group, want)
                self.result.updated.append(f"oauth2/{name} {ATTR_CLAIM_MAP}/{claim}/{group}")

            # A claim without any values has no join type on the server.
            if not any(claim_map.values_by_group.values()):
                continue
            if claim_join_type(entries, claim) != join_type:
                await self._client.update_claim_map_join(name, claim, join_type)
                self.result.updated.append(f"oauth2/{name} claim join {claim}={join_type.value}")

        if not oauth2.remove_orphaned_claim_maps:
            return
        for raw in entries:
            entry = decode_claim_map_entry(raw)
            declared = oauth2.claim_maps.get(entry.claim)
            if declared is not None and entry.group in declared.values_by_group:
                continue
            await self._client.delete_claim_map(name, entry.claim, entry.group)
            self.result.updated.append(
                f"oauth2/{name} {ATTR_CLAIM_MAP}/{entry.claim}/{entry.group} (orphaned)"
            )

    async def _sync_basic_secret(self, name: str, oauth2: Oauth2Config) -> None:
        if not oauth2.basic_secret_file:
            return
        if oauth2.public:
            self._warn(f"Ignoring basicSecretFile for public client {name}")
            return

        try:
            want = Path(oauth2.basic_secret_file).read_text().strip()
        except OSError as e:
            raise KanidmValidationError(
                f"Cannot read secret file {oauth2.basic_secret_file} for oauth2 {name}: {e}"
            ) from e

        if await self._client.get_basic_secret(name) == want:
            return
        await self._client.set_basic_secret(name, want)
        self.result.updated.append(f"oauth2/{name} basic secret")

    async def _upload_image(self, name: str, oauth2: Oauth2Config) -> None:
        if not oauth2.image_file:
            return
        content_type = image_content_type(oauth2.image_file)
        await self._client.upload_image(name, oauth2.image_file, content_type)
        self.result.updated.append(f"oauth2/{name} image")
