"""Pre-flight validation of the desired state.

All entities share one namespace on the server, so a name may only be declared
once across groups, persons and OAuth2 resource servers. Every problem found is
reported in a single error before any request is made.
"""

from __future__ import annotations

import logging

from kanidm_provision.codec import JoinType, image_content_type
from kanidm_provision.entities import DirectoryState, EntityKind
from kanidm_provision.errors import KanidmValidationError
from kanidm_provision.models import ProvisionState

logger = logging.getLogger(__name__)

# Group whose members are all entities ever created by the provisioner.
PROVISION_TRACKING_GROUP = "ext_idm_provisioned_entities"


def declared_kinds(state: ProvisionState) -> dict[str, list[EntityKind]]:
    """Map every declared name to the kinds declaring it."""
    result: dict[str, list[EntityKind]] = {}
    for name in state.groups:
        result.setdefault(name, []).append(EntityKind.GROUP)
    for name in state.persons:
        result.setdefault(name, []).append(EntityKind.PERSON)
    for name in state.systems.oauth2:
        result.setdefault(name, []).append(EntityKind.OAUTH2)
    return result


def validate_state(state: ProvisionState) -> list[str]:
    """Validate the state and return all declared entity names.

    Raises:
        KanidmValidationError: listing every problem found.
    """
    problems: list[str] = []

    names = declared_kinds(state)
    for name in sorted(names):
        kinds = names[name]
        if len(kinds) > 1:
            problems.append(
                f"{name} is used multiple times as {', '.join(k.value for k in kinds)}"
            )

    if PROVISION_TRACKING_GROUP in names:
        problems.append(f"{PROVISION_TRACKING_GROUP} is reserved for provision tracking")

    for name, oauth2 in state.systems.oauth2.items():
        for claim, claim_map in oauth2.claim_maps.items():
            try:
                JoinType.from_literal(claim_map.join_type)
            except KanidmValidationError as e:
                problems.append(f"oauth2 {name} claim {claim}: {e}")
        if oauth2.image_file:
            try:
                image_content_type(oauth2.image_file)
            except KanidmValidationError as e:
                problems.append(f"oauth2 {name}: {e}")

    if problems:
        raise KanidmValidationError(
            "Invalid state:\n" + "\n".join(f"  - {p}" for p in problems)
        )

    logger.debug("Validated %d declared entities", len(names))
    return sorted(names)


def ensure_name_available(current: DirectoryState, kind: EntityKind, name: str) -> None:
    """Refuse to create ``name`` if another kind already uses it on the server."""
    existing = current.kind_of(name)
    if existing is not None and existing != kind:
        raise KanidmValidationError(
            f"Cannot create {kind.value} '{name}' because the name is already "
            f"in use by a {existing.value}"
        )
