"""A complete provisioning run."""

from __future__ import annotations

import logging

from kanidm_provision.client import KanidmClient
from kanidm_provision.models import ProvisionState
from kanidm_provision.sync import Reconciler, SyncResult
from kanidm_provision.tracking import ProvisionTracker, remove_orphans
from kanidm_provision.validation import validate_state

logger = logging.getLogger(__name__)


async def run_provision(
    client: KanidmClient,
    state: ProvisionState,
    auto_remove: bool = True,
) -> SyncResult:
    """Bring the server in line with ``state``.

    The client must already be authenticated. The state is validated before
    any request is made. Group members are synced only after every group,
    person and OAuth2 resource server exists, so members may reference any
    declared entity. Orphans are removed last.
    """
    declared = set(validate_state(state))

    current = await client.fetch_current_state()
    logger.info(
        "Found %d groups, %d persons, %d oauth2 resource servers",
        len(current.groups),
        len(current.persons),
        len(current.oauth2s),
    )

    tracker = ProvisionTracker(client)
    provisioned = await tracker.setup(current)

    reconciler = Reconciler(client, state, current)
    await reconciler.sync_groups()
    await reconciler.sync_persons()
    await reconciler.sync_oauth2s()
    await reconciler.sync_group_members()
    result = reconciler.result

    current = await client.fetch_current_state()
    result.tracked = await tracker.track(current, state.present_names())

    orphans = sorted(provisioned - declared)
    if not orphans:
        return result

    if auto_remove:
        deleted = await remove_orphans(client, current, provisioned, declared)
        result.orphans_deleted = [f"{kind.value}/{name}" for kind, name in deleted]
    else:
        result.orphans_kept = [name for name in orphans if current.kind_of(name) is not None]
        logger.info("Auto-removal disabled, keeping %d orphans", len(result.orphans_kept))

    return result
