"""Declarative provisioning for Kanidm.

Reconciles groups, persons and OAuth2 resource servers declared in a state file
against a running Kanidm server.
"""

from kanidm_provision.client import KanidmClient
from kanidm_provision.models import GroupConfig, Oauth2Config, PersonConfig, ProvisionState
from kanidm_provision.provision import run_provision
from kanidm_provision.settings import ProvisionSettings
from kanidm_provision.sync import Reconciler, SyncResult

__all__ = [
    "GroupConfig",
    "KanidmClient",
    "Oauth2Config",
    "PersonConfig",
    "ProvisionSettings",
    "ProvisionState",
    "Reconciler",
    "SyncResult",
    "run_provision",
]
