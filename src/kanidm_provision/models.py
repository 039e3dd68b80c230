"""Pydantic models for the provisioning state file.

The state file is JSON with camelCase keys. Files without a ``.json`` suffix
are parsed as YAML.

Example structure:
    {
      "groups": {
        "grafana-admins": {"members": ["alice"]}
      },
      "persons": {
        "alice": {
          "displayName": "Alice",
          "mailAddresses": ["alice@example.com"]
        }
      },
      "systems": {
        "oauth2": {
          "grafana": {
            "displayName": "Grafana",
            "originUrl": "https://grafana.example.com/login/generic_oauth",
            "originLanding": "https://grafana.example.com/",
            "basicSecretFile": "${CREDENTIALS_DIRECTORY}/grafana-secret",
            "scopeMaps": {"grafana-admins": ["openid", "profile", "email"]},
            "claimMaps": {
              "groups": {
                "joinType": "array",
                "valuesByGroup": {"grafana-admins": ["admin"]}
              }
            }
          }
        }
      }
    }
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ${VAR} or ${VAR:-default}
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _expand_env(value: Any, where: str = "") -> Any:
    """Expand environment placeholders in every string of a loaded state.

    An unset or empty variable without a default is an error naming
    ``where``, the dotted key path of the value.
    """
    if isinstance(value, dict):
        return {k: _expand_env(v, f"{where}.{k}" if where else str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v, f"{where}[{i}]") for i, v in enumerate(value)]
    if not isinstance(value, str):
        return value

    def repl(m: re.Match[str]) -> str:
        var, default = m.group(1), m.group(2)
        val = os.getenv(var)
        if val:
            return val
        if default is None:
            raise ValueError(f"{where}: environment variable {var} is not set")
        return default

    return _ENV_PATTERN.sub(repl, value)


class _StateModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GroupConfig(_StateModel):
    """Desired state of a group."""

    present: bool = True
    members: list[str] = Field(default_factory=list, description="Member entity names")


class PersonConfig(_StateModel):
    """Desired state of a person."""

    present: bool = True
    display_name: str
    legal_name: str | None = None
    mail_addresses: list[str] | None = Field(
        default=None,
        description="Mail addresses, the first one is the primary address",
    )


class ClaimMapConfig(_StateModel):
    """Values of one claim, keyed by group."""

    join_type: str = Field(default="array", description="One of ssv, csv, array")
    values_by_group: dict[str, list[str]] = Field(default_factory=dict)


class Oauth2Config(_StateModel):
    """Desired state of an OAuth2 resource server."""

    present: bool = True
    public: bool = Field(default=False, description="Public (PKCE) instead of confidential client")
    display_name: str
    origin_url: str | list[str]
    origin_landing: str

    basic_secret_file: str | None = Field(
        default=None,
        description="File holding the client secret (confidential clients only)",
    )
    image_file: str | None = Field(default=None, description="Logo to upload")

    enable_localhost_redirects: bool = False
    enable_legacy_crypto: bool = False
    allow_insecure_client_disable_pkce: bool = False
    prefer_short_username: bool = False

    scope_maps: dict[str, list[str]] = Field(default_factory=dict)
    supplementary_scope_maps: dict[str, list[str]] = Field(default_factory=dict)
    remove_orphaned_claim_maps: bool = True
    claim_maps: dict[str, ClaimMapConfig] = Field(default_factory=dict)

    @property
    def origin_urls(self) -> list[str]:
        if isinstance(self.origin_url, str):
            return [self.origin_url]
        return list(dict.fromkeys(self.origin_url))


class SystemsConfig(_StateModel):
    oauth2: dict[str, Oauth2Config] = Field(default_factory=dict)


class ProvisionState(_StateModel):
    """Top-level desired state."""

    groups: dict[str, GroupConfig] = Field(default_factory=dict)
    persons: dict[str, PersonConfig] = Field(default_factory=dict)
    systems: SystemsConfig = Field(default_factory=SystemsConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "ProvisionState":
        """Load the state from a JSON or YAML file with env var interpolation."""
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"State file not found: {path}")

        text = p.read_text()
        raw = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
        if not isinstance(raw, dict):
            raise ValueError(f"State file must contain a mapping: {path}")

        # Resolve environment variables
        resolved = _expand_env(raw)

        return cls.model_validate(resolved)

    def declared_names(self) -> set[str]:
        """All entity names in the state, present or not."""
        return set(self.groups) | set(self.persons) | set(self.systems.oauth2)

    def present_names(self) -> set[str]:
        """Names of all entities that should exist."""
        names = {name for name, g in self.groups.items() if g.present}
        names |= {name for name, p in self.persons.items() if p.present}
        names |= {name for name, o in self.systems.oauth2.items() if o.present}
        return names
