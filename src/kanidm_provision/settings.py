"""Provisioning settings.

Settings can be provided via:
1. Environment variables (KANIDM_PROVISION_*)
2. CLI arguments (--url, --accept-invalid-certs, etc.)
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ADMIN_USER = "idm_admin"


class ProvisionSettings(BaseSettings):
    """Kanidm connection and provisioning settings."""

    model_config = SettingsConfigDict(
        env_prefix="KANIDM_PROVISION_",
        extra="ignore",
    )

    # Connection
    url: str = Field(
        default="https://localhost:8443",
        description="Kanidm base URL",
    )
    accept_invalid_certs: bool = Field(
        default=False,
        description="Accept invalid TLS certificates (testing instances only)",
    )
    timeout: float = Field(
        default=30.0,
        description="HTTP request timeout in seconds",
    )

    # Authentication
    idm_admin_user: str = Field(
        default=DEFAULT_ADMIN_USER,
        description="Account used to authenticate",
    )
    idm_admin_token: str | None = Field(
        default=None,
        description="Password of the admin account",
    )

    # Provisioning
    auto_remove: bool = Field(
        default=True,
        description="Delete previously provisioned entities missing from the state",
    )

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")

    @property
    def has_credentials(self) -> bool:
        return bool(self.idm_admin_user and self.idm_admin_token)

    def with_overrides(
        self,
        *,
        url: str | None = None,
        accept_invalid_certs: bool | None = None,
        idm_admin_user: str | None = None,
        auto_remove: bool | None = None,
    ) -> "ProvisionSettings":
        """Create a new settings instance with CLI overrides applied."""
        return ProvisionSettings(
            url=url or self.url,
            accept_invalid_certs=(
                self.accept_invalid_certs if accept_invalid_certs is None else accept_invalid_certs
            ),
            timeout=self.timeout,
            idm_admin_user=idm_admin_user or self.idm_admin_user,
            idm_admin_token=self.idm_admin_token,
            auto_remove=self.auto_remove if auto_remove is None else auto_remove,
        )
