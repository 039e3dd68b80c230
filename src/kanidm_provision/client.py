"""Kanidm REST API client.

Wraps the endpoints the provisioner needs for managing:
- Groups and their members
- Persons
- OAuth2 resource servers (scope maps, claim maps, secrets, images)

Requests are issued strictly one at a time; there is no retry layer.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from kanidm_provision.codec import JoinType
from kanidm_provision.entities import (
    ENDPOINT_AUTH,
    ENDPOINT_OAUTH2,
    DirectoryState,
    Entity,
    EntityKind,
)
from kanidm_provision.errors import (
    KanidmAuthError,
    KanidmTransportError,
    KanidmValidationError,
)
from kanidm_provision.settings import ProvisionSettings

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-KANIDM-AUTH-SESSION-ID"


class KanidmClient:
    """Async client for the Kanidm REST API."""

    def __init__(
        self,
        settings: ProvisionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._auth_headers: dict[str, str] = {}

    async def __aenter__(self) -> "KanidmClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            verify=not self._settings.accept_invalid_certs,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def settings(self) -> ProvisionSettings:
        """Get settings."""
        return self._settings

    @property
    def http(self) -> httpx.AsyncClient:
        """The open HTTP client."""
        if self._client is None:
            raise KanidmTransportError("Client not opened")
        return self._client

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def login(self) -> None:
        """Authenticate with the credentials from the settings."""
        if not self._settings.has_credentials:
            raise KanidmAuthError(
                "No credentials provided. Set KANIDM_PROVISION_IDM_ADMIN_TOKEN"
            )
        await self.authenticate(self._settings.idm_admin_user, self._settings.idm_admin_token)

    async def authenticate(self, user: str, password: str) -> tuple[str, str]:
        """Run the password authentication handshake.

        Returns tuple of (session_id, token). Subsequent requests carry both.
        """
        logger.debug("Authenticating as %s", user)

        init = await self._auth_step({"init": user})
        session_id = init.headers.get(SESSION_HEADER)
        if not session_id:
            raise KanidmAuthError("No session id was returned by the server")

        await self._auth_step({"begin": "password"}, session_id)
        cred = await self._auth_step({"cred": {"password": password}}, session_id)

        try:
            payload = cred.json()
        except ValueError:
            raise KanidmAuthError("Authentication response wasn't json") from None
        state = payload.get("state") if isinstance(payload, dict) else None
        token = state.get("success") if isinstance(state, dict) else None
        if not isinstance(token, str):
            raise KanidmAuthError(
                f"No token found in response (incorrect password?): {payload!r}"
            )

        self._auth_headers = {
            SESSION_HEADER: session_id,
            "Authorization": f"Bearer {token}",
        }
        logger.info("Authenticated as %s", user)
        return session_id, token

    async def _auth_step(self, step: dict[str, Any], session_id: str | None = None) -> httpx.Response:
        headers = {SESSION_HEADER: session_id} if session_id else {}
        try:
            response = await self.http.post(ENDPOINT_AUTH, json={"step": step}, headers=headers)
        except httpx.HTTPError as e:
            raise KanidmTransportError(f"Authentication request failed: {e}") from e
        if not response.is_success:
            raise KanidmAuthError(
                f"Authentication failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
                response=response.text,
            )
        return response

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request."""
        if not self._auth_headers:
            raise KanidmAuthError("Not authenticated")
        try:
            response = await self.http.request(
                method, path, headers=self._auth_headers, json=json, files=files
            )
        except httpx.HTTPError as e:
            raise KanidmTransportError(f"{method} {path} failed: {e}") from e
        return self._handle_response(method, path, response)

    def _handle_response(self, method: str, path: str, response: httpx.Response) -> Any:
        """Handle API response."""
        if response.status_code == 401:
            raise KanidmAuthError(
                "Authentication expired or invalid",
                status_code=401,
                response=response.text,
            )

        if not response.is_success:
            raise KanidmTransportError(
                f"Server returned unsuccessful HTTP status ({response.status_code}) "
                f"for {method} {path}: {response.text}",
                status_code=response.status_code,
                response=response.text,
            )

        if not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            return response.text

    async def _get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def _post(self, path: str, json: Any = None) -> Any:
        return await self._request("POST", path, json=json)

    async def _put(self, path: str, json: Any = None) -> Any:
        return await self._request("PUT", path, json=json)

    async def _patch(self, path: str, json: Any = None) -> Any:
        return await self._request("PATCH", path, json=json)

    async def _delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def list_entities(self, kind: EntityKind) -> dict[str, Entity]:
        """List all entities of a kind, keyed by name."""
        data = await self._get(kind.endpoint)
        if not isinstance(data, list):
            raise KanidmValidationError(
                f"Invalid response for {kind.endpoint}: toplevel is not an array"
            )
        result: dict[str, Entity] = {}
        for item in data:
            entity = Entity.from_json(kind, item)
            if entity is not None:
                result[entity.name] = entity
        return result

    async def fetch_current_state(self) -> DirectoryState:
        """Fetch the current state of all managed entity kinds."""
        return DirectoryState(
            groups=await self.list_entities(EntityKind.GROUP),
            persons=await self.list_entities(EntityKind.PERSON),
            oauth2s=await self.list_entities(EntityKind.OAUTH2),
        )

    async def create_entity(self, kind: EntityKind, name: str, attrs: dict[str, list[str]]) -> None:
        """Create a group or person."""
        logger.info("Creating %s/%s", kind.endpoint, name)
        await self._post(kind.endpoint, json={"attrs": attrs})

    async def create_oauth2_client(
        self, name: str, public: bool, attrs: dict[str, list[str]]
    ) -> None:
        """Create an OAuth2 resource server of the public or basic variant."""
        endpoint = f"{ENDPOINT_OAUTH2}/{'_public' if public else '_basic'}"
        logger.info("Creating %s/%s", endpoint, name)
        await self._post(endpoint, json={"attrs": attrs})

    async def delete_entity(self, kind: EntityKind, name: str) -> None:
        """Delete an entity by name."""
        logger.info("Deleting %s/%s", kind.endpoint, name)
        await self._delete(f"{kind.endpoint}/{name}")

    # -------------------------------------------------------------------------
    # Attributes
    # -------------------------------------------------------------------------

    async def replace_attr(self, kind: EntityKind, entity_id: str, attr: str, values: list[str]) -> None:
        """Overwrite all values of an attribute."""
        logger.info("Updating %s/%s/_attr/%s", kind.endpoint, entity_id, attr)
        await self._put(f"{kind.endpoint}/{entity_id}/_attr/{attr}", json=values)

    async def append_attr(self, kind: EntityKind, entity_id: str, attr: str, values: list[str]) -> None:
        """Add values to an attribute, keeping the existing ones."""
        logger.info("Appending to %s/%s/_attr/%s", kind.endpoint, entity_id, attr)
        await self._post(f"{kind.endpoint}/{entity_id}/_attr/{attr}", json=values)

    async def delete_attr(self, kind: EntityKind, entity_id: str, attr: str) -> None:
        """Remove an attribute entirely."""
        logger.info("Clearing %s/%s/_attr/%s", kind.endpoint, entity_id, attr)
        await self._delete(f"{kind.endpoint}/{entity_id}/_attr/{attr}")

    async def patch_entity_attrs(self, kind: EntityKind, name: str, attrs: dict[str, list[str]]) -> None:
        """Set several attributes of an entity at once."""
        logger.info("Updating %s/%s %s", kind.endpoint, name, ", ".join(sorted(attrs)))
        await self._patch(f"{kind.endpoint}/{name}", json={"attrs": attrs})

    # -------------------------------------------------------------------------
    # OAuth2 scope maps and claim maps
    # -------------------------------------------------------------------------

    @staticmethod
    def _scope_map_endpoint(supplementary: bool) -> str:
        return "_sup_scopemap" if supplementary else "_scopemap"

    async def update_scope_map(
        self, name: str, group: str, scopes: list[str], supplementary: bool = False
    ) -> None:
        """Create or replace the scopes granted to a group."""
        endpoint = self._scope_map_endpoint(supplementary)
        logger.info("Updating %s/%s %s/%s", ENDPOINT_OAUTH2, name, endpoint, group)
        await self._post(f"{ENDPOINT_OAUTH2}/{name}/{endpoint}/{group}", json=scopes)

    async def delete_scope_map(self, name: str, group: str, supplementary: bool = False) -> None:
        """Remove the scope map of a group."""
        endpoint = self._scope_map_endpoint(supplementary)
        logger.info("Removing %s/%s %s/%s", ENDPOINT_OAUTH2, name, endpoint, group)
        await self._delete(f"{ENDPOINT_OAUTH2}/{name}/{endpoint}/{group}")

    async def update_claim_map(self, name: str, claim: str, group: str, values: list[str]) -> None:
        """Create or replace the values of a claim for a group."""
        logger.info("Updating %s/%s _claimmap/%s/%s", ENDPOINT_OAUTH2, name, claim, group)
        await self._post(f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}/{group}", json=values)

    async def delete_claim_map(self, name: str, claim: str, group: str) -> None:
        """Remove the values of a claim for a group."""
        logger.info("Removing %s/%s _claimmap/%s/%s", ENDPOINT_OAUTH2, name, claim, group)
        await self._delete(f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}/{group}")

    async def update_claim_map_join(self, name: str, claim: str, join_type: JoinType) -> None:
        """Set how the values of a claim are joined."""
        logger.info(
            "Updating %s/%s _claimmap/%s join=%s", ENDPOINT_OAUTH2, name, claim, join_type.value
        )
        await self._post(f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}", json=join_type.value)

    # -------------------------------------------------------------------------
    # OAuth2 secrets and images
    # -------------------------------------------------------------------------

    async def get_basic_secret(self, name: str) -> str | None:
        """Get the client secret of a confidential client."""
        result = await self._get(f"{ENDPOINT_OAUTH2}/{name}/_basic_secret")
        return result if isinstance(result, str) else None

    async def set_basic_secret(self, name: str, secret: str) -> None:
        """Replace the client secret of a confidential client."""
        logger.info("Updating %s/%s basic secret", ENDPOINT_OAUTH2, name)
        await self._patch(
            f"{ENDPOINT_OAUTH2}/{name}", json={"attrs": {"oauth2_rs_basic_secret": [secret]}}
        )

    async def upload_image(self, name: str, path: str | Path, content_type: str) -> None:
        """Upload the logo of an OAuth2 resource server."""
        p = Path(path)
        try:
            content = p.read_bytes()
        except OSError as e:
            raise KanidmValidationError(f"Cannot read image file {p}: {e}") from e
        logger.info("Uploading %s/%s image %s", ENDPOINT_OAUTH2, name, p.name)
        await self._request(
            "POST",
            f"{ENDPOINT_OAUTH2}/{name}/_image",
            files={"image": (p.name, content, content_type)},
        )
