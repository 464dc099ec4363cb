"""Identity provider admin API client.

Wraps the admin REST API for managing:
- Groups and group membership
- Persons and their attributes
- OAuth2 resource servers, scope maps, supplementary scope maps and claim maps
- Write-only resource server attachments (basic secret, image)

Every mutating call is idempotent at the API layer: creates tolerate an
existing entry, deletes and detaches tolerate a missing one, and attribute
writes are absolute sets.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from idm.provision.config import ProvisionSettings
from idm.provision.errors import (
    ApiError,
    ConflictError,
    FatalError,
    NotFoundError,
    TransientError,
)
from idm.provision.state.models import EntityKind

logger = logging.getLogger(__name__)

ENDPOINT_SELF = "/v1/self"
ENDPOINT_OAUTH2 = EntityKind.OAUTH2.endpoint


class IdmAdminClient:
    """Async client for the identity provider admin REST API."""

    def __init__(
        self,
        settings: ProvisionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "IdmAdminClient":
        """Async context manager entry."""
        if not self._settings.has_token:
            raise FatalError(
                "No admin token provided. Set IDM_PROVISION_ADMIN_TOKEN"
            )
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            verify=not self._settings.accept_invalid_certs,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._settings.admin_token}"},
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

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def authenticate(self) -> dict[str, Any]:
        """Check that the bearer token is accepted.

        Returns the identity the token belongs to.
        """
        whoami = await self._request("GET", ENDPOINT_SELF)
        if not isinstance(whoami, dict):
            raise FatalError("Invalid json response from /v1/self")
        logger.info("Authenticated against %s", self._settings.base_url)
        return whoami

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        files: dict[str, Any] | None = None,
        expected_status: list[int] | None = None,
    ) -> Any:
        """Send a request to the admin API and decode the response."""
        if self._client is None:
            raise RuntimeError("Client used outside of its async context")

        try:
            response = await self._client.request(method, path, json=json, files=files)
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        return self._handle_response(response, expected_status)

    def _handle_response(
        self,
        response: httpx.Response,
        expected_status: list[int] | None = None,
    ) -> Any:
        """Handle API response."""
        expected = expected_status or [200]
        status = response.status_code

        if status in (401, 403):
            raise FatalError(
                "Authentication expired or invalid",
                status_code=status,
            )

        if status == 404:
            raise NotFoundError(
                f"Resource not found: {response.request.url}",
                status_code=404,
            )

        if status == 409:
            raise ConflictError(
                f"Resource already exists: {response.text}",
                status_code=409,
            )

        if status >= 500:
            raise TransientError(
                f"Server error {status}: {response.text}",
                status_code=status,
            )

        if status not in expected:
            raise ApiError(
                f"Unexpected response {status}: {response.text}",
                status_code=status,
            )

        if status == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as e:
            raise FatalError(
                f"Response from {response.request.url} wasn't json",
                status_code=status,
            ) from e

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def list_entities(self, kind: EntityKind) -> list[dict[str, Any]]:
        """List all entries of ``kind``."""
        entities = await self._request("GET", kind.endpoint)
        if not isinstance(entities, list):
            raise FatalError(
                f"Invalid json response from {kind.endpoint}: toplevel is not an array"
            )
        return entities

    async def create_entity(
        self,
        kind: EntityKind,
        attrs: dict[str, list[str]],
        public: bool = False,
    ) -> None:
        """Create an entry, or do nothing if it already exists."""
        endpoint = kind.endpoint
        if kind is EntityKind.OAUTH2:
            endpoint = f"{endpoint}/{'_public' if public else '_basic'}"

        name = attrs["name"][0]
        logger.debug("Creating %s: %s", kind.value, name)
        try:
            await self._request(
                "POST", endpoint, json={"attrs": attrs}, expected_status=[200, 201, 204]
            )
        except ConflictError:
            logger.warning("%s already exists (race condition?): %s", kind.value, name)
            return
        logger.info("Created %s: %s", kind.value, name)

    async def delete_entity(self, kind: EntityKind, name: str) -> None:
        """Delete an entry, or do nothing if it is already gone."""
        logger.debug("Deleting %s: %s", kind.value, name)
        try:
            await self._request(
                "DELETE", f"{kind.endpoint}/{name}", expected_status=[200, 204]
            )
        except NotFoundError:
            logger.info("Already deleted %s: %s", kind.value, name)
            return
        logger.info("Deleted %s: %s", kind.value, name)

    async def set_attr(
        self, kind: EntityKind, name: str, attr: str, values: list[str]
    ) -> None:
        """Replace all values of ``attr``. An empty list purges the attribute."""
        path = f"{kind.endpoint}/{name}/_attr/{attr}"
        if values:
            logger.debug("Setting %s/%s %s=%s", kind.value, name, attr, values)
            await self._request("PUT", path, json=values, expected_status=[200, 204])
        else:
            logger.debug("Purging %s/%s %s", kind.value, name, attr)
            await self._request("DELETE", path, expected_status=[200, 204])

    async def remove_attr_values(
        self, kind: EntityKind, name: str, attr: str, values: list[str]
    ) -> None:
        """Remove specific values from ``attr``."""
        logger.debug("Removing %s from %s/%s %s", values, kind.value, name, attr)
        try:
            await self._request(
                "DELETE",
                f"{kind.endpoint}/{name}/_attr/{attr}",
                json=values,
                expected_status=[200, 204],
            )
        except NotFoundError:
            logger.info("Nothing to remove from %s/%s %s", kind.value, name, attr)

    # -------------------------------------------------------------------------
    # OAuth2 resource servers
    # -------------------------------------------------------------------------

    async def patch_oauth2(self, name: str, attrs: dict[str, list[str]]) -> None:
        """Set attributes of a resource server."""
        logger.debug("Patching oauth2 %s: %s", name, sorted(attrs))
        await self._request(
            "PATCH",
            f"{ENDPOINT_OAUTH2}/{name}",
            json={"attrs": attrs},
            expected_status=[200, 204],
        )

    async def set_scope_map(
        self, name: str, group: str, scopes: list[str], supplementary: bool = False
    ) -> None:
        """Replace the scopes granted to ``group`` on resource server ``name``."""
        path = f"{ENDPOINT_OAUTH2}/{name}/{_scope_map_endpoint(supplementary)}/{group}"
        await self._request("POST", path, json=scopes, expected_status=[200, 204])

    async def delete_scope_map(
        self, name: str, group: str, supplementary: bool = False
    ) -> None:
        """Remove the scope map of ``group`` on resource server ``name``."""
        path = f"{ENDPOINT_OAUTH2}/{name}/{_scope_map_endpoint(supplementary)}/{group}"
        try:
            await self._request("DELETE", path, expected_status=[200, 204])
        except NotFoundError:
            pass

    async def set_claim_map(
        self, name: str, claim: str, group: str, values: list[str]
    ) -> None:
        """Replace the values of ``claim`` for members of ``group``."""
        await self._request(
            "POST",
            f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}/{group}",
            json=values,
            expected_status=[200, 204],
        )

    async def delete_claim_map(self, name: str, claim: str, group: str) -> None:
        """Remove the values of ``claim`` for members of ``group``."""
        try:
            await self._request(
                "DELETE",
                f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}/{group}",
                expected_status=[200, 204],
            )
        except NotFoundError:
            pass

    async def set_claim_map_join(self, name: str, claim: str, join_type: str) -> None:
        """Set how multiple values of ``claim`` are joined."""
        await self._request(
            "POST",
            f"{ENDPOINT_OAUTH2}/{name}/_claimmap/{claim}",
            json=join_type,
            expected_status=[200, 204],
        )

    async def set_basic_secret(self, name: str, secret_file: Path) -> None:
        """Upload the basic secret read from ``secret_file``."""
        secret = _read_attachment(secret_file).decode().strip()
        logger.debug("Setting basic secret of oauth2 %s from %s", name, secret_file)
        await self.patch_oauth2(name, {"oauth2_rs_basic_secret": [secret]})

    async def upload_image(self, name: str, image_file: Path) -> None:
        """Upload the image shown for resource server ``name``."""
        content = _read_attachment(image_file)
        logger.debug("Uploading image of oauth2 %s from %s", name, image_file)
        await self._request(
            "POST",
            f"{ENDPOINT_OAUTH2}/{name}/_image",
            files={"image": (image_file.name, content, _image_content_type(image_file))},
            expected_status=[200, 204],
        )


def _scope_map_endpoint(supplementary: bool) -> str:
    return "_sup_scopemap" if supplementary else "_scopemap"


def _read_attachment(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ApiError(f"Cannot read {path}: {e}") from e


def _image_content_type(path: Path) -> str:
    return {
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".gif": "image/gif",
        ".svg": "image/svg+xml",
        ".webp": "image/webp",
    }.get(path.suffix.lower(), "application/octet-stream")
