"""
Rancher certificate store client.

Finds the published certificate by name and creates or updates it.
Certificate, chain and key are always written together in a single
request so the store never serves a mismatched pair.
"""

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from rancher_letsencrypt.config import Settings
from rancher_letsencrypt.core.acme_service import parse_certificate
from rancher_letsencrypt.models.certificate import CERT_DESCRIPTION, CertificateBundle, StoredCertificateRef

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for certificate store operations."""

    def __init__(self, message: str, name: str = None, suggestion: str = None):
        self.message = message
        self.name = name
        self.suggestion = suggestion
        super().__init__(message)


class StoreUnreachableError(StoreError):
    """Rancher API could not be reached or failed server-side."""

    pass


class NotAuthorizedError(StoreError):
    """Rancher API rejected the API key pair."""

    pass


class ConflictingNameError(StoreError):
    """More than one certificate carries the name, or the name is taken."""

    pass


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a Rancher timestamp (ISO 8601 or RFC 1123), normalizing to aware UTC."""
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        try:
            dt = parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            logger.warning(f"Unrecognized certificate expiry format: {value}")
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _resource_id(resource: dict) -> str:
    if resource.get("id") is None:
        name = resource.get("name")
        raise StoreError(f"Rancher returned a certificate resource without an id (name={name!r})", name=name)
    return str(resource["id"])


def ref_from_resource(resource: dict) -> StoredCertificateRef:
    """Build a StoredCertificateRef from a Rancher certificate resource."""
    expiry = None
    issuer = resource.get("issuer")
    domains: tuple = ()

    cert_pem = resource.get("cert")
    if cert_pem:
        try:
            details = parse_certificate(cert_pem.encode("utf-8"))
            expiry = details["not_after"]
            issuer = details["issuer_organization"] or details["issuer"]
            domains = tuple(details["alt_names"])
        except ValueError as e:
            logger.warning(f"Could not parse stored certificate '{resource.get('name')}': {e}")

    if expiry is None:
        expiry = _parse_timestamp(resource.get("expiresAt"))
    if not domains:
        domains = tuple(resource.get("subjectAlternativeNames") or ())

    return StoredCertificateRef(
        id=_resource_id(resource),
        name=resource.get("name", ""),
        current_expiry=expiry,
        issuer=issuer,
        domains=domains,
    )


class RancherService:
    """
    Client for the Rancher certificate API.

    Authenticates with the environment API key pair and bounds every
    request by the configured timeout.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        transition_timeout: float = 60.0,
        transition_interval: float = 2.0,
    ):
        self.settings = settings
        self._transport = transport
        self._transition_timeout = transition_timeout
        self._transition_interval = transition_interval
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.cattle_url,
                auth=(self.settings.cattle_access_key, self.settings.cattle_secret_key.get_secret_value()),
                headers={"Accept": "application/json"},
                timeout=self.settings.store_request_timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, name: str = None, **kwargs: Any) -> dict:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise StoreUnreachableError(
                f"Rancher API unreachable: {e}",
                name=name,
                suggestion="Check CATTLE_URL and network access to the Rancher server",
            ) from e

        if response.status_code in (401, 403):
            raise NotAuthorizedError(
                f"Rancher API rejected credentials (HTTP {response.status_code})",
                name=name,
                suggestion="Check CATTLE_ACCESS_KEY / CATTLE_SECRET_KEY and the key's environment access",
            )
        if response.status_code == 409:
            raise ConflictingNameError(f"Rancher reported a conflict for certificate '{name}'", name=name)
        if response.status_code >= 500:
            raise StoreUnreachableError(f"Rancher API error (HTTP {response.status_code})", name=name)
        if response.is_error:
            raise StoreError(
                f"Rancher API request {method} {path} failed with HTTP {response.status_code}",
                name=name,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise StoreUnreachableError(
                f"Rancher API returned a non-JSON response to {method} {path}",
                name=name,
                suggestion="Check that CATTLE_URL points at the Rancher API and not a login page or proxy",
            ) from e
        if not isinstance(body, dict):
            raise StoreUnreachableError(f"Rancher API returned an unexpected response to {method} {path}", name=name)
        return body

    async def list_certificates(self, name: str) -> list[dict]:
        """List live certificates whose name matches exactly (case-sensitive)."""
        body = await self._request(
            "GET", "/certificates", name=name, params={"name": name, "removed_null": "1"}
        )
        return [c for c in body.get("data", []) if c.get("name") == name and c.get("state") != "removed"]

    async def find_certificate(self, name: str) -> Optional[StoredCertificateRef]:
        """
        Find the certificate published under `name`.

        Returns:
            StoredCertificateRef, or None if no certificate has the name

        Raises:
            ConflictingNameError if several certificates share the name
        """
        matches = await self.list_certificates(name)
        if not matches:
            return None
        if len(matches) > 1:
            raise ConflictingNameError(
                f"Found {len(matches)} certificates named '{name}'",
                name=name,
                suggestion="Remove the duplicates in Rancher or set CERT_NAME to a unique name",
            )
        return ref_from_resource(matches[0])

    def _payload(self, bundle: CertificateBundle) -> dict:
        return {
            "description": CERT_DESCRIPTION,
            "cert": bundle.certificate_pem,
            "certChain": bundle.chain_pem,
            "key": bundle.private_key_pem.get_secret_value(),
        }

    async def create_certificate(self, name: str, bundle: CertificateBundle) -> dict:
        resource = await self._request("POST", "/certificates", name=name, json={"name": name, **self._payload(bundle)})
        logger.info(f"Created Rancher certificate '{name}' ({resource.get('id')})")
        return await self._wait_transition(resource, name)

    async def update_certificate(self, cert_id: str, name: str, bundle: CertificateBundle) -> dict:
        resource = await self._request("PUT", f"/certificates/{cert_id}", name=name, json=self._payload(bundle))
        logger.info(f"Updated Rancher certificate '{name}' ({cert_id})")
        return await self._wait_transition(resource, name)

    async def _wait_transition(self, resource: dict, name: str) -> dict:
        """Wait for a written resource to settle, bounded by the transition timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._transition_timeout

        while resource.get("transitioning") == "yes":
            if loop.time() >= deadline:
                logger.warning(f"Certificate '{name}' still transitioning after {self._transition_timeout:.0f}s")
                return resource
            await asyncio.sleep(self._transition_interval)
            resource = await self._request("GET", f"/certificates/{_resource_id(resource)}", name=name)

        if resource.get("transitioning") == "error":
            raise StoreError(
                f"Rancher failed to apply certificate '{name}': {resource.get('transitioningMessage')}",
                name=name,
            )
        return resource

    async def reconcile(self, name: str, bundle: CertificateBundle) -> StoredCertificateRef:
        """
        Publish `bundle` under `name`, creating or updating as needed.

        Returns:
            Reference to the written certificate

        Raises:
            StoreError subclass if the store could not be updated
        """
        matches = await self.list_certificates(name)
        if len(matches) > 1:
            raise ConflictingNameError(
                f"Found {len(matches)} certificates named '{name}'",
                name=name,
                suggestion="Remove the duplicates in Rancher or set CERT_NAME to a unique name",
            )

        if matches:
            resource = await self.update_certificate(_resource_id(matches[0]), name, bundle)
        else:
            resource = await self.create_certificate(name, bundle)

        return StoredCertificateRef(
            id=_resource_id(resource),
            name=name,
            current_expiry=bundle.expiry_date,
            issuer=bundle.issuer,
            domains=bundle.domains,
        )
