"""
Base classes for DNS-01 challenge providers.

A provider publishes and removes the `_acme-challenge` TXT record
that proves control of a domain. `present` is idempotent and
`cleanup` treats an already-absent record as success.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterator, Optional

import httpx

logger = logging.getLogger(__name__)

CHALLENGE_LABEL = "_acme-challenge"


class ChallengeError(Exception):
    """DNS provider rejected or failed a record operation."""

    def __init__(self, message: str, domain: str = None, provider: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.provider = provider
        self.suggestion = suggestion
        super().__init__(message)


def validation_name(domain: str) -> str:
    """TXT record name validated for a domain (wildcard prefix stripped)."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"{CHALLENGE_LABEL}.{domain}"


def candidate_zones(fqdn: str) -> Iterator[str]:
    """
    Yield parent zones of a record name, most specific first.

    "_acme-challenge.www.example.com" yields "www.example.com",
    then "example.com". Bare TLDs are never yielded.
    """
    labels = fqdn.rstrip(".").split(".")
    for i in range(1, len(labels) - 1):
        yield ".".join(labels[i:])


def relative_name(fqdn: str, zone: str) -> str:
    """Record name relative to its zone ("@" for the apex)."""
    fqdn = fqdn.rstrip(".")
    zone = zone.rstrip(".")
    if fqdn == zone:
        return "@"
    return fqdn[: -(len(zone) + 1)]


class DNSProvider(ABC):
    """Publishes and removes DNS-01 validation records."""

    name: str = "dns"
    ttl: int = 120

    @abstractmethod
    async def present(self, domain: str, token: str) -> None:
        """Create the validation TXT record for `domain` with value `token`."""

    @abstractmethod
    async def cleanup(self, domain: str, token: str) -> None:
        """Remove the validation TXT record for `domain` with value `token`."""

    async def aclose(self) -> None:
        """Release any held connections."""

    def _error(self, message: str, domain: str = None, suggestion: str = None) -> ChallengeError:
        return ChallengeError(message, domain=domain, provider=self.name, suggestion=suggestion)


class HTTPDNSProvider(DNSProvider):
    """
    DNS provider backed by a JSON REST API.

    Subclasses set `base_url` and supply authentication headers.
    """

    base_url: str = ""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict:
        return {}

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        domain: str = None,
        allow_status: tuple = (),
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, mapping transport and HTTP failures to ChallengeError.

        Status codes listed in `allow_status` are returned to the caller
        instead of raising.
        """
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise self._error(
                f"{self.name} API timed out: {e}",
                domain=domain,
                suggestion="Check connectivity to the DNS provider API",
            ) from e
        except httpx.RequestError as e:
            raise self._error(
                f"{self.name} API unreachable: {e}",
                domain=domain,
                suggestion="Check connectivity to the DNS provider API",
            ) from e

        if response.status_code in allow_status:
            return response
        if response.status_code in (401, 403):
            raise self._error(
                f"{self.name} API rejected credentials (HTTP {response.status_code})",
                domain=domain,
                suggestion="Verify the DNS provider credentials",
            )
        if response.is_error:
            logger.debug(f"{self.name} {method} {path} failed: {response.text}")
            raise self._error(
                f"{self.name} API request {method} {path} failed with HTTP {response.status_code}",
                domain=domain,
            )
        return response
