"""Dyn Managed DNS DNS-01 provider (REST API, session token auth)."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from rancher_letsencrypt.core.dns.base import HTTPDNSProvider, candidate_zones, validation_name
from rancher_letsencrypt.models.provider import DynCredentials

logger = logging.getLogger(__name__)


class DynProvider(HTTPDNSProvider):
    """
    Solve DNS-01 challenges with Dyn-hosted zones.

    Every operation runs inside its own API session, and zone changes
    are published before the session is closed.
    """

    name = "Dyn"
    base_url = "https://api.dynect.net/REST"
    ttl = 60

    def __init__(
        self,
        credentials: DynCredentials,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._credentials = credentials

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    @asynccontextmanager
    async def _session(self, domain: str) -> AsyncIterator[dict]:
        response = await self._request(
            "POST",
            "/Session/",
            domain=domain,
            json={
                "customer_name": self._credentials.customer_name,
                "user_name": self._credentials.user_name,
                "password": self._credentials.password.get_secret_value(),
            },
        )
        token = (response.json().get("data") or {}).get("token")
        if not token:
            raise self._error("Dyn login did not return a session token", domain=domain)
        headers = {"Auth-Token": token}
        try:
            yield headers
        finally:
            try:
                await self._request("DELETE", "/Session/", domain=domain, headers=headers)
            except Exception as e:
                logger.warning(f"Failed to close Dyn session: {e}")

    async def _find_zone(self, fqdn: str, domain: str, headers: dict) -> str:
        for zone in candidate_zones(fqdn):
            response = await self._request(
                "GET", f"/Zone/{zone}/", domain=domain, headers=headers, allow_status=(404,)
            )
            if response.status_code != 404:
                return zone
        raise self._error(
            f"Unable to find a Dyn zone for {fqdn}",
            domain=domain,
            suggestion="Ensure the zone is hosted in the configured Dyn customer account",
        )

    async def _find_records(self, zone: str, fqdn: str, token: str, domain: str, headers: dict) -> list[str]:
        """Return API paths of TXT records at `fqdn` holding `token`."""
        response = await self._request(
            "GET", f"/TXTRecord/{zone}/{fqdn}/", domain=domain, headers=headers, allow_status=(404,)
        )
        if response.status_code == 404:
            return []

        matches = []
        for uri in response.json().get("data") or []:
            path = uri.removeprefix("/REST")
            detail = await self._request("GET", path, domain=domain, headers=headers, allow_status=(404,))
            if detail.status_code == 404:
                continue
            rdata = (detail.json().get("data") or {}).get("rdata") or {}
            if rdata.get("txtdata") == token:
                matches.append(path)
        return matches

    async def _publish(self, zone: str, domain: str, headers: dict) -> None:
        await self._request("PUT", f"/Zone/{zone}/", domain=domain, headers=headers, json={"publish": True})

    async def present(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        async with self._session(domain) as headers:
            zone = await self._find_zone(fqdn, domain, headers)
            if await self._find_records(zone, fqdn, token, domain, headers):
                logger.info(f"TXT record {fqdn} already present in Dyn")
                return

            await self._request(
                "POST",
                f"/TXTRecord/{zone}/{fqdn}/",
                domain=domain,
                headers=headers,
                json={"rdata": {"txtdata": token}, "ttl": str(self.ttl)},
            )
            await self._publish(zone, domain, headers)
            logger.info(f"Created TXT record {fqdn} in Dyn")

    async def cleanup(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        async with self._session(domain) as headers:
            zone = await self._find_zone(fqdn, domain, headers)
            paths = await self._find_records(zone, fqdn, token, domain, headers)
            for path in paths:
                await self._request("DELETE", path, domain=domain, headers=headers, allow_status=(404,))
            if paths:
                await self._publish(zone, domain, headers)
                logger.info(f"Removed TXT record {fqdn} from Dyn")
