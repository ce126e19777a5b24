"""DigitalOcean DNS-01 provider."""

import logging
from typing import Optional

import httpx

from rancher_letsencrypt.core.dns.base import (
    HTTPDNSProvider,
    candidate_zones,
    relative_name,
    validation_name,
)
from rancher_letsencrypt.models.provider import DigitalOceanCredentials

logger = logging.getLogger(__name__)


class DigitalOceanProvider(HTTPDNSProvider):
    """Solve DNS-01 challenges with DigitalOcean-hosted domains."""

    name = "DigitalOcean"
    base_url = "https://api.digitalocean.com/v2"
    ttl = 30

    def __init__(
        self,
        credentials: DigitalOceanCredentials,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._credentials = credentials

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._credentials.access_token.get_secret_value()}"}

    async def _find_zone(self, fqdn: str, domain: str) -> str:
        for zone in candidate_zones(fqdn):
            response = await self._request("GET", f"/domains/{zone}", domain=domain, allow_status=(404,))
            if response.status_code != 404:
                return zone
        raise self._error(
            f"Unable to find a DigitalOcean domain for {fqdn}",
            domain=domain,
            suggestion="Ensure the domain is managed in DigitalOcean DNS",
        )

    async def _find_records(self, zone: str, fqdn: str, token: str, domain: str) -> list[dict]:
        response = await self._request(
            "GET",
            f"/domains/{zone}/records",
            domain=domain,
            params={"type": "TXT", "name": fqdn, "per_page": 200},
        )
        name = relative_name(fqdn, zone)
        return [
            r for r in response.json().get("domain_records", [])
            if r.get("name") == name and r.get("data") == token
        ]

    async def present(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        zone = await self._find_zone(fqdn, domain)

        if await self._find_records(zone, fqdn, token, domain):
            logger.info(f"TXT record {fqdn} already present in DigitalOcean")
            return

        await self._request(
            "POST",
            f"/domains/{zone}/records",
            domain=domain,
            json={"type": "TXT", "name": relative_name(fqdn, zone), "data": token, "ttl": self.ttl},
        )
        logger.info(f"Created TXT record {fqdn} in DigitalOcean")

    async def cleanup(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        zone = await self._find_zone(fqdn, domain)

        for record in await self._find_records(zone, fqdn, token, domain):
            await self._request(
                "DELETE", f"/domains/{zone}/records/{record['id']}", domain=domain, allow_status=(404,)
            )
            logger.info(f"Removed TXT record {fqdn} from DigitalOcean")
