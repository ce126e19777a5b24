"""Cloudflare DNS-01 provider (API v4, global API key auth)."""

import logging
from typing import Optional

import httpx

from rancher_letsencrypt.core.dns.base import HTTPDNSProvider, candidate_zones, validation_name
from rancher_letsencrypt.models.provider import CloudflareCredentials

logger = logging.getLogger(__name__)

# "An identical record already exists."
_DUPLICATE_RECORD_CODES = {81057, 81058}


class CloudflareProvider(HTTPDNSProvider):
    """Solve DNS-01 challenges with Cloudflare-hosted zones."""

    name = "CloudFlare"
    base_url = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        credentials: CloudflareCredentials,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._credentials = credentials
        self._zone_ids: dict[str, str] = {}

    def _headers(self) -> dict:
        return {
            "X-Auth-Email": self._credentials.email,
            "X-Auth-Key": self._credentials.api_key.get_secret_value(),
            "Content-Type": "application/json",
        }

    async def _find_zone_id(self, fqdn: str, domain: str) -> str:
        for zone in candidate_zones(fqdn):
            if zone in self._zone_ids:
                return self._zone_ids[zone]
            response = await self._request("GET", "/zones", domain=domain, params={"name": zone})
            result = response.json().get("result") or []
            if result:
                self._zone_ids[zone] = result[0]["id"]
                logger.debug(f"Cloudflare zone for {fqdn} is {zone} ({result[0]['id']})")
                return result[0]["id"]
        raise self._error(
            f"Unable to find a Cloudflare zone for {fqdn}",
            domain=domain,
            suggestion="Ensure the domain's DNS is hosted by Cloudflare and the account can access it",
        )

    async def _find_records(self, zone_id: str, fqdn: str, token: str, domain: str) -> list[dict]:
        response = await self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            domain=domain,
            params={"type": "TXT", "name": fqdn, "content": token},
        )
        return [r for r in response.json().get("result") or [] if r.get("content") == token]

    async def present(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        zone_id = await self._find_zone_id(fqdn, domain)

        if await self._find_records(zone_id, fqdn, token, domain):
            logger.info(f"TXT record {fqdn} already present in Cloudflare")
            return

        response = await self._request(
            "POST",
            f"/zones/{zone_id}/dns_records",
            domain=domain,
            allow_status=(400,),
            json={"type": "TXT", "name": fqdn, "content": token, "ttl": self.ttl},
        )
        if response.status_code == 400:
            codes = {err.get("code") for err in response.json().get("errors", [])}
            if codes & _DUPLICATE_RECORD_CODES:
                logger.info(f"TXT record {fqdn} already present in Cloudflare")
                return
            raise self._error(f"Cloudflare rejected TXT record {fqdn}: {sorted(codes)}", domain=domain)
        logger.info(f"Created TXT record {fqdn} in Cloudflare")

    async def cleanup(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        zone_id = await self._find_zone_id(fqdn, domain)

        for record in await self._find_records(zone_id, fqdn, token, domain):
            await self._request(
                "DELETE",
                f"/zones/{zone_id}/dns_records/{record['id']}",
                domain=domain,
                allow_status=(404,),
            )
            logger.info(f"Removed TXT record {fqdn} from Cloudflare")
