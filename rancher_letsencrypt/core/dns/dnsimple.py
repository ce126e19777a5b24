"""DNSimple DNS-01 provider (API v2)."""

import logging
from typing import Optional

import httpx

from rancher_letsencrypt.core.dns.base import (
    HTTPDNSProvider,
    candidate_zones,
    relative_name,
    validation_name,
)
from rancher_letsencrypt.models.provider import DNSimpleCredentials

logger = logging.getLogger(__name__)


class DNSimpleProvider(HTTPDNSProvider):
    """Solve DNS-01 challenges with DNSimple-hosted zones."""

    name = "DNSimple"
    base_url = "https://api.dnsimple.com/v2"

    def __init__(
        self,
        credentials: DNSimpleCredentials,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._credentials = credentials
        self._account_id: Optional[str] = None

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._credentials.api_key.get_secret_value()}",
            "Accept": "application/json",
        }

    async def _get_account_id(self, domain: str) -> str:
        if self._account_id is None:
            response = await self._request("GET", "/whoami", domain=domain)
            account = (response.json().get("data") or {}).get("account")
            if not account:
                raise self._error(
                    "DNSimple token is not bound to an account",
                    domain=domain,
                    suggestion="Use an account API token rather than a user token",
                )
            self._account_id = str(account["id"])
        return self._account_id

    async def _find_zone(self, account_id: str, fqdn: str, domain: str) -> str:
        for zone in candidate_zones(fqdn):
            response = await self._request(
                "GET", f"/{account_id}/zones/{zone}", domain=domain, allow_status=(404,)
            )
            if response.status_code != 404:
                return zone
        raise self._error(
            f"Unable to find a DNSimple zone for {fqdn}",
            domain=domain,
            suggestion=f"Ensure the zone is hosted in the DNSimple account of {self._credentials.email}",
        )

    async def _find_records(self, account_id: str, zone: str, fqdn: str, token: str, domain: str) -> list[dict]:
        response = await self._request(
            "GET",
            f"/{account_id}/zones/{zone}/records",
            domain=domain,
            params={"name": relative_name(fqdn, zone), "type": "TXT"},
        )
        return [r for r in response.json().get("data", []) if r.get("content") == token]

    async def present(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        account_id = await self._get_account_id(domain)
        zone = await self._find_zone(account_id, fqdn, domain)

        if await self._find_records(account_id, zone, fqdn, token, domain):
            logger.info(f"TXT record {fqdn} already present in DNSimple")
            return

        await self._request(
            "POST",
            f"/{account_id}/zones/{zone}/records",
            domain=domain,
            json={"name": relative_name(fqdn, zone), "type": "TXT", "content": token, "ttl": self.ttl},
        )
        logger.info(f"Created TXT record {fqdn} in DNSimple")

    async def cleanup(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        account_id = await self._get_account_id(domain)
        zone = await self._find_zone(account_id, fqdn, domain)

        for record in await self._find_records(account_id, zone, fqdn, token, domain):
            await self._request(
                "DELETE",
                f"/{account_id}/zones/{zone}/records/{record['id']}",
                domain=domain,
                allow_status=(404,),
            )
            logger.info(f"Removed TXT record {fqdn} from DNSimple")
