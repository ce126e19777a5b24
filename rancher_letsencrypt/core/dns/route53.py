"""AWS Route53 DNS-01 provider."""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from rancher_letsencrypt.core.dns.base import DNSProvider, validation_name
from rancher_letsencrypt.models.provider import Route53Credentials

logger = logging.getLogger(__name__)

INSTRUCTIONS = (
    "Ensure the AWS key has route53:ListHostedZones, route53:ListResourceRecordSets, "
    "route53:ChangeResourceRecordSets and route53:GetChange permissions."
)


class Route53Provider(DNSProvider):
    """
    Solve DNS-01 challenges with AWS Route53 hosted zones.

    TXT values already present at the record name are preserved, so
    several validations for the same name can coexist.
    """

    name = "Route53"
    ttl = 10

    def __init__(
        self,
        credentials: Route53Credentials,
        change_timeout: float = 600.0,
        change_interval: float = 5.0,
        client: Any = None,
    ):
        self._credentials = credentials
        self._change_timeout = change_timeout
        self._change_interval = change_interval
        self._r53 = client

    @property
    def r53(self):
        """Lazy-create the boto3 Route53 client."""
        if self._r53 is None:
            self._r53 = boto3.client(
                "route53",
                aws_access_key_id=self._credentials.access_key,
                aws_secret_access_key=self._credentials.secret_key.get_secret_value(),
                region_name=self._credentials.region,
            )
        return self._r53

    def _find_zone_id_for_domain(self, fqdn: str, domain: str) -> str:
        """Find the id of the public zone whose name is the longest parent of `fqdn`."""
        paginator = self.r53.get_paginator("list_hosted_zones")
        zones = []
        target_labels = fqdn.rstrip(".").split(".")
        for page in paginator.paginate():
            for zone in page["HostedZones"]:
                if zone["Config"]["PrivateZone"]:
                    continue
                candidate_labels = zone["Name"].rstrip(".").split(".")
                if candidate_labels == target_labels[-len(candidate_labels):]:
                    zones.append((zone["Name"], zone["Id"]))

        if not zones:
            raise self._error(
                f"Unable to find a Route53 hosted zone for {fqdn}",
                domain=domain,
                suggestion="Ensure the domain's DNS is hosted by AWS Route53",
            )

        zones.sort(key=lambda z: len(z[0]), reverse=True)
        return zones[0][1]

    def _current_values(self, zone_id: str, fqdn: str) -> list[dict]:
        response = self.r53.list_resource_record_sets(
            HostedZoneId=zone_id,
            StartRecordName=fqdn,
            StartRecordType="TXT",
            MaxItems="1",
        )
        for rrset in response.get("ResourceRecordSets", []):
            if rrset["Name"].rstrip(".") == fqdn and rrset["Type"] == "TXT":
                return list(rrset.get("ResourceRecords", []))
        return []

    def _change(self, zone_id: str, action: str, fqdn: str, records: list[dict]) -> str:
        response = self.r53.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": f"rancher-letsencrypt certificate validation {action}",
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": fqdn,
                            "Type": "TXT",
                            "TTL": self.ttl,
                            "ResourceRecords": records,
                        },
                    }
                ],
            },
        )
        return response["ChangeInfo"]["Id"]

    def _change_txt_record(self, action: str, fqdn: str, token: str, domain: str) -> Optional[str]:
        """Apply an UPSERT (add) or DELETE (remove) of one TXT value. Returns the change id."""
        zone_id = self._find_zone_id_for_domain(fqdn, domain)
        challenge = {"Value": f'"{token}"'}
        current = self._current_values(zone_id, fqdn)

        if action == "UPSERT":
            if challenge in current:
                logger.info(f"TXT record {fqdn} already present in Route53")
                return None
            return self._change(zone_id, "UPSERT", fqdn, current + [challenge])

        if challenge not in current:
            logger.info(f"TXT record {fqdn} already absent from Route53")
            return None
        remaining = [r for r in current if r != challenge]
        if remaining:
            # Other validations still live at this name
            return self._change(zone_id, "UPSERT", fqdn, remaining)
        return self._change(zone_id, "DELETE", fqdn, current)

    async def _wait_for_change(self, change_id: str, domain: str) -> None:
        """Wait for a change to be propagated to all Route53 DNS servers."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._change_timeout
        status = "PENDING"
        while loop.time() < deadline:
            response = await asyncio.to_thread(self.r53.get_change, Id=change_id)
            status = response["ChangeInfo"]["Status"]
            if status == "INSYNC":
                return
            await asyncio.sleep(self._change_interval)
        raise self._error(f"Timed out waiting for Route53 change. Current status: {status}", domain=domain)

    async def present(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        try:
            change_id = await asyncio.to_thread(self._change_txt_record, "UPSERT", fqdn, token, domain)
            if change_id:
                await self._wait_for_change(change_id, domain)
                logger.info(f"Created TXT record {fqdn} in Route53")
        except (BotoCoreError, ClientError) as e:
            logger.debug(f"Encountered error during present: {e}", exc_info=True)
            raise self._error(f"Route53 request failed: {e}", domain=domain, suggestion=INSTRUCTIONS) from e

    async def cleanup(self, domain: str, token: str) -> None:
        fqdn = validation_name(domain)
        try:
            change_id = await asyncio.to_thread(self._change_txt_record, "DELETE", fqdn, token, domain)
            if change_id:
                logger.info(f"Removed TXT record {fqdn} from Route53")
        except (BotoCoreError, ClientError) as e:
            logger.debug(f"Encountered error during cleanup: {e}", exc_info=True)
            raise self._error(f"Route53 request failed: {e}", domain=domain, suggestion=INSTRUCTIONS) from e
