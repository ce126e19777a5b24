"""
DNS propagation check for validation records.

Polls TXT lookups with exponential backoff until the expected value
is visible or the deadline passes.
"""

import asyncio
import logging
from typing import Optional, Sequence

import dns.asyncresolver
import dns.exception

logger = logging.getLogger(__name__)


def _make_resolver(nameservers: Optional[Sequence[str]]) -> dns.asyncresolver.Resolver:
    if nameservers:
        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = list(nameservers)
        return resolver
    return dns.asyncresolver.Resolver()


async def lookup_txt(resolver: dns.asyncresolver.Resolver, fqdn: str, lifetime: float = 10.0) -> list[str]:
    """Return the TXT values at `fqdn`, or an empty list if none resolve."""
    try:
        answer = await resolver.resolve(fqdn, "TXT", lifetime=lifetime)
    except dns.exception.DNSException as e:
        logger.debug(f"TXT lookup for {fqdn} failed: {e}")
        return []
    return [b"".join(rdata.strings).decode("utf-8") for rdata in answer]


async def wait_for_txt_record(
    fqdn: str,
    value: str,
    timeout: float = 180.0,
    interval: float = 5.0,
    max_interval: float = 30.0,
    nameservers: Optional[Sequence[str]] = None,
    resolver: Optional[dns.asyncresolver.Resolver] = None,
) -> bool:
    """
    Wait until a TXT record with `value` is visible at `fqdn`.

    Args:
        fqdn: Record name to query
        value: Expected TXT value
        timeout: Total seconds to wait
        interval: Initial delay between lookups, doubled after each miss
        max_interval: Upper bound on the delay between lookups
        nameservers: Resolver IPs to query instead of the system resolvers
        resolver: Pre-built resolver (overrides `nameservers`)

    Returns:
        True if the record became visible, False on timeout
    """
    resolver = resolver or _make_resolver(nameservers)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    attempt = 0

    while True:
        attempt += 1
        if value in await lookup_txt(resolver, fqdn):
            logger.info(f"TXT record {fqdn} visible after {attempt} lookup(s)")
            return True

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning(f"TXT record {fqdn} not visible after {timeout:.0f}s")
            return False

        await asyncio.sleep(min(interval, remaining))
        interval = min(interval * 2, max_interval)
