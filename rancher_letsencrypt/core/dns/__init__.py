"""
DNS-01 challenge providers.

`build_dns_provider` maps the configured provider tag to its
implementation; every DnsProvider variant must have an entry.
"""

from rancher_letsencrypt.core.dns.base import ChallengeError, DNSProvider, validation_name
from rancher_letsencrypt.core.dns.cloudflare import CloudflareProvider
from rancher_letsencrypt.core.dns.digitalocean import DigitalOceanProvider
from rancher_letsencrypt.core.dns.dnsimple import DNSimpleProvider
from rancher_letsencrypt.core.dns.dyn import DynProvider
from rancher_letsencrypt.core.dns.route53 import Route53Provider
from rancher_letsencrypt.models.provider import DnsProvider

PROVIDERS = {
    DnsProvider.CLOUDFLARE: CloudflareProvider,
    DnsProvider.DIGITALOCEAN: DigitalOceanProvider,
    DnsProvider.ROUTE53: Route53Provider,
    DnsProvider.DNSIMPLE: DNSimpleProvider,
    DnsProvider.DYN: DynProvider,
}


def build_dns_provider(settings) -> DNSProvider:
    """Create the DNS provider selected by the settings."""
    provider_cls = PROVIDERS[settings.provider]
    return provider_cls(settings.provider_credentials)


__all__ = [
    "ChallengeError",
    "DNSProvider",
    "PROVIDERS",
    "build_dns_provider",
    "validation_name",
]
