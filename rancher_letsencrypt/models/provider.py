"""
DNS provider selection and credential models.

Each provider variant has its own credential model. Credentials are
validated when the settings are loaded, so a missing key fails the
process at startup rather than at renewal time.
"""

from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class DnsProvider(str, Enum):
    """Supported DNS providers for DNS-01 validation."""
    CLOUDFLARE = "CloudFlare"
    DIGITALOCEAN = "DigitalOcean"
    ROUTE53 = "Route53"
    DNSIMPLE = "DNSimple"
    DYN = "Dyn"


class _Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    @field_validator("*")
    @classmethod
    def not_blank(cls, v):
        raw = v.get_secret_value() if isinstance(v, SecretStr) else v
        if isinstance(raw, str) and not raw.strip():
            raise ValueError("must not be empty")
        return v


class CloudflareCredentials(_Credentials):
    email: str = Field(..., description="Cloudflare account email (CLOUDFLARE_EMAIL)")
    api_key: SecretStr = Field(..., description="Cloudflare global API key (CLOUDFLARE_KEY)")


class DigitalOceanCredentials(_Credentials):
    access_token: SecretStr = Field(..., description="DigitalOcean API token (DO_ACCESS_TOKEN)")


class Route53Credentials(_Credentials):
    access_key: str = Field(..., description="AWS access key id (AWS_ACCESS_KEY)")
    secret_key: SecretStr = Field(..., description="AWS secret access key (AWS_SECRET_KEY)")
    region: str = Field(default="us-east-1", description="AWS region (AWS_REGION)")


class DNSimpleCredentials(_Credentials):
    email: str = Field(..., description="DNSimple account email (DNSIMPLE_EMAIL)")
    api_key: SecretStr = Field(..., description="DNSimple API token (DNSIMPLE_KEY)")


class DynCredentials(_Credentials):
    customer_name: str = Field(..., description="Dyn customer name (DYN_CUSTOMER_NAME)")
    user_name: str = Field(..., description="Dyn user name (DYN_USER_NAME)")
    password: SecretStr = Field(..., description="Dyn password (DYN_PASSWORD)")


ProviderCredentials = Union[
    CloudflareCredentials,
    DigitalOceanCredentials,
    Route53Credentials,
    DNSimpleCredentials,
    DynCredentials,
]

# Provider tag -> (credential model, {model field: environment variable})
PROVIDER_CREDENTIAL_ENV = {
    DnsProvider.CLOUDFLARE: (
        CloudflareCredentials,
        {"email": "CLOUDFLARE_EMAIL", "api_key": "CLOUDFLARE_KEY"},
    ),
    DnsProvider.DIGITALOCEAN: (
        DigitalOceanCredentials,
        {"access_token": "DO_ACCESS_TOKEN"},
    ),
    DnsProvider.ROUTE53: (
        Route53Credentials,
        {"access_key": "AWS_ACCESS_KEY", "secret_key": "AWS_SECRET_KEY", "region": "AWS_REGION"},
    ),
    DnsProvider.DNSIMPLE: (
        DNSimpleCredentials,
        {"email": "DNSIMPLE_EMAIL", "api_key": "DNSIMPLE_KEY"},
    ),
    DnsProvider.DYN: (
        DynCredentials,
        {"customer_name": "DYN_CUSTOMER_NAME", "user_name": "DYN_USER_NAME", "password": "DYN_PASSWORD"},
    ),
}
