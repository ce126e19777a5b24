"""
Configuration loading and validation.

Reads every startup parameter from the environment (or a .env file),
validates it, and produces an immutable Settings record. All
validation failures are collected and reported together so an
operator sees every misconfiguration at once.
"""

import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, SecretStr, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from rancher_letsencrypt.models.certificate import AcmeEnvironment, KeyType
from rancher_letsencrypt.models.provider import (
    PROVIDER_CREDENTIAL_ENV,
    DnsProvider,
    ProviderCredentials,
)

EULA_ACCEPTED = "Yes"

_DOMAIN_RE = re.compile(r"^(\*\.)?[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")

_CREDENTIAL_FIELDS = tuple(
    env.lower() for _, env_map in PROVIDER_CREDENTIAL_ENV.values() for env in env_map.values()
)


class ConfigurationError(Exception):
    """Startup configuration is missing or invalid. Fatal."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


def split_list(value: str) -> List[str]:
    """Split a comma and/or whitespace separated list, keeping empty entries."""
    value = value.strip()
    if not value:
        return []
    return re.split(r"\s*,\s*|\s+", value)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
        frozen=True,
    )

    # Rancher API
    cattle_url: str = Field(..., alias="CATTLE_URL", description="Rancher API endpoint")
    cattle_access_key: str = Field(..., alias="CATTLE_ACCESS_KEY")
    cattle_secret_key: SecretStr = Field(..., alias="CATTLE_SECRET_KEY")

    # Let's Encrypt
    eula: str = Field(default="", alias="EULA", validate_default=True, description="Must be 'Yes'")
    api_version: AcmeEnvironment = Field(..., alias="API_VERSION")
    email: str = Field(..., alias="EMAIL", description="Email for Let's Encrypt account registration")
    domains: Annotated[List[str], NoDecode] = Field(..., alias="DOMAINS")
    key_type: KeyType = Field(..., alias="PUBLIC_KEY_TYPE")
    explicit_cert_name: Optional[str] = Field(default=None, alias="CERT_NAME")
    renewal_time: int = Field(..., ge=0, le=23, alias="RENEWAL_TIME", description="Hour of the daily renewal check")
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    storage_dir: str = Field(
        default="/etc/letsencrypt", alias="STORAGE_DIR", description="Directory for the persisted ACME account"
    )

    # DNS provider
    provider: DnsProvider = Field(..., alias="PROVIDER")
    # Provider credentials are validated even when unset; see validate_provider_credential
    cloudflare_email: Optional[str] = Field(default=None, alias="CLOUDFLARE_EMAIL", validate_default=True)
    cloudflare_key: Optional[SecretStr] = Field(default=None, alias="CLOUDFLARE_KEY", validate_default=True)
    do_access_token: Optional[SecretStr] = Field(default=None, alias="DO_ACCESS_TOKEN", validate_default=True)
    aws_access_key: Optional[str] = Field(default=None, alias="AWS_ACCESS_KEY", validate_default=True)
    aws_secret_key: Optional[SecretStr] = Field(default=None, alias="AWS_SECRET_KEY", validate_default=True)
    aws_region: Optional[str] = Field(default=None, alias="AWS_REGION", validate_default=True)
    dnsimple_email: Optional[str] = Field(default=None, alias="DNSIMPLE_EMAIL", validate_default=True)
    dnsimple_key: Optional[SecretStr] = Field(default=None, alias="DNSIMPLE_KEY", validate_default=True)
    dyn_customer_name: Optional[str] = Field(default=None, alias="DYN_CUSTOMER_NAME", validate_default=True)
    dyn_user_name: Optional[str] = Field(default=None, alias="DYN_USER_NAME", validate_default=True)
    dyn_password: Optional[SecretStr] = Field(default=None, alias="DYN_PASSWORD", validate_default=True)

    # Renewal tuning
    renewal_days: int = Field(
        default=30, ge=1, le=89, alias="RENEWAL_DAYS", description="Days before expiry to trigger renewal"
    )
    check_interval_hours: int = Field(
        default=0, ge=0, alias="CHECK_INTERVAL_HOURS", description="Extra periodic check interval (0 = off)"
    )
    dns_propagation_check: bool = Field(default=True, alias="DNS_PROPAGATION_CHECK")
    dns_propagation_timeout: int = Field(default=180, gt=0, alias="DNS_PROPAGATION_TIMEOUT")
    dns_propagation_interval: float = Field(default=5.0, gt=0, alias="DNS_PROPAGATION_INTERVAL")
    dns_resolvers: Annotated[List[str], NoDecode] = Field(default_factory=list, alias="DNS_RESOLVERS")
    acme_poll_timeout: int = Field(default=300, gt=0, alias="ACME_POLL_TIMEOUT")
    acme_poll_interval: float = Field(default=2.0, gt=0, alias="ACME_POLL_INTERVAL")
    store_request_timeout: float = Field(default=30.0, gt=0, alias="STORE_REQUEST_TIMEOUT")

    # Logging
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("eula")
    @classmethod
    def validate_eula(cls, v: str) -> str:
        if v != EULA_ACCEPTED:
            raise ValueError(f"Terms of service were not accepted (EULA must be '{EULA_ACCEPTED}')")
        return v

    @field_validator("domains", mode="before")
    @classmethod
    def parse_domains(cls, v):
        if isinstance(v, str):
            v = split_list(v)
        return v

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        """Lowercase, reject empty or malformed entries, drop duplicates."""
        if not v:
            raise ValueError("at least one domain is required")
        validated = []
        for name in v:
            name = name.strip().lower()
            if not name:
                raise ValueError("domain list contains an empty entry")
            if not _DOMAIN_RE.match(name):
                raise ValueError(f"Invalid domain format: {name}")
            if name not in validated:
                validated.append(name)
        return validated

    @field_validator("dns_resolvers", mode="before")
    @classmethod
    def parse_resolvers(cls, v):
        if isinstance(v, str):
            v = [r for r in split_list(v) if r]
        return v

    @field_validator("cattle_url")
    @classmethod
    def validate_cattle_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid value for CATTLE_URL: {v}")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v

    @field_validator(*_CREDENTIAL_FIELDS)
    @classmethod
    def validate_provider_credential(cls, v, info: ValidationInfo):
        """Require the selected provider's credentials; ignore the other providers'."""
        provider = info.data.get("provider")
        if provider is None:
            return v
        model, env_map = PROVIDER_CREDENTIAL_ENV[provider]
        field = next((f for f, env in env_map.items() if env.lower() == info.field_name), None)
        if field is None:
            return v

        raw = v.get_secret_value() if isinstance(v, SecretStr) else v
        if raw is None:
            if model.model_fields[field].is_required():
                raise ValueError(f"required for DNS provider {provider.value}")
        elif not raw.strip():
            raise ValueError(f"must not be blank for DNS provider {provider.value}")
        return v

    def _env_value(self, env: str):
        value = getattr(self, env.lower())
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        return value

    @property
    def provider_credentials(self) -> ProviderCredentials:
        """Credential model for the selected DNS provider."""
        model, env_map = PROVIDER_CREDENTIAL_ENV[self.provider]
        values = {field: self._env_value(env) for field, env in env_map.items()}
        return model(**{k: v for k, v in values.items() if v is not None})

    @property
    def cert_name(self) -> str:
        """Rancher certificate name, explicit or derived from the first domain."""
        if self.explicit_cert_name:
            return self.explicit_cert_name
        return self.api_version.cert_prefix + self.domains[0]

    @property
    def directory_url(self) -> str:
        """Get the ACME directory URL based on the API environment."""
        if self.api_version is AcmeEnvironment.SANDBOX:
            return self.acme_staging_url
        return self.acme_directory_url

    @property
    def renewal_window(self) -> timedelta:
        return timedelta(days=self.renewal_days)

    @property
    def account_dir(self) -> Path:
        """Per-environment directory holding the ACME account key."""
        return Path(self.storage_dir) / "accounts" / self.api_version.value.lower()


def _format_error(error: dict) -> str:
    loc = ".".join(str(part) for part in error.get("loc", ()) if part != "__root__")
    message = error.get("msg", "invalid value")
    if error.get("type") == "missing":
        return f"Required environment variable not set: {loc}"
    if loc:
        return f"Invalid value for {loc}: {message}"
    return message


def load_settings(env_file: Optional[str] = ".env") -> Settings:
    """
    Load and validate settings from the environment.

    Args:
        env_file: Optional dotenv file to read in addition to the environment

    Returns:
        Validated, immutable Settings

    Raises:
        ConfigurationError listing every invalid or missing variable
    """
    try:
        return Settings(_env_file=env_file)
    except ValidationError as e:
        errors = [_format_error(err) for err in e.errors()]
        raise ConfigurationError(
            f"Invalid configuration ({len(errors)} error(s))",
            errors=errors,
        ) from e
