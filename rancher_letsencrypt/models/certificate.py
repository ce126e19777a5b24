"""
Certificate models for the renewal manager.

Provides Pydantic models for the issued certificate bundle, the
orchestrator's view of the certificate published in Rancher, and
the renewal decision derived from it.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr

CERT_DESCRIPTION = "Created by Let's Encrypt Certificate Manager"


class KeyType(str, Enum):
    """Key algorithm for the certificate private key."""
    RSA2048 = "RSA-2048"
    RSA4096 = "RSA-4096"
    RSA8192 = "RSA-8192"
    EC256 = "EC-256"
    EC384 = "EC-384"

    @property
    def is_rsa(self) -> bool:
        return self.value.startswith("RSA")

    @property
    def size(self) -> int:
        """RSA modulus size or EC curve size in bits."""
        return int(self.value.split("-")[1])


class AcmeEnvironment(str, Enum):
    """Let's Encrypt API environment."""
    PRODUCTION = "Production"
    SANDBOX = "Sandbox"  # Let's Encrypt staging, untrusted issuer

    @property
    def cert_prefix(self) -> str:
        """Display-name prefix for certificates issued in this environment."""
        if self is AcmeEnvironment.PRODUCTION:
            return "[LE] "
        return "[LE-TESTING] "

    @property
    def issuer(self) -> str:
        """Issuer organization of certificates issued in this environment."""
        if self is AcmeEnvironment.PRODUCTION:
            return "Let's Encrypt"
        return "(STAGING) Let's Encrypt"

    def is_issued_by(self, issuer: str) -> bool:
        """Check whether an issuer string belongs to this environment's CA."""
        if not issuer:
            return False
        staging = "STAGING" in issuer.upper() or "FAKE" in issuer.upper()
        if self is AcmeEnvironment.PRODUCTION:
            return "Let's Encrypt" in issuer and not staging
        return staging


class CertificateBundle(BaseModel):
    """
    Certificate material returned by a successful issuance.

    The private key is held as a SecretStr so it never shows up in
    repr() output or log lines.
    """
    model_config = ConfigDict(frozen=True)

    certificate_pem: str = Field(..., description="Leaf certificate (PEM)")
    chain_pem: str = Field(default="", description="Intermediate chain (PEM)")
    private_key_pem: SecretStr = Field(..., description="Private key (PEM, PKCS#8)")
    domains: Tuple[str, ...] = Field(..., description="Domains covered by the certificate")
    expiry_date: datetime = Field(..., description="Certificate notAfter")
    issuer: str = Field(default="", description="Issuer organization or common name")

    @property
    def days_until_expiry(self) -> int:
        return (self.expiry_date - datetime.now(timezone.utc)).days


class StoredCertificateRef(BaseModel):
    """Last known view of the certificate published in the Rancher store."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Rancher certificate resource id")
    name: str = Field(..., description="Certificate display name in Rancher")
    current_expiry: Optional[datetime] = Field(None, description="Expiry of the stored certificate")
    issuer: Optional[str] = Field(None, description="Issuer reported for the stored certificate")
    domains: Tuple[str, ...] = Field(
        default_factory=tuple,
        description="Domains covered by the stored certificate, when known"
    )

    @property
    def days_until_expiry(self) -> Optional[int]:
        if self.current_expiry is None:
            return None
        return (self.current_expiry - datetime.now(timezone.utc)).days


class RenewalDecision(BaseModel):
    """Outcome of the due-ness check. Never persisted."""
    model_config = ConfigDict(frozen=True)

    due: bool
    reason: str
    expiry: Optional[datetime] = None
    renew_after: Optional[datetime] = None

    @classmethod
    def evaluate(
        cls,
        ref: Optional[StoredCertificateRef],
        renewal_window: timedelta,
        now: Optional[datetime] = None,
    ) -> "RenewalDecision":
        """Decide by expiry proximity alone."""
        now = now or datetime.now(timezone.utc)
        if ref is None:
            return cls(due=True, reason="no existing certificate found")
        if ref.current_expiry is None:
            return cls(due=True, reason=f"expiry of certificate '{ref.name}' is unknown")

        renew_after = ref.current_expiry - renewal_window
        if now >= renew_after:
            return cls(
                due=True,
                reason=f"certificate expires {ref.current_expiry.isoformat()}, within renewal window",
                expiry=ref.current_expiry,
                renew_after=renew_after,
            )
        return cls(
            due=False,
            reason=f"certificate valid until {ref.current_expiry.isoformat()}",
            expiry=ref.current_expiry,
            renew_after=renew_after,
        )


class ACMEAccount(BaseModel):
    """ACME account for Let's Encrypt."""

    email: Optional[str] = Field(None, description="Account email")
    directory_url: str = Field(..., description="ACME directory URL")
    account_url: Optional[str] = Field(None, description="Registered account URL")
    private_key_pem: SecretStr = Field(..., description="Account private key (PEM format)")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Account creation time"
    )
