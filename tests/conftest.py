"""
Global test fixtures.

Clears the manager's environment variables so tests never pick up the
host configuration, and provides settings, certificate and fake
Rancher API fixtures.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from pydantic import SecretStr

from rancher_letsencrypt.config import Settings
from rancher_letsencrypt.models.certificate import CertificateBundle

MANAGED_ENV = [
    field.alias for field in Settings.model_fields.values() if field.alias
]

BASE_ENV = {
    "CATTLE_URL": "http://rancher.local/v1",
    "CATTLE_ACCESS_KEY": "access",
    "CATTLE_SECRET_KEY": "secret",
    "EULA": "Yes",
    "API_VERSION": "Production",
    "EMAIL": "admin@example.com",
    "DOMAINS": "example.com",
    "PUBLIC_KEY_TYPE": "EC-256",
    "RENEWAL_TIME": "12",
    "PROVIDER": "CloudFlare",
    "CLOUDFLARE_EMAIL": "dns@example.com",
    "CLOUDFLARE_KEY": "cf-key",
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove every variable the settings read."""
    for name in MANAGED_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def base_env(monkeypatch):
    """Set a complete, valid environment and return it for tweaking."""
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    return dict(BASE_ENV)


@pytest.fixture
def make_settings(tmp_path):
    """Factory building Settings from BASE_ENV plus overrides (by variable name)."""

    def _make(**overrides) -> Settings:
        values = {**BASE_ENV, "STORAGE_DIR": str(tmp_path), **overrides}
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


def build_certificate(
    domains: list[str],
    not_after: datetime,
    issuer_org: str = "Let's Encrypt",
    key=None,
) -> tuple[str, str]:
    """Build a certificate PEM and its key PEM for `domains`."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, issuer_org),
        x509.NameAttribute(NameOID.COMMON_NAME, "R11"),
    ])
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=90))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return cert_pem, key_pem


@pytest.fixture
def cert_builder():
    return build_certificate


@pytest.fixture
def make_bundle():
    """Factory for CertificateBundle objects expiring `days` from now."""

    def _make(domains: Optional[list[str]] = None, days: int = 90) -> CertificateBundle:
        domains = domains or ["example.com"]
        expiry = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=days)
        cert_pem, key_pem = build_certificate(domains, expiry)
        return CertificateBundle(
            certificate_pem=cert_pem,
            chain_pem="",
            private_key_pem=SecretStr(key_pem),
            domains=tuple(domains),
            expiry_date=expiry,
            issuer="Let's Encrypt",
        )

    return _make


class FakeRancher:
    """In-memory Rancher certificate API for httpx.MockTransport."""

    def __init__(self):
        self.certificates: dict[str, dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.status_override: Optional[int] = None
        self._next_id = 1

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def add(self, name: str, cert_pem: str = "", **fields) -> dict:
        cert_id = f"1c{self._next_id}"
        self._next_id += 1
        resource = {
            "id": cert_id,
            "name": name,
            "cert": cert_pem,
            "state": "active",
            "transitioning": "no",
            **fields,
        }
        self.certificates[cert_id] = resource
        return resource

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.status_override:
            return httpx.Response(self.status_override, json={"type": "error"})

        parts = request.url.path.rstrip("/").split("/")
        if parts[-1] == "certificates":
            if request.method == "GET":
                name = request.url.params.get("name")
                data = [c for c in self.certificates.values() if name is None or c["name"] == name]
                return httpx.Response(200, json={"type": "collection", "data": data})
            if request.method == "POST":
                payload = json.loads(request.content)
                resource = self.add(payload.pop("name"), payload.pop("cert"), **payload)
                return httpx.Response(201, json=resource)

        if parts[-2] == "certificates":
            cert_id = parts[-1]
            if cert_id not in self.certificates:
                return httpx.Response(404, json={"type": "error"})
            if request.method == "GET":
                return httpx.Response(200, json=self.certificates[cert_id])
            if request.method == "PUT":
                self.certificates[cert_id].update(json.loads(request.content))
                return httpx.Response(200, json=self.certificates[cert_id])

        return httpx.Response(404, json={"type": "error"})

    def calls(self, method: str) -> list[str]:
        return [path for m, path in self.requests if m == method]


@pytest.fixture
def fake_rancher():
    return FakeRancher()
