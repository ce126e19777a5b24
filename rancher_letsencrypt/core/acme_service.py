"""
ACME service for Let's Encrypt certificate issuance.

Drives account registration and the DNS-01 challenge/response flow
using the acme library, and returns the signed certificate bundle.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import josepy as jose
import requests
from acme import challenges, client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID
from pydantic import SecretStr

from rancher_letsencrypt import __version__
from rancher_letsencrypt.config import Settings
from rancher_letsencrypt.core.dns.base import ChallengeError, DNSProvider, validation_name
from rancher_letsencrypt.core.dns.propagation import wait_for_txt_record
from rancher_letsencrypt.models.certificate import ACMEAccount, CertificateBundle, KeyType

logger = logging.getLogger(__name__)

PropagationWaiter = Callable[..., Awaitable[bool]]


class IssuanceError(Exception):
    """Base exception for ACME issuance failures."""

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class RegistrationFailedError(IssuanceError):
    """ACME account registration failed."""

    pass


class ChallengeRejectedError(IssuanceError):
    """A domain's challenge could not be published or was rejected by the CA."""

    pass


class ChallengeTimeoutError(IssuanceError):
    """A domain's challenge did not resolve before the deadline."""

    pass


class SigningFailedError(IssuanceError):
    """Order finalization or certificate download failed."""

    pass


class ProviderUnreachableError(IssuanceError):
    """The ACME server could not be reached."""

    pass


def generate_private_key(key_type: KeyType):
    """Generate a certificate private key of the requested type."""
    if key_type.is_rsa:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_type.size)
    curve = ec.SECP256R1() if key_type is KeyType.EC256 else ec.SECP384R1()
    return ec.generate_private_key(curve)


def make_csr(domains: Sequence[str], private_key) -> bytes:
    """
    Create a CSR for the given domains.

    Args:
        domains: Domain names; the first becomes the common name
        private_key: Key to sign the CSR with

    Returns:
        PEM-encoded CSR bytes
    """
    builder = x509.CertificateSigningRequestBuilder()
    builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))

    san_list = [x509.DNSName(domain) for domain in domains]
    builder = builder.add_extension(x509.SubjectAlternativeName(san_list), critical=False)

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def split_fullchain(fullchain_pem: str) -> tuple[str, str]:
    """Split a fullchain PEM into (leaf certificate, intermediate chain)."""
    marker = "-----END CERTIFICATE-----"
    certs = fullchain_pem.split(marker)
    cert_pem = certs[0].strip() + "\n" + marker + "\n"
    chain_pem = marker.join(certs[1:]).strip()
    if chain_pem:
        chain_pem = chain_pem + "\n"
    return cert_pem, chain_pem


class ACMEService:
    """
    ACME issuance client.

    Handles account registration and the DNS-01 order flow for
    Let's Encrypt, publishing validation records through the
    configured DNS provider.
    """

    def __init__(
        self,
        settings: Settings,
        dns_provider: DNSProvider,
        propagation_waiter: PropagationWaiter = wait_for_txt_record,
    ):
        self.settings = settings
        self.dns = dns_provider
        self._wait_for_propagation = propagation_waiter
        self._client: ClientV2 | None = None
        self._account_key: jose.JWK | None = None
        self._registered = False

    def reset(self):
        """Reset client state. Call after failures to prevent stale client reuse."""
        logger.info("Resetting ACME client state")
        self._client = None
        self._account_key = None
        self._registered = False

    def enable_debug(self) -> None:
        """Log ACME protocol traffic."""
        logging.getLogger("acme").setLevel(logging.DEBUG)

    @property
    def directory_url(self) -> str:
        return self.settings.directory_url

    @property
    def _key_path(self) -> Path:
        return self.settings.account_dir / "private_key.pem"

    @property
    def _meta_path(self) -> Path:
        return self.settings.account_dir / "regr.json"

    def _load_account_key(self) -> jose.JWK | None:
        if not self._key_path.exists():
            return None
        private_key = serialization.load_pem_private_key(self._key_path.read_bytes(), password=None)
        logger.info(f"Loaded ACME account key from {self._key_path}")
        return jose.JWKRSA(key=private_key)

    def _save_account(self, account: ACMEAccount) -> None:
        """Persist the account key and registration URL for reuse across restarts."""
        account_dir = self.settings.account_dir
        account_dir.mkdir(parents=True, exist_ok=True)

        fd = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(account.private_key_pem.get_secret_value())

        self._meta_path.write_text(
            json.dumps(
                {
                    "email": account.email,
                    "directory_url": account.directory_url,
                    "account_url": account.account_url,
                    "created_at": account.created_at.isoformat(),
                }
            )
        )

    def _get_or_create_account_key(self) -> jose.JWK:
        """Get existing account key, load it from storage, or generate a new one."""
        if self._account_key:
            return self._account_key

        try:
            self._account_key = self._load_account_key()
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load saved ACME account key: {e}")

        if self._account_key is None:
            logger.info("Generating new ACME account key")
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            self._account_key = jose.JWKRSA(key=private_key)
        return self._account_key

    async def _get_client(self) -> ClientV2:
        """Get or create ACME client."""
        if self._client:
            return self._client

        account_key = self._get_or_create_account_key()

        def create_client():
            net = client.ClientNetwork(account_key, user_agent=f"rancher-letsencrypt/{__version__}")
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            return ClientV2(directory, net=net)

        try:
            self._client = await asyncio.to_thread(create_client)
        except (requests.exceptions.RequestException, acme_errors.Error) as e:
            raise ProviderUnreachableError(
                f"Could not reach ACME directory {self.directory_url}: {e}",
                suggestion="Check network access to the Let's Encrypt API",
            ) from e
        return self._client

    async def register_account(self) -> ACMEAccount:
        """
        Register a new ACME account or retrieve the existing one.

        Returns:
            ACMEAccount with registration details
        """
        acme_client = await self._get_client()
        account_key = self._get_or_create_account_key()
        email = self.settings.email

        def do_registration():
            regr = messages.NewRegistration.from_data(email=email, terms_of_service_agreed=True)
            try:
                account_resource = acme_client.new_account(regr)
                logger.info("Created new ACME account")
                return account_resource
            except acme_errors.ConflictError as conflict:
                # Account already exists, use the location URL to query it
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing_regr = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return acme_client.query_registration(existing_regr)

        try:
            account_resource = await asyncio.to_thread(do_registration)
        except requests.exceptions.RequestException as e:
            raise ProviderUnreachableError(
                f"ACME server unreachable during registration: {e}",
                suggestion="Check network access to the Let's Encrypt API",
            ) from e
        except acme_errors.Error as e:
            raise RegistrationFailedError(
                f"ACME account registration failed: {e}",
                suggestion="Check the EMAIL setting and the ACME server status",
            ) from e

        private_key_pem = account_key.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")

        account = ACMEAccount(
            email=email,
            directory_url=self.directory_url,
            account_url=getattr(account_resource, "uri", None),
            private_key_pem=SecretStr(private_key_pem),
        )
        try:
            self._save_account(account)
        except OSError as e:
            logger.warning(f"Could not persist ACME account to {self.settings.account_dir}: {e}")
        self._registered = True
        return account

    async def _ensure_registered(self) -> ClientV2:
        acme_client = await self._get_client()
        if not self._registered:
            await self.register_account()
        return acme_client

    async def create_order(self, csr_pem: bytes) -> messages.OrderResource:
        """Create a new certificate order for the names in the CSR."""
        acme_client = await self._get_client()

        try:
            return await asyncio.to_thread(acme_client.new_order, csr_pem)
        except requests.exceptions.RequestException as e:
            raise ProviderUnreachableError(f"ACME server unreachable creating order: {e}") from e
        except acme_errors.Error as e:
            raise SigningFailedError(
                f"Failed to create order: {e}", suggestion="Check that all domains are valid public names"
            ) from e

    def get_dns_challenge(self, authorization: messages.AuthorizationResource) -> messages.ChallengeBody:
        """Extract the DNS-01 challenge from an authorization."""
        for challb in authorization.body.challenges:
            if isinstance(challb.chall, challenges.DNS01):
                return challb

        raise ChallengeRejectedError(
            f"No DNS-01 challenge offered for {authorization.body.identifier.value}",
            domain=authorization.body.identifier.value,
            suggestion="The CA did not offer DNS validation for this name",
        )

    async def respond_to_challenge(self, challb: messages.ChallengeBody, domain: str):
        """Notify the ACME server that the challenge is ready."""
        acme_client = await self._get_client()

        def do_respond():
            return acme_client.answer_challenge(challb, challb.chall.response(acme_client.net.key))

        try:
            response = await asyncio.to_thread(do_respond)
            logger.info(f"Responded to DNS-01 challenge for {domain}")
            return response
        except requests.exceptions.RequestException as e:
            raise ProviderUnreachableError(f"ACME server unreachable answering challenge: {e}", domain=domain) from e
        except acme_errors.Error as e:
            raise ChallengeRejectedError(f"Failed to respond to challenge for {domain}: {e}", domain=domain) from e

    async def poll_authorization(
        self, authzr: messages.AuthorizationResource, domain: str, deadline: datetime
    ) -> messages.AuthorizationResource:
        """
        Poll one authorization until it is valid or invalid.

        Backs off between polls, doubling the configured interval up to
        30 seconds, and gives up at `deadline`.
        """
        acme_client = await self._get_client()
        interval = self.settings.acme_poll_interval

        while datetime.now() < deadline:
            try:
                authzr, _response = await asyncio.to_thread(acme_client.poll, authzr)
            except requests.exceptions.RequestException as e:
                logger.warning(f"Poll error for {domain}: {e}")
            except acme_errors.Error as e:
                raise ChallengeRejectedError(f"Authorization poll failed for {domain}: {e}", domain=domain) from e
            else:
                status = authzr.body.status
                if status == messages.STATUS_VALID:
                    logger.info(f"Authorization for {domain} is valid")
                    return authzr
                if status == messages.STATUS_INVALID:
                    details = [str(c.error) for c in authzr.body.challenges if c.error is not None]
                    raise ChallengeRejectedError(
                        f"Authorization failed for {domain}: {'; '.join(details) or 'no detail given'}",
                        domain=domain,
                        suggestion="Check that the DNS provider hosts the authoritative zone for the domain",
                    )

            await asyncio.sleep(interval)
            interval = min(interval * 2, 30.0)

        raise ChallengeTimeoutError(
            f"Authorization for {domain} timed out after {self.settings.acme_poll_timeout} seconds",
            domain=domain,
            suggestion="Increase ACME_POLL_TIMEOUT or check DNS propagation",
        )

    async def finalize_order(self, order: messages.OrderResource, deadline: datetime) -> str:
        """Finalize a validated order and return the fullchain PEM."""
        acme_client = await self._get_client()

        try:
            finalized = await asyncio.to_thread(acme_client.finalize_order, order, deadline)
        except requests.exceptions.RequestException as e:
            raise ProviderUnreachableError(f"ACME server unreachable during finalization: {e}") from e
        except acme_errors.Error as e:
            raise SigningFailedError(
                f"Failed to finalize order: {e}", suggestion="Check that all authorizations completed successfully"
            ) from e
        return finalized.fullchain_pem

    async def _present_all(
        self, authorizations: list[tuple[str, messages.ChallengeBody]], presented: list[tuple[str, str]]
    ) -> None:
        """Publish the TXT record for every domain, recording each success in `presented`."""
        account_key = self._get_or_create_account_key()
        for domain, challb in authorizations:
            token = challb.chall.validation(account_key)
            try:
                await self.dns.present(domain, token)
            except ChallengeError as e:
                raise ChallengeRejectedError(
                    f"DNS provider {self.dns.name} failed to publish record for {domain}: {e.message}",
                    domain=domain,
                    suggestion=e.suggestion,
                ) from e
            presented.append((domain, token))

    async def _cleanup_all(self, presented: list[tuple[str, str]]) -> None:
        for domain, token in presented:
            try:
                await self.dns.cleanup(domain, token)
            except Exception as e:
                logger.warning(f"Failed to clean up TXT record for {domain} via {self.dns.name}: {e}")

    async def request_certificate(self, domains: Sequence[str], key_type: KeyType) -> CertificateBundle:
        """
        Obtain a certificate for `domains` via DNS-01 validation.

        All domains are validated or none: a failure for any one aborts
        the order. Validation records are always removed afterwards.

        Args:
            domains: Domains to include, the first becomes the common name
            key_type: Private key algorithm for the certificate

        Returns:
            CertificateBundle covering exactly `domains`

        Raises:
            IssuanceError subclass describing the failed stage
        """
        domains = list(domains)
        try:
            await self._ensure_registered()
        except (ProviderUnreachableError, RegistrationFailedError):
            self.reset()
            raise

        private_key = generate_private_key(key_type)
        csr_pem = make_csr(domains, private_key)
        order = await self.create_order(csr_pem)
        logger.info(f"Created ACME order for domains: {domains}")

        authorizations = []
        for authzr in order.authorizations:
            domain = authzr.body.identifier.value
            if authzr.body.status == messages.STATUS_VALID:
                # Reused authorization from a recent validation
                logger.info(f"Authorization for {domain} already valid")
                continue
            authorizations.append((domain, self.get_dns_challenge(authzr)))

        presented: list[tuple[str, str]] = []
        try:
            await self._present_all(authorizations, presented)

            if self.settings.dns_propagation_check:
                for domain, token in presented:
                    visible = await self._wait_for_propagation(
                        validation_name(domain),
                        token,
                        timeout=self.settings.dns_propagation_timeout,
                        interval=self.settings.dns_propagation_interval,
                        nameservers=self.settings.dns_resolvers,
                    )
                    if not visible:
                        raise ChallengeTimeoutError(
                            f"TXT record for {domain} did not propagate within "
                            f"{self.settings.dns_propagation_timeout} seconds",
                            domain=domain,
                            suggestion="Increase DNS_PROPAGATION_TIMEOUT or set DNS_RESOLVERS",
                        )

            for domain, challb in authorizations:
                await self.respond_to_challenge(challb, domain)

            deadline = datetime.now() + timedelta(seconds=self.settings.acme_poll_timeout)
            valid = []
            for authzr in order.authorizations:
                if authzr.body.status != messages.STATUS_VALID:
                    authzr = await self.poll_authorization(authzr, authzr.body.identifier.value, deadline)
                valid.append(authzr)
            order = order.update(authorizations=valid)

            fullchain_pem = await self.finalize_order(order, deadline)
        finally:
            await self._cleanup_all(presented)

        return self._build_bundle(domains, fullchain_pem, private_key)

    def _build_bundle(self, domains: list[str], fullchain_pem: str, private_key) -> CertificateBundle:
        cert_pem, chain_pem = split_fullchain(fullchain_pem)
        key_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

        details = parse_certificate(cert_pem.encode("utf-8"))
        issued = {name.lower() for name in details["alt_names"]}
        if issued != {d.lower() for d in domains}:
            raise SigningFailedError(
                f"Issued certificate covers {sorted(issued)}, requested {sorted(domains)}"
            )
        if not validate_certificate_key_match(cert_pem.encode("utf-8"), key_pem):
            raise SigningFailedError("Issued certificate does not match the generated private key")

        logger.info(f"Successfully obtained certificate for {domains}, expires {details['not_after'].isoformat()}")
        return CertificateBundle(
            certificate_pem=cert_pem,
            chain_pem=chain_pem,
            private_key_pem=SecretStr(key_pem.decode("utf-8")),
            domains=tuple(domains),
            expiry_date=details["not_after"],
            issuer=details["issuer_organization"] or details["issuer"],
        )


def parse_certificate(cert_pem: bytes) -> dict:
    """
    Parse a PEM certificate and extract details.

    Args:
        cert_pem: PEM-encoded certificate

    Returns:
        Dictionary with certificate details
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    issuer_parts = []
    for attr in cert.issuer:
        issuer_parts.append(f"{attr.oid._name}={attr.value}")
    issuer = ", ".join(issuer_parts)

    organizations = cert.issuer.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    issuer_organization = organizations[0].value if organizations else ""

    alt_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        alt_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return {
        "issuer": issuer,
        "issuer_organization": issuer_organization,
        "serial_number": format(cert.serial_number, "x"),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "alt_names": alt_names,
        "fingerprint_sha256": cert.fingerprint(hashes.SHA256()).hex(),
    }


def validate_certificate_key_match(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return cert_bytes == key_bytes
