"""
Certificate renewal orchestrator.

Runs one renewal cycle per scheduled tick:

    Idle -> CheckingDue -> Issuing -> Reconciling -> Idle

Failures in Issuing or Reconciling return to Idle without touching
the known certificate reference; the next tick starts from scratch.
At most one cycle runs at a time.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from rancher_letsencrypt.config import Settings
from rancher_letsencrypt.core.acme_service import IssuanceError
from rancher_letsencrypt.core.rancher_service import StoreError
from rancher_letsencrypt.models.certificate import (
    CertificateBundle,
    KeyType,
    RenewalDecision,
    StoredCertificateRef,
)

logger = logging.getLogger(__name__)


class IssuanceClient(Protocol):
    async def request_certificate(self, domains: Sequence[str], key_type: KeyType) -> CertificateBundle: ...


class CertificateStore(Protocol):
    async def find_certificate(self, name: str) -> Optional[StoredCertificateRef]: ...

    async def reconcile(self, name: str, bundle: CertificateBundle) -> StoredCertificateRef: ...


class RenewalState(str, Enum):
    """Orchestrator state machine states."""
    IDLE = "idle"
    CHECKING_DUE = "checking_due"
    ISSUING = "issuing"
    RECONCILING = "reconciling"


class RenewalResult(str, Enum):
    """Outcome of one tick."""
    RENEWED = "renewed"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"  # another cycle was in flight
    FAILED = "failed"


class RenewalOrchestrator:
    """
    Decides when the certificate needs (re)issuance and drives it.

    Owns the settings and the current StoredCertificateRef. The ref is
    only replaced by a single assignment after a completed reconcile,
    so cancelling a cycle at any await leaves it consistent.
    """

    def __init__(
        self,
        settings: Settings,
        acme: IssuanceClient,
        store: CertificateStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.acme = acme
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ref: Optional[StoredCertificateRef] = None
        self._state = RenewalState.IDLE
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> RenewalState:
        return self._state

    @property
    def current_ref(self) -> Optional[StoredCertificateRef]:
        return self._ref

    @property
    def cert_name(self) -> str:
        return self.settings.cert_name

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    async def startup(self) -> None:
        """Load the published certificate, if any."""
        try:
            self._ref = await self.store.find_certificate(self.cert_name)
        except StoreError as e:
            logger.error(f"Could not look up certificate '{self.cert_name}' in Rancher: {e.message}")
            return
        except Exception as e:
            logger.exception(f"Unexpected error looking up certificate '{self.cert_name}' in Rancher: {e}")
            return

        if self._ref is None:
            logger.info(f"No certificate named '{self.cert_name}' found in Rancher")
        else:
            logger.info(
                f"Found certificate '{self._ref.name}' ({self._ref.id}), "
                f"expires {self._ref.current_expiry.isoformat() if self._ref.current_expiry else 'unknown'}"
            )

    def check_due(self, ref: Optional[StoredCertificateRef], now: Optional[datetime] = None) -> RenewalDecision:
        """
        Compute the renewal decision for `ref`.

        Due-ness is expiry proximity; the stored certificate is also
        replaced when it came from another CA than the configured API
        environment or covers a different domain set.
        """
        now = now or self._clock()
        decision = RenewalDecision.evaluate(ref, self.settings.renewal_window, now)
        if decision.due or ref is None:
            return decision

        environment = self.settings.api_version
        if ref.issuer and not environment.is_issued_by(ref.issuer):
            return decision.model_copy(
                update={
                    "due": True,
                    "reason": f"stored certificate issued by '{ref.issuer}', expected '{environment.issuer}'",
                }
            )
        if ref.domains and {d.lower() for d in ref.domains} != set(self.settings.domains):
            return decision.model_copy(
                update={
                    "due": True,
                    "reason": f"stored certificate covers {sorted(ref.domains)}, configured {self.settings.domains}",
                }
            )
        return decision

    async def tick(self) -> RenewalResult:
        """
        Run one renewal cycle unless one is already in flight.

        Never raises for renewal failures; they are logged and reported
        as RenewalResult.FAILED.
        """
        if self._lock.locked():
            logger.info("Renewal already in progress, skipping this check")
            return RenewalResult.SKIPPED

        async with self._lock:
            self._task = asyncio.current_task()
            try:
                return await self._run_cycle()
            finally:
                self._state = RenewalState.IDLE
                self._task = None

    def cancel(self) -> None:
        """Abort the in-flight cycle, if any."""
        if self._task is not None and not self._task.done():
            logger.info("Cancelling in-flight renewal")
            self._task.cancel()

    async def shutdown(self) -> None:
        """Cancel the in-flight cycle and wait for it to unwind, DNS cleanup included."""
        task = self._task
        if task is None or task.done():
            return
        self.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("In-flight renewal stopped")

    async def _refresh_ref(self) -> Optional[StoredCertificateRef]:
        try:
            self._ref = await self.store.find_certificate(self.cert_name)
        except StoreError as e:
            logger.warning(f"Could not refresh certificate '{self.cert_name}' from Rancher, using cached state: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error refreshing certificate '{self.cert_name}', using cached state: {e}")
        return self._ref

    async def _run_cycle(self) -> RenewalResult:
        self._state = RenewalState.CHECKING_DUE
        ref = await self._refresh_ref()
        decision = self.check_due(ref)
        if not decision.due:
            logger.info(
                f"Certificate '{self.cert_name}' not due for renewal: {decision.reason} "
                f"(renewal after {decision.renew_after.isoformat()})"
            )
            return RenewalResult.NOT_DUE

        domains = self.settings.domains
        provider = self.settings.provider.value
        logger.info(f"Renewing certificate '{self.cert_name}' for {domains}: {decision.reason}")

        self._state = RenewalState.ISSUING
        try:
            bundle = await self.acme.request_certificate(domains, self.settings.key_type)
        except IssuanceError as e:
            logger.error(
                f"Certificate issuance failed (stage=issuing, provider={provider}, "
                f"domain={e.domain or ','.join(domains)}, error={type(e).__name__}): {e.message}"
            )
            if e.suggestion:
                logger.error(f"Suggestion: {e.suggestion}")
            return RenewalResult.FAILED
        except Exception as e:
            logger.exception(f"Unexpected error issuing certificate for {domains}: {e}")
            return RenewalResult.FAILED

        if ref is not None and ref.current_expiry and bundle.expiry_date <= ref.current_expiry:
            logger.error(
                f"Issued certificate expires {bundle.expiry_date.isoformat()}, not after the stored one "
                f"({ref.current_expiry.isoformat()}); discarding it"
            )
            return RenewalResult.FAILED

        self._state = RenewalState.RECONCILING
        try:
            new_ref = await self.store.reconcile(self.cert_name, bundle)
        except StoreError as e:
            logger.error(
                f"Publishing certificate '{self.cert_name}' to Rancher failed "
                f"(stage=reconciling, error={type(e).__name__}): {e.message}"
            )
            if e.suggestion:
                logger.error(f"Suggestion: {e.suggestion}")
            return RenewalResult.FAILED
        except Exception as e:
            logger.exception(f"Unexpected error publishing certificate '{self.cert_name}': {e}")
            return RenewalResult.FAILED
        finally:
            del bundle

        self._ref = new_ref
        logger.info(
            f"Certificate '{new_ref.name}' ({new_ref.id}) published, "
            f"expires {new_ref.current_expiry.isoformat()}"
        )
        return RenewalResult.RENEWED
