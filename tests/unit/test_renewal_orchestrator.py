"""
Unit tests for the renewal orchestrator.

Drives full renewal cycles against the in-memory Rancher API with a
mocked ACME client.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from rancher_letsencrypt.core.acme_service import ChallengeRejectedError
from rancher_letsencrypt.core.rancher_service import RancherService, StoreUnreachableError
from rancher_letsencrypt.core.renewal_orchestrator import RenewalOrchestrator, RenewalResult, RenewalState
from rancher_letsencrypt.models.certificate import StoredCertificateRef

NAME = "[LE] example.com"


@pytest.fixture
def acme(make_bundle):
    client = AsyncMock()
    client.request_certificate.side_effect = lambda domains, key_type: make_bundle(list(domains))
    return client


@pytest.fixture
def store(settings, fake_rancher):
    return RancherService(settings, transport=fake_rancher.transport)


@pytest.fixture
def orchestrator(settings, acme, store):
    return RenewalOrchestrator(settings, acme, store)


def stored_ref(days, issuer="Let's Encrypt", domains=("example.com",)):
    return StoredCertificateRef(
        id="1c1",
        name=NAME,
        current_expiry=datetime.now(timezone.utc) + timedelta(days=days),
        issuer=issuer,
        domains=domains,
    )


async def wait_until_in_flight(orchestrator):
    for _ in range(100):
        if orchestrator.in_flight and orchestrator.state is RenewalState.ISSUING:
            return
        await asyncio.sleep(0)
    raise AssertionError("renewal never started")


class TestRenewalCycle:
    """Tests for complete renewal cycles."""

    @pytest.mark.asyncio
    async def test_first_issuance_creates_certificate(self, orchestrator, fake_rancher, acme):
        result = await orchestrator.tick()

        assert result is RenewalResult.RENEWED
        (resource,) = fake_rancher.certificates.values()
        assert resource["name"] == NAME
        assert fake_rancher.calls("POST") == ["/v1/certificates"]
        assert 89 <= orchestrator.current_ref.days_until_expiry <= 90
        assert orchestrator.state is RenewalState.IDLE
        acme.request_certificate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_expiring_certificate_updated_in_place(self, orchestrator, fake_rancher, cert_builder):
        expiry = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=2)
        cert_pem, _ = cert_builder(["example.com"], expiry)
        existing = fake_rancher.add(NAME, cert_pem)

        result = await orchestrator.tick()

        assert result is RenewalResult.RENEWED
        assert fake_rancher.calls("PUT") == [f"/v1/certificates/{existing['id']}"]
        assert fake_rancher.calls("POST") == []
        assert orchestrator.current_ref.id == existing["id"]
        assert orchestrator.current_ref.current_expiry > expiry

    @pytest.mark.asyncio
    async def test_not_due(self, orchestrator, fake_rancher, cert_builder, acme):
        cert_pem, _ = cert_builder(["example.com"], datetime.now(timezone.utc) + timedelta(days=60))
        fake_rancher.add(NAME, cert_pem)

        assert await orchestrator.tick() is RenewalResult.NOT_DUE
        acme.request_certificate.assert_not_awaited()
        assert fake_rancher.calls("PUT") == []

    @pytest.mark.asyncio
    async def test_issuance_failure_leaves_store_untouched(self, orchestrator, fake_rancher, acme):
        acme.request_certificate.side_effect = ChallengeRejectedError("zone not found", domain="example.com")

        assert await orchestrator.tick() is RenewalResult.FAILED
        assert fake_rancher.calls("POST") == []
        assert fake_rancher.calls("PUT") == []
        assert orchestrator.current_ref is None
        assert orchestrator.state is RenewalState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_issuance_error(self, orchestrator, acme):
        acme.request_certificate.side_effect = RuntimeError("boom")
        assert await orchestrator.tick() is RenewalResult.FAILED

    @pytest.mark.asyncio
    async def test_next_tick_retries_after_failure(self, orchestrator, fake_rancher, acme, make_bundle):
        acme.request_certificate.side_effect = [ChallengeRejectedError("flaky"), make_bundle()]

        assert await orchestrator.tick() is RenewalResult.FAILED
        assert await orchestrator.tick() is RenewalResult.RENEWED
        assert len(fake_rancher.certificates) == 1


class TestAtomicity:
    """Tests that the known certificate only changes after a completed write."""

    @pytest.mark.asyncio
    async def test_failed_reconcile_keeps_reference(self, settings, acme):
        ref = stored_ref(days=2)
        store = AsyncMock()
        store.find_certificate.return_value = ref
        store.reconcile.side_effect = StoreUnreachableError("Rancher API error (HTTP 503)")
        orchestrator = RenewalOrchestrator(settings, acme, store)

        assert await orchestrator.tick() is RenewalResult.FAILED
        assert orchestrator.current_ref == ref

    @pytest.mark.asyncio
    async def test_successful_reconcile_moves_expiry_forward(self, settings, acme):
        ref = stored_ref(days=2)
        store = AsyncMock()
        store.find_certificate.return_value = ref
        store.reconcile.side_effect = lambda name, bundle: StoredCertificateRef(
            id=ref.id, name=name, current_expiry=bundle.expiry_date
        )
        orchestrator = RenewalOrchestrator(settings, acme, store)

        assert await orchestrator.tick() is RenewalResult.RENEWED
        assert orchestrator.current_ref.current_expiry > ref.current_expiry

    @pytest.mark.asyncio
    async def test_bundle_not_newer_discarded(self, settings, acme):
        ref = stored_ref(days=200, issuer="(STAGING) Let's Encrypt")
        store = AsyncMock()
        store.find_certificate.return_value = ref
        orchestrator = RenewalOrchestrator(settings, acme, store)

        assert await orchestrator.tick() is RenewalResult.FAILED
        store.reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_lookup_failure_uses_cached_reference(self, settings, acme):
        store = AsyncMock()
        store.find_certificate.return_value = stored_ref(days=60)
        orchestrator = RenewalOrchestrator(settings, acme, store)
        await orchestrator.startup()

        store.find_certificate.side_effect = StoreUnreachableError("down")

        assert await orchestrator.tick() is RenewalResult.NOT_DUE
        acme.request_certificate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_lookup_error_uses_cached_reference(self, settings, acme):
        store = AsyncMock()
        store.find_certificate.return_value = stored_ref(days=60)
        orchestrator = RenewalOrchestrator(settings, acme, store)
        await orchestrator.startup()

        store.find_certificate.side_effect = KeyError("id")

        assert await orchestrator.tick() is RenewalResult.NOT_DUE
        assert orchestrator.current_ref.id == "1c1"

    @pytest.mark.asyncio
    async def test_non_json_store_response_reported_as_failure(self, settings, acme):
        def login_page(request):
            return httpx.Response(200, text="<html>login</html>")

        store = RancherService(settings, transport=httpx.MockTransport(login_page))
        orchestrator = RenewalOrchestrator(settings, acme, store)

        await orchestrator.startup()
        assert orchestrator.current_ref is None
        assert await orchestrator.tick() is RenewalResult.FAILED
        assert orchestrator.current_ref is None


class TestSingleFlight:
    """Tests that at most one cycle runs at a time."""

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self, orchestrator, acme, make_bundle, fake_rancher):
        gate = asyncio.Event()

        async def slow_issue(domains, key_type):
            await gate.wait()
            return make_bundle(list(domains))

        acme.request_certificate.side_effect = slow_issue

        first = asyncio.create_task(orchestrator.tick())
        await wait_until_in_flight(orchestrator)

        assert await orchestrator.tick() is RenewalResult.SKIPPED

        gate.set()
        assert await first is RenewalResult.RENEWED
        acme.request_certificate.assert_awaited_once()
        assert len(fake_rancher.certificates) == 1

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, orchestrator, acme, fake_rancher):
        async def never_finishes(domains, key_type):
            await asyncio.Event().wait()

        acme.request_certificate.side_effect = never_finishes

        task = asyncio.create_task(orchestrator.tick())
        await wait_until_in_flight(orchestrator)
        orchestrator.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.in_flight is False
        assert orchestrator.state is RenewalState.IDLE
        assert orchestrator.current_ref is None
        assert fake_rancher.calls("POST") == []

    def test_cancel_when_idle(self, orchestrator):
        orchestrator.cancel()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_challenge_cleanup(self, orchestrator, acme, fake_rancher):
        events = []

        async def issue_then_clean_up(domains, key_type):
            try:
                await asyncio.Event().wait()
            finally:
                await asyncio.sleep(0.01)
                events.append("cleanup-done")

        acme.request_certificate.side_effect = issue_then_clean_up

        task = asyncio.create_task(orchestrator.tick())
        await wait_until_in_flight(orchestrator)
        await orchestrator.shutdown()
        events.append("shutdown-returned")

        assert events == ["cleanup-done", "shutdown-returned"]
        assert task.cancelled()
        assert orchestrator.in_flight is False
        assert fake_rancher.calls("POST") == []

    @pytest.mark.asyncio
    async def test_shutdown_when_idle(self, orchestrator):
        await orchestrator.shutdown()
        assert orchestrator.in_flight is False


class TestCheckDue:
    """Tests for the due-ness check."""

    def test_no_reference(self, orchestrator):
        assert orchestrator.check_due(None).due is True

    def test_valid_certificate_not_due(self, orchestrator):
        assert orchestrator.check_due(stored_ref(days=60)).due is False

    def test_within_window(self, orchestrator):
        assert orchestrator.check_due(stored_ref(days=2)).due is True

    def test_injected_clock(self, settings, acme, store):
        ref = stored_ref(days=60)
        later = datetime.now(timezone.utc) + timedelta(days=45)
        orchestrator = RenewalOrchestrator(settings, acme, store, clock=lambda: later)
        assert orchestrator.check_due(ref).due is True

    def test_staging_certificate_in_production(self, orchestrator):
        decision = orchestrator.check_due(stored_ref(days=60, issuer="(STAGING) Let's Encrypt"))
        assert decision.due is True
        assert "STAGING" in decision.reason

    def test_production_certificate_in_sandbox(self, make_settings, acme, store):
        orchestrator = RenewalOrchestrator(make_settings(API_VERSION="Sandbox"), acme, store)
        assert orchestrator.check_due(stored_ref(days=60)).due is True

    def test_domain_set_changed(self, orchestrator):
        decision = orchestrator.check_due(stored_ref(days=60, domains=("example.com", "old.example.com")))
        assert decision.due is True

    def test_unknown_issuer_and_domains_ignored(self, orchestrator):
        assert orchestrator.check_due(stored_ref(days=60, issuer=None, domains=())).due is False


class TestStartup:
    """Tests for loading the published certificate."""

    @pytest.mark.asyncio
    async def test_loads_reference(self, orchestrator, fake_rancher, cert_builder):
        cert_pem, _ = cert_builder(["example.com"], datetime.now(timezone.utc) + timedelta(days=60))
        existing = fake_rancher.add(NAME, cert_pem)

        await orchestrator.startup()

        assert orchestrator.current_ref.id == existing["id"]

    @pytest.mark.asyncio
    async def test_store_unavailable(self, orchestrator, fake_rancher):
        fake_rancher.status_override = 503

        await orchestrator.startup()

        assert orchestrator.current_ref is None

    def test_cert_name(self, orchestrator):
        assert orchestrator.cert_name == NAME
