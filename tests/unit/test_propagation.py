"""
Unit tests for the DNS propagation check.
"""

from types import SimpleNamespace

import dns.resolver
import pytest

from rancher_letsencrypt.core.dns.propagation import lookup_txt, wait_for_txt_record


class FakeResolver:
    """Returns scripted TXT answers, one per lookup."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.queries = []

    async def resolve(self, fqdn, rdtype, lifetime=None):
        self.queries.append((fqdn, rdtype))
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return [SimpleNamespace(strings=tuple(s.encode() for s in value)) for value in answer]


class TestLookupTxt:
    """Tests for lookup_txt."""

    @pytest.mark.asyncio
    async def test_joins_character_strings(self):
        resolver = FakeResolver([[("abc", "def"), ("xyz",)]])
        assert await lookup_txt(resolver, "_acme-challenge.example.com") == ["abcdef", "xyz"]
        assert resolver.queries == [("_acme-challenge.example.com", "TXT")]

    @pytest.mark.asyncio
    async def test_nxdomain_is_empty(self):
        resolver = FakeResolver([dns.resolver.NXDOMAIN()])
        assert await lookup_txt(resolver, "_acme-challenge.example.com") == []


class TestWaitForTxtRecord:
    """Tests for wait_for_txt_record."""

    @pytest.mark.asyncio
    async def test_visible_immediately(self):
        resolver = FakeResolver([[("token",)]])
        assert await wait_for_txt_record("_acme-challenge.example.com", "token", resolver=resolver) is True
        assert len(resolver.queries) == 1

    @pytest.mark.asyncio
    async def test_visible_after_retries(self):
        resolver = FakeResolver([dns.resolver.NXDOMAIN(), [("stale",)], [("stale",), ("token",)]])

        visible = await wait_for_txt_record(
            "_acme-challenge.example.com", "token", timeout=5, interval=0.01, resolver=resolver
        )

        assert visible is True
        assert len(resolver.queries) == 3

    @pytest.mark.asyncio
    async def test_times_out(self):
        resolver = FakeResolver([[("stale",)]])

        visible = await wait_for_txt_record(
            "_acme-challenge.example.com", "token", timeout=0.05, interval=0.01, resolver=resolver
        )

        assert visible is False
        assert len(resolver.queries) >= 2
