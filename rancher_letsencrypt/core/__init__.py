"""Renewal services: ACME client, DNS providers, Rancher store, orchestrator."""
