"""Pydantic models for certificates and DNS providers."""
