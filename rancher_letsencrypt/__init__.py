"""Let's Encrypt certificate manager for Rancher."""

__version__ = "0.1.0"
