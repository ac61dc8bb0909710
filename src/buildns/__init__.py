"""buildns - free subdomain claims, DNS records and certificates."""

__version__ = "0.1.0"
