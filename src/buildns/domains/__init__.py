"""Domain claims, DNS records and certificates.

Features:
- Atomic (name, tld) claims with a release grace period
- Per-domain DNS record sets (A, CNAME, TXT, wildcard, redirects)
- Background certificate issuance and renewal with bounded retries
- Upgrades from a builder subdomain to a custom domain
- JSON file storage

Usage:
    from buildns.domains import DomainManager

    manager = DomainManager.from_config()
    manager.start()

    domain = await manager.claim("myapp", "build", owner="user-123")
    await manager.enable_wildcard(domain.id)
    await manager.redirect(domain.id, "docs", "https://docs.example.com", 302)
"""

from buildns.domains.backends import (
    BackendError,
    CertificateAuthority,
    CertificateAuthorityError,
    CertificateHandle,
    CertificateStatus,
    DNSBackend,
    DNSPublishError,
    HTTPCertificateAuthority,
    HTTPDNSBackend,
    NullDNSBackend,
)
from buildns.domains.certificates import CertificateEvent, CertificateOrchestrator
from buildns.domains.manager import ClaimOptions, DomainInfo, DomainManager
from buildns.domains.models import (
    Certificate,
    CertificateState,
    DNSRecord,
    Domain,
    DomainStatus,
    RecordType,
    Redirect,
    covered_hosts_for,
)
from buildns.domains.propagation import PublishQueue
from buildns.domains.records import RecordStore
from buildns.domains.registry import NameRegistry
from buildns.domains.storage import DomainStore
from buildns.domains.verification import DNSVerifier, VerificationResult
from buildns.domains.wildcards import find_matching_wildcard, match_wildcard, wildcard_for

__all__ = [
    "DomainManager",
    "DomainInfo",
    "ClaimOptions",
    "NameRegistry",
    "RecordStore",
    "CertificateOrchestrator",
    "CertificateEvent",
    "PublishQueue",
    "DomainStore",
    "Domain",
    "DomainStatus",
    "DNSRecord",
    "RecordType",
    "Redirect",
    "Certificate",
    "CertificateState",
    "covered_hosts_for",
    "CertificateAuthority",
    "CertificateHandle",
    "CertificateStatus",
    "DNSBackend",
    "HTTPCertificateAuthority",
    "HTTPDNSBackend",
    "NullDNSBackend",
    "BackendError",
    "CertificateAuthorityError",
    "DNSPublishError",
    "DNSVerifier",
    "VerificationResult",
    "match_wildcard",
    "find_matching_wildcard",
    "wildcard_for",
]
