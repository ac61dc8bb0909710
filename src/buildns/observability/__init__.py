from buildns.observability.metrics import (
    CERTIFICATE_ATTEMPTS,
    CERTIFICATES_IN_FLIGHT,
    CLAIMS,
    DNS_PUBLISHES,
    DOMAIN_OPERATIONS,
    ISSUANCE_DURATION,
    PUBLISH_QUEUE_DEPTH,
    RELEASES,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "CLAIMS",
    "RELEASES",
    "DOMAIN_OPERATIONS",
    "CERTIFICATE_ATTEMPTS",
    "CERTIFICATES_IN_FLIGHT",
    "ISSUANCE_DURATION",
    "DNS_PUBLISHES",
    "PUBLISH_QUEUE_DEPTH",
    "generate_metrics",
    "get_content_type",
]
