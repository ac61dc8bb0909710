from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

CLAIMS = Counter(
    "buildns_claims_total",
    "Name reservation attempts",
    ["result"],  # reserved / taken
)

RELEASES = Counter(
    "buildns_releases_total",
    "Released names",
)

DOMAIN_OPERATIONS = Counter(
    "buildns_domain_operations_total",
    "Lifecycle operations",
    ["operation", "outcome"],
)

CERTIFICATE_ATTEMPTS = Counter(
    "buildns_certificate_attempts_total",
    "Certificate issuance attempts",
    ["kind", "outcome"],  # kind: issue/renew, outcome: active/failed/exhausted/dropped
)

CERTIFICATES_IN_FLIGHT = Gauge(
    "buildns_certificates_in_flight",
    "Issuance attempts currently running",
)

ISSUANCE_DURATION = Histogram(
    "buildns_issuance_duration_seconds",
    "Time from certificate request to ready",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

DNS_PUBLISHES = Counter(
    "buildns_dns_publishes_total",
    "Record-set publishes to the DNS backend",
    ["outcome"],  # published / retried / abandoned
)

PUBLISH_QUEUE_DEPTH = Gauge(
    "buildns_publish_queue_depth",
    "Domains waiting for their record set to be published",
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
