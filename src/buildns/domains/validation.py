"""Syntactic checks for names, labels and record values."""

from __future__ import annotations

import ipaddress
import re

import httpx

from buildns.core.exceptions import InvalidName, InvalidRecord, InvalidStatusCode
from buildns.domains.models import APEX, WILDCARD_LABEL, DNSRecord, RecordType

REDIRECT_STATUS_CODES = frozenset({301, 302, 307, 308})

MAX_HOSTNAME_LENGTH = 253
MAX_TXT_LENGTH = 255

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
# Service labels such as _verify or _acme-challenge
_SERVICE_LABEL_RE = re.compile(r"^_[a-z0-9](?:[a-z0-9-]{0,60}[a-z0-9])?$")


def is_valid_label(label: str) -> bool:
    """DNS label rules: 1-63 chars, alphanumeric and hyphen, no edge hyphens."""
    return bool(_LABEL_RE.match(label))


def validate_name(name: str) -> str:
    """Normalize and validate a subdomain name to claim.

    Raises:
        InvalidName: If the name breaks DNS label rules.
    """
    normalized = name.strip().lower()
    if not is_valid_label(normalized):
        raise InvalidName(
            f"Invalid name: {name!r}",
            hint="Use 1-63 letters, digits or hyphens, not starting or ending with a hyphen.",
        )
    return normalized


def validate_tld(tld: str, allowed: list[str]) -> str:
    normalized = tld.strip().lower().strip(".")
    if normalized not in allowed:
        raise InvalidName(
            f"Unsupported TLD: {tld!r}",
            hint=f"Choose one of: {', '.join(allowed)}",
        )
    return normalized


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def normalize_hostname(value: str) -> str:
    return value.strip().lower().rstrip(".")


def is_hostname(value: str) -> bool:
    """Check that a value is a hostname and not an IP literal."""
    host = normalize_hostname(value)
    if not host or len(host) > MAX_HOSTNAME_LENGTH or is_ip_literal(host):
        return False
    labels = host.split(".")
    if labels[-1].isdigit():
        return False
    return all(is_valid_label(label) for label in labels)


def split_custom_domain(custom_domain: str) -> tuple[str, str]:
    """Split an external hostname into (name, parent zone).

    Examples:
        >>> split_custom_domain("myproject.com")
        ('myproject', 'com')
        >>> split_custom_domain("App.MyProject.com.")
        ('app', 'myproject.com')
    """
    host = normalize_hostname(custom_domain)
    if not is_hostname(host) or "." not in host:
        raise InvalidName(
            f"Invalid custom domain: {custom_domain!r}",
            hint="Use a fully-qualified hostname such as myproject.com.",
        )
    name, _, parent = host.partition(".")
    return name, parent


def validate_host_label(label: str, record_type: RecordType) -> str:
    """Validate a host label relative to the owning domain.

    '@' is the apex and '*' is reserved for the wildcard marker. Other labels
    may have several dot-separated parts; TXT records also accept service
    labels with a leading underscore.
    """
    label = label.strip().lower()
    if record_type == RecordType.WILDCARD:
        if label != WILDCARD_LABEL:
            raise InvalidRecord("Wildcard marker must use the '*' label")
        return label
    if label == APEX:
        return label
    if not label or label == WILDCARD_LABEL:
        raise InvalidRecord(f"Invalid host label: {label!r}")
    for part in label.split("."):
        if is_valid_label(part):
            continue
        if record_type == RecordType.TXT and _SERVICE_LABEL_RE.match(part):
            continue
        raise InvalidRecord(f"Invalid host label: {label!r}")
    return label


def validate_redirect_url(to: str) -> str:
    try:
        url = httpx.URL(to)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidRecord(f"Invalid redirect target: {to!r}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidRecord(
            f"Invalid redirect target: {to!r}",
            hint="Redirect targets must be absolute http(s) URLs.",
        )
    return str(url)


def validate_status_code(status_code: int) -> int:
    if status_code not in REDIRECT_STATUS_CODES:
        raise InvalidStatusCode(
            f"Invalid redirect status code: {status_code}",
            hint="Use 301, 302, 307 or 308.",
        )
    return status_code


def validate_record(record: DNSRecord) -> DNSRecord:
    """Check label and type-specific value syntax.

    Returns a normalized copy of the record.

    Raises:
        InvalidRecord: If the label or value is malformed.
        InvalidStatusCode: If an attached redirect uses a non-redirect code.
    """
    label = validate_host_label(record.host_label, record.type)
    value = record.value

    if record.type == RecordType.A:
        value = value.strip()
        if not is_ipv4(value):
            raise InvalidRecord(f"A record value must be an IPv4 address: {record.value!r}")
    elif record.type in (RecordType.CNAME, RecordType.WILDCARD):
        if not is_hostname(value):
            raise InvalidRecord(
                f"{record.type.value} record value must be a hostname: {record.value!r}"
            )
        value = normalize_hostname(value)
    elif record.type == RecordType.TXT:
        if len(value) > MAX_TXT_LENGTH:
            raise InvalidRecord(f"TXT record value exceeds {MAX_TXT_LENGTH} characters")

    redirect = record.redirect
    if redirect is not None:
        if record.type != RecordType.CNAME:
            raise InvalidRecord("Only CNAME records can carry a redirect")
        validate_status_code(redirect.status_code)
        validate_redirect_url(redirect.to)

    return DNSRecord(
        type=record.type,
        host_label=label,
        value=value,
        redirect=redirect,
        created_at=record.created_at,
    )
