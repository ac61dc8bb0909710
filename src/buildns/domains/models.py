"""Domain, DNS record and certificate records.

All three serialize to plain dictionaries for the JSON document kept by
DomainStore:

    {
        "domains": {"<id>": {...}},
        "records": {"<domain id>": [{...}, ...]},
        "certificates": {"<domain id>": {...}}
    }
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from buildns.domains.wildcards import wildcard_for


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class DomainStatus(Enum):
    """Lifecycle state of a claimed domain."""

    PENDING = "pending"
    ACTIVE = "active"
    ACTIVE_NO_SSL = "active-no-ssl"
    UPGRADING = "upgrading"
    RELEASED = "released"


HOLDING_STATUSES = frozenset(
    {
        DomainStatus.PENDING,
        DomainStatus.ACTIVE,
        DomainStatus.ACTIVE_NO_SSL,
        DomainStatus.UPGRADING,
    }
)

RESOLVABLE_STATUSES = frozenset(
    {DomainStatus.ACTIVE, DomainStatus.ACTIVE_NO_SSL, DomainStatus.UPGRADING}
)


class RecordType(Enum):
    A = "A"
    CNAME = "CNAME"
    TXT = "TXT"
    WILDCARD = "WILDCARD"


class CertificateState(Enum):
    """States of the per-domain certificate state machine."""

    UNINITIATED = "uninitiated"
    PENDING = "pending"
    ISSUING = "issuing"
    ACTIVE = "active"
    RENEWING = "renewing"
    FAILED = "failed"


APEX = "@"
WILDCARD_LABEL = "*"


@dataclass
class Domain:
    """A claimed (name, tld) pair owned by one principal."""

    name: str
    tld: str
    owner: str
    id: str = field(default_factory=_new_id)
    status: DomainStatus = DomainStatus.PENDING
    wildcard_enabled: bool = False
    custom: bool = False
    upgrade_target_id: str | None = None
    upgraded_from_id: str | None = None
    alias_of_id: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    last_modified_at: datetime = field(default_factory=_utc_now)
    released_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.name, self.tld)

    @property
    def fqdn(self) -> str:
        return f"{self.name}.{self.tld}"

    @property
    def is_resolvable(self) -> bool:
        """True when the domain answers over HTTP."""
        return self.status in RESOLVABLE_STATUSES

    @property
    def is_released(self) -> bool:
        return self.status == DomainStatus.RELEASED

    def host_for(self, label: str) -> str:
        """Fully-qualified hostname for a label relative to this domain."""
        if label == APEX:
            return self.fqdn
        if label == WILDCARD_LABEL:
            return wildcard_for(self.fqdn)
        return f"{label}.{self.fqdn}"

    def touch(self) -> None:
        self.last_modified_at = _utc_now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "tld": self.tld,
            "owner": self.owner,
            "status": self.status.value,
            "wildcard_enabled": self.wildcard_enabled,
            "custom": self.custom,
            "upgrade_target_id": self.upgrade_target_id,
            "upgraded_from_id": self.upgraded_from_id,
            "alias_of_id": self.alias_of_id,
            "created_at": self.created_at.isoformat(),
            "last_modified_at": self.last_modified_at.isoformat(),
            "released_at": _iso(self.released_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Domain:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            id=data["id"],
            name=data["name"],
            tld=data["tld"],
            owner=data["owner"],
            status=DomainStatus(data.get("status", DomainStatus.PENDING.value)),
            wildcard_enabled=data.get("wildcard_enabled", False),
            custom=data.get("custom", False),
            upgrade_target_id=data.get("upgrade_target_id"),
            upgraded_from_id=data.get("upgraded_from_id"),
            alias_of_id=data.get("alias_of_id"),
            created_at=_dt(data.get("created_at")) or _utc_now(),
            last_modified_at=_dt(data.get("last_modified_at")) or _utc_now(),
            released_at=_dt(data.get("released_at")),
        )


@dataclass(frozen=True)
class Redirect:
    """Forwarding rule attached to a record."""

    to: str
    status_code: int = 301

    def to_dict(self) -> dict[str, Any]:
        return {"to": self.to, "status_code": self.status_code}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Redirect:
        return cls(to=data["to"], status_code=int(data.get("status_code", 301)))


@dataclass
class DNSRecord:
    """One DNS record owned by a domain."""

    type: RecordType
    host_label: str
    value: str
    redirect: Redirect | None = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def is_address(self) -> bool:
        """A and CNAME records are mutually exclusive per label."""
        return self.type in (RecordType.A, RecordType.CNAME)

    def same_entry(self, other: DNSRecord) -> bool:
        return (
            self.type == other.type
            and self.host_label == other.host_label
            and self.value == other.value
            and self.redirect == other.redirect
        )

    def copy(self) -> DNSRecord:
        return DNSRecord(
            type=self.type,
            host_label=self.host_label,
            value=self.value,
            redirect=self.redirect,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "host_label": self.host_label,
            "value": self.value,
            "redirect": self.redirect.to_dict() if self.redirect else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DNSRecord:
        redirect = data.get("redirect")
        return cls(
            type=RecordType(data["type"]),
            host_label=data["host_label"],
            value=data["value"],
            redirect=Redirect.from_dict(redirect) if redirect else None,
            created_at=_dt(data.get("created_at")) or _utc_now(),
        )


@dataclass
class Certificate:
    """TLS certificate state for one domain."""

    domain_id: str
    covered_hosts: list[str] = field(default_factory=list)
    state: CertificateState = CertificateState.UNINITIATED
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    attempt_count: int = 0
    last_error: str | None = None
    generation: int = 0
    handle: str | None = None

    @property
    def has_been_issued(self) -> bool:
        return self.issued_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain_id": self.domain_id,
            "covered_hosts": list(self.covered_hosts),
            "state": self.state.value,
            "issued_at": _iso(self.issued_at),
            "expires_at": _iso(self.expires_at),
            "last_attempt_at": _iso(self.last_attempt_at),
            "next_attempt_at": _iso(self.next_attempt_at),
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "generation": self.generation,
            "handle": self.handle,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Certificate:
        return cls(
            domain_id=data["domain_id"],
            covered_hosts=list(data.get("covered_hosts", [])),
            state=CertificateState(data.get("state", CertificateState.UNINITIATED.value)),
            issued_at=_dt(data.get("issued_at")),
            expires_at=_dt(data.get("expires_at")),
            last_attempt_at=_dt(data.get("last_attempt_at")),
            next_attempt_at=_dt(data.get("next_attempt_at")),
            attempt_count=data.get("attempt_count", 0),
            last_error=data.get("last_error"),
            generation=data.get("generation", 0),
            handle=data.get("handle"),
        )


def covered_hosts_for(domain: Domain, records: list[DNSRecord]) -> list[str]:
    """Hostnames the domain's certificate must validate for.

    Apex and www always; the wildcard when enabled; every label that carries
    an A/CNAME record (redirect sources included). TXT-only labels do not
    serve traffic and are left out.
    """
    hosts = {domain.host_for(APEX), domain.host_for("www")}
    for record in records:
        if record.type == RecordType.WILDCARD:
            hosts.add(domain.host_for(WILDCARD_LABEL))
        elif record.is_address:
            hosts.add(domain.host_for(record.host_label))
    if domain.wildcard_enabled:
        hosts.add(domain.host_for(WILDCARD_LABEL))
    return sorted(hosts)
