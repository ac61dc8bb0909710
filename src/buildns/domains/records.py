"""Per-domain DNS record sets.

Rules enforced here:
- at most one A or CNAME record per host label; adding the other type fails
  with ConflictingRecord, adding the same type overwrites the value,
- any number of TXT records per label (exact duplicates collapse),
- a single '*' wildcard marker per domain.

Every change is committed as one write of the whole record set, handed to the
publish queue, and, when the set of hostnames the certificate must cover has
changed, announced to the surface listeners (the certificate orchestrator).

Callers are expected to hold the domain's exclusive section; DomainManager
does this for every mutating operation.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import structlog

from buildns.core.exceptions import AlreadyEnabled, ConflictingRecord, NotFound
from buildns.domains.models import (
    WILDCARD_LABEL,
    DNSRecord,
    Domain,
    Redirect,
    RecordType,
    covered_hosts_for,
)
from buildns.domains.propagation import PublishQueue
from buildns.domains.storage import DomainStore
from buildns.domains.validation import validate_host_label, validate_record, validate_status_code

logger = structlog.get_logger()

SurfaceListener = Callable[[Domain, list[DNSRecord]], Awaitable[object]]


def _merge(records: list[DNSRecord], record: DNSRecord, replace: bool) -> list[DNSRecord]:
    """Return the record set with ``record`` applied, keeping insertion order."""
    result = list(records)

    if record.type == RecordType.TXT:
        if any(r.same_entry(record) for r in result):
            return result
        result.append(record)
        return result

    if record.type == RecordType.WILDCARD:
        for i, existing in enumerate(result):
            if existing.type == RecordType.WILDCARD:
                result[i] = record
                return result
        result.append(record)
        return result

    position = None
    for i, existing in enumerate(result):
        if not existing.is_address or existing.host_label != record.host_label:
            continue
        if existing.type != record.type and not replace:
            raise ConflictingRecord(
                f"{existing.type.value} record already exists for '{record.host_label}'",
                hint="Remove it first, or use connect to switch record types.",
            )
        position = i
        break

    if position is None:
        result.append(record)
    else:
        result[position] = record
    return result


class RecordStore:
    """Validated, ordered DNS record sets for claimed domains."""

    def __init__(self, store: DomainStore, publisher: PublishQueue | None = None) -> None:
        self.store = store
        self.publisher = publisher
        self._listeners: list[SurfaceListener] = []

    def add_surface_listener(self, listener: SurfaceListener) -> None:
        self._listeners.append(listener)

    async def _domain(self, domain_id: str) -> Domain:
        domain = await self.store.get_domain(domain_id)
        if domain is None or domain.is_released:
            raise NotFound(f"Domain {domain_id} not found")
        return domain

    async def _commit(
        self,
        before_domain: Domain,
        after_domain: Domain,
        before: list[DNSRecord],
        after: list[DNSRecord],
    ) -> None:
        await self.store.set_records(after_domain.id, after)
        if self.publisher is not None:
            self.publisher.submit(after_domain.id, after_domain.fqdn, after)

        if covered_hosts_for(before_domain, before) != covered_hosts_for(after_domain, after):
            logger.debug("Hostname surface changed", fqdn=after_domain.fqdn)
            for listener in self._listeners:
                await listener(after_domain, after)

    async def list_records(self, domain_id: str) -> list[DNSRecord]:
        """Records in insertion order."""
        await self._domain(domain_id)
        return await self.store.get_records(domain_id)

    async def add_record(
        self,
        domain_id: str,
        record: DNSRecord,
        *,
        replace: bool = False,
    ) -> DNSRecord:
        """Add or overwrite a record.

        Args:
            domain_id: Owning domain.
            record: Record to add.
            replace: Drop an A/CNAME of the other type at the same label
                instead of failing.

        Raises:
            NotFound: If the domain does not exist.
            InvalidRecord: If label or value fail syntax checks.
            ConflictingRecord: If an A/CNAME of the other type holds the label.
        """
        domain = await self._domain(domain_id)
        record = validate_record(record)
        before = await self.store.get_records(domain_id)
        after = _merge(before, record, replace)

        if record.type == RecordType.WILDCARD and not domain.wildcard_enabled:
            updated = Domain.from_dict(domain.to_dict())
            updated.wildcard_enabled = True
            updated.touch()
            await self.store.save_domain(updated)
            await self._commit(domain, updated, before, after)
        else:
            await self._commit(domain, domain, before, after)

        logger.info(
            "DNS record set",
            fqdn=domain.fqdn,
            type=record.type.value,
            label=record.host_label,
        )
        return record

    async def remove_record(
        self,
        domain_id: str,
        host_label: str,
        record_type: RecordType,
        value: str | None = None,
    ) -> bool:
        """Remove records of a type at a label (optionally only one value).

        Returns:
            True if anything was removed.
        """
        domain = await self._domain(domain_id)
        label = validate_host_label(host_label, record_type)
        before = await self.store.get_records(domain_id)
        after = [
            r
            for r in before
            if not (
                r.type == record_type
                and r.host_label == label
                and (value is None or r.value == value)
            )
        ]
        if len(after) == len(before):
            return False

        updated = domain
        if record_type == RecordType.WILDCARD and domain.wildcard_enabled:
            updated = Domain.from_dict(domain.to_dict())
            updated.wildcard_enabled = False
            updated.touch()
            await self.store.save_domain(updated)

        await self._commit(domain, updated, before, after)
        logger.info("DNS record removed", fqdn=domain.fqdn, type=record_type.value, label=label)
        return True

    async def enable_wildcard(self, domain_id: str, target: str) -> DNSRecord:
        """Insert or overwrite the '*' wildcard marker.

        Raises:
            AlreadyEnabled: If the marker already points at target.
        """
        domain = await self._domain(domain_id)
        marker = DNSRecord(type=RecordType.WILDCARD, host_label=WILDCARD_LABEL, value=target)
        marker = validate_record(marker)

        if domain.wildcard_enabled:
            for existing in await self.store.get_records(domain_id):
                if existing.type == RecordType.WILDCARD and existing.value == marker.value:
                    raise AlreadyEnabled(f"Wildcard already enabled for {domain.fqdn}")

        return await self.add_record(domain_id, marker)

    async def set_redirect(
        self,
        domain_id: str,
        from_label: str,
        to: str,
        status_code: int,
        target: str,
    ) -> DNSRecord:
        """Turn a label into a forwarding rule served by the front door.

        Any A/CNAME at the label is replaced.

        Raises:
            InvalidStatusCode: Unless status_code is 301, 302, 307 or 308.
            InvalidRecord: If the label or destination URL is malformed.
        """
        validate_status_code(status_code)
        record = DNSRecord(
            type=RecordType.CNAME,
            host_label=from_label,
            value=target,
            redirect=Redirect(to=to, status_code=status_code),
        )
        return await self.add_record(domain_id, record, replace=True)

    async def install(self, domain_id: str, records: list[DNSRecord]) -> list[DNSRecord]:
        """Replace a domain's record set wholesale (defaults, migrations)."""
        domain = await self._domain(domain_id)
        before = await self.store.get_records(domain_id)
        after: list[DNSRecord] = []
        for record in records:
            after = _merge(after, validate_record(record), replace=False)

        updated = domain
        has_wildcard = any(r.type == RecordType.WILDCARD for r in after)
        if has_wildcard != domain.wildcard_enabled:
            updated = Domain.from_dict(domain.to_dict())
            updated.wildcard_enabled = has_wildcard
            updated.touch()
            await self.store.save_domain(updated)

        await self._commit(domain, updated, before, after)
        return after

    async def copy_records(self, source_id: str, dest_id: str) -> list[DNSRecord]:
        """Copy every record of one domain onto another, replacing its set."""
        records = await self.store.get_records(source_id)
        return await self.install(dest_id, [r.copy() for r in records])

    async def clear(self, domain_id: str) -> None:
        """Drop all records of a domain and publish the empty set.

        Works on released domains too, as part of release cascades.
        """
        domain = await self.store.get_domain(domain_id)
        await self.store.set_records(domain_id, [])
        if domain is not None and self.publisher is not None:
            self.publisher.submit(domain_id, domain.fqdn, [])
