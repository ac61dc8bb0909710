"""Domain lifecycle controller.

Composes the name registry, the record store and the certificate orchestrator
into the operations exposed to users:

- claim: reserve a name, install default records, request a certificate
- connect / enable_wildcard / redirect / add_txt / remove_record
- upgrade: move a claim onto an externally owned custom domain
- release: give a name back (with cascades for in-flight upgrades)

Every mutating operation runs inside the domain's exclusive section; operations
touching two domains hold both. Certificate issuance never blocks a request:
claim returns with the domain resolvable over HTTP and the certificate pending.

Usage:
    manager = DomainManager.from_config(get_config())
    manager.start()

    domain = await manager.claim("myapp", "build", "user-123")
    await manager.connect(domain.id, "my-app.vercel.app", "CNAME")

    await manager.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from buildns.core.config import BuildnsConfig, get_config
from buildns.core.exceptions import (
    AlreadyEnabled,
    BuildnsError,
    InvalidTarget,
    NameTaken,
    NotFound,
    NotOwner,
    UpgradeConflict,
)
from buildns.core.locks import KeyedLock
from buildns.domains.backends import (
    CertificateAuthority,
    DNSBackend,
    HTTPCertificateAuthority,
    HTTPDNSBackend,
    NullDNSBackend,
)
from buildns.domains.certificates import CertificateEvent, CertificateOrchestrator
from buildns.domains.models import (
    APEX,
    WILDCARD_LABEL,
    Certificate,
    CertificateState,
    DNSRecord,
    Domain,
    DomainStatus,
    RecordType,
)
from buildns.domains.propagation import PublishQueue
from buildns.domains.records import RecordStore
from buildns.domains.registry import NameRegistry
from buildns.domains.storage import DomainStore
from buildns.domains.validation import is_hostname, is_ipv4, normalize_hostname, split_custom_domain
from buildns.domains.verification import DNSVerifier, VerificationResult
from buildns.domains.wildcards import find_matching_wildcard, wildcard_for
from buildns.observability.metrics import DOMAIN_OPERATIONS

logger = structlog.get_logger()

_UPGRADABLE = frozenset({DomainStatus.ACTIVE, DomainStatus.ACTIVE_NO_SSL})


@dataclass
class ClaimOptions:
    """Optional settings applied when a name is claimed.

    Attributes:
        wildcard: Install the '*' marker with the default records.
        records: Extra records installed alongside the defaults.
    """

    wildcard: bool = False
    records: list[DNSRecord] = field(default_factory=list)


@dataclass
class DomainInfo:
    """Complete information about a domain."""

    domain: Domain
    records: list[DNSRecord]
    certificate: Certificate | None
    upgrade_target: Domain | None = None
    alias_of: Domain | None = None
    dns_instructions: str | None = None

    @property
    def https_ready(self) -> bool:
        return self.certificate is not None and self.certificate.state in (
            CertificateState.ACTIVE,
            CertificateState.RENEWING,
        )


class DomainManager:
    """Coordinates claims, records, certificates and upgrades."""

    def __init__(
        self,
        store: DomainStore,
        registry: NameRegistry,
        records: RecordStore,
        certificates: CertificateOrchestrator,
        publisher: PublishQueue,
        *,
        front_door_target: str = "frontdoor.build",
        purge_interval: float = 60.0,
        verifier: DNSVerifier | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.records = records
        self.certificates = certificates
        self.publisher = publisher
        self.front_door_target = normalize_hostname(front_door_target)
        self.purge_interval = purge_interval
        self.verifier = verifier or DNSVerifier(self.front_door_target)

        self._locks = KeyedLock()
        self._purge_task: asyncio.Task | None = None
        self._closables: list[object] = []

        self.records.add_surface_listener(self._on_surface_changed)
        self.certificates.add_listener(self._on_certificate_event)

    @classmethod
    def from_config(
        cls,
        config: BuildnsConfig | None = None,
        *,
        store: DomainStore | None = None,
        authority: CertificateAuthority | None = None,
        dns_backend: DNSBackend | None = None,
    ) -> DomainManager:
        """Build a manager and its components from configuration.

        HTTP backends are created for configured URLs; without a DNS API the
        record sets are only logged, without a CA certificates stay pending.
        """
        config = config or get_config()
        registry_cfg = config.registry
        cert_cfg = config.certificates
        prop_cfg = config.propagation
        backend_cfg = config.backends

        closables: list[object] = []
        if store is None:
            store = DomainStore(config.storage.storage_path)
        if authority is None and backend_cfg.ca_url:
            authority = HTTPCertificateAuthority(
                backend_cfg.ca_url, backend_cfg.ca_token, backend_cfg.http_timeout
            )
            closables.append(authority)
        if dns_backend is None:
            if backend_cfg.dns_api_url:
                dns_backend = HTTPDNSBackend(
                    backend_cfg.dns_api_url, backend_cfg.dns_api_token, backend_cfg.http_timeout
                )
                closables.append(dns_backend)
            else:
                dns_backend = NullDNSBackend()

        publisher = PublishQueue(
            dns_backend,
            max_attempts=prop_cfg.publish_max_attempts,
            base_delay=prop_cfg.publish_base_delay,
            max_delay=prop_cfg.publish_max_delay,
            jitter=prop_cfg.publish_jitter,
        )
        certificates = CertificateOrchestrator(
            store,
            authority,
            max_attempts=cert_cfg.cert_max_attempts,
            base_delay=cert_cfg.cert_base_delay,
            max_delay=cert_cfg.cert_max_delay,
            jitter=cert_cfg.cert_jitter,
            renewal_window=timedelta(days=cert_cfg.renewal_window_days),
            poll_interval=cert_cfg.cert_poll_interval,
            status_poll_interval=cert_cfg.cert_status_poll_interval,
            issuance_timeout=cert_cfg.issuance_timeout,
            default_validity=timedelta(days=cert_cfg.default_validity_days),
            max_concurrent=cert_cfg.max_concurrent_issuances,
        )
        manager = cls(
            store,
            NameRegistry(store, registry_cfg.allowed_tlds, registry_cfg.release_grace_period),
            RecordStore(store, publisher),
            certificates,
            publisher,
            front_door_target=registry_cfg.front_door_target,
            purge_interval=registry_cfg.purge_interval,
        )
        manager._closables = closables
        return manager

    # Internal helpers

    @contextlib.asynccontextmanager
    async def _exclusive(self, operation: str, *keys: str) -> AsyncIterator[None]:
        """Hold the exclusive sections of the given domains for one operation."""
        try:
            async with self._locks.hold(*keys):
                yield
        except BuildnsError as e:
            DOMAIN_OPERATIONS.labels(operation=operation, outcome=e.code).inc()
            raise
        DOMAIN_OPERATIONS.labels(operation=operation, outcome="ok").inc()

    async def _owned(self, domain_id: str, owner: str | None) -> Domain:
        domain = await self.store.get_domain(domain_id)
        if domain is None or domain.is_released:
            raise NotFound(f"Domain {domain_id} not found")
        if owner is not None and domain.owner != owner:
            raise NotOwner(f"{domain.fqdn} is not owned by {owner}")
        return domain

    async def _mutable(self, domain_id: str, owner: str | None) -> Domain:
        domain = await self._owned(domain_id, owner)
        if domain.status == DomainStatus.UPGRADING:
            raise UpgradeConflict(
                f"{domain.fqdn} is being upgraded",
                hint="Wait for the upgrade to finish, or release the domain to cancel it.",
            )
        return domain

    def _default_records(self, wildcard: bool = False) -> list[DNSRecord]:
        records = [
            DNSRecord(type=RecordType.CNAME, host_label=APEX, value=self.front_door_target),
            DNSRecord(type=RecordType.CNAME, host_label="www", value=self.front_door_target),
        ]
        if wildcard:
            records.append(
                DNSRecord(
                    type=RecordType.WILDCARD,
                    host_label=WILDCARD_LABEL,
                    value=self.front_door_target,
                )
            )
        return records

    async def _teardown(self, domain: Domain) -> None:
        """Drop a domain's certificate and records."""
        await self.certificates.discard(domain.id)
        if await self.store.get_records(domain.id) or self.publisher.is_pending(domain.id):
            await self.records.clear(domain.id)

    async def _rollback(self, domain: Domain) -> None:
        await self._teardown(domain)
        await self.registry.discard(domain.id)
        logger.warning("Reservation rolled back", fqdn=domain.fqdn, domain_id=domain.id)

    async def _on_surface_changed(self, domain: Domain, records: list[DNSRecord]) -> None:
        await self.certificates.recompute(domain, records)

    async def _on_certificate_event(self, certificate: Certificate, event: CertificateEvent) -> None:
        domain = await self.store.get_domain(certificate.domain_id)
        if domain is None or domain.is_released:
            return

        if event == CertificateEvent.ISSUED:
            if domain.custom and domain.upgraded_from_id and domain.status == DomainStatus.PENDING:
                await self._complete_upgrade(domain.upgraded_from_id, domain.id)
            elif domain.status == DomainStatus.ACTIVE_NO_SSL:
                await self._set_status(domain.id, DomainStatus.ACTIVE_NO_SSL, DomainStatus.ACTIVE)
        elif event == CertificateEvent.EXHAUSTED:
            if domain.status == DomainStatus.ACTIVE:
                await self._set_status(domain.id, DomainStatus.ACTIVE, DomainStatus.ACTIVE_NO_SSL)
            elif domain.custom and domain.status == DomainStatus.PENDING:
                logger.warning(
                    "Upgrade stalled: certificate issuance exhausted",
                    fqdn=domain.fqdn,
                    domain_id=domain.id,
                )

    async def _set_status(
        self,
        domain_id: str,
        expected: DomainStatus,
        status: DomainStatus,
    ) -> None:
        async with self._exclusive("certificate_status", domain_id):
            domain = await self.store.get_domain(domain_id)
            if domain is None or domain.status != expected:
                return
            domain.status = status
            domain.touch()
            await self.store.save_domain(domain)
        logger.info("Domain status changed", fqdn=domain.fqdn, status=status.value)

    async def _complete_upgrade(self, original_id: str, target_id: str) -> None:
        async with self._exclusive("upgrade_complete", original_id, target_id):
            original = await self.store.get_domain(original_id)
            target = await self.store.get_domain(target_id)
            if (
                original is None
                or target is None
                or original.status != DomainStatus.UPGRADING
                or original.upgrade_target_id != target_id
                or target.status != DomainStatus.PENDING
            ):
                return

            target.status = DomainStatus.ACTIVE
            target.touch()
            original.status = DomainStatus.ACTIVE
            original.upgrade_target_id = None
            original.alias_of_id = target_id
            original.touch()
            await self.store.save_domain(target)
            await self.store.save_domain(original)

        logger.info("Upgrade complete", fqdn=target.fqdn, alias=original.fqdn)

    # Claim

    async def claim(
        self,
        name: str,
        tld: str,
        owner: str,
        options: ClaimOptions | None = None,
    ) -> Domain:
        """Claim a free subdomain.

        Returns as soon as the name is reserved and the default records are in
        place. The certificate is requested in the background.

        Args:
            name: Label to claim (e.g. "myapp").
            tld: Builder TLD (e.g. "build").
            owner: Claiming principal.
            options: Wildcard marker and extra records to install.

        Returns:
            The domain in active status.

        Raises:
            InvalidName: If the name or TLD is invalid.
            NameTaken: If the name is already claimed.
            InvalidRecord: If an extra record is malformed (nothing is kept).
        """
        options = options or ClaimOptions()
        domain = await self.registry.reserve(name, tld, owner)

        try:
            async with self._exclusive("claim", domain.id):
                planned = self._default_records(options.wildcard) + list(options.records)
                await self.certificates.initialize(domain, planned)
                await self.records.install(domain.id, planned)

                domain = await self.registry.get(domain.id)
                domain.status = DomainStatus.ACTIVE
                domain.touch()
                await self.store.save_domain(domain)
        except BaseException:
            await self._rollback(domain)
            raise

        logger.info("Domain claimed", fqdn=domain.fqdn, domain_id=domain.id, owner=owner)
        return domain

    # Records

    async def connect(
        self,
        domain_id: str,
        target: str,
        record_type: RecordType | str,
        label: str = APEX,
        owner: str | None = None,
    ) -> Domain:
        """Point the apex or a sublabel at a deployment.

        Replaces whatever A/CNAME (or redirect) the label had.

        Raises:
            InvalidTarget: If the target does not fit the record type.
        """
        if isinstance(record_type, str):
            record_type = record_type.upper()
        try:
            record_type = RecordType(record_type)
        except ValueError as e:
            raise InvalidTarget(f"Unsupported record type: {record_type}") from e

        target = target.strip()
        if record_type == RecordType.A:
            if not is_ipv4(target):
                raise InvalidTarget(
                    f"A record target must be an IPv4 address: {target!r}",
                    hint="Use CNAME for hostnames.",
                )
        elif record_type == RecordType.CNAME:
            if not is_hostname(target):
                raise InvalidTarget(
                    f"CNAME target must be a hostname, not an IP address: {target!r}",
                    hint="Use an A record for IP addresses.",
                )
        else:
            raise InvalidTarget(f"Connect supports A or CNAME records, not {record_type.value}")

        async with self._exclusive("connect", domain_id):
            domain = await self._mutable(domain_id, owner)
            record = DNSRecord(type=record_type, host_label=label, value=target)
            await self.records.add_record(domain.id, record, replace=True)

        logger.info(
            "Domain connected",
            fqdn=domain.fqdn,
            label=label,
            type=record_type.value,
            target=target,
        )
        return await self.registry.get(domain_id)

    async def enable_wildcard(self, domain_id: str, owner: str | None = None) -> Domain:
        """Enable '*.<domain>'. Enabling twice is a no-op."""
        async with self._exclusive("enable_wildcard", domain_id):
            domain = await self._mutable(domain_id, owner)
            try:
                await self.records.enable_wildcard(domain.id, self.front_door_target)
            except AlreadyEnabled:
                logger.debug("Wildcard already enabled", fqdn=domain.fqdn)
        return await self.registry.get(domain_id)

    async def redirect(
        self,
        domain_id: str,
        from_label: str,
        to: str,
        status_code: int = 301,
        owner: str | None = None,
    ) -> Domain:
        """Forward a label to a URL.

        Raises:
            InvalidStatusCode: Unless status_code is 301, 302, 307 or 308.
            InvalidRecord: If the label or URL is malformed.
        """
        async with self._exclusive("redirect", domain_id):
            domain = await self._mutable(domain_id, owner)
            await self.records.set_redirect(
                domain.id, from_label, to, status_code, self.front_door_target
            )

        logger.info(
            "Redirect set",
            fqdn=domain.fqdn,
            label=from_label,
            to=to,
            status_code=status_code,
        )
        return await self.registry.get(domain_id)

    async def add_txt(
        self,
        domain_id: str,
        label: str,
        value: str,
        owner: str | None = None,
    ) -> DNSRecord:
        """Add a TXT record, e.g. a provider verification token."""
        async with self._exclusive("add_txt", domain_id):
            domain = await self._mutable(domain_id, owner)
            return await self.records.add_record(
                domain.id, DNSRecord(type=RecordType.TXT, host_label=label, value=value)
            )

    async def remove_record(
        self,
        domain_id: str,
        label: str,
        record_type: RecordType | str,
        value: str | None = None,
        owner: str | None = None,
    ) -> bool:
        if isinstance(record_type, str):
            record_type = RecordType(record_type.upper())
        async with self._exclusive("remove_record", domain_id):
            domain = await self._mutable(domain_id, owner)
            return await self.records.remove_record(domain.id, label, record_type, value)

    # Upgrade

    async def upgrade(
        self,
        domain_id: str,
        custom_domain: str,
        migrate: bool = True,
        owner: str | None = None,
    ) -> Domain:
        """Start moving a claim onto a custom domain.

        The custom domain is reserved for the same owner and gets the
        original's records (or the defaults when migrate is off) and its own
        certificate. The original stays resolvable in upgrading status until
        that certificate is issued, then becomes an alias of the custom domain.

        Returns:
            The original domain in upgrading status.

        Raises:
            InvalidName: If custom_domain is not a valid hostname.
            UpgradeConflict: If the original cannot be upgraded or the custom
                domain is already claimed.
        """
        name, parent = split_custom_domain(custom_domain)

        async with self._exclusive("upgrade", domain_id):
            original = await self._owned(domain_id, owner)
            if original.custom:
                raise UpgradeConflict(f"{original.fqdn} is already a custom domain")
            if original.alias_of_id:
                raise UpgradeConflict(f"{original.fqdn} has already been upgraded")
            if original.status not in _UPGRADABLE:
                raise UpgradeConflict(
                    f"{original.fqdn} is {original.status.value}; only active domains can be upgraded"
                )
            if parent in self.registry.allowed_tlds:
                raise UpgradeConflict(
                    f"{custom_domain} is a builder subdomain",
                    hint="Upgrade targets must be domains you own elsewhere.",
                )

            try:
                target = await self.registry.reserve(name, parent, original.owner, custom=True)
            except NameTaken as e:
                raise UpgradeConflict(f"{custom_domain} is already claimed elsewhere") from e

            try:
                target.upgraded_from_id = original.id
                await self.store.save_domain(target)

                if migrate:
                    planned = [r.copy() for r in await self.store.get_records(original.id)]
                else:
                    planned = self._default_records()
                await self.certificates.initialize(target, planned)
                if migrate:
                    await self.records.copy_records(original.id, target.id)
                else:
                    await self.records.install(target.id, planned)

                original.status = DomainStatus.UPGRADING
                original.upgrade_target_id = target.id
                original.touch()
                await self.store.save_domain(original)
            except BaseException:
                await self._rollback(target)
                raise

        logger.info(
            "Upgrade started",
            fqdn=original.fqdn,
            custom_domain=target.fqdn,
            migrate=migrate,
        )
        return original

    async def verify_custom_domain(self, domain_id: str) -> VerificationResult:
        """Check that a custom domain routes to the front door."""
        domain = await self.registry.get(domain_id)
        if not domain.custom:
            raise UpgradeConflict(f"{domain.fqdn} is not a custom domain")
        return await self.verifier.verify(domain.fqdn)

    # Release

    async def release(self, domain_id: str, owner: str) -> Domain:
        """Release a domain and drop its records and certificate.

        Releasing an upgrading domain cancels the upgrade and releases its
        pending custom domain. Releasing a pending custom domain returns the
        original to active.

        Raises:
            NotFound: If the domain does not exist or is already released.
            NotOwner: If owner did not claim the domain.
        """
        while True:
            domain = await self._owned(domain_id, None)
            related = {
                i for i in (domain.upgrade_target_id, domain.upgraded_from_id, domain.alias_of_id) if i
            }
            async with self._exclusive("release", domain_id, *related):
                domain = await self._owned(domain_id, None)
                current = {
                    i
                    for i in (domain.upgrade_target_id, domain.upgraded_from_id, domain.alias_of_id)
                    if i
                }
                if not current <= related:
                    # Links changed while waiting for the locks
                    continue
                if domain.owner != owner:
                    raise NotOwner(f"{domain.fqdn} is not owned by {owner}")

                await self._unlink(domain)
                released = await self.registry.release(domain_id, owner)
                await self._teardown(released)
                return released

    async def _unlink(self, domain: Domain) -> None:
        """Fix up the domains linked to one that is being released."""
        if domain.status == DomainStatus.UPGRADING and domain.upgrade_target_id:
            target = await self.store.get_domain(domain.upgrade_target_id)
            if target is not None and not target.is_released:
                await self.registry.release(target.id, target.owner)
                await self._teardown(target)
                logger.info("Upgrade cancelled", fqdn=domain.fqdn, custom_domain=target.fqdn)

        if domain.upgraded_from_id:
            origin = await self.store.get_domain(domain.upgraded_from_id)
            if origin is not None and not origin.is_released:
                if origin.status == DomainStatus.UPGRADING and origin.upgrade_target_id == domain.id:
                    origin.status = DomainStatus.ACTIVE
                    origin.upgrade_target_id = None
                    logger.info("Upgrade cancelled", fqdn=origin.fqdn, custom_domain=domain.fqdn)
                if origin.alias_of_id == domain.id:
                    origin.alias_of_id = None
                origin.touch()
                await self.store.save_domain(origin)

        if domain.alias_of_id:
            custom = await self.store.get_domain(domain.alias_of_id)
            if custom is not None and custom.upgraded_from_id == domain.id:
                custom.upgraded_from_id = None
                custom.touch()
                await self.store.save_domain(custom)

    # Certificates

    async def retry_certificate(self, domain_id: str, owner: str | None = None) -> Certificate:
        """Give a failed certificate a fresh round of attempts."""
        async with self._exclusive("retry_certificate", domain_id):
            domain = await self._owned(domain_id, owner)
            return await self.certificates.retry(domain.id)

    async def get_certificate(self, domain_id: str) -> Certificate:
        return await self.certificates.get(domain_id)

    # Queries

    async def lookup(self, name: str, tld: str) -> Domain | None:
        return await self.registry.lookup(name, tld)

    async def get_domain(self, domain_id: str) -> Domain:
        return await self.registry.get(domain_id)

    async def list_domains(self, owner: str | None = None) -> list[Domain]:
        return await self.registry.list_domains(owner)

    async def list_records(self, domain_id: str) -> list[DNSRecord]:
        return await self.records.list_records(domain_id)

    async def get_domain_info(self, domain_id: str) -> DomainInfo:
        """Domain with its records, certificate and linked domains."""
        domain = await self.registry.get(domain_id)
        records = [] if domain.is_released else await self.store.get_records(domain_id)
        certificate = await self.store.get_certificate(domain_id)

        upgrade_target = None
        if domain.upgrade_target_id:
            upgrade_target = await self.store.get_domain(domain.upgrade_target_id)
        alias_of = None
        if domain.alias_of_id:
            alias_of = await self.store.get_domain(domain.alias_of_id)

        dns_instructions = None
        if domain.custom and domain.status == DomainStatus.PENDING:
            dns_instructions = self.verifier.dns_instructions(domain.fqdn)
        elif upgrade_target is not None and upgrade_target.status == DomainStatus.PENDING:
            dns_instructions = self.verifier.dns_instructions(upgrade_target.fqdn)

        return DomainInfo(
            domain=domain,
            records=records,
            certificate=certificate,
            upgrade_target=upgrade_target,
            alias_of=alias_of,
            dns_instructions=dns_instructions,
        )

    async def resolve(self, host: str) -> Domain | None:
        """Find the resolvable domain serving a hostname.

        Exact matches (apex or a labelled record) win over wildcard matches.
        """
        host = normalize_hostname(host)
        domains = [d for d in await self.store.list_domains() if d.is_resolvable]

        for domain in domains:
            if domain.fqdn == host:
                return domain

        for domain in domains:
            if not host.endswith(f".{domain.fqdn}"):
                continue
            for record in await self.store.get_records(domain.id):
                if record.is_address and domain.host_for(record.host_label) == host:
                    return domain

        wildcards = {wildcard_for(d.fqdn): d for d in domains if d.wildcard_enabled}
        pattern = find_matching_wildcard(host, list(wildcards))
        return wildcards[pattern] if pattern else None

    # Background work

    async def flush(self) -> int:
        """Publish every queued record set now."""
        return await self.publisher.drain()

    async def tick(self, reload: bool = False) -> int:
        """Run one round of background work in the calling task.

        Args:
            reload: Re-read the storage file first (another process may
                have changed it).

        Returns:
            Number of certificate attempts made.
        """
        if reload:
            self.store.invalidate_cache()
        attempts = await self.certificates.run_once()
        await self.publisher.drain()
        await self.registry.purge_expired()
        return attempts

    async def _purge_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.purge_interval)
                await self.registry.purge_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Purge loop error", error=str(e))

    def start(self) -> None:
        """Start the publish worker, certificate driver and purge loop."""
        self.publisher.start()
        self.certificates.start()
        if self._purge_task is None or self._purge_task.done():
            self._purge_task = asyncio.create_task(self._purge_loop())

    async def stop(self) -> None:
        if self._purge_task:
            self._purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._purge_task
            self._purge_task = None
        await self.certificates.stop()
        await self.publisher.stop()

    async def aclose(self) -> None:
        """Stop background work and close HTTP clients."""
        await self.stop()
        for closable in self._closables:
            await closable.aclose()
        self._closables = []
