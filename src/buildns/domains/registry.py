"""Name registry: globally unique (name, tld) claims.

A released name is held back for a grace period so it cannot be re-claimed
by somebody else the moment it is freed. The principal that released it can
take it back during that window, the same way a disconnected tunnel client
gets its subdomain back.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from buildns.core.exceptions import NameTaken, NotFound, NotOwner
from buildns.domains.models import HOLDING_STATUSES, Domain, DomainStatus
from buildns.domains.storage import DomainStore
from buildns.domains.validation import validate_name, validate_tld
from buildns.observability.metrics import CLAIMS, RELEASES

logger = structlog.get_logger()


class NameRegistry:
    """Reserves, releases and looks up claimed names."""

    def __init__(
        self,
        store: DomainStore,
        allowed_tlds: list[str],
        release_grace_period: float = 3600.0,
    ) -> None:
        self.store = store
        self.allowed_tlds = list(allowed_tlds)
        self.release_grace_period = release_grace_period

    def _in_grace(self, domain: Domain, now: datetime) -> bool:
        if domain.released_at is None:
            return False
        return now - domain.released_at < timedelta(seconds=self.release_grace_period)

    async def reserve(
        self,
        name: str,
        tld: str,
        owner: str,
        *,
        custom: bool = False,
    ) -> Domain:
        """Atomically claim a (name, tld) pair.

        Args:
            name: Subdomain label to claim.
            tld: One of the allowed TLDs, or a custom parent zone when custom is set.
            owner: Claiming principal.
            custom: Skip the TLD allow-list (upgrade targets).

        Returns:
            The new domain in pending status.

        Raises:
            InvalidName: If the name or TLD is invalid.
            NameTaken: If the pair is held, or in release grace for another owner.
        """
        name = validate_name(name)
        tld = tld.strip().lower().strip(".") if custom else validate_tld(tld, self.allowed_tlds)

        domain = Domain(name=name, tld=tld, owner=owner, custom=custom)
        now = datetime.now(UTC)

        def blocks(existing: Domain) -> bool:
            if existing.status in HOLDING_STATUSES:
                return True
            return self._in_grace(existing, now) and existing.owner != owner

        holder = await self.store.insert_if_absent(domain, blocks)
        if holder is not None:
            CLAIMS.labels(result="taken").inc()
            hint = None
            if holder.is_released:
                hint = "The name was released recently and is held for a grace period."
            raise NameTaken(f"{domain.fqdn} is already claimed", hint=hint)

        CLAIMS.labels(result="reserved").inc()
        logger.info("Name reserved", fqdn=domain.fqdn, domain_id=domain.id, owner=owner)
        return domain

    async def get(self, domain_id: str) -> Domain:
        domain = await self.store.get_domain(domain_id)
        if domain is None:
            raise NotFound(f"Domain {domain_id} not found")
        return domain

    async def lookup(self, name: str, tld: str) -> Domain | None:
        """Get the non-released domain holding a pair, if any."""
        domain = await self.store.find(name.strip().lower(), tld.strip().lower().strip("."))
        if domain is None or domain.is_released:
            return None
        return domain

    async def release(self, domain_id: str, owner: str) -> Domain:
        """Mark a domain released and start its grace period.

        Raises:
            NotFound: If the domain does not exist or is already released.
            NotOwner: If owner is not the claiming principal.
        """
        domain = await self.store.get_domain(domain_id)
        if domain is None or domain.is_released:
            raise NotFound(f"Domain {domain_id} not found")
        if domain.owner != owner:
            raise NotOwner(f"{domain.fqdn} is not owned by {owner}")

        domain.status = DomainStatus.RELEASED
        domain.released_at = datetime.now(UTC)
        domain.touch()
        await self.store.save_domain(domain)

        RELEASES.inc()
        logger.info("Name released", fqdn=domain.fqdn, domain_id=domain.id, owner=owner)
        return domain

    async def discard(self, domain_id: str) -> None:
        """Drop a reservation outright, without a grace period.

        Used to roll back a claim that failed before becoming visible.
        """
        if await self.store.delete_domain(domain_id):
            logger.info("Reservation rolled back", domain_id=domain_id)

    async def purge_expired(self) -> int:
        """Delete released domains whose grace period has elapsed."""
        now = datetime.now(UTC)
        purged = 0
        for domain in await self.store.list_domains(include_released=True):
            if domain.is_released and not self._in_grace(domain, now):
                if await self.store.delete_domain(domain.id):
                    purged += 1
        if purged:
            logger.info("Purged expired releases", count=purged)
        return purged

    async def list_domains(self, owner: str | None = None) -> list[Domain]:
        return await self.store.list_domains(owner=owner)
