"""Storage for domains, DNS records and certificates.

This module provides JSON file-based storage suitable for self-hosted
deployments. Passing ``storage_path=None`` keeps everything in memory.

Storage file format (buildns.json):
    {
        "domains": {
            "4f1c...": {
                "id": "4f1c...",
                "name": "myapp",
                "tld": "build",
                "owner": "org-42",
                "status": "active",
                ...
            }
        },
        "records": {
            "4f1c...": [
                {"type": "CNAME", "host_label": "@", "value": "frontdoor.build", ...}
            ]
        },
        "certificates": {
            "4f1c...": {"domain_id": "4f1c...", "state": "pending", ...}
        }
    }

The (name, tld) index is rebuilt on load and is the single consistency
point for claims: insert_if_absent checks and inserts under one lock.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from buildns.domains.models import Certificate, DNSRecord, Domain

logger = structlog.get_logger()


class DomainStore:
    """JSON document store with three collections.

    Reads return detached copies; state only changes through the write
    methods, so a failed operation never leaves half-applied objects behind.
    """

    def __init__(self, storage_path: str | Path | None = "buildns.json") -> None:
        """Initialize the store.

        Args:
            storage_path: Path to the JSON storage file, or None for memory only.
        """
        self.storage_path = Path(storage_path) if storage_path is not None else None
        self._lock = asyncio.Lock()
        self._domains: dict[str, Domain] | None = None
        self._records: dict[str, list[DNSRecord]] = {}
        self._certificates: dict[str, Certificate] = {}
        self._index: dict[tuple[str, str], str] = {}

    async def _load(self) -> dict[str, Domain]:
        """Load the document from the storage file."""
        if self._domains is not None:
            return self._domains

        self._domains = {}
        self._records = {}
        self._certificates = {}
        self._index = {}

        if self.storage_path is None or not self.storage_path.exists():
            return self._domains

        try:
            content = await asyncio.to_thread(self.storage_path.read_text)
            data = json.loads(content) if content.strip() else {}
            for domain_id, raw in data.get("domains", {}).items():
                self._domains[domain_id] = Domain.from_dict(raw)
            for domain_id, raw_records in data.get("records", {}).items():
                self._records[domain_id] = [DNSRecord.from_dict(r) for r in raw_records]
            for domain_id, raw in data.get("certificates", {}).items():
                self._certificates[domain_id] = Certificate.from_dict(raw)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(
                "Storage file unreadable, starting empty",
                path=str(self.storage_path),
                error=str(e),
            )
            self._domains = {}
            self._records = {}
            self._certificates = {}

        for domain in self._domains.values():
            current = self._index.get(domain.key)
            # Prefer a holding claim over a released one for the same pair
            if current is None or self._domains[current].is_released:
                self._index[domain.key] = domain.id

        return self._domains

    async def _save(self) -> None:
        """Write the document to the storage file."""
        if self.storage_path is None or self._domains is None:
            return
        data: dict[str, Any] = {
            "domains": {d_id: d.to_dict() for d_id, d in self._domains.items()},
            "records": {
                d_id: [r.to_dict() for r in records]
                for d_id, records in self._records.items()
            },
            "certificates": {
                d_id: cert.to_dict() for d_id, cert in self._certificates.items()
            },
        }
        content = json.dumps(data, indent=2)
        await asyncio.to_thread(self.storage_path.write_text, content)

    def _drop(self, domain_id: str) -> None:
        assert self._domains is not None
        domain = self._domains.pop(domain_id, None)
        self._records.pop(domain_id, None)
        self._certificates.pop(domain_id, None)
        if domain and self._index.get(domain.key) == domain_id:
            del self._index[domain.key]

    # Domains

    async def insert_if_absent(
        self,
        domain: Domain,
        blocks: Callable[[Domain], bool],
    ) -> Domain | None:
        """Insert a domain unless its (name, tld) pair is held.

        Args:
            domain: The new domain to insert.
            blocks: Decides whether the existing holder of the pair blocks
                the insert. Non-blocking holders are dropped.

        Returns:
            None if inserted, otherwise a copy of the blocking domain.
        """
        async with self._lock:
            domains = await self._load()
            existing_id = self._index.get(domain.key)
            if existing_id is not None:
                existing = domains[existing_id]
                if blocks(existing):
                    return Domain.from_dict(existing.to_dict())
                self._drop(existing_id)
            domains[domain.id] = Domain.from_dict(domain.to_dict())
            self._index[domain.key] = domain.id
            await self._save()
            return None

    async def get_domain(self, domain_id: str) -> Domain | None:
        async with self._lock:
            domains = await self._load()
            domain = domains.get(domain_id)
            return Domain.from_dict(domain.to_dict()) if domain else None

    async def find(self, name: str, tld: str) -> Domain | None:
        """Get the domain currently indexed for a (name, tld) pair."""
        async with self._lock:
            domains = await self._load()
            domain_id = self._index.get((name, tld))
            if domain_id is None:
                return None
            return Domain.from_dict(domains[domain_id].to_dict())

    async def save_domain(self, domain: Domain) -> None:
        """Update an existing domain."""
        async with self._lock:
            domains = await self._load()
            if domain.id not in domains:
                raise KeyError(domain.id)
            domains[domain.id] = Domain.from_dict(domain.to_dict())
            await self._save()

    async def delete_domain(self, domain_id: str) -> bool:
        """Delete a domain with its records and certificate."""
        async with self._lock:
            domains = await self._load()
            if domain_id not in domains:
                return False
            self._drop(domain_id)
            await self._save()
            return True

    async def list_domains(
        self,
        owner: str | None = None,
        include_released: bool = False,
    ) -> list[Domain]:
        async with self._lock:
            domains = await self._load()
            return [
                Domain.from_dict(d.to_dict())
                for d in domains.values()
                if (owner is None or d.owner == owner)
                and (include_released or not d.is_released)
            ]

    # Records

    async def get_records(self, domain_id: str) -> list[DNSRecord]:
        async with self._lock:
            await self._load()
            return [
                DNSRecord.from_dict(r.to_dict()) for r in self._records.get(domain_id, [])
            ]

    async def set_records(self, domain_id: str, records: list[DNSRecord]) -> None:
        """Replace a domain's record set in one write."""
        async with self._lock:
            await self._load()
            if records:
                self._records[domain_id] = [DNSRecord.from_dict(r.to_dict()) for r in records]
            else:
                self._records.pop(domain_id, None)
            await self._save()

    # Certificates

    async def get_certificate(self, domain_id: str) -> Certificate | None:
        async with self._lock:
            await self._load()
            cert = self._certificates.get(domain_id)
            return Certificate.from_dict(cert.to_dict()) if cert else None

    async def save_certificate(self, certificate: Certificate) -> None:
        async with self._lock:
            await self._load()
            self._certificates[certificate.domain_id] = Certificate.from_dict(
                certificate.to_dict()
            )
            await self._save()

    async def delete_certificate(self, domain_id: str) -> bool:
        async with self._lock:
            await self._load()
            if self._certificates.pop(domain_id, None) is None:
                return False
            await self._save()
            return True

    async def list_certificates(self) -> list[Certificate]:
        async with self._lock:
            await self._load()
            return [Certificate.from_dict(c.to_dict()) for c in self._certificates.values()]

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory cache.

        Call this after external modifications to the storage file.
        Memory-only stores have nothing to reload and keep their contents.
        """
        if self.storage_path is not None:
            self._domains = None
