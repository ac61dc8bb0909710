"""Shared fixtures for buildns tests."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from buildns.core.config import DEFAULT_TLDS
from buildns.domains import (
    CertificateHandle,
    CertificateOrchestrator,
    CertificateStatus,
    DomainManager,
    DomainStore,
    NameRegistry,
    NullDNSBackend,
    PublishQueue,
    RecordStore,
)


class FakeAuthority:
    """In-memory certificate authority.

    Args:
        fail: Number of orders that fail before orders succeed; -1 fails forever.
        error: Error reported for failing orders.
        expires_at: Expiry reported for ready certificates.
    """

    def __init__(
        self,
        fail: int = 0,
        error: str = "rate limited",
        expires_at: datetime | None = None,
    ) -> None:
        self.fail = fail
        self.error = error
        self.expires_at = expires_at
        self.requests: list[list[str]] = []
        self.gate: asyncio.Event | None = None

    async def request_certificate(self, hosts: list[str]) -> CertificateHandle:
        self.requests.append(list(hosts))
        order = len(self.requests)
        if self.gate is not None:
            await self.gate.wait()
        return CertificateHandle(id=f"order-{order}", hosts=tuple(hosts))

    async def poll_status(self, handle: CertificateHandle) -> CertificateStatus:
        order = int(handle.id.split("-")[1])
        if self.fail < 0 or order <= self.fail:
            return CertificateStatus(ready=False, error=self.error)
        return CertificateStatus(ready=True, expires_at=self.expires_at)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the event loop until predicate() holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


@pytest.fixture
def make_orchestrator():
    def factory(store: DomainStore, authority=None, **kwargs) -> CertificateOrchestrator:
        options = {
            "max_attempts": 3,
            "base_delay": 0.0,
            "max_delay": 0.0,
            "jitter": 0.0,
            "poll_interval": 0.01,
            "status_poll_interval": 0.0,
        }
        options.update(kwargs)
        return CertificateOrchestrator(store, authority, **options)

    return factory


@pytest.fixture
def make_manager(make_orchestrator):
    """Build a memory-backed DomainManager."""

    def factory(
        authority=None,
        *,
        grace: float = 3600.0,
        storage_path=None,
        **orchestrator_options,
    ) -> DomainManager:
        store = DomainStore(storage_path)
        publisher = PublishQueue(NullDNSBackend(), base_delay=0.0, max_delay=0.0)
        return DomainManager(
            store,
            NameRegistry(store, DEFAULT_TLDS, release_grace_period=grace),
            RecordStore(store, publisher),
            make_orchestrator(store, authority, **orchestrator_options),
            publisher,
        )

    return factory
