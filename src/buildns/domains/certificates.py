"""Certificate orchestration for claimed domains.

Each domain owns one certificate that moves through this state machine:

    uninitiated -> pending -> issuing -> active -> renewing -> active ...
                                 |                    |
                                 +----> failed <------+
                                          |
                                          +--> issuing / renewing (retry with backoff)
                                          +--> pending (coverage changed, manual retry)

Requesting a certificate is decoupled from the certificate being ready: the
lifecycle controller records the wish (state pending) and returns, while the
background driver talks to the certificate authority. A domain resolves over
HTTP whatever its certificate is doing.

Attempts are tagged with the certificate's generation. The generation moves
whenever the covered hostnames change, so a result for an outdated set of
hosts, or for a certificate that was discarded when its domain was released,
is dropped on arrival.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog

from buildns.core.backoff import backoff_delay
from buildns.core.exceptions import CertificateIssuanceFailed, InvalidTransition, NotFound
from buildns.domains.backends import (
    BackendError,
    CertificateAuthority,
    CertificateAuthorityError,
    CertificateHandle,
    CertificateStatus,
)
from buildns.domains.models import (
    Certificate,
    CertificateState,
    DNSRecord,
    Domain,
    covered_hosts_for,
)
from buildns.domains.storage import DomainStore
from buildns.observability.metrics import (
    CERTIFICATE_ATTEMPTS,
    CERTIFICATES_IN_FLIGHT,
    ISSUANCE_DURATION,
)

logger = structlog.get_logger()

_TRANSITIONS: dict[CertificateState, frozenset[CertificateState]] = {
    CertificateState.UNINITIATED: frozenset({CertificateState.PENDING}),
    CertificateState.PENDING: frozenset({CertificateState.ISSUING}),
    CertificateState.ISSUING: frozenset(
        {CertificateState.ACTIVE, CertificateState.FAILED, CertificateState.PENDING}
    ),
    CertificateState.ACTIVE: frozenset({CertificateState.RENEWING}),
    CertificateState.RENEWING: frozenset({CertificateState.ACTIVE, CertificateState.FAILED}),
    CertificateState.FAILED: frozenset(
        {CertificateState.ISSUING, CertificateState.RENEWING, CertificateState.PENDING}
    ),
}


class CertificateEvent(Enum):
    ISSUED = "issued"
    EXHAUSTED = "exhausted"


CertificateListener = Callable[[Certificate, CertificateEvent], Awaitable[object]]


def transition(certificate: Certificate, new_state: CertificateState) -> None:
    """Move a certificate to a new state.

    Raises:
        InvalidTransition: If the state machine does not allow the move.
    """
    if new_state not in _TRANSITIONS[certificate.state]:
        raise InvalidTransition(
            f"Certificate for {certificate.domain_id} cannot go from "
            f"{certificate.state.value} to {new_state.value}"
        )
    certificate.state = new_state


class CertificateOrchestrator:
    """Drives issuance and renewal of per-domain certificates.

    Usage:
        orchestrator = CertificateOrchestrator(store, authority)
        orchestrator.add_listener(on_certificate_event)
        orchestrator.start()

        await orchestrator.initialize(domain, records)   # returns immediately
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        store: DomainStore,
        authority: CertificateAuthority | None,
        *,
        max_attempts: int = 5,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        jitter: float = 0.2,
        renewal_window: timedelta = timedelta(days=30),
        poll_interval: float = 10.0,
        status_poll_interval: float = 2.0,
        issuance_timeout: float = 300.0,
        default_validity: timedelta = timedelta(days=90),
        max_concurrent: int = 10,
    ) -> None:
        self.store = store
        self.authority = authority
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.renewal_window = renewal_window
        self.poll_interval = poll_interval
        self.status_poll_interval = status_poll_interval
        self.issuance_timeout = issuance_timeout
        self.default_validity = default_validity

        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._wake = asyncio.Event()
        self._changed = asyncio.Condition()
        self._settled: dict[str, CertificateEvent] = {}
        self._in_flight: set[str] = set()
        self._attempt_tasks: set[asyncio.Task] = set()
        self._listeners: list[CertificateListener] = []
        self._task: asyncio.Task | None = None

    def add_listener(self, listener: CertificateListener) -> None:
        """Register a callback for ISSUED and EXHAUSTED events."""
        self._listeners.append(listener)

    def wake(self) -> None:
        """Ask the driver to look for due work now."""
        self._wake.set()

    def is_exhausted(self, certificate: Certificate) -> bool:
        return (
            certificate.state == CertificateState.FAILED
            and certificate.attempt_count >= self.max_attempts
        )

    async def get(self, domain_id: str) -> Certificate:
        certificate = await self.store.get_certificate(domain_id)
        if certificate is None:
            raise NotFound(f"No certificate for domain {domain_id}")
        return certificate

    async def _unsettle(self, domain_id: str) -> None:
        async with self._changed:
            self._settled.pop(domain_id, None)

    async def initialize(self, domain: Domain, records: list[DNSRecord]) -> Certificate:
        """Create the certificate for a new domain in pending state."""
        certificate = Certificate(
            domain_id=domain.id,
            covered_hosts=covered_hosts_for(domain, records),
            generation=1,
        )
        transition(certificate, CertificateState.PENDING)
        async with self._lock:
            await self.store.save_certificate(certificate)
        await self._unsettle(domain.id)

        logger.info(
            "Certificate requested",
            fqdn=domain.fqdn,
            hosts=certificate.covered_hosts,
        )
        self.wake()
        return certificate

    async def recompute(self, domain: Domain, records: list[DNSRecord]) -> bool:
        """Refresh covered hosts after a hostname-surface change.

        Returns:
            True if the covered hosts changed and issuance was re-triggered.
        """
        hosts = covered_hosts_for(domain, records)
        async with self._lock:
            certificate = await self.store.get_certificate(domain.id)
            if certificate is None:
                certificate = Certificate(domain_id=domain.id)
            elif certificate.covered_hosts == hosts:
                return False

            previous = certificate.state
            certificate.covered_hosts = hosts
            certificate.generation += 1
            certificate.attempt_count = 0
            certificate.next_attempt_at = None
            certificate.last_error = None

            if previous == CertificateState.ACTIVE:
                transition(certificate, CertificateState.RENEWING)
            elif previous in (
                CertificateState.UNINITIATED,
                CertificateState.ISSUING,
                CertificateState.FAILED,
            ):
                transition(certificate, CertificateState.PENDING)
            # pending and renewing keep their state; the new generation
            # makes any in-flight result stale

            await self.store.save_certificate(certificate)
        await self._unsettle(domain.id)

        logger.info(
            "Certificate coverage changed",
            fqdn=domain.fqdn,
            state=certificate.state.value,
            hosts=hosts,
            generation=certificate.generation,
        )
        self.wake()
        return True

    async def retry(self, domain_id: str) -> Certificate:
        """Give a failed certificate a fresh set of attempts.

        Certificates in any other state are returned unchanged.
        """
        async with self._lock:
            certificate = await self.get(domain_id)
            if certificate.state != CertificateState.FAILED:
                return certificate
            transition(certificate, CertificateState.PENDING)
            certificate.attempt_count = 0
            certificate.next_attempt_at = None
            await self.store.save_certificate(certificate)
        await self._unsettle(domain_id)

        logger.info("Certificate retry requested", domain_id=domain_id)
        self.wake()
        return certificate

    async def discard(self, domain_id: str) -> None:
        """Forget a domain's certificate. In-flight attempts become orphans."""
        async with self._lock:
            await self.store.delete_certificate(domain_id)
        await self._unsettle(domain_id)

    async def wait_until_settled(self, domain_id: str, timeout: float | None = None) -> Certificate:
        """Wait until the current generation is issued or exhausted.

        Raises:
            CertificateIssuanceFailed: If issuance exhausted its attempts.
            TimeoutError: If nothing settled within timeout.
        """
        certificate = await self.get(domain_id)
        if certificate.state == CertificateState.ACTIVE:
            return certificate
        if self.is_exhausted(certificate):
            raise CertificateIssuanceFailed(
                f"Certificate issuance failed: {certificate.last_error}",
                hint="The domain still resolves over HTTP. Retry once the cause is fixed.",
            )

        async with self._changed:
            await asyncio.wait_for(
                self._changed.wait_for(lambda: domain_id in self._settled),
                timeout=timeout,
            )
            event = self._settled[domain_id]

        certificate = await self.get(domain_id)
        if event == CertificateEvent.EXHAUSTED:
            raise CertificateIssuanceFailed(
                f"Certificate issuance failed: {certificate.last_error}",
                hint="The domain still resolves over HTTP. Retry once the cause is fixed.",
            )
        return certificate

    async def _is_live(self, domain_id: str) -> bool:
        domain = await self.store.get_domain(domain_id)
        return domain is not None and not domain.is_released

    def _renewal_due(self, certificate: Certificate, now: datetime) -> bool:
        return (
            certificate.expires_at is not None
            and certificate.expires_at - now <= self.renewal_window
        )

    async def _claim_due(self) -> list[tuple[str, int, tuple[str, ...], str]]:
        """Move due certificates into issuing/renewing and book an attempt."""
        now = datetime.now(UTC)
        due: list[tuple[str, int, tuple[str, ...], str]] = []

        async with self._lock:
            for certificate in await self.store.list_certificates():
                if certificate.domain_id in self._in_flight:
                    continue

                state = certificate.state
                if state == CertificateState.ISSUING:
                    # Attempt interrupted (shutdown, crash); start it over
                    transition(certificate, CertificateState.PENDING)
                    state = CertificateState.PENDING

                if state == CertificateState.PENDING:
                    if certificate.next_attempt_at and certificate.next_attempt_at > now:
                        continue
                    transition(certificate, CertificateState.ISSUING)
                elif state == CertificateState.ACTIVE:
                    if not self._renewal_due(certificate, now):
                        continue
                    transition(certificate, CertificateState.RENEWING)
                elif state == CertificateState.RENEWING:
                    pass
                elif state == CertificateState.FAILED:
                    if certificate.attempt_count >= self.max_attempts:
                        continue
                    if certificate.next_attempt_at and certificate.next_attempt_at > now:
                        continue
                    transition(
                        certificate,
                        CertificateState.RENEWING
                        if certificate.has_been_issued
                        else CertificateState.ISSUING,
                    )
                else:
                    continue

                if not await self._is_live(certificate.domain_id):
                    continue

                certificate.attempt_count += 1
                certificate.last_attempt_at = now
                certificate.next_attempt_at = None
                await self.store.save_certificate(certificate)

                self._in_flight.add(certificate.domain_id)
                kind = "renew" if certificate.state == CertificateState.RENEWING else "issue"
                due.append(
                    (
                        certificate.domain_id,
                        certificate.generation,
                        tuple(certificate.covered_hosts),
                        kind,
                    )
                )
        return due

    async def _issue(self, hosts: tuple[str, ...]) -> tuple[CertificateHandle, CertificateStatus]:
        if self.authority is None:
            raise CertificateAuthorityError("No certificate authority configured")
        handle = await self.authority.request_certificate(list(hosts))
        while True:
            status = await self.authority.poll_status(handle)
            if status.ready:
                return handle, status
            if status.failed:
                raise CertificateAuthorityError(status.error or "issuance failed")
            await asyncio.sleep(self.status_poll_interval)

    async def _attempt(
        self,
        domain_id: str,
        generation: int,
        hosts: tuple[str, ...],
        kind: str,
    ) -> None:
        started = time.monotonic()
        handle: CertificateHandle | None = None
        status: CertificateStatus | None = None
        error: str | None = None

        try:
            async with self._semaphore:
                CERTIFICATES_IN_FLIGHT.inc()
                try:
                    handle, status = await asyncio.wait_for(
                        self._issue(hosts), timeout=self.issuance_timeout
                    )
                except TimeoutError:
                    error = f"issuance timed out after {self.issuance_timeout:.0f}s"
                except BackendError as e:
                    error = str(e)
                except Exception as e:
                    error = f"{type(e).__name__}: {e}"
                    logger.error(
                        "Unexpected certificate authority error",
                        domain_id=domain_id,
                        error=error,
                    )
                finally:
                    CERTIFICATES_IN_FLIGHT.dec()

            if error is None:
                ISSUANCE_DURATION.observe(time.monotonic() - started)
            await self._complete(domain_id, generation, kind, handle, status, error)
        finally:
            self._in_flight.discard(domain_id)

    async def _complete(
        self,
        domain_id: str,
        generation: int,
        kind: str,
        handle: CertificateHandle | None,
        status: CertificateStatus | None,
        error: str | None,
    ) -> None:
        event: CertificateEvent | None = None
        now = datetime.now(UTC)

        async with self._lock:
            certificate = await self.store.get_certificate(domain_id)
            if (
                certificate is None
                or certificate.generation != generation
                or not await self._is_live(domain_id)
            ):
                CERTIFICATE_ATTEMPTS.labels(kind=kind, outcome="dropped").inc()
                logger.info(
                    "Dropped stale certificate result",
                    domain_id=domain_id,
                    generation=generation,
                )
                self.wake()
                return

            if error is None:
                transition(certificate, CertificateState.ACTIVE)
                certificate.issued_at = now
                certificate.expires_at = (
                    status.expires_at if status and status.expires_at else now + self.default_validity
                )
                certificate.handle = handle.id if handle else None
                certificate.attempt_count = 0
                certificate.last_error = None
                event = CertificateEvent.ISSUED
                CERTIFICATE_ATTEMPTS.labels(kind=kind, outcome="active").inc()
                logger.info(
                    "Certificate active",
                    domain_id=domain_id,
                    hosts=certificate.covered_hosts,
                    expires_at=certificate.expires_at.isoformat(),
                )
            else:
                transition(certificate, CertificateState.FAILED)
                certificate.last_error = error
                if certificate.attempt_count >= self.max_attempts:
                    certificate.next_attempt_at = None
                    event = CertificateEvent.EXHAUSTED
                    CERTIFICATE_ATTEMPTS.labels(kind=kind, outcome="exhausted").inc()
                    logger.error(
                        "Certificate issuance exhausted",
                        domain_id=domain_id,
                        attempts=certificate.attempt_count,
                        error=error,
                    )
                else:
                    delay = backoff_delay(
                        certificate.attempt_count, self.base_delay, self.max_delay, self.jitter
                    )
                    certificate.next_attempt_at = now + timedelta(seconds=delay)
                    CERTIFICATE_ATTEMPTS.labels(kind=kind, outcome="failed").inc()
                    logger.warning(
                        "Certificate attempt failed, retrying",
                        domain_id=domain_id,
                        attempt=certificate.attempt_count,
                        max_attempts=self.max_attempts,
                        delay_sec=round(delay, 2),
                        error=error,
                    )

            await self.store.save_certificate(certificate)

        if event is not None:
            async with self._changed:
                self._settled[domain_id] = event
                self._changed.notify_all()
            await self._notify(certificate, event)

    async def _notify(self, certificate: Certificate, event: CertificateEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(certificate, event)
            except Exception as e:
                logger.error(
                    "Certificate listener failed",
                    domain_id=certificate.domain_id,
                    event=event.value,
                    error=str(e),
                )

    async def run_once(self, wait: bool = True) -> int:
        """Start every due attempt.

        Args:
            wait: Wait for the attempts to finish before returning.

        Returns:
            Number of attempts started.
        """
        if self.authority is None:
            return 0

        due = await self._claim_due()
        tasks = []
        for domain_id, generation, hosts, kind in due:
            task = asyncio.create_task(self._attempt(domain_id, generation, hosts, kind))
            self._attempt_tasks.add(task)
            task.add_done_callback(self._attempt_tasks.discard)
            tasks.append(task)

        if wait and tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    async def _run(self) -> None:
        while True:
            try:
                self._wake.clear()
                await self.run_once(wait=False)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Certificate driver error", error=str(e))
                await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self.authority is None:
            logger.warning("No certificate authority configured; certificates stay pending")
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        for task in list(self._attempt_tasks):
            task.cancel()
        if self._attempt_tasks:
            await asyncio.gather(*self._attempt_tasks, return_exceptions=True)
