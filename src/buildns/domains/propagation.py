"""Background publishing of record sets to the DNS backend.

Callers submit the full record set of a domain after every change and move
on; a worker task publishes it with bounded exponential backoff. Snapshots
for the same domain coalesce, so only the latest record set is sent, and a
retry is abandoned as soon as a newer snapshot arrives.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import OrderedDict

import structlog

from buildns.core.backoff import backoff_delay
from buildns.domains.backends import DNSBackend
from buildns.domains.models import DNSRecord
from buildns.observability.metrics import DNS_PUBLISHES, PUBLISH_QUEUE_DEPTH

logger = structlog.get_logger()


class PublishQueue:
    """Coalescing, retrying publish queue keyed by domain id."""

    def __init__(
        self,
        backend: DNSBackend,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.2,
    ) -> None:
        self.backend = backend
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._pending: OrderedDict[str, tuple[str, list[DNSRecord]]] = OrderedDict()
        self._wake = asyncio.Event()
        self._drain_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    def submit(self, domain_id: str, fqdn: str, records: list[DNSRecord]) -> None:
        """Queue the current record set of a domain. Never blocks."""
        self._pending[domain_id] = (fqdn, [r.copy() for r in records])
        self._pending.move_to_end(domain_id)
        PUBLISH_QUEUE_DEPTH.set(len(self._pending))
        self._wake.set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def is_pending(self, domain_id: str) -> bool:
        return domain_id in self._pending

    async def _publish(self, domain_id: str, fqdn: str, records: list[DNSRecord]) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.backend.publish(domain_id, fqdn, records)
            except Exception as e:
                if attempt >= self.max_attempts:
                    DNS_PUBLISHES.labels(outcome="abandoned").inc()
                    logger.error(
                        "DNS publish abandoned",
                        fqdn=fqdn,
                        domain_id=domain_id,
                        attempts=attempt,
                        error=str(e),
                    )
                    return False

                delay = backoff_delay(attempt, self.base_delay, self.max_delay, self.jitter)
                DNS_PUBLISHES.labels(outcome="retried").inc()
                logger.warning(
                    "DNS publish failed, retrying",
                    fqdn=fqdn,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_sec=round(delay, 2),
                    error=str(e),
                )
                await asyncio.sleep(delay)
                if domain_id in self._pending:
                    logger.debug("DNS publish superseded by newer records", fqdn=fqdn)
                    return False
                continue

            DNS_PUBLISHES.labels(outcome="published").inc()
            logger.debug("DNS records published", fqdn=fqdn, records=len(records))
            return True
        return False

    async def drain(self) -> int:
        """Publish everything queued so far. Returns the number published."""
        published = 0
        async with self._drain_lock:
            while self._pending:
                domain_id, (fqdn, records) = self._pending.popitem(last=False)
                PUBLISH_QUEUE_DEPTH.set(len(self._pending))
                if await self._publish(domain_id, fqdn, records):
                    published += 1
        return published

    async def _run(self) -> None:
        while True:
            try:
                await self._wake.wait()
                self._wake.clear()
                await self.drain()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("DNS publish loop error", error=str(e))

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
