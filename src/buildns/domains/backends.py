"""Boundaries to the external collaborators of the core.

The core only needs two things from the outside world:

- a certificate authority that accepts an order for a set of hostnames and
  reports when it is ready (ACME details live behind it), and
- a DNS backend that receives the full record set of a domain whenever it
  changes. Publishing is eventually consistent; the core never waits for
  propagation.

HTTP implementations talk to JSON APIs with httpx:

    POST {ca_url}/certificates            {"hosts": [...]}       -> {"id": "..."}
    GET  {ca_url}/certificates/{id}                              -> {"status": "pending|ready|failed",
                                                                     "error": "...", "expires_at": "..."}
    PUT  {dns_api_url}/zones/{fqdn}/records {"domain_id": "...", "records": [...]}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

import httpx
import structlog

from buildns.domains.models import DNSRecord

logger = structlog.get_logger()


class BackendError(Exception):
    """Transient failure talking to an external collaborator."""


class CertificateAuthorityError(BackendError):
    pass


class DNSPublishError(BackendError):
    pass


@dataclass(frozen=True)
class CertificateHandle:
    """A certificate order accepted by the CA."""

    id: str
    hosts: tuple[str, ...]


@dataclass(frozen=True)
class CertificateStatus:
    ready: bool
    error: str | None = None
    expires_at: datetime | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@runtime_checkable
class CertificateAuthority(Protocol):
    async def request_certificate(self, hosts: list[str]) -> CertificateHandle: ...

    async def poll_status(self, handle: CertificateHandle) -> CertificateStatus: ...


@runtime_checkable
class DNSBackend(Protocol):
    async def publish(self, domain_id: str, fqdn: str, records: list[DNSRecord]) -> None: ...


def _auth_headers(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


class HTTPCertificateAuthority:
    """Certificate authority reached over a JSON HTTP API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=_auth_headers(token),
            timeout=timeout,
        )

    async def request_certificate(self, hosts: list[str]) -> CertificateHandle:
        try:
            response = await self._client.post("/certificates", json={"hosts": hosts})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CertificateAuthorityError(f"Certificate request failed: {e}") from e

        order_id = data.get("id")
        if not order_id:
            raise CertificateAuthorityError("Certificate request returned no order id")
        return CertificateHandle(id=str(order_id), hosts=tuple(hosts))

    async def poll_status(self, handle: CertificateHandle) -> CertificateStatus:
        try:
            response = await self._client.get(f"/certificates/{handle.id}")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CertificateAuthorityError(f"Certificate status check failed: {e}") from e

        status = data.get("status", "pending")
        if status == "ready":
            expires_at = data.get("expires_at")
            try:
                parsed = datetime.fromisoformat(expires_at) if expires_at else None
            except (TypeError, ValueError) as e:
                raise CertificateAuthorityError(f"Invalid certificate expiry: {expires_at!r}") from e
            return CertificateStatus(ready=True, expires_at=parsed)
        if status == "failed":
            return CertificateStatus(ready=False, error=data.get("error") or "issuance failed")
        return CertificateStatus(ready=False)

    async def aclose(self) -> None:
        await self._client.aclose()


class HTTPDNSBackend:
    """DNS propagation API reached over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=_auth_headers(token),
            timeout=timeout,
        )

    async def publish(self, domain_id: str, fqdn: str, records: list[DNSRecord]) -> None:
        payload = {
            "domain_id": domain_id,
            "records": [
                {
                    "type": r.type.value,
                    "host_label": r.host_label,
                    "value": r.value,
                    "redirect": r.redirect.to_dict() if r.redirect else None,
                }
                for r in records
            ],
        }
        try:
            response = await self._client.put(f"/zones/{fqdn}/records", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DNSPublishError(f"Publishing {fqdn} failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class NullDNSBackend:
    """Logs record sets instead of publishing them."""

    async def publish(self, domain_id: str, fqdn: str, records: list[DNSRecord]) -> None:
        logger.info(
            "DNS publish skipped (no backend configured)",
            fqdn=fqdn,
            domain_id=domain_id,
            records=len(records),
        )
