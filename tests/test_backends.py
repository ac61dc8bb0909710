"""Tests for the HTTP certificate authority and DNS backends."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from unittest.mock import patch

import httpx
import pytest

from buildns.core.config import BuildnsConfig
from buildns.domains import (
    CertificateAuthorityError,
    CertificateHandle,
    DNSPublishError,
    DNSRecord,
    DomainManager,
    DomainStore,
    HTTPCertificateAuthority,
    HTTPDNSBackend,
    NullDNSBackend,
    RecordType,
    Redirect,
)


def _client(handler, base_url: str) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


class TestHTTPCertificateAuthority:
    """Tests for HTTPCertificateAuthority."""

    @pytest.mark.asyncio
    async def test_request_certificate(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "order-7"})

        authority = HTTPCertificateAuthority(
            "https://ca.test/v1", client=_client(handler, "https://ca.test/v1")
        )

        handle = await authority.request_certificate(["myapp.build", "www.myapp.build"])

        assert handle == CertificateHandle(id="order-7", hosts=("myapp.build", "www.myapp.build"))
        assert seen == {
            "method": "POST",
            "path": "/v1/certificates",
            "body": {"hosts": ["myapp.build", "www.myapp.build"]},
        }
        await authority.aclose()

    @pytest.mark.asyncio
    async def test_poll_status(self):
        statuses = iter(
            [
                {"status": "pending"},
                {"status": "ready", "expires_at": "2031-01-01T00:00:00+00:00"},
                {"status": "failed", "error": "CAA record forbids issuance"},
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/certificates/order-1"
            return httpx.Response(200, json=next(statuses))

        authority = HTTPCertificateAuthority(
            "https://ca.test", client=_client(handler, "https://ca.test")
        )
        handle = CertificateHandle(id="order-1", hosts=("myapp.build",))

        pending = await authority.poll_status(handle)
        ready = await authority.poll_status(handle)
        failed = await authority.poll_status(handle)

        assert pending.ready is False and pending.failed is False
        assert ready.ready is True
        assert ready.expires_at == datetime(2031, 1, 1, tzinfo=UTC)
        assert failed.failed is True
        assert failed.error == "CAA record forbids issuance"

    @pytest.mark.asyncio
    async def test_http_errors_are_backend_errors(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "rate limited"})

        authority = HTTPCertificateAuthority(
            "https://ca.test", client=_client(handler, "https://ca.test")
        )

        with pytest.raises(CertificateAuthorityError):
            await authority.request_certificate(["myapp.build"])
        with pytest.raises(CertificateAuthorityError):
            await authority.poll_status(CertificateHandle(id="x", hosts=()))

    @pytest.mark.asyncio
    async def test_malformed_expiry(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "ready", "expires_at": "soon"})

        authority = HTTPCertificateAuthority(
            "https://ca.test", client=_client(handler, "https://ca.test")
        )

        with pytest.raises(CertificateAuthorityError, match="Invalid certificate expiry"):
            await authority.poll_status(CertificateHandle(id="order-1", hosts=()))

    @pytest.mark.asyncio
    async def test_missing_order_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={})

        authority = HTTPCertificateAuthority(
            "https://ca.test", client=_client(handler, "https://ca.test")
        )

        with pytest.raises(CertificateAuthorityError):
            await authority.request_certificate(["myapp.build"])


class TestHTTPDNSBackend:
    """Tests for HTTPDNSBackend."""

    @pytest.mark.asyncio
    async def test_publish(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        backend = HTTPDNSBackend("https://dns.test", client=_client(handler, "https://dns.test"))
        records = [
            DNSRecord(RecordType.CNAME, "@", "frontdoor.build"),
            DNSRecord(
                RecordType.CNAME,
                "docs",
                "frontdoor.build",
                redirect=Redirect(to="https://docs.example.com", status_code=302),
            ),
        ]

        await backend.publish("d1", "myapp.build", records)

        assert seen["method"] == "PUT"
        assert seen["path"] == "/zones/myapp.build/records"
        assert seen["body"]["domain_id"] == "d1"
        assert seen["body"]["records"][1]["redirect"] == {
            "to": "https://docs.example.com",
            "status_code": 302,
        }

    @pytest.mark.asyncio
    async def test_publish_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        backend = HTTPDNSBackend("https://dns.test", client=_client(handler, "https://dns.test"))

        with pytest.raises(DNSPublishError):
            await backend.publish("d1", "myapp.build", [])

    @pytest.mark.asyncio
    async def test_null_backend_accepts_everything(self):
        await NullDNSBackend().publish("d1", "myapp.build", [])


class TestFromConfig:
    """Tests for DomainManager.from_config."""

    @pytest.mark.asyncio
    async def test_defaults(self):
        manager = DomainManager.from_config(BuildnsConfig(), store=DomainStore(None))

        assert manager.certificates.authority is None
        assert isinstance(manager.publisher.backend, NullDNSBackend)
        assert manager.front_door_target == "frontdoor.build"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_http_backends_from_urls(self):
        env = {"BUILDNS_CA_URL": "https://ca.test", "BUILDNS_DNS_API_URL": "https://dns.test"}
        with patch.dict(os.environ, env):
            manager = DomainManager.from_config(BuildnsConfig(), store=DomainStore(None))

        assert isinstance(manager.certificates.authority, HTTPCertificateAuthority)
        assert isinstance(manager.publisher.backend, HTTPDNSBackend)
        assert len(manager._closables) == 2
        await manager.aclose()
        assert manager._closables == []
