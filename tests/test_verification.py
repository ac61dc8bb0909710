"""Tests for custom-domain DNS verification."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiodns
import pytest

from buildns.core.exceptions import UpgradeConflict
from buildns.domains import DNSVerifier, VerificationResult


def _resolver(**kwargs) -> AsyncMock:
    mock_resolver = AsyncMock()
    mock_resolver.query = AsyncMock(**kwargs)
    return mock_resolver


class TestDNSVerifier:
    """Tests for DNSVerifier."""

    def test_generate_token(self):
        verifier = DNSVerifier("frontdoor.build")

        token1 = verifier.generate_verification_token("myproject.com")
        token2 = verifier.generate_verification_token("myproject.com")

        assert token1.startswith("verify=")
        assert len(token1) == len("verify=") + 16
        assert token1 != token2

    @pytest.mark.asyncio
    async def test_verify_cname_valid(self):
        verifier = DNSVerifier("frontdoor.build")
        mock_result = MagicMock()
        mock_result.cname = "FrontDoor.build."

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_get_resolver.return_value = _resolver(return_value=mock_result)

            is_valid, target = await verifier.verify_cname("myproject.com")

        assert is_valid is True
        assert target == "frontdoor.build"

    @pytest.mark.asyncio
    async def test_verify_cname_regional_edge(self):
        verifier = DNSVerifier("frontdoor.build")
        mock_result = MagicMock()
        mock_result.cname = "eu.frontdoor.build."

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_get_resolver.return_value = _resolver(return_value=mock_result)

            is_valid, _ = await verifier.verify_cname("myproject.com")

        assert is_valid is True

    @pytest.mark.asyncio
    async def test_verify_cname_wrong_target(self):
        verifier = DNSVerifier("frontdoor.build")
        mock_result = MagicMock()
        mock_result.cname = "evilfrontdoor.build."

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_get_resolver.return_value = _resolver(return_value=mock_result)

            is_valid, target = await verifier.verify_cname("myproject.com")

        assert is_valid is False
        assert target == "evilfrontdoor.build"

    @pytest.mark.asyncio
    async def test_verify_cname_lookup_error(self):
        verifier = DNSVerifier("frontdoor.build")

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_get_resolver.return_value = _resolver(
                side_effect=aiodns.error.DNSError(4, "Domain name not found")
            )

            assert await verifier.verify_cname("myproject.com") == (False, None)

    @pytest.mark.asyncio
    async def test_verify_txt_record(self):
        verifier = DNSVerifier("frontdoor.build")
        other = MagicMock()
        other.text = "google-site-verification=xyz"
        match = MagicMock()
        match.text = b'"verify=abc123"'

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_resolver = _resolver(return_value=[other, match])
            mock_get_resolver.return_value = mock_resolver

            is_valid, value = await verifier.verify_txt_record("myproject.com", "verify=abc123")

        assert is_valid is True
        assert value == "verify=abc123"
        mock_resolver.query.assert_awaited_once_with("_buildns.myproject.com", "TXT")

    @pytest.mark.asyncio
    async def test_verify_txt_record_wrong_value(self):
        verifier = DNSVerifier("frontdoor.build")
        record = MagicMock()
        record.text = "verify=wrongvalue"

        with patch.object(verifier, "_get_resolver") as mock_get_resolver:
            mock_get_resolver.return_value = _resolver(return_value=[record])

            is_valid, value = await verifier.verify_txt_record("myproject.com", "verify=abc123")

        assert is_valid is False
        assert value == "verify=wrongvalue"

    @pytest.mark.asyncio
    async def test_verify_reports_errors(self):
        verifier = DNSVerifier("frontdoor.build")

        with patch.object(verifier, "verify_cname", AsyncMock(return_value=(False, "other.com"))):
            result = await verifier.verify("MyProject.com.")

        assert result.domain == "myproject.com"
        assert result.is_verified is False
        assert "other.com" in result.error

    @pytest.mark.asyncio
    async def test_verify_with_token(self):
        verifier = DNSVerifier("frontdoor.build")

        with (
            patch.object(verifier, "verify_cname", AsyncMock(return_value=(True, "frontdoor.build"))),
            patch.object(verifier, "verify_txt_record", AsyncMock(return_value=(False, None))),
        ):
            result = await verifier.verify("myproject.com", expected_token="verify=abc")

        assert result.cname_valid is True
        assert result.txt_valid is False
        assert result.is_verified is False
        assert "_buildns.myproject.com" in result.error

    def test_dns_instructions(self):
        verifier = DNSVerifier("frontdoor.build")

        text = verifier.dns_instructions("myproject.com", token="verify=abc")

        assert "Value: frontdoor.build" in text
        assert "Name: _buildns.myproject.com" in text
        assert "buildns domain verify myproject.com" in text


class TestVerificationResult:
    """Tests for VerificationResult."""

    def test_cname_only_is_verified(self):
        result = VerificationResult(
            domain="myproject.com", cname_valid=True, cname_target="frontdoor.build"
        )

        assert result.is_verified is True

    def test_failed_txt_is_not_verified(self):
        result = VerificationResult(
            domain="myproject.com",
            cname_valid=True,
            cname_target="frontdoor.build",
            txt_valid=False,
        )

        assert result.is_verified is False


class TestVerifyCustomDomain:
    """Tests for DomainManager.verify_custom_domain."""

    @pytest.mark.asyncio
    async def test_verify_upgrade_target(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        original = await manager.upgrade(domain.id, "myproject.com")
        expected = VerificationResult(
            domain="myproject.com", cname_valid=True, cname_target="frontdoor.build"
        )

        with patch.object(manager.verifier, "verify", AsyncMock(return_value=expected)) as verify:
            result = await manager.verify_custom_domain(original.upgrade_target_id)

        assert result.is_verified is True
        verify.assert_awaited_once_with("myproject.com")

    @pytest.mark.asyncio
    async def test_builder_domain_is_rejected(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        with pytest.raises(UpgradeConflict):
            await manager.verify_custom_domain(domain.id)
