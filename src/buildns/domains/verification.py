"""DNS checks for custom domains taking part in an upgrade.

An upgrade moves a builder claim onto a domain the user owns elsewhere. The
user has to point that domain at the front door before the certificate for it
can be issued:

    # CNAME record (routes traffic)
    myproject.com      CNAME  frontdoor.build

    # TXT record (optional, proves ownership)
    _buildns.myproject.com  TXT  "verify=abc123xyz"
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass

import aiodns
import structlog

logger = structlog.get_logger()

TXT_PREFIX = "_buildns"


@dataclass
class VerificationResult:
    """Outcome of checking a custom domain's DNS."""

    domain: str
    cname_valid: bool
    cname_target: str | None
    txt_valid: bool | None = None
    txt_value: str | None = None
    error: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.cname_valid and self.txt_valid is not False


class DNSVerifier:
    """Resolves custom domains and checks they route to the front door."""

    def __init__(self, front_door_target: str = "frontdoor.build") -> None:
        self.front_door_target = front_door_target.rstrip(".").lower()
        self._resolver: aiodns.DNSResolver | None = None

    def _get_resolver(self) -> aiodns.DNSResolver:
        if self._resolver is None:
            self._resolver = aiodns.DNSResolver()
        return self._resolver

    def generate_verification_token(self, domain: str) -> str:
        """Generate an unpredictable ownership token, e.g. ``verify=a1b2c3d4e5f6a7b8``."""
        salt = secrets.token_hex(8)
        token = hashlib.sha256(f"{domain}:{salt}".encode()).hexdigest()[:16]
        return f"verify={token}"

    async def verify_cname(self, domain: str) -> tuple[bool, str | None]:
        """Check that a domain's CNAME points at the front door.

        Returns:
            Tuple of (is_valid, actual_target).
        """
        resolver = self._get_resolver()
        try:
            result = await resolver.query(domain, "CNAME")
        except aiodns.error.DNSError as e:
            logger.debug("CNAME lookup failed", domain=domain, error=str(e))
            return False, None

        if not result:
            return False, None
        target = result.cname.rstrip(".").lower()
        valid = target == self.front_door_target or target.endswith(f".{self.front_door_target}")
        return valid, target

    async def verify_txt_record(self, domain: str, expected_token: str) -> tuple[bool, str | None]:
        """Check for the ownership token at ``_buildns.<domain>``.

        Returns:
            Tuple of (is_valid, first value seen).
        """
        resolver = self._get_resolver()
        try:
            result = await resolver.query(f"{TXT_PREFIX}.{domain}", "TXT")
        except aiodns.error.DNSError as e:
            logger.debug("TXT lookup failed", domain=domain, error=str(e))
            return False, None

        values = [_txt_text(record) for record in result or []]
        if expected_token in values:
            return True, expected_token
        return False, values[0] if values else None

    async def verify(self, domain: str, expected_token: str | None = None) -> VerificationResult:
        """Check routing and, when a token is given, ownership."""
        domain = domain.strip().lower().rstrip(".")

        if expected_token is None:
            cname_valid, cname_target = await self.verify_cname(domain)
            txt_valid, txt_value = None, None
        else:
            (cname_valid, cname_target), (txt_valid, txt_value) = await asyncio.gather(
                self.verify_cname(domain),
                self.verify_txt_record(domain, expected_token),
            )

        error = None
        if not cname_valid:
            if cname_target:
                error = f"CNAME points at {cname_target}, expected {self.front_door_target}"
            else:
                error = f"CNAME record not found. Expected {domain} -> {self.front_door_target}"
        elif txt_valid is False:
            error = f"TXT record not found or invalid at {TXT_PREFIX}.{domain}"

        return VerificationResult(
            domain=domain,
            cname_valid=cname_valid,
            cname_target=cname_target,
            txt_valid=txt_valid,
            txt_value=txt_value,
            error=error,
        )

    def dns_instructions(self, domain: str, token: str | None = None) -> str:
        """Setup instructions for pointing a custom domain at the front door."""
        lines = [
            "Add the following DNS records:",
            "",
            "1. CNAME Record (routes traffic to the front door):",
            f"   Name: {domain}",
            "   Type: CNAME",
            f"   Value: {self.front_door_target}",
        ]
        if token:
            lines += [
                "",
                "2. TXT Record (verifies ownership):",
                f"   Name: {TXT_PREFIX}.{domain}",
                "   Type: TXT",
                f"   Value: {token}",
            ]
        lines += ["", f"After adding these records, run: buildns domain verify {domain}"]
        return "\n".join(lines)


def _txt_text(record) -> str:
    text = record.text
    if isinstance(text, bytes):
        text = text.decode(errors="replace")
    return text.strip('"').strip("'")
