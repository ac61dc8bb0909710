"""Tests for the domain lifecycle controller."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeAuthority

from buildns.core.exceptions import (
    InvalidName,
    InvalidRecord,
    InvalidStatusCode,
    InvalidTarget,
    NameTaken,
    NotFound,
    NotOwner,
    UpgradeConflict,
)
from buildns.domains import (
    CertificateState,
    ClaimOptions,
    DNSRecord,
    Domain,
    DomainStatus,
    RecordType,
)


def _summary(records: list[DNSRecord]) -> list[tuple[str, str, str]]:
    return [(r.type.value, r.host_label, r.value) for r in records]


class TestClaim:
    """Tests for claiming names."""

    @pytest.mark.asyncio
    async def test_claim_is_active_before_issuance(self, make_manager):
        manager = make_manager(FakeAuthority())

        domain = await manager.claim("myapp", "build", "alice")

        assert domain.status == DomainStatus.ACTIVE
        assert (await manager.lookup("myapp", "build")).id == domain.id
        assert _summary(await manager.list_records(domain.id)) == [
            ("CNAME", "@", "frontdoor.build"),
            ("CNAME", "www", "frontdoor.build"),
        ]
        cert = await manager.get_certificate(domain.id)
        assert cert.state == CertificateState.PENDING
        assert cert.generation == 1

    @pytest.mark.asyncio
    async def test_claim_with_options(self, make_manager):
        manager = make_manager()

        domain = await manager.claim(
            "myapp",
            "dev.build",
            "alice",
            ClaimOptions(
                wildcard=True,
                records=[DNSRecord(RecordType.TXT, "_verify", "token")],
            ),
        )

        assert domain.wildcard_enabled is True
        cert = await manager.get_certificate(domain.id)
        assert "*.myapp.dev.build" in cert.covered_hosts
        assert cert.generation == 1
        assert ("TXT", "_verify", "token") in _summary(await manager.list_records(domain.id))

    @pytest.mark.asyncio
    async def test_concurrent_claims_one_winner(self, make_manager):
        manager = make_manager()

        results = await asyncio.gather(
            *(manager.claim("myapp", "build", f"user-{i}") for i in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Domain)]
        assert len(winners) == 1
        assert all(isinstance(r, NameTaken) for r in results if r not in winners)
        assert len(await manager.list_domains()) == 1

    @pytest.mark.asyncio
    async def test_claim_rolls_back_on_bad_record(self, make_manager):
        manager = make_manager()

        with pytest.raises(InvalidRecord):
            await manager.claim(
                "myapp",
                "build",
                "alice",
                ClaimOptions(records=[DNSRecord(RecordType.A, "api", "not-an-ip")]),
            )

        assert await manager.lookup("myapp", "build") is None
        assert await manager.store.list_certificates() == []
        # Nothing was held back, so anyone can claim it
        assert (await manager.claim("myapp", "build", "bob")).owner == "bob"

    @pytest.mark.asyncio
    async def test_claim_invalid_name(self, make_manager):
        manager = make_manager()

        with pytest.raises(InvalidName):
            await manager.claim("my_app", "build", "alice")
        with pytest.raises(InvalidName):
            await manager.claim("myapp", "example", "alice")


class TestRecords:
    """Tests for connect, wildcard, redirect and TXT operations."""

    @pytest.mark.asyncio
    async def test_connect_cname(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.connect(domain.id, "my-app.vercel.app", "cname")

        records = _summary(await manager.list_records(domain.id))
        assert records[0] == ("CNAME", "@", "my-app.vercel.app")

    @pytest.mark.asyncio
    async def test_connect_a_replaces_cname(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.connect(domain.id, "203.0.113.10", RecordType.A)

        assert _summary(await manager.list_records(domain.id)) == [
            ("A", "@", "203.0.113.10"),
            ("CNAME", "www", "frontdoor.build"),
        ]

    @pytest.mark.asyncio
    async def test_connect_target_must_match_type(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        with pytest.raises(InvalidTarget):
            await manager.connect(domain.id, "203.0.113.10", "CNAME")
        with pytest.raises(InvalidTarget):
            await manager.connect(domain.id, "my-app.vercel.app", "A")
        with pytest.raises(InvalidTarget):
            await manager.connect(domain.id, "token", "TXT")

    @pytest.mark.asyncio
    async def test_connect_sublabel_extends_certificate(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.connect(domain.id, "203.0.113.10", "A", label="api")

        cert = await manager.get_certificate(domain.id)
        assert "api.myapp.build" in cert.covered_hosts
        assert cert.generation == 2

    @pytest.mark.asyncio
    async def test_connect_requires_owner(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        with pytest.raises(NotOwner):
            await manager.connect(domain.id, "my-app.vercel.app", "CNAME", owner="mallory")

    @pytest.mark.asyncio
    async def test_enable_wildcard_is_idempotent(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.enable_wildcard(domain.id)
        records_after_first = _summary(await manager.list_records(domain.id))
        await manager.enable_wildcard(domain.id)

        assert _summary(await manager.list_records(domain.id)) == records_after_first
        assert (await manager.get_domain(domain.id)).wildcard_enabled is True
        assert (await manager.get_certificate(domain.id)).generation == 2

    @pytest.mark.asyncio
    async def test_redirect(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.redirect(domain.id, "docs", "https://docs.example.com", 308)

        docs = [r for r in await manager.list_records(domain.id) if r.host_label == "docs"]
        assert len(docs) == 1
        assert docs[0].value == "frontdoor.build"
        assert docs[0].redirect.status_code == 308

    @pytest.mark.asyncio
    async def test_redirect_bad_status_changes_nothing(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        before = _summary(await manager.list_records(domain.id))

        with pytest.raises(InvalidStatusCode):
            await manager.redirect(domain.id, "docs", "https://docs.example.com", 404)

        assert _summary(await manager.list_records(domain.id)) == before
        assert (await manager.get_certificate(domain.id)).generation == 1

    @pytest.mark.asyncio
    async def test_add_and_remove_txt(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        await manager.add_txt(domain.id, "_vercel", "vc-domain-verify=abc")
        assert await manager.remove_record(domain.id, "_vercel", "txt") is True
        assert await manager.remove_record(domain.id, "_vercel", "txt") is False
        assert (await manager.get_certificate(domain.id)).generation == 1


class TestUpgrade:
    """Tests for moving a claim onto a custom domain."""

    @pytest.mark.asyncio
    async def test_upgrade_migrates_records(self, make_manager):
        manager = make_manager(FakeAuthority())
        domain = await manager.claim("myapp", "build", "alice")
        await manager.connect(domain.id, "203.0.113.10", "A", label="api")

        original = await manager.upgrade(domain.id, "MyProject.com", owner="alice")

        assert original.status == DomainStatus.UPGRADING
        target = await manager.get_domain(original.upgrade_target_id)
        assert target.fqdn == "myproject.com"
        assert target.custom is True
        assert target.status == DomainStatus.PENDING
        assert target.upgraded_from_id == domain.id
        assert _summary(await manager.list_records(target.id)) == _summary(
            await manager.list_records(domain.id)
        )
        assert "api.myproject.com" in (await manager.get_certificate(target.id)).covered_hosts

    @pytest.mark.asyncio
    async def test_upgrade_without_migration_installs_defaults(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        await manager.connect(domain.id, "203.0.113.10", "A", label="api")

        original = await manager.upgrade(domain.id, "myproject.com", migrate=False)

        assert _summary(await manager.list_records(original.upgrade_target_id)) == [
            ("CNAME", "@", "frontdoor.build"),
            ("CNAME", "www", "frontdoor.build"),
        ]

    @pytest.mark.asyncio
    async def test_upgrade_completes_into_alias(self, make_manager):
        manager = make_manager(FakeAuthority())
        domain = await manager.claim("myapp", "build", "alice")
        await manager.tick()

        original = await manager.upgrade(domain.id, "myproject.com")
        await manager.tick()

        original = await manager.get_domain(domain.id)
        target = await manager.get_domain(original.alias_of_id)
        assert original.status == DomainStatus.ACTIVE
        assert original.upgrade_target_id is None
        assert target.fqdn == "myproject.com"
        assert target.status == DomainStatus.ACTIVE
        assert (await manager.get_certificate(target.id)).state == CertificateState.ACTIVE

        info = await manager.get_domain_info(domain.id)
        assert info.alias_of.id == target.id
        assert info.https_ready is True

        with pytest.raises(UpgradeConflict):
            await manager.upgrade(domain.id, "another.com")
        with pytest.raises(UpgradeConflict):
            await manager.upgrade(target.id, "another.com")

    @pytest.mark.asyncio
    async def test_mutations_blocked_while_upgrading(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        await manager.upgrade(domain.id, "myproject.com")

        with pytest.raises(UpgradeConflict):
            await manager.connect(domain.id, "my-app.vercel.app", "CNAME")
        with pytest.raises(UpgradeConflict):
            await manager.enable_wildcard(domain.id)
        with pytest.raises(UpgradeConflict):
            await manager.upgrade(domain.id, "other.com")

        # Still answers over HTTP while the upgrade is in flight
        assert (await manager.resolve("myapp.build")).id == domain.id

    @pytest.mark.asyncio
    async def test_upgrade_target_claimed_elsewhere(self, make_manager):
        manager = make_manager()
        bob = await manager.claim("bobapp", "build", "bob")
        await manager.upgrade(bob.id, "myproject.com")
        alice = await manager.claim("myapp", "build", "alice")

        with pytest.raises(UpgradeConflict):
            await manager.upgrade(alice.id, "myproject.com")

        assert (await manager.get_domain(alice.id)).status == DomainStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_upgrade_rejects_builder_tld_and_bad_names(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        with pytest.raises(UpgradeConflict):
            await manager.upgrade(domain.id, "other.build")
        with pytest.raises(InvalidName):
            await manager.upgrade(domain.id, "localhost")
        with pytest.raises(NotOwner):
            await manager.upgrade(domain.id, "myproject.com", owner="mallory")

    @pytest.mark.asyncio
    async def test_release_by_third_party_during_upgrade(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        original = await manager.upgrade(domain.id, "myproject.com")

        with pytest.raises(NotOwner):
            await manager.release(domain.id, "mallory")

        assert (await manager.get_domain(domain.id)).status == DomainStatus.UPGRADING
        target = await manager.get_domain(original.upgrade_target_id)
        assert target.status == DomainStatus.PENDING

    @pytest.mark.asyncio
    async def test_release_during_upgrade_cascades(self, make_manager):
        authority = FakeAuthority()
        manager = make_manager(authority)
        domain = await manager.claim("myapp", "build", "alice")
        await manager.tick()

        authority.gate = asyncio.Event()
        original = await manager.upgrade(domain.id, "myproject.com")
        target_id = original.upgrade_target_id

        assert await manager.certificates.run_once(wait=False) == 1
        in_flight = list(manager.certificates._attempt_tasks)
        await asyncio.sleep(0)

        released = await manager.release(domain.id, "alice")
        authority.gate.set()
        await asyncio.gather(*in_flight)

        assert released.status == DomainStatus.RELEASED
        assert (await manager.store.get_domain(target_id)).status == DomainStatus.RELEASED
        assert await manager.lookup("myproject", "com") is None
        assert await manager.store.get_certificate(target_id) is None
        assert await manager.store.get_records(target_id) == []

    @pytest.mark.asyncio
    async def test_release_pending_target_restores_origin(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        original = await manager.upgrade(domain.id, "myproject.com")

        await manager.release(original.upgrade_target_id, "alice")

        restored = await manager.get_domain(domain.id)
        assert restored.status == DomainStatus.ACTIVE
        assert restored.upgrade_target_id is None
        await manager.connect(domain.id, "my-app.vercel.app", "CNAME")

    @pytest.mark.asyncio
    async def test_release_custom_domain_clears_alias(self, make_manager):
        manager = make_manager(FakeAuthority())
        domain = await manager.claim("myapp", "build", "alice")
        await manager.upgrade(domain.id, "myproject.com")
        await manager.tick()
        target_id = (await manager.get_domain(domain.id)).alias_of_id

        await manager.release(target_id, "alice")

        assert (await manager.get_domain(domain.id)).alias_of_id is None


class TestRelease:
    """Tests for releasing names."""

    @pytest.mark.asyncio
    async def test_release_clears_records_and_certificate(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        released = await manager.release(domain.id, "alice")

        assert released.status == DomainStatus.RELEASED
        assert await manager.lookup("myapp", "build") is None
        assert await manager.store.get_records(domain.id) == []
        assert await manager.store.get_certificate(domain.id) is None
        assert await manager.resolve("myapp.build") is None

    @pytest.mark.asyncio
    async def test_release_errors(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")

        with pytest.raises(NotOwner):
            await manager.release(domain.id, "bob")
        await manager.release(domain.id, "alice")
        with pytest.raises(NotFound):
            await manager.release(domain.id, "alice")

    @pytest.mark.asyncio
    async def test_grace_period(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        await manager.release(domain.id, "alice")

        with pytest.raises(NameTaken):
            await manager.claim("myapp", "build", "bob")
        assert (await manager.claim("myapp", "build", "alice")).owner == "alice"

    @pytest.mark.asyncio
    async def test_no_grace_period(self, make_manager):
        manager = make_manager(grace=0.0)
        domain = await manager.claim("myapp", "build", "alice")
        await manager.release(domain.id, "alice")

        assert (await manager.claim("myapp", "build", "bob")).owner == "bob"


class TestCertificateLifecycle:
    """Tests for how certificate outcomes reach domains."""

    @pytest.mark.asyncio
    async def test_exhaustion_keeps_domain_resolvable(self, make_manager):
        authority = FakeAuthority(fail=-1)
        manager = make_manager(authority)
        domain = await manager.claim("myapp", "build", "alice")

        for _ in range(3):
            await manager.tick()

        degraded = await manager.get_domain(domain.id)
        assert degraded.status == DomainStatus.ACTIVE_NO_SSL
        assert (await manager.resolve("myapp.build")).id == domain.id
        assert (await manager.get_certificate(domain.id)).state == CertificateState.FAILED

        authority.fail = 0
        cert = await manager.retry_certificate(domain.id, owner="alice")
        assert cert.state == CertificateState.PENDING
        await manager.tick()

        assert (await manager.get_domain(domain.id)).status == DomainStatus.ACTIVE
        assert (await manager.get_certificate(domain.id)).state == CertificateState.ACTIVE

    @pytest.mark.asyncio
    async def test_background_workers_issue_certificates(self, make_manager):
        manager = make_manager(FakeAuthority())
        manager.start()
        try:
            domain = await manager.claim("myapp", "build", "alice")
            cert = await manager.certificates.wait_until_settled(domain.id, timeout=2.0)
        finally:
            await manager.stop()

        assert cert.state == CertificateState.ACTIVE


class TestQueries:
    """Tests for resolve and domain info."""

    @pytest.mark.asyncio
    async def test_resolve(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        await manager.connect(domain.id, "203.0.113.10", "A", label="api")

        assert (await manager.resolve("MyApp.build.")).id == domain.id
        assert (await manager.resolve("www.myapp.build")).id == domain.id
        assert (await manager.resolve("api.myapp.build")).id == domain.id
        assert await manager.resolve("blog.myapp.build") is None

        await manager.enable_wildcard(domain.id)

        assert (await manager.resolve("blog.myapp.build")).id == domain.id
        assert await manager.resolve("deep.blog.myapp.build") is None
        assert await manager.resolve("other.build") is None

    @pytest.mark.asyncio
    async def test_domain_info_for_upgrade(self, make_manager):
        manager = make_manager()
        domain = await manager.claim("myapp", "build", "alice")
        await manager.upgrade(domain.id, "myproject.com")

        info = await manager.get_domain_info(domain.id)

        assert info.upgrade_target.fqdn == "myproject.com"
        assert "myproject.com" in info.dns_instructions
        assert "frontdoor.build" in info.dns_instructions
        assert info.https_ready is False

    @pytest.mark.asyncio
    async def test_list_domains_by_owner(self, make_manager):
        manager = make_manager()
        await manager.claim("a", "build", "alice")
        await manager.claim("b", "build", "bob")

        assert [d.name for d in await manager.list_domains("alice")] == ["a"]
        with pytest.raises(NotFound):
            await manager.get_domain("missing")
