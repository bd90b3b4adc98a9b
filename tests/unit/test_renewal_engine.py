"""
Unit tests for the renewal engine.

Covers the renewal state machine, per-record serialization, domain
changes, cancellation and the CA passphrase wait.
"""

import asyncio

import pytest
import pytest_asyncio

from core import crypto_driver
from core.cert_store import Material
from core.errors import CertificateNotFoundError, ConflictError
from models.certificate import (
    CertificateConfig,
    CertificateCreateRequest,
    CertType,
    ChallengeType,
    CommandAction,
    KeyType,
)
from models.event import Topic
from models.renewal import DomainChanges, RenewalState, RenewalTrigger


@pytest.fixture
def opened(services):
    """Services with the store opened but no workers running."""
    services.store.open()
    return services


@pytest_asyncio.fixture
async def engine(opened):
    opened.engine.start()
    yield opened.engine
    await opened.engine.stop()


@pytest.fixture
def peak_builds(engine, monkeypatch):
    """Highest number of overlapping material builds seen per record name."""
    running: dict[str, int] = {}
    peak: dict[str, int] = {}
    build = engine._build_material

    async def tracked(job, record):
        running[record.name] = running.get(record.name, 0) + 1
        peak[record.name] = max(peak.get(record.name, 0), running[record.name])
        try:
            await asyncio.sleep(0.05)
            return await build(job, record)
        finally:
            running[record.name] -= 1

    monkeypatch.setattr(engine, "_build_material", tracked)
    return peak


def _put(services, pair, name=None, config=None):
    cert_pem, key_pem = pair
    return services.store.put_new(Material(cert_pem=cert_pem, key_pem=key_pem), name=name, config=config)


async def _create_ca_and_leaf(engine):
    root = await engine.create_certificate(
        CertificateCreateRequest(
            name="Test Root",
            common_name="Test Root",
            cert_type=CertType.ROOT_CA,
            key_type=KeyType.ECDSA,
            key_size=256,
            passphrase="ca-pass",
        )
    )
    leaf = await engine.create_certificate(
        CertificateCreateRequest(
            domains=["leaf.example.test"],
            sign_with_ca=True,
            ca_fingerprint=root.fingerprint,
            key_type=KeyType.ECDSA,
            key_size=256,
        )
    )
    return root, leaf


class TestRenewal:
    """Successful renewals."""

    @pytest.mark.asyncio
    async def test_renew_self_signed(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair)
        subscription = opened.bus.subscribe({Topic.CERTIFICATE_RENEWED})

        job = await engine.enqueue(record.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        assert done.new_fingerprint and done.new_fingerprint != record.fingerprint
        renewed = opened.store.get(done.new_fingerprint)
        assert renewed.name == record.name
        assert len(renewed.previous_versions) == 1
        assert renewed.previous_versions[0].fingerprint == record.fingerprint
        assert crypto_driver.key_matches(
            open(renewed.cert_path, "rb").read(), open(renewed.key_path, "rb").read()
        )

        messages = subscription.drain()
        assert messages[0].payload["old_fingerprint"] == record.fingerprint
        assert messages[0].payload["new_fingerprint"] == done.new_fingerprint

    @pytest.mark.asyncio
    async def test_old_fingerprint_redirects(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair)
        job = await engine.enqueue(record.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        with pytest.raises(CertificateNotFoundError):
            opened.store.resolve(record.fingerprint)
        assert opened.store.redirect_for(record.fingerprint) == done.new_fingerprint
        assert engine.latest_job(record.fingerprint).job_id == job.job_id

    @pytest.mark.asyncio
    async def test_domain_changes_applied(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair)
        changes = DomainChanges(add_domains=["www.example.test"], add_ips=["10.0.0.5"])

        job = await engine.enqueue(record.fingerprint, RenewalTrigger.DOMAIN_UPDATE, domain_changes=changes)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        renewed = opened.store.get(done.new_fingerprint)
        assert renewed.sans.domains == ["example.test", "www.example.test"]
        assert renewed.sans.ips == ["10.0.0.5"]

    @pytest.mark.asyncio
    async def test_removing_every_san_fails(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair)
        job = await engine.enqueue(record.fingerprint, domain_changes=DomainChanges(remove=["example.test"]))
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.FAILED
        assert done.error_kind == "InvalidDomain"
        assert opened.store.get(record.fingerprint).fingerprint == record.fingerprint

    @pytest.mark.asyncio
    async def test_only_if_due_skips(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair)
        job = await engine.enqueue(record.fingerprint, RenewalTrigger.SCHEDULER, only_if_due=True)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        assert done.details.get("skipped") is True
        assert done.new_fingerprint is None
        assert opened.store.get(record.fingerprint)

    @pytest.mark.asyncio
    async def test_deploy_actions_run_after_renewal(self, opened, engine, cert_pair):
        config = CertificateConfig(deploy_actions=[CommandAction(command="test -f {cert_path}")])
        record = _put(opened, cert_pair, config=config)

        job = await engine.enqueue(record.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        assert done.deployment.ok is True
        assert done.deployment.fingerprint == done.new_fingerprint


class TestSerialization:
    """One renewal per record at a time."""

    @pytest.mark.asyncio
    async def test_duplicate_requests_share_a_job(self, opened, engine, peak_builds, cert_pair):
        record = _put(opened, cert_pair)

        views = await asyncio.gather(*(engine.enqueue(record.fingerprint) for _ in range(5)))

        assert len({v.job_id for v in views}) == 1
        await engine.wait_for_settle(views[0].job_id, timeout=10)
        assert peak_builds[record.name] == 1

    @pytest.mark.asyncio
    async def test_back_to_back_renewals_chain(self, opened, engine, peak_builds, cert_pair):
        record = _put(opened, cert_pair, name="chained")
        fingerprints = [record.fingerprint]
        for _ in range(3):
            job = await engine.enqueue("chained")
            done = await engine.wait_for_settle(job.job_id, timeout=10)
            assert done.state == RenewalState.SUCCEEDED
            fingerprints.append(done.new_fingerprint)

        assert len(set(fingerprints)) == 4
        assert len(opened.store.get("chained").previous_versions) == 3
        assert peak_builds["chained"] == 1

    @pytest.mark.asyncio
    async def test_different_records_renew_independently(self, opened, engine, cert_factory):
        a = _put(opened, cert_factory("a.example.test"))
        b = _put(opened, cert_factory("b.example.test"))

        jobs = await asyncio.gather(engine.enqueue(a.fingerprint), engine.enqueue(b.fingerprint))
        results = await asyncio.gather(*(engine.wait_for_settle(j.job_id, timeout=10) for j in jobs))

        assert all(r.state == RenewalState.SUCCEEDED for r in results)

    @pytest.mark.asyncio
    async def test_domain_changes_rejected_while_active(self, opened, cert_pair):
        """Without workers the first job stays queued."""
        record = _put(opened, cert_pair)
        await opened.engine.enqueue(record.fingerprint)
        with pytest.raises(ConflictError):
            await opened.engine.enqueue(record.fingerprint, domain_changes=DomainChanges(add_domains=["x.example.test"]))


class TestCancel:
    """Cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, opened, cert_pair):
        record = _put(opened, cert_pair)
        job = await opened.engine.enqueue(record.fingerprint)

        cancelled = await opened.engine.cancel(record.fingerprint)

        assert cancelled.job_id == job.job_id
        assert cancelled.state == RenewalState.CANCELLED
        assert opened.store.get(record.fingerprint).fingerprint == record.fingerprint

    @pytest.mark.asyncio
    async def test_cancel_without_job(self, opened, cert_pair):
        record = _put(opened, cert_pair)
        with pytest.raises(ConflictError):
            await opened.engine.cancel(record.fingerprint)

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_passphrase(self, opened, engine):
        root, leaf = await _create_ca_and_leaf(engine)
        opened.vault.delete(root.fingerprint)

        job = await engine.enqueue(leaf.fingerprint)
        paused = await engine.wait_for_settle(job.job_id, timeout=10)
        assert paused.state == RenewalState.WAITING_FOR_PASSPHRASE

        await engine.cancel(leaf.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.CANCELLED
        assert opened.store.get(leaf.fingerprint).fingerprint == leaf.fingerprint

    @pytest.mark.asyncio
    async def test_cancel_while_running(self, opened, engine, cert_pair, monkeypatch):
        """A cancel signal abandons an ACME order that is still in flight."""
        record = _put(opened, cert_pair, config=CertificateConfig(challenge_type=ChallengeType.HTTP))
        started = asyncio.Event()
        abandoned = asyncio.Event()

        async def slow_issue(spec):
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                abandoned.set()
                raise
            raise AssertionError("order was not abandoned")

        monkeypatch.setattr(opened.acme, "issue", slow_issue)
        job = await engine.enqueue(record.fingerprint)
        await asyncio.wait_for(started.wait(), timeout=10)
        assert engine.get_job(job.job_id).state == RenewalState.RUNNING

        await engine.cancel(record.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=5)

        assert done.state == RenewalState.CANCELLED
        assert done.error_kind == "Cancelled"
        await asyncio.wait_for(abandoned.wait(), timeout=5)
        assert opened.store.get(record.fingerprint).fingerprint == record.fingerprint

    @pytest.mark.asyncio
    async def test_failure_after_cancel_reported_as_cancelled(self, opened, engine, cert_pair, monkeypatch):
        record = _put(opened, cert_pair)
        build = engine._build_material

        async def cancel_then_fail(job, rec):
            job.cancel_event.set()
            await build(job, rec)
            raise RuntimeError("late failure")

        monkeypatch.setattr(engine, "_build_material", cancel_then_fail)
        job = await engine.enqueue(record.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.CANCELLED


class TestPassphraseWait:
    """Renewals signed by a CA whose passphrase is not in the vault."""

    @pytest.mark.asyncio
    async def test_create_with_stored_ca_passphrase(self, opened, engine):
        root, leaf = await _create_ca_and_leaf(engine)

        assert root.needs_passphrase is True
        assert leaf.issuer_fingerprint == root.fingerprint
        root_pem = open(root.cert_path, "rb").read()
        assert crypto_driver.is_issued_by(open(leaf.cert_path, "rb").read(), root_pem)

    @pytest.mark.asyncio
    async def test_resume_after_passphrase_set(self, opened, engine):
        root, leaf = await _create_ca_and_leaf(engine)
        opened.vault.delete(root.fingerprint)
        prompts = opened.bus.subscribe({Topic.CA_PASSPHRASE_REQUIRED})

        job = await engine.enqueue(leaf.fingerprint)
        paused = await engine.wait_for_settle(job.job_id, timeout=10)

        assert paused.state == RenewalState.WAITING_FOR_PASSPHRASE
        assert prompts.drain()[0].payload["fingerprint"] == root.fingerprint

        opened.vault.set(root.fingerprint, "ca-pass", cert_type=CertType.ROOT_CA)
        done = await engine.wait_until_resumed(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        renewed = opened.store.get(done.new_fingerprint)
        assert crypto_driver.is_issued_by(open(renewed.cert_path, "rb").read(), open(root.cert_path, "rb").read())

        again = await engine.enqueue(done.new_fingerprint)
        second = await engine.wait_for_settle(again.job_id, timeout=10)
        assert second.state == RenewalState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_wrong_passphrase_fails(self, opened, engine):
        root, leaf = await _create_ca_and_leaf(engine)
        opened.vault.set(root.fingerprint, "not-the-passphrase", cert_type=CertType.ROOT_CA)

        job = await engine.enqueue(leaf.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.FAILED
        assert done.error_kind == "CryptoError"

    @pytest.mark.asyncio
    async def test_ca_renewal_repoints_dependents(self, opened, engine):
        root, leaf = await _create_ca_and_leaf(engine)

        job = await engine.enqueue(root.fingerprint)
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        assert opened.vault.get(done.new_fingerprint) == "ca-pass"
        dependent = opened.store.get(leaf.fingerprint)
        assert dependent.issuer_fingerprint == done.new_fingerprint
        assert dependent.config.ca_fingerprint == done.new_fingerprint

    @pytest.mark.asyncio
    async def test_encrypted_leaf_key_uses_request_passphrase(self, opened, engine):
        root = await engine.create_certificate(
            CertificateCreateRequest(
                name="Pass Root",
                cert_type=CertType.ROOT_CA,
                key_type=KeyType.ECDSA,
                key_size=256,
                passphrase="ca-pass",
            )
        )
        leaf = await engine.create_certificate(
            CertificateCreateRequest(
                domains=["locked.example.test"],
                sign_with_ca=True,
                ca_fingerprint=root.fingerprint,
                key_type=KeyType.ECDSA,
                key_size=256,
                passphrase="leaf-pass",
            )
        )
        assert leaf.needs_passphrase is True

        refused = await engine.wait_for_settle((await engine.enqueue(leaf.fingerprint)).job_id, timeout=10)
        assert refused.state == RenewalState.FAILED
        assert refused.error_kind == "PassphraseRequired"

        job = await engine.enqueue(leaf.fingerprint, passphrase="leaf-pass")
        done = await engine.wait_for_settle(job.job_id, timeout=10)

        assert done.state == RenewalState.SUCCEEDED
        renewed = opened.store.get(done.new_fingerprint)
        assert renewed.issuer_fingerprint == root.fingerprint
        key_pem = open(renewed.key_path, "rb").read()
        assert crypto_driver.key_is_encrypted(key_pem)
        assert crypto_driver.is_issued_by(open(renewed.cert_path, "rb").read(), open(root.cert_path, "rb").read())


class TestSuccessorLinks:
    """Bookkeeping left behind by renewed and deleted records."""

    @pytest.mark.asyncio
    async def test_expired_links_pruned(self, opened, engine, cert_pair):
        engine.successor_ttl = 0.0
        record = _put(opened, cert_pair, name="pruned")

        first = await engine.wait_for_settle((await engine.enqueue("pruned")).job_id, timeout=10)
        await asyncio.sleep(0.01)
        second = await engine.wait_for_settle((await engine.enqueue("pruned")).job_id, timeout=10)

        assert second.state == RenewalState.SUCCEEDED
        assert record.fingerprint not in engine._successors
        assert record.fingerprint not in engine._locks
        assert set(engine._successors) <= {first.new_fingerprint}

    @pytest.mark.asyncio
    async def test_links_kept_within_ttl(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair, name="kept")
        done = await engine.wait_for_settle((await engine.enqueue("kept")).job_id, timeout=10)

        assert engine.current_fingerprint(record.fingerprint) == done.new_fingerprint

    @pytest.mark.asyncio
    async def test_forget_drops_links_to_deleted_record(self, opened, engine, cert_pair):
        record = _put(opened, cert_pair, name="gone")
        done = await engine.wait_for_settle((await engine.enqueue("gone")).job_id, timeout=10)

        engine.forget(done.new_fingerprint)

        assert record.fingerprint not in engine._successors
        assert done.new_fingerprint not in engine._locks
        assert done.new_fingerprint not in engine._latest
        assert record.fingerprint not in engine._locks
        assert engine.current_fingerprint(record.fingerprint) == record.fingerprint
