"""
Unit tests for the certificate store.

Covers identifier resolution, uniqueness, atomic replacement with backups,
crash recovery, deletion, redirects and watch-directory discovery.
"""

import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from core import crypto_driver
from core.cert_store import CertificateStore, Material, normalize_identifier
from core.errors import (
    AmbiguousIdentifierError,
    CertificateNotFoundError,
    ConflictError,
    CryptoError,
    StorageError,
)


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-commit."""


@pytest.fixture
def store(tmp_path):
    store = CertificateStore(tmp_path / "certs", watch_dir=tmp_path / "import")
    store.open()
    return store


def _material(pair):
    cert_pem, key_pem = pair
    return Material(cert_pem=cert_pem, key_pem=key_pem)


class TestFingerprintNormalization:
    """Identifiers resolve regardless of formatting."""

    FP = "ab" * 32

    @pytest.mark.parametrize(
        "identifier",
        [
            "ab" * 32,
            ("AB" * 32),
            ":".join(["AB"] * 32),
            "  " + "ab" * 32 + "\n",
            "sha256 Fingerprint=" + ":".join(["AB"] * 32),
            "SHA256 fingerprint = " + "ab" * 32,
            "%3A".join(["ab"] * 32),
            " ".join(["ab"] * 32),
        ],
    )
    def test_normalizes_to_canonical_form(self, identifier):
        """Case, colons, whitespace, prefix and percent-encoding are ignored."""
        assert normalize_identifier(identifier) == self.FP

    def test_idempotent(self):
        """Normalizing twice gives the same result."""
        value = "sha256 Fingerprint=" + ":".join(["Cd"] * 32)
        once = normalize_identifier(value)
        assert normalize_identifier(once) == once

    def test_resolve_formats(self, store, cert_pair):
        """Every fingerprint format resolves to the same record."""
        record = store.put_new(_material(cert_pair))
        fp = record.fingerprint
        colon = ":".join(fp[i:i + 2] for i in range(0, len(fp), 2)).upper()

        assert store.resolve(fp) == fp
        assert store.resolve(colon) == fp
        assert store.resolve(f"sha256 Fingerprint={colon}") == fp
        assert store.resolve(fp[:12]) == fp
        assert store.resolve(record.name) == fp

    def test_short_prefix_not_matched(self, store, cert_pair):
        """Prefixes shorter than 8 characters are not matched."""
        record = store.put_new(_material(cert_pair))
        with pytest.raises(CertificateNotFoundError):
            store.resolve(record.fingerprint[:6])

    def test_ambiguous_prefix(self, store, cert_factory):
        """A prefix shared by two records is ambiguous."""
        a = store.put_new(_material(cert_factory("a.example.test")))
        b = store.put_new(_material(cert_factory("b.example.test")))
        shared = "deadbeef"
        store._records[shared + a.fingerprint[8:]] = store._records.pop(a.fingerprint)
        store._records[shared + b.fingerprint[8:]] = store._records.pop(b.fingerprint)

        with pytest.raises(AmbiguousIdentifierError) as exc:
            store.resolve(shared)
        assert len(exc.value.details["matches"]) == 2


class TestPutNew:
    """Adding records."""

    def test_put_new_lays_out_files(self, store, cert_pair):
        """Live material and metadata are written under live/<slug>."""
        record = store.put_new(_material(cert_pair))

        live = Path(record.cert_path).parent
        assert live.parent == store.live_dir
        assert (live / "cert.pem").read_bytes() == cert_pair[0]
        assert (live / "key.pem").exists()
        assert oct((live / "key.pem").stat().st_mode & 0o777) == oct(0o600)
        assert json.loads((live / "metadata.json").read_text())["fingerprint"] == record.fingerprint

    def test_duplicate_fingerprint_rejected(self, store, cert_pair):
        """The same certificate cannot be added twice."""
        store.put_new(_material(cert_pair), name="first")
        with pytest.raises(ConflictError):
            store.put_new(_material(cert_pair), name="second")

    def test_duplicate_name_rejected(self, store, cert_factory):
        """Names are unique across live records."""
        store.put_new(_material(cert_factory("a.example.test")), name="shared")
        with pytest.raises(ConflictError):
            store.put_new(_material(cert_factory("b.example.test")), name="shared")
        names = [r.name for r in store.list_records()]
        assert len(names) == len(set(names))

    def test_mismatched_key_rejected(self, store, cert_factory):
        """A key that does not belong to the certificate is refused."""
        cert_pem, _ = cert_factory("a.example.test")
        _, other_key = cert_factory("b.example.test")
        with pytest.raises(CryptoError):
            store.put_new(Material(cert_pem=cert_pem, key_pem=other_key))
        assert store.list_records() == []

    def test_issuer_linked_by_fingerprint(self, store, cert_factory):
        """A leaf signed by a managed CA records the CA's fingerprint."""
        from models.certificate import CertType

        ca_cert, ca_key = cert_factory("Test Root", domains=[], cert_type=CertType.ROOT_CA)
        ca = store.put_new(Material(ca_cert, ca_key), name="root")
        params = crypto_driver.CertificateParams(common_name="leaf.example.test", domains=["leaf.example.test"])
        key = crypto_driver.generate_key_pem(params)
        csr = crypto_driver.create_csr(params, key)
        leaf_cert = crypto_driver.sign_csr(csr, ca_cert, ca_key, None, 30)

        leaf = store.put_new(Material(leaf_cert, key, ca_cert))
        assert leaf.issuer_fingerprint == ca.fingerprint
        assert ca.cert_type == CertType.ROOT_CA


class TestReplaceLive:
    """Atomic replacement and the backup chain."""

    def test_replace_creates_backup(self, store, cert_factory):
        """The previous version becomes previous_versions[0]."""
        before = store.put_new(_material(cert_factory("example.test")))
        new_cert, new_key = cert_factory("example.test")

        after, backup = store.replace_live(before.fingerprint, Material(new_cert, new_key))

        assert after.fingerprint != before.fingerprint
        assert after.name == before.name
        assert len(after.previous_versions) == 1
        assert backup.fingerprint == before.fingerprint
        snapshot = store.get_backup_snapshot(after.fingerprint, backup.id)
        assert snapshot == before.model_dump(mode="json", exclude={"previous_versions"})

    def test_old_fingerprint_redirects(self, store, cert_factory):
        """The replaced fingerprint is redirected within the grace period."""
        before = store.put_new(_material(cert_factory("example.test")))
        after, _ = store.replace_live(before.fingerprint, _material(cert_factory("example.test")))

        with pytest.raises(CertificateNotFoundError):
            store.resolve(before.fingerprint)
        assert store.redirect_for(before.fingerprint) == after.fingerprint

    def test_redirect_expires(self, tmp_path, cert_factory):
        """Redirects are dropped after the grace period."""
        now = [1000.0]
        store = CertificateStore(tmp_path / "certs", redirect_seconds=60, clock=lambda: now[0])
        store.open()
        before = store.put_new(_material(cert_factory("example.test")))
        store.replace_live(before.fingerprint, _material(cert_factory("example.test")))

        now[0] += 61
        assert store.redirect_for(before.fingerprint) is None

    def test_expired_redirects_pruned_on_replace(self, tmp_path, cert_factory):
        """Expired redirects of other records are dropped when a new one is added."""
        now = [1000.0]
        store = CertificateStore(tmp_path / "certs", redirect_seconds=60, clock=lambda: now[0])
        store.open()
        first = store.put_new(_material(cert_factory("one.example.test")))
        second = store.put_new(_material(cert_factory("two.example.test")))
        store.replace_live(first.fingerprint, _material(cert_factory("one.example.test")))

        now[0] += 61
        store.replace_live(second.fingerprint, _material(cert_factory("two.example.test")))

        assert first.fingerprint not in store._redirects
        assert set(store._redirects) == {second.fingerprint}

    def test_identical_certificate_conflicts(self, store, cert_pair):
        record = store.put_new(_material(cert_pair))
        with pytest.raises(ConflictError):
            store.replace_live(record.fingerprint, _material(cert_pair))

    def test_key_reused_when_omitted(self, store, cert_pair):
        """A replacement without a key keeps the live key when it matches."""
        record = store.put_new(_material(cert_pair))
        params = crypto_driver.CertificateParams(common_name="example.test", domains=["example.test"])
        cert_pem, _ = crypto_driver.create_self_signed(params, key_pem=cert_pair[1])

        after, _ = store.replace_live(record.fingerprint, Material(cert_pem=cert_pem))
        material = store.read_material(after.fingerprint)
        assert crypto_driver.key_matches(material.cert_pem, material.key_pem)

    def test_failed_swap_restores_previous(self, store, cert_factory):
        """An atomic-rename failure leaves the old version live."""
        before = store.put_new(_material(cert_factory("example.test")))

        with patch.object(store, "_swap_in", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(StorageError):
                store.replace_live(before.fingerprint, _material(cert_factory("example.test")))

        assert store.get(before.fingerprint).fingerprint == before.fingerprint
        assert crypto_driver.parse(Path(before.cert_path)).fingerprint == before.fingerprint
        assert not store.staging_dir.exists() or not any(store.staging_dir.iterdir())

    def test_listing_always_consistent(self, store, cert_factory):
        """Every listed record's on-disk certificate matches its fingerprint."""
        record = store.put_new(_material(cert_factory("example.test")))
        for _ in range(3):
            record, _ = store.replace_live(record.fingerprint, _material(cert_factory("example.test")))
            for listed in store.list_records():
                assert crypto_driver.parse(Path(listed.cert_path)).fingerprint == listed.fingerprint

    def test_backups_disabled(self, tmp_path, cert_factory):
        store = CertificateStore(tmp_path / "certs", enable_backups=False)
        store.open()
        before = store.put_new(_material(cert_factory("example.test")))
        after, _ = store.replace_live(before.fingerprint, _material(cert_factory("example.test")))
        assert after.previous_versions == []


class TestCrashRecovery:
    """A commit interrupted between staging and swap is rolled back on open."""

    def test_crash_between_staging_and_commit(self, tmp_path, cert_factory):
        root = tmp_path / "certs"
        store = CertificateStore(root)
        store.open()
        before = store.put_new(_material(cert_factory("example.test")))

        with patch.object(store, "_swap_in", side_effect=SimulatedCrash()):
            with pytest.raises(SimulatedCrash):
                store.replace_live(before.fingerprint, _material(cert_factory("example.test")))

        restarted = CertificateStore(root)
        restarted.open()

        records = restarted.list_records()
        assert [r.fingerprint for r in records] == [before.fingerprint]
        assert not restarted.staging_dir.exists()
        assert not restarted.journal_path.exists()
        assert restarted.get(before.fingerprint).previous_versions == []

        after, _ = restarted.replace_live(before.fingerprint, _material(cert_factory("example.test")))
        assert after.fingerprint != before.fingerprint

    def test_rebuild_index_from_disk(self, tmp_path, cert_factory):
        """A missing index is rebuilt from the live directories."""
        root = tmp_path / "certs"
        store = CertificateStore(root)
        store.open()
        record = store.put_new(_material(cert_factory("example.test")))
        store.index_path.unlink()

        reopened = CertificateStore(root)
        reopened.open()
        assert reopened.get(record.fingerprint).name == record.name


class TestDeleteAndBackups:
    """Deletion, backup deletion and restore."""

    def test_create_get_delete_round_trip(self, store, cert_pair):
        record = store.put_new(_material(cert_pair))
        assert store.get(record.fingerprint).name == record.name
        store.delete(record.fingerprint)
        with pytest.raises(CertificateNotFoundError):
            store.get(record.fingerprint)
        assert not Path(record.cert_path).exists()

    def test_delete_and_restore_backup(self, store, cert_factory):
        original = store.put_new(_material(cert_factory("example.test")))
        renewed, backup = store.replace_live(original.fingerprint, _material(cert_factory("example.test")))

        restored, _ = store.restore_backup(renewed.fingerprint, backup.id)
        assert restored.fingerprint == original.fingerprint
        assert {b.fingerprint for b in restored.previous_versions} >= {renewed.fingerprint}

        slot = next(b for b in restored.previous_versions if b.fingerprint == renewed.fingerprint)
        after = store.delete_backup(restored.fingerprint, slot.id)
        assert slot.id not in [b.id for b in after.previous_versions]

    def test_unknown_backup(self, store, cert_pair):
        record = store.put_new(_material(cert_pair))
        with pytest.raises(CertificateNotFoundError):
            store.restore_backup(record.fingerprint, "20200101T000000000000Z-deadbeef")

    def test_repoint_dependents(self, store, cert_factory):
        """Records referencing an old CA fingerprint move to the new one."""
        a = store.put_new(_material(cert_factory("a.example.test")))
        b = store.put_new(_material(cert_factory("b.example.test")))
        config = a.config.model_copy(update={"sign_with_ca": True, "ca_fingerprint": "f" * 64})
        store.update_config(a.fingerprint, config)

        updated = store.repoint_dependents("f" * 64, b.fingerprint)
        assert updated == [a.fingerprint]
        assert store.get(a.fingerprint).config.ca_fingerprint == b.fingerprint


class TestDiscovery:
    """Watch directory import."""

    def test_imports_certificate_with_key(self, store, cert_pair):
        store.watch_dir.mkdir(parents=True)
        (store.watch_dir / "site.crt").write_bytes(cert_pair[0])
        (store.watch_dir / "site.key").write_bytes(cert_pair[1])

        result = store.discover()
        assert len(result.imported) == 1
        record = store.get(result.imported[0])
        assert record.source_path == str(store.watch_dir / "site.crt")
        assert record.key_path is not None

    def test_unparseable_file_becomes_error_record(self, store):
        store.watch_dir.mkdir(parents=True)
        (store.watch_dir / "broken.pem").write_text("-----BEGIN CERTIFICATE-----\nnot base64\n-----END CERTIFICATE-----\n")

        store.discover()
        errors = store.list_errors()
        assert len(errors) == 1
        store.delete(errors[0].id)
        store.discover()
        assert store.list_errors() == []

    def test_second_scan_is_idempotent(self, store, cert_pair):
        store.watch_dir.mkdir(parents=True)
        (store.watch_dir / "site.pem").write_bytes(cert_pair[0])
        store.discover()
        result = store.discover()
        assert result.imported == []
        assert store.count() == 1

    def test_deleted_record_not_reimported(self, store, cert_pair):
        store.watch_dir.mkdir(parents=True)
        (store.watch_dir / "site.pem").write_bytes(cert_pair[0])
        fp = store.discover().imported[0]
        store.delete(fp)
        assert store.discover().imported == []


def test_is_due_window(cert_factory):
    """Records are due once inside renew_days_before_expiry."""
    from models.certificate import CertificateConfig, CertificateRecord, utcnow

    meta = crypto_driver.parse(cert_factory(validity_days=10)[0])

    record = CertificateRecord(
        fingerprint=meta.fingerprint,
        name="x",
        valid_from=meta.valid_from,
        valid_to=meta.valid_to,
        cert_path="/tmp/x",
        config=CertificateConfig(renew_days_before_expiry=30),
    )
    assert record.is_due()
    assert not record.is_due(utcnow() - timedelta(days=30))
