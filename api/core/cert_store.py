"""
Certificate store.

Durable on-disk representation of managed certificates with a
fingerprint-keyed view for the rest of the service.

Layout under the certificate root::

    live/<slug>/cert.pem, key.pem, chain.pem, metadata.json
    backups/<slug>/<UTC timestamp>-<fp8>/   (a former live directory)
    .staging/<id>/                           (material being committed)
    .journal.json                            (in-flight commit, for recovery)
    index.json                               (rebuildable from live/ and backups/)

The store is synchronous and guarded by a re-entrant lock; async callers
run it through ``asyncio.to_thread``.
"""

import hashlib
import json
import logging
import os
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote

from pydantic import ValidationError

from core import crypto_driver
from core.errors import (
    AmbiguousIdentifierError,
    CertificateNotFoundError,
    CertificateParseError,
    ConflictError,
    CryptoError,
    InvalidRequestError,
    StorageError,
)
from models.certificate import BackupRecord, CertificateConfig, CertificateRecord, CertType, ErrorRecord, SubjectAltNames

logger = logging.getLogger(__name__)

CERT_FILE = "cert.pem"
KEY_FILE = "key.pem"
CHAIN_FILE = "chain.pem"
METADATA_FILE = "metadata.json"
INDEX_VERSION = 1

DISCOVERY_SUFFIXES = (".crt", ".pem")
SLOT_TIME_FORMAT = "%Y%m%dT%H%M%S%fZ"

_FINGERPRINT_PREFIX = re.compile(r"^(sha-?256\s*)?fingerprint\s*=\s*", re.IGNORECASE)
_SEPARATORS = re.compile(r"[\s:]+")
_HEX = re.compile(r"^[0-9a-f]+$")


def normalize_identifier(identifier: str) -> str:
    """
    Canonical form of a certificate identifier.

    Percent-decodes, strips a ``sha256 Fingerprint=`` prefix, removes colons
    and whitespace and lowercases. Applying it twice gives the same result.
    """
    value = unquote(identifier).strip()
    value = _FINGERPRINT_PREFIX.sub("", value)
    return _SEPARATORS.sub("", value).lower()


def slugify(name: str) -> str:
    slug = name.strip().lower().replace("*", "wildcard")
    slug = re.sub(r"[^a-z0-9._-]+", "_", slug).strip("._")
    return slug or "certificate"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_file_atomic(path: Path, data: bytes, mode: int | None = None) -> None:
    """Write-then-rename within the target directory."""
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    with open(tmp, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    if mode is not None:
        os.chmod(tmp, mode)
    os.replace(tmp, path)
    _fsync_dir(path.parent)


def _write_synced(path: Path, data: bytes, mode: int | None = None) -> None:
    with open(path, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    if mode is not None:
        os.chmod(path, mode)


@dataclass
class Material:
    """Certificate material handed to the store."""

    cert_pem: bytes
    key_pem: bytes | None = None
    chain_pem: bytes | None = None
    key_passphrase: str | None = field(default=None, repr=False)


@dataclass
class DiscoveryResult:
    """Outcome of one discovery scan."""

    imported: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class CertificateStore:
    """Fingerprint-keyed, crash-safe certificate store."""

    def __init__(
        self,
        root: str | Path,
        watch_dir: str | Path | None = None,
        redirect_seconds: float = 60.0,
        backup_retention_days: int | None = 90,
        enable_backups: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = Path(root)
        self.live_dir = self.root / "live"
        self.backups_dir = self.root / "backups"
        self.staging_dir = self.root / ".staging"
        self.journal_path = self.root / ".journal.json"
        self.index_path = self.root / "index.json"
        self.watch_dir = Path(watch_dir) if watch_dir else None

        self.redirect_seconds = redirect_seconds
        self.backup_retention_days = backup_retention_days
        self.enable_backups = enable_backups
        self._clock = clock

        self._lock = threading.RLock()
        self._records: dict[str, CertificateRecord] = {}
        self._slugs: dict[str, str] = {}
        self._tombstones: set[str] = set()
        self._ignored: set[str] = set()
        self._errors: dict[str, ErrorRecord] = {}
        self._redirects: dict[str, tuple[str, float]] = {}

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Create the layout, recover an interrupted commit and load the index."""
        with self._lock:
            for directory in (self.root, self.live_dir, self.backups_dir):
                directory.mkdir(parents=True, exist_ok=True)
            self.recover()
            self._load_index_extras()
            self.rebuild_index()
            logger.info(f"Certificate store opened at {self.root} with {len(self._records)} record(s)")

    def recover(self) -> None:
        """Roll back or finish a commit interrupted by a crash; drop staging."""
        with self._lock:
            if self.journal_path.exists():
                try:
                    journal = json.loads(self.journal_path.read_text())
                except (OSError, ValueError) as e:
                    logger.warning(f"Unreadable commit journal, discarding: {e}")
                    journal = {}
                self._recover_from_journal(journal)
                self.journal_path.unlink(missing_ok=True)
            if self.staging_dir.exists():
                shutil.rmtree(self.staging_dir)
                logger.info("Removed leftover staging directory")

    def _recover_from_journal(self, journal: dict[str, Any]) -> None:
        if journal.get("op") != "replace" or journal.get("phase") != "staged":
            return
        live = self.live_dir / journal["slug"]
        backup = Path(journal["backup"])
        if not live.exists() and backup.exists():
            os.rename(backup, live)
            _fsync_dir(self.live_dir)
            logger.warning(f"Rolled back interrupted renewal of {journal['slug']} (restored {journal['old_fingerprint']})")

    def _load_index_extras(self) -> None:
        if not self.index_path.exists():
            return
        try:
            data = json.loads(self.index_path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Index unreadable, rebuilding from disk: {e}")
            return
        self._tombstones = set(data.get("tombstones", []))
        self._ignored = set(data.get("ignored", []))
        self._errors = {}
        for raw in data.get("errors", []):
            try:
                err = ErrorRecord.model_validate(raw)
            except ValidationError:
                continue
            self._errors[err.id] = err

    def rebuild_index(self) -> None:
        """Rebuild the fingerprint index from the live and backup directories."""
        with self._lock:
            self._records = {}
            self._slugs = {}
            if self.live_dir.exists():
                for live in sorted(p for p in self.live_dir.iterdir() if p.is_dir()):
                    record = self._load_live(live)
                    if record is None:
                        continue
                    if record.fingerprint in self._records:
                        logger.warning(f"Duplicate fingerprint in {live}, ignoring")
                        continue
                    self._records[record.fingerprint] = record
                    self._slugs[record.fingerprint] = live.name
            self._write_index()

    def _load_live(self, live: Path) -> CertificateRecord | None:
        cert_path = live / CERT_FILE
        try:
            meta = crypto_driver.parse(cert_path)
        except CertificateParseError as e:
            err_id = self._error_id(str(live))
            self._errors[err_id] = ErrorRecord(id=err_id, path=str(live), message=e.message)
            logger.error(f"Live directory {live} holds no parseable certificate")
            return None

        stored: dict[str, Any] = {}
        metadata_path = live / METADATA_FILE
        if metadata_path.exists():
            try:
                stored = json.loads(metadata_path.read_text())
            except (OSError, ValueError):
                logger.warning(f"Metadata for {live.name} unreadable, regenerating")

        key_path = live / KEY_FILE
        chain_path = live / CHAIN_FILE
        config = CertificateConfig()
        if stored.get("config"):
            try:
                config = CertificateConfig.model_validate(stored["config"])
            except ValidationError:
                logger.warning(f"Invalid config for {live.name}, using defaults")

        record = CertificateRecord(
            fingerprint=meta.fingerprint,
            name=stored.get("name") or meta.common_name or live.name,
            cert_type=stored.get("cert_type") or meta.cert_type,
            subject=meta.subject,
            issuer=meta.issuer,
            serial=meta.serial,
            sans=SubjectAltNames(domains=meta.domains, ips=meta.ips),
            valid_from=meta.valid_from,
            valid_to=meta.valid_to,
            cert_path=str(cert_path),
            key_path=str(key_path) if key_path.exists() else None,
            chain_path=str(chain_path) if chain_path.exists() else None,
            key_algorithm=meta.key_algorithm,
            key_length=meta.key_length,
            issuer_fingerprint=stored.get("issuer_fingerprint"),
            config=config,
            needs_passphrase=key_path.exists() and crypto_driver.key_is_encrypted(key_path.read_bytes()),
            source_path=stored.get("source_path"),
            created_at=stored.get("created_at") or _utcnow(),
            updated_at=stored.get("updated_at") or _utcnow(),
        )
        if stored.get("fingerprint") and stored["fingerprint"] != meta.fingerprint:
            logger.warning(f"Metadata fingerprint for {live.name} was stale; using on-disk certificate")
            self._write_metadata(live, record)
        record.previous_versions = self._load_backups(live.name)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_records(self) -> list[CertificateRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: (r.name.lower(), r.fingerprint))
            return [r.model_copy(deep=True) for r in records]

    def list_errors(self) -> list[ErrorRecord]:
        with self._lock:
            return [e.model_copy() for e in sorted(self._errors.values(), key=lambda e: e.path)]

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def resolve(self, identifier: str) -> str:
        """
        Resolve an identifier to a fingerprint.

        Match order: exact fingerprint, unique fingerprint prefix of at
        least 8 hex characters, exact name.

        Raises:
            AmbiguousIdentifierError: If a prefix matches several records
            CertificateNotFoundError: If nothing matches
        """
        key = normalize_identifier(identifier)
        with self._lock:
            if key in self._records:
                return key
            if len(key) >= 8 and _HEX.match(key):
                matches = [fp for fp in self._records if fp.startswith(key)]
                if len(matches) == 1:
                    return matches[0]
                if len(matches) > 1:
                    raise AmbiguousIdentifierError(
                        f"Fingerprint prefix '{key}' matches {len(matches)} certificates",
                        suggestion="Use a longer prefix or the full fingerprint",
                        matches=sorted(matches),
                    )
            raw = unquote(identifier).strip()
            for fp, record in self._records.items():
                if record.name == raw:
                    return fp
        raise CertificateNotFoundError(
            f"Certificate '{identifier}' not found",
            suggestion="List certificates to find a valid fingerprint or name",
        )

    def get(self, identifier: str) -> CertificateRecord:
        with self._lock:
            return self._records[self.resolve(identifier)].model_copy(deep=True)

    def redirect_for(self, identifier: str) -> str | None:
        """New fingerprint for an identifier replaced within the grace period."""
        key = normalize_identifier(identifier)
        now = self._clock()
        with self._lock:
            target = None
            seen = set()
            while key in self._redirects and key not in seen:
                seen.add(key)
                new_fp, deadline = self._redirects[key]
                if deadline < now:
                    del self._redirects[key]
                    break
                target = key = new_fp
            if target is not None and target in self._records:
                return target
            return None

    def read_material(self, identifier: str) -> Material:
        with self._lock:
            record = self._records[self.resolve(identifier)]
            try:
                return Material(
                    cert_pem=Path(record.cert_path).read_bytes(),
                    key_pem=Path(record.key_path).read_bytes() if record.key_path else None,
                    chain_pem=Path(record.chain_path).read_bytes() if record.chain_path else None,
                )
            except OSError as e:
                raise StorageError(f"Unable to read material for {record.name}: {e.strerror or e}")

    def fingerprint_for_source(self, source_path: str | Path) -> str | None:
        source = str(Path(source_path))
        with self._lock:
            for fp, record in self._records.items():
                if record.source_path == source:
                    return fp
        return None

    def list_backups(self, identifier: str) -> list[BackupRecord]:
        with self._lock:
            return [b.model_copy() for b in self._records[self.resolve(identifier)].previous_versions]

    def get_backup_snapshot(self, identifier: str, backup_id: str) -> dict[str, Any]:
        """The record metadata as it was when the slot was moved aside."""
        slot = self._backup_slot(identifier, backup_id)
        try:
            return json.loads((slot / METADATA_FILE).read_text())
        except (OSError, ValueError) as e:
            raise StorageError(f"Backup metadata unreadable: {e}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put_new(
        self,
        material: Material,
        name: str | None = None,
        cert_type: CertType | None = None,
        config: CertificateConfig | None = None,
        issuer_fingerprint: str | None = None,
        source_path: str | None = None,
    ) -> CertificateRecord:
        """
        Add a new record.

        Raises:
            ConflictError: If the fingerprint or name is already in the store
            CryptoError: If the supplied key does not match the certificate
        """
        meta = crypto_driver.parse(material.cert_pem)
        with self._lock:
            if meta.fingerprint in self._records:
                raise ConflictError(
                    f"Certificate {meta.fingerprint[:16]}... already exists as '{self._records[meta.fingerprint].name}'",
                    fingerprint=meta.fingerprint,
                )
            name = (name or meta.common_name or (meta.domains[0] if meta.domains else "") or meta.fingerprint[:16]).strip()
            if any(r.name == name for r in self._records.values()):
                raise ConflictError(f"A certificate named '{name}' already exists", suggestion="Choose another name")
            self._check_key(material)

            slug = self._unique_slug(name)
            live = self.live_dir / slug
            if issuer_fingerprint is None:
                issuer_fingerprint = self._find_issuer(material.cert_pem, meta.fingerprint)
            now = _utcnow()
            record = self._record_from(
                meta,
                live,
                material,
                name=name,
                cert_type=cert_type or meta.cert_type,
                config=config or CertificateConfig(),
                issuer_fingerprint=issuer_fingerprint,
                source_path=source_path,
                created_at=now,
            )

            staging = self._stage(material, record)
            self._write_journal({"op": "create", "slug": slug, "staging": str(staging), "phase": "staged"})
            try:
                os.rename(staging, live)
                _fsync_dir(self.live_dir)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise StorageError(f"Unable to commit new certificate: {e.strerror or e}")
            finally:
                self.journal_path.unlink(missing_ok=True)

            self._records[record.fingerprint] = record
            self._slugs[record.fingerprint] = slug
            self._tombstones.discard(record.fingerprint)
            self._write_index()
            logger.info(f"Added certificate '{name}' ({record.fingerprint[:16]}...)")
            return record.model_copy(deep=True)

    def replace_live(
        self,
        identifier: str,
        material: Material,
        renewed_at: datetime | None = None,
        issuer_fingerprint: str | None = None,
    ) -> tuple[CertificateRecord, BackupRecord | None]:
        """
        Atomically replace a record's live material.

        The current live directory becomes a backup slot and the staged
        material becomes live. A failure while swapping in the new material
        restores the previous live directory.

        Returns:
            Tuple of (new record, backup slot of the previous version)
        """
        renewed_at = renewed_at or _utcnow()
        meta = crypto_driver.parse(material.cert_pem)
        with self._lock:
            old_fp = self.resolve(identifier)
            old = self._records[old_fp]
            if meta.fingerprint == old_fp:
                raise ConflictError("Replacement certificate is identical to the live certificate")
            if meta.fingerprint in self._records:
                raise ConflictError(f"Certificate {meta.fingerprint[:16]}... is already managed by another record")

            if material.key_pem is None and old.key_path:
                old_key = Path(old.key_path).read_bytes()
                try:
                    if crypto_driver.key_matches(material.cert_pem, old_key, material.key_passphrase):
                        material.key_pem = old_key
                except CryptoError:
                    pass
            self._check_key(material)

            slug = self._slugs[old_fp]
            live = self.live_dir / slug
            slot = self.backups_dir / slug / f"{renewed_at.strftime(SLOT_TIME_FORMAT)}-{old_fp[:8]}"
            record = self._record_from(
                meta,
                live,
                material,
                name=old.name,
                cert_type=old.cert_type,
                config=old.config.model_copy(deep=True),
                issuer_fingerprint=issuer_fingerprint if issuer_fingerprint is not None else old.issuer_fingerprint,
                source_path=old.source_path,
                created_at=old.created_at,
            )

            staging = self._stage(material, record)
            self._write_journal(
                {
                    "op": "replace",
                    "slug": slug,
                    "staging": str(staging),
                    "backup": str(slot),
                    "old_fingerprint": old_fp,
                    "new_fingerprint": record.fingerprint,
                    "phase": "staged",
                }
            )
            try:
                slot.parent.mkdir(parents=True, exist_ok=True)
                os.rename(live, slot)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                self.journal_path.unlink(missing_ok=True)
                raise StorageError(f"Unable to move live material to backup: {e.strerror or e}")

            try:
                self._swap_in(staging, live)
            except OSError as e:
                os.rename(slot, live)
                shutil.rmtree(staging, ignore_errors=True)
                self.journal_path.unlink(missing_ok=True)
                raise StorageError(f"Atomic rename failed, previous version restored: {e.strerror or e}")

            _fsync_dir(self.live_dir)
            _fsync_dir(slot.parent)
            self._write_journal({"op": "replace", "slug": slug, "phase": "committed"})

            if not self.enable_backups:
                shutil.rmtree(slot, ignore_errors=True)

            del self._records[old_fp]
            del self._slugs[old_fp]
            record.previous_versions = self._load_backups(slug)
            self._records[record.fingerprint] = record
            self._slugs[record.fingerprint] = slug
            self._write_index()
            self.journal_path.unlink(missing_ok=True)

            self._prune_slug(slug)
            record.previous_versions = self._load_backups(slug)
            self._add_redirect(old_fp, record.fingerprint)

            backup = next((b for b in record.previous_versions if b.fingerprint == old_fp), None)
            logger.info(f"Replaced live certificate '{old.name}': {old_fp[:16]}... -> {record.fingerprint[:16]}...")
            return record.model_copy(deep=True), backup.model_copy() if backup else None

    def _swap_in(self, staging: Path, live: Path) -> None:
        os.rename(staging, live)

    def update_config(self, identifier: str, config: CertificateConfig) -> CertificateRecord:
        return self.update_record(identifier, config=config)

    def update_record(self, identifier: str, **changes: Any) -> CertificateRecord:
        """Update mutable record attributes (name, config, cert_type, links)."""
        allowed = {"name", "config", "cert_type", "issuer_fingerprint", "source_path"}
        unknown = set(changes) - allowed
        if unknown:
            raise InvalidRequestError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        with self._lock:
            fp = self.resolve(identifier)
            record = self._records[fp]
            new_name = changes.get("name")
            if new_name and new_name != record.name and any(r.name == new_name for r in self._records.values()):
                raise ConflictError(f"A certificate named '{new_name}' already exists")
            updated = record.model_copy(update={**changes, "updated_at": _utcnow()}, deep=True)
            try:
                self._write_metadata(self.live_dir / self._slugs[fp], updated)
            except OSError as e:
                raise StorageError(f"Unable to write metadata: {e.strerror or e}")
            self._records[fp] = updated
            return updated.model_copy(deep=True)

    def repoint_dependents(self, old_fp: str, new_fp: str) -> list[str]:
        """Re-point CA and issuer references from a replaced CA to its successor."""
        updated: list[str] = []
        with self._lock:
            for fp, record in list(self._records.items()):
                changes: dict[str, Any] = {}
                if record.config.ca_fingerprint == old_fp:
                    changes["config"] = record.config.model_copy(update={"ca_fingerprint": new_fp})
                if record.issuer_fingerprint == old_fp and fp != new_fp:
                    changes["issuer_fingerprint"] = new_fp
                if changes:
                    self.update_record(fp, **changes)
                    updated.append(fp)
        if updated:
            logger.info(f"Re-pointed {len(updated)} dependent certificate(s) to {new_fp[:16]}...")
        return updated

    def delete(self, identifier: str) -> str:
        """
        Delete a record with its live material and all backups.

        Error records (``err-...``) are removed from listings and their path
        is ignored by later discovery scans.

        Returns:
            The deleted fingerprint or error record id
        """
        with self._lock:
            err_id = unquote(identifier).strip()
            if err_id in self._errors:
                err = self._errors.pop(err_id)
                self._ignored.add(err.path)
                self._write_index()
                logger.info(f"Deleted error record {err_id} ({err.path})")
                return err_id

            fp = self.resolve(identifier)
            record = self._records[fp]
            slug = self._slugs[fp]
            try:
                shutil.rmtree(self.live_dir / slug)
                if (self.backups_dir / slug).exists():
                    shutil.rmtree(self.backups_dir / slug)
                _fsync_dir(self.live_dir)
            except OSError as e:
                raise StorageError(f"Unable to delete '{record.name}': {e.strerror or e}")

            del self._records[fp]
            del self._slugs[fp]
            self._tombstones.add(fp)
            self._tombstones.update(b.fingerprint for b in record.previous_versions)
            self._redirects = {k: v for k, v in self._redirects.items() if v[0] != fp}
            self._write_index()
            logger.info(f"Deleted certificate '{record.name}' ({fp[:16]}...)")
            return fp

    def delete_backup(self, identifier: str, backup_id: str) -> CertificateRecord:
        with self._lock:
            fp = self.resolve(identifier)
            slot = self._backup_slot(fp, backup_id)
            try:
                shutil.rmtree(slot)
            except OSError as e:
                raise StorageError(f"Unable to delete backup: {e.strerror or e}")
            record = self._records[fp]
            record.previous_versions = self._load_backups(self._slugs[fp])
            logger.info(f"Deleted backup {backup_id} of '{record.name}'")
            return record.model_copy(deep=True)

    def create_backup(self, identifier: str) -> BackupRecord:
        """Copy the live material into a new backup slot, leaving it live."""
        with self._lock:
            fp = self.resolve(identifier)
            slug = self._slugs[fp]
            slot = self.backups_dir / slug / f"{_utcnow().strftime(SLOT_TIME_FORMAT)}-{fp[:8]}"
            if slot.exists():
                raise ConflictError("A backup was taken at the same instant", suggestion="Retry the request")
            try:
                slot.parent.mkdir(parents=True, exist_ok=True)
                shutil.copytree(self.live_dir / slug, slot)
            except OSError as e:
                shutil.rmtree(slot, ignore_errors=True)
                raise StorageError(f"Unable to create backup: {e.strerror or e}")
            _fsync_dir(slot.parent)
            record = self._records[fp]
            record.previous_versions = self._load_backups(slug)
            logger.info(f"Created manual backup {slot.name} of '{record.name}'")
            return next(b for b in record.previous_versions if b.id == slot.name).model_copy()

    def backup_material(self, identifier: str, backup_id: str) -> Material:
        slot = self._backup_slot(identifier, backup_id)
        key = slot / KEY_FILE
        chain = slot / CHAIN_FILE
        return Material(
            cert_pem=(slot / CERT_FILE).read_bytes(),
            key_pem=key.read_bytes() if key.exists() else None,
            chain_pem=chain.read_bytes() if chain.exists() else None,
        )

    def restore_backup(self, identifier: str, backup_id: str) -> tuple[CertificateRecord, BackupRecord | None]:
        """Make a backup slot live again; the current live version becomes a new slot."""
        with self._lock:
            fp = self.resolve(identifier)
            material = self.backup_material(fp, backup_id)
            if crypto_driver.parse(material.cert_pem).fingerprint == fp:
                raise ConflictError("Backup is identical to the live certificate")
            return self.replace_live(fp, material)

    def prune_backups(self) -> int:
        """Apply backup retention to every record. Returns slots removed."""
        removed = 0
        with self._lock:
            for fp, slug in list(self._slugs.items()):
                removed += self._prune_slug(slug)
                self._records[fp].previous_versions = self._load_backups(slug)
        return removed

    def configure(
        self,
        backup_retention_days: int | None = None,
        keep_backups_forever: bool = False,
        enable_backups: bool = True,
    ) -> None:
        with self._lock:
            self.backup_retention_days = None if keep_backups_forever else backup_retention_days
            self.enable_backups = enable_backups

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self, directory: str | Path | None = None) -> DiscoveryResult:
        """
        Import certificates found under the watch directory.

        Each ``*.crt``/``*.pem`` holding a certificate not yet managed is
        copied into the store, paired with a matching unencrypted key found
        next to it. Files that fail to parse become error records. Known
        source files whose content changed are reported as ``changed``.
        """
        result = DiscoveryResult()
        scan_dir = Path(directory) if directory else self.watch_dir
        if scan_dir is None or not scan_dir.is_dir():
            return result

        with self._lock:
            present: set[str] = set()
            for path in sorted(scan_dir.rglob("*")):
                if not path.is_file() or path.suffix.lower() not in DISCOVERY_SUFFIXES:
                    continue
                if self._is_managed_path(path):
                    continue
                source = str(path)
                present.add(source)
                if source in self._ignored:
                    continue
                self._discover_file(path, result)

            for err_id, err in list(self._errors.items()):
                if err.path.startswith(str(scan_dir)) and err.path not in present and not Path(err.path).is_dir():
                    del self._errors[err_id]
            self._write_index()

        if result.imported or result.errors:
            logger.info(f"Discovery imported {len(result.imported)} certificate(s), {len(result.errors)} error(s)")
        return result

    def _discover_file(self, path: Path, result: DiscoveryResult) -> None:
        source = str(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Unable to read {path}: {e}")
            return
        if crypto_driver.PEM_CERT_MARKER not in data and b"PRIVATE KEY" in data:
            return

        err_id = self._error_id(source)
        try:
            leaf, chain = crypto_driver.split_pem_bundle(data) if crypto_driver.PEM_CERT_MARKER in data else (data, b"")
            meta = crypto_driver.parse(leaf)
        except CertificateParseError as e:
            if err_id not in self._errors:
                self._errors[err_id] = ErrorRecord(id=err_id, path=source, message=e.message)
                result.errors.append(err_id)
                logger.warning(f"Discovered file {path} is not a parseable certificate")
            return
        self._errors.pop(err_id, None)

        known = self.fingerprint_for_source(source)
        if known is not None:
            if known != meta.fingerprint:
                result.changed.append(known)
            return
        if meta.fingerprint in self._records or meta.fingerprint in self._tombstones:
            return

        material = Material(cert_pem=leaf, chain_pem=chain or None, key_pem=self._find_key_for(path, leaf))
        name = self._unique_name(meta.common_name or (meta.domains[0] if meta.domains else path.stem), path.stem)
        try:
            record = self.put_new(material, name=name, source_path=source)
        except (ConflictError, CryptoError, StorageError) as e:
            logger.warning(f"Unable to import {path}: {e.message}")
            return
        result.imported.append(record.fingerprint)

    def _find_key_for(self, cert_file: Path, cert_pem: bytes) -> bytes | None:
        stem = cert_file.stem
        directory = cert_file.parent
        candidates = [
            directory / f"{stem}.key",
            directory / f"{stem}-key.pem",
            directory / f"{stem}.key.pem",
            directory / "privkey.pem",
            directory / "key.pem",
        ]
        candidates.extend(sorted(directory.glob("*.key")))
        seen: set[Path] = set()
        for candidate in candidates:
            if candidate in seen or not candidate.is_file():
                continue
            seen.add(candidate)
            try:
                key_pem = candidate.read_bytes()
                if crypto_driver.key_is_encrypted(key_pem):
                    continue
                if crypto_driver.key_matches(cert_pem, key_pem):
                    return key_pem
            except (OSError, CryptoError):
                continue
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_key(self, material: Material) -> None:
        if material.key_pem is None:
            return
        if crypto_driver.key_is_encrypted(material.key_pem) and not material.key_passphrase:
            raise CryptoError(
                "Private key is encrypted; a passphrase is required to verify it matches the certificate",
                suggestion="Provide the key passphrase",
            )
        if not crypto_driver.key_matches(material.cert_pem, material.key_pem, material.key_passphrase):
            raise CryptoError(
                "Private key does not match the certificate",
                suggestion="Upload the key that was used to create the certificate",
            )

    def _record_from(
        self,
        meta: crypto_driver.CertMetadata,
        live: Path,
        material: Material,
        **attrs: Any,
    ) -> CertificateRecord:
        now = _utcnow()
        return CertificateRecord(
            fingerprint=meta.fingerprint,
            subject=meta.subject,
            issuer=meta.issuer,
            serial=meta.serial,
            sans=SubjectAltNames(domains=meta.domains, ips=meta.ips),
            valid_from=meta.valid_from,
            valid_to=meta.valid_to,
            cert_path=str(live / CERT_FILE),
            key_path=str(live / KEY_FILE) if material.key_pem else None,
            chain_path=str(live / CHAIN_FILE) if material.chain_pem else None,
            key_algorithm=meta.key_algorithm,
            key_length=meta.key_length,
            needs_passphrase=bool(material.key_pem) and crypto_driver.key_is_encrypted(material.key_pem),
            updated_at=now,
            **attrs,
        )

    def _stage(self, material: Material, record: CertificateRecord) -> Path:
        staging = self.staging_dir / uuid.uuid4().hex
        try:
            staging.mkdir(parents=True)
            _write_synced(staging / CERT_FILE, material.cert_pem)
            if material.key_pem:
                _write_synced(staging / KEY_FILE, material.key_pem, mode=0o600)
            if material.chain_pem:
                _write_synced(staging / CHAIN_FILE, material.chain_pem)
            _write_synced(staging / METADATA_FILE, self._metadata_bytes(record))
            _fsync_dir(staging)
            _fsync_dir(self.staging_dir)
        except OSError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise StorageError(f"Unable to stage certificate material: {e.strerror or e}")
        return staging

    def _metadata_bytes(self, record: CertificateRecord) -> bytes:
        data = record.model_dump(mode="json", exclude={"previous_versions"})
        return json.dumps(data, indent=2).encode("utf-8")

    def _write_metadata(self, live: Path, record: CertificateRecord) -> None:
        write_file_atomic(live / METADATA_FILE, self._metadata_bytes(record))

    def _write_journal(self, journal: dict[str, Any]) -> None:
        write_file_atomic(self.journal_path, json.dumps(journal).encode("utf-8"))

    def _write_index(self) -> None:
        data = {
            "version": INDEX_VERSION,
            "records": {fp: slug for fp, slug in sorted(self._slugs.items())},
            "tombstones": sorted(self._tombstones),
            "ignored": sorted(self._ignored),
            "errors": [e.model_dump(mode="json") for e in self._errors.values()],
        }
        try:
            write_file_atomic(self.index_path, json.dumps(data, indent=2).encode("utf-8"))
        except OSError as e:
            # the index is rebuildable from live/ on next open
            logger.error(f"Failed to write index: {e}")

    def _load_backups(self, slug: str) -> list[BackupRecord]:
        directory = self.backups_dir / slug
        if not directory.is_dir():
            return []
        backups: list[BackupRecord] = []
        for slot in directory.iterdir():
            if not slot.is_dir():
                continue
            try:
                renewed_at = datetime.strptime(slot.name.split("-", 1)[0], SLOT_TIME_FORMAT).replace(
                    tzinfo=timezone.utc
                )
                meta = crypto_driver.parse(slot / CERT_FILE)
            except (ValueError, CertificateParseError):
                logger.warning(f"Skipping unreadable backup slot {slot}")
                continue
            key = slot / KEY_FILE
            backups.append(
                BackupRecord(
                    id=slot.name,
                    fingerprint=meta.fingerprint,
                    valid_from=meta.valid_from,
                    valid_to=meta.valid_to,
                    renewed_at=renewed_at,
                    backup_cert_path=str(slot / CERT_FILE),
                    backup_key_path=str(key) if key.exists() else None,
                )
            )
        backups.sort(key=lambda b: b.renewed_at, reverse=True)
        return backups

    def _backup_slot(self, identifier: str, backup_id: str) -> Path:
        with self._lock:
            fp = self.resolve(identifier)
            if "/" in backup_id or backup_id.startswith("."):
                raise InvalidRequestError(f"Invalid backup id '{backup_id}'")
            slot = self.backups_dir / self._slugs[fp] / backup_id
            if not slot.is_dir():
                raise CertificateNotFoundError(f"Backup '{backup_id}' not found for '{self._records[fp].name}'")
            return slot

    def _prune_slug(self, slug: str) -> int:
        if self.backup_retention_days is None:
            return 0
        cutoff = _utcnow() - timedelta(days=self.backup_retention_days)
        removed = 0
        for backup in self._load_backups(slug):
            if backup.renewed_at < cutoff:
                shutil.rmtree(Path(backup.backup_cert_path).parent, ignore_errors=True)
                removed += 1
        if removed:
            logger.info(f"Pruned {removed} backup(s) of {slug} older than {self.backup_retention_days} days")
        return removed

    def _add_redirect(self, old_fp: str, new_fp: str) -> None:
        now = self._clock()
        deadline = now + self.redirect_seconds
        for key, (target, expires) in list(self._redirects.items()):
            if expires < now:
                del self._redirects[key]
            elif target == old_fp:
                self._redirects[key] = (new_fp, expires)
        self._redirects[old_fp] = (new_fp, deadline)
        self._redirects.pop(new_fp, None)

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug = base
        n = 2
        while (self.live_dir / slug).exists() or (self.backups_dir / slug).exists():
            slug = f"{base}-{n}"
            n += 1
        return slug

    def _unique_name(self, name: str, hint: str) -> str:
        names = {r.name for r in self._records.values()}
        if name not in names:
            return name
        candidate = f"{name} ({hint})"
        n = 2
        while candidate in names:
            candidate = f"{name} ({hint} {n})"
            n += 1
        return candidate

    def _find_issuer(self, cert_pem: bytes, fingerprint: str) -> str | None:
        for fp, record in self._records.items():
            if fp == fingerprint or not record.is_ca:
                continue
            try:
                if crypto_driver.is_issued_by(cert_pem, Path(record.cert_path).read_bytes()):
                    return fp
            except (OSError, CertificateParseError):
                continue
        return None

    def _is_managed_path(self, path: Path) -> bool:
        for managed in (self.live_dir, self.backups_dir, self.staging_dir):
            if path.is_relative_to(managed):
                return True
        return False

    @staticmethod
    def _error_id(path: str) -> str:
        return f"err-{hashlib.sha1(path.encode('utf-8')).hexdigest()[:12]}"
