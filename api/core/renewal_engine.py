"""
Renewal engine.

Drives the per-record renewal state machine::

    idle -> queued -> running -> (succeeded | failed | cancelled)
                         \\-> waiting_for_passphrase -> running | cancelled | failed

A fixed pool of worker tasks drains one queue. Each worker takes a lock
keyed by the record fingerprint before a job may run, so one record never
has two renewals in flight while unrelated records renew concurrently.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from collections.abc import Awaitable
from typing import Any

from core import crypto_driver
from core.acme_service import ACMEService, OrderSpec
from core.cert_store import CertificateStore, Material
from core.deploy_pipeline import DeploymentPipeline
from core.errors import (
    CertificateNotFoundError,
    CertManagerError,
    ConflictError,
    CryptoError,
    InvalidDomainError,
    InvalidRequestError,
    PassphraseNotFoundError,
    PassphraseRequiredError,
    RenewalCancelledError,
    classify_exception,
)
from core.event_bus import EventBus
from core.passphrase_vault import PassphraseVault
from models.certificate import (
    CertificateConfig,
    CertificateCreateRequest,
    CertificateRecord,
    CertType,
    ChallengeType,
    KeyType,
    split_san_entries,
    utcnow,
)
from models.event import Topic
from models.renewal import DomainChanges, RenewalJobView, RenewalState, RenewalTrigger
from models.settings import GlobalSettings

logger = logging.getLogger(__name__)

MAX_JOB_HISTORY = 500


@dataclass
class RenewalJob:
    """A queued renewal and its private inputs."""

    view: RenewalJobView
    domain_changes: DomainChanges | None = None
    passphrase: str | None = field(default=None, repr=False)
    only_if_due: bool = False
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


def _key_spec(record: CertificateRecord) -> tuple[KeyType, int]:
    algorithm = (record.key_algorithm or "").lower()
    if algorithm.startswith("ecdsa"):
        size = record.key_length if record.key_length in (256, 384, 521) else 256
        return KeyType.ECDSA, size
    return KeyType.RSA, max(record.key_length or 2048, 2048)


def apply_domain_changes(record: CertificateRecord, changes: DomainChanges | None) -> tuple[list[str], list[str]]:
    """SAN lists for the next version of ``record`` with staged changes merged in."""
    domains = list(record.sans.domains)
    ips = list(record.sans.ips)
    if changes is None:
        return domains, ips
    removed = set(changes.remove)
    domains = [d for d in domains if d not in removed]
    ips = [ip for ip in ips if ip not in removed]
    domains.extend(d for d in changes.add_domains if d not in domains)
    ips.extend(ip for ip in changes.add_ips if ip not in ips)
    if not domains and not ips and (record.sans.domains or record.sans.ips):
        raise InvalidDomainError(
            "The certificate would be left without any subject alternative names",
            suggestion="Keep at least one domain or IP address",
        )
    return domains, ips


class RenewalEngine:
    """Queue, workers and state machine for certificate renewals."""

    def __init__(
        self,
        store: CertificateStore,
        vault: PassphraseVault,
        acme: ACMEService,
        pipeline: DeploymentPipeline,
        bus: EventBus,
        global_settings: GlobalSettings | None = None,
        workers: int = 4,
        passphrase_timeout: float = 300.0,
        successor_ttl: float = 3600.0,
    ):
        self.store = store
        self.vault = vault
        self.acme = acme
        self.pipeline = pipeline
        self.bus = bus
        self.global_settings = global_settings or GlobalSettings()
        self.worker_count = max(1, workers)
        self.passphrase_timeout = passphrase_timeout

        self._queue: asyncio.Queue[RenewalJob] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._changed = asyncio.Condition()
        self._jobs: OrderedDict[str, RenewalJob] = OrderedDict()
        self._latest: dict[str, str] = {}
        self._successors: dict[str, tuple[str, float]] = {}
        self.successor_ttl = successor_ttl

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        for n in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._worker(n), name=f"renewal-worker-{n}"))
        logger.info(f"Renewal engine started with {self.worker_count} worker(s)")

    async def stop(self) -> None:
        for job in self._jobs.values():
            if job.view.state.is_active:
                job.cancel_event.set()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Renewal engine stopped")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def current_fingerprint(self, fingerprint: str) -> str:
        """Follow renewals from ``fingerprint`` to the live record's fingerprint."""
        seen = set()
        while fingerprint in self._successors and fingerprint not in seen:
            seen.add(fingerprint)
            fingerprint = self._successors[fingerprint][0]
        return fingerprint

    async def enqueue(
        self,
        identifier: str,
        trigger: RenewalTrigger = RenewalTrigger.MANUAL,
        domain_changes: DomainChanges | None = None,
        passphrase: str | None = None,
        only_if_due: bool = False,
    ) -> RenewalJobView:
        """
        Queue a renewal for a record.

        A request for a record that already has an active job returns that
        job instead of queuing a second one.

        Args:
            identifier: Fingerprint, fingerprint prefix or name
            trigger: What caused the renewal
            domain_changes: SAN additions/removals merged into the new certificate
            passphrase: Passphrase held for this job only
            only_if_due: Skip the renewal unless the record's window has opened

        Returns:
            The job view

        Raises:
            CertificateNotFoundError: If the record does not exist
            ConflictError: If domain changes arrive while a renewal is in flight
        """
        fingerprint = self.store.resolve(identifier)
        record = self.store.get(fingerprint)

        active = self._active_job(fingerprint)
        if active is not None:
            if domain_changes is not None:
                raise ConflictError(
                    f"A renewal of '{record.name}' is already {active.view.state.value}",
                    suggestion="Wait for it to finish, then retry",
                    job_id=active.view.job_id,
                )
            if passphrase and not active.passphrase:
                active.passphrase = passphrase
            logger.debug(f"Renewal of '{record.name}' already {active.view.state.value}; not queuing again")
            return active.view.model_copy(deep=True)

        job = RenewalJob(
            view=RenewalJobView(fingerprint=fingerprint, name=record.name, trigger=trigger, queued_at=utcnow()),
            domain_changes=domain_changes,
            passphrase=passphrase,
            only_if_due=only_if_due,
        )
        self._remember(job)
        await self._set_state(job, RenewalState.QUEUED)
        self._queue.put_nowait(job)
        logger.info(f"Queued {trigger.value} renewal of '{record.name}' ({job.view.job_id})")
        return job.view.model_copy(deep=True)

    async def cancel(self, identifier: str) -> RenewalJobView:
        """
        Deliver a cancel signal to the record's active renewal.

        Raises:
            ConflictError: If no renewal is in progress
        """
        fingerprint = self._resolve_any(identifier)
        job = self._active_job(fingerprint)
        if job is None:
            raise ConflictError("No renewal in progress for this certificate")
        job.cancel_event.set()
        if job.view.state == RenewalState.QUEUED:
            job.view.message = "Cancelled before start"
            job.view.error_kind = RenewalCancelledError.kind.value
            await self._finish(job, RenewalState.CANCELLED)
        logger.info(f"Cancel requested for renewal {job.view.job_id}")
        return job.view.model_copy(deep=True)

    def latest_job(self, identifier: str) -> RenewalJobView | None:
        fingerprint = self._resolve_any(identifier)
        job_id = self._latest.get(fingerprint)
        if job_id is None or job_id not in self._jobs:
            return None
        return self._jobs[job_id].view.model_copy(deep=True)

    def get_job(self, job_id: str) -> RenewalJobView:
        if job_id not in self._jobs:
            raise CertificateNotFoundError(f"Renewal job '{job_id}' not found")
        return self._jobs[job_id].view.model_copy(deep=True)

    async def wait_for_settle(self, job_id: str, timeout: float | None = None) -> RenewalJobView:
        """
        Wait until a job finishes or pauses for a passphrase.

        Returns the job view as it is when the wait ends; a timeout is not
        an error.
        """
        job = self._jobs[job_id]

        def settled() -> bool:
            return job.view.state.is_terminal or job.view.state == RenewalState.WAITING_FOR_PASSPHRASE

        async def wait() -> None:
            async with self._changed:
                await self._changed.wait_for(settled)

        try:
            await asyncio.wait_for(wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Renewal {job_id} still {job.view.state.value} after {timeout}s")
        return job.view.model_copy(deep=True)

    async def wait_until_resumed(self, job_id: str, timeout: float | None = None) -> RenewalJobView:
        """Wait until a paused job leaves ``waiting_for_passphrase`` and then settles."""
        job = self._jobs[job_id]

        async def wait() -> None:
            async with self._changed:
                await self._changed.wait_for(lambda: job.view.state != RenewalState.WAITING_FOR_PASSPHRASE)

        try:
            await asyncio.wait_for(wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return job.view.model_copy(deep=True)
        return await self.wait_for_settle(job_id, timeout)

    async def create_certificate(
        self, request: CertificateCreateRequest, principal: str | None = None
    ) -> CertificateRecord:
        """
        Create and store a new certificate.

        Self-signed unless ``sign_with_ca`` (local CA) or an ACME challenge
        type is requested.

        Raises:
            InvalidDomainError: If a SAN entry is invalid
            InvalidRequestError: If the combination of options is unsupported
            PassphraseRequiredError: If the signing CA's passphrase is unknown
        """
        try:
            domains, ips = split_san_entries(request.domains)
        except ValueError as e:
            raise InvalidDomainError(str(e), suggestion="Use valid DNS names or IP addresses")

        cert_type = request.cert_type
        if cert_type == CertType.ROOT_CA and request.sign_with_ca:
            raise InvalidRequestError("A root CA cannot be signed by another CA", suggestion="Use intermediateCA")
        if cert_type.is_ca and request.challenge_type != ChallengeType.NONE:
            raise InvalidRequestError("ACME cannot issue CA certificates")
        if cert_type == CertType.INTERMEDIATE_CA and not request.sign_with_ca:
            raise InvalidRequestError(
                "An intermediate CA must be signed by a CA", suggestion="Set signWithCA and caFingerprint"
            )

        gs = self.global_settings
        common_name = request.common_name or (domains[0] if domains else ips[0] if ips else request.name)
        name = (request.name or common_name).strip()
        params = crypto_driver.CertificateParams(
            common_name=common_name,
            domains=domains,
            ips=ips,
            cert_type=cert_type,
            key_type=request.key_type,
            key_size=request.key_size,
            validity_days=request.validity_days or gs.ca_validity_period.for_type(cert_type.value),
            organization=request.organization,
            organizational_unit=request.organizational_unit,
            country=request.country,
            state=request.state,
            locality=request.locality,
            email=request.email,
        )

        issuer_fingerprint = None
        if request.sign_with_ca:
            ca = await asyncio.to_thread(self.store.get, request.ca_fingerprint)
            self._require_ca(ca)
            ca_passphrase = self._passphrase_now(ca)
            key_pem = await asyncio.to_thread(crypto_driver.generate_key_pem, params, request.passphrase)
            cert_pem, chain_pem = await self._sign_with_ca(params, key_pem, request.passphrase, ca, ca_passphrase)
            issuer_fingerprint = ca.fingerprint
        elif request.challenge_type != ChallengeType.NONE:
            if ips:
                raise InvalidRequestError("ACME certificates cannot include IP addresses")
            cert_pem, chain_pem, key_pem = await self.acme.issue(
                OrderSpec(
                    domains=domains,
                    challenge_type=request.challenge_type,
                    key_type=request.key_type,
                    key_size=request.key_size,
                )
            )
        else:
            cert_pem, key_pem = await asyncio.to_thread(crypto_driver.create_self_signed, params, request.passphrase)
            chain_pem = None

        config = CertificateConfig(
            auto_renew=gs.auto_renew_by_default if request.auto_renew is None else request.auto_renew,
            renew_days_before_expiry=gs.renew_days_before_expiry,
            sign_with_ca=request.sign_with_ca,
            ca_fingerprint=issuer_fingerprint,
            challenge_type=request.challenge_type,
            deploy_actions=request.deploy_actions,
        )
        material = Material(cert_pem=cert_pem, key_pem=key_pem, chain_pem=chain_pem, key_passphrase=request.passphrase)
        record = await asyncio.to_thread(
            self.store.put_new,
            material,
            name,
            cert_type,
            config,
            issuer_fingerprint,
        )
        if request.passphrase and cert_type.is_ca:
            self.vault.set(record.fingerprint, request.passphrase, persist=request.store_passphrase, cert_type=cert_type)

        self.bus.publish(
            Topic.CERTIFICATE_UPDATED,
            {"fingerprint": record.fingerprint, "name": record.name, "action": "created", "principal": principal},
        )
        return record

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if not job.view.state.is_terminal:
                    await self._process(job)
            except asyncio.CancelledError:
                if not job.view.state.is_terminal:
                    job.view.error_kind = RenewalCancelledError.kind.value
                    job.view.message = "Renewal engine stopped"
                    job.view.state = RenewalState.CANCELLED
                raise
            except Exception:
                logger.exception(f"Worker {n} crashed while processing {job.view.job_id}")
            finally:
                self._queue.task_done()

    async def _process(self, job: RenewalJob) -> None:
        while True:
            fingerprint = self.current_fingerprint(job.view.fingerprint)
            lock = self._locks.setdefault(fingerprint, asyncio.Lock())
            async with lock:
                if self.current_fingerprint(job.view.fingerprint) != fingerprint:
                    continue
                if job.view.state.is_terminal:
                    return
                job.view.fingerprint = fingerprint
                await self._run(job, lock)
                return

    async def _run(self, job: RenewalJob, lock: asyncio.Lock) -> None:
        fingerprint = job.view.fingerprint
        job.view.started_at = utcnow()
        await self._set_state(job, RenewalState.RUNNING)
        try:
            record = await self._until_cancelled(job, asyncio.to_thread(self.store.get, fingerprint))
            job.view.name = record.name

            if job.only_if_due and not record.is_due():
                job.view.message = f"Not due for renewal ({record.days_until_expiry} days left)"
                job.view.details["skipped"] = True
                await self._finish(job, RenewalState.SUCCEEDED)
                return

            material, issuer_fingerprint = await self._until_cancelled(job, self._build_material(job, record))
            self._check_cancel(job)
            new_record, backup = await asyncio.to_thread(
                self.store.replace_live, fingerprint, material, None, issuer_fingerprint
            )
        except asyncio.CancelledError:
            raise
        except RenewalCancelledError as e:
            await self._mark_cancelled(job, e.message)
            return
        except Exception as e:
            if job.cancel_event.is_set():
                # the step failed after the cancel signal; report the cancellation
                logger.debug(f"Renewal {job.view.job_id} raised after cancel: {e}")
                await self._mark_cancelled(job, "Renewal cancelled")
                return
            error = classify_exception(e)
            if not isinstance(e, CertManagerError):
                logger.exception(f"Unexpected error renewing {fingerprint[:16]}...")
            job.view.error_kind = error.kind.value
            job.view.message = error.message
            await self._finish(job, RenewalState.FAILED)
            self.bus.publish(
                Topic.RENEWAL_FAILED,
                {
                    "fingerprint": fingerprint,
                    "name": job.view.name,
                    "error_kind": error.kind.value,
                    "message": error.message,
                    "job_id": job.view.job_id,
                },
            )
            logger.error(f"Renewal of '{job.view.name}' failed: {error.kind.value}: {error.message}")
            return

        await self._commit_followups(job, record, new_record, lock)
        job.view.new_fingerprint = new_record.fingerprint
        if backup is not None:
            job.view.details["backup_id"] = backup.id
        self.bus.publish(
            Topic.CERTIFICATE_RENEWED,
            {
                "old_fingerprint": fingerprint,
                "new_fingerprint": new_record.fingerprint,
                "name": new_record.name,
                "domains": new_record.sans.all,
            },
        )

        if new_record.config.deploy_actions:
            deployment = await self.pipeline.run(new_record)
            job.view.deployment = deployment
            self.bus.publish(
                Topic.DEPLOYMENT_COMPLETED,
                {
                    "fingerprint": new_record.fingerprint,
                    "name": new_record.name,
                    "ok": deployment.ok,
                    "actions": [
                        {"index": a.index, "type": a.type, "ok": a.ok, "error_kind": a.error_kind} for a in deployment.actions
                    ],
                },
            )

        job.view.message = f"Renewed; valid until {new_record.valid_to.isoformat()}"
        await self._finish(job, RenewalState.SUCCEEDED)
        logger.info(f"Renewed '{new_record.name}': {fingerprint[:16]}... -> {new_record.fingerprint[:16]}...")

    async def _commit_followups(
        self, job: RenewalJob, old: CertificateRecord, new: CertificateRecord, lock: asyncio.Lock
    ) -> None:
        self._link_successor(old.fingerprint, new.fingerprint, lock)
        self._latest[new.fingerprint] = job.view.job_id
        self.vault.rekey(old.fingerprint, new.fingerprint)
        if old.is_ca:
            await asyncio.to_thread(self.store.repoint_dependents, old.fingerprint, new.fingerprint)

    def _link_successor(self, old_fp: str, new_fp: str, lock: asyncio.Lock) -> None:
        # the successor shares the held lock so jobs resolving to it wait for this one
        self._locks[new_fp] = lock
        self._successors.pop(new_fp, None)
        self._successors[old_fp] = (new_fp, time.monotonic())
        self._prune_successors()

    def _prune_successors(self) -> None:
        """Drop expired successor links that no active job still resolves through."""
        cutoff = time.monotonic() - self.successor_ttl
        pinned: set[str] = set()
        for job in self._jobs.values():
            if not job.view.state.is_active:
                continue
            fingerprint = job.view.fingerprint
            while fingerprint in self._successors and fingerprint not in pinned:
                pinned.add(fingerprint)
                fingerprint = self._successors[fingerprint][0]
        for old_fp, (_, linked_at) in list(self._successors.items()):
            if linked_at >= cutoff or old_fp in pinned:
                continue
            del self._successors[old_fp]
            self._latest.pop(old_fp, None)
            self._locks.pop(old_fp, None)

    def forget(self, fingerprint: str) -> None:
        """Release the locks, job pointers and successor links of a deleted record and its predecessors."""
        gone = {fingerprint}
        grew = True
        while grew:
            grew = False
            for old_fp, (new_fp, _) in self._successors.items():
                if new_fp in gone and old_fp not in gone:
                    gone.add(old_fp)
                    grew = True
        for fp in gone:
            self._successors.pop(fp, None)
            self._latest.pop(fp, None)
            lock = self._locks.get(fp)
            if lock is not None and not lock.locked():
                del self._locks[fp]

    async def restore_backup(self, identifier: str, backup_id: str) -> CertificateRecord:
        """
        Make a backup slot live again under the record's renewal lock.

        Raises:
            ConflictError: If a renewal of the record is in progress
        """
        fingerprint = self.store.resolve(identifier)
        if self._active_job(fingerprint) is not None:
            raise ConflictError("A renewal is in progress", suggestion="Wait for it to finish or cancel it")
        lock = self._locks.setdefault(fingerprint, asyncio.Lock())
        async with lock:
            old = await asyncio.to_thread(self.store.get, fingerprint)
            record, _ = await asyncio.to_thread(self.store.restore_backup, fingerprint, backup_id)
            self._link_successor(fingerprint, record.fingerprint, lock)
            self.vault.rekey(fingerprint, record.fingerprint)
            if old.is_ca:
                await asyncio.to_thread(self.store.repoint_dependents, fingerprint, record.fingerprint)
        logger.info(f"Restored backup {backup_id} of '{record.name}'")
        return record

    # ------------------------------------------------------------------
    # Renewal paths
    # ------------------------------------------------------------------

    async def _build_material(self, job: RenewalJob, record: CertificateRecord) -> tuple[Material, str | None]:
        domains, ips = apply_domain_changes(record, job.domain_changes)
        config = record.config
        current = await asyncio.to_thread(self.store.read_material, record.fingerprint)
        key_type, key_size = _key_spec(record)
        params = crypto_driver.CertificateParams(
            common_name=record.name,
            domains=domains,
            ips=ips,
            cert_type=record.cert_type,
            key_type=key_type,
            key_size=key_size,
            validity_days=self.global_settings.ca_validity_period.for_type(record.cert_type.value),
            subject=crypto_driver.subject_of(current.cert_pem),
        )

        if config.sign_with_ca:
            if not config.ca_fingerprint:
                raise InvalidRequestError("sign_with_ca is set but no CA is configured")
            ca = self._lookup_ca(config.ca_fingerprint)
            own_passphrase = await self._own_passphrase(job, record)
            key_pem = await self._next_key(config.rekey, current, params, own_passphrase)
            # a request passphrase that unlocked the leaf key is not tried against the CA
            spent = own_passphrase is not None and own_passphrase == job.passphrase
            ca_passphrase = await self._ca_passphrase(job, ca, use_job_passphrase=not spent)
            self._check_cancel(job)
            cert_pem, chain_pem = await self._sign_with_ca(params, key_pem, own_passphrase, ca, ca_passphrase)
            return Material(cert_pem, key_pem, chain_pem, key_passphrase=own_passphrase), ca.fingerprint

        if config.challenge_type != ChallengeType.NONE:
            if ips:
                raise InvalidRequestError("ACME certificates cannot include IP addresses")
            reuse = not config.rekey and current.key_pem is not None and not crypto_driver.key_is_encrypted(current.key_pem)
            cert_pem, chain_pem, key_pem = await self.acme.issue(
                OrderSpec(
                    domains=domains,
                    challenge_type=config.challenge_type,
                    email=config.acme_email,
                    key_pem=current.key_pem if reuse else None,
                    key_type=key_type,
                    key_size=key_size,
                )
            )
            return Material(cert_pem, key_pem, chain_pem or None), None

        own_passphrase = await self._own_passphrase(job, record)
        if config.rekey or current.key_pem is None:
            cert_pem, key_pem = await asyncio.to_thread(crypto_driver.create_self_signed, params, own_passphrase)
        else:
            cert_pem, key_pem = await asyncio.to_thread(
                crypto_driver.create_self_signed, params, own_passphrase, current.key_pem, own_passphrase
            )
        return Material(cert_pem, key_pem, current.chain_pem, key_passphrase=own_passphrase), record.issuer_fingerprint

    async def _next_key(
        self, rekey: bool, current: Material, params: crypto_driver.CertificateParams, passphrase: str | None
    ) -> bytes:
        if rekey or current.key_pem is None:
            return await asyncio.to_thread(crypto_driver.generate_key_pem, params, passphrase)
        return current.key_pem

    async def _sign_with_ca(
        self,
        params: crypto_driver.CertificateParams,
        key_pem: bytes,
        key_passphrase: str | None,
        ca: CertificateRecord,
        ca_passphrase: str | None,
    ) -> tuple[bytes, bytes]:
        ca_material = await asyncio.to_thread(self.store.read_material, ca.fingerprint)
        if ca_material.key_pem is None:
            raise CryptoError(f"CA '{ca.name}' has no private key", suggestion="Upload the CA key first")
        csr_pem = await asyncio.to_thread(crypto_driver.create_csr, params, key_pem, key_passphrase)
        cert_pem = await asyncio.to_thread(
            crypto_driver.sign_csr,
            csr_pem,
            ca_material.cert_pem,
            ca_material.key_pem,
            ca_passphrase,
            params.validity_days,
            params.cert_type,
        )
        return cert_pem, ca_material.cert_pem + (ca_material.chain_pem or b"")

    def _lookup_ca(self, ca_fingerprint: str) -> CertificateRecord:
        try:
            ca = self.store.get(self.current_fingerprint(ca_fingerprint))
        except CertificateNotFoundError:
            raise CertificateNotFoundError(
                f"Signing CA {ca_fingerprint[:16]}... not found",
                suggestion="Update the certificate's CA in its renewal config",
            )
        self._require_ca(ca)
        return ca

    @staticmethod
    def _require_ca(ca: CertificateRecord) -> None:
        if not ca.is_ca:
            raise InvalidRequestError(f"'{ca.name}' is not a CA certificate")
        if not ca.key_path:
            raise CryptoError(f"CA '{ca.name}' has no private key", suggestion="Upload the CA key first")

    def _passphrase_now(self, record: CertificateRecord) -> str | None:
        """Passphrase for a record's key without waiting, for synchronous requests."""
        if not record.needs_passphrase:
            return None
        try:
            return self.vault.get(record.fingerprint)
        except PassphraseNotFoundError:
            self.bus.publish(Topic.CA_PASSPHRASE_REQUIRED, {"fingerprint": record.fingerprint, "name": record.name})
            raise PassphraseRequiredError(
                f"The passphrase for CA '{record.name}' is required",
                suggestion="Set the CA passphrase and retry",
                fingerprint=record.fingerprint,
            )

    async def _ca_passphrase(
        self, job: RenewalJob, ca: CertificateRecord, use_job_passphrase: bool = True
    ) -> str | None:
        if not ca.needs_passphrase:
            return None
        if use_job_passphrase and job.passphrase:
            return job.passphrase
        try:
            return self.vault.get(ca.fingerprint)
        except PassphraseNotFoundError:
            return await self._await_passphrase(job, ca)

    async def _own_passphrase(self, job: RenewalJob, record: CertificateRecord) -> str | None:
        if not record.needs_passphrase:
            return None
        try:
            return self.vault.get(record.fingerprint)
        except PassphraseNotFoundError:
            pass
        if job.passphrase:
            return job.passphrase
        if record.is_ca:
            return await self._await_passphrase(job, record)
        raise PassphraseRequiredError(
            f"The private key of '{record.name}' is encrypted",
            suggestion="Renew again and supply the key passphrase",
            fingerprint=record.fingerprint,
        )

    async def _await_passphrase(self, job: RenewalJob, ca: CertificateRecord) -> str:
        job.view.details["awaiting_passphrase_for"] = ca.fingerprint
        await self._set_state(job, RenewalState.WAITING_FOR_PASSPHRASE)
        self.bus.publish(
            Topic.CA_PASSPHRASE_REQUIRED,
            {
                "fingerprint": ca.fingerprint,
                "name": ca.name,
                "job_id": job.view.job_id,
                "certificate_fingerprint": job.view.fingerprint,
            },
        )
        logger.warning(f"Renewal {job.view.job_id} waiting for the passphrase of CA '{ca.name}'")
        secret = await self.vault.wait_for(ca.fingerprint, self.passphrase_timeout, job.cancel_event)
        job.view.details.pop("awaiting_passphrase_for", None)
        await self._set_state(job, RenewalState.RUNNING)
        return secret

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _check_cancel(job: RenewalJob) -> None:
        if job.cancel_event.is_set():
            raise RenewalCancelledError("Renewal cancelled")

    async def _until_cancelled(self, job: RenewalJob, awaitable: Awaitable) -> Any:
        """
        Await a suspension point unless the job's cancel signal arrives first.

        The abandoned step is cancelled; work already handed to a thread
        finishes in the background and its result is discarded.

        Raises:
            RenewalCancelledError: If the job is cancelled before the step completes
        """
        work = asyncio.ensure_future(awaitable)
        if job.cancel_event.is_set():
            work.cancel()
            raise RenewalCancelledError("Renewal cancelled")
        signal = asyncio.ensure_future(job.cancel_event.wait())
        try:
            await asyncio.wait({work, signal}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            signal.cancel()
            if not work.done():
                work.cancel()
        if job.cancel_event.is_set():
            if work.done() and not work.cancelled():
                # retrieve so a failed step is not reported as never retrieved
                work.exception()
            raise RenewalCancelledError("Renewal cancelled")
        return work.result()

    async def _mark_cancelled(self, job: RenewalJob, message: str) -> None:
        job.view.error_kind = RenewalCancelledError.kind.value
        job.view.message = message
        await self._finish(job, RenewalState.CANCELLED)
        logger.info(f"Renewal {job.view.job_id} cancelled")

    def _resolve_any(self, identifier: str) -> str:
        try:
            return self.store.resolve(identifier)
        except CertificateNotFoundError:
            redirect = self.store.redirect_for(identifier)
            if redirect is None:
                raise
            return redirect

    def _active_job(self, fingerprint: str) -> RenewalJob | None:
        job_id = self._latest.get(fingerprint)
        job = self._jobs.get(job_id) if job_id else None
        if job is not None and job.view.state.is_active:
            return job
        return None

    def _remember(self, job: RenewalJob) -> None:
        self._jobs[job.view.job_id] = job
        self._latest[job.view.fingerprint] = job.view.job_id
        while len(self._jobs) > MAX_JOB_HISTORY:
            job_id, old = next(iter(self._jobs.items()))
            if old.view.state.is_active:
                break
            del self._jobs[job_id]

    async def _finish(self, job: RenewalJob, state: RenewalState) -> None:
        job.view.finished_at = utcnow()
        await self._set_state(job, state)

    async def _set_state(self, job: RenewalJob, state: RenewalState) -> None:
        job.view.state = state
        payload: dict[str, Any] = {
            "fingerprint": job.view.fingerprint,
            "job_id": job.view.job_id,
            "name": job.view.name,
            "state": state.value,
            "trigger": job.view.trigger.value,
        }
        if job.view.new_fingerprint:
            payload["new_fingerprint"] = job.view.new_fingerprint
        if job.view.error_kind:
            payload["error_kind"] = job.view.error_kind
        self.bus.publish(Topic.RENEWAL_STATUS, payload)
        async with self._changed:
            self._changed.notify_all()
