"""
Certificate management endpoints.

REST API endpoints for listing, creating, importing, renewing and
deploying managed certificates, plus CA passphrase custody, backups,
downloads and per-certificate deploy actions.
"""

import asyncio
import ipaddress
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, Response

from core import cert_export, crypto_driver
from core.cert_store import Material
from core.deploy_pipeline import DeployActionNotFoundError
from core.errors import (
    CertificateMovedError,
    CertificateNotFoundError,
    ConflictError,
    CryptoError,
    InvalidDomainError,
    InvalidRequestError,
    PassphraseNotFoundError,
    PassphraseRequiredError,
    status_for_kind,
)
from core.services import Services, get_principal, get_services
from models.certificate import (
    CertificateConfigUpdate,
    CertificateCreateRequest,
    CertificateRecord,
    CertificateUploadRequest,
    DeployActionRequest,
    PassphraseRequest,
    RenewRequest,
    RestoreRequest,
    UpdateDomainsRequest,
    is_ip_address,
    normalize_domain,
    split_san_entries,
)
from models.event import Topic
from models.renewal import DomainChanges, RenewalJobView, RenewalState, RenewalTrigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Certificates"])

CERTIFICATE_PATH = "/api/certificate/"


def resolve_identifier(services: Services, identifier: str, request: Request) -> str:
    """
    Resolve a path identifier to a fingerprint.

    Raises:
        CertificateMovedError: If the identifier was renewed within the grace period
        CertificateNotFoundError: If nothing matches
    """
    try:
        return services.store.resolve(identifier)
    except CertificateNotFoundError:
        new_fingerprint = services.store.redirect_for(identifier)
        if new_fingerprint is None:
            raise
        path = request.scope.get("path", "")
        rest = path[len(CERTIFICATE_PATH):].split("/", 1) if path.startswith(CERTIFICATE_PATH) else [""]
        location = CERTIFICATE_PATH + new_fingerprint + (f"/{rest[1]}" if len(rest) > 1 else "")
        raise CertificateMovedError(new_fingerprint, location)


def _job_response(services: Services, job: RenewalJobView) -> JSONResponse:
    """Render a renewal job outcome."""
    payload = {"job": job.model_dump(mode="json")}
    if job.state == RenewalState.SUCCEEDED:
        fingerprint = job.new_fingerprint or job.fingerprint
        record = services.store.get(fingerprint)
        payload.update(
            {
                "success": True,
                "fingerprint": fingerprint,
                "newFingerprint": job.new_fingerprint,
                "certificate": record.to_api(),
                "deployment": job.deployment.model_dump(mode="json") if job.deployment else None,
                "message": job.message,
            }
        )
        return JSONResponse(status_code=200, content=payload)
    if job.state == RenewalState.WAITING_FOR_PASSPHRASE:
        payload.update(
            {
                "success": False,
                "error": PassphraseRequiredError.kind.value,
                "message": "Renewal is waiting for a CA passphrase",
                "suggestion": "Set the CA passphrase to resume the renewal",
                "fingerprint": job.details.get("awaiting_passphrase_for"),
            }
        )
        return JSONResponse(status_code=202, content=payload)
    if job.state in (RenewalState.FAILED, RenewalState.CANCELLED):
        payload.update({"success": False, "error": job.error_kind, "message": job.message})
        return JSONResponse(status_code=status_for_kind(job.error_kind), content=payload)
    payload.update({"success": True, "queued": True, "message": f"Renewal is {job.state.value}"})
    return JSONResponse(status_code=202, content=payload)


def _publish_updated(services: Services, record: CertificateRecord, action: str, principal: str | None) -> None:
    services.bus.publish(
        Topic.CERTIFICATE_UPDATED,
        {"fingerprint": record.fingerprint, "name": record.name, "action": action, "principal": principal},
    )


@router.get(
    "/certificates",
    summary="List Certificates",
    description="""
    List all managed certificates, most useful fields first.

    Discovered files that could not be parsed are returned separately
    under `errors`; they can only be deleted.
    """,
)
async def list_certificates(services: Services = Depends(get_services)) -> dict:
    """List certificates and discovery error records."""
    records = await asyncio.to_thread(services.store.list_records)
    errors = services.store.list_errors()
    return {
        "success": True,
        "certificates": [r.to_api() for r in records],
        "errors": [e.model_dump(mode="json") for e in errors],
        "total": len(records),
    }


@router.get(
    "/certificate/{identifier}",
    summary="Get Certificate",
    description="""
    Get one certificate by fingerprint (any common format), unique
    fingerprint prefix of 8+ hex characters, or name.

    A fingerprint replaced by a renewal within the last minute answers
    with HTTP 301 and the new fingerprint.
    """,
    responses={301: {"description": "Certificate was renewed"}, 404: {"description": "Certificate not found"}},
)
async def get_certificate(
    identifier: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    return {"success": True, "certificate": record.to_api()}


@router.post(
    "/certificate",
    status_code=201,
    summary="Create Certificate",
    description="""
    Create a certificate.

    **Modes:**
    - Self-signed (default)
    - Signed by a managed CA (`signWithCA` + `caFingerprint`)
    - Issued over ACME (`challengeType` http, dns or standalone)

    Validity defaults to the global `caValidityPeriod` for the certificate type.
    """,
)
async def create_certificate(
    body: CertificateCreateRequest,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    record = await services.engine.create_certificate(body, principal=principal)
    return {"success": True, "certificate": record.to_api(), "fingerprint": record.fingerprint}


@router.post(
    "/certificate/upload",
    status_code=201,
    summary="Import Certificate",
    description="""
    Import an existing certificate, optionally with its private key and chain.

    The key must match the certificate. An encrypted key needs its passphrase;
    for CA certificates the passphrase can be kept in the vault.
    """,
)
async def upload_certificate(
    body: CertificateUploadRequest,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    cert_pem = body.certificate_pem.encode("utf-8")
    leaf, bundled_chain = crypto_driver.split_pem_bundle(cert_pem)
    chain = (body.chain_pem.encode("utf-8") if body.chain_pem else b"") or bundled_chain
    material = Material(
        cert_pem=leaf,
        key_pem=body.private_key_pem.encode("utf-8") if body.private_key_pem else None,
        chain_pem=chain or None,
        key_passphrase=body.passphrase,
    )
    record = await asyncio.to_thread(services.store.put_new, material, body.name)
    if body.passphrase and record.is_ca and record.needs_passphrase:
        services.vault.set(record.fingerprint, body.passphrase, persist=body.store_passphrase, cert_type=record.cert_type)
    _publish_updated(services, record, "imported", principal)
    return {"success": True, "certificate": record.to_api(), "fingerprint": record.fingerprint}


@router.delete(
    "/certificate/{identifier}",
    summary="Delete Certificate",
    description="""
    Delete a certificate with its live material and all backups.

    Discovery error records (`err-...` ids) are removed and their file is
    ignored by later scans.
    """,
)
async def delete_certificate(
    identifier: str,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    if identifier.startswith("err-"):
        deleted = await asyncio.to_thread(services.store.delete, identifier)
        return {"success": True, "deleted": deleted}

    fingerprint = resolve_identifier(services, identifier, request)
    job = services.engine.latest_job(fingerprint)
    if job is not None and job.state.is_active:
        raise ConflictError(
            f"A renewal is {job.state.value}",
            suggestion="Cancel the renewal before deleting",
            job_id=job.job_id,
        )
    record = services.store.get(fingerprint)
    await asyncio.to_thread(services.store.delete, fingerprint)
    services.vault.delete(fingerprint)
    services.engine.forget(fingerprint)
    services.bus.publish(
        Topic.CERTIFICATE_DELETED, {"fingerprint": fingerprint, "name": record.name, "principal": principal}
    )
    return {"success": True, "deleted": fingerprint}


@router.post(
    "/certificate/{identifier}/renew",
    summary="Renew Certificate",
    description="""
    Queue a manual renewal and wait for it to settle.

    **Responses:**
    - 200 with the new record on success
    - 202 `PassphraseRequired` while the job waits for a CA passphrase
    - 202 `queued` when the wait timed out or `wait=false`
    - error kind and status on failure
    """,
)
async def renew_certificate(
    identifier: str,
    request: Request,
    body: Optional[RenewRequest] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    body = body or RenewRequest()
    fingerprint = resolve_identifier(services, identifier, request)
    job = await services.engine.enqueue(fingerprint, RenewalTrigger.MANUAL, passphrase=body.passphrase)
    if body.wait:
        job = await services.engine.wait_for_settle(job.job_id, services.settings.request_wait_timeout)
    return _job_response(services, job)


@router.post(
    "/certificate/{identifier}/config",
    summary="Update Renewal and Deploy Config",
    description="""
    Update a certificate's renewal settings and deploy actions.

    Unset fields keep their values. `deployActions` replaces the whole list;
    each action is tagged by `type` (copy, docker_restart, command, webhook).
    """,
)
async def update_config(
    identifier: str,
    body: CertificateConfigUpdate,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    config = body.apply_to(record.config)
    if config.ca_fingerprint:
        ca = services.store.get(config.ca_fingerprint)
        if not ca.is_ca:
            raise InvalidRequestError(f"'{ca.name}' is not a CA certificate")
        if ca.fingerprint == fingerprint:
            raise InvalidRequestError("A certificate cannot be its own signing CA")
        config = config.model_copy(update={"ca_fingerprint": ca.fingerprint})
    if config.sign_with_ca and not config.ca_fingerprint:
        raise InvalidRequestError("caFingerprint is required when signWithCA is set")
    record = await asyncio.to_thread(services.store.update_config, fingerprint, config)
    _publish_updated(services, record, "config_updated", principal)
    return {"success": True, "certificate": record.to_api()}


def _parse_domain_changes(body: UpdateDomainsRequest) -> DomainChanges:
    try:
        add_domains, add_ips = split_san_entries(body.add_domains)
    except ValueError as e:
        raise InvalidDomainError(str(e), suggestion="Use valid DNS names or IP addresses")
    remove = []
    for entry in body.remove_domains:
        entry = entry.strip()
        if not entry:
            continue
        try:
            remove.append(str(ipaddress.ip_address(entry)) if is_ip_address(entry) else normalize_domain(entry))
        except ValueError as e:
            raise InvalidDomainError(str(e))
    return DomainChanges(add_domains=add_domains, add_ips=add_ips, remove=remove)


@router.post(
    "/certificate/{identifier}/update-domains",
    summary="Amend SANs",
    description="""
    Add and remove subject alternative names, then renew immediately.

    The old certificate stays live until the renewal commits; the response
    carries `newFingerprint`.
    """,
)
async def update_domains(
    identifier: str,
    body: UpdateDomainsRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    fingerprint = resolve_identifier(services, identifier, request)
    changes = _parse_domain_changes(body)
    job = await services.engine.enqueue(fingerprint, RenewalTrigger.DOMAIN_UPDATE, domain_changes=changes)
    job = await services.engine.wait_for_settle(job.job_id, services.settings.request_wait_timeout)
    return _job_response(services, job)


@router.get("/certificate/{identifier}/passphrase", summary="Check CA Passphrase")
async def get_passphrase_status(
    identifier: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    """Whether a passphrase is held for the record; never returns the passphrase."""
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    return {
        "success": True,
        "hasPassphrase": services.vault.has(fingerprint),
        "persistent": services.vault.is_persistent(fingerprint),
        "needsPassphrase": record.needs_passphrase,
        "waiting": services.vault.is_waiting(fingerprint),
    }


@router.post(
    "/certificate/{identifier}/passphrase",
    summary="Set CA Passphrase",
    description="""
    Store a CA key passphrase, memory-only or encrypted at rest (`persist`).

    Renewals waiting for this passphrase resume immediately.
    """,
)
async def set_passphrase(
    identifier: str,
    body: PassphraseRequest,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    if not record.is_ca:
        raise InvalidRequestError(
            "Passphrases are only stored for CA certificates",
            suggestion="Provide the passphrase with the renew request instead",
        )
    if record.key_path and record.needs_passphrase:
        material = await asyncio.to_thread(services.store.read_material, fingerprint)
        try:
            await asyncio.to_thread(crypto_driver.load_private_key, material.key_pem, body.passphrase)
        except CryptoError:
            raise CryptoError("Incorrect passphrase for this CA key", suggestion="Check the passphrase and retry")

    resumed = services.vault.is_waiting(fingerprint)
    services.vault.set(fingerprint, body.passphrase, persist=body.persist, cert_type=record.cert_type)
    _publish_updated(services, record, "passphrase_set", principal)
    return {
        "success": True,
        "hasPassphrase": True,
        "persistent": body.persist,
        "resumed": resumed,
    }


@router.delete("/certificate/{identifier}/passphrase", summary="Clear CA Passphrase")
async def delete_passphrase(
    identifier: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    deleted = services.vault.delete(fingerprint)
    return {"success": True, "hasPassphrase": False, "deleted": deleted}


@router.get("/certificate/{identifier}/backups", summary="List Backups")
async def list_backups(identifier: str, request: Request, services: Services = Depends(get_services)) -> dict:
    """Previous versions, most recent first."""
    fingerprint = resolve_identifier(services, identifier, request)
    backups = services.store.list_backups(fingerprint)
    return {"success": True, "backups": [b.model_dump(mode="json") for b in backups]}


@router.delete("/certificate/{identifier}/backups/{backup_id}", summary="Delete Backup")
async def delete_backup(
    identifier: str, backup_id: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = await asyncio.to_thread(services.store.delete_backup, fingerprint, backup_id)
    return {"success": True, "backups": [b.model_dump(mode="json") for b in record.previous_versions]}


@router.post(
    "/certificate/{identifier}/restore",
    summary="Restore Backup",
    description="""
    Make a backup live again. The current version becomes a new backup and
    the record's fingerprint changes to the restored certificate's.
    """,
)
async def restore_backup(
    identifier: str,
    body: RestoreRequest,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = await services.engine.restore_backup(fingerprint, body.backup_id)
    services.bus.publish(
        Topic.CERTIFICATE_UPDATED,
        {
            "fingerprint": record.fingerprint,
            "old_fingerprint": fingerprint,
            "name": record.name,
            "action": "restored",
            "backup_id": body.backup_id,
            "principal": principal,
        },
    )
    return {
        "success": True,
        "certificate": record.to_api(),
        "fingerprint": record.fingerprint,
        "newFingerprint": record.fingerprint,
    }


@router.post(
    "/certificate/{identifier}/deploy",
    summary="Run Deploy Actions",
    description="Run the certificate's deploy actions against its current live material.",
)
async def deploy_certificate(
    identifier: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    if not record.config.deploy_actions:
        raise InvalidRequestError("No deploy actions configured", suggestion="Add deploy actions with /config")
    deployment = await services.pipeline.run(record)
    services.bus.publish(
        Topic.DEPLOYMENT_COMPLETED,
        {
            "fingerprint": record.fingerprint,
            "name": record.name,
            "ok": deployment.ok,
            "actions": [{"index": a.index, "type": a.type, "ok": a.ok, "error_kind": a.error_kind} for a in deployment.actions],
        },
    )
    return {"success": deployment.ok, "deployment": deployment.model_dump(mode="json")}


@router.get("/certificate/{identifier}/verify-key-match", summary="Verify Key Matches Certificate")
async def verify_key_match(
    identifier: str, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    if not record.key_path:
        return {"success": True, "matches": False, "message": "No private key stored"}
    material = await asyncio.to_thread(services.store.read_material, fingerprint)
    passphrase = None
    if record.needs_passphrase:
        try:
            passphrase = services.vault.get(fingerprint)
        except PassphraseNotFoundError:
            raise PassphraseRequiredError(
                "The private key is encrypted and no passphrase is stored",
                suggestion="Set the passphrase first",
                fingerprint=fingerprint,
            )
    matches = await asyncio.to_thread(crypto_driver.key_matches, material.cert_pem, material.key_pem, passphrase)
    return {"success": True, "matches": matches}


@router.post("/certificate/{identifier}/cancel", summary="Cancel Renewal")
async def cancel_renewal(identifier: str, services: Services = Depends(get_services)) -> dict:
    """Deliver the cancel signal to the record's active renewal."""
    job = await services.engine.cancel(identifier)
    return {"success": True, "job": job.model_dump(mode="json")}


@router.get("/certificate/{identifier}/renewal", summary="Renewal Status")
async def renewal_status(identifier: str, services: Services = Depends(get_services)) -> dict:
    job = services.engine.latest_job(identifier)
    return {
        "success": True,
        "state": job.state.value if job else RenewalState.IDLE.value,
        "job": job.model_dump(mode="json") if job else None,
    }


@router.get(
    "/ca",
    summary="List CA Certificates",
    description="List the root and intermediate CAs available for signing, with their passphrase status.",
)
async def list_cas(services: Services = Depends(get_services)) -> dict:
    records = await asyncio.to_thread(services.store.list_records)
    cas = []
    for record in records:
        if not record.is_ca:
            continue
        entry = record.to_api()
        entry["hasPassphrase"] = services.vault.has(record.fingerprint)
        cas.append(entry)
    return {"success": True, "certificates": cas, "total": len(cas)}


# ----------------------------------------------------------------------
# Downloads
# ----------------------------------------------------------------------


def _download_response(export: cert_export.ExportFile) -> Response:
    return Response(content=export.content, media_type=export.media_type, headers=export.headers)


@router.get(
    "/certificate/{identifier}/download",
    summary="Download Certificate Archive",
    description="ZIP archive of the certificate, private key, chain and full chain with a metadata.json summary.",
)
async def download_archive(identifier: str, request: Request, services: Services = Depends(get_services)) -> Response:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    material = await asyncio.to_thread(services.store.read_material, fingerprint)
    export = await asyncio.to_thread(cert_export.export_archive, record, material)
    logger.info(f"Archive download requested for '{record.name}'")
    return _download_response(export)


@router.get(
    "/certificate/{identifier}/download/{file_type}",
    summary="Download Certificate File",
    description="""
    Download one file: `cert`/`crt`, `key`, `chain`, `fullchain`, `pem`
    (certificate, chain and key) or a `p12`/`pfx` bundle.

    A bundle of an encrypted key needs the key passphrase in
    `X-Key-Passphrase` unless it is held in the vault; `X-Export-Password`
    protects the bundle.
    """,
    responses={404: {"description": "Certificate or file not found"}},
)
async def download_file(
    identifier: str,
    file_type: str,
    request: Request,
    services: Services = Depends(get_services),
    key_passphrase: Optional[str] = Header(default=None, alias="X-Key-Passphrase"),
    export_password: Optional[str] = Header(default=None, alias="X-Export-Password"),
) -> Response:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    material = await asyncio.to_thread(services.store.read_material, fingerprint)
    if key_passphrase is None and record.needs_passphrase and services.vault.has(fingerprint):
        key_passphrase = services.vault.get(fingerprint)
    export = await asyncio.to_thread(
        cert_export.export_file, record, material, file_type.lower(), key_passphrase, export_password
    )
    logger.info(f"Download requested for '{record.name}' ({file_type})")
    return _download_response(export)


# ----------------------------------------------------------------------
# Manual backups
# ----------------------------------------------------------------------


@router.post(
    "/certificate/{identifier}/backups",
    status_code=201,
    summary="Create Backup",
    description="Copy the current live material into a new backup slot. The certificate stays live.",
)
async def create_backup(
    identifier: str,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    backup = await asyncio.to_thread(services.store.create_backup, fingerprint)
    record = services.store.get(fingerprint)
    _publish_updated(services, record, "backup_created", principal)
    return {"success": True, "backup": backup.model_dump(mode="json")}


@router.get("/certificate/{identifier}/backups/{backup_id}/download", summary="Download Backup")
async def download_backup(
    identifier: str, backup_id: str, request: Request, services: Services = Depends(get_services)
) -> Response:
    """ZIP of one backup slot's files."""
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    material = await asyncio.to_thread(services.store.backup_material, fingerprint, backup_id)
    export = await asyncio.to_thread(
        cert_export.export_archive,
        record,
        material,
        f"{cert_export.safe_name(record.name)}-{backup_id}.zip",
        backupId=backup_id,
        backupFingerprint=crypto_driver.parse(material.cert_pem).fingerprint,
    )
    return _download_response(export)


# ----------------------------------------------------------------------
# Deploy actions
# ----------------------------------------------------------------------


def _actions_response(record: CertificateRecord) -> dict:
    return {
        "success": True,
        "fingerprint": record.fingerprint,
        "deployActions": [a.model_dump(mode="json") for a in record.config.deploy_actions],
    }


def _check_action_index(record: CertificateRecord, index: int) -> None:
    if not 0 <= index < len(record.config.deploy_actions):
        raise DeployActionNotFoundError(
            f"Deploy action {index} not found for '{record.name}'",
            index=index,
            count=len(record.config.deploy_actions),
        )


async def _save_actions(
    services: Services, record: CertificateRecord, actions: list, action: str, principal: Optional[str]
) -> CertificateRecord:
    config = record.config.model_copy(update={"deploy_actions": actions})
    record = await asyncio.to_thread(services.store.update_config, record.fingerprint, config)
    _publish_updated(services, record, action, principal)
    return record


@router.get("/certificate/{identifier}/deploy-actions", summary="List Deploy Actions")
async def list_deploy_actions(identifier: str, request: Request, services: Services = Depends(get_services)) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    return _actions_response(services.store.get(fingerprint))


@router.post(
    "/certificate/{identifier}/deploy-actions",
    status_code=201,
    summary="Add Deploy Action",
    description="Add one deploy action, appended or inserted at `position`.",
)
async def add_deploy_action(
    identifier: str,
    body: DeployActionRequest,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    actions = list(record.config.deploy_actions)
    position = len(actions) if body.position is None else min(body.position, len(actions))
    actions.insert(position, body.action)
    record = await _save_actions(services, record, actions, "deploy_action_added", principal)
    return {**_actions_response(record), "index": position}


@router.put("/certificate/{identifier}/deploy-actions/{index}", summary="Replace Deploy Action")
async def update_deploy_action(
    identifier: str,
    index: int,
    body: DeployActionRequest,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    _check_action_index(record, index)
    actions = list(record.config.deploy_actions)
    actions[index] = body.action
    record = await _save_actions(services, record, actions, "deploy_action_updated", principal)
    return _actions_response(record)


@router.delete("/certificate/{identifier}/deploy-actions/{index}", summary="Delete Deploy Action")
async def delete_deploy_action(
    identifier: str,
    index: int,
    request: Request,
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    _check_action_index(record, index)
    actions = list(record.config.deploy_actions)
    del actions[index]
    record = await _save_actions(services, record, actions, "deploy_action_deleted", principal)
    return _actions_response(record)


@router.post(
    "/certificate/{identifier}/deploy-actions/{index}/test",
    summary="Test Deploy Action",
    description="Run one configured deploy action against the current live material.",
)
async def try_deploy_action(
    identifier: str, index: int, request: Request, services: Services = Depends(get_services)
) -> dict:
    fingerprint = resolve_identifier(services, identifier, request)
    record = services.store.get(fingerprint)
    result = await services.pipeline.run_one(record, index)
    return {"success": result.ok, "result": result.model_dump(mode="json")}
