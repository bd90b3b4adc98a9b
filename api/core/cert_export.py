"""
Download formats for live and backed-up certificate material.

Single files are returned as stored; PKCS#12 bundles are built on request
and ZIP archives carry every available file plus a metadata.json summary.
"""

import io
import json
import re
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from core import crypto_driver
from core.cert_store import Material
from core.errors import CertManagerError, ErrorKind, InvalidRequestError, PassphraseRequiredError
from models.certificate import CertificateRecord

PEM_MEDIA_TYPE = "application/x-pem-file"
PKCS12_MEDIA_TYPE = "application/x-pkcs12"
ZIP_MEDIA_TYPE = "application/zip"

FILE_TYPES = ("cert", "crt", "key", "chain", "fullchain", "pem", "p12", "pfx")


class ExportFileMissingError(CertManagerError):
    """The record has no material for the requested file type."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


@dataclass
class ExportFile:
    filename: str
    content: bytes
    media_type: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Disposition": f'attachment; filename="{self.filename}"'}


def safe_name(name: str) -> str:
    return re.sub(r"[^\w.-]", "_", name) or "certificate"


def _join(*parts: bytes | None) -> bytes:
    out = b""
    for part in parts:
        if not part:
            continue
        out += part if part.endswith(b"\n") else part + b"\n"
    return out


def export_file(
    record: CertificateRecord,
    material: Material,
    file_type: str,
    key_passphrase: str | None = None,
    export_password: str | None = None,
) -> ExportFile:
    """
    Render one download file.

    Args:
        record: Record the material belongs to
        material: Live or backup material
        file_type: One of FILE_TYPES
        key_passphrase: Passphrase of an encrypted key, needed for p12/pfx
        export_password: Password protecting a p12/pfx bundle

    Raises:
        InvalidRequestError: If the file type is unknown
        ExportFileMissingError: If the record has no key or chain for the type
        PassphraseRequiredError: If a p12/pfx needs an encrypted key's passphrase
    """
    base = safe_name(record.name)
    if file_type not in FILE_TYPES:
        raise InvalidRequestError(
            f"Unknown file type '{file_type}'", suggestion=f"Use one of: {', '.join(FILE_TYPES)}"
        )
    if file_type in ("cert", "crt"):
        return ExportFile(f"{base}.crt", material.cert_pem, PEM_MEDIA_TYPE)
    if file_type == "chain":
        if not material.chain_pem:
            raise ExportFileMissingError(f"'{record.name}' has no chain", file_type=file_type)
        return ExportFile(f"{base}.chain.pem", material.chain_pem, PEM_MEDIA_TYPE)
    if file_type == "fullchain":
        return ExportFile(f"{base}.fullchain.pem", _join(material.cert_pem, material.chain_pem), PEM_MEDIA_TYPE)

    if not material.key_pem:
        raise ExportFileMissingError(f"'{record.name}' has no private key", file_type=file_type)
    if file_type == "key":
        return ExportFile(f"{base}.key", material.key_pem, PEM_MEDIA_TYPE)
    if file_type == "pem":
        return ExportFile(f"{base}.pem", _join(material.cert_pem, material.chain_pem, material.key_pem), PEM_MEDIA_TYPE)

    if crypto_driver.key_is_encrypted(material.key_pem) and not key_passphrase:
        raise PassphraseRequiredError(
            f"The private key of '{record.name}' is encrypted",
            suggestion="Send the key passphrase in the X-Key-Passphrase header",
            fingerprint=record.fingerprint,
        )
    bundle = crypto_driver.build_pkcs12(
        record.name,
        material.cert_pem,
        material.key_pem,
        material.chain_pem,
        key_passphrase=key_passphrase,
        export_password=export_password,
    )
    return ExportFile(f"{base}.{file_type}", bundle, PKCS12_MEDIA_TYPE)


def _metadata(record: CertificateRecord, **extra: Any) -> bytes:
    data = {
        "name": record.name,
        "fingerprint": record.fingerprint,
        "domains": record.sans.all,
        "subject": record.subject,
        "issuer": record.issuer,
        "validFrom": record.valid_from.isoformat(),
        "validTo": record.valid_to.isoformat(),
        "createdAt": record.created_at.isoformat(),
        "exportedAt": datetime.now(timezone.utc).isoformat(),
    }
    data.update(extra)
    return json.dumps(data, indent=2).encode("utf-8")


def export_archive(
    record: CertificateRecord, material: Material, filename: str | None = None, **metadata: Any
) -> ExportFile:
    """ZIP of the certificate, key, chain and full chain that exist, plus metadata.json."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("certificate.crt", material.cert_pem)
        if material.key_pem:
            archive.writestr("private-key.key", material.key_pem)
        if material.chain_pem:
            archive.writestr("chain.pem", material.chain_pem)
            archive.writestr("fullchain.pem", _join(material.cert_pem, material.chain_pem))
        archive.writestr("metadata.json", _metadata(record, **metadata))
    filename = filename or f"{safe_name(record.name)}-certificate-files.zip"
    return ExportFile(filename, buffer.getvalue(), ZIP_MEDIA_TYPE)
