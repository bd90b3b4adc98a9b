"""
Error taxonomy for certificate lifecycle operations.

Every error surfaced to API clients carries a kind, an HTTP status,
a human-readable message and an optional suggestion. Messages never
contain key material or passphrases.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error kinds reported to clients."""

    NOT_FOUND = "NotFound"
    AMBIGUOUS = "Ambiguous"
    CONFLICT = "Conflict"
    INVALID_DOMAIN = "InvalidDomain"
    INVALID_REQUEST = "InvalidRequest"
    PASSPHRASE_REQUIRED = "PassphraseRequired"
    ACME_ERROR = "AcmeError"
    CRYPTO_ERROR = "CryptoError"
    IO_ERROR = "IoError"
    DOCKER_UNAVAILABLE = "DockerUnavailable"
    COMMAND_FAILED = "CommandFailed"
    CANCELLED = "Cancelled"
    INTERNAL = "InternalError"


class CertManagerError(Exception):
    """Base exception for certificate manager operations."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500

    def __init__(self, message: str, suggestion: str | None = None, **details: Any):
        self.message = message
        self.suggestion = suggestion
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Render as the API error payload."""
        payload: dict[str, Any] = {"success": False, "error": self.kind.value, "message": self.message}
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        payload.update(self.details)
        return payload


class CertificateNotFoundError(CertManagerError):
    """Unknown certificate identifier after normalization."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class PassphraseNotFoundError(CertManagerError):
    """No usable passphrase is stored for the record."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class AmbiguousIdentifierError(CertManagerError):
    """Fingerprint prefix matches more than one record."""

    kind = ErrorKind.AMBIGUOUS
    status_code = 409


class ConflictError(CertManagerError):
    """Concurrent state change invalidated the request."""

    kind = ErrorKind.CONFLICT
    status_code = 409


class InvalidDomainError(CertManagerError):
    """A SAN entry failed domain or IP validation."""

    kind = ErrorKind.INVALID_DOMAIN
    status_code = 400


class InvalidRequestError(CertManagerError):
    """Request is well-formed JSON but semantically invalid."""

    kind = ErrorKind.INVALID_REQUEST
    status_code = 400


class PassphraseRequiredError(CertManagerError):
    """A CA passphrase is needed to continue."""

    kind = ErrorKind.PASSPHRASE_REQUIRED
    status_code = 202


class AcmeError(CertManagerError):
    """ACME issuance failed."""

    kind = ErrorKind.ACME_ERROR
    status_code = 502

    TRANSPORT = "transport"
    CHALLENGE_FAILED = "challenge_failed"
    RATE_LIMITED = "rate_limited"
    ORDER_FAILED = "order_failed"
    TIMEOUT = "timeout"

    def __init__(self, message: str, sub: str = ORDER_FAILED, suggestion: str | None = None, **details: Any):
        self.sub = sub
        super().__init__(message, suggestion=suggestion, sub=sub, **details)


class CryptoError(CertManagerError):
    """Cryptographic failure or key/certificate mismatch."""

    kind = ErrorKind.CRYPTO_ERROR
    status_code = 400


class CertificateParseError(CryptoError):
    """Certificate bytes could not be parsed."""


class StorageError(CertManagerError):
    """Disk or filesystem failure."""

    kind = ErrorKind.IO_ERROR
    status_code = 500


class DockerUnavailableError(CertManagerError):
    """Docker engine cannot be reached."""

    kind = ErrorKind.DOCKER_UNAVAILABLE
    status_code = 503


class CommandFailedError(CertManagerError):
    """A deploy command or webhook returned a failure."""

    kind = ErrorKind.COMMAND_FAILED
    status_code = 500

    def __init__(self, message: str, exit_code: int | None = None, stderr: str = "", **details: Any):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message, exit=exit_code, stderr=stderr, **details)


class RenewalCancelledError(CertManagerError):
    """Renewal was cancelled by the operator."""

    kind = ErrorKind.CANCELLED
    status_code = 409


class InternalError(CertManagerError):
    """An unexpected failure that fits none of the other kinds."""

    kind = ErrorKind.INTERNAL
    status_code = 500


def classify_exception(exc: BaseException) -> CertManagerError:
    """Wrap a raw cause from a lower layer into one of the error kinds."""
    if isinstance(exc, CertManagerError):
        return exc
    if isinstance(exc, OSError):
        return StorageError(f"Filesystem error: {exc.strerror or exc}")
    if isinstance(exc, (ValueError, TypeError)):
        return CryptoError(f"Cryptographic operation failed: {exc}")
    return InternalError(f"{type(exc).__name__}: {exc}")


class CertificateMovedError(CertManagerError):
    """The identifier names a fingerprint replaced within the redirect grace period."""

    kind = ErrorKind.NOT_FOUND
    status_code = 301

    def __init__(self, new_fingerprint: str, location: str):
        self.new_fingerprint = new_fingerprint
        self.location = location
        super().__init__(f"Certificate was renewed; it is now {new_fingerprint}")

    @property
    def headers(self) -> dict[str, str]:
        return {"Location": self.location}

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "redirect": True,
            "message": self.message,
            "newFingerprint": self.new_fingerprint,
            "location": self.location,
        }


KIND_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.AMBIGUOUS: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_DOMAIN: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.PASSPHRASE_REQUIRED: 202,
    ErrorKind.ACME_ERROR: 502,
    ErrorKind.CRYPTO_ERROR: 400,
    ErrorKind.IO_ERROR: 500,
    ErrorKind.DOCKER_UNAVAILABLE: 503,
    ErrorKind.COMMAND_FAILED: 500,
    ErrorKind.CANCELLED: 409,
    ErrorKind.INTERNAL: 500,
}


def status_for_kind(kind: str | ErrorKind | None) -> int:
    """HTTP status used when a job outcome reports an error kind."""
    try:
        return KIND_STATUS[ErrorKind(kind)]
    except ValueError:
        return 500
