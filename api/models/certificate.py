"""
Certificate models for certificate lifecycle management.

Provides Pydantic models for certificate records, renewal and deployment
configuration, backups, and API request validation.
"""

import ipaddress
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

DOMAIN_PATTERN = re.compile(r"^(\*\.)?([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertType(str, Enum):
    """Role of a certificate in its chain."""

    ROOT_CA = "rootCA"
    INTERMEDIATE_CA = "intermediateCA"
    STANDARD = "standard"

    @property
    def is_ca(self) -> bool:
        return self is not CertType.STANDARD


class ChallengeType(str, Enum):
    """ACME challenge used for renewal; NONE means no ACME."""

    HTTP = "http"
    DNS = "dns"
    STANDALONE = "standalone"
    NONE = "none"


class KeyType(str, Enum):
    RSA = "rsa"
    ECDSA = "ecdsa"


def is_ip_address(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def normalize_domain(value: str) -> str:
    """
    Validate and normalize a DNS name.

    Raises:
        ValueError: If the value is not a valid hostname
    """
    v = value.strip().lower().rstrip(".")
    if not v or len(v) > 253:
        raise ValueError(f"Invalid domain format: {value!r}")
    if ".." in v:
        raise ValueError(f"Domain cannot contain consecutive dots: {value!r}")
    if not DOMAIN_PATTERN.match(v):
        raise ValueError(f"Invalid domain format: {value!r}")
    return v


def split_san_entries(entries: list[str]) -> tuple[list[str], list[str]]:
    """
    Split mixed SAN entries into (domains, ips), validating each.

    Duplicates are dropped while preserving first-seen order.

    Raises:
        ValueError: If an entry is neither a valid hostname nor an IP address
    """
    domains: list[str] = []
    ips: list[str] = []
    for raw in entries:
        entry = raw.strip()
        if not entry:
            continue
        if is_ip_address(entry):
            ip = str(ipaddress.ip_address(entry))
            if ip not in ips:
                ips.append(ip)
        else:
            domain = normalize_domain(entry)
            if domain not in domains:
                domains.append(domain)
    return domains, ips


class SubjectAltNames(BaseModel):
    """Subject Alternative Names split by kind."""

    domains: list[str] = Field(default_factory=list, description="DNS names")
    ips: list[str] = Field(default_factory=list, description="IP addresses")

    @property
    def all(self) -> list[str]:
        return [*self.domains, *self.ips]


# Deployment actions

class CopyAction(BaseModel):
    """Copy live cert/key/chain to a destination directory or base name."""

    type: Literal["copy"] = "copy"
    destination: str = Field(..., min_length=1, description="Directory (trailing '/') or base file name")


class DockerRestartAction(BaseModel):
    """Restart a container after deployment."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["docker_restart"] = "docker_restart"
    container_id: str | None = Field(None, validation_alias=AliasChoices("container_id", "containerId"))
    container_name: str | None = Field(None, validation_alias=AliasChoices("container_name", "containerName"))

    @model_validator(mode="after")
    def require_container_ref(self) -> "DockerRestartAction":
        if not (self.container_id or self.container_name):
            raise ValueError("docker_restart requires container_id or container_name")
        return self

    @property
    def container_ref(self) -> str:
        return self.container_id or self.container_name or ""


class CommandAction(BaseModel):
    """Run a shell command line with placeholder substitution."""

    type: Literal["command"] = "command"
    command: str = Field(..., min_length=1, description="Shell command line")


class WebhookAction(BaseModel):
    """Notify an HTTP endpoint that a certificate was deployed."""

    type: Literal["webhook"] = "webhook"
    url: str = Field(..., pattern=r"^https?://", description="Webhook URL")
    method: Literal["POST", "PUT"] = Field(default="POST")
    headers: dict[str, str] = Field(default_factory=dict)


DeployAction = Annotated[
    CopyAction | DockerRestartAction | CommandAction | WebhookAction,
    Field(discriminator="type"),
]


class CertificateConfig(BaseModel):
    """Renewal and deployment configuration nested in a record."""

    model_config = ConfigDict(populate_by_name=True)

    auto_renew: bool = Field(default=True, validation_alias=AliasChoices("auto_renew", "autoRenew"))
    renew_days_before_expiry: int = Field(
        default=30,
        ge=1,
        le=90,
        validation_alias=AliasChoices("renew_days_before_expiry", "renewDaysBeforeExpiry"),
    )
    sign_with_ca: bool = Field(default=False, validation_alias=AliasChoices("sign_with_ca", "signWithCa", "signWithCA"))
    ca_fingerprint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ca_fingerprint", "caFingerprint"),
        description="Signing CA (weak reference by fingerprint)",
    )
    challenge_type: ChallengeType = Field(
        default=ChallengeType.NONE, validation_alias=AliasChoices("challenge_type", "challengeType")
    )
    acme_email: str | None = Field(default=None, validation_alias=AliasChoices("acme_email", "acmeEmail"))
    rekey: bool = Field(default=False, description="Generate a fresh key on self-signed/CA renewal")
    deploy_actions: list[DeployAction] = Field(
        default_factory=list, validation_alias=AliasChoices("deploy_actions", "deployActions")
    )


class CertificateConfigUpdate(BaseModel):
    """Partial config update; unset fields keep their current values."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    auto_renew: bool | None = Field(default=None, validation_alias=AliasChoices("auto_renew", "autoRenew"))
    renew_days_before_expiry: int | None = Field(
        default=None,
        ge=1,
        le=90,
        validation_alias=AliasChoices("renew_days_before_expiry", "renewDaysBeforeExpiry"),
    )
    sign_with_ca: bool | None = Field(
        default=None, validation_alias=AliasChoices("sign_with_ca", "signWithCa", "signWithCA")
    )
    ca_fingerprint: str | None = Field(default=None, validation_alias=AliasChoices("ca_fingerprint", "caFingerprint"))
    challenge_type: ChallengeType | None = Field(
        default=None, validation_alias=AliasChoices("challenge_type", "challengeType")
    )
    acme_email: str | None = Field(default=None, validation_alias=AliasChoices("acme_email", "acmeEmail"))
    rekey: bool | None = None
    deploy_actions: list[DeployAction] | None = Field(
        default=None, validation_alias=AliasChoices("deploy_actions", "deployActions")
    )

    def apply_to(self, config: CertificateConfig) -> CertificateConfig:
        """Return a new config with the set fields merged in."""
        changes = self.model_dump(exclude_unset=True)
        if "deploy_actions" in changes:
            changes["deploy_actions"] = self.deploy_actions
        return config.model_copy(update=changes)


class BackupRecord(BaseModel):
    """Summary of one backup slot (a prior live version)."""

    id: str = Field(..., description="Backup slot identifier (directory name)")
    fingerprint: str
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    renewed_at: datetime
    backup_cert_path: str
    backup_key_path: str | None = None


class CertificateRecord(BaseModel):
    """
    A certificate managed by the store.

    The fingerprint is the SHA-256 of the DER of the live certificate file.
    """

    fingerprint: str = Field(..., description="SHA-256 of the DER certificate, lowercase hex")
    name: str = Field(..., description="Operator-chosen unique name")
    cert_type: CertType = Field(default=CertType.STANDARD)

    subject: str = ""
    issuer: str = ""
    serial: str = ""
    sans: SubjectAltNames = Field(default_factory=SubjectAltNames)
    valid_from: datetime
    valid_to: datetime

    cert_path: str
    key_path: str | None = None
    chain_path: str | None = None
    key_algorithm: str | None = Field(None, description="e.g. rsa(2048) or ecdsa(secp256r1)")
    key_length: int | None = None

    issuer_fingerprint: str | None = Field(None, description="Issuer record in this store (weak reference)")
    config: CertificateConfig = Field(default_factory=CertificateConfig)
    previous_versions: list[BackupRecord] = Field(default_factory=list, description="Most recent first")
    needs_passphrase: bool = False

    source_path: str | None = Field(None, description="Discovered file this record was imported from")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_ca(self) -> bool:
        return self.cert_type.is_ca

    @property
    def days_until_expiry(self) -> int:
        return (self.valid_to - utcnow()).days

    @property
    def is_expired(self) -> bool:
        return utcnow() > self.valid_to

    def is_due(self, now: datetime | None = None) -> bool:
        """True when the renewal window (renew_days_before_expiry) has opened."""
        now = now or utcnow()
        return (self.valid_to - now).total_seconds() <= self.config.renew_days_before_expiry * 86400

    def to_api(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["days_until_expiry"] = self.days_until_expiry
        data["is_ca"] = self.is_ca
        return data


class ErrorRecord(BaseModel):
    """A discovered file that could not be parsed; only deletion is supported."""

    id: str
    path: str
    message: str
    discovered_at: datetime = Field(default_factory=utcnow)
    is_error: bool = True


# Request Models

class SubjectFields(BaseModel):
    """Optional distinguished-name attributes."""

    model_config = ConfigDict(populate_by_name=True)

    common_name: str | None = Field(None, validation_alias=AliasChoices("common_name", "commonName"))
    organization: str | None = None
    organizational_unit: str | None = Field(
        None, validation_alias=AliasChoices("organizational_unit", "organizationalUnit")
    )
    country: str | None = Field(None, min_length=2, max_length=2)
    state: str | None = None
    locality: str | None = None
    email: str | None = None


class CertificateCreateRequest(SubjectFields):
    """Request to create a certificate (self-signed, CA-signed or ACME)."""

    name: str | None = Field(None, max_length=128, description="Defaults to the first domain or common name")
    domains: list[str] = Field(default_factory=list, max_length=100, description="SAN entries (DNS names or IPs)")
    cert_type: CertType = Field(default=CertType.STANDARD, validation_alias=AliasChoices("cert_type", "certType"))
    key_type: KeyType = Field(default=KeyType.RSA, validation_alias=AliasChoices("key_type", "keyType"))
    key_size: int = Field(
        default=2048,
        validation_alias=AliasChoices("key_size", "keySize"),
        description="RSA bits, or 256/384/521 for ECDSA curves",
    )
    validity_days: int | None = Field(
        None, ge=1, le=36500, validation_alias=AliasChoices("validity_days", "validityDays", "days")
    )
    auto_renew: bool | None = Field(None, validation_alias=AliasChoices("auto_renew", "autoRenew"))
    sign_with_ca: bool = Field(default=False, validation_alias=AliasChoices("sign_with_ca", "signWithCa", "signWithCA"))
    ca_fingerprint: str | None = Field(None, validation_alias=AliasChoices("ca_fingerprint", "caFingerprint"))
    challenge_type: ChallengeType = Field(
        default=ChallengeType.NONE, validation_alias=AliasChoices("challenge_type", "challengeType")
    )
    passphrase: str | None = Field(None, description="Encrypts the private key (CA certificates)")
    store_passphrase: bool = Field(
        default=False, validation_alias=AliasChoices("store_passphrase", "storePassphrase")
    )
    deploy_actions: list[DeployAction] = Field(
        default_factory=list, validation_alias=AliasChoices("deploy_actions", "deployActions")
    )

    @field_validator("key_size")
    @classmethod
    def validate_key_size(cls, v: int) -> int:
        if v not in (256, 384, 521, 2048, 3072, 4096):
            raise ValueError(f"Unsupported key size: {v}")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "CertificateCreateRequest":
        if self.key_type == KeyType.ECDSA and self.key_size not in (256, 384, 521):
            self.key_size = 256
        if self.key_type == KeyType.RSA and self.key_size < 2048:
            raise ValueError("RSA keys must be at least 2048 bits")
        if not self.domains and not self.common_name and not self.name:
            raise ValueError("At least one domain, a common name or a name is required")
        if self.sign_with_ca and not self.ca_fingerprint:
            raise ValueError("ca_fingerprint is required when sign_with_ca is set")
        if self.challenge_type != ChallengeType.NONE and not self.domains:
            raise ValueError("ACME issuance requires at least one domain")
        return self


class CertificateUploadRequest(BaseModel):
    """Request to import an existing certificate."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(None, max_length=128)
    certificate_pem: str = Field(
        ..., min_length=100, validation_alias=AliasChoices("certificate_pem", "certificate", "cert")
    )
    private_key_pem: str | None = Field(
        None, validation_alias=AliasChoices("private_key_pem", "privateKey", "key")
    )
    chain_pem: str | None = Field(None, validation_alias=AliasChoices("chain_pem", "chain"))
    passphrase: str | None = None
    store_passphrase: bool = Field(
        default=False, validation_alias=AliasChoices("store_passphrase", "storePassphrase")
    )

    @field_validator("certificate_pem")
    @classmethod
    def validate_certificate_pem(cls, v: str) -> str:
        """Validate certificate PEM format."""
        v = v.strip()
        if not v.startswith("-----BEGIN CERTIFICATE-----"):
            raise ValueError("Certificate must be in PEM format")
        if "-----END CERTIFICATE-----" not in v:
            raise ValueError("Invalid certificate PEM format")
        return v + "\n"

    @field_validator("private_key_pem")
    @classmethod
    def validate_private_key_pem(cls, v: str | None) -> str | None:
        """Validate private key PEM format."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not (v.startswith("-----BEGIN") and "PRIVATE KEY-----" in v.splitlines()[0]):
            raise ValueError("Private key must be in PEM format")
        return v + "\n"


class UpdateDomainsRequest(BaseModel):
    """Stage SAN additions/removals and renew."""

    model_config = ConfigDict(populate_by_name=True)

    add_domains: list[str] = Field(default_factory=list, validation_alias=AliasChoices("add_domains", "addDomains", "add"))
    remove_domains: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("remove_domains", "removeDomains", "remove")
    )

    @model_validator(mode="after")
    def require_change(self) -> "UpdateDomainsRequest":
        if not self.add_domains and not self.remove_domains:
            raise ValueError("addDomains or removeDomains must be non-empty")
        return self


class PassphraseRequest(BaseModel):
    """Set a CA passphrase."""

    passphrase: str = Field(..., min_length=1)
    persist: bool = Field(default=False, validation_alias=AliasChoices("persist", "persistent", "storePassphrase"))


class RestoreRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_id: str = Field(..., validation_alias=AliasChoices("backup_id", "backupId"))


class RenewRequest(BaseModel):
    """Optional body for manual renewal."""

    passphrase: str | None = Field(None, description="Key or CA passphrase held for this renewal only")
    wait: bool = Field(default=True, description="Wait for the job to settle before responding")


class DeployActionRequest(BaseModel):
    """Add or replace one deploy action."""

    action: DeployAction
    position: int | None = Field(None, ge=0, description="Insert position when adding; appended when omitted")
