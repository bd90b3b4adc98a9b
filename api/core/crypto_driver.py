"""
Crypto driver for certificate and key operations.

The only module that handles plaintext private-key bytes. Builds CSRs,
self-signed and CA-signed certificates, parses certificate metadata and
checks key/certificate pairing using the cryptography library.
"""

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID, NameOID

from core.errors import CertificateParseError, CryptoError
from models.certificate import CertType, KeyType

logger = logging.getLogger(__name__)

EC_CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}

PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


@dataclass
class CertificateParams:
    """Parameters for building a certificate or CSR."""

    common_name: str
    domains: list[str] = field(default_factory=list)
    ips: list[str] = field(default_factory=list)
    cert_type: CertType = CertType.STANDARD
    key_type: KeyType = KeyType.RSA
    key_size: int = 2048
    validity_days: int = 90
    organization: str | None = None
    organizational_unit: str | None = None
    country: str | None = None
    state: str | None = None
    locality: str | None = None
    email: str | None = None
    # Reuse an existing subject verbatim (renewals)
    subject: x509.Name | None = None


@dataclass
class CertMetadata:
    """Parsed certificate details."""

    fingerprint: str
    subject: str
    issuer: str
    common_name: str | None
    serial: str
    domains: list[str]
    ips: list[str]
    valid_from: datetime
    valid_to: datetime
    key_algorithm: str
    key_length: int | None
    is_ca: bool
    self_issued: bool

    @property
    def cert_type(self) -> CertType:
        if not self.is_ca:
            return CertType.STANDARD
        return CertType.ROOT_CA if self.self_issued else CertType.INTERMEDIATE_CA


def _format_name(name: x509.Name) -> str:
    parts = []
    for attr in name:
        parts.append(f"{attr.oid._name}={attr.value}")
    return ", ".join(parts)


def fingerprint_of(cert: x509.Certificate) -> str:
    """SHA-256 of the DER encoding, lowercase hex without separators."""
    return cert.fingerprint(hashes.SHA256()).hex()


def load_certificate(data: bytes) -> x509.Certificate:
    """
    Load the first certificate from PEM or DER bytes.

    Raises:
        CertificateParseError: If the bytes hold no certificate
    """
    try:
        if PEM_CERT_MARKER in data:
            return x509.load_pem_x509_certificate(data[data.index(PEM_CERT_MARKER):])
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise CertificateParseError(f"Unable to parse certificate: {e}")


def split_pem_bundle(data: bytes) -> tuple[bytes, bytes]:
    """
    Split a PEM bundle into (leaf, chain).

    Returns:
        Tuple of leaf certificate PEM and the remaining chain PEM (may be empty)
    """
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise CertificateParseError(f"Unable to parse certificate bundle: {e}")
    leaf = certs[0].public_bytes(serialization.Encoding.PEM)
    chain = b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs[1:])
    return leaf, chain


def describe_public_key(public_key) -> tuple[str, int | None]:
    """Return (key_algorithm, key_length) for display, e.g. ('rsa(2048)', 2048)."""
    if isinstance(public_key, rsa.RSAPublicKey):
        return f"rsa({public_key.key_size})", public_key.key_size
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return f"ecdsa({public_key.curve.name})", public_key.curve.key_size
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        return "ed25519", 256
    if isinstance(public_key, ed448.Ed448PublicKey):
        return "ed448", 456
    return type(public_key).__name__.lower(), None


def metadata_from_certificate(cert: x509.Certificate) -> CertMetadata:
    domains: list[str] = []
    ips: list[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        domains = [name.lower() for name in san_ext.value.get_values_for_type(x509.DNSName)]
        ips = [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass

    is_ca = False
    try:
        basic = cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS)
        is_ca = bool(basic.value.ca)
    except x509.ExtensionNotFound:
        pass

    cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    common_name = str(cn_attrs[0].value) if cn_attrs else None

    try:
        key_algorithm, key_length = describe_public_key(cert.public_key())
    except (ValueError, UnsupportedAlgorithm):
        key_algorithm, key_length = "unknown", None

    return CertMetadata(
        fingerprint=fingerprint_of(cert),
        subject=_format_name(cert.subject),
        issuer=_format_name(cert.issuer),
        common_name=common_name,
        serial=format(cert.serial_number, "x"),
        domains=domains,
        ips=ips,
        valid_from=cert.not_valid_before_utc,
        valid_to=cert.not_valid_after_utc,
        key_algorithm=key_algorithm,
        key_length=key_length,
        is_ca=is_ca,
        self_issued=cert.issuer == cert.subject,
    )


def parse(source: str | Path | bytes) -> CertMetadata:
    """
    Parse a certificate file (or raw bytes) and extract metadata.

    Args:
        source: Path to a PEM/DER certificate, or its bytes

    Returns:
        CertMetadata with fingerprint, names, validity and key details

    Raises:
        CertificateParseError: If the content is not a certificate
    """
    if isinstance(source, bytes):
        data = source
    else:
        try:
            data = Path(source).read_bytes()
        except OSError as e:
            raise CertificateParseError(f"Unable to read certificate {source}: {e.strerror or e}")
    return metadata_from_certificate(load_certificate(data))


def key_is_encrypted(key_pem: bytes) -> bool:
    return b"ENCRYPTED" in key_pem.split(b"\n", 2)[0] or b"Proc-Type: 4,ENCRYPTED" in key_pem


def load_private_key(key_pem: bytes, passphrase: str | None = None):
    """
    Load a PEM private key.

    Raises:
        CryptoError: If the key is malformed, encrypted without a passphrase,
            or the passphrase is wrong
    """
    password = passphrase.encode("utf-8") if passphrase else None
    if password and not key_is_encrypted(key_pem):
        password = None
    try:
        return serialization.load_pem_private_key(key_pem, password=password)
    except TypeError:
        raise CryptoError(
            "Private key is encrypted and no passphrase was given",
            suggestion="Provide the key passphrase",
        )
    except (ValueError, UnsupportedAlgorithm):
        raise CryptoError(
            "Unable to load private key (malformed key or wrong passphrase)",
            suggestion="Check the key file and passphrase",
        )


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER, format=serialization.PublicFormat.SubjectPublicKeyInfo
    )


def key_matches(cert_pem: bytes, key_pem: bytes, passphrase: str | None = None) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM or DER certificate
        key_pem: PEM private key
        passphrase: Passphrase for an encrypted key

    Returns:
        True if the certificate's public key is the key's public half

    Raises:
        CryptoError: If the key cannot be loaded
    """
    cert = load_certificate(cert_pem)
    private_key = load_private_key(key_pem, passphrase)
    return _public_bytes(cert.public_key()) == _public_bytes(private_key.public_key())


def generate_private_key(key_type: KeyType, key_size: int):
    if key_type == KeyType.ECDSA:
        curve = EC_CURVES.get(key_size)
        if curve is None:
            raise CryptoError(f"Unsupported ECDSA key size: {key_size}", suggestion="Use 256, 384 or 521")
        return ec.generate_private_key(curve())
    if key_size < 2048:
        raise CryptoError(f"RSA key size {key_size} is too small", suggestion="Use at least 2048 bits")
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def serialize_private_key(private_key, passphrase: str | None = None) -> bytes:
    """PKCS8 PEM, encrypted with the best available algorithm when a passphrase is given."""
    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
    else:
        encryption = serialization.NoEncryption()
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )


def generate_key_pem(params: CertificateParams, passphrase: str | None = None) -> bytes:
    return serialize_private_key(generate_private_key(params.key_type, params.key_size), passphrase)


def _signing_hash(private_key):
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def build_subject(params: CertificateParams) -> x509.Name:
    if params.subject is not None:
        return params.subject
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, params.common_name)]
    optional = [
        (NameOID.ORGANIZATION_NAME, params.organization),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, params.organizational_unit),
        (NameOID.COUNTRY_NAME, params.country),
        (NameOID.STATE_OR_PROVINCE_NAME, params.state),
        (NameOID.LOCALITY_NAME, params.locality),
        (NameOID.EMAIL_ADDRESS, params.email),
    ]
    for oid, value in optional:
        if value:
            attributes.append(x509.NameAttribute(oid, value))
    return x509.Name(attributes)


def build_san(domains: list[str], ips: list[str]) -> x509.SubjectAlternativeName | None:
    names: list[x509.GeneralName] = [x509.DNSName(d) for d in domains]
    names.extend(x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips)
    if not names:
        return None
    return x509.SubjectAlternativeName(names)


def _add_profile_extensions(
    builder: x509.CertificateBuilder, cert_type: CertType, public_key
) -> x509.CertificateBuilder:
    """Extensions appropriate to the certificate type."""
    if cert_type.is_ca:
        path_length = None if cert_type == CertType.ROOT_CA else 0
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=path_length), critical=True)
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    else:
        builder = builder.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=isinstance(public_key, rsa.RSAPublicKey),
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        builder = builder.add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False,
        )
    return builder.add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)


def _validity(validity_days: int) -> tuple[datetime, datetime]:
    not_before = datetime.now(timezone.utc).replace(microsecond=0)
    return not_before, not_before + timedelta(days=validity_days)


def create_self_signed(
    params: CertificateParams,
    passphrase: str | None = None,
    key_pem: bytes | None = None,
    key_passphrase: str | None = None,
) -> tuple[bytes, bytes]:
    """
    Create a self-signed certificate.

    Args:
        params: Subject, SANs, key and validity parameters
        passphrase: Encrypts the returned private key
        key_pem: Existing key to reuse; a new key is generated when omitted
        key_passphrase: Passphrase of ``key_pem`` if it is encrypted

    Returns:
        Tuple of (certificate_pem, private_key_pem)
    """
    if key_pem is not None:
        private_key = load_private_key(key_pem, key_passphrase)
    else:
        private_key = generate_private_key(params.key_type, params.key_size)

    subject = build_subject(params)
    not_before, not_after = _validity(params.validity_days)
    public_key = private_key.public_key()

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    san = build_san(params.domains, params.ips)
    if san is not None:
        builder = builder.add_extension(san, critical=False)
    builder = _add_profile_extensions(builder, params.cert_type, public_key)
    builder = builder.add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False)

    cert = builder.sign(private_key, _signing_hash(private_key))
    logger.info(f"Created self-signed {params.cert_type.value} certificate for {params.common_name}")
    return cert.public_bytes(serialization.Encoding.PEM), serialize_private_key(private_key, passphrase)


def create_csr(params: CertificateParams, key_pem: bytes, passphrase: str | None = None) -> bytes:
    """
    Create a CSR for the given parameters, signed by ``key_pem``.

    Returns:
        PEM-encoded CSR bytes
    """
    private_key = load_private_key(key_pem, passphrase)
    builder = x509.CertificateSigningRequestBuilder().subject_name(build_subject(params))
    san = build_san(params.domains, params.ips)
    if san is not None:
        builder = builder.add_extension(san, critical=False)
    csr = builder.sign(private_key, _signing_hash(private_key))
    return csr.public_bytes(serialization.Encoding.PEM)


def sign_csr(
    csr_pem: bytes,
    ca_cert_pem: bytes,
    ca_key_pem: bytes,
    ca_passphrase: str | None,
    validity_days: int,
    cert_type: CertType = CertType.STANDARD,
) -> bytes:
    """
    Sign a CSR with a local CA.

    Args:
        csr_pem: PEM-encoded CSR
        ca_cert_pem: Issuing CA certificate
        ca_key_pem: Issuing CA private key
        ca_passphrase: Passphrase for the CA key, if encrypted
        validity_days: Validity of the issued certificate
        cert_type: Profile of the issued certificate (intermediateCA or standard)

    Returns:
        PEM-encoded certificate bytes

    Raises:
        CryptoError: If the CSR signature is invalid or the CA key does not match
    """
    try:
        csr = x509.load_pem_x509_csr(csr_pem)
    except ValueError as e:
        raise CryptoError(f"Unable to parse CSR: {e}")
    if not csr.is_signature_valid:
        raise CryptoError("CSR signature is invalid")

    ca_cert = load_certificate(ca_cert_pem)
    ca_key = load_private_key(ca_key_pem, ca_passphrase)
    if _public_bytes(ca_cert.public_key()) != _public_bytes(ca_key.public_key()):
        raise CryptoError("CA private key does not match the CA certificate")

    not_before, not_after = _validity(validity_days)
    public_key = csr.public_key()
    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_cert.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    try:
        san = csr.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        builder = builder.add_extension(san.value, critical=False)
    except x509.ExtensionNotFound:
        pass
    builder = _add_profile_extensions(builder, cert_type, public_key)
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
    )

    cert = builder.sign(ca_key, _signing_hash(ca_key))
    logger.info(f"Signed {cert_type.value} certificate for {_format_name(csr.subject)}")
    return cert.public_bytes(serialization.Encoding.PEM)


def is_issued_by(cert_pem: bytes, issuer_pem: bytes) -> bool:
    """True if ``cert_pem`` carries a valid signature from ``issuer_pem``'s key."""
    cert = load_certificate(cert_pem)
    issuer = load_certificate(issuer_pem)
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
        return True
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False


def subject_of(cert_pem: bytes) -> x509.Name:
    return load_certificate(cert_pem).subject


def build_pkcs12(
    name: str,
    cert_pem: bytes,
    key_pem: bytes,
    chain_pem: bytes | None = None,
    key_passphrase: str | None = None,
    export_password: str | None = None,
) -> bytes:
    """
    Bundle a certificate, its key and chain as PKCS#12.

    Args:
        name: Friendly name stored in the bundle
        cert_pem: Leaf certificate
        key_pem: PEM private key, possibly encrypted
        chain_pem: Intermediate and root certificates
        key_passphrase: Passphrase of an encrypted key
        export_password: Password protecting the bundle; unprotected when omitted

    Raises:
        CryptoError: If the key cannot be loaded or does not match
    """
    cert = load_certificate(cert_pem)
    private_key = load_private_key(key_pem, key_passphrase)
    if _public_bytes(cert.public_key()) != _public_bytes(private_key.public_key()):
        raise CryptoError("Private key does not match the certificate")
    try:
        cas = x509.load_pem_x509_certificates(chain_pem) if chain_pem and chain_pem.strip() else None
    except ValueError as e:
        raise CertificateParseError(f"Unable to parse certificate chain: {e}")
    if export_password:
        encryption = serialization.BestAvailableEncryption(export_password.encode("utf-8"))
    else:
        encryption = serialization.NoEncryption()
    return pkcs12.serialize_key_and_certificates(name.encode("utf-8"), private_key, cert, cas, encryption)
