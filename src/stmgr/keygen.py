"""Certificate and key generation for signing OS packages.

Issues ED25519 key pairs with X.509 certificates, either as a self-signed
root or as a leaf signed by an existing root. Certificates and keys are
written as PEM files readable only by their owner.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.x509.oid import NameOID

from .errors import (
    InputNotFound,
    InvalidDateRange,
    KeyCertMismatch,
    MissingRootMaterial,
    StmgrError,
)
from .fileio import PRIVATE_FILE_MODE, write_atomic

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY = timedelta(hours=72)

ROOT_CERT_NAME = "rootcert.pem"
ROOT_KEY_NAME = "rootkey.pem"
LEAF_CERT_NAME = "cert.pem"
LEAF_KEY_NAME = "key.pem"

ROOT_COMMON_NAME = "System Transparency root"
LEAF_COMMON_NAME = "System Transparency signing key"
ORGANIZATION = "System Transparency"

_PROBE_MESSAGE = b"stmgr key/certificate probe"

DateInput = Union[str, datetime, None]


@dataclass
class SigningMaterial:
    """A private key together with the certificate that names its public key."""

    private_key: Ed25519PrivateKey
    certificate: x509.Certificate


def parse_date(value: DateInput, default: datetime) -> datetime:
    """Parse an RFC822 date.

    Two-digit years, missing seconds and the usual US zone names are
    accepted. A date without a known zone is taken as UTC.

    Args:
        value: Date string, datetime or None
        default: Returned when value is empty

    Returns:
        Timezone-aware datetime
    """
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError) as e:
            raise StmgrError(f"invalid RFC822 date: {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_certificate(path: Union[str, Path]) -> x509.Certificate:
    """Load a PEM certificate.

    Raises:
        InputNotFound: If the file cannot be read
        StmgrError: If the file is not a PEM certificate
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise InputNotFound("certificate", path) from e

    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise StmgrError(f"invalid certificate PEM: {path}") from e


def load_certificates(paths: Iterable[Union[str, Path]]) -> list[x509.Certificate]:
    """Load several PEM certificates, e.g. a pool of trusted roots."""
    return [load_certificate(p) for p in paths]


def _load_private_key(path: Union[str, Path]) -> Ed25519PrivateKey:
    path = Path(path)
    try:
        raw = bytearray(path.read_bytes())
    except OSError as e:
        raise InputNotFound("private key", path) from e

    try:
        key = serialization.load_pem_private_key(bytes(raw), password=None)
    except (ValueError, TypeError) as e:
        raise StmgrError(f"invalid private key PEM: {path}") from e
    finally:
        # Drop the PEM text, the parsed key object keeps its own copy
        for i in range(len(raw)):
            raw[i] = 0

    if not isinstance(key, Ed25519PrivateKey):
        raise StmgrError(f"private key is not ED25519: {path}")
    return key


def keys_match(private_key: Ed25519PrivateKey, certificate: x509.Certificate) -> bool:
    """Check that a certificate names the public half of a private key.

    A probe message is signed with the private key and verified with the
    certificate's public key.
    """
    public_key = certificate.public_key()
    if not isinstance(public_key, Ed25519PublicKey):
        return False

    signature = private_key.sign(_PROBE_MESSAGE)
    try:
        public_key.verify(signature, _PROBE_MESSAGE)
    except InvalidSignature:
        return False
    return True


@contextmanager
def load_signing_material(
    key_path: Union[str, Path],
    cert_path: Union[str, Path],
) -> Iterator[SigningMaterial]:
    """Load a private key and its certificate for the duration of a block.

    Raises:
        InputNotFound: If either file cannot be read
        KeyCertMismatch: If the certificate does not match the key
    """
    private_key = _load_private_key(key_path)
    certificate = load_certificate(cert_path)

    if not keys_match(private_key, certificate):
        raise KeyCertMismatch(
            f"certificate {cert_path} does not match private key {key_path}"
        )

    material = SigningMaterial(private_key=private_key, certificate=certificate)
    try:
        yield material
    finally:
        del material.private_key


def _name(common_name: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _key_usage(is_ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=not is_ca,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=is_ca,
        crl_sign=is_ca,
        encipher_only=False,
        decipher_only=False,
    )


def build_certificate(
    public_key: Ed25519PublicKey,
    signer: Ed25519PrivateKey,
    issuer: Optional[x509.Certificate],
    not_before: datetime,
    not_after: datetime,
    common_name: Optional[str] = None,
) -> x509.Certificate:
    """Build and sign a certificate.

    With no issuer the certificate is a self-signed root; otherwise it is
    a leaf issued by that root and signed with the root's key.
    """
    is_ca = issuer is None
    if common_name is None:
        common_name = ROOT_COMMON_NAME if is_ca else LEAF_COMMON_NAME
    subject = _name(common_name)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject if is_ca else issuer.subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=is_ca, path_length=0 if is_ca else None),
            critical=True,
        )
        .add_extension(_key_usage(is_ca), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
    )

    if not is_ca:
        builder = builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signer.public_key()),
            critical=False,
        )

    # ED25519 signatures take no separate digest
    return builder.sign(signer, None)


def _load_root(
    root_cert: Optional[Union[str, Path]],
    root_key: Optional[Union[str, Path]],
) -> SigningMaterial:
    if not root_cert or not root_key:
        raise MissingRootMaterial("root certificate and root key are required")

    try:
        certificate = load_certificate(root_cert)
        private_key = _load_private_key(root_key)
    except StmgrError as e:
        raise MissingRootMaterial(f"cannot load root material: {e}") from e

    if not keys_match(private_key, certificate):
        raise KeyCertMismatch(
            f"root certificate {root_cert} does not match root key {root_key}"
        )
    return SigningMaterial(private_key=private_key, certificate=certificate)


def issue_certificate(
    is_ca: bool,
    root_cert: Optional[Union[str, Path]] = None,
    root_key: Optional[Union[str, Path]] = None,
    valid_from: DateInput = None,
    valid_until: DateInput = None,
    cert_out: Optional[Union[str, Path]] = None,
    key_out: Optional[Union[str, Path]] = None,
    validity: timedelta = DEFAULT_VALIDITY,
    common_name: Optional[str] = None,
) -> Tuple[Path, Path]:
    """Generate a key pair and certificate and write both to disk.

    Args:
        is_ca: Create a self-signed root; root_cert/root_key are not read
        root_cert: Root certificate PEM for signing a leaf
        root_key: Root private key PEM for signing a leaf
        valid_from: Start of validity (RFC822), defaults to now
        valid_until: End of validity (RFC822), defaults to valid_from + validity
        cert_out: Certificate output path
        key_out: Private key output path
        validity: Default validity length
        common_name: Subject common name override

    Returns:
        Tuple of (certificate_path, key_path)

    Raises:
        MissingRootMaterial: Leaf requested without readable root material
        InvalidDateRange: valid_until is not after valid_from
    """
    now = datetime.now(timezone.utc)
    not_before = parse_date(valid_from, now)
    not_after = parse_date(valid_until, not_before + validity)

    if not_after <= not_before:
        raise InvalidDateRange(
            f"validUntil ({not_after.isoformat()}) must be after "
            f"validFrom ({not_before.isoformat()})"
        )

    root = None if is_ca else _load_root(root_cert, root_key)

    cert_path = Path(cert_out) if cert_out else Path(ROOT_CERT_NAME if is_ca else LEAF_CERT_NAME)
    key_path = Path(key_out) if key_out else Path(ROOT_KEY_NAME if is_ca else LEAF_KEY_NAME)

    private_key = Ed25519PrivateKey.generate()
    certificate = build_certificate(
        public_key=private_key.public_key(),
        signer=private_key if root is None else root.private_key,
        issuer=None if root is None else root.certificate,
        not_before=not_before,
        not_after=not_after,
        common_name=common_name,
    )

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    write_atomic(cert_path, certificate.public_bytes(serialization.Encoding.PEM), PRIVATE_FILE_MODE)
    write_atomic(key_path, key_pem, PRIVATE_FILE_MODE)

    logger.info(
        "issued %s certificate %s (valid %s to %s)",
        "root" if is_ca else "leaf",
        cert_path,
        not_before.isoformat(),
        not_after.isoformat(),
    )
    return cert_path, key_path


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """Hex SHA-256 fingerprint of a certificate's DER encoding."""
    return certificate.fingerprint(hashes.SHA256()).hex()


def public_key_bytes(certificate: x509.Certificate) -> bytes:
    """DER SubjectPublicKeyInfo of the key a certificate names."""
    return certificate.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def describe_certificate(certificate: x509.Certificate) -> dict:
    """Summarise a certificate for display."""
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc.isoformat(),
        "not_after": certificate.not_valid_after_utc.isoformat(),
        "fingerprint": certificate_fingerprint(certificate),
    }
