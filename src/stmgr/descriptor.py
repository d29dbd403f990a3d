"""OS package descriptor and its canonical signed payload."""

import base64
import binascii
import json
import struct
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import DuplicateSignature, MalformedDescriptor, SignatureLimitExceeded
from .keygen import public_key_bytes

DESCRIPTOR_VERSION = 1
MAX_SIGNATURES = 5
HASH_SIZE = 32

# Domain separation for signatures over descriptors
PAYLOAD_MAGIC = b"STOSPKG\x00"


def _pack_field(value: Optional[bytes]) -> bytes:
    """Encode an optional field as presence flag, length and data."""
    if value is None:
        return b"\x00"
    return b"\x01" + struct.pack("<I", len(value)) + value


@dataclass
class SignatureEntry:
    """A signature over a descriptor and the certificate that made it."""

    certificate: x509.Certificate
    signature: bytes

    def to_dict(self) -> dict:
        return {
            "certificate": self.certificate.public_bytes(serialization.Encoding.PEM).decode(),
            "signature": base64.b64encode(self.signature).decode(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SignatureEntry":
        if not isinstance(data, dict):
            raise MalformedDescriptor("signature entry must be an object")
        for name in ("certificate", "signature"):
            if name not in data:
                raise MalformedDescriptor(f"signature entry missing {name!r}")
            if not isinstance(data[name], str):
                raise MalformedDescriptor(f"signature entry field {name!r} is not a string")

        try:
            certificate = x509.load_pem_x509_certificate(data["certificate"].encode())
            signature = base64.b64decode(data["signature"], validate=True)
        except (ValueError, binascii.Error) as e:
            raise MalformedDescriptor(f"invalid signature entry: {e}") from e
        return cls(certificate=certificate, signature=signature)


@dataclass
class Descriptor:
    """Metadata and signatures bound to an OS package archive.

    The hash fields are fixed when the package is built. Signatures cover
    every other field, including the hashes, so later edits to any of them
    invalidate the existing signatures.
    """

    kernel_hash: bytes
    cmdline_hash: bytes
    label: str = ""
    cmdline: str = ""
    url: Optional[str] = None
    initramfs_hash: Optional[bytes] = None
    version: int = DESCRIPTOR_VERSION
    signatures: list[SignatureEntry] = field(default_factory=list)

    def signed_payload(self) -> bytes:
        """Serialize the fields covered by signatures.

        Format:
        [8 bytes] Magic "STOSPKG\\0"
        [4 bytes] Descriptor version
        Then, in this order, each as [1 byte presence][4 bytes length][data]:
        label, url, cmdline, kernel hash, initramfs hash, cmdline hash
        """
        payload = PAYLOAD_MAGIC + struct.pack("<I", self.version)
        payload += _pack_field(self.label.encode())
        payload += _pack_field(self.url.encode() if self.url is not None else None)
        payload += _pack_field(self.cmdline.encode())
        payload += _pack_field(self.kernel_hash)
        payload += _pack_field(self.initramfs_hash)
        payload += _pack_field(self.cmdline_hash)
        return payload

    def find_signature(self, certificate: x509.Certificate) -> Optional[SignatureEntry]:
        """Return the entry made with this certificate or its key, if any."""
        key = public_key_bytes(certificate)
        for entry in self.signatures:
            if entry.certificate == certificate or public_key_bytes(entry.certificate) == key:
                return entry
        return None

    def add_signature(self, certificate: x509.Certificate, signature: bytes) -> SignatureEntry:
        """Append a signature entry.

        Raises:
            SignatureLimitExceeded: If MAX_SIGNATURES entries already exist
            DuplicateSignature: If the certificate already signed
        """
        if len(self.signatures) >= MAX_SIGNATURES:
            raise SignatureLimitExceeded(
                f"descriptor already holds the maximum of {MAX_SIGNATURES} signatures"
            )
        if self.find_signature(certificate) is not None:
            raise DuplicateSignature(
                f"descriptor is already signed by {certificate.subject.rfc4514_string()}"
            )

        entry = SignatureEntry(certificate=certificate, signature=signature)
        self.signatures.append(entry)
        return entry

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "label": self.label,
            "url": self.url,
            "cmdline": self.cmdline,
            "kernel_hash": self.kernel_hash.hex(),
            "initramfs_hash": self.initramfs_hash.hex() if self.initramfs_hash is not None else None,
            "cmdline_hash": self.cmdline_hash.hex(),
            "signatures": [entry.to_dict() for entry in self.signatures],
        }

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode() + b"\n"

    @classmethod
    def from_json(cls, data: bytes) -> "Descriptor":
        """Parse a descriptor document.

        Raises:
            MalformedDescriptor: If the document is not valid JSON, misses a
                required field or carries a field of the wrong type
        """
        try:
            doc = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedDescriptor(f"descriptor is not valid JSON: {e}") from e
        if not isinstance(doc, dict):
            raise MalformedDescriptor("descriptor must be a JSON object")

        version = doc.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            raise MalformedDescriptor("descriptor version missing or not an integer")
        if version != DESCRIPTOR_VERSION:
            raise MalformedDescriptor(f"unsupported descriptor version: {version}")

        signatures = doc.get("signatures", [])
        if not isinstance(signatures, list):
            raise MalformedDescriptor("signatures must be a list")

        return cls(
            version=version,
            label=_string(doc, "label"),
            url=_string(doc, "url", optional=True),
            cmdline=_string(doc, "cmdline"),
            kernel_hash=_hash(doc, "kernel_hash"),
            initramfs_hash=_hash(doc, "initramfs_hash", optional=True),
            cmdline_hash=_hash(doc, "cmdline_hash"),
            signatures=[SignatureEntry.from_dict(s) for s in signatures],
        )


def _string(doc: dict, name: str, optional: bool = False) -> Optional[str]:
    value = doc.get(name)
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise MalformedDescriptor(f"descriptor field {name!r} missing or not a string")
    return value


def _hash(doc: dict, name: str, optional: bool = False) -> Optional[bytes]:
    value = _string(doc, name, optional)
    if value is None:
        return None
    try:
        digest = bytes.fromhex(value)
    except ValueError as e:
        raise MalformedDescriptor(f"descriptor field {name!r} is not hex") from e
    if len(digest) != HASH_SIZE:
        raise MalformedDescriptor(
            f"descriptor field {name!r} has {len(digest)} bytes, expected {HASH_SIZE}"
        )
    return digest
