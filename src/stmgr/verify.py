"""Threshold verification of signed OS packages.

A package is trusted when at least `threshold` distinct signers hold a
certificate issued by one of the trusted roots, valid at the time of
verification, and their signatures match the descriptor. Every entry is
evaluated so the full set of valid signers can be reported.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .descriptor import Descriptor, SignatureEntry
from .errors import (
    ChainValidationFailure,
    ExpiredCertificate,
    HashMismatch,
    StmgrError,
)
from .keygen import public_key_bytes
from .ospkg import content_hash, load_package, read_archive

logger = logging.getLogger(__name__)


@dataclass
class SignatureCheck:
    """Outcome of checking one signature entry."""

    index: int
    certificate: x509.Certificate
    valid: bool = False
    duplicate: bool = False
    error: Optional[StmgrError] = None

    @property
    def details(self) -> str:
        if self.valid:
            return "valid"
        if self.duplicate:
            return "duplicate signer, not counted"
        return str(self.error) if self.error else "not checked"


@dataclass
class VerificationResult:
    """Result of verifying an OS package."""

    threshold: int
    checks: list[SignatureCheck] = field(default_factory=list)
    valid_signers: list[x509.Certificate] = field(default_factory=list)

    # Only set when the archive was checked against the descriptor
    archive_valid: Optional[bool] = None
    archive_details: str = ""

    @property
    def valid_count(self) -> int:
        return len(self.valid_signers)

    @property
    def threshold_met(self) -> bool:
        return self.valid_count >= self.threshold

    def is_valid(self) -> bool:
        """Check if the threshold is met and the archive, if checked, matches."""
        return self.threshold_met and self.archive_valid is not False


class SignatureVerifier:
    """Verifies descriptor signatures against a pool of trusted roots."""

    def __init__(
        self,
        trusted_roots: Optional[Iterable[x509.Certificate]] = None,
        threshold: int = 1,
    ) -> None:
        """Initialize verifier.

        Args:
            trusted_roots: Root certificates that anchor trust
            threshold: Number of distinct valid signers required
        """
        if threshold < 0:
            raise StmgrError(f"threshold must not be negative: {threshold}")
        self.trusted_roots = list(trusted_roots or [])
        self.threshold = threshold

    def verify(
        self,
        descriptor: Descriptor,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """Verify all signatures on a descriptor.

        Args:
            descriptor: Descriptor to verify
            now: Verification time, defaults to the current time

        Returns:
            VerificationResult with one check per signature entry
        """
        now = now or datetime.now(timezone.utc)
        payload = descriptor.signed_payload()
        result = VerificationResult(threshold=self.threshold)
        seen: set[bytes] = set()

        for index, entry in enumerate(descriptor.signatures):
            check = SignatureCheck(index=index, certificate=entry.certificate)
            result.checks.append(check)

            try:
                self._check_entry(entry, payload, now)
            except StmgrError as e:
                check.error = e
                logger.debug("signature %d rejected: %s", index, e)
                continue

            key = public_key_bytes(entry.certificate)
            if key in seen:
                check.duplicate = True
                continue

            seen.add(key)
            check.valid = True
            result.valid_signers.append(entry.certificate)

        logger.info(
            "%d of %d signatures valid, threshold %d",
            result.valid_count,
            len(descriptor.signatures),
            self.threshold,
        )
        return result

    def _check_entry(self, entry: SignatureEntry, payload: bytes, now: datetime) -> None:
        certificate = entry.certificate
        self.find_issuer(certificate, now)
        _check_validity(certificate, now)

        public_key = certificate.public_key()
        if not isinstance(public_key, Ed25519PublicKey):
            raise StmgrError("signing certificate does not hold an ED25519 key")
        try:
            public_key.verify(entry.signature, payload)
        except InvalidSignature as e:
            raise StmgrError("signature does not match descriptor") from e

    def find_issuer(self, certificate: x509.Certificate, now: datetime) -> x509.Certificate:
        """Find the trusted root that issued a certificate.

        A trusted root may also sign descriptors directly. An issuing root
        outside its validity is skipped in favour of later roots.

        Raises:
            ChainValidationFailure: If no trusted root issued it
            ExpiredCertificate: If only expired or not yet valid roots issued it
        """
        expired: Optional[ExpiredCertificate] = None

        for root in self.trusted_roots:
            if certificate == root:
                return root
            if not _is_ca(root):
                continue
            try:
                certificate.verify_directly_issued_by(root)
            except (ValueError, TypeError, InvalidSignature):
                continue
            try:
                _check_validity(root, now)
            except ExpiredCertificate as e:
                expired = expired or e
                continue
            return root

        if expired is not None:
            raise expired
        raise ChainValidationFailure(
            f"no trusted root issued {certificate.subject.rfc4514_string()}"
        )


def _is_ca(certificate: x509.Certificate) -> bool:
    try:
        constraints = certificate.extensions.get_extension_for_class(x509.BasicConstraints)
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


def _check_validity(certificate: x509.Certificate, now: datetime) -> None:
    not_before = certificate.not_valid_before_utc
    not_after = certificate.not_valid_after_utc
    if not (not_before <= now < not_after):
        raise ExpiredCertificate(
            f"certificate {certificate.subject.rfc4514_string()} valid from "
            f"{not_before.isoformat()} until {not_after.isoformat()}, "
            f"not at {now.isoformat()}"
        )


def check_archive(descriptor: Descriptor, archive: bytes) -> None:
    """Re-hash archive contents and compare with the descriptor.

    Raises:
        HashMismatch: If any content differs from its recorded hash
    """
    try:
        contents = read_archive(archive)
    except StmgrError as e:
        raise HashMismatch(f"cannot read archive: {e}") from e

    pairs = [
        ("kernel", contents.kernel, descriptor.kernel_hash),
        ("cmdline", contents.cmdline.encode(), descriptor.cmdline_hash),
    ]
    if descriptor.initramfs_hash is not None or contents.initramfs is not None:
        if descriptor.initramfs_hash is None or contents.initramfs is None:
            raise HashMismatch("initramfs presence differs between archive and descriptor")
        pairs.append(("initramfs", contents.initramfs, descriptor.initramfs_hash))

    for name, data, expected in pairs:
        if content_hash(data) != expected:
            raise HashMismatch(f"{name} hash does not match descriptor")

    if contents.cmdline != descriptor.cmdline:
        raise HashMismatch("archive cmdline differs from descriptor cmdline")


def verify_descriptor(
    descriptor: Descriptor,
    trusted_roots: Iterable[x509.Certificate],
    threshold: int,
    now: Optional[datetime] = None,
) -> Tuple[bool, list[x509.Certificate]]:
    """Verify descriptor signatures.

    Returns:
        Tuple of (threshold met, certificates of valid distinct signers)
    """
    result = SignatureVerifier(trusted_roots, threshold).verify(descriptor, now)
    return result.threshold_met, result.valid_signers


def verify_package(
    package_path: Union[str, Path],
    trusted_roots: Iterable[x509.Certificate],
    threshold: int,
    now: Optional[datetime] = None,
) -> VerificationResult:
    """Verify an OS package on disk: signatures and archive contents.

    Raises:
        PackageNotFound: If either package file is missing
        MalformedDescriptor: If the descriptor cannot be parsed
    """
    package = load_package(package_path)
    result = SignatureVerifier(trusted_roots, threshold).verify(package.descriptor, now)

    try:
        check_archive(package.descriptor, package.archive)
    except HashMismatch as e:
        result.archive_valid = False
        result.archive_details = str(e)
    else:
        result.archive_valid = True
        result.archive_details = "archive matches descriptor hashes"

    return result
