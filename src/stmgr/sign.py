"""Signing of OS package descriptors with ED25519 keys.

Each signature covers the descriptor's canonical signed payload. Entries
are only ever appended; the archive itself is never touched.

Callers must serialize concurrent signing of the same descriptor file,
e.g. with a file lock, or one of the appends is lost.
"""

import logging
from pathlib import Path
from typing import Union

from .descriptor import Descriptor, SignatureEntry
from .keygen import SigningMaterial, load_signing_material
from .ospkg import load_package

logger = logging.getLogger(__name__)


class OSPackageSigner:
    """Adds signatures to OS package descriptors."""

    def __init__(self, material: SigningMaterial) -> None:
        """Initialize signer.

        Args:
            material: Private key and matching certificate
        """
        self.material = material

    def sign(self, descriptor: Descriptor) -> SignatureEntry:
        """Sign a descriptor and append the signature to it.

        Args:
            descriptor: Descriptor to sign, modified in place

        Returns:
            The new signature entry

        Raises:
            SignatureLimitExceeded: If the descriptor is full
            DuplicateSignature: If this certificate already signed
        """
        signature = self.material.private_key.sign(descriptor.signed_payload())
        entry = descriptor.add_signature(self.material.certificate, signature)

        logger.debug(
            "signed descriptor as %s (%d signatures)",
            self.material.certificate.subject.rfc4514_string(),
            len(descriptor.signatures),
        )
        return entry


def sign_package(
    key_path: Union[str, Path],
    cert_path: Union[str, Path],
    package_path: Union[str, Path],
) -> Path:
    """Sign an OS package on disk.

    Args:
        key_path: ED25519 private key PEM
        cert_path: Certificate PEM for that key
        package_path: Archive or descriptor file of the package

    Returns:
        Path of the updated descriptor

    Raises:
        PackageNotFound: If either package file is missing
        KeyCertMismatch: If the certificate does not match the key
        SignatureLimitExceeded: If the descriptor is full
        DuplicateSignature: If this certificate already signed
    """
    package = load_package(package_path)

    with load_signing_material(key_path, cert_path) as material:
        OSPackageSigner(material).sign(package.descriptor)

    package.save_descriptor()
    logger.info("signed OS package %s", package.descriptor_path)
    return package.descriptor_path
