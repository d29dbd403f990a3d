"""System Transparency manager.

This package provides tools for System Transparency OS packages,
including:
- OS package creation (kernel, initramfs, command line)
- ED25519 signing of package descriptors
- Threshold verification against trusted root certificates
- Signing certificate issuance
- Host configuration provisioning
"""

__version__ = "0.1.0"

from .descriptor import Descriptor, SignatureEntry
from .keygen import issue_certificate, load_signing_material
from .ospkg import OSPackageBuilder, create_package, load_package
from .sign import OSPackageSigner, sign_package
from .verify import SignatureVerifier, VerificationResult, verify_descriptor, verify_package

__all__ = [
    "Descriptor",
    "SignatureEntry",
    "issue_certificate",
    "load_signing_material",
    "OSPackageBuilder",
    "create_package",
    "load_package",
    "OSPackageSigner",
    "sign_package",
    "SignatureVerifier",
    "VerificationResult",
    "verify_descriptor",
    "verify_package",
]
