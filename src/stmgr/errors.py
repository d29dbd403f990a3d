"""Error types raised by the stmgr core.

Every failure here is deterministic for a given set of inputs, so none of
them is retried. The command-line front end reports the message and exits
non-zero.
"""

from pathlib import Path
from typing import Optional, Union


class StmgrError(ValueError):
    """Base class for all stmgr failures."""


class InputNotFound(StmgrError):
    """A required input file is missing or unreadable."""

    def __init__(self, what: str, path: Optional[Union[str, Path]] = None) -> None:
        self.what = what
        self.path = Path(path) if path else None
        if self.path is None:
            super().__init__(f"{what} not provided")
        else:
            super().__init__(f"{what} not found: {self.path}")


class MissingKernel(InputNotFound):
    """The kernel file does not exist or cannot be read."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        super().__init__("kernel", path)


class PackageNotFound(InputNotFound):
    """One file of an OS package pair is missing."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        super().__init__("OS package file", path)


class InvalidDateRange(StmgrError):
    """The end of a validity window is not after its start."""


class MissingRootMaterial(StmgrError):
    """A leaf certificate was requested without a usable root key and certificate."""


class KeyCertMismatch(StmgrError):
    """The certificate's public key does not belong to the private key."""


class SignatureLimitExceeded(StmgrError):
    """The descriptor already carries the maximum number of signatures."""


class DuplicateSignature(StmgrError):
    """The descriptor already carries a signature for this certificate."""


class MalformedDescriptor(StmgrError):
    """The descriptor cannot be parsed or lacks required fields."""


class ChainValidationFailure(StmgrError):
    """No trusted root issued the signing certificate."""


class ExpiredCertificate(StmgrError):
    """The verification time lies outside the certificate's validity window."""


class HashMismatch(StmgrError):
    """An archive entry does not match the hash recorded in the descriptor."""


class InvalidHostConfig(StmgrError):
    """A host configuration value is not acceptable."""
