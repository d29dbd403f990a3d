"""OS package creation for System Transparency.

An OS package is a pair of files sharing a base name:
- <name>.zip: archive holding the kernel, optional initramfs and cmdline
- <name>.json: descriptor with metadata, content hashes and signatures
"""

import io
import json
import logging
import lzma
import struct
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from Crypto.Hash import SHA256

from .descriptor import Descriptor
from .errors import MissingKernel, StmgrError
from .fileio import DEFAULT_PACKAGE_NAME, locate_package, read_input, resolve_output, write_atomic
from .keygen import describe_certificate

logger = logging.getLogger(__name__)

ARCHIVE_VERSION = 1
LABEL_PREFIX = "System Transparency OS package"

MANIFEST_ENTRY = "manifest.json"
KERNEL_ENTRY = "boot/kernel"
INITRAMFS_ENTRY = "boot/initramfs"
CMDLINE_ENTRY = "boot/cmdline"

# zipfile failures on damaged archives, beyond BadZipFile
_ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    ValueError,
    zlib.error,
    lzma.LZMAError,
    struct.error,
    EOFError,
    OSError,
    OverflowError,
    RuntimeError,
    NotImplementedError,
)

# Fixed entry timestamp so identical inputs give identical archives
_ENTRY_DATE = (1980, 1, 1, 0, 0, 0)


def content_hash(data: bytes) -> bytes:
    """SHA-256 digest used for all descriptor hash fields."""
    return SHA256.new(data).digest()


def default_label(kernel_path: Union[str, Path]) -> str:
    return f"{LABEL_PREFIX} {Path(kernel_path).name}"


@dataclass
class ArchiveContents:
    """Files unpacked from an OS package archive."""

    kernel: bytes
    cmdline: str
    initramfs: Optional[bytes] = None
    kernel_name: str = "kernel"
    initramfs_name: Optional[str] = None


@dataclass
class OSPackage:
    """An archive and its descriptor, held in memory."""

    archive: bytes
    descriptor: Descriptor

    def write(self, archive_path: Path, descriptor_path: Path) -> None:
        write_atomic(archive_path, self.archive)
        write_atomic(descriptor_path, self.descriptor.to_json())


@dataclass
class LoadedPackage(OSPackage):
    """An OS package read from disk, remembering where it came from."""

    archive_path: Path = Path()
    descriptor_path: Path = Path()

    def save_descriptor(self) -> None:
        """Persist the descriptor; the archive is never rewritten."""
        write_atomic(self.descriptor_path, self.descriptor.to_json())


class OSPackageBuilder:
    """Builds OS packages from kernel, initramfs and command line."""

    def __init__(
        self,
        label: Optional[str] = None,
        url: Optional[str] = None,
        cmdline: str = "",
    ) -> None:
        """Initialize package builder.

        Args:
            label: Short description, defaults to one naming the kernel
            url: Location of the archive for network boot
            cmdline: Kernel command line
        """
        self.label = label
        self.url = url or None
        self.cmdline = cmdline or ""
        self._kernel: Optional[bytes] = None
        self._kernel_name: Optional[str] = None
        self._initramfs: Optional[bytes] = None
        self._initramfs_name: Optional[str] = None

    def add_kernel(self, kernel_path: Union[str, Path]) -> "OSPackageBuilder":
        """Add the kernel image.

        Raises:
            MissingKernel: If the file cannot be read
        """
        if not kernel_path:
            raise MissingKernel()
        try:
            self._kernel = Path(kernel_path).read_bytes()
        except OSError as e:
            raise MissingKernel(kernel_path) from e
        self._kernel_name = Path(kernel_path).name
        return self

    def add_initramfs(self, initramfs_path: Union[str, Path]) -> "OSPackageBuilder":
        """Add an initramfs image."""
        self._initramfs = read_input(initramfs_path, "initramfs")
        self._initramfs_name = Path(initramfs_path).name
        return self

    def build(self) -> OSPackage:
        """Build archive and unsigned descriptor.

        Archive format (ZIP):
        - manifest.json: archive version and original file names
        - boot/kernel: kernel image
        - boot/initramfs: initramfs image (if present)
        - boot/cmdline: kernel command line
        """
        if self._kernel is None:
            raise MissingKernel()

        cmdline_bytes = self.cmdline.encode()
        manifest = {
            "version": ARCHIVE_VERSION,
            "kernel": self._kernel_name,
            "initramfs": self._initramfs_name,
        }

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            self._add_to_zip(archive, MANIFEST_ENTRY, json.dumps(manifest, indent=2).encode())
            self._add_to_zip(archive, KERNEL_ENTRY, self._kernel)
            if self._initramfs is not None:
                self._add_to_zip(archive, INITRAMFS_ENTRY, self._initramfs)
            self._add_to_zip(archive, CMDLINE_ENTRY, cmdline_bytes)

        descriptor = Descriptor(
            label=self.label or default_label(self._kernel_name),
            url=self.url,
            cmdline=self.cmdline,
            kernel_hash=content_hash(self._kernel),
            initramfs_hash=content_hash(self._initramfs) if self._initramfs is not None else None,
            cmdline_hash=content_hash(cmdline_bytes),
        )

        return OSPackage(archive=buffer.getvalue(), descriptor=descriptor)

    def _add_to_zip(self, archive: zipfile.ZipFile, name: str, data: bytes) -> None:
        info = zipfile.ZipInfo(filename=name, date_time=_ENTRY_DATE)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        archive.writestr(info, data)


def create_package(
    out: Optional[Union[str, Path]],
    label: Optional[str],
    url: Optional[str],
    kernel: Optional[Union[str, Path]],
    initramfs: Optional[Union[str, Path]] = None,
    cmdline: str = "",
    default_name: str = DEFAULT_PACKAGE_NAME,
) -> Tuple[Path, Path]:
    """Build an OS package and write it to disk.

    All inputs are read before anything is written.

    Returns:
        Tuple of (archive_path, descriptor_path)
    """
    builder = OSPackageBuilder(label=label, url=url, cmdline=cmdline)
    builder.add_kernel(kernel)
    if initramfs:
        builder.add_initramfs(initramfs)
    package = builder.build()

    archive_path, descriptor_path = resolve_output(out, default_name)
    package.write(archive_path, descriptor_path)

    logger.info("created OS package %s / %s", archive_path, descriptor_path)
    return archive_path, descriptor_path


def read_archive(data: bytes) -> ArchiveContents:
    """Unpack an OS package archive.

    Raises:
        StmgrError: If the archive is not a readable OS package ZIP
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = set(archive.namelist())
            if KERNEL_ENTRY not in names:
                raise StmgrError(f"archive missing {KERNEL_ENTRY}")

            manifest = {}
            if MANIFEST_ENTRY in names:
                manifest = json.loads(archive.read(MANIFEST_ENTRY))
                if not isinstance(manifest, dict):
                    manifest = {}

            initramfs = archive.read(INITRAMFS_ENTRY) if INITRAMFS_ENTRY in names else None
            cmdline = archive.read(CMDLINE_ENTRY).decode() if CMDLINE_ENTRY in names else ""

            return ArchiveContents(
                kernel=archive.read(KERNEL_ENTRY),
                initramfs=initramfs,
                cmdline=cmdline,
                kernel_name=manifest.get("kernel") or "kernel",
                initramfs_name=manifest.get("initramfs"),
            )
    except _ARCHIVE_ERRORS as e:
        raise StmgrError(f"invalid OS package archive: {e}") from e


def load_package(path: Union[str, Path]) -> LoadedPackage:
    """Load both files of an OS package given either of them.

    Raises:
        PackageNotFound: If either file is missing
        MalformedDescriptor: If the descriptor cannot be parsed
    """
    archive_path, descriptor_path = locate_package(path)
    archive = read_input(archive_path, "OS package archive")
    descriptor = Descriptor.from_json(read_input(descriptor_path, "OS package descriptor"))

    return LoadedPackage(
        archive=archive,
        descriptor=descriptor,
        archive_path=archive_path,
        descriptor_path=descriptor_path,
    )


def package_info(path: Union[str, Path]) -> dict:
    """Collect what `ospkg show` reports about a package."""
    package = load_package(path)
    descriptor = package.descriptor
    contents = read_archive(package.archive)

    return {
        "archive": str(package.archive_path),
        "descriptor": str(package.descriptor_path),
        "version": descriptor.version,
        "label": descriptor.label,
        "url": descriptor.url,
        "cmdline": descriptor.cmdline,
        "kernel": contents.kernel_name,
        "kernel_hash": descriptor.kernel_hash.hex(),
        "initramfs": contents.initramfs_name,
        "initramfs_hash": descriptor.initramfs_hash.hex() if descriptor.initramfs_hash else None,
        "cmdline_hash": descriptor.cmdline_hash.hex(),
        "archive_size": len(package.archive),
        "signers": [describe_certificate(s.certificate) for s in descriptor.signatures],
    }
