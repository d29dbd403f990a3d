"""File helpers shared by the package builder, signer and issuer."""

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple, Union

from .errors import InputNotFound, PackageNotFound

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"
DESCRIPTOR_SUFFIX = ".json"
DEFAULT_PACKAGE_NAME = "system-transparency-os-package"

# Owner-only read/write
PRIVATE_FILE_MODE = 0o600


def write_atomic(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write a whole file or nothing.

    The data goes to a temporary file in the target directory which is
    then renamed over the destination, so readers never observe a partial
    write.

    Args:
        path: Destination file
        data: File contents
        mode: Permission bits for the new file
    """
    path = Path(path)
    directory = path.parent if str(path.parent) else Path(".")
    directory.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.debug("wrote %d bytes to %s", len(data), path)


def read_input(path: Optional[Union[str, Path]], what: str) -> bytes:
    """Read an input file completely.

    Raises:
        InputNotFound: If no path is given or the file cannot be read
    """
    if not path:
        raise InputNotFound(what)
    path = Path(path)
    try:
        return path.read_bytes()
    except OSError as e:
        raise InputNotFound(what, path) from e


def resolve_output(
    out: Optional[Union[str, Path]],
    default_name: str = DEFAULT_PACKAGE_NAME,
) -> Tuple[Path, Path]:
    """Work out archive and descriptor paths for a new OS package.

    An empty value or a directory gets the default base name. A file name
    keeps its base name, with a trailing archive or descriptor suffix
    replaced so both files share it.

    Returns:
        Tuple of (archive_path, descriptor_path)
    """
    if not out:
        base = Path(default_name)
    else:
        out_path = Path(out)
        if out_path.is_dir() or str(out).endswith(os.sep):
            base = out_path / default_name
        elif out_path.suffix in (ARCHIVE_SUFFIX, DESCRIPTOR_SUFFIX):
            base = out_path.with_suffix("")
        else:
            base = out_path

    return (
        base.with_name(base.name + ARCHIVE_SUFFIX),
        base.with_name(base.name + DESCRIPTOR_SUFFIX),
    )


def locate_package(path: Optional[Union[str, Path]]) -> Tuple[Path, Path]:
    """Find both files of an OS package given either one of them.

    Returns:
        Tuple of (archive_path, descriptor_path)

    Raises:
        PackageNotFound: If either file is missing
    """
    if not path:
        raise PackageNotFound()

    path = Path(path)
    if path.suffix in (ARCHIVE_SUFFIX, DESCRIPTOR_SUFFIX):
        base = path.with_suffix("")
    else:
        base = path

    archive_path = base.with_name(base.name + ARCHIVE_SUFFIX)
    descriptor_path = base.with_name(base.name + DESCRIPTOR_SUFFIX)

    for candidate in (archive_path, descriptor_path):
        if not candidate.is_file():
            raise PackageNotFound(candidate)

    return archive_path, descriptor_path
