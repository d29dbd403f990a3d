"""Pytest configuration and fixtures for stmgr tests."""

import os
import tempfile
from pathlib import Path
from typing import Generator, Tuple

import pytest

from stmgr.keygen import issue_certificate
from stmgr.ospkg import create_package


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_kernel() -> bytes:
    """Ten byte kernel image."""
    return b"KERNEL\x00\x01\x02\x03"


@pytest.fixture
def sample_initramfs() -> bytes:
    """Sample initramfs image."""
    return b"070701" + os.urandom(2048)


@pytest.fixture
def kernel_file(temp_dir: Path, sample_kernel: bytes) -> Path:
    """Create a kernel file on disk."""
    path = temp_dir / "vmlinuz"
    path.write_bytes(sample_kernel)
    return path


@pytest.fixture
def initramfs_file(temp_dir: Path, sample_initramfs: bytes) -> Path:
    """Create an initramfs file on disk."""
    path = temp_dir / "initramfs.cpio.gz"
    path.write_bytes(sample_initramfs)
    return path


@pytest.fixture
def root_material(temp_dir: Path) -> Tuple[Path, Path]:
    """Issue a self-signed root certificate and key."""
    return issue_certificate(
        is_ca=True,
        cert_out=temp_dir / "rootcert.pem",
        key_out=temp_dir / "rootkey.pem",
    )


@pytest.fixture
def leaf_material(temp_dir: Path, root_material: Tuple[Path, Path]) -> Tuple[Path, Path]:
    """Issue a signing certificate and key under the root."""
    root_cert, root_key = root_material
    return issue_certificate(
        is_ca=False,
        root_cert=root_cert,
        root_key=root_key,
        cert_out=temp_dir / "cert.pem",
        key_out=temp_dir / "key.pem",
    )


@pytest.fixture
def make_leaf(temp_dir: Path, root_material: Tuple[Path, Path]):
    """Factory issuing further signing certificates under the root."""
    root_cert, root_key = root_material

    def _make(name: str, **kwargs) -> Tuple[Path, Path]:
        return issue_certificate(
            is_ca=False,
            root_cert=root_cert,
            root_key=root_key,
            cert_out=temp_dir / f"{name}-cert.pem",
            key_out=temp_dir / f"{name}-key.pem",
            **kwargs,
        )

    return _make


@pytest.fixture
def package_files(temp_dir: Path, kernel_file: Path, initramfs_file: Path) -> Tuple[Path, Path]:
    """Create an unsigned OS package on disk."""
    return create_package(
        out=temp_dir / "ospkg",
        label=None,
        url="https://example.org/ospkg.zip",
        kernel=kernel_file,
        initramfs=initramfs_file,
        cmdline="console=ttyS0",
    )
