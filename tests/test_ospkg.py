"""Tests for stmgr OS package creation."""

import io
import zipfile
from pathlib import Path

import pytest
from Crypto.Hash import SHA256

from stmgr.errors import InputNotFound, MissingKernel, PackageNotFound
from stmgr.fileio import DEFAULT_PACKAGE_NAME, locate_package, resolve_output
from stmgr.ospkg import (
    CMDLINE_ENTRY,
    INITRAMFS_ENTRY,
    KERNEL_ENTRY,
    MANIFEST_ENTRY,
    OSPackageBuilder,
    create_package,
    load_package,
    package_info,
    read_archive,
)


class TestOSPackageBuilder:
    """Tests for OSPackageBuilder."""

    def test_kernel_only_package(self, kernel_file: Path, sample_kernel: bytes):
        """Test a ten byte kernel with no initramfs."""
        assert len(sample_kernel) == 10

        package = (
            OSPackageBuilder(cmdline="console=ttyS0")
            .add_kernel(kernel_file)
            .build()
        )
        descriptor = package.descriptor

        assert descriptor.kernel_hash == SHA256.new(sample_kernel).digest()
        assert descriptor.initramfs_hash is None
        assert descriptor.cmdline_hash == SHA256.new(b"console=ttyS0").digest()
        assert descriptor.label == "System Transparency OS package vmlinuz"
        assert descriptor.signatures == []

    def test_with_initramfs(self, kernel_file: Path, initramfs_file: Path, sample_initramfs: bytes):
        """Test that the initramfs is hashed and archived."""
        package = OSPackageBuilder().add_kernel(kernel_file).add_initramfs(initramfs_file).build()

        assert package.descriptor.initramfs_hash == SHA256.new(sample_initramfs).digest()
        contents = read_archive(package.archive)
        assert contents.initramfs == sample_initramfs
        assert contents.initramfs_name == "initramfs.cpio.gz"

    def test_explicit_label_and_url(self, kernel_file: Path):
        """Test label and URL pass through."""
        package = (
            OSPackageBuilder(label="my os", url="https://example.org/os.zip")
            .add_kernel(kernel_file)
            .build()
        )
        assert package.descriptor.label == "my os"
        assert package.descriptor.url == "https://example.org/os.zip"

    def test_deterministic(self, kernel_file: Path, initramfs_file: Path):
        """Test that identical inputs give identical hashes and archives."""
        def build():
            return (
                OSPackageBuilder(label="l", url="u", cmdline="quiet")
                .add_kernel(kernel_file)
                .add_initramfs(initramfs_file)
                .build()
            )

        first, second = build(), build()
        assert first.descriptor.kernel_hash == second.descriptor.kernel_hash
        assert first.descriptor.initramfs_hash == second.descriptor.initramfs_hash
        assert first.descriptor.cmdline_hash == second.descriptor.cmdline_hash
        assert first.descriptor.to_json() == second.descriptor.to_json()
        assert first.archive == second.archive

    def test_missing_kernel(self, temp_dir: Path):
        """Test that a missing kernel file fails."""
        with pytest.raises(MissingKernel):
            OSPackageBuilder().add_kernel(temp_dir / "no-kernel")

    def test_no_kernel(self):
        """Test that building without a kernel fails."""
        with pytest.raises(MissingKernel):
            OSPackageBuilder().build()

    def test_missing_initramfs(self, kernel_file: Path, temp_dir: Path):
        """Test that a named but missing initramfs fails."""
        with pytest.raises(InputNotFound):
            OSPackageBuilder().add_kernel(kernel_file).add_initramfs(temp_dir / "no-initramfs")

    def test_archive_entries(self, kernel_file: Path, initramfs_file: Path):
        """Test archive layout."""
        package = (
            OSPackageBuilder(cmdline="console=ttyS0")
            .add_kernel(kernel_file)
            .add_initramfs(initramfs_file)
            .build()
        )

        with zipfile.ZipFile(io.BytesIO(package.archive)) as archive:
            assert archive.namelist() == [MANIFEST_ENTRY, KERNEL_ENTRY, INITRAMFS_ENTRY, CMDLINE_ENTRY]
            assert archive.read(CMDLINE_ENTRY) == b"console=ttyS0"


class TestCreatePackage:
    """Tests for writing packages to disk."""

    def test_into_directory(self, temp_dir: Path, kernel_file: Path):
        """Test that a directory gets the default base name."""
        out_dir = temp_dir / "out"
        out_dir.mkdir()
        archive_path, descriptor_path = create_package(out_dir, None, None, kernel_file)

        assert archive_path == out_dir / f"{DEFAULT_PACKAGE_NAME}.zip"
        assert descriptor_path == out_dir / f"{DEFAULT_PACKAGE_NAME}.json"
        assert archive_path.is_file()
        assert descriptor_path.is_file()

    def test_file_name_extension_normalized(self, temp_dir: Path, kernel_file: Path):
        """Test that either suffix yields the same pair."""
        from_zip = create_package(temp_dir / "pkg.zip", None, None, kernel_file)
        from_json = create_package(temp_dir / "pkg.json", None, None, kernel_file)
        assert from_zip == from_json == (temp_dir / "pkg.zip", temp_dir / "pkg.json")

    def test_load_from_either_file(self, package_files):
        """Test loading via archive or descriptor."""
        archive_path, descriptor_path = package_files
        by_archive = load_package(archive_path)
        by_descriptor = load_package(descriptor_path)

        assert by_archive.descriptor == by_descriptor.descriptor
        assert by_archive.archive == archive_path.read_bytes()
        assert by_archive.descriptor.url == "https://example.org/ospkg.zip"

    def test_missing_sibling(self, package_files):
        """Test that a package with one file missing is not found."""
        archive_path, descriptor_path = package_files
        archive_path.unlink()
        with pytest.raises(PackageNotFound):
            load_package(descriptor_path)

    def test_package_info(self, package_files, sample_kernel: bytes):
        """Test the show summary."""
        info = package_info(package_files[1])
        assert info["kernel"] == "vmlinuz"
        assert info["kernel_hash"] == SHA256.new(sample_kernel).hexdigest()
        assert info["cmdline"] == "console=ttyS0"
        assert info["signers"] == []


class TestPaths:
    """Tests for package path helpers."""

    def test_resolve_default(self):
        """Test empty output path."""
        archive, descriptor = resolve_output("")
        assert archive == Path(f"{DEFAULT_PACKAGE_NAME}.zip")
        assert descriptor == Path(f"{DEFAULT_PACKAGE_NAME}.json")

    def test_resolve_plain_name(self, temp_dir: Path):
        """Test a name without suffix."""
        archive, descriptor = resolve_output(temp_dir / "myos")
        assert archive == temp_dir / "myos.zip"
        assert descriptor == temp_dir / "myos.json"

    def test_locate_without_suffix(self, package_files, temp_dir: Path):
        """Test locating a package by base name."""
        assert locate_package(temp_dir / "ospkg") == package_files

    def test_locate_nothing(self):
        """Test that an empty path is not a package."""
        with pytest.raises(PackageNotFound):
            locate_package("")
