"""Tests for stmgr signing."""

import json
from pathlib import Path

import pytest

from stmgr.descriptor import MAX_SIGNATURES, Descriptor
from stmgr.errors import (
    DuplicateSignature,
    KeyCertMismatch,
    PackageNotFound,
    SignatureLimitExceeded,
)
from stmgr.keygen import load_certificate, load_certificates, load_signing_material
from stmgr.sign import OSPackageSigner, sign_package
from stmgr.verify import verify_package


def _signature_count(descriptor_path: Path) -> int:
    return len(json.loads(descriptor_path.read_text())["signatures"])


class TestOSPackageSigner:
    """Tests for OSPackageSigner."""

    def test_sign_appends_entry(self, package_files, leaf_material):
        """Test that signing appends one entry with the signer's certificate."""
        descriptor = Descriptor.from_json(package_files[1].read_bytes())
        cert_path, key_path = leaf_material

        with load_signing_material(key_path, cert_path) as material:
            entry = OSPackageSigner(material).sign(descriptor)

        assert descriptor.signatures == [entry]
        assert entry.certificate == load_certificate(cert_path)
        assert len(entry.signature) == 64

    def test_signature_covers_payload(self, package_files, leaf_material):
        """Test that the signature verifies against the signed payload."""
        descriptor = Descriptor.from_json(package_files[1].read_bytes())
        cert_path, key_path = leaf_material

        with load_signing_material(key_path, cert_path) as material:
            entry = OSPackageSigner(material).sign(descriptor)

        entry.certificate.public_key().verify(entry.signature, descriptor.signed_payload())


class TestSignPackage:
    """Tests for signing packages on disk."""

    def test_sign_then_verify(self, package_files, leaf_material, root_material):
        """Test that one signature meets a threshold of one."""
        archive_path, descriptor_path = package_files
        cert_path, key_path = leaf_material

        assert sign_package(key_path, cert_path, archive_path) == descriptor_path
        assert _signature_count(descriptor_path) == 1

        result = verify_package(descriptor_path, load_certificates([root_material[0]]), 1)
        assert result.is_valid()
        assert result.valid_signers == [load_certificate(cert_path)]

    def test_archive_untouched(self, package_files, leaf_material):
        """Test that signing only rewrites the descriptor."""
        archive_path, _ = package_files
        before = archive_path.read_bytes()

        sign_package(leaf_material[1], leaf_material[0], archive_path)

        assert archive_path.read_bytes() == before

    def test_mismatch_leaves_descriptor(self, package_files, leaf_material, root_material):
        """Test that a certificate for another key adds nothing."""
        _, descriptor_path = package_files
        before = descriptor_path.read_bytes()

        with pytest.raises(KeyCertMismatch):
            sign_package(leaf_material[1], root_material[0], descriptor_path)

        assert descriptor_path.read_bytes() == before

    def test_duplicate_leaves_descriptor(self, package_files, leaf_material):
        """Test that signing twice with one certificate is rejected."""
        _, descriptor_path = package_files
        sign_package(leaf_material[1], leaf_material[0], descriptor_path)

        with pytest.raises(DuplicateSignature):
            sign_package(leaf_material[1], leaf_material[0], descriptor_path)

        assert _signature_count(descriptor_path) == 1

    def test_signature_limit(self, package_files, make_leaf):
        """Test that signing a full descriptor fails."""
        _, descriptor_path = package_files
        for i in range(MAX_SIGNATURES):
            cert_path, key_path = make_leaf(f"signer{i}")
            sign_package(key_path, cert_path, descriptor_path)

        cert_path, key_path = make_leaf("one-too-many")
        with pytest.raises(SignatureLimitExceeded):
            sign_package(key_path, cert_path, descriptor_path)

        assert _signature_count(descriptor_path) == MAX_SIGNATURES

    def test_missing_package(self, temp_dir: Path, leaf_material):
        """Test that signing a missing package fails."""
        with pytest.raises(PackageNotFound):
            sign_package(leaf_material[1], leaf_material[0], temp_dir / "missing.zip")

    def test_missing_archive_half(self, package_files, leaf_material):
        """Test that a descriptor without its archive cannot be signed."""
        archive_path, descriptor_path = package_files
        archive_path.unlink()

        with pytest.raises(PackageNotFound):
            sign_package(leaf_material[1], leaf_material[0], descriptor_path)
