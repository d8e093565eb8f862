"""Tests for vmhost.crypto module."""

from __future__ import annotations

import base64
import json
import os

import pytest

from vmhost.crypto import StorageKeyEncryption, generate_data_encryption_key
from vmhost.exceptions import KeyMaterialUnreadable
from vmhost.models import KeyWrappingSecret


class TestGenerateDataEncryptionKey:
    def test_two_256_bit_hex_halves(self):
        dek = generate_data_encryption_key()
        assert dek.cipher == "AES_XTS"
        assert len(dek.key) == len(dek.key2) == 64
        int(dek.key, 16)
        int(dek.key2, 16)
        assert dek.key != dek.key2

    def test_repr_hides_material(self):
        dek = generate_data_encryption_key()
        assert dek.key not in repr(dek)
        assert "<redacted>" in repr(dek)


class TestStorageKeyEncryption:
    def test_wrap_document_shape(self, wrapping_secret):
        dek = generate_data_encryption_key()
        document = StorageKeyEncryption(wrapping_secret).wrap(dek)
        assert set(document) == {"cipher", "wrap_algorithm", "key", "auth_tag"}
        assert document["wrap_algorithm"] == "aes-256-gcm"
        assert len(base64.b64decode(document["auth_tag"])) == 16
        # key || key2 as hex text
        assert len(base64.b64decode(document["key"])) == 128

    def test_unwrap_round_trip(self, wrapping_secret):
        dek = generate_data_encryption_key()
        sealer = StorageKeyEncryption(wrapping_secret)
        assert sealer.unwrap(sealer.wrap(dek)) == dek

    def test_auth_data_is_bound(self, wrapping_secret):
        document = StorageKeyEncryption(wrapping_secret).wrap(generate_data_encryption_key())
        other = KeyWrappingSecret(
            algorithm=wrapping_secret.algorithm,
            key=wrapping_secret.key,
            init_vector=wrapping_secret.init_vector,
            auth_data="test_1",
        )
        with pytest.raises(KeyMaterialUnreadable, match="failed authentication"):
            StorageKeyEncryption(other).unwrap(document)

    def test_tampered_tag(self, wrapping_secret):
        sealer = StorageKeyEncryption(wrapping_secret)
        document = sealer.wrap(generate_data_encryption_key())
        document["auth_tag"] = base64.b64encode(b"\x00" * 16).decode()
        with pytest.raises(KeyMaterialUnreadable):
            sealer.unwrap(document)

    def test_malformed_document(self, wrapping_secret):
        with pytest.raises(KeyMaterialUnreadable, match="Malformed"):
            StorageKeyEncryption(wrapping_secret).unwrap({"cipher": "AES_XTS"})

    def test_unsupported_algorithm(self, wrapping_secret):
        secret = KeyWrappingSecret("aes-128-cbc", wrapping_secret.key, wrapping_secret.init_vector, "x")
        with pytest.raises(KeyMaterialUnreadable, match="Unsupported key wrapping algorithm"):
            StorageKeyEncryption(secret)

    def test_short_key_rejected(self, wrapping_secret):
        secret = KeyWrappingSecret(
            "aes-256-gcm", base64.b64encode(os.urandom(16)).decode(), wrapping_secret.init_vector, "x"
        )
        with pytest.raises(KeyMaterialUnreadable, match="must be 32 bytes"):
            StorageKeyEncryption(secret)

    def test_short_iv_rejected(self, wrapping_secret):
        secret = KeyWrappingSecret("aes-256-gcm", wrapping_secret.key, base64.b64encode(b"1234").decode(), "x")
        with pytest.raises(KeyMaterialUnreadable, match="init vector"):
            StorageKeyEncryption(secret)


class TestKeyFiles:
    def test_write_and_read(self, tmp_path, wrapping_secret):
        sealer = StorageKeyEncryption(wrapping_secret)
        dek = generate_data_encryption_key()
        key_file = tmp_path / "data_encryption_key.json"
        sealer.write_encrypted_dek(key_file, dek)
        assert (key_file.stat().st_mode & 0o777) == 0o600
        assert json.loads(key_file.read_text())["cipher"] == "AES_XTS"
        assert sealer.read_encrypted_dek(key_file) == dek

    def test_missing_file(self, tmp_path, wrapping_secret):
        with pytest.raises(KeyMaterialUnreadable, match="missing"):
            StorageKeyEncryption(wrapping_secret).read_encrypted_dek(tmp_path / "absent.json")

    def test_corrupt_file(self, tmp_path, wrapping_secret):
        key_file = tmp_path / "data_encryption_key.json"
        key_file.write_text("{not json")
        with pytest.raises(KeyMaterialUnreadable, match="Cannot read"):
            StorageKeyEncryption(wrapping_secret).read_encrypted_dek(key_file)

    def test_non_object_document(self, tmp_path, wrapping_secret):
        key_file = tmp_path / "data_encryption_key.json"
        key_file.write_text("[]")
        with pytest.raises(KeyMaterialUnreadable, match="not a JSON object"):
            StorageKeyEncryption(wrapping_secret).read_encrypted_dek(key_file)
