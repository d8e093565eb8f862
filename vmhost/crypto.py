"""Data encryption key generation and at-rest wrapping."""

from __future__ import annotations

import base64
import binascii
import json
import os
from pathlib import Path
from typing import Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from vmhost.constants import DEK_CIPHER, KEY_WRAP_ALGORITHM
from vmhost.exceptions import KeyMaterialUnreadable
from vmhost.models import DataEncryptionKey, KeyWrappingSecret

# AES-XTS takes two 256-bit keys: the data key and the tweak key.
XTS_HALF_BYTES = 32
GCM_TAG_BYTES = 16


def generate_data_encryption_key() -> DataEncryptionKey:
    raw = os.urandom(2 * XTS_HALF_BYTES)
    return DataEncryptionKey(
        key=raw[:XTS_HALF_BYTES].hex(),
        key2=raw[XTS_HALF_BYTES:].hex(),
        cipher=DEK_CIPHER,
    )


class StorageKeyEncryption:
    """Wraps data encryption keys with an externally supplied AES-256-GCM secret."""

    def __init__(self, secret: KeyWrappingSecret) -> None:
        if secret.algorithm.lower() != KEY_WRAP_ALGORITHM:
            raise KeyMaterialUnreadable(f"Unsupported key wrapping algorithm '{secret.algorithm}'")
        try:
            key = base64.b64decode(secret.key, validate=False)
            self._iv = base64.b64decode(secret.init_vector, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise KeyMaterialUnreadable(f"Key wrapping secret is not valid base64: {exc}") from exc
        if len(key) != 32:
            raise KeyMaterialUnreadable(f"Key wrapping key must be 32 bytes (got {len(key)})")
        if not 8 <= len(self._iv) <= 128:
            raise KeyMaterialUnreadable(f"Key wrapping init vector must be 8-128 bytes (got {len(self._iv)})")
        self._aead = AESGCM(key)
        self._auth_data = secret.auth_data.encode("utf-8")

    def wrap(self, dek: DataEncryptionKey) -> Dict[str, str]:
        sealed = self._aead.encrypt(self._iv, (dek.key + dek.key2).encode("ascii"), self._auth_data)
        ciphertext, tag = sealed[:-GCM_TAG_BYTES], sealed[-GCM_TAG_BYTES:]
        return {
            "cipher": dek.cipher,
            "wrap_algorithm": KEY_WRAP_ALGORITHM,
            "key": base64.b64encode(ciphertext).decode("ascii"),
            "auth_tag": base64.b64encode(tag).decode("ascii"),
        }

    def unwrap(self, document: Dict[str, str]) -> DataEncryptionKey:
        try:
            ciphertext = base64.b64decode(document["key"], validate=True)
            tag = base64.b64decode(document["auth_tag"], validate=True)
            cipher = document["cipher"]
        except (KeyError, TypeError, binascii.Error, ValueError) as exc:
            raise KeyMaterialUnreadable(f"Malformed data encryption key document: {exc}") from exc
        try:
            plain = self._aead.decrypt(self._iv, ciphertext + tag, self._auth_data).decode("ascii")
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise KeyMaterialUnreadable("Data encryption key failed authentication") from exc
        half = len(plain) // 2
        return DataEncryptionKey(key=plain[:half], key2=plain[half:], cipher=cipher)

    def write_encrypted_dek(self, key_file: Path, dek: DataEncryptionKey) -> None:
        """Write the wrapped key owner-only and fsync the file contents."""
        payload = json.dumps(self.wrap(dek))
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())

    def read_encrypted_dek(self, key_file: Path) -> DataEncryptionKey:
        try:
            document = json.loads(Path(key_file).read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise KeyMaterialUnreadable(f"Data encryption key file missing: {key_file}") from exc
        except (OSError, ValueError) as exc:
            raise KeyMaterialUnreadable(f"Cannot read data encryption key {key_file}: {exc}") from exc
        if not isinstance(document, dict):
            raise KeyMaterialUnreadable(f"Data encryption key {key_file} is not a JSON object")
        return self.unwrap(document)
