"""At-rest encryption for access tokens (AES-256-GCM)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedSecret:
    ciphertext: str
    nonce: str
    tag: str


class CredentialVault:
    """Encrypts and decrypts secrets with a key kept next to the database."""

    def __init__(self, key_path: Union[str, Path]):
        self.key_path = Path(key_path)
        self._aead = AESGCM(self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        if self.key_path.exists():
            try:
                key = self.key_path.read_bytes()
            except OSError as exc:
                logger.error("Error reading key file %s: %s", self.key_path, exc)
            else:
                if len(key) == KEY_SIZE:
                    return key
                logger.warning("Key file %s has the wrong size, generating a new key", self.key_path)

        key = AESGCM.generate_key(bit_length=KEY_SIZE * 8)
        try:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            self.key_path.write_bytes(key)
            os.chmod(self.key_path, 0o600)
        except OSError as exc:
            logger.error("Error saving key file %s: %s", self.key_path, exc)
        return key

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedSecret(
            ciphertext=sealed[:-TAG_SIZE].hex(),
            nonce=nonce.hex(),
            tag=sealed[-TAG_SIZE:].hex(),
        )

    def decrypt(self, ciphertext: str, nonce: str, tag: str) -> str:
        sealed = bytes.fromhex(ciphertext) + bytes.fromhex(tag)
        return self._aead.decrypt(bytes.fromhex(nonce), sealed, None).decode("utf-8")

    def decrypt_secret(self, secret: EncryptedSecret) -> str:
        return self.decrypt(secret.ciphertext, secret.nonce, secret.tag)
