"""AES-256-GCM encryption of provider credentials.

Ciphertext layout: ``nonce (12 bytes) || ciphertext || tag (16 bytes)``.
A fresh random nonce is drawn for every call, so each blob decrypts on its
own and encrypting the same credentials twice yields different bytes.
"""

from __future__ import annotations

import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from quonitor.constants import MASTER_KEY_SIZE, NONCE_SIZE
from quonitor.errors import VaultError
from quonitor.logging import get_logger
from quonitor.providers.base import Credentials
from quonitor.security.keys import MasterKeyStore

log = get_logger("quonitor.security.vault")

TAG_SIZE = 16
DEFAULT_MAX_PLAINTEXT_BYTES = 8192


class CredentialVault:
    """Encrypts and decrypts credential payloads.

    Either a raw ``key`` or a ``key_store`` must be supplied. With a key
    store the key is resolved lazily on first use, so constructing the
    vault never touches the keyring.
    """

    def __init__(
        self,
        *,
        key: bytes | None = None,
        key_store: MasterKeyStore | None = None,
        max_plaintext_bytes: int = DEFAULT_MAX_PLAINTEXT_BYTES,
    ) -> None:
        if key is None and key_store is None:
            raise ValueError("CredentialVault needs a key or a key_store")
        if key is not None and len(key) != MASTER_KEY_SIZE:
            raise ValueError(f"Key must be {MASTER_KEY_SIZE} bytes")
        self._key = key
        self._key_store = key_store
        self._max_plaintext_bytes = max_plaintext_bytes
        self._aesgcm: AESGCM | None = None

    def _cipher(self) -> AESGCM:
        if self._aesgcm is None:
            key = self._key if self._key is not None else self._key_store.key  # type: ignore[union-attr]
            self._aesgcm = AESGCM(key)
        return self._aesgcm

    def ensure_key(self) -> None:
        """Resolve the master key now instead of on first encrypt/decrypt.

        Raises:
            VaultError: If secure storage is unavailable.
        """
        self._cipher()

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt a UTF-8 string and return ``nonce || ciphertext``.

        Raises:
            VaultError: If the plaintext is too large or the key is unavailable.
        """
        data = plaintext.encode("utf-8")
        if len(data) > self._max_plaintext_bytes:
            raise VaultError(
                f"Plaintext exceeds {self._max_plaintext_bytes} bytes ({len(data)} bytes)"
            )
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._cipher().encrypt(nonce, data, None)

    def decrypt(self, ciphertext: bytes) -> str:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises:
            VaultError: If the blob is truncated, was tampered with, or was
                encrypted under a different key.
        """
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise VaultError("Decryption failed: ciphertext too short")
        nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            data = self._cipher().decrypt(nonce, body, None)
        except InvalidTag as exc:
            log.warning("credential_decryption_failed")
            raise VaultError("Decryption failed: authentication tag mismatch") from exc
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise VaultError("Decryption failed: plaintext is not UTF-8") from exc

    def encrypt_credentials(self, credentials: Credentials) -> bytes:
        """Serialize credentials to JSON and encrypt them."""
        return self.encrypt(json.dumps(credentials.to_dict()))

    def decrypt_credentials(self, ciphertext: bytes) -> Credentials:
        """Decrypt and deserialize a credentials blob."""
        plaintext = self.decrypt(ciphertext)
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise VaultError("Decrypted credentials are not valid JSON") from exc
        if not isinstance(payload, dict):
            raise VaultError("Decrypted credentials are not a JSON object")
        return Credentials.from_dict(payload)
