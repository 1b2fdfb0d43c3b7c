"""Master key storage in the OS keyring."""

from __future__ import annotations

import base64
import binascii
import threading
from typing import TYPE_CHECKING

import keyring
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from keyring.errors import KeyringError

from quonitor.constants import MASTER_KEY_SIZE
from quonitor.errors import VaultError
from quonitor.logging import get_logger

if TYPE_CHECKING:
    from keyring.backend import KeyringBackend

log = get_logger("quonitor.security.keys")


class MasterKeyStore:
    """Loads the 256-bit master key from the keyring, creating it on first use.

    The key is fetched at most once per instance. First-run generation is
    idempotent: after writing a fresh key the entry is read back, so if
    another process stored its own key first, that key wins and is used.
    """

    def __init__(
        self,
        service: str = "quonitor",
        username: str = "master_key",
        backend: KeyringBackend | None = None,
    ) -> None:
        self._service = service
        self._username = username
        self._backend = backend
        self._key: bytes | None = None
        self._lock = threading.Lock()

    @property
    def key(self) -> bytes:
        """Return the master key, loading or generating it on first access."""
        if self._key is None:
            with self._lock:
                if self._key is None:
                    self._key = self._load_or_create()
        return self._key

    def _keyring(self) -> KeyringBackend:
        return self._backend if self._backend is not None else keyring.get_keyring()

    def _load_or_create(self) -> bytes:
        backend = self._keyring()
        try:
            stored = backend.get_password(self._service, self._username)
            if stored is None:
                candidate = base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")
                backend.set_password(self._service, self._username, candidate)
                # Read back: a concurrent first run may have stored its key first
                stored = backend.get_password(self._service, self._username)
                if stored is None:
                    raise VaultError("Keyring did not persist the master key")
                log.info("master_key_created", service=self._service)
        except KeyringError as exc:
            log.error("keyring_unavailable", service=self._service, error=str(exc))
            raise VaultError(f"Secure credential storage unavailable: {exc}") from exc

        try:
            key = base64.b64decode(stored.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise VaultError("Stored master key is not valid base64") from exc

        if len(key) != MASTER_KEY_SIZE:
            raise VaultError(
                f"Stored master key has wrong length ({len(key)} bytes, expected {MASTER_KEY_SIZE})"
            )
        log.debug("master_key_loaded", service=self._service)
        return key
