"""Security module for Quonitor.

Provides encryption at rest for provider credentials. The master key lives
in the OS keyring, never in the database next to the ciphertext.
"""

from quonitor.security.keys import MasterKeyStore
from quonitor.security.vault import CredentialVault

__all__ = ["CredentialVault", "MasterKeyStore"]
