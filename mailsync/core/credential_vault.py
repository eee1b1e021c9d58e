"""
Credential Vault

Encryption at rest for the IMAP passwords and OAuth tokens the engine
reads from the account records. Fernet symmetric encryption with a key
derived (PBKDF2-SHA256) from CREDENTIAL_VAULT_KEY.
"""

import base64
import json
import logging
import os
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


class CredentialVaultError(Exception):
    """Base exception for credential vault operations."""
    pass


class EncryptionError(CredentialVaultError):
    """Error during encryption."""
    pass


class DecryptionError(CredentialVaultError):
    """Error during decryption."""
    pass


class CredentialVault:
    """
    Encrypts credential dictionaries and single fields.

    Usage:
        vault = CredentialVault()
        stored = vault.encrypt_field("imap-password")
        vault.decrypt_field(stored)
    """

    MASTER_KEY_ENV = "CREDENTIAL_VAULT_KEY"
    SALT_ENV = "CREDENTIAL_VAULT_SALT"
    DEFAULT_SALT = "mailsync-credential-vault-salt"

    def __init__(self, master_key: Optional[str] = None, salt: Optional[str] = None):
        self._cipher = self._build_cipher(master_key, salt)

    def _build_cipher(self, master_key: Optional[str], salt: Optional[str]) -> Fernet:
        key = master_key or os.environ.get(self.MASTER_KEY_ENV)
        if not key:
            logger.warning(
                f"No {self.MASTER_KEY_ENV} set. Generating ephemeral key; "
                "stored credentials will not survive a restart."
            )
            key = Fernet.generate_key().decode()
            os.environ[self.MASTER_KEY_ENV] = key

        salt = salt or os.environ.get(self.SALT_ENV)
        if not salt:
            logger.warning(f"No {self.SALT_ENV} set. Using default salt.")
            salt = self.DEFAULT_SALT

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=100000,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(key.encode())))

    def encrypt(self, data: dict[str, Any]) -> str:
        """Encrypt a dictionary into a base64 string."""
        try:
            encrypted = self._cipher.encrypt(json.dumps(data, default=str).encode())
            return base64.urlsafe_b64encode(encrypted).decode()
        except (TypeError, ValueError) as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Failed to encrypt credentials: {e}")

    def decrypt(self, encrypted_data: str) -> dict[str, Any]:
        """Decrypt a string produced by encrypt()."""
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted_data.encode())
            return json.loads(self._cipher.decrypt(encrypted_bytes).decode())
        except InvalidToken:
            logger.error("Decryption failed: Invalid token (wrong key or corrupted data)")
            raise DecryptionError("Failed to decrypt: Invalid key or corrupted data")
        except (ValueError, TypeError) as e:
            logger.error(f"Decryption failed: {e}")
            raise DecryptionError(f"Failed to decrypt credentials: {e}")

    def encrypt_field(self, value: str) -> str:
        return self.encrypt({"value": value})

    def decrypt_field(self, encrypted_data: str) -> str:
        return self.decrypt(encrypted_data).get("value", "")


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Get the global credential vault instance."""
    global _vault
    if _vault is None:
        _vault = CredentialVault()
    return _vault


__all__ = [
    "CredentialVault",
    "CredentialVaultError",
    "EncryptionError",
    "DecryptionError",
    "get_vault",
]
