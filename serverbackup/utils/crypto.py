"""
Encryption of stored server credentials (SSH and database passwords).

Backups run unattended, so the key cannot depend on a logged-in user: it is
derived from the Flask SECRET_KEY. Rotating SECRET_KEY makes previously stored
passwords unreadable.
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class SecretError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


class SecretBox:
    """
    Fernet encryption keyed from the application SECRET_KEY.
    """

    def __init__(self, secret_key: str):
        """
        Initialize with the application SECRET_KEY.

        Args:
            secret_key: Flask app SECRET_KEY
        """
        if not secret_key:
            raise ValueError("SECRET_KEY is required to encrypt server credentials")

        # Fixed salt since SECRET_KEY itself is the secret
        fixed_salt = b'serverbackup_credentials_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage.

        Args:
            plaintext: Value to encrypt

        Returns:
            Fernet token as text
        """
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored value.

        Args:
            token: Value previously returned by encrypt()

        Returns:
            Plaintext string

        Raises:
            SecretError: If the token was produced with another key or is corrupted
        """
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise SecretError("Stored credential cannot be decrypted (was SECRET_KEY changed?)") from e

    def encrypt_optional(self, plaintext):
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, token):
        return self.decrypt(token) if token else None


def get_secret_box(app) -> SecretBox:
    """
    Build a SecretBox from Flask app config.

    Args:
        app: Flask application instance

    Raises:
        RuntimeError: If SECRET_KEY not configured
    """
    secret_key = app.config.get('SECRET_KEY')

    if not secret_key:
        raise RuntimeError("SECRET_KEY not configured - cannot decrypt server credentials")

    return SecretBox(secret_key)
