"""
Encryption of secrets at rest using Fernet (symmetric, from cryptography).

Used for OAuth tokens on OAuthAccount and for secret entries of the durable
property store (service-account JSON, cached service-account bearer token).
Handles None for optional values such as refresh_token.
"""
import os

from cryptography.fernet import Fernet

FERNET_KEY = os.environ.get("TOKEN_ENCRYPTION_KEY")
if not FERNET_KEY:
    raise RuntimeError("TOKEN_ENCRYPTION_KEY environment variable is required")
fernet = Fernet(FERNET_KEY.encode() if isinstance(FERNET_KEY, str) else FERNET_KEY)


def encrypt(value: str) -> str:
    """Encrypt a string (token or credential JSON) for storage."""
    return fernet.encrypt(value.encode()).decode()


def decrypt(value: str | None) -> str | None:
    """
    Decrypt a stored value. Returns None if value is None (e.g. optional refresh_token).
    """
    if value is None:
        return None
    return fernet.decrypt(value.encode()).decode()
