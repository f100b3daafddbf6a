"""Encryption utilities for user environment variables.

Variable values are encrypted with Fernet before they are stored and only
decrypted when an execution substitutes them into a worker graph.
The encryption key is derived from the SECRETS_KEY environment variable.
"""

import base64
import hashlib
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from app.errors import OrchestrationError


class SecretsError(OrchestrationError):
    """Stored values cannot be decrypted with the current key."""

    code = "SECRETS_ERROR"


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    """Get or create the Fernet cipher for encryption.

    The key is derived from SECRETS_KEY environment variable.
    If not set, uses a deterministic key based on DATABASE_PATH for development.
    """
    key_material = os.environ.get("SECRETS_KEY")

    if not key_material:
        # Development fallback: derive key from database path
        db_path = os.environ.get("DATABASE_PATH", "./data/worker.db")
        key_material = f"dev-secrets-key-{db_path}"

    # Derive a valid Fernet key (32 bytes, base64-encoded)
    key_hash = hashlib.sha256(key_material.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_hash))


def encrypt_secret(value: str) -> str:
    """Encrypt a single value.

    Args:
        value: The plaintext value

    Returns:
        Base64-encoded encrypted value
    """
    return _get_fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_secret(encrypted_value: str) -> str:
    """Decrypt a single value.

    Raises:
        SecretsError: If the value was not produced with the current key
    """
    try:
        decrypted = _get_fernet().decrypt(encrypted_value.encode("utf-8"))
    except InvalidToken as e:
        raise SecretsError("Failed to decrypt secret: invalid token") from e
    return decrypted.decode("utf-8")


def encrypt_variables(variables: dict[str, str]) -> dict[str, str]:
    """Encrypt every value of an environment-variable mapping."""
    return {name: encrypt_secret(value) for name, value in variables.items()}


def decrypt_variables(encrypted: dict[str, str]) -> dict[str, str]:
    """Decrypt every value of a stored environment-variable mapping.

    Raises:
        SecretsError: Naming the first variable that cannot be decrypted
    """
    decrypted = {}
    for name, value in encrypted.items():
        try:
            decrypted[name] = decrypt_secret(value)
        except SecretsError as e:
            raise SecretsError(f"Failed to decrypt environment variable {name}") from e
    return decrypted
