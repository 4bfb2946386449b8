"""
Fernet symmetric encryption for target-database credentials.

`encrypt_secret` / `decrypt_secret` use Fernet (AES-128-CBC + HMAC-SHA256)
keyed by the ENCRYPTION_KEY environment variable. DBInstance passwords are
stored through these helpers and only decrypted when a connection URL is built.

WARNING: ENCRYPTION_KEY must be a 32-byte URL-safe base64 key generated via:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
Store it in the environment; never hard-code or commit it.
"""

import os

from cryptography.fernet import Fernet


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by the ENCRYPTION_KEY env var.

    Raises RuntimeError if ENCRYPTION_KEY is not set.
    """
    raw_key = os.getenv("ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError(
            "ENCRYPTION_KEY environment variable is not set. "
            "Generate one with: python -c \""
            "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a plaintext secret and return URL-safe base64 ciphertext.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
    """
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a Fernet-encrypted ciphertext back to plaintext.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
        cryptography.fernet.InvalidToken: If ciphertext is tampered or
            encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
