"""
Fernet symmetric encryption for secrets stored at rest.

Keyed by the ENCRYPTION_KEY environment variable. Generate a key with:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""
import os

from cryptography.fernet import Fernet


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by ENCRYPTION_KEY.

    Raises RuntimeError if the key is not set, rather than storing plaintext.
    """
    raw_key = os.getenv("ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError("ENCRYPTION_KEY environment variable is not set")
    return Fernet(raw_key.encode())


def encrypt_secret(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a value produced by encrypt_secret.

    Raises cryptography.fernet.InvalidToken if tampered or keyed differently.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")

