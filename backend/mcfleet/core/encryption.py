"""Credential vault: symmetric encryption of secrets at rest.

Tokens are ``hex(salt):hex(iv):hex(ciphertext)``.  The key is derived per
secret with scrypt from the master secret and the random salt, then used for
AES-256-CBC with PKCS7 padding.  CBC carries no MAC, so a corrupted token is
only detected when padding or UTF-8 decoding fails; integrity of stored
secrets relies on the database, not on the token.

Tokens written by the old scheme, ``hex(iv):hex(ciphertext)`` keyed from a
fixed application-wide salt, are still readable but never produced.
"""

import logging
import os
import secrets
from functools import lru_cache

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from mcfleet.core.config import MIN_ENCRYPTION_KEY_LENGTH, settings
from mcfleet.core.exceptions import ConfigurationError, DecryptionFailed, InvalidRequest

logger = logging.getLogger(__name__)

SALT_BYTES = 16
IV_BYTES = 16
KEY_BYTES = 32

# scrypt cost parameters (N=2^14, r=8, p=1): tens of milliseconds per derivation
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1

_LEGACY_SALT = b"salt"


def _derive_key(material: bytes, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_BYTES, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return kdf.derive(material)


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


class CredentialVault:
    """Encrypts and decrypts secrets with a process-wide master secret."""

    def __init__(self, master_secret: str):
        self._master_secret = master_secret or ""

    def _key_material(self) -> bytes:
        if len(self._master_secret) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )
        # Existing tokens were keyed from the first 32 characters of the master secret.
        return self._master_secret[:KEY_BYTES].encode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise InvalidRequest("Cannot encrypt empty text")
        material = self._key_material()
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        key = _derive_key(material, salt)
        ciphertext = _cbc_encrypt(key, iv, plaintext.encode("utf-8"))
        return f"{salt.hex()}:{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        if not token:
            raise DecryptionFailed("Cannot decrypt empty text")
        material = self._key_material()
        parts = token.split(":")
        try:
            if len(parts) == 3:
                salt, iv, ciphertext = (bytes.fromhex(p) for p in parts)
                key = _derive_key(material, salt)
            elif len(parts) == 2:
                iv, ciphertext = (bytes.fromhex(p) for p in parts)
                key = self._legacy_key()
            else:
                raise DecryptionFailed("Malformed encrypted value")
            return _cbc_decrypt(key, iv, ciphertext).decode("utf-8")
        except DecryptionFailed:
            raise
        except ValueError as e:
            # Non-hex fields, wrong IV size, bad padding or non-UTF-8 output.
            logger.error("Decryption failed: %s", e)
            raise DecryptionFailed(
                "Failed to decrypt data. Encryption key may be incorrect."
            ) from e

    def _legacy_key(self) -> bytes:
        return _derive_key(self._master_secret.encode("utf-8"), _LEGACY_SALT)

    def verify_configuration(self) -> bool:
        """Round-trip a synthetic value; False means the process must not start."""
        try:
            probe = f"verify-{secrets.token_hex(8)}"
            return self.decrypt(self.encrypt(probe)) == probe
        except Exception as e:
            logger.error("Encryption configuration verification failed: %s", e)
            return False


def generate_secret(nbytes: int = 16) -> str:
    """Random hex secret; 16 bytes gives the 32-character console secret."""
    return secrets.token_hex(nbytes)


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    return CredentialVault(settings.ENCRYPTION_KEY)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string value with the configured master secret."""
    return get_vault().encrypt(plaintext)


def decrypt_value(token: str) -> str:
    """Decrypt a token produced by ``encrypt_value`` (or the legacy scheme)."""
    return get_vault().decrypt(token)
