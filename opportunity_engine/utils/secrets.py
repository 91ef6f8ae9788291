"""AES-256-GCM encryption for automation endpoint secrets"""
import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from opportunity_engine.core.errors import SecretDecryptionError

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptedSecret:
    """Base64 encoded ciphertext, IV and GCM authentication tag"""
    ciphertext: str
    iv: str
    auth_tag: str


def generate_key() -> str:
    """New random 32-byte key, base64 encoded"""
    return base64.b64encode(os.urandom(32)).decode("ascii")


class SecretCipher:
    """
    Encrypts and decrypts endpoint webhook secrets at rest.

    The authentication tag is stored separately from the ciphertext so the
    three values map onto the endpoint's three secret columns.
    """

    def __init__(self, key_b64: str):
        try:
            key = base64.b64decode(key_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Secret key must be base64 encoded") from e
        if len(key) != 32:
            raise ValueError("Secret key must be a 32-byte (256-bit) key encoded in base64")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            auth_tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret) -> str:
        """
        Decrypt a stored secret.

        Raises:
            SecretDecryptionError: wrong key, tampered data or malformed fields
        """
        try:
            ciphertext = base64.b64decode(secret.ciphertext)
            iv = base64.b64decode(secret.iv)
            tag = base64.b64decode(secret.auth_tag)
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, binascii.Error, ValueError) as e:
            raise SecretDecryptionError("Endpoint secret could not be decrypted") from e
        return plaintext.decode("utf-8")
