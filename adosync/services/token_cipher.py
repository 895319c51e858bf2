"""Encryption of OAuth tokens at rest (AES-256-GCM)"""

import binascii
import hashlib
import hmac
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from adosync.config import settings
from adosync.errors import ConfigurationError, DecryptionError

KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16
SEPARATOR = ":"


class TokenCipher:
    """Authenticated symmetric encryption for token strings.

    Ciphertexts are ``nonce:tag:ciphertext`` with each part hex encoded, so one
    opaque string carries everything needed to decrypt and verify it.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ConfigurationError(f"Token encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)
        # Separate subkey for signing OAuth state blobs.
        self._signing_key = hmac.new(key, b"adosync-oauth-state", hashlib.sha256).digest()

    @classmethod
    def from_hex(cls, key_hex: Optional[str]) -> "TokenCipher":
        if not key_hex:
            raise ConfigurationError(
                "ADO_TOKEN_ENCRYPTION_KEY is not set; generate one with "
                "`python -c \"import secrets; print(secrets.token_hex(32))\"`"
            )
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError as e:
            raise ConfigurationError("ADO_TOKEN_ENCRYPTION_KEY must be hex encoded") from e
        return cls(key)

    @classmethod
    def from_settings(cls) -> "TokenCipher":
        return cls.from_hex(settings.ado_token_encryption_key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, token: str) -> str:
        parts = (token or "").split(SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted token format")

        try:
            nonce, tag, ciphertext = (binascii.unhexlify(p) for p in parts)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Invalid encrypted token format") from e

        if not nonce or len(tag) != TAG_SIZE:
            raise DecryptionError("Invalid encrypted token format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Token failed authentication (tampered or wrong key)") from e
        except ValueError as e:
            # Unsupported nonce length.
            raise DecryptionError(f"Invalid encrypted token: {e}") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted token is not valid UTF-8") from e

    def sign(self, data: bytes) -> str:
        return hmac.new(self._signing_key, data, hashlib.sha256).hexdigest()

    def verify(self, data: bytes, signature: str) -> bool:
        return hmac.compare_digest(self.sign(data).encode("ascii"), (signature or "").encode("utf-8"))
