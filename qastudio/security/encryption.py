"""Encryption for secrets stored at rest.

Provides:
- AES-256-GCM encryption/decryption with a random nonce per call
- Decryption of legacy AES-256-CBC values and of unversioned GCM values
- Key selection by the version embedded in each envelope
- Field-level encryption helpers
"""

import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .envelope import (
    CBC_IV_SIZE,
    GCM_NONCE_SIZE,
    GCM_TAG_SIZE,
    Envelope,
    InvalidEnvelopeFormatError,
    LegacyEnvelope,
    VersionedEnvelope,
    is_envelope,
    parse,
    serialize_envelope,
)
from .errors import DecryptionError, EncryptionError
from .keys import CipherAlgorithm, KeyRegistry, KeyVersion

logger = logging.getLogger(__name__)

__all__ = [
    "DecryptionError",
    "EncryptionError",
    "SecretCipher",
    "decrypt_cbc",
    "decrypt_gcm",
    "encrypt_cbc",
    "encrypt_gcm",
    "redact",
]


def redact(value: Optional[str], visible: int = 6) -> str:
    """Shorten a secret or envelope for log lines."""
    if not value:
        return "<empty>"
    return f"{str(value)[:visible]}..."


def encrypt_gcm(plaintext: bytes, key: bytes) -> tuple[bytes, bytes, bytes]:
    """Encrypt with AES-256-GCM.

    Returns:
        Tuple of (nonce, ciphertext, auth_tag)
    """
    nonce = secrets.token_bytes(GCM_NONCE_SIZE)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return nonce, sealed[:-GCM_TAG_SIZE], sealed[-GCM_TAG_SIZE:]


def decrypt_gcm(nonce: bytes, ciphertext: bytes, auth_tag: bytes, key: bytes) -> bytes:
    """Decrypt with AES-256-GCM, verifying the auth tag.

    Raises:
        DecryptionError: If the tag does not match (tampering or wrong key)
    """
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + auth_tag, None)
    except InvalidTag:
        raise DecryptionError("Failed to decrypt data") from None


def encrypt_cbc(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """Encrypt with legacy AES-256-CBC and PKCS7 padding.

    Only used to produce version 1 data in tests and migrations.

    Returns:
        Tuple of (iv, ciphertext)
    """
    iv = secrets.token_bytes(CBC_IV_SIZE)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return iv, encryptor.update(padded) + encryptor.finalize()


def decrypt_cbc(iv: bytes, ciphertext: bytes, key: bytes) -> bytes:
    """Decrypt legacy AES-256-CBC data.

    CBC is unauthenticated: a wrong key usually surfaces as bad padding,
    but not always.

    Raises:
        DecryptionError: On bad padding
    """
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise DecryptionError("Failed to decrypt data") from None


class SecretCipher:
    """Encrypts and decrypts secret strings against a key registry.

    Usage:
        cipher = SecretCipher(KeyRegistry.from_settings(settings))
        envelope = cipher.encrypt("https://hooks.slack.com/services/...")
        webhook_url = cipher.decrypt(envelope)
    """

    def __init__(self, registry: KeyRegistry):
        self.registry = registry

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a secret under the current key version.

        Args:
            plaintext: Secret to encrypt

        Returns:
            Envelope text (``v{N}:iv:ciphertext:authTag``)

        Raises:
            EncryptionError: If encryption fails
        """
        if not isinstance(plaintext, str):
            raise EncryptionError("Only strings can be encrypted")

        key = self.registry.current_key()
        try:
            nonce, ciphertext, auth_tag = encrypt_gcm(plaintext.encode("utf-8"), key.key)
        except Exception as e:
            logger.error(f"Encryption failed: {type(e).__name__}")
            raise EncryptionError("Failed to encrypt data") from None

        return serialize_envelope(
            VersionedEnvelope(
                version=key.version,
                iv=nonce,
                ciphertext=ciphertext,
                auth_tag=auth_tag,
            )
        )

    def decrypt(self, envelope: str, strict: bool = True) -> str:
        """Decrypt an envelope with the key version it names.

        Args:
            envelope: Envelope text
            strict: If False, a value that is not an envelope is returned
                unchanged (for migrating columns that may still hold plaintext)

        Returns:
            Decrypted string

        Raises:
            InvalidEnvelopeFormatError: If the value is not an envelope (strict mode)
            UnsupportedKeyVersionError: If the envelope's key version is not registered
            DecryptionError: If authentication or decoding fails
        """
        try:
            parsed = parse(envelope)
        except InvalidEnvelopeFormatError as e:
            if strict:
                logger.warning(f"Rejected malformed envelope {redact(envelope)}: {e}")
                raise
            logger.warning("Data appears to be unencrypted - returning as plain text (strict mode disabled)")
            return envelope

        key = self.registry.resolve_key(parsed.version)
        try:
            plaintext = self._open(parsed, key)
            return plaintext.decode("utf-8")
        except (DecryptionError, UnicodeDecodeError):
            logger.warning(f"Decryption failed for v{parsed.version} envelope {redact(envelope)}")
            raise DecryptionError("Failed to decrypt data") from None

    def reencrypt(self, envelope: str) -> str:
        """Decrypt with the envelope's key version and encrypt under the current one."""
        return self.encrypt(self.decrypt(envelope))

    def needs_rotation(self, envelope: str) -> bool:
        """Check whether an envelope was produced under an older key version."""
        return parse(envelope).version != self.registry.current_version()

    @staticmethod
    def is_encrypted(value: str) -> bool:
        """Check if a value appears to be an encrypted envelope."""
        return is_envelope(value)

    def encrypt_fields(self, data: dict, fields: list[str]) -> dict:
        """Encrypt specific fields in a dictionary.

        Args:
            data: Data dictionary (e.g. an integration config)
            fields: Field names to encrypt

        Returns:
            Copy of the dictionary with the fields encrypted
        """
        result = data.copy()
        for field in fields:
            if field in result and result[field]:
                result[field] = self.encrypt(str(result[field]))
        return result

    def decrypt_fields(self, data: dict, fields: list[str]) -> dict:
        """Decrypt specific fields in a dictionary."""
        result = data.copy()
        for field in fields:
            if field in result and result[field]:
                result[field] = self.decrypt(result[field])
        return result

    @staticmethod
    def _open(parsed: Envelope, key: KeyVersion) -> bytes:
        if isinstance(parsed, LegacyEnvelope):
            if key.algorithm is not CipherAlgorithm.AES_256_CBC:
                raise DecryptionError("Failed to decrypt data")
            return decrypt_cbc(parsed.iv, parsed.ciphertext, key.key)

        if key.algorithm is not CipherAlgorithm.AES_256_GCM:
            raise DecryptionError("Failed to decrypt data")
        return decrypt_gcm(parsed.iv, parsed.ciphertext, parsed.auth_tag, key.key)

