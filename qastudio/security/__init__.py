"""Security module for QA Studio.

This module provides:
- AES-256-GCM encryption of secrets at rest, with versioned keys
- Re-encryption of stored secrets on key rotation
- Rate limiting backed by Redis
- HashiCorp Vault integration for keys and secrets
"""

from .encryption import SecretCipher, redact
from .envelope import InvalidEnvelopeFormatError, is_envelope, parse, serialize
from .errors import DecryptionError, EncryptionError
from .keys import InvalidKeyError, KeyRegistry, UnsupportedKeyVersionError, generate_key_hex
from .rate_limiter import RateLimiter, RateLimitExceededError, RateLimitResult
from .rotation import KeyRotationError, KeyRotationJob, RotationConfig, RotationReport, SecretRecord
from .vault import SecretNotFoundError, VaultClient

__all__ = [
    "SecretCipher",
    "redact",
    "EncryptionError",
    "DecryptionError",
    "InvalidEnvelopeFormatError",
    "is_envelope",
    "parse",
    "serialize",
    "KeyRegistry",
    "InvalidKeyError",
    "UnsupportedKeyVersionError",
    "generate_key_hex",
    "RateLimiter",
    "RateLimitResult",
    "RateLimitExceededError",
    "KeyRotationJob",
    "KeyRotationError",
    "RotationConfig",
    "RotationReport",
    "SecretRecord",
    "VaultClient",
    "SecretNotFoundError",
]
