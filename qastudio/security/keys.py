"""Encryption key validation and the key version registry.

Every envelope names the key version that produced it. The registry maps
each version to the algorithm and the strategy that loads its key material,
so adding a version is a new entry in the map rather than new code.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

KEY_HEX_LENGTH = 64
MIN_UNIQUE_KEY_CHARS = 8

# Example/test keys that must never be used in production
INSECURE_KEYS = frozenset(
    {
        "0" * 64,
        "1" * 64,
        "f" * 64,
        "0123456789abcdef" * 4,
        "deadbeef" * 8,
        "cafebabe" * 8,
    }
)

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")
_KEYGEN_HINT = "Generate a secure key with: openssl rand -hex 32"


class InvalidKeyError(Exception):
    """Raised when key material is missing, malformed or insecure."""

    pass


class UnsupportedKeyVersionError(Exception):
    """Raised when an envelope names a key version that is not registered."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unsupported key version: {version}")


class CipherAlgorithm(str, Enum):
    """Cipher used by a key version."""

    AES_256_CBC = "aes-256-cbc"  # Legacy, unauthenticated
    AES_256_GCM = "aes-256-gcm"

    @property
    def is_authenticated(self) -> bool:
        return self is CipherAlgorithm.AES_256_GCM


def generate_key_hex() -> str:
    """Generate a new 256-bit key as 64 lowercase hex characters."""
    return secrets.token_hex(32)


def validate_key_hex(value: Optional[str], name: str = "ENCRYPTION_KEY", production: bool = False) -> bytes:
    """Validate hex key material and decode it.

    Args:
        value: Hex-encoded key
        name: Name of the setting, used in error messages
        production: Also reject example keys and low-entropy keys

    Returns:
        32-byte key

    Raises:
        InvalidKeyError: If the key is missing, malformed or insecure
    """
    if not value:
        raise InvalidKeyError(f"{name} is not set. {_KEYGEN_HINT}")

    if not _HEX_KEY.match(value):
        raise InvalidKeyError(
            f"{name} must be exactly {KEY_HEX_LENGTH} hexadecimal characters (32 bytes). "
            f"Current length: {len(value)}. {_KEYGEN_HINT}"
        )

    if production:
        normalized = value.lower()
        if normalized in INSECURE_KEYS:
            raise InvalidKeyError(
                f"{name} appears to be an example/test key and cannot be used in production. "
                f"{_KEYGEN_HINT}"
            )
        if len(set(normalized)) < MIN_UNIQUE_KEY_CHARS:
            raise InvalidKeyError(
                f"{name} has insufficient entropy (too few unique characters). {_KEYGEN_HINT}"
            )

    return bytes.fromhex(value)


class KeyLoader(Protocol):
    """Strategy that produces the hex key material for one version."""

    name: str

    def load(self) -> Optional[str]:
        ...


@dataclass(frozen=True)
class StaticKeyLoader:
    """Key material already resolved from settings."""

    value: Optional[str]
    name: str = "ENCRYPTION_KEY"

    def load(self) -> Optional[str]:
        return self.value


@dataclass(frozen=True)
class VaultKeyLoader:
    """Key material stored in Vault (KV v2)."""

    vault_client: Any  # VaultClient
    path: str
    field: str = "key"

    @property
    def name(self) -> str:
        return f"vault:{self.path}"

    def load(self) -> Optional[str]:
        from .vault import SecretNotFoundError

        try:
            return self.vault_client.read_secret(self.path).get(self.field)
        except SecretNotFoundError:
            return None


@dataclass(frozen=True)
class KeySpec:
    """Registry entry: how a version encrypts and where its key comes from."""

    algorithm: CipherAlgorithm
    loader: KeyLoader


@dataclass(frozen=True)
class KeyVersion:
    """Resolved key material for one version."""

    version: int
    algorithm: CipherAlgorithm
    key: bytes

    def __repr__(self) -> str:
        return f"KeyVersion(version={self.version}, algorithm={self.algorithm.value})"


def algorithm_for_version(version: int) -> CipherAlgorithm:
    """Version 1 is the legacy CBC format; every other version is GCM.

    Version 0 reads GCM envelopes written before they carried a version tag.
    """
    return CipherAlgorithm.AES_256_CBC if version == 1 else CipherAlgorithm.AES_256_GCM


class KeyRegistry:
    """Maps key versions to key material.

    All key material is loaded and validated when the registry is built and
    is read-only afterwards.

    Usage:
        registry = KeyRegistry.from_settings(settings)
        key = registry.resolve_key(registry.current_version())
    """

    def __init__(
        self,
        entries: Mapping[int, KeySpec],
        current_version: int,
        production: bool = False,
    ):
        """Initialize and validate the registry.

        Args:
            entries: Key spec per version
            current_version: Version used for all new encryptions
            production: Apply production key checks

        Raises:
            UnsupportedKeyVersionError: If the current version is not registered
            InvalidKeyError: If any key is invalid, or the current version is unauthenticated
        """
        if current_version not in entries:
            raise UnsupportedKeyVersionError(current_version)

        self._keys: dict[int, KeyVersion] = {}
        for version, spec in sorted(entries.items()):
            key = validate_key_hex(spec.loader.load(), name=spec.loader.name, production=production)
            self._keys[version] = KeyVersion(version=version, algorithm=spec.algorithm, key=key)

        if not self._keys[current_version].algorithm.is_authenticated:
            raise InvalidKeyError(
                f"Current key version {current_version} must use authenticated encryption"
            )
        if current_version < 2:
            raise InvalidKeyError(
                f"Current key version {current_version} must be 2 or later (new data is written as v{{N}})"
            )

        self._current = current_version
        logger.info(
            f"Key registry loaded: versions={self.versions()}, current=v{current_version}"
        )

    @classmethod
    def from_settings(cls, settings: "Settings", vault_client: Optional[Any] = None) -> "KeyRegistry":
        """Build the registry from settings.

        With ``key_source="env"`` each configured version is registered from
        its ENCRYPTION_KEY_V{N} value (versions 0, 1 and 2 fall back to
        ENCRYPTION_KEY). With ``key_source="vault"`` keys are read from
        ``encryption/keys/v{N}``.
        """
        entries: dict[int, KeySpec] = {}

        if settings.key_source == "vault":
            if vault_client is None:
                from .vault import VaultClient, VaultConfig

                vault_client = VaultClient(VaultConfig.from_settings(settings))
            for version in settings.key_versions or [settings.current_key_version]:
                entries[version] = KeySpec(
                    algorithm=algorithm_for_version(version),
                    loader=VaultKeyLoader(vault_client, f"encryption/keys/v{version}"),
                )
        else:
            versions = settings.configured_key_versions() or [settings.current_key_version]
            for version in versions:
                entries[version] = KeySpec(
                    algorithm=algorithm_for_version(version),
                    loader=StaticKeyLoader(
                        settings.key_hex_for(version),
                        name=f"ENCRYPTION_KEY_V{version}" if version in settings.encryption_keys else "ENCRYPTION_KEY",
                    ),
                )

        return cls(entries, settings.current_key_version, production=settings.is_production)

    def current_version(self) -> int:
        """Version used for all new encryptions."""
        return self._current

    def current_key(self) -> KeyVersion:
        return self._keys[self._current]

    def resolve_key(self, version: int) -> KeyVersion:
        """Get key material for a version.

        Raises:
            UnsupportedKeyVersionError: If the version is not registered
        """
        try:
            return self._keys[version]
        except KeyError:
            raise UnsupportedKeyVersionError(version) from None

    def versions(self) -> list[int]:
        """List registered versions."""
        return sorted(self._keys)

    def __contains__(self, version: int) -> bool:
        return version in self._keys
