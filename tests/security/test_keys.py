"""Tests for key validation and the key version registry."""

from unittest.mock import Mock

import pytest

from qastudio.config import Settings
from qastudio.security.keys import (
    INSECURE_KEYS,
    CipherAlgorithm,
    InvalidKeyError,
    KeyRegistry,
    KeySpec,
    StaticKeyLoader,
    UnsupportedKeyVersionError,
    VaultKeyLoader,
    algorithm_for_version,
    generate_key_hex,
    validate_key_hex,
)
from qastudio.security.vault import SecretNotFoundError


def _settings(**kwargs):
    return Settings(_env_file=None, **kwargs)


class TestGenerateKey:
    """Test key generation."""

    def test_generates_64_hex_chars(self):
        """Test generated key format."""
        key = generate_key_hex()
        assert len(key) == 64
        assert key == key.lower()
        assert len(bytes.fromhex(key)) == 32

    def test_generates_unique_keys(self):
        """Test that each generated key is unique."""
        assert len({generate_key_hex() for _ in range(10)}) == 10


class TestValidateKeyHex:
    """Test key validation."""

    def test_valid_key(self, keys):
        """Test a valid key decodes to 32 bytes."""
        assert validate_key_hex(keys[2]) == bytes.fromhex(keys[2])

    def test_uppercase_accepted(self, keys):
        """Test uppercase hex is accepted."""
        assert validate_key_hex(keys[2].upper()) == bytes.fromhex(keys[2])

    def test_missing_key(self):
        """Test missing key message."""
        with pytest.raises(InvalidKeyError, match="not set"):
            validate_key_hex(None, name="ENCRYPTION_KEY")

    @pytest.mark.parametrize("value", ["abc", "g" * 64, "a" * 63, "a" * 65, " " + "a" * 63])
    def test_malformed_key(self, value):
        """Test keys that are not 64 hex characters."""
        with pytest.raises(InvalidKeyError, match="64 hexadecimal"):
            validate_key_hex(value)

    @pytest.mark.parametrize("value", sorted(INSECURE_KEYS))
    def test_example_keys_rejected_in_production(self, value):
        """Test known example keys are refused in production."""
        with pytest.raises(InvalidKeyError, match="example/test key"):
            validate_key_hex(value.upper(), production=True)

    @pytest.mark.parametrize("value", sorted(INSECURE_KEYS))
    def test_example_keys_allowed_outside_production(self, value):
        """Test example keys are usable in development."""
        assert len(validate_key_hex(value)) == 32

    def test_low_entropy_rejected_in_production(self):
        """Test keys with too few distinct characters."""
        with pytest.raises(InvalidKeyError, match="insufficient entropy"):
            validate_key_hex("abcd" * 16, production=True)


class TestKeyRegistry:
    """Test KeyRegistry."""

    def test_resolve_key(self, registry, keys):
        """Test resolving registered versions."""
        v1 = registry.resolve_key(1)
        assert v1.algorithm is CipherAlgorithm.AES_256_CBC
        assert v1.key == bytes.fromhex(keys[1])
        assert registry.resolve_key(2).algorithm is CipherAlgorithm.AES_256_GCM

    def test_current_version(self, registry):
        """Test the current version."""
        assert registry.current_version() == 2
        assert registry.current_key().version == 2

    def test_unknown_version_raises(self, registry):
        """Test unregistered versions."""
        with pytest.raises(UnsupportedKeyVersionError) as exc_info:
            registry.resolve_key(9)
        assert exc_info.value.version == 9

    def test_versions(self, registry):
        """Test listing versions."""
        assert registry.versions() == [1, 2]
        assert 1 in registry
        assert 3 not in registry

    def test_current_must_be_registered(self, keys):
        """Test a missing current version fails at construction."""
        entries = {2: KeySpec(CipherAlgorithm.AES_256_GCM, StaticKeyLoader(keys[2]))}
        with pytest.raises(UnsupportedKeyVersionError):
            KeyRegistry(entries, current_version=3)

    def test_current_must_be_authenticated(self, keys):
        """Test CBC can't be the current version."""
        entries = {1: KeySpec(CipherAlgorithm.AES_256_CBC, StaticKeyLoader(keys[1]))}
        with pytest.raises(InvalidKeyError, match="authenticated"):
            KeyRegistry(entries, current_version=1)

    def test_invalid_old_key_fails_fast(self, keys):
        """Test every version's key is validated up front."""
        entries = {
            1: KeySpec(CipherAlgorithm.AES_256_CBC, StaticKeyLoader("short", name="ENCRYPTION_KEY_V1")),
            2: KeySpec(CipherAlgorithm.AES_256_GCM, StaticKeyLoader(keys[2])),
        }
        with pytest.raises(InvalidKeyError, match="ENCRYPTION_KEY_V1"):
            KeyRegistry(entries, current_version=2)

    def test_unversioned_cannot_be_current(self, keys):
        """Test version 0 is readable but never used for new data."""
        entries = {0: KeySpec(CipherAlgorithm.AES_256_GCM, StaticKeyLoader(keys[2]))}
        with pytest.raises(InvalidKeyError, match="2 or later"):
            KeyRegistry(entries, current_version=0)

    def test_adding_version_keeps_old_ones(self, make_registry, keys):
        """Test a new version is a new entry, old versions stay resolvable."""
        registry = make_registry(3, v1=keys[1], v2=keys[2], v3=keys[3])
        assert registry.current_version() == 3
        assert registry.resolve_key(2).key == bytes.fromhex(keys[2])

    def test_repr_hides_key(self, registry, keys):
        """Test key material is not in the repr."""
        assert keys[2] not in repr(registry.resolve_key(2))
        assert "key=" not in repr(registry.resolve_key(2))

    def test_algorithm_for_version(self):
        """Test v1 is CBC, every other version GCM."""
        assert algorithm_for_version(0) is CipherAlgorithm.AES_256_GCM
        assert algorithm_for_version(1) is CipherAlgorithm.AES_256_CBC
        assert algorithm_for_version(2) is CipherAlgorithm.AES_256_GCM
        assert algorithm_for_version(5) is CipherAlgorithm.AES_256_GCM


class TestRegistryFromSettings:
    """Test building the registry from settings."""

    def test_single_key_serves_shared_versions(self, keys):
        """Test ENCRYPTION_KEY covers unversioned, legacy and current versions."""
        registry = KeyRegistry.from_settings(_settings(encryption_key=keys[2]))
        assert registry.versions() == [0, 1, 2]
        assert registry.resolve_key(0).algorithm is CipherAlgorithm.AES_256_GCM
        assert registry.resolve_key(1).algorithm is CipherAlgorithm.AES_256_CBC
        assert registry.resolve_key(0).key == registry.resolve_key(2).key

    def test_versioned_keys_from_environment(self, monkeypatch, keys):
        """Test ENCRYPTION_KEY_V{N} variables register versions."""
        monkeypatch.setenv("ENCRYPTION_KEY", keys[1])
        monkeypatch.setenv("ENCRYPTION_KEY_V3", keys[3])
        monkeypatch.setenv("CURRENT_KEY_VERSION", "3")

        registry = KeyRegistry.from_settings(Settings(_env_file=None))

        assert registry.versions() == [0, 1, 2, 3]
        assert registry.current_version() == 3
        assert registry.resolve_key(3).key == bytes.fromhex(keys[3])
        assert registry.resolve_key(1).key == bytes.fromhex(keys[1])

    def test_versioned_key_overrides_shared_key(self, keys):
        """Test ENCRYPTION_KEY_V2 wins over ENCRYPTION_KEY for v2."""
        registry = KeyRegistry.from_settings(
            _settings(encryption_key=keys[1], encryption_keys={2: keys[2]})
        )
        assert registry.resolve_key(2).key == bytes.fromhex(keys[2])
        assert registry.resolve_key(1).key == bytes.fromhex(keys[1])

    def test_missing_key_fails(self):
        """Test no key material refuses to start."""
        with pytest.raises(InvalidKeyError, match="not set"):
            KeyRegistry.from_settings(_settings())

    def test_production_rejects_example_key(self):
        """Test production settings apply insecure key checks."""
        with pytest.raises(InvalidKeyError, match="example/test key"):
            KeyRegistry.from_settings(
                _settings(app_env="production", encryption_key="0123456789abcdef" * 4)
            )

    def test_vault_source(self, keys):
        """Test keys are loaded from Vault paths."""
        vault = Mock()
        vault.read_secret.side_effect = lambda path: {
            "encryption/keys/v2": {"key": keys[2]},
            "encryption/keys/v3": {"key": keys[3]},
        }[path]

        registry = KeyRegistry.from_settings(
            _settings(key_source="vault", key_versions=[2, 3], current_key_version=3),
            vault_client=vault,
        )

        assert registry.versions() == [2, 3]
        assert registry.resolve_key(2).key == bytes.fromhex(keys[2])


class TestVaultKeyLoader:
    """Test VaultKeyLoader."""

    def test_missing_secret_loads_none(self):
        """Test a missing Vault secret yields no key."""
        vault = Mock()
        vault.read_secret.side_effect = SecretNotFoundError("missing")
        loader = VaultKeyLoader(vault, "encryption/keys/v2")
        assert loader.load() is None
        assert loader.name == "vault:encryption/keys/v2"
