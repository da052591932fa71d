"""Pytest configuration and fixtures for QA Studio tests."""

import os

import pytest

from qastudio.security.encryption import SecretCipher
from qastudio.security.keys import CipherAlgorithm, KeyRegistry, KeySpec, StaticKeyLoader

KEY_V1 = "3f7a1c9e5b2d8f40a6c1e7b39d5f2a8c4e0b6d1f7a3c9e5b2d8f4a0c6e1b7d39"
KEY_V2 = "a94c2e7f1b8d3a6c0e5f9b2d7a4c1e8f3b6d0a9c5e2f7b1d4a8c3e6f0b9d2a57"
KEY_V3 = "5d0e8b3a7f2c6e1d9b4a8f3c7e2d6b1a5f9c4e8d3b7a2f6c1e5d9b4a8f3c7e26"


@pytest.fixture(autouse=True)
def use_test_environment(monkeypatch):
    """Keep the developer's environment out of settings-based tests."""
    for name in list(os.environ):
        if name.startswith("ENCRYPTION_KEY") or name.startswith("VAULT_"):
            monkeypatch.delenv(name, raising=False)
    for name in (
        "APP_ENV",
        "CURRENT_KEY_VERSION",
        "KEY_SOURCE",
        "KEY_VERSIONS",
        "REDIS_URL",
        "SESSION_SECRET",
        "RESET_SECRET",
        "SELF_HOSTED",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_ENV", "test")


def _make_registry(current_version=2, **keys):
    entries = {}
    for name, value in keys.items():
        version = int(name.lstrip("v"))
        algorithm = CipherAlgorithm.AES_256_CBC if version == 1 else CipherAlgorithm.AES_256_GCM
        entries[version] = KeySpec(algorithm=algorithm, loader=StaticKeyLoader(value))
    return KeyRegistry(entries, current_version=current_version)


@pytest.fixture
def keys():
    """Hex key per version."""
    return {1: KEY_V1, 2: KEY_V2, 3: KEY_V3}


@pytest.fixture
def make_registry():
    """Build a registry from hex keys, e.g. make_registry(3, v1=..., v3=...)."""
    return _make_registry


@pytest.fixture
def registry():
    """Registry with legacy v1 and current v2."""
    return _make_registry(current_version=2, v1=KEY_V1, v2=KEY_V2)


@pytest.fixture
def cipher(registry):
    """Cipher on the v1/v2 registry."""
    return SecretCipher(registry)
