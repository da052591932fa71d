"""Configuration for QA Studio."""

import logging
import os
import re
from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security.keys import InvalidKeyError, KeyRegistry, UnsupportedKeyVersionError

logger = logging.getLogger(__name__)

DEV_SESSION_SECRET = "dev-secret-change-in-production"

_VERSIONED_KEY_VAR = re.compile(r"^ENCRYPTION_KEY_V(\d+)$", re.IGNORECASE)

# Versions read with ENCRYPTION_KEY unless ENCRYPTION_KEY_V{N} overrides them
SHARED_KEY_VERSIONS = (0, 1, 2)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or insecure."""

    pass


class Settings(BaseSettings):
    """Application settings.

    Resolved once at startup and passed to the components that need them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Deployment
    app_env: Literal["development", "test", "production"] = "development"
    self_hosted: bool = False

    # Secrets used for signing session and reset tokens
    session_secret: Optional[str] = None
    reset_secret: Optional[str] = None

    # Encryption keys (64 hex chars each)
    encryption_key: Optional[str] = None  # Serves versions 0, 1 and 2 unless overridden
    encryption_keys: dict[int, str] = Field(default_factory=dict)  # ENCRYPTION_KEY_V{N}
    current_key_version: int = 2
    key_source: Literal["env", "vault"] = "env"
    key_versions: Optional[list[int]] = None  # Versions to load from Vault

    # Redis (rate limiting, cache)
    redis_url: Optional[str] = None

    # Vault
    vault_addr: str = "http://localhost:8200"
    vault_token: Optional[str] = None
    vault_namespace: Optional[str] = None
    vault_mount_point: str = "secret"

    @model_validator(mode="before")
    @classmethod
    def _collect_versioned_keys(cls, data: Any) -> Any:
        """Pick up ENCRYPTION_KEY_V{N} variables.

        The .env file reaches this validator as lowercased extra keys in
        ``data``; process environment variables take precedence over it.
        """
        if not isinstance(data, dict) or "encryption_keys" in data:
            return data
        keys = {}
        for source in (data, os.environ):
            for name, value in source.items():
                match = _VERSIONED_KEY_VAR.match(str(name))
                if match and value:
                    keys[int(match.group(1))] = value
        if keys:
            data = {**data, "encryption_keys": keys}
        return data

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env == "production"

    def key_hex_for(self, version: int) -> Optional[str]:
        """Get the configured hex key for a version, if any."""
        if version in self.encryption_keys:
            return self.encryption_keys[version]
        if version in SHARED_KEY_VERSIONS:
            return self.encryption_key
        return None

    def configured_key_versions(self) -> list[int]:
        """List key versions that have key material in the environment."""
        versions = set(self.encryption_keys)
        if self.encryption_key:
            versions.update(SHARED_KEY_VERSIONS)
        return sorted(versions)


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()


def resolve_session_secret(settings: Settings) -> str:
    """Get the session signing secret.

    Raises:
        ConfigurationError: If missing or left at the dev default in production
    """
    value = settings.session_secret
    if settings.is_production:
        if not value:
            raise ConfigurationError(
                "Missing required environment variable: SESSION_SECRET. "
                "This must be set in production for security."
            )
        if value == DEV_SESSION_SECRET:
            raise ConfigurationError(
                "Environment variable SESSION_SECRET is using the default development value. "
                "This is insecure in production. Please set a unique value."
            )
        return value

    if not value:
        logger.warning(
            "Environment variable SESSION_SECRET not set. Using default value. "
            "Set this in production for security."
        )
        return DEV_SESSION_SECRET
    return value


def resolve_reset_secret(settings: Settings) -> str:
    """Get the password reset signing secret, falling back to the session secret."""
    if settings.reset_secret:
        return settings.reset_secret

    session_secret = resolve_session_secret(settings)
    if not settings.is_production:
        logger.warning(
            "RESET_SECRET not set. Using SESSION_SECRET as fallback. "
            "Consider setting a separate RESET_SECRET in production."
        )
    return session_secret


def validate_environment(settings: Settings, vault_client: Optional[Any] = None) -> KeyRegistry:
    """Validate security-critical configuration.

    Call at startup so the process refuses to serve requests with a bad
    configuration instead of storing secrets unprotected.

    Returns:
        The validated key registry, for callers that go on to use it

    Raises:
        ConfigurationError: If any setting is missing or insecure
    """
    resolve_session_secret(settings)
    resolve_reset_secret(settings)

    try:
        registry = KeyRegistry.from_settings(settings, vault_client=vault_client)
    except (InvalidKeyError, UnsupportedKeyVersionError) as e:
        raise ConfigurationError(str(e)) from e

    if settings.self_hosted:
        logger.warning(
            "[SECURITY] Running in SELF_HOSTED mode - all subscription and payment checks bypassed. "
            "Never enable SELF_HOSTED on multi-tenant deployments."
        )
    else:
        logger.info("Running in SaaS mode - subscription checks enabled")

    logger.info("Environment variables validated successfully")
    return registry
