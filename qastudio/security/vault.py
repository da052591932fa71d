"""HashiCorp Vault integration for key material and stored secrets.

Provides:
- KV v2 read, write, list and delete
- Fallback to environment variables for reads when Vault is not authenticated
"""

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class SecretNotFoundError(Exception):
    """Raised when a secret is not found."""

    pass


class VaultConnectionError(Exception):
    """Raised when Vault is unreachable or the client is in fallback mode."""

    pass


@dataclass
class VaultConfig:
    """Configuration for Vault client."""

    url: str = "http://localhost:8200"
    token: Optional[str] = None
    namespace: Optional[str] = None
    verify_ssl: bool = True
    mount_point: str = "secret"

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create config from environment variables."""
        return cls(
            url=os.getenv("VAULT_ADDR", "http://localhost:8200"),
            token=os.getenv("VAULT_TOKEN"),
            namespace=os.getenv("VAULT_NAMESPACE"),
        )

    @classmethod
    def from_settings(cls, settings: "Settings") -> "VaultConfig":
        """Create config from application settings."""
        return cls(
            url=settings.vault_addr,
            token=settings.vault_token,
            namespace=settings.vault_namespace,
            mount_point=settings.vault_mount_point,
        )


class VaultClient:
    """Client for HashiCorp Vault.

    If the token is not authenticated, reads fall back to environment
    variables and writes fail.
    """

    def __init__(self, config: Optional[VaultConfig] = None, client: Optional[Any] = None):
        """Initialize Vault client.

        Args:
            config: Vault configuration
            client: Pre-built hvac client (tests)
        """
        self.config = config or VaultConfig.from_env()
        self._hvac_client = client
        self._connected = False
        self._fallback_mode = False

        self._initialize_client()

    def _initialize_client(self) -> None:
        """Initialize Vault client connection."""
        try:
            if self._hvac_client is None:
                self._hvac_client = hvac.Client(
                    url=self.config.url,
                    token=self.config.token,
                    namespace=self.config.namespace,
                    verify=self.config.verify_ssl,
                )

            if self._hvac_client.is_authenticated():
                self._connected = True
                logger.info("Connected to Vault")
            else:
                logger.warning("Vault token is not authenticated, falling back to env vars")
                self._fallback_mode = True

        except (VaultError, OSError) as e:
            logger.warning(f"Failed to connect to Vault: {e}, using environment variables")
            self._fallback_mode = True

    def read_secret(self, path: str) -> Dict[str, Any]:
        """Read a secret from Vault.

        Args:
            path: Secret path (e.g., "encryption/keys/v2")

        Returns:
            Secret data dictionary

        Raises:
            SecretNotFoundError: If secret doesn't exist
        """
        if self._fallback_mode:
            return self._read_from_env(path)

        try:
            result = self._hvac_client.secrets.kv.v2.read_secret_version(
                path=path,
                mount_point=self.config.mount_point,
                raise_on_deleted_version=True,
            )
        except InvalidPath:
            raise SecretNotFoundError(f"Secret not found: {path}") from None
        return result.get("data", {}).get("data", {})

    def write_secret(self, path: str, data: Dict[str, Any]) -> None:
        """Write a secret to Vault.

        Args:
            path: Secret path
            data: Secret data

        Raises:
            VaultConnectionError: In fallback mode
        """
        self._require_connection(f"write secret {path}")
        self._hvac_client.secrets.kv.v2.create_or_update_secret(
            path=path,
            secret=data,
            mount_point=self.config.mount_point,
        )
        logger.info(f"Secret written: {path}")

    def list_secrets(self, path: str) -> List[str]:
        """List secret names under a path (sub-folders end with "/").

        Raises:
            VaultConnectionError: In fallback mode
        """
        self._require_connection(f"list secrets under {path}")
        try:
            result = self._hvac_client.secrets.kv.v2.list_secrets(
                path=path,
                mount_point=self.config.mount_point,
            )
        except InvalidPath:
            return []
        return list(result.get("data", {}).get("keys", []))

    def delete_secret(self, path: str) -> bool:
        """Delete a secret and all its versions.

        Returns:
            True if successful
        """
        if self._fallback_mode:
            return False

        try:
            self._hvac_client.secrets.kv.v2.delete_metadata_and_all_versions(
                path=path,
                mount_point=self.config.mount_point,
            )
        except VaultError as e:
            logger.error(f"Failed to delete secret {path}: {e}")
            return False
        logger.info(f"Secret deleted: {path}")
        return True

    def _require_connection(self, action: str) -> None:
        if self._fallback_mode:
            raise VaultConnectionError(f"Cannot {action}: Vault is in fallback mode")

    def _read_from_env(self, path: str) -> Dict[str, Any]:
        """Read secret from environment variables.

        Converts path to environment variable name:
        "encryption/keys/v2" -> "ENCRYPTION_KEYS_V2", then "ENCRYPTION_KEY_V2"
        """
        env_key = path.upper().replace("/", "_").replace("-", "_")

        value = os.getenv(env_key)
        if value:
            return {"key": value}

        for suffix in ["_KEY", "_SECRET", "_TOKEN"]:
            value = os.getenv(f"{env_key}{suffix}")
            if value:
                return {"key": value}

        if path.startswith("encryption/keys/"):
            version = path.rsplit("/", 1)[-1].upper()
            value = os.getenv(f"ENCRYPTION_KEY_{version}")
            if value:
                return {"key": value}

        raise SecretNotFoundError(f"Secret not found: {path}")

    @property
    def is_connected(self) -> bool:
        """Check if connected to Vault."""
        return self._connected

    @property
    def is_fallback_mode(self) -> bool:
        """Check if using fallback mode."""
        return self._fallback_mode
