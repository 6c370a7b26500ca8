"""
Vault Client for DataSync

Fetches the SQL Server login from HashiCorp Vault so that profiles do not
have to carry passwords.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

import hvac
from hvac.exceptions import InvalidPath, VaultError

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = "sqlserver-credentials"
REQUIRED_CREDENTIAL_KEYS = ("username", "password")


@dataclass
class HealthStatus:
    """
    Health of the Vault connection.

    Attributes:
        healthy: True if authenticated and unsealed
        authenticated: Whether the token is accepted
        sealed: Whether Vault is sealed
        error: Error message if the check failed
    """

    healthy: bool
    authenticated: bool
    sealed: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.healthy


class VaultClient:
    """Reads secrets from a KV v2 engine."""

    def __init__(
        self,
        vault_url: Optional[str] = None,
        vault_token: Optional[str] = None,
        verify_ssl: bool = True,
        mount_point: str = "secret"
    ):
        """
        Initialize Vault client.

        Args:
            vault_url: Vault server URL (defaults to VAULT_ADDR env var)
            vault_token: Vault token (defaults to VAULT_TOKEN env var)
            verify_ssl: Whether to verify SSL certificates
            mount_point: KV secrets engine mount point

        Raises:
            ValueError: If the URL or token is missing
            VaultError: If Vault rejects the token or is unreachable
        """
        self.vault_url = vault_url or os.getenv("VAULT_ADDR")
        self.vault_token = vault_token or os.getenv("VAULT_TOKEN")
        self.mount_point = mount_point

        if not self.vault_url:
            raise ValueError("Vault URL must be provided via parameter or VAULT_ADDR environment variable")

        if not self.vault_token:
            raise ValueError("Vault token must be provided via parameter or VAULT_TOKEN environment variable")

        try:
            self.client = hvac.Client(url=self.vault_url, token=self.vault_token, verify=verify_ssl)

            if not self.client.is_authenticated():
                raise VaultError("Failed to authenticate with Vault")

            logger.info(f"Connected to Vault at {self.vault_url}")

        except Exception as e:
            logger.error(f"Failed to initialize Vault client: {e}")
            raise VaultError(f"Vault initialization failed: {e}")

    def get_secret(self, path: str) -> Dict[str, Any]:
        """
        Read a secret.

        Args:
            path: Secret path relative to the mount point

        Returns:
            Secret data

        Raises:
            InvalidPath: If nothing is stored at the path
            VaultError: If the read fails
        """
        try:
            logger.debug(f"Reading secret {self.mount_point}/{path}")
            response = self.client.secrets.kv.v2.read_secret_version(path=path, mount_point=self.mount_point)

            if not response or "data" not in response:
                raise InvalidPath(f"No data found at path: {path}")

            return response["data"].get("data", {})

        except InvalidPath:
            logger.error(f"Secret not found at path: {path}")
            raise
        except Exception as e:
            logger.error(f"Failed to read secret {path}: {e}")
            raise VaultError(f"Secret retrieval failed: {e}")

    def get_database_credentials(self, path: str = DEFAULT_CREDENTIALS_PATH) -> Dict[str, str]:
        """
        Read the SQL Server login.

        Args:
            path: Secret path holding ``username`` and ``password``

        Returns:
            Credentials dictionary (may also carry ``server``/``database``)

        Raises:
            VaultError: If the secret lacks a username or password
        """
        credentials = self.get_secret(path)

        missing = [key for key in REQUIRED_CREDENTIAL_KEYS if not credentials.get(key)]
        if missing:
            raise VaultError(f"Secret {path} is missing {', '.join(missing)}")

        logger.info(f"Retrieved SQL Server credentials from {path}")
        return credentials

    def health_check(self) -> HealthStatus:
        """Check that Vault is reachable, unsealed and accepts the token."""
        try:
            if not self.client.is_authenticated():
                logger.warning("Vault authentication check failed")
                return HealthStatus(healthy=False, authenticated=False, sealed=True, error="Not authenticated")

            health = self.client.sys.read_health_status(method="GET")
            sealed = health.get("sealed", True) if isinstance(health, dict) else True

            return HealthStatus(
                healthy=not sealed,
                authenticated=True,
                sealed=sealed,
                error=None if not sealed else "Vault is sealed"
            )

        except Exception as e:
            logger.error(f"Vault health check failed: {e}")
            return HealthStatus(healthy=False, authenticated=False, sealed=True, error=str(e))

    def close(self):
        """Drop the client."""
        self.client = None
        logger.debug("Vault client closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
