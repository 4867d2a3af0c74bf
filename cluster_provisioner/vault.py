"""Minimal client for the Vault system HTTP API."""

import requests

from cluster_provisioner.exceptions import ProviderAPIError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

VAULT_NAMESPACE = "vault"
VAULT_POD = "vault-0"
VAULT_PORT = 8200
UNSEAL_SECRET_NAME = "vault-unseal-secret"

DEFAULT_SECRET_SHARES = 5
DEFAULT_SECRET_THRESHOLD = 3


class VaultClient:
    """Talks to one Vault server, usually through a local port forward."""

    def __init__(self, address: str, session: requests.Session | None = None, timeout: int = 30):
        self.address = address.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.address}/v1/{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderAPIError(f"Vault request {method} {path} failed: {e}")
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"Vault request {method} {path} failed: HTTP {response.status_code}", response.text
            )
        return response.json() if response.content else {}

    def seal_status(self) -> dict:
        return self._request("GET", "sys/seal-status")

    def initialize(
        self, secret_shares: int = DEFAULT_SECRET_SHARES, secret_threshold: int = DEFAULT_SECRET_THRESHOLD
    ) -> dict:
        """Initialize Vault and return its unseal keys and root token."""
        logger.info("Initializing vault")
        return self._request(
            "PUT",
            "sys/init",
            {"secret_shares": secret_shares, "secret_threshold": secret_threshold},
        )

    def unseal(self, keys: list[str]) -> None:
        """Submit unseal keys until Vault reports it is unsealed.

        Raises:
            ProviderAPIError: If Vault is still sealed after all keys
        """
        for key in keys:
            status = self._request("PUT", "sys/unseal", {"key": key})
            if not status.get("sealed", True):
                logger.info("Vault unsealed")
                return
        raise ProviderAPIError("Vault is still sealed after submitting all unseal keys")
