"""KMS providers: where the master key comes from.

- :class:`VaultKmsProvider` fetches the key from a HashiCorp Vault KV v2 path
  and keeps it in process memory after the first successful fetch.
- :class:`EnvKmsProvider` takes a 64-hex-char key from configuration
  (dev / self-hosted).

:func:`create_kms_provider` never falls back to an insecure default.
"""

from __future__ import annotations

import re

import httpx
import structlog

from stepiq.core.config import KMSConfig
from stepiq.core.exceptions import ConfigurationError, KMSError
from stepiq.core.protocols import IKmsProvider
from stepiq.vault.crypto import KEY_LENGTH

logger = structlog.get_logger(__name__)

_HEX_KEY_RE = re.compile(rf"^[0-9a-fA-F]{{{KEY_LENGTH * 2}}}$")


def parse_hex_key(value: str, source: str = "master key") -> bytes:
    """Decode a 64-hex-char key, rejecting anything else."""
    if not _HEX_KEY_RE.match(value.strip()):
        raise ConfigurationError(
            f"{source} must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex chars)"
        )
    return bytes.fromhex(value.strip())


class EnvKmsProvider:
    """IKmsProvider backed by a configured hex key. Validated at construction."""

    def __init__(self, hex_key: str | None, source: str = "STEPIQ_KMS_MASTER_KEY") -> None:
        if not hex_key:
            raise ConfigurationError(
                f"{source} is required ({KEY_LENGTH * 2} hex chars)"
            )
        self._key = parse_hex_key(hex_key, source)

    def get_master_key(self, version: int | None = None) -> bytes:
        return self._key


class VaultKmsProvider:
    """IKmsProvider backed by Vault over HTTP with a bearer token.

    The raw key is cached for the lifetime of the process once fetched.
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        secret_path: str = "secret/data/stepiq/master-key",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not token:
            raise ConfigurationError("Vault token is required for Vault KMS provider")
        self._endpoint = endpoint.rstrip("/")
        self._token = token
        self._secret_path = secret_path.strip("/")
        self._client = client or httpx.Client(timeout=timeout)
        self._cached_key: bytes | None = None

    def get_master_key(self, version: int | None = None) -> bytes:
        if self._cached_key is not None:
            return self._cached_key

        url = f"{self._endpoint}/v1/{self._secret_path}"
        try:
            response = self._client.get(url, headers={"Authorization": f"Bearer {self._token}"})
        except httpx.HTTPError as exc:
            raise KMSError(f"Vault request failed: {exc}") from exc

        if response.status_code >= 400:
            raise KMSError(
                f"Vault error ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        hex_key = (response.json().get("data") or {}).get("data", {}).get("key")
        if not hex_key:
            raise KMSError(f"Master key not found at Vault path: {self._secret_path}")

        try:
            key = parse_hex_key(hex_key, "Vault master key")
        except ConfigurationError as exc:
            raise KMSError(str(exc)) from exc

        self._cached_key = key
        logger.info("kms_master_key_cached", provider="vault", path=self._secret_path)
        return key


def create_kms_provider(config: KMSConfig | None = None) -> IKmsProvider:
    """Vault when address + token are set, else env key, else fail."""
    if config is None:
        config = KMSConfig()

    if config.vault_addr and config.vault_token:
        return VaultKmsProvider(
            endpoint=config.vault_addr,
            token=config.vault_token,
            secret_path=config.vault_secret_path,
            timeout=config.vault_timeout,
        )
    if config.master_key:
        return EnvKmsProvider(config.master_key)
    raise ConfigurationError(
        "No KMS provider configured. Set STEPIQ_KMS_VAULT_ADDR + STEPIQ_KMS_VAULT_TOKEN "
        "(Vault) or STEPIQ_KMS_MASTER_KEY (dev)."
    )
