"""Azure Key Vault implementation of the SecretStore protocol.

Key Vault has no empty secret containers: a secret exists once it has a
version. create_container therefore writes a disabled placeholder version
tagged with PLACEHOLDER_TAG; list_versions never reports it, so the secret
counts as existing but without versions until real material is added.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from azure.keyvault.secrets import SecretClient

from .azure_support import run_blocking
from .config import AzureSettings
from .errors import ErrorClass, RemoteFailure

logger = logging.getLogger(__name__)

PLACEHOLDER_TAG = "provisioner-placeholder"
PLACEHOLDER_VALUE = "placeholder"
MANAGED_BY_TAG = "managed-by"
MANAGED_BY_VALUE = "topology-provisioner"

_EPOCH = datetime.min.replace(tzinfo=UTC)


class KeyVaultSecretStore:
    """SecretStore backed by one Key Vault."""

    def __init__(self, settings: AzureSettings, credential: Any) -> None:
        if not settings.key_vault_url:
            raise ValueError("KEY_VAULT_URL is required for the Key Vault secret store")
        self._settings = settings
        self._client = SecretClient(vault_url=settings.key_vault_url, credential=credential)

    def remote_id(self, secret_id: str) -> str:
        """ARM id of the secret; usable as a role assignment scope."""
        return f"{self._settings.key_vault_resource_id}/secrets/{secret_id}"

    async def secret_exists(self, secret_id: str) -> str | None:
        versions = await self._version_properties(secret_id)
        if not versions:
            return None
        return self.remote_id(secret_id)

    async def create_container(self, secret_id: str, labels: Mapping[str, str]) -> str:
        tags = {**labels, PLACEHOLDER_TAG: "true", MANAGED_BY_TAG: MANAGED_BY_VALUE}
        await run_blocking(
            lambda: self._client.set_secret(
                secret_id,
                PLACEHOLDER_VALUE,
                enabled=False,
                tags=tags,
                content_type=PLACEHOLDER_TAG,
            ),
            self._settings.call_timeout_seconds,
            "Secret container creation",
        )
        logger.info("Created secret container", extra={"secret_id": secret_id})
        return self.remote_id(secret_id)

    async def list_versions(self, secret_id: str) -> list[str]:
        versions = [
            props
            for props in await self._version_properties(secret_id)
            if not (props.tags or {}).get(PLACEHOLDER_TAG)
        ]
        versions.sort(key=lambda props: props.created_on or _EPOCH)
        return [props.version for props in versions]

    async def add_version(self, secret_id: str, plaintext: str) -> str:
        secret = await run_blocking(
            lambda: self._client.set_secret(
                secret_id, plaintext, tags={MANAGED_BY_TAG: MANAGED_BY_VALUE}
            ),
            self._settings.call_timeout_seconds,
            "Secret version write",
        )
        return secret.properties.version

    async def access_version(self, secret_id: str, version: str) -> str:
        secret = await run_blocking(
            lambda: self._client.get_secret(secret_id, version),
            self._settings.call_timeout_seconds,
            "Secret version read",
        )
        return secret.value or ""

    async def _version_properties(self, secret_id: str) -> list[Any]:
        try:
            return await run_blocking(
                lambda: list(self._client.list_properties_of_secret_versions(secret_id)),
                self._settings.call_timeout_seconds,
                "Secret version listing",
            )
        except RemoteFailure as e:
            if e.error_class == ErrorClass.NOT_FOUND:
                return []
            raise
