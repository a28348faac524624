"""Secret containers and versions.

This is the only module that handles secret plaintext. Values travel as
pydantic SecretStr, are compared in constant time against the latest stored
version, and never appear in logs, outputs or results. Callers receive
SecretVersionHandle objects, which carry version ids only.

Value sources (`value_ref` on SecretVersion nodes):
    env:NAME        value of environment variable NAME
    file:/path      file content, trailing newline stripped
    generate:LEN    random URL-safe value of LEN characters, created only
                    when the secret has no version yet
"""

from __future__ import annotations

import hmac
import logging
import os
import secrets
from collections.abc import Mapping
from pathlib import Path

from pydantic import SecretStr

from .config import RetryPolicy
from .errors import ProvisionerError
from .interfaces import SecretStore
from .model import Action, SecretVersionHandle
from .retry import call_with_retry
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "topology-provisioner"

MIN_GENERATED_LENGTH = 16
MAX_GENERATED_LENGTH = 256


class SecretSourceError(ProvisionerError):
    """A value_ref could not be resolved to a value."""

    pass


class SecretLifecycleManager:
    """Creates secret containers and adds versions without duplicating them."""

    def __init__(self, store: SecretStore, retry_policy: RetryPolicy) -> None:
        self._store = store
        self._retry_policy = retry_policy

    async def create_secret_if_absent(
        self, secret_id: str, labels: Mapping[str, str] | None = None
    ) -> tuple[str, Action]:
        """Ensure the secret container exists.

        Returns:
            (remote_id, Create | NoOp)
        """
        context = {"secret_id": secret_id}
        remote_id = await call_with_retry(
            lambda: self._store.secret_exists(secret_id),
            self._retry_policy,
            "Secret lookup",
            context,
        )
        if remote_id is not None:
            return remote_id, Action.NO_OP

        all_labels = {**(labels or {}), MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        remote_id = await call_with_retry(
            lambda: self._store.create_container(secret_id, all_labels),
            self._retry_policy,
            "Secret container creation",
            context,
        )
        log_security_audit_event(
            event_type="secret_container",
            node_id=secret_id,
            target_resource=remote_id,
            action="created",
            result="success",
        )
        return remote_id, Action.CREATE

    async def latest(self, secret_id: str) -> SecretVersionHandle | None:
        versions = await self._list_versions(secret_id)
        if not versions:
            return None
        return SecretVersionHandle(secret_id=secret_id, version=versions[-1])

    async def add_version(self, secret_id: str, value: SecretStr) -> SecretVersionHandle:
        """Add value as a new version unless it equals the latest version.

        Returns:
            Handle of the new version (created=True) or of the equal latest
            version (created=False).
        """
        latest = await self.latest(secret_id)
        if latest is not None:
            current = await call_with_retry(
                lambda: self._store.access_version(secret_id, latest.version),
                self._retry_policy,
                "Secret version read",
                {"secret_id": secret_id},
            )
            if hmac.compare_digest(
                current.encode("utf-8"), value.get_secret_value().encode("utf-8")
            ):
                logger.debug(
                    "Secret value unchanged, no new version",
                    extra={"secret_id": secret_id, "version": latest.version},
                )
                return latest

        version = await call_with_retry(
            lambda: self._store.add_version(secret_id, value.get_secret_value()),
            self._retry_policy,
            "Secret version write",
            {"secret_id": secret_id},
        )
        log_security_audit_event(
            event_type="secret_version",
            node_id=secret_id,
            target_resource=secret_id,
            action=f"added:{version}",
            result="success",
        )
        return SecretVersionHandle(secret_id=secret_id, version=version, created=True)

    async def ensure_version(self, secret_id: str, value_ref: str) -> SecretVersionHandle:
        """Resolve value_ref and add it as a version when it differs from the latest.

        Generated values are only created for a secret without versions, so a
        second run keeps the first generated value.
        """
        source, _, argument = value_ref.partition(":")
        if source == "generate":
            latest = await self.latest(secret_id)
            if latest is not None:
                return latest
            return await self.add_version(secret_id, _generate_value(argument))
        return await self.add_version(secret_id, resolve_value_ref(value_ref))

    async def _list_versions(self, secret_id: str) -> list[str]:
        return await call_with_retry(
            lambda: self._store.list_versions(secret_id),
            self._retry_policy,
            "Secret version listing",
            {"secret_id": secret_id},
        )


def resolve_value_ref(value_ref: str) -> SecretStr:
    """Read the value behind an env: or file: reference.

    Raises:
        SecretSourceError: Unknown source, missing variable or unreadable file.
    """
    source, _, argument = value_ref.partition(":")
    if not argument:
        raise SecretSourceError(f"Malformed value reference '{value_ref}'")

    if source == "env":
        value = os.environ.get(argument)
        if value is None:
            raise SecretSourceError(f"Environment variable {argument} is not set")
        return SecretStr(value)

    if source == "file":
        try:
            return SecretStr(Path(argument).read_text(encoding="utf-8").rstrip("\n"))
        except OSError as e:
            raise SecretSourceError(f"Cannot read secret file {argument}: {e.strerror}") from e

    if source == "generate":
        return _generate_value(argument)

    raise SecretSourceError(f"Unknown value source '{source}' (expected env, file or generate)")


def _generate_value(length: str) -> SecretStr:
    try:
        size = int(length)
    except ValueError as e:
        raise SecretSourceError(f"generate length must be an integer: {length}") from e
    if not (MIN_GENERATED_LENGTH <= size <= MAX_GENERATED_LENGTH):
        raise SecretSourceError(
            f"generate length must be between {MIN_GENERATED_LENGTH} and {MAX_GENERATED_LENGTH}"
        )
    return SecretStr(secrets.token_urlsafe(size)[:size])
