"""Credential acquisition and security audit logging.

The provisioner authenticates only with a managed identity. A process that
carries service principal secrets or passwords in its environment refuses
to start, so the tool that creates secrets never holds one of its own.

Grants and secret writes are audit-logged through log_security_audit_event
with structured fields only; secret values never reach a log record.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

from .errors import ProvisionerError

logger = logging.getLogger(__name__)

# Environment variables that carry credential material
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable detected: {env_var}. "
    "The provisioner authenticates with a managed identity only; remove the "
    "variable and assign a user-assigned managed identity to the runtime."
)


class SecretlessViolationError(ProvisionerError):
    """A credential-bearing environment variable is present. Fatal at startup."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to run when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless environment violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless environment verified",
        extra={"security_event": "secretless_verified", "credential_type": "ManagedIdentity"},
    )


def mask_identifier(value: str, visible: int = 8) -> str:
    """Shorten an identifier (client id, principal) for log output."""
    if len(value) <= visible:
        return value
    return value[:visible] + "..."


def get_managed_identity_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Return a ManagedIdentityCredential after checking the environment.

    Args:
        client_id: Client id of a user-assigned identity. None selects the
            system-assigned identity.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_environment()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": mask_identifier(client_id)},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    node_id: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
    blast_radius: str | None = None,
) -> None:
    """Log a security-relevant event (grant, secret container, secret version).

    Args:
        event_type: Event category, e.g. "iam_grant" or "secret_version".
        node_id: Topology node that caused the event.
        target_resource: Scope or secret the event touched.
        action: What was done (granted, already_present, created, skipped).
        result: success, failure or denied.
        blast_radius: "resource" or "project" for grants.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "node_id": node_id,
            "target_resource": target_resource,
            "action": action,
            "result": result,
            "blast_radius": blast_radius,
        },
    )
