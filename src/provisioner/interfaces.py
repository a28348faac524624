"""Narrow interfaces to the remote collaborators.

The engine never talks to a cloud SDK directly. Adapters implement these
protocols (see azure_control_plane.py and keyvault_store.py); tests use
in-memory fakes.

All methods are coroutines. Failures are raised as RemoteError subclasses
carrying an ErrorClass (see errors.classify).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .errors import ErrorClass
from .model import ObservedState, ResourceKind


class OperationState(str, Enum):
    """Remote operation status."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class Operation:
    """Handle to a (possibly long-running) remote operation."""

    remote_id: str
    kind: ResourceKind | None = None
    handle: Any = None


@dataclass(frozen=True)
class OperationStatus:
    """Result of polling an Operation."""

    state: OperationState
    error_class: ErrorClass | None = None
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state != OperationState.PENDING

    @classmethod
    def succeeded(cls) -> OperationStatus:
        return cls(OperationState.SUCCEEDED)

    @classmethod
    def pending(cls) -> OperationStatus:
        return cls(OperationState.PENDING)

    @classmethod
    def failed(cls, error_class: ErrorClass, message: str = "") -> OperationStatus:
        return cls(OperationState.FAILED, error_class=error_class, message=message)


@runtime_checkable
class ControlPlane(Protocol):
    """Per-kind CRUD plus policy binding against the target environment."""

    async def get(
        self, kind: ResourceKind, identity: str, attributes: Mapping[str, Any]
    ) -> ObservedState:
        """Return remote state; ObservedState(exists=False) when not found."""
        ...

    async def create(
        self, kind: ResourceKind, identity: str, attributes: Mapping[str, Any]
    ) -> Operation: ...

    async def update(
        self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]
    ) -> Operation: ...

    async def poll(self, operation: Operation) -> OperationStatus: ...

    async def has_binding(self, scope: str, principal: str, role: str) -> bool: ...

    async def bind_policy(self, scope: str, principal: str, role: str) -> Operation | None:
        """Grant role to principal on scope. Returns None if applied synchronously."""
        ...


@runtime_checkable
class SecretStore(Protocol):
    """Secret container and version storage.

    Plaintext only crosses this boundary in add_version (in) and
    access_version (out), and only the Secret Lifecycle Manager calls them.
    """

    async def secret_exists(self, secret_id: str) -> str | None:
        """Return the remote id of the secret container, or None if absent."""
        ...

    async def create_container(self, secret_id: str, labels: Mapping[str, str]) -> str: ...

    async def list_versions(self, secret_id: str) -> list[str]:
        """Version ids, oldest first."""
        ...

    async def add_version(self, secret_id: str, plaintext: str) -> str: ...

    async def access_version(self, secret_id: str, version: str) -> str: ...
