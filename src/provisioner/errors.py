"""Error taxonomy for the convergence engine.

Errors fall into three groups:
1. ConfigurationError - the desired topology (or the engine settings) is
   invalid. Raised before any remote call; fatal to the whole run.
2. RemoteError - a control-plane or secret-store call failed. Transient
   classes are retried, everything else stays local to the failing node.
3. RunAbortedError - a run-wide fatal condition (authentication failure)
   that makes continuing pointless.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class ProvisionerError(Exception):
    """Base class for all provisioner errors."""

    pass


class ConfigurationErrorKind(str, Enum):
    """Why a topology or settings object was rejected."""

    CYCLIC_DEPENDENCY = "CyclicDependency"
    UNRESOLVED_REFERENCE = "UnresolvedReference"
    DUPLICATE_NODE = "DuplicateNode"
    OVERBROAD_SCOPE = "OverBroadScope"
    INVALID_BINDING = "InvalidBinding"
    SECRET_REFERENCED_BEFORE_DECLARED = "SecretReferencedBeforeDeclared"
    MISSING_PARENT = "MissingParent"
    SECRET_EXPOSURE = "SecretExposure"
    INVALID_TOPOLOGY = "InvalidTopology"
    INVALID_SETTING = "InvalidSetting"


class ConfigurationError(ProvisionerError):
    """Raised when the desired topology or the engine settings are invalid."""

    def __init__(
        self,
        kind: ConfigurationErrorKind,
        message: str,
        involved_nodes: Iterable[str] = (),
    ) -> None:
        self.kind = kind
        self.involved_nodes: tuple[str, ...] = tuple(involved_nodes)
        super().__init__(f"{kind.value}: {message}")


class ErrorClass(str, Enum):
    """Error classes surfaced by the control plane and the secret store."""

    TRANSIENT = "Transient"
    PERMISSION_DENIED = "PermissionDenied"
    QUOTA_EXCEEDED = "QuotaExceeded"
    INVALID_ARGUMENT = "InvalidArgument"
    ALREADY_EXISTS = "AlreadyExists"
    NOT_FOUND = "NotFound"
    UNAUTHENTICATED = "Unauthenticated"


class RemoteError(ProvisionerError):
    """A remote call failed with a classified error."""

    def __init__(self, error_class: ErrorClass, message: str) -> None:
        self.error_class = error_class
        super().__init__(f"{error_class.value}: {message}")


class RemoteTransientError(RemoteError):
    """Retryable failure (rate limit, brief unavailability, quota back-pressure)."""

    def __init__(self, message: str, error_class: ErrorClass = ErrorClass.TRANSIENT) -> None:
        super().__init__(error_class, message)


class RemoteFailure(RemoteError):
    """Non-retryable failure; marks the node Failed."""

    pass


class OperationTimeoutError(RemoteFailure):
    """A remote operation did not reach a terminal status within the poll limit."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorClass.TRANSIENT, message)


class RunAbortedError(ProvisionerError):
    """Run-wide fatal failure (authentication). Stops the scheduler."""

    def __init__(self, cause: RemoteError) -> None:
        self.cause = cause
        super().__init__(f"Run aborted: {cause}")


def classify(error_class: ErrorClass, message: str) -> RemoteError:
    """Build the exception type matching an error class.

    Transient and quota errors are returned as RemoteTransientError so the
    retry policy can decide whether to retry them; the rest are failures.
    """
    if error_class in (ErrorClass.TRANSIENT, ErrorClass.QUOTA_EXCEEDED):
        return RemoteTransientError(message, error_class=error_class)
    return RemoteFailure(error_class, message)
