"""Least-privilege access bindings.

The role catalog states, for every role the topology may grant, which
resource kind it is scoped to. Roles with a resource scope must be bound to
a node of that kind; binding them to the whole project is rejected before
any remote call (OverBroadScope). Project-only roles may only be bound to
"project".

Reconciliation is additive: present grants are left alone, missing grants
are issued, nothing is ever revoked.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from .config import RetryPolicy
from .errors import ConfigurationError, ConfigurationErrorKind, ErrorClass, RemoteError
from .interfaces import ControlPlane
from .model import PROJECT_SCOPE, Action, IamBinding, ResourceKind
from .retry import call_with_retry, wait_for_operation
from .security import log_security_audit_event, mask_identifier

logger = logging.getLogger(__name__)


class BlastRadius(str, Enum):
    """How much a grant exposes."""

    RESOURCE = "resource"
    PROJECT = "project"


@dataclass(frozen=True)
class RoleDefinition:
    """A grantable role. scope_kind None means project-only."""

    name: str
    scope_kind: ResourceKind | None
    description: str = ""

    @property
    def is_project_only(self) -> bool:
        return self.scope_kind is None


ROLE_CATALOG: dict[str, RoleDefinition] = {
    role.name: role
    for role in (
        RoleDefinition("registry-reader", ResourceKind.REGISTRY, "Pull images"),
        RoleDefinition("registry-writer", ResourceKind.REGISTRY, "Push images"),
        RoleDefinition("secret-accessor", ResourceKind.SECRET, "Read secret versions"),
        RoleDefinition("service-invoker", ResourceKind.COMPUTE_SERVICE, "Invoke the service"),
        RoleDefinition("database-client", None, "Connect to database instances"),
        RoleDefinition("log-writer", None, "Write log entries"),
        RoleDefinition("metric-writer", None, "Write metric points"),
    )
}


def validate_binding(
    node_id: str,
    binding: IamBinding,
    node_kinds: Mapping[str, ResourceKind],
) -> RoleDefinition:
    """Check a binding against the role catalog.

    Args:
        node_id: Id of the IamBinding node (for error reporting).
        binding: The declared binding.
        node_kinds: Kind of every declared node, by id.

    Returns:
        The matched role definition.

    Raises:
        ConfigurationError: InvalidBinding, OverBroadScope or
            UnresolvedReference.
    """
    if not binding.principal:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_BINDING,
            f"Binding '{node_id}' has no principal",
            [node_id],
        )

    role = ROLE_CATALOG.get(binding.role)
    if role is None:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_BINDING,
            f"Binding '{node_id}' uses unknown role '{binding.role}'. "
            f"Known roles: {sorted(ROLE_CATALOG)}",
            [node_id],
        )

    if binding.is_project_scoped:
        if not role.is_project_only:
            raise ConfigurationError(
                ConfigurationErrorKind.OVERBROAD_SCOPE,
                f"Binding '{node_id}' grants '{role.name}' on the whole project; "
                f"scope it to a {role.scope_kind.value} node instead",
                [node_id],
            )
        return role

    if binding.scope not in node_kinds:
        raise ConfigurationError(
            ConfigurationErrorKind.UNRESOLVED_REFERENCE,
            f"Binding '{node_id}' is scoped to undeclared node '{binding.scope}'",
            [node_id, binding.scope],
        )

    if role.is_project_only:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_BINDING,
            f"Role '{role.name}' can only be bound to '{PROJECT_SCOPE}'",
            [node_id, binding.scope],
        )

    scope_kind = node_kinds[binding.scope]
    if scope_kind != role.scope_kind:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_BINDING,
            f"Role '{role.name}' applies to {role.scope_kind.value} nodes, "
            f"but '{binding.scope}' is a {scope_kind.value}",
            [node_id, binding.scope],
        )
    return role


@dataclass(frozen=True)
class GrantRequest:
    """A binding with its principal and scope resolved to remote identifiers."""

    node_id: str
    principal: str
    role: str
    scope: str  # remote id of the scope resource, or "project"

    @property
    def blast_radius(self) -> BlastRadius:
        if self.scope == PROJECT_SCOPE:
            return BlastRadius.PROJECT
        return BlastRadius.RESOURCE


class IamBindingReconciler:
    """Grants missing bindings; never revokes."""

    def __init__(
        self,
        control_plane: ControlPlane,
        retry_policy: RetryPolicy,
        poll_policy: RetryPolicy,
    ) -> None:
        self._control_plane = control_plane
        self._retry_policy = retry_policy
        self._poll_policy = poll_policy

    async def reconcile(self, grants: Iterable[GrantRequest]) -> dict[GrantRequest, Action]:
        """Ensure every grant is present.

        Returns:
            The action taken per grant (Create or NoOp).

        Raises:
            RemoteError: The first grant that could not be read or issued.
        """
        actions: dict[GrantRequest, Action] = {}
        for grant in grants:
            actions[grant] = await self.ensure(grant)
        return actions

    async def ensure(self, grant: GrantRequest) -> Action:
        context = {
            "node_id": grant.node_id,
            "role": grant.role,
            "scope": grant.scope,
            "principal": mask_identifier(grant.principal, visible=16),
        }

        present = await call_with_retry(
            lambda: self._control_plane.has_binding(grant.scope, grant.principal, grant.role),
            self._retry_policy,
            "Binding lookup",
            context,
        )
        if present:
            logger.debug("Binding already present", extra=context)
            return Action.NO_OP

        try:
            operation = await call_with_retry(
                lambda: self._control_plane.bind_policy(grant.scope, grant.principal, grant.role),
                self._retry_policy,
                "Binding grant",
                context,
            )
            if operation is not None:
                await wait_for_operation(
                    self._control_plane,
                    operation,
                    self._poll_policy,
                    self._retry_policy,
                    context,
                )
        except RemoteError as e:
            if e.error_class == ErrorClass.ALREADY_EXISTS:
                # Granted concurrently or not yet visible to has_binding
                self._audit(grant, "already_present", "success")
                return Action.NO_OP
            self._audit(
                grant,
                "grant",
                "denied" if e.error_class == ErrorClass.PERMISSION_DENIED else "failure",
            )
            raise

        self._audit(grant, "granted", "success")
        return Action.CREATE

    def _audit(self, grant: GrantRequest, action: str, result: str) -> None:
        log_security_audit_event(
            event_type="iam_grant",
            node_id=grant.node_id,
            target_resource=grant.scope,
            action=f"{action}:{grant.role}",
            result=result,
            blast_radius=grant.blast_radius.value,
        )
