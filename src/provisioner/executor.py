"""Per-node convergence.

For one node the executor:
1. renders attributes from the output slots of its references
2. dispatches by kind (secret container, secret version, binding, generic)
3. on the generic path observes remote state and creates, updates or does
   nothing, comparing only the keys the topology declares
4. waits for the remote operation to finish
5. re-reads state and returns the realized outputs

Failures stay on the node: no rollback, no cleanup. An authentication
failure aborts the whole run instead (RunAbortedError).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from .config import EngineSettings
from .errors import (
    ErrorClass,
    ProvisionerError,
    RemoteError,
    RemoteFailure,
    RemoteTransientError,
    RunAbortedError,
)
from .graph import PARENT_ATTRIBUTES, parent_of
from .iam import GrantRequest, IamBindingReconciler
from .interfaces import ControlPlane, Operation
from .model import (
    PROJECT_SCOPE,
    Action,
    DesiredTopology,
    IamBinding,
    NodeOutcome,
    NodeStatus,
    ObservedState,
    OutputSlot,
    Ref,
    ResourceKind,
    ResourceNode,
    render_value,
)
from .observer import StateObserver
from .retry import call_with_retry, wait_for_operation
from .secrets import SecretLifecycleManager

logger = logging.getLogger(__name__)

# Keys never compared between desired and observed state
UNCOMPARED_KEYS = frozenset({"name"})


class UnresolvedOutputError(ProvisionerError):
    """A referenced output is missing from a converged node."""

    pass


def attributes_differ(desired: Mapping[str, Any], observed: Mapping[str, Any]) -> list[str]:
    """Desired keys whose observed value differs. Extra observed keys are ignored."""
    changed = []
    for key, value in desired.items():
        if key in UNCOMPARED_KEYS:
            continue
        current = observed.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            if attributes_differ(value, current):
                changed.append(key)
        elif current != value:
            changed.append(key)
    return sorted(changed)


class ConvergenceExecutor:
    """Converges single nodes against the control plane and the secret store."""

    def __init__(
        self,
        topology: DesiredTopology,
        control_plane: ControlPlane,
        observer: StateObserver,
        iam: IamBindingReconciler,
        secrets: SecretLifecycleManager | None,
        settings: EngineSettings,
    ) -> None:
        self._topology = topology
        self._control_plane = control_plane
        self._observer = observer
        self._iam = iam
        self._secrets = secrets
        self._settings = settings

    async def converge(self, node: ResourceNode, slots: Mapping[str, OutputSlot]) -> NodeOutcome:
        """Converge one node.

        Returns:
            Converged outcome with outputs, or Failed with the cause.

        Raises:
            RunAbortedError: The remote rejected our credentials.
        """
        context = {"node_id": node.id, "kind": node.kind.value}
        try:
            attributes = self.render(node, slots)
            action, outputs = await self._dispatch(node, attributes, slots)
        except RemoteError as e:
            if e.error_class == ErrorClass.UNAUTHENTICATED:
                logger.critical("Authentication failed, aborting run", extra=context)
                raise RunAbortedError(e) from e
            if isinstance(e, RemoteTransientError):
                e = RemoteFailure(e.error_class, str(e))
            logger.error(
                "Node failed",
                extra={**context, "error_class": e.error_class.value, "error": str(e)},
            )
            return NodeOutcome(node.id, NodeStatus.FAILED, error=e)
        except ProvisionerError as e:
            logger.error("Node failed", extra={**context, "error": str(e)})
            return NodeOutcome(node.id, NodeStatus.FAILED, error=e)

        logger.info("Node converged", extra={**context, "action": action.value})
        return NodeOutcome(node.id, NodeStatus.CONVERGED, action=action, outputs=outputs)

    def render(self, node: ResourceNode, slots: Mapping[str, OutputSlot]) -> dict[str, Any]:
        """Substitute every Ref/Template with resolved outputs.

        A plain parent attribute (node id) is replaced by the parent's remote name.
        """

        def lookup(ref: Ref) -> Any:
            slot = slots.get(ref.node_id)
            if slot is None or not slot.is_resolved:
                raise UnresolvedOutputError(
                    f"Node '{node.id}' rendered before '{ref.node_id}' converged"
                )
            if slot.value.get(ref.output) is None:
                raise UnresolvedOutputError(
                    f"Node '{ref.node_id}' has no value for output '{ref.output}' "
                    f"(available: {sorted(k for k, v in slot.value.items() if v is not None)})"
                )
            return slot.value[ref.output]

        rendered = render_value(dict(node.attributes), lookup)
        if node.kind in PARENT_ATTRIBUTES:
            attribute = PARENT_ATTRIBUTES[node.kind][0]
            if not isinstance(node.attributes.get(attribute), Ref):
                rendered[attribute] = self._topology.get(parent_of(node)).identity
        return rendered

    async def _dispatch(
        self,
        node: ResourceNode,
        attributes: dict[str, Any],
        slots: Mapping[str, OutputSlot],
    ) -> tuple[Action, dict[str, Any]]:
        if node.kind == ResourceKind.SECRET:
            return await self._converge_secret(node, attributes)
        if node.kind == ResourceKind.SECRET_VERSION:
            return await self._converge_secret_version(node, attributes)
        if node.kind == ResourceKind.IAM_BINDING:
            return await self._converge_binding(node, attributes, slots)
        return await self._converge_generic(node, attributes)

    def _secret_manager(self) -> SecretLifecycleManager:
        if self._secrets is None:
            raise ProvisionerError("Topology declares secrets but no secret store is configured")
        return self._secrets

    async def _converge_secret(
        self, node: ResourceNode, attributes: dict[str, Any]
    ) -> tuple[Action, dict[str, Any]]:
        labels = {str(k): str(v) for k, v in (attributes.get("labels") or {}).items()}
        remote_id, action = await self._secret_manager().create_secret_if_absent(
            node.identity, labels
        )
        return action, {"name": node.identity, "remote_id": remote_id}

    async def _converge_secret_version(
        self, node: ResourceNode, attributes: dict[str, Any]
    ) -> tuple[Action, dict[str, Any]]:
        secret_name = attributes["secret"]
        value_ref = attributes.get("value_ref")
        if not value_ref:
            raise ProvisionerError(f"SecretVersion '{node.id}' has no value_ref")
        handle = await self._secret_manager().ensure_version(secret_name, str(value_ref))
        action = Action.CREATE if handle.created else Action.NO_OP
        return action, {
            "secret": handle.secret_id,
            "version": handle.version,
            "remote_id": f"{handle.secret_id}/versions/{handle.version}",
        }

    async def _converge_binding(
        self,
        node: ResourceNode,
        attributes: dict[str, Any],
        slots: Mapping[str, OutputSlot],
    ) -> tuple[Action, dict[str, Any]]:
        binding = IamBinding.from_node(node)
        scope = PROJECT_SCOPE
        if not binding.is_project_scoped:
            scope_outputs = slots[binding.scope].value
            scope = str(scope_outputs.get("remote_id") or scope_outputs.get("name"))
        grant = GrantRequest(
            node_id=node.id,
            principal=str(attributes["principal"]),
            role=binding.role,
            scope=scope,
        )
        action = await self._iam.ensure(grant)
        return action, {
            "principal": grant.principal,
            "role": grant.role,
            "scope": grant.scope,
            "blast_radius": grant.blast_radius.value,
        }

    async def _converge_generic(
        self, node: ResourceNode, attributes: dict[str, Any]
    ) -> tuple[Action, dict[str, Any]]:
        context = {"node_id": node.id, "kind": node.kind.value}
        state = await self._observer.observe(node, attributes)

        if not state.exists:
            try:
                await self._mutate(
                    lambda: self._control_plane.create(node.kind, node.identity, attributes),
                    "Create",
                    context,
                )
                return Action.CREATE, await self._realized_outputs(node, attributes)
            except RemoteError as e:
                if e.error_class != ErrorClass.ALREADY_EXISTS:
                    raise
                # Created concurrently or not yet visible on the first read
                logger.info("Resource already exists, re-observing", extra=context)
                self._observer.invalidate(node.id)
                state = await self._observer.observe(node, attributes)
                if not state.exists:
                    raise

        changed = attributes_differ(attributes, state.attributes)
        if not changed:
            return Action.NO_OP, self._outputs(node, state)

        logger.info("Drift detected, updating", extra={**context, "changed_keys": changed})
        remote_id = state.remote_id or node.identity
        await self._mutate(
            lambda: self._control_plane.update(node.kind, remote_id, attributes),
            "Update",
            context,
        )
        return Action.UPDATE, await self._realized_outputs(node, attributes)

    async def _mutate(
        self,
        submit: Callable[[], Awaitable[Operation]],
        description: str,
        context: dict[str, Any],
    ) -> None:
        async def submit_and_wait() -> None:
            operation = await submit()
            await wait_for_operation(
                self._control_plane,
                operation,
                self._settings.poll_policy,
                self._settings.retry,
                context,
            )

        try:
            await call_with_retry(submit_and_wait, self._settings.retry, description, context)
        finally:
            self._observer.invalidate(context["node_id"])

    async def _realized_outputs(
        self, node: ResourceNode, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        state = await self._observer.observe(node, attributes)
        if not state.exists:
            raise RemoteFailure(
                ErrorClass.NOT_FOUND, f"{node.kind.value} '{node.identity}' not visible after apply"
            )
        return self._outputs(node, state)

    @staticmethod
    def _outputs(node: ResourceNode, state: ObservedState) -> dict[str, Any]:
        return {**state.outputs, "name": node.identity, "remote_id": state.remote_id}
