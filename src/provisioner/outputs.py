"""Final outputs of a converged topology.

Pure: reads resolved output slots only. Secret nodes never contribute, the
graph builder already rejects output templates that reference them.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .errors import ProvisionerError
from .model import SECRET_KINDS, DesiredTopology, OutputSlot, Ref, ResourceKind

# kind -> (output name, slot keys tried in order)
DEFAULT_OUTPUTS: dict[ResourceKind, tuple[str, tuple[str, ...]]] = {
    ResourceKind.REGISTRY: ("registry_push_path", ("push_path", "login_server")),
    ResourceKind.COMPUTE_SERVICE: ("service_endpoint", ("uri",)),
    ResourceKind.SQL_INSTANCE: ("database_connection", ("connection_name",)),
}


class OutputResolutionError(ProvisionerError):
    """An output references a slot that is pending or lacks the value."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(message)


def resolve_outputs(topology: DesiredTopology, slots: Mapping[str, OutputSlot]) -> dict[str, str]:
    """Default outputs per kind plus the topology's declared output templates.

    Default names get a `_<node id>` suffix when the topology holds more
    than one node of the kind. Declared outputs win on name clashes.
    """
    outputs: dict[str, str] = {}

    for kind, (name, keys) in DEFAULT_OUTPUTS.items():
        nodes = topology.by_kind(kind)
        for node in nodes:
            slot = slots.get(node.id)
            if slot is None or not slot.is_resolved:
                continue
            value = _first_present(slot.value, keys)
            if value is None:
                continue
            output_name = name if len(nodes) == 1 else f"{name}_{node.id}"
            outputs[output_name] = str(value)

    secret_nodes = {node.id for node in topology.nodes if node.kind in SECRET_KINDS}

    def lookup(ref: Ref) -> Any:
        if ref.node_id in secret_nodes:
            raise OutputResolutionError(
                ref.node_id, f"Output may not reference secret node '{ref.node_id}'"
            )
        slot = slots.get(ref.node_id)
        if slot is None or not slot.is_resolved:
            raise OutputResolutionError(ref.node_id, f"Node '{ref.node_id}' has not converged")
        if slot.value.get(ref.output) is None:
            raise OutputResolutionError(
                ref.node_id, f"Node '{ref.node_id}' has no value for output '{ref.output}'"
            )
        return slot.value[ref.output]

    for name, template in sorted(topology.outputs.items()):
        outputs[name] = template.render(lookup)
    return outputs


def _first_present(values: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if values.get(key):
            return values[key]
    return None
