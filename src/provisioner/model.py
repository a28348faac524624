"""Resource model for the fixed topology vocabulary.

Nodes carry typed references instead of pre-interpolated strings:
- Ref(node_id, output) stands for one realized output of another node.
- Template("postgres://${db.connection_name}/app") composes a string from
  realized outputs.
Both are resolved only after the referenced node converged, through the
node's OutputSlot (Pending | Resolved).
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

PROJECT_SCOPE = "project"

# ${node-id.output_key}
TEMPLATE_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9][A-Za-z0-9_-]*)\.([A-Za-z0-9_]+)\}")


class ResourceKind(str, Enum):
    """The fixed set of resource kinds the engine knows how to converge."""

    API_ENABLEMENT = "ApiEnablement"
    REGISTRY = "Registry"
    SERVICE_ACCOUNT = "ServiceAccount"
    SECRET = "Secret"
    SECRET_VERSION = "SecretVersion"
    SQL_INSTANCE = "SqlInstance"
    SQL_USER = "SqlUser"
    SQL_DATABASE = "SqlDatabase"
    COMPUTE_SERVICE = "ComputeService"
    IAM_BINDING = "IamBinding"


SECRET_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.SECRET, ResourceKind.SECRET_VERSION}
)


class NodeStatus(str, Enum):
    """Per-node outcome of a convergence run."""

    PENDING = "Pending"
    CONVERGED = "Converged"
    FAILED = "Failed"
    BLOCKED = "Blocked"
    SKIPPED = "Skipped"


class ConvergenceStatus(str, Enum):
    """Terminal status of a whole run."""

    ALL_CONVERGED = "AllConverged"
    PARTIALLY_CONVERGED = "PartiallyConverged"
    ABORTED = "Aborted"


class Action(str, Enum):
    """What the executor did to a node."""

    CREATE = "Create"
    UPDATE = "Update"
    NO_OP = "NoOp"


@dataclass(frozen=True)
class Ref:
    """Reference to a realized output of another node."""

    node_id: str
    output: str

    def __str__(self) -> str:
        return f"${{{self.node_id}.{self.output}}}"


@dataclass(frozen=True)
class Template:
    """String composed from realized outputs of other nodes."""

    text: str

    def refs(self) -> list[Ref]:
        return [Ref(m.group(1), m.group(2)) for m in TEMPLATE_PLACEHOLDER.finditer(self.text)]

    def render(self, lookup: Callable[[Ref], Any]) -> str:
        return TEMPLATE_PLACEHOLDER.sub(
            lambda m: str(lookup(Ref(m.group(1), m.group(2)))), self.text
        )


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every Ref embedded in an attribute value (recursively)."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Template):
        yield from value.refs()
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def render_value(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Replace every Ref/Template in a value with its resolved output."""
    if isinstance(value, Ref):
        return lookup(value)
    if isinstance(value, Template):
        return value.render(lookup)
    if isinstance(value, Mapping):
        return {key: render_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item, lookup) for item in value]
    return value


@dataclass(frozen=True)
class ResourceNode:
    """One declared resource.

    `references` holds the explicit dependencies; references embedded in
    attributes are added by `effective_references`.
    """

    id: str
    kind: ResourceKind
    attributes: Mapping[str, Any] = field(default_factory=dict)
    references: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("ResourceNode id cannot be empty")
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))
        object.__setattr__(self, "references", frozenset(self.references))

    @property
    def identity(self) -> str:
        """Remote name of the resource; defaults to the node id."""
        return str(self.attributes.get("name", self.id))

    def effective_references(self) -> frozenset[str]:
        return self.references | {ref.node_id for ref in iter_refs(dict(self.attributes))}


@dataclass(frozen=True)
class IamBinding:
    """A single principal/role grant on a scope (node id or "project")."""

    principal: str | Ref
    role: str
    scope: str

    @property
    def is_project_scoped(self) -> bool:
        return self.scope == PROJECT_SCOPE

    @classmethod
    def from_node(cls, node: ResourceNode) -> IamBinding:
        return cls(
            principal=node.attributes.get("principal", ""),
            role=str(node.attributes.get("role", "")),
            scope=str(node.attributes.get("scope", "")),
        )


@dataclass(frozen=True)
class SecretVersionHandle:
    """Identity of one secret version. Never carries the value."""

    secret_id: str
    version: str
    created: bool = False


@dataclass(frozen=True)
class SecretMaterial:
    """Declared versions of one secret, in order; values are references only."""

    secret_id: str
    versions: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ObservedState:
    """Remote state of one node as seen during the current pass."""

    exists: bool
    attributes: Mapping[str, Any] = field(default_factory=dict)
    remote_id: str | None = None
    outputs: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def absent(cls) -> ObservedState:
        return cls(exists=False)


class OutputSlot:
    """Resolved-output slot of a node: Pending until the node converges."""

    __slots__ = ("_value",)

    _PENDING = object()

    def __init__(self) -> None:
        self._value: Any = self._PENDING

    @property
    def is_resolved(self) -> bool:
        return self._value is not self._PENDING

    def resolve(self, value: Mapping[str, Any]) -> None:
        if self.is_resolved:
            raise RuntimeError("Output slot already resolved")
        self._value = MappingProxyType(dict(value))

    @property
    def value(self) -> Mapping[str, Any]:
        if not self.is_resolved:
            raise LookupError("Output slot is still pending")
        return self._value

    def __repr__(self) -> str:
        if not self.is_resolved:
            return "OutputSlot(Pending)"
        return f"OutputSlot(Resolved({dict(self._value)!r}))"


@dataclass(frozen=True)
class DesiredTopology:
    """The full, immutable desired node set for one convergence run.

    Declaration order is preserved; it matters for secret ordering checks.
    """

    nodes: tuple[ResourceNode, ...]
    outputs: Mapping[str, Template] = field(default_factory=dict)
    name: str = "topology"

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))

    @classmethod
    def of(cls, nodes: Iterable[ResourceNode], **kwargs: Any) -> DesiredTopology:
        return cls(nodes=tuple(nodes), **kwargs)

    def get(self, node_id: str) -> ResourceNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def by_kind(self, kind: ResourceKind) -> list[ResourceNode]:
        return [node for node in self.nodes if node.kind == kind]


@dataclass
class NodeOutcome:
    """What happened to a single node during a run."""

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    action: Action | None = None
    error: Exception | None = None
    outputs: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class ConvergenceResult:
    """Result of one `converge` call."""

    status: ConvergenceStatus
    per_node_status: dict[str, NodeStatus] = field(default_factory=dict)
    resolved_outputs: dict[str, str] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    wavefronts: list[list[str]] = field(default_factory=list)
    actions: dict[str, Action] = field(default_factory=dict)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def blocked_nodes(self) -> list[str]:
        return sorted(
            node_id
            for node_id, status in self.per_node_status.items()
            if status == NodeStatus.BLOCKED
        )

    @property
    def success(self) -> bool:
        return self.status == ConvergenceStatus.ALL_CONVERGED

    def summary(self) -> dict[str, Any]:
        """Plain summary: per-node status and the first causal error per failed node."""
        return {
            "status": self.status.value,
            "nodes": {
                node_id: {
                    "status": status.value,
                    **({"action": self.actions[node_id].value} if node_id in self.actions else {}),
                    **({"error": str(self.errors[node_id])} if node_id in self.errors else {}),
                }
                for node_id, status in sorted(self.per_node_status.items())
            },
            "outputs": dict(self.resolved_outputs),
            "cancelled": self.cancelled,
            "duration_seconds": self.duration_seconds,
        }
