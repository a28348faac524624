"""Dependency graph construction, validation and wavefront ordering.

Building the graph is pure: it reads the desired topology only and never
touches the network. Every structural problem is reported here as a
ConfigurationError so a broken topology fails before the first remote call.

Edges come from:
1. explicit `references` and every Ref/Template embedded in attributes
2. parent attributes (SqlUser/SqlDatabase -> `instance`, SecretVersion -> `secret`)
3. IamBinding scopes other than "project"
4. ApiEnablement `enables`: every node of an enabled kind depends on it

EXAMPLE:
    Registry r, Secret s, ServiceAccount p, ComputeService c(r, s, p)
    wavefronts -> [["p", "r", "s"], ["c"]]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .errors import ConfigurationError, ConfigurationErrorKind
from .iam import validate_binding
from .model import SECRET_KINDS, DesiredTopology, IamBinding, Ref, ResourceKind, ResourceNode

logger = logging.getLogger(__name__)

# Child kinds and the attribute naming their parent node
PARENT_ATTRIBUTES: dict[ResourceKind, tuple[str, ResourceKind]] = {
    ResourceKind.SQL_USER: ("instance", ResourceKind.SQL_INSTANCE),
    ResourceKind.SQL_DATABASE: ("instance", ResourceKind.SQL_INSTANCE),
    ResourceKind.SECRET_VERSION: ("secret", ResourceKind.SECRET),
}


def parent_of(node: ResourceNode) -> str | None:
    """Node id of the parent of a child node, or None for other kinds."""
    spec = PARENT_ATTRIBUTES.get(node.kind)
    if spec is None:
        return None
    value = node.attributes.get(spec[0])
    if isinstance(value, Ref):
        return value.node_id
    if isinstance(value, str) and value:
        return value
    return None


@dataclass
class DependencyGraph:
    """Validated, acyclic dependency graph of one topology."""

    topology: DesiredTopology
    dependencies: dict[str, frozenset[str]]
    dependents: dict[str, frozenset[str]] = field(init=False)
    wavefronts: list[list[str]] = field(init=False)

    def __post_init__(self) -> None:
        reverse: dict[str, set[str]] = {node_id: set() for node_id in self.dependencies}
        for node_id, deps in self.dependencies.items():
            for dep in deps:
                reverse[dep].add(node_id)
        self.dependents = {node_id: frozenset(ids) for node_id, ids in reverse.items()}
        self.wavefronts = self._compute_wavefronts()

    def _compute_wavefronts(self) -> list[list[str]]:
        placed: set[str] = set()
        wavefronts: list[list[str]] = []
        while len(placed) < len(self.dependencies):
            wave = self.ready(placed)
            if not wave:
                # validate() guarantees acyclicity; an empty wave means a bug
                raise RuntimeError("Wavefront computation stalled")
            wavefronts.append(wave)
            placed.update(wave)
        return wavefronts

    def references_of(self, node_id: str) -> frozenset[str]:
        return self.dependencies[node_id]

    def ready(self, converged: Iterable[str], excluded: Iterable[str] = ()) -> list[str]:
        """Nodes not yet converged whose references have all converged.

        Args:
            converged: Ids of nodes that reached Converged.
            excluded: Ids that must not be offered (failed, blocked, in flight).

        Returns:
            Ready node ids, sorted for deterministic ordering.
        """
        done = set(converged)
        skip = done | set(excluded)
        return sorted(
            node_id
            for node_id, deps in self.dependencies.items()
            if node_id not in skip and deps <= done
        )

    def dependents_of(self, node_id: str) -> set[str]:
        """All nodes that transitively depend on node_id."""
        result: set[str] = set()
        stack = list(self.dependents[node_id])
        while stack:
            current = stack.pop()
            if current in result:
                continue
            result.add(current)
            stack.extend(self.dependents[current])
        return result


def build_graph(topology: DesiredTopology) -> DependencyGraph:
    """Validate a topology and build its dependency graph.

    Raises:
        ConfigurationError: On the first structural problem found.
    """
    nodes = _index_nodes(topology.nodes)
    kinds = {node_id: node.kind for node_id, node in nodes.items()}

    dependencies: dict[str, frozenset[str]] = {}
    for node in topology.nodes:
        deps = set(node.effective_references())

        parent = parent_of(node)
        if node.kind in PARENT_ATTRIBUTES:
            _check_parent(node, parent, kinds)
            deps.add(parent)

        if node.kind == ResourceKind.IAM_BINDING:
            binding = IamBinding.from_node(node)
            _check_unresolved(node.id, deps, kinds)
            validate_binding(node.id, binding, kinds)
            if not binding.is_project_scoped:
                deps.add(binding.scope)

        _check_unresolved(node.id, deps, kinds)
        if node.id in deps:
            raise ConfigurationError(
                ConfigurationErrorKind.CYCLIC_DEPENDENCY,
                f"Node '{node.id}' references itself",
                [node.id],
            )
        dependencies[node.id] = frozenset(deps)

    _add_enablement_edges(topology, dependencies, kinds)
    _check_secret_order(topology, dependencies, kinds)
    _check_cycles(dependencies)
    _check_outputs(topology, kinds)
    _log_advisories(topology, dependencies, kinds)

    graph = DependencyGraph(topology=topology, dependencies=dependencies)
    logger.debug(
        "Dependency graph built",
        extra={
            "topology": topology.name,
            "node_count": len(dependencies),
            "wavefront_count": len(graph.wavefronts),
        },
    )
    return graph


def _index_nodes(nodes: Iterable[ResourceNode]) -> dict[str, ResourceNode]:
    index: dict[str, ResourceNode] = {}
    for node in nodes:
        if node.id in index:
            raise ConfigurationError(
                ConfigurationErrorKind.DUPLICATE_NODE,
                f"Node id '{node.id}' is declared more than once",
                [node.id],
            )
        index[node.id] = node
    return index


def _check_unresolved(
    node_id: str, deps: Iterable[str], kinds: dict[str, ResourceKind]
) -> None:
    missing = sorted(dep for dep in deps if dep not in kinds)
    if missing:
        raise ConfigurationError(
            ConfigurationErrorKind.UNRESOLVED_REFERENCE,
            f"Node '{node_id}' references undeclared node(s): {missing}",
            [node_id, *missing],
        )


def _check_parent(
    node: ResourceNode, parent: str | None, kinds: dict[str, ResourceKind]
) -> None:
    attribute, parent_kind = PARENT_ATTRIBUTES[node.kind]
    if parent is None:
        raise ConfigurationError(
            ConfigurationErrorKind.MISSING_PARENT,
            f"{node.kind.value} '{node.id}' must name its {parent_kind.value} in '{attribute}'",
            [node.id],
        )
    if parent not in kinds:
        raise ConfigurationError(
            ConfigurationErrorKind.UNRESOLVED_REFERENCE,
            f"{node.kind.value} '{node.id}' names undeclared parent '{parent}'",
            [node.id, parent],
        )
    if kinds[parent] != parent_kind:
        raise ConfigurationError(
            ConfigurationErrorKind.MISSING_PARENT,
            f"Parent '{parent}' of '{node.id}' is a {kinds[parent].value}, "
            f"expected {parent_kind.value}",
            [node.id, parent],
        )


def _add_enablement_edges(
    topology: DesiredTopology,
    dependencies: dict[str, frozenset[str]],
    kinds: dict[str, ResourceKind],
) -> None:
    valid_kinds = {kind.value for kind in ResourceKind}
    for enabler in topology.by_kind(ResourceKind.API_ENABLEMENT):
        enabled = enabler.attributes.get("enables", ())
        unknown = sorted(str(kind) for kind in enabled if str(kind) not in valid_kinds)
        if unknown:
            raise ConfigurationError(
                ConfigurationErrorKind.INVALID_TOPOLOGY,
                f"ApiEnablement '{enabler.id}' enables unknown kind(s): {unknown}",
                [enabler.id],
            )
        enabled_kinds = {ResourceKind(str(kind)) for kind in enabled}
        for node_id, kind in kinds.items():
            if kind in enabled_kinds and kind != ResourceKind.API_ENABLEMENT:
                dependencies[node_id] = dependencies[node_id] | {enabler.id}


def _check_secret_order(
    topology: DesiredTopology,
    dependencies: dict[str, frozenset[str]],
    kinds: dict[str, ResourceKind],
) -> None:
    """A node may only reference secret nodes declared before it."""
    position = {node.id: index for index, node in enumerate(topology.nodes)}
    for node in topology.nodes:
        late = sorted(
            dep
            for dep in dependencies[node.id]
            if kinds[dep] in SECRET_KINDS and position[dep] > position[node.id]
        )
        if late:
            raise ConfigurationError(
                ConfigurationErrorKind.SECRET_REFERENCED_BEFORE_DECLARED,
                f"Node '{node.id}' references secret node(s) {late} declared after it",
                [node.id, *late],
            )


def _check_cycles(dependencies: dict[str, frozenset[str]]) -> None:
    """Depth-first search with a recursion stack; reports the first cycle found."""
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(node_id: str) -> None:
        visited.add(node_id)
        on_stack.add(node_id)
        path.append(node_id)
        for dep in sorted(dependencies[node_id]):
            if dep in on_stack:
                cycle = path[path.index(dep):] + [dep]
                raise ConfigurationError(
                    ConfigurationErrorKind.CYCLIC_DEPENDENCY,
                    f"Circular dependency detected: {' -> '.join(cycle)}",
                    cycle[:-1],
                )
            if dep not in visited:
                visit(dep)
        on_stack.discard(node_id)
        path.pop()

    for node_id in sorted(dependencies):
        if node_id not in visited:
            visit(node_id)


def _check_outputs(topology: DesiredTopology, kinds: dict[str, ResourceKind]) -> None:
    for name, template in topology.outputs.items():
        for ref in template.refs():
            if ref.node_id not in kinds:
                raise ConfigurationError(
                    ConfigurationErrorKind.UNRESOLVED_REFERENCE,
                    f"Output '{name}' references undeclared node '{ref.node_id}'",
                    [ref.node_id],
                )
            if kinds[ref.node_id] in SECRET_KINDS:
                raise ConfigurationError(
                    ConfigurationErrorKind.SECRET_EXPOSURE,
                    f"Output '{name}' would expose secret node '{ref.node_id}'",
                    [ref.node_id],
                )


def _log_advisories(
    topology: DesiredTopology,
    dependencies: dict[str, frozenset[str]],
    kinds: dict[str, ResourceKind],
) -> None:
    """Warn about unusual but valid shapes."""
    for node in topology.by_kind(ResourceKind.COMPUTE_SERVICE):
        if not any(kinds[dep] == ResourceKind.SERVICE_ACCOUNT for dep in dependencies[node.id]):
            logger.warning(
                "Compute service runs without a dedicated service account",
                extra={"node_id": node.id},
            )

    for node in topology.by_kind(ResourceKind.SQL_INSTANCE):
        if node.attributes.get("public_ip") is True:
            logger.warning("Database instance has a public IP", extra={"node_id": node.id})

    granted_secrets = {
        str(node.attributes.get("scope"))
        for node in topology.by_kind(ResourceKind.IAM_BINDING)
        if node.attributes.get("role") == "secret-accessor"
    }
    for node in topology.by_kind(ResourceKind.SECRET):
        if node.id not in granted_secrets:
            logger.warning("Secret has no accessor binding", extra={"node_id": node.id})
