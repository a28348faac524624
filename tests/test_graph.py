"""Tests for dependency graph construction and validation."""

from __future__ import annotations

import pytest
from memory_cloud import database_topology, node, secret_access_topology, shop_topology

from provisioner.errors import ConfigurationError, ConfigurationErrorKind
from provisioner.graph import build_graph, parent_of
from provisioner.model import DesiredTopology, Ref, ResourceKind, Template


class TestWavefronts:
    """Tests for wavefront ordering."""

    def test_shop_topology_wavefronts(self) -> None:
        """Registry, secret and identity first, the compute service after them."""
        graph = build_graph(shop_topology())

        assert graph.wavefronts == [["db-password", "registry", "runtime-sa"], ["app"]]

    def test_every_node_after_its_references(self) -> None:
        graph = build_graph(database_topology())
        position = {
            node_id: index for index, wave in enumerate(graph.wavefronts) for node_id in wave
        }

        for node_id, deps in graph.dependencies.items():
            for dep in deps:
                assert position[dep] < position[node_id]

    def test_children_depend_on_parent(self) -> None:
        graph = build_graph(database_topology())

        assert graph.references_of("orders") == {"orders-db"}
        assert graph.references_of("orders-app") == {"orders-db"}

    def test_binding_depends_on_scope(self) -> None:
        graph = build_graph(secret_access_topology())

        assert graph.references_of("app-reads-db-password") == {"runtime-sa", "db-password"}

    def test_enablement_edges(self) -> None:
        topology = DesiredTopology.of(
            [
                node("containers-api", ResourceKind.API_ENABLEMENT, enables=["Registry"]),
                node("registry", ResourceKind.REGISTRY),
                node("runtime-sa", ResourceKind.SERVICE_ACCOUNT),
            ]
        )

        graph = build_graph(topology)

        assert graph.wavefronts == [["containers-api", "runtime-sa"], ["registry"]]

    def test_ready_excludes_settled(self) -> None:
        graph = build_graph(shop_topology())

        assert graph.ready(set(), excluded={"registry"}) == ["db-password", "runtime-sa"]
        assert graph.ready({"db-password", "registry", "runtime-sa"}) == ["app"]

    def test_dependents_are_transitive(self) -> None:
        topology = DesiredTopology.of(
            [
                node("a", ResourceKind.SERVICE_ACCOUNT),
                node("b", ResourceKind.REGISTRY, "a"),
                node("c", ResourceKind.COMPUTE_SERVICE, "b", image="x"),
            ]
        )

        assert build_graph(topology).dependents_of("a") == {"b", "c"}


class TestValidation:
    """Tests for topologies rejected before any remote call."""

    def test_cycle_detected(self) -> None:
        topology = DesiredTopology.of(
            [
                node("a", ResourceKind.REGISTRY, "b"),
                node("b", ResourceKind.SERVICE_ACCOUNT, "a"),
            ]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.CYCLIC_DEPENDENCY
        assert "a -> b -> a" in str(exc_info.value)
        assert set(exc_info.value.involved_nodes) == {"a", "b"}

    def test_self_reference_is_a_cycle(self) -> None:
        topology = DesiredTopology.of([node("a", ResourceKind.REGISTRY, "a")])

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.CYCLIC_DEPENDENCY

    def test_duplicate_node(self) -> None:
        topology = DesiredTopology.of(
            [node("a", ResourceKind.REGISTRY), node("a", ResourceKind.SECRET)]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.DUPLICATE_NODE

    def test_unresolved_reference(self) -> None:
        topology = DesiredTopology.of(
            [node("app", ResourceKind.COMPUTE_SERVICE, image=Template("${ghost.login_server}/x"))]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.UNRESOLVED_REFERENCE
        assert "ghost" in exc_info.value.involved_nodes

    def test_project_scope_for_resource_role_rejected(self) -> None:
        """secret-accessor has a per-secret scope, so a project grant is over-broad."""
        topology = DesiredTopology.of(
            [
                node("runtime-sa", ResourceKind.SERVICE_ACCOUNT),
                node(
                    "grant",
                    ResourceKind.IAM_BINDING,
                    principal=Ref("runtime-sa", "principal_id"),
                    role="secret-accessor",
                    scope="project",
                ),
            ]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.OVERBROAD_SCOPE

    def test_secret_referenced_before_declared(self) -> None:
        topology = DesiredTopology.of(
            [
                node("app", ResourceKind.COMPUTE_SERVICE, image="x", secret=Ref("pw", "remote_id")),
                node("pw", ResourceKind.SECRET),
            ]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.SECRET_REFERENCED_BEFORE_DECLARED

    def test_child_without_parent(self) -> None:
        topology = DesiredTopology.of([node("orders", ResourceKind.SQL_DATABASE)])

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.MISSING_PARENT

    def test_child_with_wrong_parent_kind(self) -> None:
        topology = DesiredTopology.of(
            [
                node("registry", ResourceKind.REGISTRY),
                node("orders", ResourceKind.SQL_DATABASE, instance="registry"),
            ]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.MISSING_PARENT

    def test_output_exposing_secret_rejected(self) -> None:
        topology = DesiredTopology.of(
            [node("pw", ResourceKind.SECRET)],
            outputs={"leak": Template("${pw.remote_id}")},
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.SECRET_EXPOSURE

    def test_unknown_enabled_kind(self) -> None:
        topology = DesiredTopology.of(
            [node("api", ResourceKind.API_ENABLEMENT, enables=["Mainframe"])]
        )

        with pytest.raises(ConfigurationError) as exc_info:
            build_graph(topology)

        assert exc_info.value.kind == ConfigurationErrorKind.INVALID_TOPOLOGY


class TestParentOf:
    """Tests for parent lookup of child kinds."""

    def test_plain_and_ref_parent(self) -> None:
        assert parent_of(node("u", ResourceKind.SQL_USER, instance="db")) == "db"
        assert parent_of(node("v", ResourceKind.SECRET_VERSION, secret=Ref("pw", "name"))) == "pw"
        assert parent_of(node("r", ResourceKind.REGISTRY)) is None
