"""Convergence engine entry point.

    engine = ConvergenceEngine(control_plane, secret_store, EngineSettings.from_env())
    result = await engine.converge(topology)

converge() validates the whole topology before the first remote call and
raises ConfigurationError on any structural problem. Everything after that
is reported through the ConvergenceResult.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from .config import EngineSettings
from .executor import ConvergenceExecutor
from .graph import DependencyGraph, build_graph
from .iam import IamBindingReconciler
from .interfaces import ControlPlane, SecretStore
from .model import ConvergenceResult, ConvergenceStatus, DesiredTopology, NodeStatus
from .observer import StateObserver
from .outputs import OutputResolutionError, resolve_outputs
from .provenance import get_provenance_logger
from .scheduler import WavefrontScheduler
from .secrets import SecretLifecycleManager

logger = logging.getLogger(__name__)


class ConvergenceEngine:
    """Converges a desired topology against a control plane and a secret store."""

    def __init__(
        self,
        control_plane: ControlPlane,
        secret_store: SecretStore | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._control_plane = control_plane
        self._secret_store = secret_store
        self._settings = settings or EngineSettings()
        self._cancel_event = asyncio.Event()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next wavefront boundary."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    def plan(self, topology: DesiredTopology) -> DependencyGraph:
        """Validate a topology and return its graph. No remote calls."""
        return build_graph(topology)

    async def converge(self, topology: DesiredTopology) -> ConvergenceResult:
        """Run one convergence pass.

        Raises:
            ConfigurationError: The topology is invalid. No remote call was made.
        """
        graph = build_graph(topology)
        self._cancel_event = asyncio.Event()
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(topology)
        start_time = datetime.now(UTC)

        logger.info(
            "Starting convergence",
            extra={
                "run_id": provenance.run_id,
                "topology": topology.name,
                "node_count": len(topology.nodes),
                "planned_wavefronts": graph.wavefronts,
            },
        )

        observer = StateObserver(self._control_plane, self._settings.retry)
        secrets = None
        if self._secret_store is not None:
            secrets = SecretLifecycleManager(self._secret_store, self._settings.retry)
        executor = ConvergenceExecutor(
            topology=topology,
            control_plane=self._control_plane,
            observer=observer,
            iam=IamBindingReconciler(
                self._control_plane, self._settings.retry, self._settings.poll_policy
            ),
            secrets=secrets,
            settings=self._settings,
        )
        scheduler = WavefrontScheduler(
            graph, executor, self._settings.max_workers, self._cancel_event
        )

        result = await scheduler.run()
        result.start_time = start_time
        if result.status == ConvergenceStatus.ALL_CONVERGED:
            try:
                result.resolved_outputs = resolve_outputs(topology, scheduler.slots)
            except OutputResolutionError as e:
                # Every node converged but a declared output has no value
                logger.error(
                    "Output resolution failed", extra={"node_id": e.node_id, "error": str(e)}
                )
                result.errors[e.node_id] = e
                result.status = ConvergenceStatus.PARTIALLY_CONVERGED
        result.end_time = datetime.now(UTC)
        observer.clear()

        self._log_summary(result, scheduler.blocked_by)
        provenance_logger.log_provenance(provenance_logger.complete(provenance, result))
        return result

    def _log_summary(self, result: ConvergenceResult, blocked_by: dict[str, str]) -> None:
        for node_id, status in sorted(result.per_node_status.items()):
            extra = {"node_id": node_id, "status": status.value}
            if node_id in result.actions:
                extra["action"] = result.actions[node_id].value
            if node_id in result.errors:
                extra["error"] = str(result.errors[node_id])
            if node_id in blocked_by:
                extra["blocked_by"] = blocked_by[node_id]

            if status == NodeStatus.FAILED:
                logger.error("Node summary", extra=extra)
            elif status in (NodeStatus.BLOCKED, NodeStatus.SKIPPED):
                logger.warning("Node summary", extra=extra)
            else:
                logger.info("Node summary", extra=extra)

        logger.info(
            "Convergence finished",
            extra={
                "status": result.status.value,
                "duration_seconds": result.duration_seconds,
                "blocked": result.blocked_nodes,
                "cancelled": result.cancelled,
            },
        )
