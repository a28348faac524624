"""Wavefront scheduling on a bounded worker pool.

Each pass offers every node whose references have all converged, runs that
wavefront concurrently (at most max_workers nodes at a time) and waits for
every node of the wavefront to finish before computing the next one. A
node is submitted at most once per run.

- A failed node blocks its transitive dependents; independent nodes proceed.
- An authentication failure lets the in-flight wavefront finish, then stops;
  the remaining nodes are Skipped and the run is Aborted.
- Cancellation is checked between wavefronts; remaining nodes are Skipped
  and the run ends PartiallyConverged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .errors import RunAbortedError
from .executor import ConvergenceExecutor
from .graph import DependencyGraph
from .model import (
    Action,
    ConvergenceResult,
    ConvergenceStatus,
    NodeOutcome,
    NodeStatus,
    OutputSlot,
)

logger = logging.getLogger(__name__)


@dataclass
class SchedulerState:
    """Mutable bookkeeping of one run."""

    statuses: dict[str, NodeStatus]
    slots: dict[str, OutputSlot]
    errors: dict[str, Exception] = field(default_factory=dict)
    actions: dict[str, Action] = field(default_factory=dict)
    blocked_by: dict[str, str] = field(default_factory=dict)
    wavefronts: list[list[str]] = field(default_factory=list)

    @property
    def converged(self) -> set[str]:
        return {n for n, s in self.statuses.items() if s == NodeStatus.CONVERGED}

    @property
    def settled(self) -> set[str]:
        return {n for n, s in self.statuses.items() if s != NodeStatus.PENDING}


class WavefrontScheduler:
    """Drives the executor over the dependency graph."""

    def __init__(
        self,
        graph: DependencyGraph,
        executor: ConvergenceExecutor,
        max_workers: int,
        cancel_event: asyncio.Event,
    ) -> None:
        self._graph = graph
        self._executor = executor
        self._semaphore = asyncio.Semaphore(max_workers)
        self._cancel_event = cancel_event
        self.slots: dict[str, OutputSlot] = {}
        self.blocked_by: dict[str, str] = {}

    async def run(self) -> ConvergenceResult:
        node_ids = list(self._graph.dependencies)
        state = SchedulerState(
            statuses={node_id: NodeStatus.PENDING for node_id in node_ids},
            slots={node_id: OutputSlot() for node_id in node_ids},
        )
        result = ConvergenceResult(status=ConvergenceStatus.PARTIALLY_CONVERGED)
        abort: RunAbortedError | None = None

        while True:
            if self._cancel_event.is_set():
                result.cancelled = True
                logger.warning(
                    "Cancellation requested, stopping before next wavefront",
                    extra={"converged": len(state.converged), "total": len(node_ids)},
                )
                break

            wave = self._graph.ready(state.converged, excluded=state.settled)
            if not wave:
                break

            state.wavefronts.append(wave)
            logger.info(
                "Starting wavefront",
                extra={"wavefront": len(state.wavefronts), "nodes": wave},
            )
            outcomes = await asyncio.gather(
                *(self._run_node(node_id, state) for node_id in wave),
                return_exceptions=True,
            )

            for node_id, outcome in zip(wave, outcomes):
                if isinstance(outcome, RunAbortedError):
                    abort = abort or outcome
                    state.statuses[node_id] = NodeStatus.FAILED
                    state.errors[node_id] = outcome.cause
                elif isinstance(outcome, Exception):
                    logger.error(
                        "Node failed unexpectedly",
                        exc_info=outcome,
                        extra={"node_id": node_id, "error": str(outcome)},
                    )
                    self._record(
                        NodeOutcome(node_id, NodeStatus.FAILED, error=outcome), state
                    )
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    self._record(outcome, state)

            if abort is not None:
                logger.critical("Run aborted", extra={"error": str(abort.cause)})
                break

        for node_id, status in state.statuses.items():
            if status == NodeStatus.PENDING:
                state.statuses[node_id] = NodeStatus.SKIPPED

        result.per_node_status = state.statuses
        result.errors = state.errors
        result.actions = state.actions
        result.wavefronts = state.wavefronts
        self.slots = state.slots
        self.blocked_by = state.blocked_by

        if abort is not None:
            result.status = ConvergenceStatus.ABORTED
        elif all(s == NodeStatus.CONVERGED for s in state.statuses.values()):
            result.status = ConvergenceStatus.ALL_CONVERGED
        else:
            result.status = ConvergenceStatus.PARTIALLY_CONVERGED
        return result

    async def _run_node(self, node_id: str, state: SchedulerState) -> NodeOutcome:
        node = self._graph.topology.get(node_id)
        async with self._semaphore:
            return await self._executor.converge(node, state.slots)

    def _record(self, outcome: NodeOutcome, state: SchedulerState) -> None:
        state.statuses[outcome.node_id] = outcome.status
        if outcome.action is not None:
            state.actions[outcome.node_id] = outcome.action

        if outcome.status == NodeStatus.CONVERGED:
            state.slots[outcome.node_id].resolve(outcome.outputs)
            return

        if outcome.error is not None:
            state.errors[outcome.node_id] = outcome.error
        blocked = sorted(
            dep
            for dep in self._graph.dependents_of(outcome.node_id)
            if state.statuses[dep] == NodeStatus.PENDING
        )
        for dep in blocked:
            state.statuses[dep] = NodeStatus.BLOCKED
            state.blocked_by[dep] = outcome.node_id
        if blocked:
            logger.warning(
                "Dependents blocked by failed node",
                extra={"node_id": outcome.node_id, "blocked": blocked},
            )
