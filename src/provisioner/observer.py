"""Per-run cache of observed remote state."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .config import RetryPolicy
from .interfaces import ControlPlane
from .model import ObservedState, ResourceNode
from .retry import call_with_retry

logger = logging.getLogger(__name__)


class StateObserver:
    """Reads ObservedState lazily, once per node per run.

    The cache lives as long as the observer; the engine creates one per
    convergence run. Entries are dropped when the executor mutates a node so
    the next read reflects the mutation.
    """

    def __init__(self, control_plane: ControlPlane, retry_policy: RetryPolicy) -> None:
        self._control_plane = control_plane
        self._retry_policy = retry_policy
        self._cache: dict[str, ObservedState] = {}

    async def observe(self, node: ResourceNode, attributes: Mapping[str, Any]) -> ObservedState:
        """Observed state of node, using rendered attributes for the lookup."""
        cached = self._cache.get(node.id)
        if cached is not None:
            return cached

        state = await call_with_retry(
            lambda: self._control_plane.get(node.kind, node.identity, attributes),
            self._retry_policy,
            "State read",
            {"node_id": node.id, "kind": node.kind.value},
        )
        self._cache[node.id] = state
        logger.debug(
            "Observed remote state",
            extra={"node_id": node.id, "exists": state.exists, "remote_id": state.remote_id},
        )
        return state

    def invalidate(self, node_id: str) -> None:
        self._cache.pop(node_id, None)

    def clear(self) -> None:
        self._cache.clear()

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._cache
