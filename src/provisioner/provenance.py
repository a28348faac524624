"""Run provenance for audit.

Every convergence run is stamped with one structured record answering:
- which topology (name and content hash) was converged
- which provisioner version and source commit ran it
- what was created, updated or left alone, and what failed
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .model import ConvergenceResult, ConvergenceStatus, DesiredTopology

logger = logging.getLogger(__name__)

# Set at build time, falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


def topology_fingerprint(topology: DesiredTopology) -> str:
    """SHA256 over the declared nodes and outputs, stable across runs."""
    payload = {
        "nodes": [
            {
                "id": node.id,
                "kind": node.kind.value,
                "attributes": dict(node.attributes),
                "references": sorted(node.references),
            }
            for node in topology.nodes
        ],
        "outputs": {name: template.text for name, template in topology.outputs.items()},
    }
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


@dataclass
class ConvergenceProvenance:
    """Provenance record of one convergence run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    topology_name: str = ""
    topology_hash: str = ""
    provisioner_version: str = PROVISIONER_VERSION
    git_commit_sha: str = ""

    status: str = ""
    node_count: int = 0
    action_counts: dict[str, int] = field(default_factory=dict)
    status_counts: dict[str, int] = field(default_factory=dict)
    wavefront_count: int = 0
    cancelled: bool = False

    duration_seconds: float = 0.0

    error: str | None = None
    error_node: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Creates and logs provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(self, topology: DesiredTopology) -> ConvergenceProvenance:
        return ConvergenceProvenance(
            topology_name=topology.name,
            topology_hash=topology_fingerprint(topology),
            git_commit_sha=self._git_commit_sha,
            node_count=len(topology.nodes),
        )

    def complete(
        self, provenance: ConvergenceProvenance, result: ConvergenceResult
    ) -> ConvergenceProvenance:
        """Fill the outcome fields of a provenance record from a run result."""
        provenance.status = result.status.value
        provenance.action_counts = dict(
            sorted(Counter(action.value for action in result.actions.values()).items())
        )
        provenance.status_counts = dict(
            sorted(Counter(status.value for status in result.per_node_status.values()).items())
        )
        provenance.wavefront_count = len(result.wavefronts)
        provenance.cancelled = result.cancelled
        provenance.duration_seconds = result.duration_seconds
        # First causal error in execution order
        for wave in result.wavefronts:
            failed = [node_id for node_id in wave if node_id in result.errors]
            if failed:
                provenance.error_node = failed[0]
                provenance.error = str(result.errors[failed[0]])
                break
        return provenance

    def log_provenance(self, provenance: ConvergenceProvenance) -> None:
        log_level = logging.INFO
        if provenance.status == ConvergenceStatus.ABORTED.value:
            log_level = logging.ERROR
        elif provenance.error or provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Convergence provenance",
            extra={
                "provenance": provenance.to_dict(),
                "run_id": provenance.run_id,
                "topology": provenance.topology_name,
                "status": provenance.status,
                "git_commit": provenance.git_commit_sha,
                "provisioner_version": provenance.provisioner_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
