"""Process entry point: logging, credentials, adapters and one convergence run.

The provisioner authenticates with a managed identity only (see security.py)
and converges one topology file per invocation:

    TOPOLOGY_PATH=/topologies/shop.yaml provisioner-run

Exit codes:
    0  AllConverged
    1  configuration or topology error
    2  security violation (credential variables present)
    3  PartiallyConverged (failed, blocked or cancelled nodes)
    4  Aborted (authentication failure)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .azure_control_plane import ArmControlPlane
from .config import AzureSettings, EngineSettings
from .engine import ConvergenceEngine
from .errors import ConfigurationError
from .keyvault_store import KeyVaultSecretStore
from .model import ConvergenceResult, ConvergenceStatus
from .security import SecretlessViolationError, get_managed_identity_credential
from .topology_loader import load_topology

EXIT_OK = 0
EXIT_CONFIGURATION = 1
EXIT_SECURITY = 2
EXIT_PARTIAL = 3
EXIT_ABORTED = 4

# LogRecord attributes that are not structured extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, extra fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured JSON logging (stdout unless another stream is given)."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    # Replace a handler installed by an earlier call
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def exit_code_for(result: ConvergenceResult) -> int:
    if result.status == ConvergenceStatus.ALL_CONVERGED:
        return EXIT_OK
    if result.status == ConvergenceStatus.ABORTED:
        return EXIT_ABORTED
    return EXIT_PARTIAL


def build_engine(azure: AzureSettings, settings: EngineSettings) -> ConvergenceEngine:
    """Wire the Azure adapters into an engine.

    Raises:
        SecretlessViolationError: Credential variables are present.
    """
    credential = get_managed_identity_credential(azure.client_id)
    control_plane = ArmControlPlane(azure, credential)
    secret_store = None
    if azure.key_vault_url:
        secret_store = KeyVaultSecretStore(azure, credential)
    return ConvergenceEngine(control_plane, secret_store, settings)


async def converge_file(topology_path: Path, emit: bool = True) -> int:
    """Load a topology file, converge it against Azure and return an exit code."""
    logger = logging.getLogger(__name__)

    try:
        topology = load_topology(topology_path)
        settings = EngineSettings.from_env()
        azure = AzureSettings.from_env()
        engine = build_engine(azure, settings)
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e), "kind": e.kind.value})
        return EXIT_CONFIGURATION
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        engine.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await engine.converge(topology)
    except ConfigurationError as e:
        logger.error(
            "Topology rejected",
            extra={"error": str(e), "kind": e.kind.value, "nodes": list(e.involved_nodes)},
        )
        return EXIT_CONFIGURATION
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    if emit:
        print(json.dumps(result.summary(), indent=2, default=str))
    return exit_code_for(result)


def run() -> None:
    """Entry point for container runs; reads TOPOLOGY_PATH."""
    setup_logging()
    topology_path = os.environ.get("TOPOLOGY_PATH")
    if not topology_path:
        logging.getLogger(__name__).error("TOPOLOGY_PATH is required")
        sys.exit(EXIT_CONFIGURATION)
    sys.exit(asyncio.run(converge_file(Path(topology_path))))


if __name__ == "__main__":
    run()
