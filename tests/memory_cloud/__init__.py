"""In-memory control plane and secret store for engine tests.

Both fakes share one call journal so tests can assert on the global order
of remote calls:

    journal: list[tuple[str, ...]] = []
    control_plane = FakeControlPlane(journal)
    secret_store = FakeSecretStore(journal)
    engine = ConvergenceEngine(control_plane, secret_store, settings)
"""

from .control_plane import FakeControlPlane, StoredResource
from .secret_store import FakeSecretStore
from .topologies import database_topology, node, secret_access_topology, shop_topology

__all__ = [
    "FakeControlPlane",
    "FakeSecretStore",
    "StoredResource",
    "database_topology",
    "node",
    "secret_access_topology",
    "shop_topology",
]
