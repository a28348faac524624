"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path
from unittest import mock

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for memory_cloud and azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from memory_cloud import FakeControlPlane, FakeSecretStore  # noqa: E402
from provisioner.config import AzureSettings, EngineSettings, RetryPolicy  # noqa: E402
from provisioner.engine import ConvergenceEngine  # noqa: E402
from provisioner.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
KEY_VAULT_RESOURCE_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-shop"
    "/providers/Microsoft.KeyVault/vaults/kv-shop"
)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Three attempts without backoff delays."""
    return RetryPolicy(base_delay_seconds=0, max_delay_seconds=0, max_attempts=3)


@pytest.fixture
def settings(retry_policy: RetryPolicy) -> EngineSettings:
    return EngineSettings(
        max_workers=4,
        poll_base_delay_seconds=0,
        poll_max_attempts=5,
        retry=retry_policy,
    )


@pytest.fixture
def journal() -> list[tuple[str, ...]]:
    return []


@pytest.fixture
def control_plane(journal: list[tuple[str, ...]]) -> FakeControlPlane:
    return FakeControlPlane(journal)


@pytest.fixture
def secret_store(journal: list[tuple[str, ...]]) -> FakeSecretStore:
    return FakeSecretStore(journal)


@pytest.fixture
def engine(
    control_plane: FakeControlPlane, secret_store: FakeSecretStore, settings: EngineSettings
) -> ConvergenceEngine:
    return ConvergenceEngine(control_plane, secret_store, settings)


@pytest.fixture
def azure_settings() -> AzureSettings:
    return AzureSettings(
        subscription_id=SUBSCRIPTION_ID,
        resource_group_name="rg-shop",
        location="westeurope",
        key_vault_url="https://kv-shop.vault.azure.net",
        key_vault_resource_id=KEY_VAULT_RESOURCE_ID,
        call_timeout_seconds=5,
    )


@pytest.fixture
def clean_environment():
    """Environment without credential variables."""
    environ = {k: v for k, v in os.environ.items() if k not in FORBIDDEN_CREDENTIAL_ENV_VARS}
    with mock.patch.dict(os.environ, environ, clear=True):
        yield


SHOP_TOPOLOGY_YAML = """\
apiVersion: provisioner/v1
kind: Topology
metadata:
  name: shop
spec:
  nodes:
    - id: registry
      kind: Registry
      attributes:
        sku: Basic
        repository: shop
    - id: runtime-sa
      kind: ServiceAccount
    - id: db-password
      kind: Secret
    - id: db-password-v1
      kind: SecretVersion
      attributes:
        secret: db-password
        valueRef: "env:DB_PASSWORD"
    - id: app-reads-db-password
      kind: IamBinding
      attributes:
        principal: {ref: runtime-sa, output: principal_id}
        role: secret-accessor
        scope: db-password
    - id: app
      kind: ComputeService
      dependsOn: [db-password-v1]
      attributes:
        image: "${registry.login_server}/shop:1.4"
        serviceAccount: {ref: runtime-sa, output: client_id}
        env:
          DB_PASSWORD_SECRET: {ref: db-password, output: remote_id}
  outputs:
    health_url: "${app.uri}/healthz"
"""


@pytest.fixture
def shop_topology_file(tmp_path: Path) -> Path:
    path = tmp_path / "shop.yaml"
    path.write_text(SHOP_TOPOLOGY_YAML)
    return path
