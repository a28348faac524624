"""Azure SDK mocks for adapter testing.

In-memory stand-ins for ResourceManagementClient, SecretClient and
ManagedIdentityCredential, so the ARM and Key Vault adapters run without
Azure connectivity.

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        control_plane = ArmControlPlane(settings, credential)
        await control_plane.create(ResourceKind.REGISTRY, "shopacr", {"sku": "Basic"})

        assert ctx.state.resource_count == 1
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .keyvault import MockSecretClient, MockVaultState
from .resources import MockResource, MockResourceClient, MockResourceState

__all__ = [
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "MockSecretClient",
    "MockVaultState",
    "create_mock_credential",
]
