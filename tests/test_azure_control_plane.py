"""Tests for the Azure Resource Manager control plane against the ARM mock."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import MockAzureContext

from provisioner.azure_control_plane import (
    DELETION_PROTECTION_TAG,
    MANAGED_BY_TAG,
    ROLE_DEFINITIONS,
    ArmControlPlane,
)
from provisioner.config import AzureSettings
from provisioner.errors import ErrorClass, RemoteFailure, RemoteTransientError
from provisioner.executor import attributes_differ
from provisioner.interfaces import Operation, OperationState
from provisioner.model import ResourceKind

SQL_INSTANCE = {"deletion_protection": True, "public_ip": False, "tier": "Standard_B1ms"}


def http_error(status_code: int, message: str = "request failed") -> HttpResponseError:
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


@pytest.fixture
def azure() -> Iterator[MockAzureContext]:
    with MockAzureContext() as ctx:
        yield ctx


@pytest.fixture
def control_plane(azure: MockAzureContext, azure_settings: AzureSettings) -> ArmControlPlane:
    return ArmControlPlane(azure_settings, azure.credential)


async def apply(control_plane: ArmControlPlane, operation: Operation) -> OperationState:
    status = await control_plane.poll(operation)
    return status.state


class TestResources:
    """Tests for create, read and projection per kind."""

    @pytest.mark.asyncio
    async def test_registry_round_trip(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        attributes = {"sku": "Basic", "repository": "shop"}
        assert not (await control_plane.get(ResourceKind.REGISTRY, "shopacr", attributes)).exists

        operation = await control_plane.create(ResourceKind.REGISTRY, "shopacr", attributes)
        assert await apply(control_plane, operation) == OperationState.SUCCEEDED

        observed = await control_plane.get(ResourceKind.REGISTRY, "shopacr", attributes)
        assert observed.exists
        assert observed.remote_id.endswith(
            "/providers/Microsoft.ContainerRegistry/registries/shopacr"
        )
        assert observed.outputs == {
            "login_server": "shopacr.azurecr.io",
            "push_path": "shopacr.azurecr.io/shop",
        }
        assert attributes_differ(attributes, observed.attributes) == []

        _, parameters = azure.state.put_history[-1]
        assert parameters["location"] == "westeurope"
        assert parameters["sku"] == {"name": "Basic"}
        assert parameters["properties"]["adminUserEnabled"] is False
        assert parameters["tags"][MANAGED_BY_TAG] == "topology-provisioner"

    @pytest.mark.asyncio
    async def test_sku_drift_detected(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        operation = await control_plane.create(ResourceKind.REGISTRY, "shopacr", {"sku": "Basic"})
        await apply(control_plane, operation)

        observed = await control_plane.get(ResourceKind.REGISTRY, "shopacr", {"sku": "Premium"})

        assert attributes_differ({"sku": "Premium"}, observed.attributes) == ["sku"]

    @pytest.mark.asyncio
    async def test_sql_instance_safety_settings(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        operation = await control_plane.create(ResourceKind.SQL_INSTANCE, "orders-db", SQL_INSTANCE)
        await apply(control_plane, operation)

        _, parameters = azure.state.put_history[-1]
        assert parameters["properties"]["network"] == {"publicNetworkAccess": "Disabled"}
        assert parameters["tags"][DELETION_PROTECTION_TAG] == "true"

        observed = await control_plane.get(ResourceKind.SQL_INSTANCE, "orders-db", SQL_INSTANCE)
        assert observed.outputs == {"connection_name": "orders-db.postgres.database.azure.com"}
        assert attributes_differ(SQL_INSTANCE, observed.attributes) == []

    @pytest.mark.asyncio
    async def test_numbers_compare_through_request_body(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        sql_instance = {**SQL_INSTANCE, "version": 16}
        operation = await control_plane.create(ResourceKind.SQL_INSTANCE, "orders-db", sql_instance)
        await apply(control_plane, operation)

        _, parameters = azure.state.put_history[-1]
        assert parameters["properties"]["version"] == "16"

        observed = await control_plane.get(ResourceKind.SQL_INSTANCE, "orders-db", sql_instance)
        assert observed.attributes["version"] == 16
        assert attributes_differ(sql_instance, observed.attributes) == []

        drifted = {**sql_instance, "version": 15}
        observed = await control_plane.get(ResourceKind.SQL_INSTANCE, "orders-db", drifted)
        assert attributes_differ(drifted, observed.attributes) == ["version"]

    @pytest.mark.asyncio
    async def test_compute_env_numbers(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        attributes = {"image": "shopacr.azurecr.io/shop:1.4", "env": {"PORT": 8080}}
        operation = await control_plane.create(ResourceKind.COMPUTE_SERVICE, "app", attributes)
        await apply(control_plane, operation)

        observed = await control_plane.get(ResourceKind.COMPUTE_SERVICE, "app", attributes)

        assert attributes_differ(attributes, observed.attributes) == []

    @pytest.mark.asyncio
    async def test_compute_service_without_image(self, control_plane: ArmControlPlane) -> None:
        with pytest.raises(RemoteFailure) as exc_info:
            await control_plane.create(ResourceKind.COMPUTE_SERVICE, "app", {})

        assert exc_info.value.error_class == ErrorClass.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_child_resource_under_instance(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        attributes = {"instance": "orders-db"}

        operation = await control_plane.create(ResourceKind.SQL_DATABASE, "orders", attributes)
        await apply(control_plane, operation)

        resource_id, parameters = azure.state.put_history[-1]
        assert resource_id.endswith("/flexibleServers/orders-db/databases/orders")
        assert "location" not in parameters
        assert (await control_plane.get(ResourceKind.SQL_DATABASE, "orders", attributes)).exists

    def test_child_resource_without_instance(self, control_plane: ArmControlPlane) -> None:
        with pytest.raises(RemoteFailure) as exc_info:
            control_plane.resource_id(ResourceKind.SQL_USER, "orders-app", {})

        assert exc_info.value.error_class == ErrorClass.INVALID_ARGUMENT

    @pytest.mark.asyncio
    async def test_compute_service(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        attributes = {
            "image": "shopacr.azurecr.io/shop:1.4",
            "env": {"DB_PASSWORD_SECRET": "/secrets/db-password"},
            "service_account": "/identities/runtime-sa",
        }

        operation = await control_plane.create(ResourceKind.COMPUTE_SERVICE, "app", attributes)
        await apply(control_plane, operation)

        _, parameters = azure.state.put_history[-1]
        assert parameters["identity"] == {
            "type": "UserAssigned",
            "userAssignedIdentities": {"/identities/runtime-sa": {}},
        }
        observed = await control_plane.get(ResourceKind.COMPUTE_SERVICE, "app", attributes)
        assert observed.outputs == {"uri": "https://app.westeurope.azurecontainerapps.io"}
        assert attributes_differ(attributes, observed.attributes) == []

    @pytest.mark.asyncio
    async def test_failed_deployment_reported_by_poll(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        resource_id = control_plane.resource_id(ResourceKind.REGISTRY, "shopacr", {})
        azure.state.fail_next("result", resource_id, http_error(400, "SKU not supported"))

        operation = await control_plane.create(ResourceKind.REGISTRY, "shopacr", {"sku": "Gold"})
        status = await control_plane.poll(operation)

        assert status.state == OperationState.FAILED
        assert status.error_class == ErrorClass.INVALID_ARGUMENT
        assert azure.state.resource_count == 0


class TestProviderRegistration:
    """Tests for ApiEnablement nodes."""

    @pytest.mark.asyncio
    async def test_registration_polled_until_registered(
        self, control_plane: ArmControlPlane, azure: MockAzureContext
    ) -> None:
        azure.state.registration_polls = 1
        attributes = {"namespace": "Microsoft.App"}

        assert not (await control_plane.get(ResourceKind.API_ENABLEMENT, "apis", attributes)).exists

        operation = await control_plane.create(ResourceKind.API_ENABLEMENT, "apis", attributes)
        assert await apply(control_plane, operation) == OperationState.PENDING
        assert await apply(control_plane, operation) == OperationState.SUCCEEDED

        observed = await control_plane.get(ResourceKind.API_ENABLEMENT, "apis", attributes)
        assert observed.exists
        assert observed.outputs["registration_state"] == "Registered"


class TestRoleAssignments:
    """Tests for has_binding and bind_policy."""

    @pytest.mark.asyncio
    async def test_grant_then_present(self, control_plane: ArmControlPlane) -> None:
        scope = "/subscriptions/x/resourceGroups/rg-shop/providers/Microsoft.KeyVault/vaults/kv/secrets/pw"

        assert not await control_plane.has_binding(scope, "principal-1", "secret-accessor")

        operation = await control_plane.bind_policy(scope, "principal-1", "secret-accessor")
        assert operation is not None
        assert await apply(control_plane, operation) == OperationState.SUCCEEDED

        assert await control_plane.has_binding(scope, "principal-1", "secret-accessor")
        assert not await control_plane.has_binding(scope, "principal-2", "secret-accessor")

    @pytest.mark.asyncio
    async def test_project_scope_is_resource_group(
        self,
        control_plane: ArmControlPlane,
        azure: MockAzureContext,
        azure_settings: AzureSettings,
    ) -> None:
        await control_plane.bind_policy("project", "principal-1", "log-writer")

        assignment_id, parameters = azure.state.put_history[-1]
        assert assignment_id.startswith(
            f"{azure_settings.project_scope}/providers/Microsoft.Authorization/roleAssignments/"
        )
        assert parameters["properties"]["roleDefinitionId"].endswith(
            ROLE_DEFINITIONS["log-writer"]
        )

    def test_assignment_name_is_deterministic(self, control_plane: ArmControlPlane) -> None:
        first = control_plane.role_assignment_id("project", "principal-1", "registry-reader")
        second = control_plane.role_assignment_id("project", "principal-1", "registry-reader")
        other = control_plane.role_assignment_id("project", "principal-2", "registry-reader")

        assert first == second
        assert first != other

    def test_unknown_role_rejected(self, control_plane: ArmControlPlane) -> None:
        with pytest.raises(RemoteFailure) as exc_info:
            control_plane.role_definition_id("owner")

        assert exc_info.value.error_class == ErrorClass.INVALID_ARGUMENT

    def test_role_definition_guid_accepted(
        self, azure: MockAzureContext, azure_settings: AzureSettings
    ) -> None:
        guid = "b24988ac-6180-42a0-ab88-20f7382dd24c"
        control_plane = ArmControlPlane(
            azure_settings, azure.credential, role_definitions={"contributor": guid}
        )

        assert control_plane.role_definition_id("contributor").endswith(f"/roleDefinitions/{guid}")


class TestErrorMapping:
    """Azure SDK errors surface as classified remote errors."""

    @pytest.mark.asyncio
    async def test_forbidden(self, control_plane: ArmControlPlane, azure: MockAzureContext) -> None:
        resource_id = control_plane.resource_id(ResourceKind.REGISTRY, "shopacr", {})
        azure.state.fail_next("get_by_id", resource_id, http_error(403, "AuthorizationFailed"))

        with pytest.raises(RemoteFailure) as exc_info:
            await control_plane.get(ResourceKind.REGISTRY, "shopacr", {})

        assert exc_info.value.error_class == ErrorClass.PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_throttled(self, control_plane: ArmControlPlane, azure: MockAzureContext) -> None:
        resource_id = control_plane.resource_id(ResourceKind.REGISTRY, "shopacr", {})
        azure.state.fail_next("begin_create_or_update_by_id", resource_id, http_error(429))

        with pytest.raises(RemoteTransientError):
            await control_plane.create(ResourceKind.REGISTRY, "shopacr", {})

    @pytest.mark.asyncio
    async def test_authentication_failure(self, azure_settings: AzureSettings) -> None:
        with MockAzureContext(fail_auth=True) as ctx:
            control_plane = ArmControlPlane(azure_settings, ctx.credential)

            with pytest.raises(RemoteFailure) as exc_info:
                await control_plane.get(ResourceKind.REGISTRY, "shopacr", {})

        assert exc_info.value.error_class == ErrorClass.UNAUTHENTICATED
