"""Azure Resource Manager implementation of the ControlPlane protocol.

Resources are managed through the generic resource API (get_by_id /
begin_create_or_update_by_id) so every kind shares one code path; only the
ARM type, api version, request body and read-back projection differ.

Kind mapping:
    ApiEnablement   resource provider registration (namespace)
    Registry        Microsoft.ContainerRegistry/registries
    ServiceAccount  Microsoft.ManagedIdentity/userAssignedIdentities
    SqlInstance     Microsoft.DBforPostgreSQL/flexibleServers
    SqlDatabase     .../flexibleServers/{instance}/databases
    SqlUser         .../flexibleServers/{instance}/administrators
    ComputeService  Microsoft.App/containerApps

Bindings are role assignments with deterministic names
(uuid5 of principal, role and scope), so a repeated grant addresses the same
assignment and a conflict means it already exists.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .azure_support import nested, run_blocking
from .config import AzureSettings
from .errors import ErrorClass, RemoteError, RemoteFailure
from .interfaces import Operation, OperationStatus
from .model import PROJECT_SCOPE, ObservedState, ResourceKind

logger = logging.getLogger(__name__)

ROLE_ASSIGNMENT_API_VERSION = "2022-04-01"
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# Catalog role -> Azure built-in role definition GUID
ROLE_DEFINITIONS: dict[str, str] = {
    "registry-reader": "7f951dda-4ed3-4680-a7ca-43fe172d538d",  # AcrPull
    "registry-writer": "8311e382-0749-4cb8-b61a-304f252e45ec",  # AcrPush
    "secret-accessor": "4633458b-17de-408a-b874-0445c86b69e6",  # Key Vault Secrets User
    "service-invoker": "acdd72a7-3385-48ef-bd42-f606fba81ae7",  # Reader
    "database-client": "acdd72a7-3385-48ef-bd42-f606fba81ae7",  # Reader
    "log-writer": "3913510d-42f4-4e42-8a64-420c390055eb",  # Monitoring Metrics Publisher
    "metric-writer": "3913510d-42f4-4e42-8a64-420c390055eb",  # Monitoring Metrics Publisher
}

DELETION_PROTECTION_TAG = "deletion-protection"
MANAGED_BY_TAG = "managed-by"
MANAGED_BY_VALUE = "topology-provisioner"


@dataclass(frozen=True)
class ArmKind:
    """How one resource kind maps onto ARM."""

    resource_type: str
    api_version: str
    parent_type: str | None = None
    # attributes -> (properties, sku name or None, extra tags)
    build: Callable[[Mapping[str, Any]], tuple[dict[str, Any], str | None, dict[str, str]]] = (
        lambda attributes: ({}, None, {})
    )
    # (properties, sku name, tags) -> attributes in topology vocabulary; applied to both
    # the remote resource and the built request so compared values share one type
    read: Callable[[Mapping[str, Any], str | None, Mapping[str, str]], dict[str, Any]] = (
        lambda properties, sku, tags: {}
    )
    # ARM resource -> outputs
    outputs: Callable[[GenericResource, Mapping[str, Any]], dict[str, Any]] = (
        lambda resource, attributes: {}
    )
    known_keys: frozenset[str] = field(default_factory=frozenset)


def _registry_build(attributes: Mapping[str, Any]) -> tuple[dict[str, Any], str | None, dict[str, str]]:
    return {"adminUserEnabled": False}, str(attributes.get("sku", "Basic")), {}


def _registry_outputs(resource: GenericResource, attributes: Mapping[str, Any]) -> dict[str, Any]:
    login_server = nested(resource.properties, "loginServer")
    outputs: dict[str, Any] = {"login_server": login_server}
    if login_server and attributes.get("repository"):
        outputs["push_path"] = f"{login_server}/{attributes['repository']}"
    return outputs


def _identity_outputs(resource: GenericResource, attributes: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "principal_id": nested(resource.properties, "principalId"),
        "client_id": nested(resource.properties, "clientId"),
    }


def _sql_instance_build(
    attributes: Mapping[str, Any],
) -> tuple[dict[str, Any], str | None, dict[str, str]]:
    properties = {
        "version": str(attributes.get("version", "16")),
        "network": {
            "publicNetworkAccess": "Enabled" if attributes.get("public_ip") else "Disabled"
        },
        "storage": {"storageSizeGB": int(attributes.get("storage_gb", 32))},
    }
    tags = {DELETION_PROTECTION_TAG: str(bool(attributes.get("deletion_protection"))).lower()}
    return properties, str(attributes.get("tier", "Standard_B1ms")), tags


def _sql_instance_read(
    properties: Mapping[str, Any], sku: str | None, tags: Mapping[str, str]
) -> dict[str, Any]:
    return {
        "version": nested(properties, "version"),
        "public_ip": nested(properties, "network", "publicNetworkAccess") == "Enabled",
        "storage_gb": nested(properties, "storage", "storageSizeGB"),
        "deletion_protection": tags.get(DELETION_PROTECTION_TAG) == "true",
        "tier": sku,
    }


def _sql_instance_outputs(resource: GenericResource, attributes: Mapping[str, Any]) -> dict[str, Any]:
    return {"connection_name": nested(resource.properties, "fullyQualifiedDomainName")}


def _sql_database_build(
    attributes: Mapping[str, Any],
) -> tuple[dict[str, Any], str | None, dict[str, str]]:
    return {"charset": str(attributes.get("charset", "UTF8"))}, None, {}


def _sql_user_build(
    attributes: Mapping[str, Any],
) -> tuple[dict[str, Any], str | None, dict[str, str]]:
    return (
        {
            "principalName": str(attributes.get("principal_name", attributes.get("name", ""))),
            "principalType": str(attributes.get("principal_type", "ServicePrincipal")),
        },
        None,
        {},
    )


def _compute_build(
    attributes: Mapping[str, Any],
) -> tuple[dict[str, Any], str | None, dict[str, str]]:
    image = attributes.get("image")
    if not image:
        raise RemoteFailure(ErrorClass.INVALID_ARGUMENT, "ComputeService has no image")
    env = [
        {"name": str(key), "value": str(value)}
        for key, value in sorted((attributes.get("env") or {}).items())
    ]
    properties: dict[str, Any] = {
        "environmentId": attributes.get("environment"),
        "configuration": {
            "ingress": {
                "external": bool(attributes.get("public", False)),
                "targetPort": int(attributes.get("port", 8080)),
            }
        },
        "template": {
            "containers": [
                {"name": "app", "image": str(image), "env": env},
            ]
        },
    }
    return properties, None, {}


def _compute_read(
    properties: Mapping[str, Any], sku: str | None, tags: Mapping[str, str]
) -> dict[str, Any]:
    containers = nested(properties, "template", "containers") or [{}]
    env = {item.get("name"): item.get("value") for item in containers[0].get("env") or []}
    return {
        "image": containers[0].get("image"),
        "env": env,
        "environment": nested(properties, "environmentId"),
        "public": nested(properties, "configuration", "ingress", "external"),
        "port": nested(properties, "configuration", "ingress", "targetPort"),
    }


def _compute_outputs(resource: GenericResource, attributes: Mapping[str, Any]) -> dict[str, Any]:
    fqdn = nested(resource.properties, "configuration", "ingress", "fqdn")
    return {"uri": f"https://{fqdn}" if fqdn else None}


ARM_KINDS: dict[ResourceKind, ArmKind] = {
    ResourceKind.REGISTRY: ArmKind(
        resource_type="Microsoft.ContainerRegistry/registries",
        api_version="2023-07-01",
        build=_registry_build,
        read=lambda properties, sku, tags: {"sku": sku},
        outputs=_registry_outputs,
        known_keys=frozenset({"sku"}),
    ),
    ResourceKind.SERVICE_ACCOUNT: ArmKind(
        resource_type="Microsoft.ManagedIdentity/userAssignedIdentities",
        api_version="2023-01-31",
        outputs=_identity_outputs,
    ),
    ResourceKind.SQL_INSTANCE: ArmKind(
        resource_type="Microsoft.DBforPostgreSQL/flexibleServers",
        api_version="2022-12-01",
        build=_sql_instance_build,
        read=_sql_instance_read,
        outputs=_sql_instance_outputs,
        known_keys=frozenset(
            {"version", "public_ip", "storage_gb", "deletion_protection", "tier"}
        ),
    ),
    ResourceKind.SQL_DATABASE: ArmKind(
        resource_type="databases",
        parent_type="Microsoft.DBforPostgreSQL/flexibleServers",
        api_version="2022-12-01",
        build=_sql_database_build,
        read=lambda properties, sku, tags: {"charset": nested(properties, "charset")},
        known_keys=frozenset({"charset"}),
    ),
    ResourceKind.SQL_USER: ArmKind(
        resource_type="administrators",
        parent_type="Microsoft.DBforPostgreSQL/flexibleServers",
        api_version="2022-12-01",
        build=_sql_user_build,
        read=lambda properties, sku, tags: {
            "principal_name": nested(properties, "principalName"),
            "principal_type": nested(properties, "principalType"),
        },
        known_keys=frozenset({"principal_name", "principal_type"}),
    ),
    ResourceKind.COMPUTE_SERVICE: ArmKind(
        resource_type="Microsoft.App/containerApps",
        api_version="2023-05-01",
        build=_compute_build,
        read=_compute_read,
        outputs=_compute_outputs,
        known_keys=frozenset({"image", "env", "environment", "public", "port"}),
    ),
}


def role_assignment_name(principal: str, role_definition_id: str, scope: str) -> str:
    """Deterministic role assignment name; same inputs address the same assignment."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, f"{principal}:{role_definition_id}:{scope}"))


class ArmControlPlane:
    """ControlPlane backed by Azure Resource Manager."""

    def __init__(
        self,
        settings: AzureSettings,
        credential: Any,
        role_definitions: Mapping[str, str] | None = None,
    ) -> None:
        self._settings = settings
        self._client = ResourceManagementClient(
            credential=credential, subscription_id=settings.subscription_id
        )
        self._role_definitions = {**ROLE_DEFINITIONS, **(role_definitions or {})}

    # -- resource ids -------------------------------------------------------

    def resource_id(self, kind: ResourceKind, identity: str, attributes: Mapping[str, Any]) -> str:
        arm_kind = ARM_KINDS[kind]
        base = f"{self._settings.project_scope}/providers"
        if arm_kind.parent_type is None:
            return f"{base}/{arm_kind.resource_type}/{identity}"
        parent = attributes.get("instance")
        if not parent:
            raise RemoteFailure(
                ErrorClass.INVALID_ARGUMENT, f"{kind.value} '{identity}' has no parent instance"
            )
        return f"{base}/{arm_kind.parent_type}/{parent}/{arm_kind.resource_type}/{identity}"

    def scope_id(self, scope: str) -> str:
        if scope == PROJECT_SCOPE:
            return self._settings.project_scope
        return scope

    def role_definition_id(self, role: str) -> str:
        guid = self._role_definitions.get(role, role)
        if not re.match(VALID_GUID_PATTERN, guid.lower()):
            raise RemoteFailure(
                ErrorClass.INVALID_ARGUMENT,
                f"Role '{role}' has no role definition and is not a GUID",
            )
        return (
            f"/subscriptions/{self._settings.subscription_id}"
            f"/providers/Microsoft.Authorization/roleDefinitions/{guid}"
        )

    def role_assignment_id(self, scope: str, principal: str, role: str) -> str:
        scope_id = self.scope_id(scope)
        name = role_assignment_name(principal, self.role_definition_id(role), scope_id)
        return f"{scope_id}/providers/Microsoft.Authorization/roleAssignments/{name}"

    # -- ControlPlane -------------------------------------------------------

    async def get(
        self, kind: ResourceKind, identity: str, attributes: Mapping[str, Any]
    ) -> ObservedState:
        if kind == ResourceKind.API_ENABLEMENT:
            return await self._get_provider(identity, attributes)

        arm_kind = ARM_KINDS[kind]
        resource_id = self.resource_id(kind, identity, attributes)
        resource = await self._get_resource(resource_id, arm_kind.api_version, "Resource read")
        if resource is None:
            return ObservedState.absent()

        # Keys this adapter cannot read back are not compared
        observed = {
            key: value
            for key, value in attributes.items()
            if key not in arm_kind.known_keys
        }
        remote = arm_kind.read(
            resource.properties or {},
            resource.sku.name if resource.sku is not None else None,
            resource.tags or {},
        )
        wanted = arm_kind.read(*arm_kind.build(attributes))
        for key, value in remote.items():
            # Equal once both sides went through the request body (16 vs "16")
            if key in attributes and wanted.get(key) == value:
                observed[key] = attributes[key]
            else:
                observed[key] = value
        return ObservedState(
            exists=True,
            attributes=observed,
            remote_id=resource.id or resource_id,
            outputs=arm_kind.outputs(resource, attributes),
        )

    async def create(
        self, kind: ResourceKind, identity: str, attributes: Mapping[str, Any]
    ) -> Operation:
        if kind == ResourceKind.API_ENABLEMENT:
            namespace = str(attributes.get("namespace", identity))
            await run_blocking(
                lambda: self._client.providers.register(namespace),
                self._settings.call_timeout_seconds,
                "Provider registration",
            )
            logger.info("Registered resource provider", extra={"namespace": namespace})
            return Operation(remote_id=namespace, kind=kind, handle=("provider", namespace))

        resource_id = self.resource_id(kind, identity, attributes)
        return await self._put(kind, resource_id, attributes)

    async def update(
        self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]
    ) -> Operation:
        if kind == ResourceKind.API_ENABLEMENT:
            return await self.create(kind, remote_id, attributes)
        return await self._put(kind, remote_id, attributes)

    async def poll(self, operation: Operation) -> OperationStatus:
        handle = operation.handle
        if handle is None:
            return OperationStatus.succeeded()

        if isinstance(handle, tuple) and handle[0] == "provider":
            provider = await run_blocking(
                lambda: self._client.providers.get(handle[1]),
                self._settings.call_timeout_seconds,
                "Provider read",
            )
            if provider.registration_state == "Registered":
                return OperationStatus.succeeded()
            return OperationStatus.pending()

        done = await run_blocking(handle.done, self._settings.call_timeout_seconds, "Operation poll")
        if not done:
            return OperationStatus.pending()
        try:
            await run_blocking(handle.result, self._settings.call_timeout_seconds, "Operation result")
        except RemoteError as e:
            return OperationStatus.failed(e.error_class, str(e))
        return OperationStatus.succeeded()

    async def has_binding(self, scope: str, principal: str, role: str) -> bool:
        assignment_id = self.role_assignment_id(scope, principal, role)
        resource = await self._get_resource(
            assignment_id, ROLE_ASSIGNMENT_API_VERSION, "Role assignment read"
        )
        return resource is not None

    async def bind_policy(self, scope: str, principal: str, role: str) -> Operation | None:
        assignment_id = self.role_assignment_id(scope, principal, role)
        parameters: dict[str, Any] = {
            "properties": {
                "roleDefinitionId": self.role_definition_id(role),
                "principalId": principal,
                "principalType": "ServicePrincipal",
                "description": f"Managed by {MANAGED_BY_VALUE}",
            }
        }
        poller = await run_blocking(
            lambda: self._client.resources.begin_create_or_update_by_id(
                assignment_id, ROLE_ASSIGNMENT_API_VERSION, parameters
            ),
            self._settings.call_timeout_seconds,
            "Role assignment",
        )
        return Operation(remote_id=assignment_id, kind=ResourceKind.IAM_BINDING, handle=poller)

    # -- helpers ------------------------------------------------------------

    async def _get_resource(
        self, resource_id: str, api_version: str, operation_name: str
    ) -> GenericResource | None:
        try:
            return await run_blocking(
                lambda: self._client.resources.get_by_id(resource_id, api_version),
                self._settings.call_timeout_seconds,
                operation_name,
            )
        except RemoteFailure as e:
            if e.error_class == ErrorClass.NOT_FOUND:
                return None
            raise

    async def _get_provider(self, identity: str, attributes: Mapping[str, Any]) -> ObservedState:
        namespace = str(attributes.get("namespace", identity))
        try:
            provider = await run_blocking(
                lambda: self._client.providers.get(namespace),
                self._settings.call_timeout_seconds,
                "Provider read",
            )
        except RemoteFailure as e:
            if e.error_class == ErrorClass.NOT_FOUND:
                return ObservedState.absent()
            raise
        if provider.registration_state != "Registered":
            return ObservedState.absent()
        return ObservedState(
            exists=True,
            attributes=dict(attributes),
            remote_id=provider.id or namespace,
            outputs={"namespace": namespace, "registration_state": provider.registration_state},
        )

    async def _put(
        self, kind: ResourceKind, resource_id: str, attributes: Mapping[str, Any]
    ) -> Operation:
        arm_kind = ARM_KINDS[kind]
        properties, sku, tags = arm_kind.build(attributes)
        # Plain REST-shaped body; the SDK serializer accepts dicts for model parameters
        parameters: dict[str, Any] = {"properties": properties}
        if arm_kind.parent_type is None:
            parameters["location"] = self._settings.location
            parameters["tags"] = {
                **(attributes.get("tags") or {}),
                MANAGED_BY_TAG: MANAGED_BY_VALUE,
                **tags,
            }
        if sku:
            parameters["sku"] = {"name": sku}
        identity_id = attributes.get("service_account")
        if kind == ResourceKind.COMPUTE_SERVICE and identity_id:
            parameters["identity"] = {
                "type": "UserAssigned",
                "userAssignedIdentities": {str(identity_id): {}},
            }

        poller = await run_blocking(
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id, arm_kind.api_version, parameters
            ),
            self._settings.call_timeout_seconds,
            f"{kind.value} apply",
        )
        logger.info(
            "Submitted resource apply",
            extra={"kind": kind.value, "resource_id": resource_id},
        )
        return Operation(remote_id=resource_id, kind=kind, handle=poller)

