"""Topology file loading with validation.

All file operations enforce size limits. Input validation happens here, at
the boundary; structural checks across nodes (cycles, scopes, parents) are
done by the graph builder.

EXAMPLE:
```yaml
apiVersion: provisioner/v1
kind: Topology
metadata:
  name: shop
spec:
  nodes:
    - id: registry
      kind: Registry
      attributes: {sku: Basic}
    - id: runtime-sa
      kind: ServiceAccount
    - id: db-password
      kind: Secret
    - id: db-password-v1
      kind: SecretVersion
      attributes: {secret: db-password, valueRef: "generate:32"}
    - id: app
      kind: ComputeService
      attributes:
        image: "${registry.login_server}/shop:1.4"
        serviceAccount: {ref: runtime-sa, output: client_id}
  outputs:
    health_url: "${app.uri}/healthz"
```
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_TOPOLOGY_FILE_SIZE_BYTES, MAX_TOPOLOGY_NODES
from .errors import ConfigurationError, ConfigurationErrorKind
from .model import DesiredTopology, Ref, ResourceKind, ResourceNode, Template

logger = logging.getLogger(__name__)

NODE_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$"
VALUE_REF_PATTERN = re.compile(r"^(env|file|generate):.+$")

# Attributes each kind must declare (snake_case, after key normalization)
REQUIRED_ATTRIBUTES: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.API_ENABLEMENT: ("enables",),
    ResourceKind.SECRET_VERSION: ("secret", "value_ref"),
    ResourceKind.SQL_INSTANCE: ("deletion_protection", "public_ip"),
    ResourceKind.SQL_USER: ("instance",),
    ResourceKind.SQL_DATABASE: ("instance",),
    ResourceKind.COMPUTE_SERVICE: ("image",),
    ResourceKind.IAM_BINDING: ("principal", "role", "scope"),
}

# SqlInstance safety settings must be stated, never defaulted
EXPLICIT_BOOLEAN_ATTRIBUTES: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.SQL_INSTANCE: ("deletion_protection", "public_ip"),
}


def _snake_case(key: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


def _convert_value(value: Any) -> Any:
    """Turn {ref, output} mappings into Ref and ${...} strings into Template."""
    if isinstance(value, dict):
        if set(value) == {"ref", "output"}:
            return Ref(str(value["ref"]), str(value["output"]))
        return {key: _convert_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_convert_value(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return Template(value)
    return value


class NodeSpec(BaseModel):
    """One node as written in the topology file."""

    id: Annotated[str, Field(pattern=NODE_ID_PATTERN)]
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)
    references: list[str] = Field(default_factory=list, alias="dependsOn")

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("attributes", mode="before")
    @classmethod
    def normalize_keys(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("attributes must be a mapping")
        return {_snake_case(str(key)): item for key, item in v.items()}

    @model_validator(mode="after")
    def check_kind_attributes(self) -> NodeSpec:
        missing = [
            key for key in REQUIRED_ATTRIBUTES.get(self.kind, ()) if key not in self.attributes
        ]
        if missing:
            raise ValueError(f"{self.kind.value} '{self.id}' requires attributes {missing}")

        for key in EXPLICIT_BOOLEAN_ATTRIBUTES.get(self.kind, ()):
            if not isinstance(self.attributes[key], bool):
                raise ValueError(f"{self.kind.value} '{self.id}': {key} must be true or false")

        if self.kind == ResourceKind.SECRET_VERSION:
            value_ref = self.attributes["value_ref"]
            if not isinstance(value_ref, str) or not VALUE_REF_PATTERN.match(value_ref):
                # Literal secret values are not accepted in topology files
                raise ValueError(
                    f"SecretVersion '{self.id}': valueRef must be env:NAME, file:PATH "
                    "or generate:LENGTH"
                )

        if self.kind == ResourceKind.API_ENABLEMENT and not isinstance(
            self.attributes["enables"], list
        ):
            raise ValueError(f"ApiEnablement '{self.id}': enables must be a list of kinds")
        return self

    def to_node(self) -> ResourceNode:
        return ResourceNode(
            id=self.id,
            kind=self.kind,
            attributes=_convert_value(self.attributes),
            references=frozenset(self.references),
        )


class TopologySpec(BaseModel):
    """Whole topology file (the `spec` section when wrapped)."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=90)] = "topology"
    nodes: Annotated[list[NodeSpec], Field(min_length=1, max_length=MAX_TOPOLOGY_NODES)]
    outputs: dict[str, str] = Field(default_factory=dict)

    def to_topology(self) -> DesiredTopology:
        return DesiredTopology(
            nodes=tuple(node.to_node() for node in self.nodes),
            outputs={name: Template(text) for name, text in self.outputs.items()},
            name=self.name,
        )


def parse_topology(raw_data: Any, source: str = "<memory>") -> DesiredTopology:
    """Validate already-parsed YAML content and build the DesiredTopology.

    Raises:
        ConfigurationError: InvalidTopology with every validation error listed.
    """
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY,
            f"Topology must be a YAML mapping: {source}",
        )

    # Flat format, or apiVersion/kind/metadata/spec wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec")
        if not isinstance(spec_data, dict):
            raise ConfigurationError(
                ConfigurationErrorKind.INVALID_TOPOLOGY, f"spec section must be a mapping: {source}"
            )
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        spec = TopologySpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY,
            f"Validation failed for {source}:\n{error_list}",
        ) from e

    return spec.to_topology()


def load_topology(path: Path) -> DesiredTopology:
    """Load and validate a topology file.

    Raises:
        ConfigurationError: The file is missing, too large, not YAML or invalid.
    """
    if not path.exists():
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY, f"Topology file not found: {path}"
        )

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY, f"Failed to stat topology file {path}: {e}"
        ) from e

    if file_size > MAX_TOPOLOGY_FILE_SIZE_BYTES:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY,
            f"Topology file exceeds maximum size of {MAX_TOPOLOGY_FILE_SIZE_BYTES} bytes: {path}",
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY, f"Failed to read topology file {path}: {e}"
        ) from e
    except UnicodeDecodeError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY, f"Topology file is not valid UTF-8: {path}: {e}"
        ) from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            ConfigurationErrorKind.INVALID_TOPOLOGY, f"Invalid YAML in {path}: {e}"
        ) from e

    topology = parse_topology(raw_data, source=str(path))
    logger.info(
        "Loaded topology '%s' from %s (%d nodes)", topology.name, path, len(topology.nodes)
    )
    return topology
