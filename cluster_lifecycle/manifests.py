"""Reading cluster configuration files and rendering resource manifests.

A cluster configuration file is a multi-document YAML file holding one
``Cluster`` document, its datacenter config, the machine configs it
references and, optionally, a ``Bundles`` document.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from cluster_lifecycle.exceptions import ValidationError
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.models.cluster import API_VERSION, ClusterSpec
from cluster_lifecycle.models.provider import DatacenterConfig, MachineConfig

logger = get_logger(__name__)


class ClusterResources(BaseModel):
    """A cluster spec together with the provider objects it references."""

    spec: ClusterSpec
    datacenter_config: DatacenterConfig
    machine_configs: list[MachineConfig] = Field(default_factory=list)


def load_cluster_config(path: str | Path) -> ClusterResources:
    """Load a cluster configuration file.

    Raises:
        ValidationError: If the file is missing, malformed or inconsistent
    """
    path = Path(path)
    logger.debug(f"Reading cluster config: {path}")

    if not path.exists():
        raise ValidationError(f"Cluster config file not found: {path}")

    try:
        with open(path) as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
    except yaml.YAMLError as e:
        raise ValidationError(f"Failed to parse cluster config {path}", str(e))

    cluster_docs = [d for d in documents if d.get("kind") == "Cluster"]
    if len(cluster_docs) != 1:
        raise ValidationError(
            f"Cluster config {path} must contain exactly one Cluster document, "
            f"found {len(cluster_docs)}"
        )

    try:
        spec = ClusterSpec.from_manifest(cluster_docs[0])
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid Cluster document in {path}", str(e))

    datacenter_config = None
    machine_configs = []
    for doc in documents:
        kind = doc.get("kind", "")
        name = (doc.get("metadata") or {}).get("name")
        if kind == spec.datacenter_ref.kind and name == spec.datacenter_ref.name:
            datacenter_config = DatacenterConfig.from_manifest(doc)
        elif kind == "Bundles":
            spec.bundles = doc
        elif kind.endswith("MachineConfig"):
            machine_configs.append(MachineConfig.from_manifest(doc))

    if datacenter_config is None:
        raise ValidationError(
            f"Datacenter config {spec.datacenter_ref.kind}/{spec.datacenter_ref.name} "
            f"not found in {path}"
        )

    try:
        spec.validate_machine_refs({m.name for m in machine_configs})
    except ValueError as e:
        raise ValidationError(f"Invalid machine group references in {path}", str(e))

    logger.info(
        f"Loaded cluster config for {spec.name} with {len(machine_configs)} machine configs"
    )
    return ClusterResources(
        spec=spec, datacenter_config=datacenter_config, machine_configs=machine_configs
    )


def marshal_cluster_spec(
    spec: ClusterSpec, datacenter_config: DatacenterConfig, machine_configs: list[MachineConfig]
) -> bytes:
    """Render the cluster, datacenter and machine configs as one YAML stream."""
    documents = [spec.to_manifest(), datacenter_config.to_manifest()]
    documents.extend(m.to_manifest() for m in machine_configs)
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False).encode()


def marshal_bundles(spec: ClusterSpec) -> bytes:
    """Render the release bundles object, renamed after the cluster."""
    bundles = dict(spec.bundles or {"apiVersion": API_VERSION, "kind": "Bundles", "spec": {}})
    metadata = dict(bundles.get("metadata") or {})
    metadata["name"] = spec.name
    bundles["metadata"] = metadata
    return yaml.safe_dump(bundles, default_flow_style=False, sort_keys=False).encode()


def load_manifest(path: str | Path) -> bytes:
    """Read a manifest file referenced from a cluster spec."""
    path = Path(path)
    try:
        return path.read_bytes()
    except OSError as e:
        raise ValidationError(f"Failed loading manifest {path}", str(e))
