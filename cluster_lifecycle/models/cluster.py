"""Data models for clusters, cluster specs and observed cluster-api objects."""

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"
MACHINE_DEPLOYMENT_LABEL = "cluster.x-k8s.io/deployment-name"

API_VERSION = "anywhere.eks.amazonaws.com/v1alpha1"
PAUSED_ANNOTATION = "anywhere.eks.amazonaws.com/paused"
CLUSTER_RESOURCE_TYPE = "clusters.anywhere.eks.amazonaws.com"


class SpecModel(BaseModel):
    """Base for spec models that read and write camelCase manifests."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_manifest_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Cluster(BaseModel):
    """A management or workload cluster reachable through a kubeconfig."""

    name: str
    kubeconfig_file: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("cluster name cannot be empty")
        return v


class Ref(SpecModel):
    """Reference to another object by kind and name."""

    kind: str
    name: str


class Taint(SpecModel):
    key: str
    value: str = ""
    effect: str

    @field_validator("effect")
    @classmethod
    def validate_effect(cls, v: str) -> str:
        """Validate taint effect is one of the allowed values."""
        allowed = ["NoSchedule", "PreferNoSchedule", "NoExecute"]
        if v not in allowed:
            raise ValueError(f"effect must be one of {allowed}, got {v}")
        return v


class Endpoint(SpecModel):
    host: str


class ControlPlaneConfiguration(SpecModel):
    count: int = Field(default=1, ge=1)
    endpoint: Endpoint | None = None
    machine_group_ref: Ref | None = None
    taints: list[Taint] = Field(default_factory=list)


class WorkerNodeGroupConfiguration(SpecModel):
    name: str = "md-0"
    count: int = Field(default=1, ge=0)
    machine_group_ref: Ref | None = None


class ExternalEtcdConfiguration(SpecModel):
    count: int = Field(default=3, ge=1)
    machine_group_ref: Ref | None = None


class CidrBlocks(SpecModel):
    cidr_blocks: list[str] = Field(default_factory=list)


class ClusterNetwork(SpecModel):
    cni: str = "cilium"
    pods: CidrBlocks = Field(default_factory=lambda: CidrBlocks(cidr_blocks=["192.168.0.0/16"]))
    services: CidrBlocks = Field(default_factory=lambda: CidrBlocks(cidr_blocks=["10.96.0.0/12"]))


class ClusterSpec(SpecModel):
    """Desired state of a workload cluster.

    ``paused`` mirrors the pause annotation while a workflow holds the
    reconcilers paused. It is never written to the cluster manifest.
    """

    name: str
    kubernetes_version: str = "1.21"
    control_plane_configuration: ControlPlaneConfiguration = Field(
        default_factory=ControlPlaneConfiguration
    )
    worker_node_group_configurations: list[WorkerNodeGroupConfiguration] = Field(
        default_factory=list
    )
    external_etcd_configuration: ExternalEtcdConfiguration | None = None
    datacenter_ref: Ref
    cluster_network: ClusterNetwork = Field(default_factory=ClusterNetwork)
    bundles_ref: Ref | None = None
    bundles: dict[str, Any] | None = Field(default=None, exclude=True)
    components_manifest: str | None = Field(default=None, exclude=True)
    override_cluster_spec_file: str | None = Field(default=None, exclude=True)
    paused: bool = Field(default=False, exclude=True)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the cluster name is a DNS-1123 label."""
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", v or ""):
            raise ValueError(f"cluster name '{v}' must be a lowercase DNS-1123 label")
        return v

    @field_validator("kubernetes_version")
    @classmethod
    def validate_kubernetes_version(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+$", v):
            raise ValueError(f"kubernetes_version '{v}' must look like 1.21")
        return v

    def paused_annotation(self) -> str:
        return PAUSED_ANNOTATION

    def resource_type(self) -> str:
        return CLUSTER_RESOURCE_TYPE

    def clear_pause_annotation(self) -> None:
        self.paused = False

    def has_override_cluster_spec_file(self) -> bool:
        return bool(self.override_cluster_spec_file)

    def read_override_cluster_spec_file(self) -> str:
        return Path(self.override_cluster_spec_file).read_text()

    def machine_group_refs(self) -> list[Ref]:
        """All machine group references used by the spec, in pause order."""
        refs = []
        if self.control_plane_configuration.machine_group_ref:
            refs.append(self.control_plane_configuration.machine_group_ref)
        for group in self.worker_node_group_configurations:
            if group.machine_group_ref:
                refs.append(group.machine_group_ref)
        if self.external_etcd_configuration and self.external_etcd_configuration.machine_group_ref:
            refs.append(self.external_etcd_configuration.machine_group_ref)
        return refs

    def validate_machine_refs(self, machine_config_names: set[str]) -> None:
        """Check that every machine group reference resolves.

        Raises:
            ValueError: If a reference is missing or points to an unknown config
        """
        etcd = self.external_etcd_configuration
        if etcd is not None and etcd.machine_group_ref is None:
            raise ValueError("machineGroupRef for etcd machines is not defined")
        for ref in self.machine_group_refs():
            if ref.name not in machine_config_names:
                raise ValueError(f"machine config {ref.name} referenced by {self.name} not found")

    def spec_fields(self) -> dict:
        """Comparable spec content, without in-memory markers."""
        return self.model_dump(exclude={"name"})

    def to_manifest(self) -> dict:
        return {
            "apiVersion": API_VERSION,
            "kind": "Cluster",
            "metadata": {"name": self.name},
            "spec": {k: v for k, v in self.to_manifest_dict().items() if k != "name"},
        }

    @classmethod
    def from_manifest(cls, obj: dict) -> "ClusterSpec":
        """Parse a Cluster object as returned by the API server."""
        metadata = obj.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        spec = dict(obj.get("spec") or {})
        return cls(
            name=metadata.get("name", ""),
            paused=annotations.get(PAUSED_ANNOTATION) == "true",
            **spec,
        )


class Machine(BaseModel):
    """A cluster-api Machine as observed on the management cluster."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)
    node_ref: str | None = None

    def is_control_plane(self) -> bool:
        return CONTROL_PLANE_LABEL in self.labels

    def is_worker(self) -> bool:
        return MACHINE_DEPLOYMENT_LABEL in self.labels

    def is_ready(self) -> bool:
        # The node reference means the node joined the workload cluster;
        # infrastructure provisioning status alone is not enough.
        return self.node_ref is not None

    @classmethod
    def from_kubernetes_object(cls, obj: dict) -> "Machine":
        metadata = obj.get("metadata") or {}
        node_ref = (obj.get("status") or {}).get("nodeRef")
        return cls(
            name=metadata.get("name", ""),
            labels=metadata.get("labels") or {},
            node_ref=node_ref.get("name") if node_ref else None,
        )


class CAPICluster(BaseModel):
    """A cluster-api Cluster object tracked on a management cluster."""

    name: str
    namespace: str = "eksa-system"

    @classmethod
    def from_kubernetes_object(cls, obj: dict) -> "CAPICluster":
        metadata = obj.get("metadata") or {}
        return cls(name=metadata.get("name", ""), namespace=metadata.get("namespace", "default"))


class Deployment(BaseModel):
    """A namespaced deployment whose availability or logs are tracked."""

    name: str
    namespace: str
    container: str | None = None
