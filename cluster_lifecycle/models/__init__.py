"""Data models for cluster specs, provider configs and observed state."""

from cluster_lifecycle.models.cluster import (
    CAPICluster,
    Cluster,
    ClusterSpec,
    ControlPlaneConfiguration,
    Deployment,
    ExternalEtcdConfiguration,
    Machine,
    Ref,
    WorkerNodeGroupConfiguration,
)
from cluster_lifecycle.models.provider import DatacenterConfig, MachineConfig

__all__ = [
    "CAPICluster",
    "Cluster",
    "ClusterSpec",
    "ControlPlaneConfiguration",
    "DatacenterConfig",
    "Deployment",
    "ExternalEtcdConfiguration",
    "Machine",
    "MachineConfig",
    "Ref",
    "WorkerNodeGroupConfiguration",
]
