"""Infrastructure provider capability interface and registry.

A provider is chosen once per workflow with ``get_provider`` from the
datacenter kind of the cluster spec. Workflows only talk to the ``Provider``
interface; how a provider renders machine templates is out of scope here.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from types import MappingProxyType

from pydantic import BaseModel, Field

from cluster_lifecycle.exceptions import ProviderError
from cluster_lifecycle.models.cluster import Cluster, ClusterSpec
from cluster_lifecycle.models.provider import DatacenterConfig, MachineConfig


class ProviderResources(BaseModel):
    """Static facts about a provider: resource kinds and its controllers."""

    name: str
    datacenter_kind: str
    datacenter_resource_type: str
    machine_resource_type: str = ""
    deployments: dict[str, list[str]] = Field(default_factory=dict)


PROVIDER_RESOURCES = MappingProxyType(
    {
        "VSphereDatacenterConfig": ProviderResources(
            name="vsphere",
            datacenter_kind="VSphereDatacenterConfig",
            datacenter_resource_type="vspheredatacenterconfigs.anywhere.eks.amazonaws.com",
            machine_resource_type="vspheremachineconfigs.anywhere.eks.amazonaws.com",
            deployments={"capv-system": ["capv-controller-manager"]},
        ),
        "DockerDatacenterConfig": ProviderResources(
            name="docker",
            datacenter_kind="DockerDatacenterConfig",
            datacenter_resource_type="dockerdatacenterconfigs.anywhere.eks.amazonaws.com",
            deployments={"capd-system": ["capd-controller-manager"]},
        ),
        "MicrovmDatacenterConfig": ProviderResources(
            name="microvm",
            datacenter_kind="MicrovmDatacenterConfig",
            datacenter_resource_type="microvmdatacenterconfigs.anywhere.eks.amazonaws.com",
            machine_resource_type="microvmmachineconfigs.anywhere.eks.amazonaws.com",
            deployments={"capmvm-system": ["capmvm-controller-manager"]},
        ),
    }
)


class Provider(ABC):
    """Capabilities a workflow needs from an infrastructure provider."""

    def __init__(
        self,
        resources: ProviderResources,
        datacenter_config: DatacenterConfig,
        machine_configs: list[MachineConfig] | None = None,
    ):
        self.resources = resources
        self._datacenter_config = datacenter_config
        self._machine_configs = list(machine_configs or [])

    @property
    def name(self) -> str:
        return self.resources.name

    def datacenter_resource_type(self) -> str:
        return self.resources.datacenter_resource_type

    def machine_resource_type(self) -> str:
        """Resource type of machine configs, empty if the provider has none."""
        return self.resources.machine_resource_type

    def datacenter_config(self) -> DatacenterConfig:
        return self._datacenter_config

    def machine_configs(self) -> list[MachineConfig]:
        return list(self._machine_configs)

    def get_deployments(self) -> Mapping[str, list[str]]:
        """Provider controller deployments, keyed by namespace."""
        return self.resources.deployments

    @abstractmethod
    def generate_deployment_file_for_create(
        self, workload_cluster: Cluster, spec: ClusterSpec, file_name: str
    ) -> str:
        """Render the cluster-api manifest for a new cluster and return its path."""

    @abstractmethod
    def generate_deployment_file_for_upgrade(
        self,
        bootstrap_cluster: Cluster,
        workload_cluster: Cluster,
        spec: ClusterSpec,
        file_name: str,
    ) -> str:
        """Render the cluster-api manifest for an upgrade and return its path."""

    def generate_storage_class(self) -> bytes | None:
        return None

    def generate_mhc(self) -> bytes:
        """Machine health check manifest, empty when the provider has none."""
        return b""

    def update_kubeconfig(self, kubeconfig: bytes, cluster_name: str) -> bytes:
        return kubeconfig


class StaticProvider(Provider):
    """Provider backed only by the registry data.

    It can pause, resume, wait and collect logs, but it can't render
    manifests: create and upgrade need an override cluster spec file.
    """

    def generate_deployment_file_for_create(self, workload_cluster, spec, file_name):
        raise ProviderError(
            f"{self.name} provider can't generate the cluster manifest",
            "Pass a pre-rendered manifest with --manifest",
        )

    def generate_deployment_file_for_upgrade(
        self, bootstrap_cluster, workload_cluster, spec, file_name
    ):
        raise ProviderError(
            f"{self.name} provider can't generate the upgrade manifest",
            "Pass a pre-rendered manifest with --manifest",
        )


def get_provider(
    datacenter_config: DatacenterConfig,
    machine_configs: list[MachineConfig] | None = None,
    provider_class: type[Provider] = StaticProvider,
) -> Provider:
    """Select the provider for a datacenter config.

    Raises:
        ProviderError: If the datacenter kind is not supported
    """
    resources = PROVIDER_RESOURCES.get(datacenter_config.kind)
    if resources is None:
        supported = ", ".join(sorted(PROVIDER_RESOURCES))
        raise ProviderError(
            f"Unsupported datacenter kind '{datacenter_config.kind}'",
            f"Supported kinds: {supported}",
        )
    return provider_class(resources, datacenter_config, machine_configs)
