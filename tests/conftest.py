"""Pytest configuration and shared fixtures."""

from unittest.mock import Mock, patch

import pytest
from hypothesis import Verbosity, settings

from cluster_lifecycle.clients import ClusterClient
from cluster_lifecycle.config import LifecycleSettings
from cluster_lifecycle.models import (
    Cluster,
    ClusterSpec,
    ControlPlaneConfiguration,
    DatacenterConfig,
    ExternalEtcdConfiguration,
    MachineConfig,
    Ref,
    WorkerNodeGroupConfiguration,
)
from cluster_lifecycle.providers import get_provider

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

VSPHERE_DATACENTER = "VSphereDatacenterConfig"
VSPHERE_MACHINE = "VSphereMachineConfig"


def build_spec(
    name: str = "test-cluster",
    cp: str | None = "cp-machines",
    worker: str | None = "worker-machines",
    etcd: str | None = None,
    external_etcd: bool = False,
) -> ClusterSpec:
    """Build a cluster spec referencing the given machine config names."""
    spec = ClusterSpec(
        name=name,
        control_plane_configuration=ControlPlaneConfiguration(
            count=1,
            machine_group_ref=Ref(kind=VSPHERE_MACHINE, name=cp) if cp else None,
        ),
        worker_node_group_configurations=[
            WorkerNodeGroupConfiguration(
                count=2,
                machine_group_ref=Ref(kind=VSPHERE_MACHINE, name=worker) if worker else None,
            )
        ],
        datacenter_ref=Ref(kind=VSPHERE_DATACENTER, name="test-datacenter"),
    )
    if etcd or external_etcd:
        spec.external_etcd_configuration = ExternalEtcdConfiguration(
            count=3,
            machine_group_ref=Ref(kind=VSPHERE_MACHINE, name=etcd) if etcd else None,
        )
    return spec


def build_machine_configs(*names: str) -> list[MachineConfig]:
    return [
        MachineConfig(kind=VSPHERE_MACHINE, name=name, spec={"numCPUs": 2})
        for name in dict.fromkeys(names)
    ]


@pytest.fixture
def make_spec():
    """Factory for cluster specs, see ``build_spec``."""
    return build_spec


@pytest.fixture
def settings_fast():
    """Settings with no waiting between attempts."""
    return LifecycleSettings(
        max_retries=3,
        backoff_period=0,
        machine_backoff=0,
        machine_max_wait=1,
        machines_min_wait=1,
    )


@pytest.fixture
def no_sleep():
    """Patch out the retrier's sleeps, recording the requested delays."""
    with patch("cluster_lifecycle.retrier.time.sleep") as sleep:
        yield sleep


@pytest.fixture
def client():
    """A cluster client mock with every collaborator call succeeding."""
    return Mock(spec=ClusterClient)


@pytest.fixture
def management_cluster():
    return Cluster(name="management", kubeconfig_file="/tmp/management.kubeconfig")


@pytest.fixture
def datacenter_config():
    return DatacenterConfig(
        kind=VSPHERE_DATACENTER, name="test-datacenter", spec={"server": "vcenter.local"}
    )


@pytest.fixture
def spec():
    """Spec with distinct control plane and worker machine configs."""
    return build_spec()


@pytest.fixture
def provider(datacenter_config):
    return get_provider(
        datacenter_config, build_machine_configs("cp-machines", "worker-machines", "etcd-machines")
    )


@pytest.fixture
def sample_cluster_config(tmp_path):
    """A cluster configuration file with its provider objects."""
    content = """\
apiVersion: anywhere.eks.amazonaws.com/v1alpha1
kind: Cluster
metadata:
  name: test-cluster
spec:
  kubernetesVersion: "1.21"
  controlPlaneConfiguration:
    count: 1
    endpoint:
      host: 10.0.0.10
    machineGroupRef:
      kind: VSphereMachineConfig
      name: cp-machines
  workerNodeGroupConfigurations:
    - name: md-0
      count: 2
      machineGroupRef:
        kind: VSphereMachineConfig
        name: worker-machines
  datacenterRef:
    kind: VSphereDatacenterConfig
    name: test-datacenter
---
apiVersion: anywhere.eks.amazonaws.com/v1alpha1
kind: VSphereDatacenterConfig
metadata:
  name: test-datacenter
spec:
  server: vcenter.local
---
apiVersion: anywhere.eks.amazonaws.com/v1alpha1
kind: VSphereMachineConfig
metadata:
  name: cp-machines
spec:
  numCPUs: 2
---
apiVersion: anywhere.eks.amazonaws.com/v1alpha1
kind: VSphereMachineConfig
metadata:
  name: worker-machines
spec:
  numCPUs: 4
"""
    path = tmp_path / "cluster.yaml"
    path.write_text(content)
    return path
