"""Unit tests for the kubectl-backed cluster client."""

import base64
import subprocess
from unittest.mock import Mock, patch

import pytest
from kubernetes.client.rest import ApiException

from cluster_lifecycle.clients import Kubectl, ManifestNetworking, split_resource_type
from cluster_lifecycle.exceptions import KubectlError, KubernetesApiError
from cluster_lifecycle.models import Cluster, Deployment, ExternalEtcdConfiguration


def completed(stdout: bytes = b"") -> Mock:
    return Mock(returncode=0, stdout=stdout, stderr=b"")


@pytest.fixture
def cluster():
    return Cluster(name="management", kubeconfig_file="/tmp/mgmt.kubeconfig")


@pytest.fixture
def mock_run():
    with patch("cluster_lifecycle.clients.subprocess.run") as run:
        run.return_value = completed()
        yield run


def command(mock_run) -> list[str]:
    return mock_run.call_args.args[0]


class TestKubectlErrors:
    """Tests for translating subprocess failures."""

    def test_called_process_error(self, mock_run, cluster):
        """Test that a failing kubectl raises KubectlError with its stderr."""
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["kubectl"], stderr=b"Error from server (NotFound)"
        )

        with pytest.raises(KubectlError) as exc_info:
            Kubectl().apply_kube_spec(cluster, "spec.yaml")

        assert exc_info.value.message == "kubectl apply failed"
        assert "NotFound" in exc_info.value.details

    def test_timeout(self, mock_run, cluster):
        """Test that a hung kubectl raises KubectlError."""
        mock_run.side_effect = subprocess.TimeoutExpired(["kubectl"], 10)

        with pytest.raises(KubectlError) as exc_info:
            Kubectl(timeout=10).apply_kube_spec(cluster, "spec.yaml")

        assert "timed out" in exc_info.value.message

    def test_missing_binary(self, mock_run, cluster):
        """Test that a missing binary is reported clearly."""
        mock_run.side_effect = FileNotFoundError()

        with pytest.raises(KubectlError) as exc_info:
            Kubectl().delete_cluster(cluster, Cluster(name="workload"))

        assert "not installed" in exc_info.value.message


class TestKubectlCommands:
    """Tests for the commands issued by the client."""

    def test_apply_with_namespace(self, mock_run, cluster):
        """Test that kubeconfig and namespace are appended."""
        Kubectl().apply_kube_spec_with_namespace(cluster, "spec.yaml", "eksa-system")

        assert command(mock_run) == [
            "kubectl",
            "apply",
            "-f",
            "spec.yaml",
            "--namespace",
            "eksa-system",
            "--kubeconfig",
            "/tmp/mgmt.kubeconfig",
        ]

    def test_apply_from_bytes_force(self, mock_run, cluster):
        """Test that byte payloads are piped to kubectl."""
        Kubectl().apply_kube_spec_from_bytes_force(cluster, b"kind: Cluster\n")

        assert command(mock_run)[:5] == ["kubectl", "apply", "-f", "-", "--force"]
        assert mock_run.call_args.kwargs["input"] == b"kind: Cluster\n"

    def test_wait_for_control_plane(self, mock_run, cluster):
        """Test the control plane wait condition."""
        Kubectl().wait_for_control_plane_ready(cluster, "60m", "workload")

        assert command(mock_run)[:6] == [
            "kubectl",
            "wait",
            "--timeout",
            "60m",
            "--for=condition=ControlPlaneReady",
            "clusters.cluster.x-k8s.io/workload",
        ]

    def test_wait_for_deployment(self, mock_run, cluster):
        """Test the deployment wait condition and namespace."""
        Kubectl().wait_for_deployment(cluster, "30m", "Available", "coredns", "kube-system")

        cmd = command(mock_run)
        assert "--for=condition=Available" in cmd
        assert "deployments/coredns" in cmd
        assert cmd[cmd.index("--namespace") + 1] == "kube-system"

    def test_wait_subprocess_outlives_kubectl_timeout(self, mock_run, cluster):
        """Test that long waits are not cut short by the subprocess timeout."""
        Kubectl(timeout=3600).wait_for_control_plane_ready(cluster, "2h", "workload")

        assert mock_run.call_args.kwargs["timeout"] > 7200

    def test_wait_rejects_malformed_timeout(self, mock_run, cluster):
        """Test that a timeout kubectl can't parse fails before running it."""
        with pytest.raises(KubectlError):
            Kubectl().wait_for_deployment(cluster, "soon", "Available", "coredns", "kube-system")

        mock_run.assert_not_called()

    def test_other_commands_use_default_timeout(self, mock_run, cluster):
        """Test that non-wait commands keep the client timeout."""
        Kubectl(timeout=120).apply_kube_spec(cluster, "spec.yaml")

        assert mock_run.call_args.kwargs["timeout"] == 120

    def test_move(self, mock_run):
        """Test the clusterctl move invocation."""
        source = Cluster(name="bootstrap", kubeconfig_file="/tmp/bootstrap.kubeconfig")
        target = Cluster(name="management", kubeconfig_file="/tmp/mgmt.kubeconfig")

        Kubectl().move_management(source, target)

        assert command(mock_run) == [
            "clusterctl",
            "move",
            "--to-kubeconfig",
            "/tmp/mgmt.kubeconfig",
            "--kubeconfig",
            "/tmp/bootstrap.kubeconfig",
            "--namespace",
            "eksa-system",
        ]

    def test_init_infrastructure_with_external_etcd(self, mock_run, cluster, spec, provider):
        """Test that etcdadm providers are installed when etcd is external."""
        spec.external_etcd_configuration = ExternalEtcdConfiguration(count=3)

        Kubectl().init_infrastructure(spec, cluster, provider)

        cmd = command(mock_run)
        assert cmd[:6] == [
            "clusterctl",
            "init",
            "--core",
            "cluster-api",
            "--infrastructure",
            "vsphere",
        ]
        assert "kubeadm,etcdadm-bootstrap" in cmd

    def test_save_log(self, mock_run, cluster):
        """Test that logs are written through the writer."""
        mock_run.return_value = completed(b"log line\n")
        writer = Mock()
        deployment = Deployment(
            name="capi-controller-manager", namespace="capi-system", container="manager"
        )

        Kubectl().save_log(cluster, deployment, "capi.log", writer)

        assert command(mock_run)[1:5] == [
            "logs",
            "deployment/capi-controller-manager",
            "-c",
            "manager",
        ]
        writer.write.assert_called_once_with("capi.log", "log line\n", persistent=True)


@pytest.fixture
def api_client():
    with patch("cluster_lifecycle.clients.config.new_client_from_config") as new_client:
        yield new_client


@pytest.fixture
def custom_objects(api_client):
    with patch("cluster_lifecycle.clients.client.CustomObjectsApi") as api_class:
        yield api_class.return_value


@pytest.fixture
def core_api(api_client):
    with patch("cluster_lifecycle.clients.client.CoreV1Api") as api_class:
        yield api_class.return_value


class TestKubernetesApi:
    """Tests for reads and annotation patches through the Kubernetes API."""

    def test_split_resource_type(self):
        """Test that resource types map to group, version and plural."""
        assert split_resource_type("machines.cluster.x-k8s.io") == (
            "cluster.x-k8s.io",
            "v1beta1",
            "machines",
        )
        assert split_resource_type("vspheremachineconfigs.anywhere.eks.amazonaws.com") == (
            "anywhere.eks.amazonaws.com",
            "v1alpha1",
            "vspheremachineconfigs",
        )

    def test_unknown_api_group(self):
        """Test that resources outside the known groups are rejected."""
        with pytest.raises(KubernetesApiError):
            split_resource_type("widgets.example.com")

    def test_get_machines(self, custom_objects, api_client, cluster):
        """Test that machines are listed from the cluster-api namespace."""
        custom_objects.list_namespaced_custom_object.return_value = {
            "items": [
                {
                    "metadata": {
                        "name": "cp-0",
                        "labels": {"cluster.x-k8s.io/control-plane": ""},
                    },
                    "status": {"nodeRef": {"name": "node-0"}},
                },
                {
                    "metadata": {
                        "name": "md-0",
                        "labels": {"cluster.x-k8s.io/deployment-name": "md-0"},
                    },
                    "status": {},
                },
            ]
        }

        machines = Kubectl().get_machines(cluster)

        assert [m.name for m in machines] == ["cp-0", "md-0"]
        assert machines[0].is_control_plane() and machines[0].is_ready()
        assert machines[1].is_worker() and not machines[1].is_ready()
        custom_objects.list_namespaced_custom_object.assert_called_once_with(
            "cluster.x-k8s.io", "v1beta1", "eksa-system", "machines"
        )
        api_client.assert_called_once_with(config_file="/tmp/mgmt.kubeconfig")

    def test_api_client_is_reused_per_kubeconfig(self, custom_objects, api_client, cluster):
        """Test that repeated reads share one API client per kubeconfig."""
        custom_objects.list_namespaced_custom_object.return_value = {"items": []}
        kubectl = Kubectl()

        kubectl.get_machines(cluster)
        kubectl.get_clusters(cluster)

        api_client.assert_called_once()

    def test_api_error(self, custom_objects, cluster):
        """Test that API failures keep their status code."""
        custom_objects.list_namespaced_custom_object.side_effect = ApiException(
            status=403, reason="Forbidden"
        )

        with pytest.raises(KubernetesApiError) as exc_info:
            Kubectl().get_clusters(cluster)

        assert exc_info.value.status == 403
        assert "Forbidden" in exc_info.value.details

    def test_get_eksa_cluster(self, custom_objects, cluster):
        """Test that the eks-a Cluster object is read from the default namespace."""
        custom_objects.get_namespaced_custom_object.return_value = {
            "metadata": {
                "name": "management",
                "annotations": {"anywhere.eks.amazonaws.com/paused": "true"},
            },
            "spec": {
                "kubernetesVersion": "1.28",
                "datacenterRef": {"kind": "VSphereDatacenterConfig", "name": "dc"},
            },
        }

        spec = Kubectl().get_eksa_cluster(cluster)

        assert spec.name == "management"
        assert spec.paused
        custom_objects.get_namespaced_custom_object.assert_called_once_with(
            "anywhere.eks.amazonaws.com", "v1alpha1", "default", "clusters", "management"
        )

    def test_get_workload_kubeconfig(self, core_api, cluster):
        """Test that the kubeconfig secret is base64 decoded."""
        core_api.read_namespaced_secret.return_value = Mock(
            data={"value": base64.b64encode(b"kind: Config\n").decode()}
        )

        assert Kubectl().get_workload_kubeconfig("workload", cluster) == b"kind: Config\n"
        core_api.read_namespaced_secret.assert_called_once_with(
            "workload-kubeconfig", "eksa-system"
        )

    def test_invalid_kubeconfig_secret(self, core_api, cluster):
        """Test that a corrupt kubeconfig secret is reported."""
        core_api.read_namespaced_secret.return_value = Mock(data={"value": "not base64!"})

        with pytest.raises(KubernetesApiError):
            Kubectl().get_workload_kubeconfig("workload", cluster)

    def test_annotations(self, custom_objects, cluster):
        """Test annotating and removing annotations with merge patches."""
        kubectl = Kubectl()

        kubectl.update_annotation_in_namespace(
            "clusters.anywhere.eks.amazonaws.com", "c1", {"a/paused": "true"}, cluster, ""
        )
        custom_objects.patch_namespaced_custom_object.assert_called_with(
            "anywhere.eks.amazonaws.com",
            "v1alpha1",
            "default",
            "clusters",
            "c1",
            {"metadata": {"annotations": {"a/paused": "true"}}},
        )

        kubectl.remove_annotation_in_namespace(
            "clusters.anywhere.eks.amazonaws.com", "c1", "a/paused", cluster, ""
        )
        assert custom_objects.patch_namespaced_custom_object.call_args.args[5] == {
            "metadata": {"annotations": {"a/paused": None}}
        }


def test_manifest_networking(tmp_path, spec):
    """Test that the CNI manifest is read from disk."""
    manifest = tmp_path / "cilium.yaml"
    manifest.write_bytes(b"kind: DaemonSet\n")

    assert ManifestNetworking(str(manifest)).generate_manifest(spec) == b"kind: DaemonSet\n"
