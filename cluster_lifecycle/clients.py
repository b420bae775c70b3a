"""Collaborator interfaces used by the workflows, plus the kubectl adapter.

``ClusterClient`` is the narrow surface the orchestrator needs from a
management cluster. ``Kubectl`` implements it with the Kubernetes API for
reads and annotation patches, and by shelling out to ``kubectl`` and
``clusterctl`` for applies, waits, logs and cluster-api operations.
"""

import base64
import binascii
import subprocess
from abc import ABC, abstractmethod

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from cluster_lifecycle.config import parse_duration
from cluster_lifecycle.constants import EKSA_SYSTEM_NAMESPACE
from cluster_lifecycle.exceptions import KubectlError, KubernetesApiError
from cluster_lifecycle.filewriter import FileWriter
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.models.cluster import (
    CLUSTER_RESOURCE_TYPE,
    CAPICluster,
    Cluster,
    ClusterSpec,
    Deployment,
    Machine,
)
from cluster_lifecycle.models.provider import DatacenterConfig, MachineConfig

logger = get_logger(__name__)

CAPI_CLUSTER_RESOURCE = "clusters.cluster.x-k8s.io"
CAPI_MACHINE_RESOURCE = "machines.cluster.x-k8s.io"

# Served version for each custom resource group
API_VERSIONS = {
    "anywhere.eks.amazonaws.com": "v1alpha1",
    "cluster.x-k8s.io": "v1beta1",
}

# kubectl enforces the wait itself; the subprocess gets a little longer
WAIT_TIMEOUT_MARGIN = 60


class ClusterClient(ABC):
    """Operations the orchestrator performs against a management cluster."""

    @abstractmethod
    def move_management(self, source: Cluster, target: Cluster) -> None: ...

    @abstractmethod
    def apply_kube_spec(self, cluster: Cluster, spec_file: str) -> None: ...

    @abstractmethod
    def apply_kube_spec_with_namespace(
        self, cluster: Cluster, spec_file: str, namespace: str
    ) -> None: ...

    @abstractmethod
    def apply_kube_spec_from_bytes(self, cluster: Cluster, data: bytes) -> None: ...

    @abstractmethod
    def apply_kube_spec_from_bytes_force(self, cluster: Cluster, data: bytes) -> None: ...

    @abstractmethod
    def wait_for_control_plane_ready(
        self, cluster: Cluster, timeout: str, cluster_name: str
    ) -> None: ...

    @abstractmethod
    def wait_for_managed_external_etcd_ready(
        self, cluster: Cluster, timeout: str, cluster_name: str
    ) -> None: ...

    @abstractmethod
    def get_workload_kubeconfig(self, cluster_name: str, cluster: Cluster) -> bytes: ...

    @abstractmethod
    def delete_cluster(self, management_cluster: Cluster, cluster_to_delete: Cluster) -> None: ...

    @abstractmethod
    def init_infrastructure(self, spec: ClusterSpec, cluster: Cluster, provider) -> None: ...

    @abstractmethod
    def wait_for_deployment(
        self, cluster: Cluster, timeout: str, condition: str, target: str, namespace: str
    ) -> None: ...

    @abstractmethod
    def save_log(
        self, cluster: Cluster, deployment: Deployment, file_name: str, writer: FileWriter
    ) -> None: ...

    @abstractmethod
    def get_machines(self, cluster: Cluster) -> list[Machine]: ...

    @abstractmethod
    def get_clusters(self, cluster: Cluster) -> list[CAPICluster]: ...

    @abstractmethod
    def get_eksa_cluster(self, cluster: Cluster) -> ClusterSpec: ...

    @abstractmethod
    def get_datacenter_config(
        self, resource_type: str, name: str, kubeconfig_file: str | None
    ) -> DatacenterConfig: ...

    @abstractmethod
    def get_machine_config(
        self, resource_type: str, name: str, kubeconfig_file: str | None
    ) -> MachineConfig: ...

    @abstractmethod
    def update_annotation_in_namespace(
        self,
        resource_type: str,
        name: str,
        annotations: dict[str, str],
        cluster: Cluster,
        namespace: str,
    ) -> None: ...

    @abstractmethod
    def remove_annotation_in_namespace(
        self, resource_type: str, name: str, key: str, cluster: Cluster, namespace: str
    ) -> None: ...


class Networking(ABC):
    """Renders the CNI manifest for a cluster."""

    @abstractmethod
    def generate_manifest(self, spec: ClusterSpec) -> bytes: ...


class ManifestNetworking(Networking):
    """Serves a pre-rendered CNI manifest from disk."""

    def __init__(self, manifest_path: str):
        self.manifest_path = manifest_path

    def generate_manifest(self, spec: ClusterSpec) -> bytes:
        from cluster_lifecycle.manifests import load_manifest

        return load_manifest(self.manifest_path)


def split_resource_type(resource_type: str) -> tuple[str, str, str]:
    """Split ``plural.group`` into the (group, version, plural) the API expects."""
    plural, _, group = resource_type.partition(".")
    if group not in API_VERSIONS:
        raise KubernetesApiError(
            f"Unsupported resource type {resource_type}",
            f"Known API groups: {', '.join(sorted(API_VERSIONS))}",
        )
    return group, API_VERSIONS[group], plural


class Kubectl(ClusterClient):
    """``ClusterClient`` backed by the Kubernetes API and the kubectl and clusterctl binaries."""

    def __init__(
        self, kubectl: str = "kubectl", clusterctl: str = "clusterctl", timeout: int = 3600
    ):
        self.kubectl = kubectl
        self.clusterctl = clusterctl
        self.timeout = timeout
        self._api_clients: dict[str | None, client.ApiClient] = {}

    def _execute(
        self,
        binary: str,
        args: list[str],
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> str:
        cmd = [binary, *args]
        timeout = timeout if timeout is not None else self.timeout
        logger.debug(f"Executing: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                check=True,
                timeout=timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
            logger.debug(f"{binary} {args[0]} failed with return code {e.returncode}: {stderr}")
            raise KubectlError(f"{binary} {args[0]} failed", stderr or None)
        except subprocess.TimeoutExpired:
            raise KubectlError(
                f"{binary} {args[0]} timed out",
                f"The command did not finish within {timeout:g} seconds",
            )
        except FileNotFoundError:
            raise KubectlError(
                f"{binary} is not installed or not in PATH",
                f"Install {binary} or pass its location explicitly",
            )

        return result.stdout.decode(errors="replace")

    def _kubectl(
        self,
        cluster: Cluster,
        args: list[str],
        namespace: str = "",
        stdin: bytes | None = None,
        timeout: float | None = None,
    ) -> str:
        full_args = list(args)
        if namespace:
            full_args.extend(["--namespace", namespace])
        if cluster.kubeconfig_file:
            full_args.extend(["--kubeconfig", cluster.kubeconfig_file])
        return self._execute(self.kubectl, full_args, stdin=stdin, timeout=timeout)

    def _api_client(self, kubeconfig_file: str | None) -> client.ApiClient:
        if kubeconfig_file not in self._api_clients:
            try:
                self._api_clients[kubeconfig_file] = config.new_client_from_config(
                    config_file=kubeconfig_file
                )
            except config.ConfigException as e:
                raise KubernetesApiError(
                    f"Failed to load kubeconfig {kubeconfig_file or '(default)'}", str(e)
                ) from e
        return self._api_clients[kubeconfig_file]

    def _custom_objects(self, kubeconfig_file: str | None) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self._api_client(kubeconfig_file))

    def _get_object(
        self, resource_type: str, name: str, kubeconfig_file: str | None, namespace: str = ""
    ) -> dict:
        group, version, plural = split_resource_type(resource_type)
        try:
            return self._custom_objects(kubeconfig_file).get_namespaced_custom_object(
                group, version, namespace or "default", plural, name
            )
        except ApiException as e:
            raise KubernetesApiError(
                f"Failed to get {resource_type} {name}", e.reason, status=e.status
            ) from e

    def _list_objects(self, cluster: Cluster, resource_type: str, namespace: str) -> list[dict]:
        group, version, plural = split_resource_type(resource_type)
        try:
            response = self._custom_objects(
                cluster.kubeconfig_file
            ).list_namespaced_custom_object(group, version, namespace, plural)
        except ApiException as e:
            raise KubernetesApiError(
                f"Failed to list {resource_type}", e.reason, status=e.status
            ) from e
        return response.get("items", [])

    def _patch_annotations(
        self,
        resource_type: str,
        name: str,
        annotations: dict[str, str | None],
        cluster: Cluster,
        namespace: str,
    ) -> None:
        group, version, plural = split_resource_type(resource_type)
        body = {"metadata": {"annotations": annotations}}
        try:
            self._custom_objects(cluster.kubeconfig_file).patch_namespaced_custom_object(
                group, version, namespace or "default", plural, name, body
            )
        except ApiException as e:
            raise KubernetesApiError(
                f"Failed to annotate {resource_type} {name}", e.reason, status=e.status
            ) from e

    def move_management(self, source: Cluster, target: Cluster) -> None:
        args = ["move", "--to-kubeconfig", target.kubeconfig_file or ""]
        if source.kubeconfig_file:
            args.extend(["--kubeconfig", source.kubeconfig_file])
        args.extend(["--namespace", EKSA_SYSTEM_NAMESPACE])
        self._execute(self.clusterctl, args)

    def apply_kube_spec(self, cluster: Cluster, spec_file: str) -> None:
        self._kubectl(cluster, ["apply", "-f", spec_file])

    def apply_kube_spec_with_namespace(
        self, cluster: Cluster, spec_file: str, namespace: str
    ) -> None:
        self._kubectl(cluster, ["apply", "-f", spec_file], namespace=namespace)

    def apply_kube_spec_from_bytes(self, cluster: Cluster, data: bytes) -> None:
        self._kubectl(cluster, ["apply", "-f", "-"], stdin=data)

    def apply_kube_spec_from_bytes_force(self, cluster: Cluster, data: bytes) -> None:
        self._kubectl(cluster, ["apply", "-f", "-", "--force"], stdin=data)

    def wait_for_control_plane_ready(
        self, cluster: Cluster, timeout: str, cluster_name: str
    ) -> None:
        target = f"{CAPI_CLUSTER_RESOURCE}/{cluster_name}"
        self._wait(cluster, timeout, "ControlPlaneReady", target, EKSA_SYSTEM_NAMESPACE)

    def wait_for_managed_external_etcd_ready(
        self, cluster: Cluster, timeout: str, cluster_name: str
    ) -> None:
        target = f"{CAPI_CLUSTER_RESOURCE}/{cluster_name}"
        self._wait(cluster, timeout, "ManagedEtcdReady", target, EKSA_SYSTEM_NAMESPACE)

    def wait_for_deployment(
        self, cluster: Cluster, timeout: str, condition: str, target: str, namespace: str
    ) -> None:
        self._wait(cluster, timeout, condition, f"deployments/{target}", namespace)

    def _wait(
        self, cluster: Cluster, timeout: str, condition: str, target: str, namespace: str
    ) -> None:
        try:
            seconds = parse_duration(timeout)
        except ValueError as e:
            raise KubectlError(f"Invalid wait timeout for {target}", str(e)) from e

        self._kubectl(
            cluster,
            ["wait", "--timeout", timeout, f"--for=condition={condition}", target],
            namespace=namespace,
            timeout=seconds + WAIT_TIMEOUT_MARGIN,
        )

    def get_workload_kubeconfig(self, cluster_name: str, cluster: Cluster) -> bytes:
        secret_name = f"{cluster_name}-kubeconfig"
        core = client.CoreV1Api(self._api_client(cluster.kubeconfig_file))
        try:
            secret = core.read_namespaced_secret(secret_name, EKSA_SYSTEM_NAMESPACE)
        except ApiException as e:
            raise KubernetesApiError(
                f"Failed to read secret {secret_name}", e.reason, status=e.status
            ) from e

        value = (secret.data or {}).get("value")
        if not value:
            raise KubernetesApiError(f"Kubeconfig secret for {cluster_name} has no value")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise KubernetesApiError(
                f"Kubeconfig secret for {cluster_name} is not valid base64", str(e)
            ) from e

    def delete_cluster(self, management_cluster: Cluster, cluster_to_delete: Cluster) -> None:
        self._kubectl(
            management_cluster,
            ["delete", CAPI_CLUSTER_RESOURCE, cluster_to_delete.name],
            namespace=EKSA_SYSTEM_NAMESPACE,
        )

    def init_infrastructure(self, spec: ClusterSpec, cluster: Cluster, provider) -> None:
        args = ["init", "--core", "cluster-api", "--infrastructure", provider.name]
        if spec.external_etcd_configuration is not None:
            args.extend(
                [
                    "--bootstrap",
                    "kubeadm,etcdadm-bootstrap",
                    "--control-plane",
                    "kubeadm,etcdadm-controller",
                ]
            )
        if cluster.kubeconfig_file:
            args.extend(["--kubeconfig", cluster.kubeconfig_file])
        self._execute(self.clusterctl, args)

    def save_log(
        self, cluster: Cluster, deployment: Deployment, file_name: str, writer: FileWriter
    ) -> None:
        args = ["logs", f"deployment/{deployment.name}"]
        if deployment.container:
            args.extend(["-c", deployment.container])
        logs = self._kubectl(cluster, args, namespace=deployment.namespace)
        writer.write(file_name, logs, persistent=True)

    def get_machines(self, cluster: Cluster) -> list[Machine]:
        items = self._list_objects(cluster, CAPI_MACHINE_RESOURCE, EKSA_SYSTEM_NAMESPACE)
        return [Machine.from_kubernetes_object(item) for item in items]

    def get_clusters(self, cluster: Cluster) -> list[CAPICluster]:
        items = self._list_objects(cluster, CAPI_CLUSTER_RESOURCE, EKSA_SYSTEM_NAMESPACE)
        return [CAPICluster.from_kubernetes_object(item) for item in items]

    def get_eksa_cluster(self, cluster: Cluster) -> ClusterSpec:
        obj = self._get_object(CLUSTER_RESOURCE_TYPE, cluster.name, cluster.kubeconfig_file)
        return ClusterSpec.from_manifest(obj)

    def get_datacenter_config(
        self, resource_type: str, name: str, kubeconfig_file: str | None
    ) -> DatacenterConfig:
        return DatacenterConfig.from_manifest(
            self._get_object(resource_type, name, kubeconfig_file)
        )

    def get_machine_config(
        self, resource_type: str, name: str, kubeconfig_file: str | None
    ) -> MachineConfig:
        return MachineConfig.from_manifest(self._get_object(resource_type, name, kubeconfig_file))

    def update_annotation_in_namespace(
        self,
        resource_type: str,
        name: str,
        annotations: dict[str, str],
        cluster: Cluster,
        namespace: str,
    ) -> None:
        self._patch_annotations(resource_type, name, dict(annotations), cluster, namespace)

    def remove_annotation_in_namespace(
        self, resource_type: str, name: str, key: str, cluster: Cluster, namespace: str
    ) -> None:
        # A null value in a merge patch deletes the key
        self._patch_annotations(resource_type, name, {key: None}, cluster, namespace)
