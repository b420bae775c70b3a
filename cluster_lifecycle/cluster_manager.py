"""Create, upgrade, move and delete workflows for workload clusters.

Every workflow applies manifests to the management cluster and then waits
for the controllers to converge before taking the next step. Steps run
strictly in order; nothing is applied before the previous wait finished.
"""

import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager

from cluster_lifecycle.clients import ClusterClient, Networking
from cluster_lifecycle.config import LifecycleSettings, format_duration
from cluster_lifecycle.constants import CAPI_DEPLOYMENTS, CLUSTER_DEPLOYMENTS
from cluster_lifecycle.exceptions import (
    MoveError,
    PreconditionError,
    RetryCancelledError,
    WorkflowError,
)
from cluster_lifecycle.filewriter import PERMISSION_0600, FileWriter
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.manifests import load_manifest, marshal_bundles, marshal_cluster_spec
from cluster_lifecycle.models.cluster import Cluster, ClusterSpec
from cluster_lifecycle.models.provider import DatacenterConfig, MachineConfig
from cluster_lifecycle.pause import ReconcilePauser
from cluster_lifecycle.providers import PROVIDER_RESOURCES, Provider
from cluster_lifecycle.readiness import ReadinessPoller
from cluster_lifecycle.retrier import Retrier

logger = get_logger(__name__)


@contextmanager
def workflow_step(phase: str, message: str) -> Iterator[None]:
    """Re-raise failures inside the block as ``WorkflowError`` for ``phase``.

    The original exception stays reachable through ``__cause__``.
    Precondition errors, cancellation and errors already tagged with a phase
    pass through unchanged.
    """
    try:
        yield
    except (WorkflowError, PreconditionError, MoveError, RetryCancelledError):
        raise
    except Exception as e:
        raise WorkflowError(message, phase, details=str(e)) from e


class ClusterManager:
    """Drives cluster lifecycle workflows against a management cluster."""

    def __init__(
        self,
        client: ClusterClient,
        networking: Networking,
        writer: FileWriter,
        settings: LifecycleSettings | None = None,
        cancel_event: threading.Event | None = None,
        machine_backoff: float | None = None,
        machine_max_wait: float | None = None,
        machines_min_wait: float | None = None,
    ):
        """Initialize the cluster manager.

        Args:
            client: Management cluster client
            networking: CNI manifest generator
            writer: Destination for kubeconfigs, manifests and logs
            settings: Retry limits and wait timeouts
            cancel_event: Event that interrupts every retry loop when set
            machine_backoff: Overrides ``settings.machine_backoff``
            machine_max_wait: Overrides ``settings.machine_max_wait``
            machines_min_wait: Overrides ``settings.machines_min_wait``
        """
        settings = settings or LifecycleSettings()
        overrides = {
            "machine_backoff": machine_backoff,
            "machine_max_wait": machine_max_wait,
            "machines_min_wait": machines_min_wait,
        }
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if overrides:
            settings = settings.model_copy(update=overrides)

        self.client = client
        self.networking = networking
        self.writer = writer
        self.settings = settings
        self.cancel_event = cancel_event
        self.retrier = Retrier.with_max_retries(
            settings.max_retries, settings.backoff_period, cancel_event=cancel_event
        )
        self.poller = ReadinessPoller(client, settings, cancel_event=cancel_event)

    def move_capi(self, source: Cluster, target: Cluster) -> None:
        """Move cluster-api management from ``source`` to ``target``.

        The move call itself is never retried and nothing is rolled back:
        a failed move leaves both clusters as they are.

        Raises:
            MoveError: The move call failed; no waits on the target were started
            WorkflowError: A readiness wait before or after the move failed
        """
        logger.info("Waiting for management machines to be ready before move")
        with workflow_step("move", "error waiting for source machines to be ready"):
            self.poller.wait_for_nodes_ready(source)

        logger.info(f"Moving cluster-api management from {source.name} to {target.name}")
        try:
            self.client.move_management(source, target)
        except Exception as e:
            raise MoveError("error moving CAPI management from source to target", str(e)) from e

        logger.info("Waiting for control planes to be ready after move")
        with workflow_step("move", "error waiting for control planes after move"):
            self.poller.wait_for_all_control_planes(
                target, format_duration(self.settings.move_capi_wait)
            )

        logger.info("Waiting for machines to be ready after move")
        with workflow_step("move", "error waiting for target machines to be ready"):
            self.poller.wait_for_nodes_ready(target)

    def create_workload_cluster(
        self, management_cluster: Cluster, spec: ClusterSpec, provider: Provider
    ) -> Cluster:
        """Create the workload cluster described by ``spec``.

        Returns:
            The workload cluster, with its kubeconfig written to disk
        """
        workload_cluster = Cluster(name=spec.name)
        self._apply_cluster(
            management_cluster, workload_cluster, spec, provider, is_upgrade=False, phase="create"
        )
        logger.info(f"Workload cluster {workload_cluster.name} created")
        return workload_cluster

    def upgrade_cluster(
        self,
        management_cluster: Cluster,
        workload_cluster: Cluster,
        spec: ClusterSpec,
        provider: Provider,
    ) -> None:
        """Apply an updated spec and wait for the cluster to converge on it."""
        self._apply_cluster(
            management_cluster, workload_cluster, spec, provider, is_upgrade=True, phase="upgrade"
        )

        if spec.external_etcd_configuration is not None:
            logger.info("Waiting for external etcd to be ready after upgrade")
            with workflow_step("upgrade", "error waiting for workload cluster etcd to be ready"):
                self.poller.wait_for_external_etcd(
                    management_cluster, workload_cluster.name, self.settings.etcd_wait
                )

        logger.info("Waiting for control plane to be ready after upgrade")
        with workflow_step(
            "upgrade", "error waiting for workload cluster control plane to be ready"
        ):
            self.poller.wait_for_control_plane(
                management_cluster, workload_cluster.name, self.settings.ctrl_plane_wait
            )

        logger.info("Waiting for workload cluster capi components to be ready after upgrade")
        with workflow_step(
            "upgrade", "error waiting for workload cluster capi components to be ready"
        ):
            self._wait_for_capi(workload_cluster, provider)

    def delete_cluster(self, management_cluster: Cluster, cluster_to_delete: Cluster) -> None:
        with workflow_step("delete", f"error deleting cluster {cluster_to_delete.name}"):
            self.retrier.retry(
                lambda: self.client.delete_cluster(management_cluster, cluster_to_delete),
                description=f"cluster {cluster_to_delete.name} to be deleted",
            )

    def cluster_spec_changed(
        self,
        cluster: Cluster,
        spec: ClusterSpec,
        datacenter_config: DatacenterConfig,
        machine_configs: list[MachineConfig],
    ) -> bool:
        """Compare ``spec`` and its provider objects with what the cluster runs.

        Providers without machine configs can't be compared field by field,
        so they always report a change and go through the upgrade flow.
        """
        with workflow_step("upgrade", "error fetching eks-a cluster"):
            current = self.client.get_eksa_cluster(cluster)
        if current.spec_fields() != spec.spec_fields():
            logger.debug("Existing cluster and new cluster spec differ")
            return True

        logger.debug("Clusters are the same, checking provider spec")
        resources = PROVIDER_RESOURCES.get(current.datacenter_ref.kind)
        if resources is None or not resources.machine_resource_type:
            return True

        with workflow_step("upgrade", "error fetching existing datacenter config"):
            existing_datacenter = self.client.get_datacenter_config(
                resources.datacenter_resource_type,
                current.datacenter_ref.name,
                cluster.kubeconfig_file,
            )
        if existing_datacenter.spec != datacenter_config.spec:
            logger.debug("New provider spec is different from the existing spec")
            return True

        new_configs = {config.name: config for config in machine_configs}
        pairs = [
            ("control plane", current.control_plane_configuration.machine_group_ref,
             spec.control_plane_configuration.machine_group_ref),
        ]
        if current.worker_node_group_configurations and spec.worker_node_group_configurations:
            pairs.append(
                ("worker node", current.worker_node_group_configurations[0].machine_group_ref,
                 spec.worker_node_group_configurations[0].machine_group_ref)
            )
        if current.external_etcd_configuration is not None and spec.external_etcd_configuration:
            pairs.append(
                ("etcd", current.external_etcd_configuration.machine_group_ref,
                 spec.external_etcd_configuration.machine_group_ref)
            )

        for role, existing_ref, new_ref in pairs:
            if existing_ref is None or new_ref is None:
                return True
            with workflow_step("upgrade", f"error fetching existing {role} machine config"):
                existing = self.client.get_machine_config(
                    resources.machine_resource_type, existing_ref.name, cluster.kubeconfig_file
                )
            new = new_configs.get(new_ref.name)
            if new is None or existing.spec != new.spec:
                logger.debug(f"New {role} machine config spec is different from the existing spec")
                return True

        return False

    def install_capi(self, spec: ClusterSpec, cluster: Cluster, provider: Provider) -> None:
        with workflow_step("install", "error initializing capi resources in cluster"):
            self.client.init_infrastructure(spec, cluster, provider)
        with workflow_step("install", "error waiting for capi components to be ready"):
            self._wait_for_capi(cluster, provider)

    def install_networking(self, cluster: Cluster, spec: ClusterSpec) -> None:
        with workflow_step("install", "error generating networking manifest"):
            manifest = self.networking.generate_manifest(spec)
        with workflow_step("install", "error applying networking manifest spec"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes(cluster, manifest),
                description="networking manifest to be applied",
            )

    def install_storage_class(self, cluster: Cluster, provider: Provider) -> None:
        storage_class = provider.generate_storage_class()
        if storage_class is None:
            return
        with workflow_step("install", "error applying storage class manifest"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes(cluster, storage_class),
                description="storage class to be applied",
            )

    def install_machine_health_checks(self, workload_cluster: Cluster, provider: Provider) -> None:
        with workflow_step("install", "error generating machine health checks"):
            mhc = provider.generate_mhc()
        if not mhc:
            logger.debug("Skipping machine health checks")
            return
        with workflow_step("install", "error applying machine health checks"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes(workload_cluster, mhc),
                description="machine health checks to be applied",
            )

    def install_custom_components(self, spec: ClusterSpec, cluster: Cluster) -> None:
        if not spec.components_manifest:
            logger.info("No components manifest configured, skipping custom components")
            return
        with workflow_step("install", "failed loading manifest for eksa components"):
            components = load_manifest(spec.components_manifest)
        with workflow_step("install", "error applying eks-a components spec"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes(cluster, components),
                description="eks-a components to be applied",
            )

    def create_eksa_resources(
        self,
        cluster: Cluster,
        spec: ClusterSpec,
        datacenter_config: DatacenterConfig,
        machine_configs: list[MachineConfig],
    ) -> None:
        """Apply the cluster spec objects, then the release bundles."""
        resources = marshal_cluster_spec(spec, datacenter_config, machine_configs)
        logger.debug("Applying eksa yaml resources to cluster")
        with workflow_step("create", "error applying eks-a spec"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes_force(cluster, resources),
                description="eks-a resources to be applied",
            )

        bundles = marshal_bundles(spec)
        with workflow_step("create", "error applying bundle spec"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_from_bytes(cluster, bundles),
                description="bundles to be applied",
            )

    def pause_eksa_controller_reconcile(
        self, cluster: Cluster, spec: ClusterSpec, provider: Provider
    ) -> None:
        with workflow_step("pause", "error pausing eks-a controller reconcile"):
            ReconcilePauser(self.client, self.retrier).pause(cluster, spec, provider)

    def resume_eksa_controller_reconcile(
        self, cluster: Cluster, spec: ClusterSpec, provider: Provider
    ) -> None:
        with workflow_step("resume", "error resuming eks-a controller reconcile"):
            ReconcilePauser(self.client, self.retrier).resume(cluster, spec, provider)

    def save_logs(self, cluster: Cluster | None) -> None:
        """Collect controller logs into the log directory, one file per deployment.

        Best effort: a deployment whose logs can't be fetched is skipped.
        """
        if cluster is None:
            return

        writer = self.writer.with_dir(self.settings.log_dir)
        with ThreadPoolExecutor(max_workers=len(CLUSTER_DEPLOYMENTS)) as executor:
            futures = {
                executor.submit(self.client.save_log, cluster, deployment, file_name, writer): (
                    file_name
                )
                for file_name, deployment in CLUSTER_DEPLOYMENTS.items()
            }
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    logger.debug(f"Error saving logs to {futures[future]}: {e}")

    def generate_deployment_file(
        self,
        bootstrap_cluster: Cluster,
        workload_cluster: Cluster,
        spec: ClusterSpec,
        provider: Provider,
        is_upgrade: bool,
    ) -> str:
        """Write the cluster manifest and return its path.

        An override cluster spec file on ``spec`` takes precedence over the
        provider's generated manifest and is copied to the writer's temp
        directory.
        """
        file_name = f"{spec.name}-eks-a-cluster.yaml"
        if not spec.has_override_cluster_spec_file():
            if is_upgrade:
                return provider.generate_deployment_file_for_upgrade(
                    bootstrap_cluster, workload_cluster, spec, file_name
                )
            return provider.generate_deployment_file_for_create(workload_cluster, spec, file_name)

        content = spec.read_override_cluster_spec_file()
        return self.writer.write(file_name, content)

    def _apply_cluster(
        self,
        management_cluster: Cluster,
        workload_cluster: Cluster,
        spec: ClusterSpec,
        provider: Provider,
        is_upgrade: bool,
        phase: str,
    ) -> None:
        with workflow_step(phase, "error generating workload spec"):
            spec_file = self.generate_deployment_file(
                management_cluster, workload_cluster, spec, provider, is_upgrade
            )

        logger.info(f"Applying cluster spec {spec_file} to {management_cluster.name}")
        with workflow_step(phase, "error applying workload spec"):
            self.retrier.retry(
                lambda: self.client.apply_kube_spec_with_namespace(
                    management_cluster, spec_file, self.settings.system_namespace
                ),
                description="workload spec to be applied",
            )

        if spec.external_etcd_configuration is not None:
            logger.info("Waiting for external etcd to be ready")
            with workflow_step(phase, "error waiting for external etcd for workload cluster"):
                self.poller.wait_for_external_etcd(
                    management_cluster, workload_cluster.name, self.settings.etcd_wait
                )
            logger.info("External etcd is ready")

        logger.info("Waiting for control plane to be ready")
        with workflow_step(phase, "error waiting for workload cluster control plane to be ready"):
            self.poller.wait_for_control_plane(
                management_cluster, workload_cluster.name, self.settings.ctrl_plane_wait
            )

        if not is_upgrade:
            with workflow_step(phase, "error generating workload kubeconfig"):
                workload_cluster.kubeconfig_file = self.retrier.retry(
                    lambda: self._generate_workload_kubeconfig(
                        workload_cluster.name, management_cluster, provider
                    ),
                    description="workload kubeconfig",
                )

        logger.info("Waiting for controlplane and worker machines to be ready")
        with workflow_step(phase, "error waiting for machines to be ready"):
            self.poller.wait_for_nodes_ready(management_cluster)

    def _generate_workload_kubeconfig(
        self, cluster_name: str, management_cluster: Cluster, provider: Provider
    ) -> str:
        kubeconfig = self.client.get_workload_kubeconfig(cluster_name, management_cluster)
        kubeconfig = provider.update_kubeconfig(kubeconfig, cluster_name)
        return self.writer.write(
            f"{cluster_name}-eks-a-cluster.kubeconfig",
            kubeconfig,
            persistent=True,
            permission=PERMISSION_0600,
        )

    def _wait_for_capi(self, cluster: Cluster, provider: Provider) -> None:
        self.poller.wait_for_deployments(cluster, CAPI_DEPLOYMENTS)
        self.poller.wait_for_deployments(cluster, provider.get_deployments())
