"""Readiness polling for machines, control planes, etcd and deployments.

None of the upstream controllers report a synchronous "done", so every step
that mutates the management cluster is followed by one of these waits.
"""

import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from cluster_lifecycle.clients import ClusterClient
from cluster_lifecycle.config import LifecycleSettings, format_duration
from cluster_lifecycle.constants import AVAILABLE_CONDITION
from cluster_lifecycle.exceptions import ClusterLifecycleError, ReadinessError
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.models.cluster import Cluster
from cluster_lifecycle.retrier import Retrier

logger = get_logger(__name__)


class NodesNotReadyError(ClusterLifecycleError):
    """Raised by a single node count that found missing nodes."""

    def __init__(self, ready: int, total: int):
        self.ready = ready
        self.total = total
        super().__init__(f"nodes are not ready yet: {ready}/{total} ready")


@dataclass
class NodeCount:
    """Latest ready/total observation for a cluster's machines."""

    ready: int = 0
    total: int = 0

    @property
    def missing(self) -> int:
        return max(self.total - self.ready, 0)


class ReadinessPoller:
    """Waits for cluster resources to converge."""

    def __init__(
        self,
        client: ClusterClient,
        settings: LifecycleSettings | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.client = client
        self.settings = settings or LifecycleSettings()
        self.cancel_event = cancel_event

    def count_nodes_ready(self, cluster: Cluster) -> NodeCount:
        """Count ready and expected nodes from the cluster's machines.

        A machine counts toward the total if it is labelled as control plane
        or as part of a machine deployment, and is ready once it has a node
        reference.
        """
        try:
            machines = self.client.get_machines(cluster)
        except Exception as e:
            raise ClusterLifecycleError(
                "error getting machines resources from management cluster", str(e)
            ) from e

        count = NodeCount()
        for machine in machines:
            if machine.is_ready():
                count.ready += 1
            if machine.is_control_plane():
                count.total += 1
            if machine.is_worker():
                count.total += 1
        return count

    def wait_for_nodes_ready(self, cluster: Cluster) -> None:
        """Block until every expected node has joined the cluster.

        The first observation is free: if all nodes are already up no retrier
        is created. Otherwise polling runs for ``total * machine_max_wait``
        seconds (at least ``machines_min_wait``), sleeping
        ``machine_backoff`` per missing node between checks.

        Raises:
            RetryExhaustedError: Nodes were still missing when the wait ran out
        """
        count = NodeCount()

        def are_nodes_ready() -> None:
            latest = self.count_nodes_ready(cluster)
            count.ready, count.total = latest.ready, latest.total
            if count.ready != count.total:
                logger.debug(f"Nodes are not ready yet: total={count.total} ready={count.ready}")
                raise NodesNotReadyError(count.ready, count.total)
            logger.debug(f"Nodes ready: total={count.total}")

        try:
            are_nodes_ready()
            return
        except ClusterLifecycleError as e:
            logger.debug(f"Initial node readiness check failed: {e.message}")

        timeout = max(count.total * self.settings.machine_max_wait, self.settings.machines_min_wait)

        def policy(_attempt: int, _error: BaseException | None) -> tuple[bool, float]:
            return True, self.settings.machine_backoff * count.missing

        logger.info(
            f"Waiting up to {format_duration(timeout)} for {count.missing} of "
            f"{count.total} machines in {cluster.name} to become nodes"
        )
        retrier = Retrier(
            timeout=timeout,
            policy=policy,
            cancel_event=self.cancel_event,
            description="machines to be ready",
        )
        retrier.retry(are_nodes_ready)

    def wait_for_control_plane(self, cluster: Cluster, cluster_name: str, timeout: str) -> None:
        try:
            self.client.wait_for_control_plane_ready(cluster, timeout, cluster_name)
        except Exception as e:
            raise ReadinessError(
                f"error waiting for control plane of cluster {cluster_name} to be ready",
                wait="control-plane",
                details=str(e),
            ) from e

    def wait_for_external_etcd(self, cluster: Cluster, cluster_name: str, timeout: str) -> None:
        try:
            self.client.wait_for_managed_external_etcd_ready(cluster, timeout, cluster_name)
        except Exception as e:
            raise ReadinessError(
                f"error waiting for external etcd of cluster {cluster_name} to be ready",
                wait="etcd",
                details=str(e),
            ) from e

    def wait_for_all_control_planes(self, cluster: Cluster, timeout: str) -> None:
        """Wait for the control plane of every cluster-api cluster on ``cluster``."""
        try:
            clusters = self.client.get_clusters(cluster)
        except Exception as e:
            raise ClusterLifecycleError("error getting clusters", str(e)) from e

        for capi_cluster in clusters:
            self.wait_for_control_plane(cluster, capi_cluster.name, timeout)

    def wait_for_deployments(
        self, cluster: Cluster, deployments_by_namespace: Mapping[str, Iterable[str]]
    ) -> None:
        """Wait for each deployment to be Available, stopping at the first failure."""
        for namespace, deployments in deployments_by_namespace.items():
            for deployment in deployments:
                try:
                    self.client.wait_for_deployment(
                        cluster,
                        self.settings.deployment_wait,
                        AVAILABLE_CONDITION,
                        deployment,
                        namespace,
                    )
                except Exception as e:
                    raise ReadinessError(
                        f"error waiting for {deployment} in namespace {namespace}",
                        wait="deployment",
                        details=str(e),
                    ) from e
