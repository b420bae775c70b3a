"""Pausing and resuming the reconcilers that own a cluster's resources.

A paused annotation is written on the datacenter config, on each distinct
machine config used by the control plane, the first worker group and the
external etcd, and finally on the cluster itself. Resume removes it in the
same order. Annotation writes overwrite and removals of a missing key are
no-ops, so both directions can be repeated safely.
"""

from dataclasses import dataclass

from cluster_lifecycle.clients import ClusterClient
from cluster_lifecycle.exceptions import (
    ClusterLifecycleError,
    PreconditionError,
    RetryCancelledError,
)
from cluster_lifecycle.logging_config import get_logger
from cluster_lifecycle.models.cluster import Cluster, ClusterSpec
from cluster_lifecycle.providers import Provider
from cluster_lifecycle.retrier import Retrier

logger = get_logger(__name__)


@dataclass(frozen=True)
class PauseTarget:
    """One resource that carries the paused annotation."""

    role: str
    resource_type: str
    name: str


def pause_targets(cluster: Cluster, spec: ClusterSpec, provider: Provider) -> list[PauseTarget]:
    """Resources to annotate, in the order they must be paused and resumed.

    Raises:
        PreconditionError: If a required machine group reference is missing
    """
    targets = [
        PauseTarget(
            "datacenterconfig", provider.datacenter_resource_type(), spec.datacenter_ref.name
        )
    ]

    machine_type = provider.machine_resource_type()
    if machine_type:
        cp_ref = spec.control_plane_configuration.machine_group_ref
        if cp_ref is None:
            raise PreconditionError("machineGroupRef for control plane is not defined")

        workers = spec.worker_node_group_configurations
        if not workers or workers[0].machine_group_ref is None:
            raise PreconditionError("machineGroupRef for worker nodes is not defined")
        worker_ref = workers[0].machine_group_ref

        etcd = spec.external_etcd_configuration
        if etcd is not None and etcd.machine_group_ref is None:
            raise PreconditionError("machineGroupRef for etcd machines is not defined")

        targets.append(PauseTarget("control plane machineconfig", machine_type, cp_ref.name))
        if worker_ref.name != cp_ref.name:
            targets.append(PauseTarget("worker node machineconfig", machine_type, worker_ref.name))
        if etcd is not None and etcd.machine_group_ref.name not in (cp_ref.name, worker_ref.name):
            targets.append(
                PauseTarget("etcd machineconfig", machine_type, etcd.machine_group_ref.name)
            )

    targets.append(PauseTarget("cluster", spec.resource_type(), cluster.name))
    return targets


class ReconcilePauser:
    """Writes and removes the paused annotation across a cluster's resources."""

    def __init__(self, client: ClusterClient, retrier: Retrier):
        self.client = client
        self.retrier = retrier

    def pause(self, cluster: Cluster, spec: ClusterSpec, provider: Provider) -> None:
        """Pause reconciliation of every resource backing ``spec``.

        Raises:
            PreconditionError: Before any write, if a machine group ref is missing
            ClusterLifecycleError: If an annotation write kept failing
        """
        targets = pause_targets(cluster, spec, provider)
        annotation = {spec.paused_annotation(): "true"}

        for target in targets:
            logger.debug(f"Pausing {target.role} {target.resource_type}/{target.name}")
            try:
                self.retrier.retry(
                    lambda t=target: self.client.update_annotation_in_namespace(
                        t.resource_type, t.name, annotation, cluster, ""
                    ),
                    description=f"pause annotation on {target.role}",
                )
            except RetryCancelledError:
                raise
            except ClusterLifecycleError as e:
                raise ClusterLifecycleError(
                    f"error updating annotation when pausing {target.role} reconciliation",
                    e.message,
                ) from e

        spec.paused = True
        provider.datacenter_config().paused = True
        logger.info(f"Paused reconciliation for {cluster.name} on {len(targets)} resources")

    def resume(self, cluster: Cluster, spec: ClusterSpec, provider: Provider) -> None:
        """Resume reconciliation, mirroring ``pause``, and clear the pause markers.

        Raises:
            PreconditionError: Before any write, if a machine group ref is missing
            ClusterLifecycleError: If an annotation removal kept failing
        """
        targets = pause_targets(cluster, spec, provider)
        key = spec.paused_annotation()
        failures: list[tuple[PauseTarget, ClusterLifecycleError]] = []

        # Keep going after a failed removal so one stuck resource doesn't
        # leave the others paused.
        for target in targets:
            logger.debug(f"Resuming {target.role} {target.resource_type}/{target.name}")
            try:
                self.retrier.retry(
                    lambda t=target: self.client.remove_annotation_in_namespace(
                        t.resource_type, t.name, key, cluster, ""
                    ),
                    description=f"removing pause annotation from {target.role}",
                )
            except RetryCancelledError:
                raise
            except ClusterLifecycleError as e:
                logger.error(f"Failed to resume {target.role} {target.name}: {e.message}")
                failures.append((target, e))

        if failures:
            target, error = failures[0]
            failed = ", ".join(f"{t.role} {t.name}" for t, _ in failures)
            raise ClusterLifecycleError(
                f"error updating annotation when unpausing {target.role} reconciliation",
                f"still paused: {failed}; first error: {error.message}",
            ) from error

        spec.clear_pause_annotation()
        provider.datacenter_config().clear_pause_annotation()
        logger.info(f"Resumed reconciliation for {cluster.name} on {len(targets)} resources")
