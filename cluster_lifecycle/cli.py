"""Main CLI entry point for cluster lifecycle orchestration."""

import signal
import threading
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cluster_lifecycle.config import LifecycleSettings
from cluster_lifecycle.exceptions import ClusterLifecycleError
from cluster_lifecycle.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-lifecycle",
    help="Create, upgrade, move and delete cluster-api workload clusters",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

# Set on Ctrl-C; every retry loop watches it and stops between attempts.
cancel_event = threading.Event()


# Global callback to set up logging and settings
@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
    config: str | None = typer.Option(
        None, "--config", "-c", help="YAML file overriding retry and wait settings"
    ),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")

    cancel_event.clear()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    if config:
        try:
            ctx.obj = LifecycleSettings.load(config)
        except ClusterLifecycleError as e:
            _fail(e)
    else:
        ctx.obj = LifecycleSettings()


def _fail(e: Exception) -> None:
    """Print an error the way every command reports it, then exit 1."""
    if isinstance(e, ClusterLifecycleError):
        logger.error(e.message)
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
    else:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
    raise typer.Exit(code=1)


def _build_manager(
    settings: LifecycleSettings, output_dir: str, cni_manifest: str | None = None
):
    from cluster_lifecycle.clients import Kubectl, ManifestNetworking
    from cluster_lifecycle.cluster_manager import ClusterManager
    from cluster_lifecycle.filewriter import FileWriter

    return ClusterManager(
        Kubectl(),
        ManifestNetworking(cni_manifest) if cni_manifest else None,
        FileWriter(output_dir),
        settings=settings,
        cancel_event=cancel_event,
    )


def _load_resources(cluster_config: str, manifest: str | None = None):
    from cluster_lifecycle.manifests import load_cluster_config
    from cluster_lifecycle.providers import get_provider

    resources = load_cluster_config(cluster_config)
    if manifest:
        resources.spec.override_cluster_spec_file = manifest
    provider = get_provider(resources.datacenter_config, resources.machine_configs)
    return resources, provider


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_lifecycle import __version__

    typer.echo(f"cluster-lifecycle version {__version__}")


@app.command()
def create(
    ctx: typer.Context,
    cluster_config: str = typer.Argument(..., help="Cluster configuration YAML file"),
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
    management_name: str = typer.Option(
        "management", "--management-name", help="Name of the management cluster"
    ),
    manifest: str | None = typer.Option(
        None, "--manifest", "-m", help="Pre-rendered cluster manifest to apply"
    ),
    cni_manifest: str | None = typer.Option(
        None, "--cni-manifest", help="CNI manifest to install on the new cluster"
    ),
    output_dir: str = typer.Option(".", "--output-dir", "-o", help="Where to write artifacts"),
) -> None:
    """
    Create a workload cluster from a cluster configuration file.

    The cluster manifest is applied to the management cluster, then the
    command waits for etcd, the control plane and every machine before
    writing the workload kubeconfig.
    """
    from cluster_lifecycle.models import Cluster

    settings = ctx.obj or LifecycleSettings()
    try:
        resources, provider = _load_resources(cluster_config, manifest)
        manager = _build_manager(settings, output_dir, cni_manifest)
        management = Cluster(name=management_name, kubeconfig_file=kubeconfig)

        console.print(f"Creating cluster [cyan]{resources.spec.name}[/cyan]")
        workload = manager.create_workload_cluster(management, resources.spec, provider)

        if cni_manifest:
            manager.install_networking(workload, resources.spec)
        manager.install_storage_class(workload, provider)
        manager.install_machine_health_checks(management, provider)
        manager.install_custom_components(resources.spec, management)
        manager.create_eksa_resources(
            management, resources.spec, resources.datacenter_config, resources.machine_configs
        )
        manager.writer.clean_up_temp()
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] Cluster {workload.name} created")
    console.print(f"[bold]Kubeconfig:[/bold] {workload.kubeconfig_file}")


@app.command()
def upgrade(
    ctx: typer.Context,
    cluster_config: str = typer.Argument(..., help="Cluster configuration YAML file"),
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
    workload_kubeconfig: str = typer.Option(
        ..., "--workload-kubeconfig", "-w", help="Kubeconfig of the cluster being upgraded"
    ),
    management_name: str = typer.Option(
        "management", "--management-name", help="Name of the management cluster"
    ),
    manifest: str | None = typer.Option(
        None, "--manifest", "-m", help="Pre-rendered cluster manifest to apply"
    ),
    output_dir: str = typer.Option(".", "--output-dir", "-o", help="Where to write artifacts"),
) -> None:
    """
    Upgrade a workload cluster to the given configuration.

    Reconcilers are paused while the new spec is rolled out and resumed once
    the cluster has converged. Nothing is applied when the spec is unchanged.
    """
    from cluster_lifecycle.models import Cluster

    settings = ctx.obj or LifecycleSettings()
    try:
        resources, provider = _load_resources(cluster_config, manifest)
        spec = resources.spec
        manager = _build_manager(settings, output_dir)
        management = Cluster(name=management_name, kubeconfig_file=kubeconfig)
        workload = Cluster(name=spec.name, kubeconfig_file=workload_kubeconfig)
        # The eks-a objects for the workload cluster live on the management cluster
        managed = Cluster(name=spec.name, kubeconfig_file=kubeconfig)

        changed = manager.cluster_spec_changed(
            managed, spec, resources.datacenter_config, resources.machine_configs
        )
        if not changed:
            console.print("[yellow]No changes detected, nothing to upgrade[/yellow]")
            return

        console.print(f"Upgrading cluster [cyan]{spec.name}[/cyan]")
        manager.pause_eksa_controller_reconcile(managed, spec, provider)
        manager.upgrade_cluster(management, workload, spec, provider)
        manager.create_eksa_resources(
            management, spec, resources.datacenter_config, resources.machine_configs
        )
        manager.resume_eksa_controller_reconcile(managed, spec, provider)
        manager.writer.clean_up_temp()
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] Cluster {spec.name} upgraded")


@app.command()
def delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the workload cluster to delete"),
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
    management_name: str = typer.Option(
        "management", "--management-name", help="Name of the management cluster"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
) -> None:
    """Delete a workload cluster from its management cluster."""
    from cluster_lifecycle.models import Cluster

    if not force:
        confirm = typer.confirm(f"Delete cluster {name}?")
        if not confirm:
            console.print("Cancelled")
            raise typer.Exit(code=0)

    settings = ctx.obj or LifecycleSettings()
    try:
        manager = _build_manager(settings, ".")
        manager.delete_cluster(
            Cluster(name=management_name, kubeconfig_file=kubeconfig), Cluster(name=name)
        )
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] Cluster {name} deleted")


@app.command()
def move(
    ctx: typer.Context,
    from_kubeconfig: str = typer.Option(
        ..., "--from-kubeconfig", help="Kubeconfig of the current management cluster"
    ),
    to_kubeconfig: str = typer.Option(
        ..., "--to-kubeconfig", help="Kubeconfig of the new management cluster"
    ),
    source_name: str = typer.Option("bootstrap", "--source-name", help="Source cluster name"),
    target_name: str = typer.Option("management", "--target-name", help="Target cluster name"),
) -> None:
    """
    Move cluster-api management to another cluster.

    The move itself is not retried. If it fails, inspect both clusters before
    trying again.
    """
    from cluster_lifecycle.models import Cluster

    settings = ctx.obj or LifecycleSettings()
    source = Cluster(name=source_name, kubeconfig_file=from_kubeconfig)
    target = Cluster(name=target_name, kubeconfig_file=to_kubeconfig)
    try:
        _build_manager(settings, ".").move_capi(source, target)
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] Management moved from {source_name} to {target_name}")


@app.command()
def wait_nodes(
    ctx: typer.Context,
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
    name: str = typer.Option("management", "--name", "-n", help="Management cluster name"),
) -> None:
    """Wait until every machine on the management cluster has joined as a node."""
    from cluster_lifecycle.clients import Kubectl
    from cluster_lifecycle.models import Cluster
    from cluster_lifecycle.readiness import ReadinessPoller

    settings = ctx.obj or LifecycleSettings()
    cluster = Cluster(name=name, kubeconfig_file=kubeconfig)
    poller = ReadinessPoller(Kubectl(), settings, cancel_event=cancel_event)
    try:
        poller.wait_for_nodes_ready(cluster)
        count = poller.count_nodes_ready(cluster)
    except Exception as e:
        _fail(e)

    console.print(f"[green]✓[/green] {count.ready}/{count.total} nodes ready")


def _pause_or_resume(ctx: typer.Context, cluster_config: str, kubeconfig: str, pause: bool):
    from cluster_lifecycle.models import Cluster

    settings = ctx.obj or LifecycleSettings()
    try:
        resources, provider = _load_resources(cluster_config)
        manager = _build_manager(settings, ".")
        cluster = Cluster(name=resources.spec.name, kubeconfig_file=kubeconfig)
        if pause:
            manager.pause_eksa_controller_reconcile(cluster, resources.spec, provider)
        else:
            manager.resume_eksa_controller_reconcile(cluster, resources.spec, provider)
    except Exception as e:
        _fail(e)
    return resources.spec.name


@app.command()
def pause(
    ctx: typer.Context,
    cluster_config: str = typer.Argument(..., help="Cluster configuration YAML file"),
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
) -> None:
    """Pause reconciliation of a cluster and its provider objects."""
    name = _pause_or_resume(ctx, cluster_config, kubeconfig, pause=True)
    console.print(f"[green]✓[/green] Reconciliation paused for {name}")


@app.command()
def resume(
    ctx: typer.Context,
    cluster_config: str = typer.Argument(..., help="Cluster configuration YAML file"),
    kubeconfig: str = typer.Option(
        ..., "--kubeconfig", "-k", help="Kubeconfig of the management cluster"
    ),
) -> None:
    """Resume reconciliation of a cluster and its provider objects."""
    name = _pause_or_resume(ctx, cluster_config, kubeconfig, pause=False)
    console.print(f"[green]✓[/green] Reconciliation resumed for {name}")


@app.command()
def collect_logs(
    ctx: typer.Context,
    kubeconfig: str = typer.Option(..., "--kubeconfig", "-k", help="Kubeconfig of the cluster"),
    name: str = typer.Option("management", "--name", "-n", help="Cluster name"),
    output_dir: str = typer.Option(".", "--output-dir", "-o", help="Where to write logs"),
) -> None:
    """Save controller logs, one file per deployment, under the log directory."""
    from cluster_lifecycle.constants import CLUSTER_DEPLOYMENTS
    from cluster_lifecycle.models import Cluster

    settings = ctx.obj or LifecycleSettings()
    try:
        manager = _build_manager(settings, output_dir)
        manager.save_logs(Cluster(name=name, kubeconfig_file=kubeconfig))
    except Exception as e:
        _fail(e)

    log_dir = Path(output_dir) / settings.log_dir
    table = Table(title=f"Logs in {log_dir}")
    table.add_column("File", style="cyan")
    table.add_column("Namespace", style="magenta")
    table.add_column("Saved", style="green")
    for file_name, deployment in sorted(CLUSTER_DEPLOYMENTS.items()):
        saved = "Yes" if (log_dir / file_name).exists() else "No"
        table.add_row(file_name, deployment.namespace, saved)
    console.print(table)


@app.command()
def ssm_run(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Managed instance to run on"),
    command: str = typer.Argument(..., help="Shell command to run"),
    region: str | None = typer.Option(None, "--region", help="AWS region"),
    bucket: str | None = typer.Option(None, "--bucket", help="S3 bucket for command output"),
    prefix: str | None = typer.Option(None, "--prefix", help="S3 key prefix for command output"),
    wait_ready: bool = typer.Option(
        True, "--wait-ready/--no-wait-ready", help="Wait for the SSM agent first"
    ),
) -> None:
    """Run a shell command on a managed instance through SSM and print its output."""
    import boto3

    from cluster_lifecycle.exceptions import CommandFailedError
    from cluster_lifecycle.ssm import RemoteCommandRunner

    settings = ctx.obj or LifecycleSettings()
    try:
        runner = RemoteCommandRunner(
            boto3.client("ssm", region_name=region), settings, cancel_event=cancel_event
        )
        if wait_ready:
            runner.wait_for_ready(instance_id)
        result = runner.run(instance_id, command, output_bucket=bucket, output_prefix=prefix)
    except CommandFailedError as e:
        if e.stdout:
            console.print(e.stdout, markup=False)
        if e.stderr:
            console.print(e.stderr, markup=False, style="red")
        _fail(e)
    except Exception as e:
        _fail(e)

    if result.stdout:
        console.print(result.stdout, markup=False)
    if result.stderr:
        console.print(result.stderr, markup=False, style="yellow")
    console.print(f"[green]✓[/green] Command {result.command_id} finished: {result.status}")


if __name__ == "__main__":
    app()
