"""Main CLI entry point for cluster provisioning."""

from pathlib import Path

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from cluster_provisioner.exceptions import (
    ClusterLockedError,
    ProvisionerError,
    ProvisioningError,
    RecordStoreError,
)
from cluster_provisioner.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-provisioner",
    help="Provision a Vultr Kubernetes cluster with its GitOps platform",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    "pending": "yellow",
    "in_progress": "cyan",
    "provisioned": "green",
    "failed": "red",
}


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _store(state_dir: str | None):
    from cluster_provisioner.config import Settings
    from cluster_provisioner.store import FileRecordStore

    settings = Settings()
    return FileRecordStore(Path(state_dir) if state_dir else settings.record_dir)


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_provisioner import __version__

    typer.echo(f"cluster-provisioner version {__version__}")


@app.command()
def create(
    definition: str = typer.Option(..., "--definition", "-d", help="Path to the cluster definition YAML"),
    state_dir: str | None = typer.Option(None, "--state-dir", help="Directory of cluster records"),
) -> None:
    """
    Provision a cluster from a definition file.

    Runs every provisioning stage in order and stops at the first failure.
    Progress is recorded in the cluster record, which `status` displays.
    """
    from cluster_provisioner.models.cluster import ClusterDefinition
    from cluster_provisioner.providers.vultr import create_vultr_cluster

    try:
        cluster = ClusterDefinition.load(definition)
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] Definition file not found: {definition}")
        raise typer.Exit(code=1)
    except PydanticValidationError as e:
        console.print("[red]Validation Error:[/red]")
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(code=1)

    console.print(
        f"[bold]Provisioning[/bold] {cluster.cluster_name} on {cluster.cloud_provider} "
        f"({cluster.domain_name})"
    )
    try:
        results = create_vultr_cluster(cluster, store=_store(state_dir))
    except ProvisioningError as e:
        console.print(f"[red]Stage '{e.stage}' failed:[/red] {e.message}")
        completed = sum(1 for result in e.results if result.ok)
        console.print(f"{completed} stages completed before the failure")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)
    except ClusterLockedError as e:
        console.print(f"[red]Cluster busy:[/red] {e.message}")
        raise typer.Exit(code=1)
    except ProvisionerError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Provisioning interrupted by user[/yellow]")
        raise typer.Exit(code=130)

    console.print(
        f"[green]✓[/green] Cluster {cluster.cluster_name} provisioned ({len(results)} stages completed)"
    )


@app.command()
def status(
    name: str = typer.Argument(..., help="Cluster name"),
    state_dir: str | None = typer.Option(None, "--state-dir", help="Directory of cluster records"),
) -> None:
    """Show the provisioning record of a cluster."""
    try:
        record = _store(state_dir).get_cluster(name)
    except RecordStoreError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    style = STATUS_STYLES.get(record.status.value, "white")
    table = Table(title=f"Cluster {record.cluster_name}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{record.status.value}[/{style}]")
    table.add_row("In progress", "yes" if record.in_progress else "no")
    table.add_row("Cloud provider", record.cloud_provider)
    table.add_row("Git provider", f"{record.git_provider} ({record.git_owner})")
    table.add_row("Domain", record.domain_name)
    table.add_row("Created", record.creation_timestamp.isoformat(timespec="seconds"))
    table.add_row("Updated", record.updated_at.isoformat(timespec="seconds"))
    table.add_row("Completed stages", str(len(record.completed_stages)))
    if record.completed_stages:
        table.add_row("Last stage", record.completed_stages[-1])
    if record.last_error:
        table.add_row("Last error", f"[red]{record.last_error}[/red]")
    console.print(table)


@app.command()
def services(
    name: str = typer.Argument(..., help="Cluster name"),
    state_dir: str | None = typer.Option(None, "--state-dir", help="Directory of cluster records"),
) -> None:
    """List the platform services recorded for a cluster."""
    try:
        entries = _store(state_dir).get_services(name)
    except RecordStoreError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    if not entries:
        console.print(f"[yellow]No services recorded for {name}[/yellow]")
        return

    table = Table(title=f"Services for {name}")
    table.add_column("Name", style="cyan")
    table.add_column("URL", style="magenta")
    table.add_column("Description")
    for entry in entries:
        table.add_row(entry.name, entry.url, entry.description)
    console.print(table)


if __name__ == "__main__":
    app()
