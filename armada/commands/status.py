"""ARMADA status command - show a saved progress snapshot."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from armada.commands._utils import format_seconds
from armada.config import ArmadaConfig
from armada.exceptions import ArmadaError
from armada.progress_aggregator import ProgressAggregator

console = Console()


@click.command()
@click.argument("snapshot", required=False, type=click.Path(dir_okay=False))
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), default=None, help="Config file")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
def status(snapshot: str | None, config_path: str | None, as_json: bool) -> None:
    """Show progress from a snapshot file.

    Defaults to the snapshot path from the configuration.

    Examples:

        armada status

        armada status .armada/state/progress.json --json
    """
    try:
        config = ArmadaConfig.load(config_path)
        location = snapshot or config.progress.persistence_path
        if not location:
            console.print("[yellow]Progress persistence is disabled; pass a snapshot path[/yellow]")
            raise SystemExit(1)
        path = Path(location)
        aggregator = ProgressAggregator(persistence_path=path)
        if not aggregator.load():
            console.print(f"[yellow]No progress snapshot found at {path}[/yellow]")
            raise SystemExit(1)
    except ArmadaError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e

    summary = aggregator.get_summary()
    if as_json:
        click.echo(json.dumps(summary, indent=2, default=str))
        return

    counts = summary["features"]
    total = sum(len(ids) for ids in counts.values())
    complete = len(counts["complete"])
    percent = complete / total * 100 if total else 0.0
    console.print(
        Panel(
            f"[bold cyan]{complete}/{total}[/bold cyan] complete ({percent:.0f}%)  "
            f"[red]{len(counts['failed'])} failed[/red]  [yellow]{len(counts['skipped'])} skipped[/yellow]",
            title="[bold]ARMADA Status[/bold]",
            title_align="left",
        )
    )

    features = Table(show_header=True, title="Features")
    features.add_column("Feature")
    features.add_column("Status")
    features.add_column("Worker")
    features.add_column("Retries", justify="center")
    features.add_column("Error")
    for entry in aggregator.get_all_feature_progress():
        features.add_row(
            entry.feature_id,
            entry.status.value,
            entry.worker_id or "-",
            str(entry.retry_count),
            entry.error or "",
        )
    console.print(features)

    workers = Table(show_header=True, title="Workers")
    workers.add_column("Worker")
    workers.add_column("Status")
    workers.add_column("Complete", justify="center")
    workers.add_column("Failed", justify="center")
    workers.add_column("Busy", justify="right")
    for worker in aggregator.get_all_worker_statuses():
        workers.add_row(
            worker.worker_id,
            worker.status.value,
            str(worker.completed_features),
            str(worker.failed_features),
            format_seconds(worker.total_time_seconds),
        )
    console.print(workers)
