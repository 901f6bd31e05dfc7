"""ARMADA plan command - show how features would be batched and assigned."""

import json

import click
from rich.console import Console
from rich.table import Table

from armada.commands._utils import format_seconds, load_features, load_workers
from armada.config import ArmadaConfig
from armada.dependency_analyzer import DependencyAnalyzer
from armada.exceptions import ArmadaError
from armada.execution_planner import ExecutionPlanner
from armada.logging import get_logger

console = Console()
logger = get_logger("plan")


@click.command()
@click.argument("features_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--workers", "-w", "workers_file", required=True, type=click.Path(exists=True, dir_okay=False), help="Worker list (YAML or JSON)")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), default=None, help="Config file")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(features_file: str, workers_file: str, config_path: str | None, as_json: bool) -> None:
    """Plan a distribution without dispatching anything.

    Examples:

        armada plan features.yaml --workers workers.yaml

        armada plan features.json -w workers.json --json
    """
    try:
        config = ArmadaConfig.load(config_path)
        features = load_features(features_file)
        workers = load_workers(workers_file, config.pool.default_concurrency_limit)

        analyzer = DependencyAnalyzer.from_features(features)
        by_id = {f.id: f for f in features}
        batches = [[by_id[fid] for fid in batch] for batch in analyzer.generate_batches()]

        planner = ExecutionPlanner.from_config(config)
        execution_plan = planner.create_execution_plan(batches, workers)
        stats = planner.get_plan_statistics(execution_plan)

        if as_json:
            click.echo(json.dumps({"plan": execution_plan.to_dict(), "statistics": stats}, indent=2))
            return

        table = Table(show_header=True, title="Execution Plan")
        table.add_column("Batch", justify="center")
        table.add_column("Feature")
        table.add_column("Capability")
        table.add_column("Priority", justify="center")
        table.add_column("Worker")
        table.add_column("Estimate", justify="right")

        for batch in execution_plan.batches:
            for assignment in batch.assignments:
                table.add_row(
                    str(batch.batch_number),
                    assignment.feature_id,
                    assignment.capability,
                    str(assignment.priority),
                    assignment.worker_id or "[red]unassigned[/red]",
                    format_seconds(assignment.estimated_seconds),
                )

        console.print(table)
        console.print(
            f"\n{stats['total_features']} features in {stats['total_batches']} batches, "
            f"estimated [cyan]{format_seconds(stats['total_estimated_seconds'])}[/cyan]"
        )
        if execution_plan.unassigned:
            console.print(f"[yellow]No capable worker for:[/yellow] {', '.join(execution_plan.unassigned)}")

    except ArmadaError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e
