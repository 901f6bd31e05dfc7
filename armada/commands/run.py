"""ARMADA run command - distribute features across remote workers."""

import asyncio

import click
from rich.console import Console
from rich.table import Table

from armada.commands._utils import format_seconds, load_features, load_workers
from armada.config import ArmadaConfig
from armada.constants import Event, FeatureStatus
from armada.exceptions import ArmadaError
from armada.logging import get_logger, setup_logging
from armada.types import DistributionResult, Feature, WorkerSpec
from armada.work_distributor import WorkDistributor
from armada.worker_pool import WorkerPool

console = Console()
logger = get_logger("run")

_STATUS_STYLE = {
    FeatureStatus.COMPLETE: "green",
    FeatureStatus.FAILED: "red",
    FeatureStatus.SKIPPED: "yellow",
}


async def _distribute(config: ArmadaConfig, features: list[Feature], workers: list[WorkerSpec]) -> DistributionResult:
    pool = WorkerPool.from_config(config)
    pool.bus.on(Event.BATCH_STARTED, lambda d: console.print(f"[cyan]Batch {d['batch']}/{d['total_batches']}[/cyan] {', '.join(d['features'])}"))
    pool.bus.on(Event.SERVER_OFFLINE, lambda d: console.print(f"[red]Worker {d['worker_id']} offline[/red]"))
    pool.bus.on(Event.SERVER_RECOVERED, lambda d: console.print(f"[green]Worker {d['worker_id']} recovered[/green]"))

    try:
        for spec in workers:
            try:
                await pool.add_worker_spec(spec)
            except ArmadaError as e:
                console.print(f"[yellow]Skipping worker {spec.worker_id}:[/yellow] {e}")
        pool.start()
        distributor = WorkDistributor.from_config(pool, config)
        return await distributor.distribute_work(features)
    finally:
        await pool.shutdown()


@click.command()
@click.argument("features_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--workers", "-w", "workers_file", required=True, type=click.Path(exists=True, dir_okay=False), help="Worker list (YAML or JSON)")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), default=None, help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(features_file: str, workers_file: str, config_path: str | None, verbose: bool) -> None:
    """Run every feature to completion on the given workers.

    Exits non-zero when any feature failed or was skipped.

    Examples:

        armada run features.yaml --workers workers.yaml
    """
    try:
        config = ArmadaConfig.load(config_path)
        setup_logging(
            level="debug" if verbose else config.logging.level,
            log_dir=config.logging.directory,
            json_output=config.logging.structured_output,
            max_bytes=config.logging.max_log_size_mb * 1024 * 1024,
        )
        features = load_features(features_file)
        workers = load_workers(workers_file, config.pool.default_concurrency_limit)

        result = asyncio.run(_distribute(config, features, workers))
    except ArmadaError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e

    table = Table(show_header=True, title="Distribution Result")
    table.add_column("Feature")
    table.add_column("Status")
    table.add_column("Worker")
    table.add_column("Attempts", justify="center")
    table.add_column("Error")
    for outcome in result.outcomes.values():
        style = _STATUS_STYLE.get(outcome.status, "white")
        table.add_row(
            outcome.feature_id,
            f"[{style}]{outcome.status.value}[/{style}]",
            outcome.worker_id or "-",
            str(outcome.attempts),
            outcome.error or "",
        )
    console.print(table)
    console.print(
        f"\n[green]{result.successful}[/green] complete, [red]{result.failed}[/red] failed, "
        f"[yellow]{result.skipped}[/yellow] skipped in {format_seconds(result.duration_seconds)}"
    )

    if not result.success:
        raise SystemExit(1)
