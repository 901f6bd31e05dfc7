"""ARMADA command-line interface."""

import click

from armada import __version__
from armada.commands import plan, run, status


@click.group()
@click.version_option(version=__version__, prog_name="armada")
def cli() -> None:
    """ARMADA - distributed feature orchestration.

    Batch dependent features and run them across a pool of remote workers.
    """


cli.add_command(plan)
cli.add_command(run)
cli.add_command(status)


if __name__ == "__main__":
    cli()
