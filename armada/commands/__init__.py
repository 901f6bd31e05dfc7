"""ARMADA CLI commands."""

from armada.commands.plan import plan
from armada.commands.run import run
from armada.commands.status import status

__all__ = [
    "plan",
    "run",
    "status",
]
