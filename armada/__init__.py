"""ARMADA - distributed feature orchestration.

Schedule dependency-constrained features across a pool of remote workers.
"""

__version__ = "0.1.0"

from armada.constants import Event, FeatureStatus, HealthStatus, SelectionStrategy, TaskState
from armada.exceptions import (
    ArmadaError,
    ConfigurationError,
    CycleError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerUnavailableError,
)
from armada.types import DistributionResult, ExecutionPlan, Feature, WorkerSpec

__all__ = [
    "__version__",
    "Event",
    "FeatureStatus",
    "HealthStatus",
    "SelectionStrategy",
    "TaskState",
    # Errors
    "ArmadaError",
    "ConfigurationError",
    "CycleError",
    "TaskExecutionError",
    "TaskTimeoutError",
    "WorkerUnavailableError",
    # Data model
    "DistributionResult",
    "ExecutionPlan",
    "Feature",
    "WorkerSpec",
]
