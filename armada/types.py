"""Data model shared by the ARMADA components."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any

from armada.constants import (
    PRIORITY_NAMES,
    FeatureStatus,
    HealthStatus,
    TaskState,
    WorkerActivity,
)

# Feature ids that may run concurrently
Batch = list[str]


def parse_priority(value: int | str | None) -> int:
    """Normalize a priority given as an int or a name such as ``high``."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid priority: {value!r}")
    if isinstance(value, int):
        return value
    name = str(value).strip().lower()
    if name in PRIORITY_NAMES:
        return PRIORITY_NAMES[name]
    try:
        return int(name)
    except ValueError:
        raise ValueError(f"Invalid priority: {value!r}") from None


def _as_tuple(value: Any) -> tuple[str, ...]:
    """A single name written as a scalar is a one-element list."""
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value)


@dataclass(frozen=True)
class Feature:
    """A unit of work with a required capability and dependencies."""

    id: str
    capability: str
    priority: int = 0
    dependencies: tuple[str, ...] = ()
    description: str = ""
    requirements: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "capability": self.capability,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "description": self.description,
            "requirements": list(self.requirements),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        """Build a feature from a mapping.

        ``agent`` is accepted as an alias of ``capability`` and priority may be
        given by name (critical, high, medium, low).
        """
        return cls(
            id=str(data.get("id") or ""),
            capability=str(data.get("capability") or data.get("agent") or ""),
            priority=parse_priority(data.get("priority")),
            dependencies=_as_tuple(data.get("dependencies")),
            description=data.get("description", ""),
            requirements=_as_tuple(data.get("requirements")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class WorkerSpec:
    """A registered execution worker."""

    worker_id: str
    address: str
    capabilities: tuple[str, ...] = ()
    concurrency_limit: int = 1
    priority: int = 0
    auth_token: str | None = field(default=None, repr=False)

    def serves(self, capability: str) -> bool:
        """Whether this worker accepts the capability. No tags means any."""
        return not self.capabilities or capability in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "address": self.address,
            "capabilities": list(self.capabilities),
            "concurrency_limit": self.concurrency_limit,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_concurrency_limit: int = 1) -> WorkerSpec:
        limit = data.get("concurrency_limit")
        return cls(
            worker_id=str(data.get("worker_id") or data.get("id") or ""),
            address=data.get("address", ""),
            capabilities=_as_tuple(data.get("capabilities")),
            concurrency_limit=default_concurrency_limit if limit is None else int(limit),
            priority=int(data.get("priority", 0)),
            auth_token=data.get("auth_token"),
        )


@dataclass
class HealthRecord:
    """Health state of one worker. Owned by the health monitor."""

    worker_id: str
    status: HealthStatus = HealthStatus.ONLINE
    failed_checks: int = 0
    last_check: float | None = None
    last_error: str | None = None
    reconnect_attempts: int = 0
    reconnect_exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ExecutionResult:
    """Result of a remote execution call."""

    success: bool
    execution_id: str | None = None
    error: str | None = None
    output: Any = None
    duration: float | None = None
    worker_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionResult:
        return cls(
            success=bool(data.get("success", False)),
            execution_id=data.get("execution_id") or data.get("executionId"),
            error=data.get("error"),
            output=data.get("output"),
            duration=data.get("duration"),
            worker_id=data.get("worker_id"),
        )


@dataclass
class QueuedTask:
    """A dispatch request waiting in or running from the work queue."""

    task_id: str
    task_type: str
    payload: dict[str, Any]
    priority: int = 0
    sequence: int = 0
    retry_count: int = 0
    max_retries: int = 0
    state: TaskState = TaskState.PENDING
    worker_id: str | None = None
    preferred_worker: str | None = None
    timeout: float | None = None
    created_at: float | None = None
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None
    result: ExecutionResult | None = None
    future: asyncio.Future[ExecutionResult] | None = field(default=None, repr=False)

    def sort_key(self) -> tuple[int, int]:
        return (-self.priority, self.sequence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "state": self.state.value,
            "worker_id": self.worker_id,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


@dataclass
class FeatureProgress:
    """Tracked progress of one feature."""

    feature_id: str
    capability: str = ""
    status: FeatureStatus = FeatureStatus.PENDING
    worker_id: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    progress: int = 0
    error: str | None = None
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureProgress:
        return cls(
            feature_id=data["feature_id"],
            capability=data.get("capability", ""),
            status=FeatureStatus(data.get("status", FeatureStatus.PENDING.value)),
            worker_id=data.get("worker_id"),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            progress=data.get("progress", 0),
            error=data.get("error"),
            retry_count=data.get("retry_count", 0),
            metadata=data.get("metadata") or {},
        )


@dataclass
class WorkerProgress:
    """Tracked activity of one worker across a run."""

    worker_id: str
    status: WorkerActivity = WorkerActivity.IDLE
    current_feature: str | None = None
    active_features: list[str] = field(default_factory=list)
    completed_features: int = 0
    failed_features: int = 0
    total_time_seconds: float = 0.0
    last_seen: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerProgress:
        return cls(
            worker_id=data["worker_id"],
            status=WorkerActivity(data.get("status", WorkerActivity.IDLE.value)),
            current_feature=data.get("current_feature"),
            active_features=list(data.get("active_features") or []),
            completed_features=data.get("completed_features", 0),
            failed_features=data.get("failed_features", 0),
            total_time_seconds=data.get("total_time_seconds", 0.0),
            last_seen=data.get("last_seen"),
        )


@dataclass
class GraphValidation:
    """Outcome of validating feature references."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    unknown: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class Assignment:
    """A feature bound to the worker planned to run it."""

    feature_id: str
    worker_id: str | None
    capability: str
    priority: int = 0
    estimated_seconds: float = 0.0
    memory_mb: int = 0
    cpu: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchPlan:
    """Assignments for one batch."""

    batch_number: int
    assignments: list[Assignment] = field(default_factory=list)
    estimated_seconds: float = 0.0
    start_offset: float = 0.0
    end_offset: float = 0.0
    over_capacity: bool = False

    @property
    def feature_ids(self) -> list[str]:
        return [a.feature_id for a in self.assignments]

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "features": self.feature_ids,
            "assignments": [a.to_dict() for a in self.assignments],
            "estimated_seconds": self.estimated_seconds,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "over_capacity": self.over_capacity,
        }


@dataclass
class ExecutionPlan:
    """Batch-by-batch worker plan for a distribution run."""

    batches: list[BatchPlan] = field(default_factory=list)
    total_features: int = 0
    total_estimated_seconds: float = 0.0
    worker_utilization: dict[str, int] = field(default_factory=dict)
    worker_concurrency: dict[str, int] = field(default_factory=dict)
    unassigned: list[str] = field(default_factory=list)
    created_at: float | None = None
    optimized: bool = False

    def assignment_for(self, feature_id: str) -> Assignment | None:
        for batch in self.batches:
            for assignment in batch.assignments:
                if assignment.feature_id == feature_id:
                    return assignment
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batches": [b.to_dict() for b in self.batches],
            "total_features": self.total_features,
            "total_estimated_seconds": self.total_estimated_seconds,
            "worker_utilization": dict(self.worker_utilization),
            "unassigned": list(self.unassigned),
            "metadata": {"created_at": self.created_at, "optimized": self.optimized},
        }


@dataclass
class FeatureOutcome:
    """Final outcome of one feature in a distribution run."""

    feature_id: str
    status: FeatureStatus
    worker_id: str | None = None
    attempts: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class DistributionResult:
    """Summary returned by a distribution run."""

    total: int
    successful: int
    failed: int
    skipped: int
    duration_seconds: float
    batches_executed: int
    stopped: bool = False
    outcomes: dict[str, FeatureOutcome] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.failed == 0 and self.skipped == 0 and not self.stopped

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_seconds": self.duration_seconds,
            "batches_executed": self.batches_executed,
            "stopped": self.stopped,
            "outcomes": {k: v.to_dict() for k, v in self.outcomes.items()},
        }
