"""ARMADA exception hierarchy."""

from typing import Any


class ArmadaError(Exception):
    """Base exception for all ARMADA errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(ArmadaError):
    """Invalid feature set, worker set or configuration. Fatal before dispatch."""

    pass


class CycleError(ConfigurationError):
    """The feature dependency graph contains at least one cycle."""

    def __init__(self, message: str, cycles: list[list[str]]) -> None:
        super().__init__(message, {"cycles": [" -> ".join(c + c[:1]) for c in cycles]})
        self.cycles = cycles


class TaskError(ArmadaError):
    """Base error for task-related issues."""

    def __init__(
        self, message: str, task_id: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.task_id = task_id


class TaskExecutionError(TaskError):
    """A worker reported failure or the execution call raised."""

    pass


class TaskTimeoutError(TaskError):
    """Task execution exceeded its timeout."""

    def __init__(self, message: str, task_id: str | None, timeout_seconds: float) -> None:
        super().__init__(message, task_id, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


class TaskCancelledError(TaskError):
    """Task was cancelled before it was executed."""

    pass


class WorkerError(ArmadaError):
    """Base error for worker-related issues."""

    def __init__(
        self, message: str, worker_id: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.worker_id = worker_id


class WorkerUnavailableError(WorkerError):
    """No healthy worker can serve the requested capability."""

    def __init__(self, message: str, capability: str | None = None) -> None:
        super().__init__(message, None, {"capability": capability} if capability else None)
        self.capability = capability


class WorkerCommunicationError(WorkerError):
    """Failed to communicate with a worker."""

    pass


class HealthCheckError(WorkerError):
    """A health probe failed. Never leaves the health monitor."""

    pass


class StateError(ArmadaError):
    """Invalid progress state or state transition."""

    pass


class OrchestratorError(ArmadaError):
    """Error in distribution control flow."""

    pass
