"""Unit tests for ARMADA exception hierarchy."""

from armada.exceptions import (
    ArmadaError,
    ConfigurationError,
    CycleError,
    HealthCheckError,
    OrchestratorError,
    StateError,
    TaskCancelledError,
    TaskError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerCommunicationError,
    WorkerError,
    WorkerUnavailableError,
)


class TestArmadaError:
    """Tests for the base exception."""

    def test_message_only(self) -> None:
        """Test str is the message without details."""
        error = ArmadaError("Something broke")
        assert str(error) == "Something broke"
        assert error.details == {}

    def test_with_details(self) -> None:
        """Test details are appended to str."""
        error = ArmadaError("Bad", {"key": "value"})
        assert str(error) == "Bad: {'key': 'value'}"


class TestHierarchy:
    """Tests for subclass relationships and attributes."""

    def test_everything_is_armada_error(self) -> None:
        """Test all errors share the base."""
        for cls in (ConfigurationError, StateError, OrchestratorError, TaskError, WorkerError):
            assert issubclass(cls, ArmadaError)
        for cls in (TaskExecutionError, TaskTimeoutError, TaskCancelledError):
            assert issubclass(cls, TaskError)
        for cls in (WorkerUnavailableError, WorkerCommunicationError, HealthCheckError):
            assert issubclass(cls, WorkerError)
        assert issubclass(CycleError, ConfigurationError)

    def test_cycle_error(self) -> None:
        """Test cycles are kept and rendered as closed paths."""
        error = CycleError("Cycle detected", [["A", "B"], ["C"]])
        assert error.cycles == [["A", "B"], ["C"]]
        assert error.details["cycles"] == ["A -> B -> A", "C -> C"]

    def test_task_timeout(self) -> None:
        """Test timeout carries task id and seconds."""
        error = TaskTimeoutError("Too slow", "task-1", 30.0)
        assert error.task_id == "task-1"
        assert error.timeout_seconds == 30.0
        assert error.details == {"timeout_seconds": 30.0}

    def test_worker_unavailable(self) -> None:
        """Test capability is recorded."""
        error = WorkerUnavailableError("Nobody home", "backend")
        assert error.capability == "backend"
        assert error.worker_id is None
        assert error.details == {"capability": "backend"}

    def test_worker_error_id(self) -> None:
        """Test worker id attribute."""
        assert WorkerCommunicationError("down", "w1").worker_id == "w1"
