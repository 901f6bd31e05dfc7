"""Unit tests for ARMADA work queue."""

import asyncio

import pytest

from armada.config import QueueConfig
from armada.constants import Event, TaskState
from armada.exceptions import (
    OrchestratorError,
    TaskCancelledError,
    TaskExecutionError,
    WorkerUnavailableError,
)
from armada.types import ExecutionResult, QueuedTask
from armada.work_queue import WorkQueue
from tests.helpers.fake_clock import settle


class StubDispatcher:
    """Dispatcher with a fixed number of slots and scripted failures."""

    def __init__(self, capacity: int = 1, unavailable=(), errors=None) -> None:
        self.capacity = capacity
        self.unavailable = set(unavailable)
        self.errors = errors or {}
        self.in_use = 0
        self.max_in_use = 0
        self.order: list = []
        self.gate: asyncio.Event | None = None

    def try_reserve(self, task: QueuedTask) -> bool:
        if task.task_type in self.unavailable:
            raise WorkerUnavailableError(f"nobody serves {task.task_type}", task.task_type)
        if self.in_use >= self.capacity:
            return False
        self.in_use += 1
        self.max_in_use = max(self.max_in_use, self.in_use)
        task.worker_id = "stub"
        return True

    async def run(self, task: QueuedTask) -> ExecutionResult:
        try:
            self.order.append(task.payload.get("n"))
            if self.gate is not None:
                await self.gate.wait()
            pending = self.errors.get(task.task_type)
            if pending:
                raise pending.pop(0)
            return ExecutionResult(success=True, execution_id=task.task_id)
        finally:
            self.in_use -= 1


def _boom(n=1):
    return [TaskExecutionError("boom", "t") for _ in range(n)]


def _queue(bus, clock, dispatcher, **kwargs):
    params = {"max_concurrent": 10, "max_retries": 3, "retry_delay": 1.0, "max_retry_delay": 300.0}
    params.update(kwargs)
    return WorkQueue(bus, clock, dispatcher=dispatcher, **params)


class TestOrdering:
    """Tests for priority ordering and the concurrency ceiling."""

    @pytest.mark.smoke
    async def test_priority_then_arrival(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=1)
        dispatcher.gate = asyncio.Event()
        queue = _queue(bus, clock, dispatcher)

        futures = [queue.enqueue("x", {"n": "first"})]
        for n, priority in [("low", 0), ("high", 5), ("mid-1", 2), ("mid-2", 2)]:
            futures.append(queue.enqueue("x", {"n": n}, priority=priority))

        assert [t.payload["n"] for t in queue.get_pending_tasks()] == ["high", "mid-1", "mid-2", "low"]

        dispatcher.gate.set()
        await asyncio.gather(*futures)
        assert dispatcher.order == ["first", "high", "mid-1", "mid-2", "low"]

    @pytest.mark.smoke
    async def test_max_concurrent_ceiling(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=100)
        dispatcher.gate = asyncio.Event()
        queue = _queue(bus, clock, dispatcher, max_concurrent=2)

        futures = [queue.enqueue("x", {"n": i}) for i in range(5)]
        await settle()
        assert queue.active_count == 2
        assert queue.get_stats()["pending"] == 3

        dispatcher.gate.set()
        await asyncio.gather(*futures)
        assert dispatcher.max_in_use == 2
        assert queue.get_stats()["completed"] == 5

    async def test_kick_retries_blocked_tasks(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=0)
        queue = _queue(bus, clock, dispatcher)
        future = queue.enqueue("x", {"n": 1})
        await settle()
        assert not future.done()

        dispatcher.capacity = 1
        queue.kick()
        result = await future
        assert result.success

    async def test_completion_event(self, bus, recorder, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher())
        await queue.enqueue("backend", {"n": 1})
        completed = recorder.of_type(Event.TASK_COMPLETED)
        assert len(completed) == 1
        assert completed[0]["task_type"] == "backend"
        assert completed[0]["worker_id"] == "stub"


class TestRetries:
    """Tests for retry with exponential backoff."""

    @pytest.mark.smoke
    async def test_retries_then_succeeds(self, bus, recorder, clock) -> None:
        dispatcher = StubDispatcher(errors={"x": _boom(3)})
        queue = _queue(bus, clock, dispatcher, max_retries=3, retry_delay=1.0)

        result = await queue.enqueue("x", {"n": 1})

        assert result.success
        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert [e["retry_count"] for e in recorder.of_type(Event.TASK_RETRY)] == [1, 2, 3]
        assert queue.get_stats()["retries"] == 3

    async def test_delay_is_capped(self, bus, clock) -> None:
        dispatcher = StubDispatcher(errors={"x": _boom(3)})
        queue = _queue(bus, clock, dispatcher, retry_delay=10.0, max_retry_delay=15.0)
        await queue.enqueue("x", {"n": 1})
        assert clock.sleeps == [10.0, 15.0, 15.0]

    async def test_budget_exhausted(self, bus, recorder, clock) -> None:
        dispatcher = StubDispatcher(errors={"x": _boom(5)})
        queue = _queue(bus, clock, dispatcher, max_retries=1)

        with pytest.raises(TaskExecutionError):
            await queue.enqueue("x", {"n": 1})

        assert len(dispatcher.order) == 2
        assert len(recorder.of_type(Event.TASK_FAILED)) == 1
        assert queue.get_stats()["failed"] == 1

    async def test_per_task_budget_overrides_queue(self, bus, clock) -> None:
        dispatcher = StubDispatcher(errors={"x": _boom(1)})
        queue = _queue(bus, clock, dispatcher, max_retries=3)
        with pytest.raises(TaskExecutionError):
            await queue.enqueue("x", {"n": 1}, max_retries=0)
        assert clock.sleeps == []

    async def test_retried_task_goes_behind_same_priority(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=1, errors={"flaky": _boom(1)})
        queue = _queue(bus, clock, dispatcher)
        futures = [
            queue.enqueue("flaky", {"n": "flaky"}),
            queue.enqueue("x", {"n": "steady"}),
        ]
        await asyncio.gather(*futures)
        assert dispatcher.order == ["flaky", "steady", "flaky"]


class TestUnavailable:
    """WorkerUnavailableError is terminal at the queue level."""

    @pytest.mark.smoke
    async def test_no_capable_worker_fails_immediately(self, bus, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher(unavailable={"quantum"}))
        future = queue.enqueue("quantum", {"n": 1})
        with pytest.raises(WorkerUnavailableError) as exc_info:
            await future
        assert exc_info.value.capability == "quantum"
        assert clock.sleeps == []

    async def test_unavailable_from_run_not_retried(self, bus, clock) -> None:
        dispatcher = StubDispatcher(errors={"x": [WorkerUnavailableError("gone", "x")]})
        queue = _queue(bus, clock, dispatcher, max_retries=3)
        with pytest.raises(WorkerUnavailableError):
            await queue.enqueue("x", {"n": 1})
        assert len(dispatcher.order) == 1

    async def test_unavailable_task_does_not_block_others(self, bus, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher(unavailable={"quantum"}))
        bad = queue.enqueue("quantum", {"n": 1}, priority=9)
        good = queue.enqueue("x", {"n": 2})
        assert (await good).success
        with pytest.raises(WorkerUnavailableError):
            await bad


class TestCancellation:
    """Tests for cancel_task and close."""

    async def test_cancel_pending(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=1)
        dispatcher.gate = asyncio.Event()
        queue = _queue(bus, clock, dispatcher)
        running = queue.enqueue("x", {"n": "a"})
        waiting = queue.enqueue("x", {"n": "b"})
        await settle()

        running_id, waiting_id = "task-1", "task-2"
        assert queue.cancel_task(running_id) is False
        assert queue.cancel_task(waiting_id) is True
        assert queue.cancel_task(waiting_id) is False
        assert queue.cancel_task("task-999") is False

        with pytest.raises(TaskCancelledError):
            await waiting
        dispatcher.gate.set()
        assert (await running).success
        assert dispatcher.order == ["a"]
        assert queue.get_task_status(waiting_id)["state"] == TaskState.CANCELLED.value
        assert queue.get_stats()["cancelled"] == 1

    async def test_cancel_while_waiting_to_retry(self, bus, manual_clock) -> None:
        dispatcher = StubDispatcher(errors={"x": _boom(1)})
        queue = _queue(bus, manual_clock, dispatcher)
        future = queue.enqueue("x", {"n": 1})
        await settle()
        assert queue.get_task_status("task-1")["state"] == TaskState.RETRYING.value

        assert queue.cancel_task("task-1") is True
        await manual_clock.advance(10)
        with pytest.raises(TaskCancelledError):
            await future
        assert len(dispatcher.order) == 1

    async def test_close_rejects_new_work(self, bus, clock) -> None:
        dispatcher = StubDispatcher(capacity=0)
        queue = _queue(bus, clock, dispatcher)
        pending = queue.enqueue("x", {"n": 1})
        await queue.close()

        with pytest.raises(TaskCancelledError):
            await pending
        with pytest.raises(OrchestratorError, match="closed"):
            queue.enqueue("x", {"n": 2})

    async def test_enqueue_without_dispatcher(self, bus, clock) -> None:
        queue = WorkQueue(bus, clock)
        with pytest.raises(OrchestratorError, match="dispatcher"):
            queue.enqueue("x", {})


class TestStats:
    """Tests for status reporting."""

    async def test_stats_and_status(self, bus, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher())
        await queue.enqueue("x", {"n": 1}, priority=3)

        status = queue.get_task_status("task-1")
        assert status["state"] == "completed"
        assert status["priority"] == 3
        assert status["worker_id"] == "stub"
        assert queue.get_task_status("nope") is None

        stats = queue.get_stats()
        assert stats["total"] == 1
        assert stats["completed"] == 1
        assert stats["executing"] == 0
        assert queue.get_active_tasks() == []

    async def test_finished_tasks_keep_bounded_history(self, bus, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher(), history_size=2)
        for n in range(3):
            await queue.enqueue("x", {"n": n})

        assert queue._tasks == {}
        assert queue.get_task_status("task-1") is None
        assert queue.get_task_status("task-2")["state"] == "completed"
        assert queue.get_task_status("task-3")["state"] == "completed"
        assert queue.get_stats()["total"] == 3

    async def test_history_disabled(self, bus, clock) -> None:
        queue = _queue(bus, clock, StubDispatcher(), history_size=0)
        await queue.enqueue("x", {"n": 1})
        assert queue.get_task_status("task-1") is None

    def test_from_config(self, bus, clock) -> None:
        queue = WorkQueue.from_config(bus, QueueConfig(max_concurrent=4, max_retries=1, history_size=5), clock)
        assert queue.max_concurrent == 4
        assert queue.max_retries == 1
        assert queue.history_size == 5
