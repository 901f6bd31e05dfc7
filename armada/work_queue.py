"""Priority work queue with bounded concurrency and retry backoff."""

from __future__ import annotations

import asyncio
import itertools
from collections import OrderedDict
from typing import Any, Protocol

from armada.clock import Clock, SystemClock
from armada.config import ArmadaConfig, QueueConfig
from armada.constants import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_QUEUE_RETRIES,
    DEFAULT_QUEUE_RETRY_DELAY,
    DEFAULT_TASK_HISTORY,
    Event,
    TaskState,
)
from armada.events import EventBus
from armada.exceptions import OrchestratorError, TaskCancelledError, WorkerUnavailableError
from armada.logging import get_logger
from armada.retry_backoff import RetryBackoffCalculator
from armada.types import ExecutionResult, QueuedTask

logger = get_logger("work_queue")


class TaskDispatcher(Protocol):
    """Executes queued tasks on workers. Implemented by the worker pool."""

    def try_reserve(self, task: QueuedTask) -> bool:
        """Claim a worker slot for ``task`` and record it on ``task.worker_id``.

        Returns False when eligible workers exist but none has a free slot.
        Raises WorkerUnavailableError when no healthy worker can serve the task.
        """
        ...

    async def run(self, task: QueuedTask) -> ExecutionResult:
        """Execute a reserved task and release its slot when done."""
        ...


class WorkQueue:
    """Queue of dispatch requests ordered by priority, then arrival.

    At most ``max_concurrent`` tasks execute at once. A failed task is retried
    after ``retry_delay * 2**retry_count`` seconds (capped) until its retry
    budget is spent. WorkerUnavailableError is never retried here.

    Finished tasks leave the queue; the status of the last ``history_size``
    of them stays available through get_task_status().
    """

    def __init__(
        self,
        bus: EventBus,
        clock: Clock | None = None,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = DEFAULT_QUEUE_RETRIES,
        retry_delay: float = DEFAULT_QUEUE_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        history_size: int = DEFAULT_TASK_HISTORY,
        dispatcher: TaskDispatcher | None = None,
    ) -> None:
        self._bus = bus
        self._clock: Clock = clock or SystemClock()
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.history_size = history_size
        self._dispatcher = dispatcher

        self._sequence = itertools.count()
        self._ids = itertools.count(1)
        self._tasks: dict[str, QueuedTask] = {}
        self._history: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._submitted = 0
        self._pending: dict[str, QueuedTask] = {}
        self._active: dict[str, QueuedTask] = {}
        self._retrying: dict[str, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._closed = False
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._retries = 0

    @classmethod
    def from_config(
        cls,
        bus: EventBus,
        config: ArmadaConfig | QueueConfig | None = None,
        clock: Clock | None = None,
    ) -> WorkQueue:
        if config is None:
            config = ArmadaConfig.load()
        queue = config.queue if isinstance(config, ArmadaConfig) else config
        return cls(
            bus,
            clock,
            max_concurrent=queue.max_concurrent,
            max_retries=queue.max_retries,
            retry_delay=queue.retry_delay,
            max_retry_delay=queue.max_retry_delay,
            history_size=queue.history_size,
        )

    def bind(self, dispatcher: TaskDispatcher) -> None:
        """Attach the dispatcher that executes tasks."""
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        task_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_retries: int | None = None,
        preferred_worker: str | None = None,
        timeout: float | None = None,
    ) -> asyncio.Future[ExecutionResult]:
        """Add a task to the queue.

        Args:
            task_type: Capability tag the task needs
            payload: Opaque payload handed to the worker
            priority: Higher runs first
            max_retries: Retry budget, defaults to the queue's
            preferred_worker: Worker to use when it is eligible
            timeout: Per-attempt execution timeout in seconds

        Returns:
            Future resolved with the ExecutionResult or rejected with the
            final error

        Raises:
            OrchestratorError: If the queue is closed or has no dispatcher
        """
        if self._closed:
            raise OrchestratorError("Work queue is closed")
        if self._dispatcher is None:
            raise OrchestratorError("Work queue has no dispatcher bound")

        task = QueuedTask(
            task_id=f"task-{next(self._ids)}",
            task_type=task_type,
            payload=payload,
            priority=priority,
            sequence=next(self._sequence),
            max_retries=self.max_retries if max_retries is None else max_retries,
            preferred_worker=preferred_worker,
            timeout=timeout,
            created_at=self._clock.time(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._tasks[task.task_id] = task
        self._pending[task.task_id] = task
        self._submitted += 1
        logger.debug(f"Enqueued {task.task_id} ({task_type}) priority={priority}")

        self._pump()
        return task.future

    def kick(self) -> None:
        """Re-examine pending tasks, e.g. after worker capacity changed."""
        self._pump()

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a pending or retrying task.

        Returns:
            True if the task was cancelled, False if it is executing, finished
            or unknown
        """
        task = self._tasks.get(task_id)
        if task is None or task.state not in (TaskState.PENDING, TaskState.RETRYING):
            return False

        self._pending.pop(task_id, None)
        timer = self._retrying.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        task.state = TaskState.CANCELLED
        task.completed_at = self._clock.time()
        self._cancelled += 1
        if task.future is not None and not task.future.done():
            task.future.set_exception(TaskCancelledError(f"Task {task_id} was cancelled", task_id))
        self._retire(task)
        logger.info(f"Cancelled {task_id}")
        return True

    async def close(self) -> None:
        """Stop accepting work and cancel everything not yet executing."""
        self._closed = True
        for task_id in list(self._pending) + list(self._retrying):
            self.cancel_task(task_id)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task_status(self, task_id: str) -> dict[str, Any] | None:
        task = self._tasks.get(task_id)
        if task is not None:
            return task.to_dict()
        return self._history.get(task_id)

    def get_pending_tasks(self) -> list[QueuedTask]:
        """Pending tasks in execution order."""
        return sorted(self._pending.values(), key=QueuedTask.sort_key)

    def get_active_tasks(self) -> list[QueuedTask]:
        return list(self._active.values())

    @property
    def active_count(self) -> int:
        return len(self._active)

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._pending),
            "executing": len(self._active),
            "retrying": len(self._retrying),
            "completed": self._completed,
            "failed": self._failed,
            "cancelled": self._cancelled,
            "retries": self._retries,
            "total": self._submitted,
            "max_concurrent": self.max_concurrent,
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _pump(self) -> None:
        if self._dispatcher is None:
            return
        while len(self._active) < self.max_concurrent and self._pending:
            started = False
            for task in sorted(self._pending.values(), key=QueuedTask.sort_key):
                if task.task_id not in self._pending:
                    continue
                try:
                    reserved = self._dispatcher.try_reserve(task)
                except WorkerUnavailableError as e:
                    del self._pending[task.task_id]
                    self._finish_failed(task, e)
                    continue
                if reserved:
                    del self._pending[task.task_id]
                    self._start(task)
                    started = True
                    break
            if not started:
                break

    def _start(self, task: QueuedTask) -> None:
        task.state = TaskState.EXECUTING
        task.started_at = self._clock.time()
        self._active[task.task_id] = task
        logger.debug(f"Executing {task.task_id} on {task.worker_id}")
        self._spawn(self._execute(task), f"armada-{task.task_id}")

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[None]:
        bg = asyncio.create_task(coro, name=name)
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)
        return bg

    async def _execute(self, task: QueuedTask) -> None:
        assert self._dispatcher is not None
        try:
            result = await self._dispatcher.run(task)
        except Exception as e:  # noqa: BLE001 — every execution error goes through retry handling
            self._active.pop(task.task_id, None)
            self._handle_failure(task, e)
        else:
            self._active.pop(task.task_id, None)
            self._finish_completed(task, result)
        finally:
            self._pump()

    def _finish_completed(self, task: QueuedTask, result: ExecutionResult) -> None:
        task.state = TaskState.COMPLETED
        task.completed_at = self._clock.time()
        task.result = result
        self._completed += 1
        duration = task.completed_at - (task.started_at or task.completed_at)
        self._bus.emit(
            Event.TASK_COMPLETED,
            {
                "task_id": task.task_id,
                "task_type": task.task_type,
                "worker_id": task.worker_id,
                "duration": duration,
                "retry_count": task.retry_count,
            },
        )
        if task.future is not None and not task.future.done():
            task.future.set_result(result)
        self._retire(task)

    def _finish_failed(self, task: QueuedTask, error: BaseException) -> None:
        task.state = TaskState.FAILED
        task.completed_at = self._clock.time()
        task.error = str(error)
        self._failed += 1
        logger.warning(f"Task {task.task_id} failed permanently: {error}")
        self._bus.emit(
            Event.TASK_FAILED,
            {
                "task_id": task.task_id,
                "task_type": task.task_type,
                "worker_id": task.worker_id,
                "error": task.error,
                "retry_count": task.retry_count,
            },
        )
        if task.future is not None and not task.future.done():
            task.future.set_exception(error)
        self._retire(task)

    def _retire(self, task: QueuedTask) -> None:
        self._tasks.pop(task.task_id, None)
        if self.history_size <= 0:
            return
        self._history[task.task_id] = task.to_dict()
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

    def _handle_failure(self, task: QueuedTask, error: BaseException) -> None:
        if (
            isinstance(error, WorkerUnavailableError)
            or task.retry_count >= task.max_retries
            or self._closed
        ):
            self._finish_failed(task, error)
            return

        delay = RetryBackoffCalculator.calculate_delay(
            task.retry_count, "exponential", self.retry_delay, self.max_retry_delay
        )
        task.state = TaskState.RETRYING
        task.error = str(error)
        task.retry_count += 1
        self._retries += 1
        logger.info(
            f"Retrying {task.task_id} in {delay:.1f}s (attempt {task.retry_count}/{task.max_retries}): {error}"
        )
        self._bus.emit(
            Event.TASK_RETRY,
            {
                "task_id": task.task_id,
                "task_type": task.task_type,
                "worker_id": task.worker_id,
                "retry_count": task.retry_count,
                "delay": delay,
                "error": task.error,
            },
        )
        self._retrying[task.task_id] = self._spawn(self._requeue(task, delay), f"armada-retry-{task.task_id}")

    async def _requeue(self, task: QueuedTask, delay: float) -> None:
        await self._clock.sleep(delay)
        if self._retrying.pop(task.task_id, None) is None or task.state != TaskState.RETRYING:
            return
        task.state = TaskState.PENDING
        task.worker_id = None
        task.sequence = next(self._sequence)
        self._pending[task.task_id] = task
        self._pump()
