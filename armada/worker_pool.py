"""Worker pool: registration, healthy-worker selection and dispatch."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Iterable
from typing import Any

from armada.clock import Clock, SystemClock
from armada.config import ArmadaConfig
from armada.constants import DEFAULT_TASK_TIMEOUT, Event, HealthStatus, SelectionStrategy
from armada.events import EventBus
from armada.exceptions import (
    ConfigurationError,
    TaskError,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerCommunicationError,
    WorkerUnavailableError,
)
from armada.health_monitor import HealthMonitor
from armada.logging import get_logger
from armada.selection import WorkerSelector
from armada.types import ExecutionResult, QueuedTask, WorkerSpec
from armada.work_queue import WorkQueue
from armada.worker_client import HttpWorkerClient, WorkerClient

logger = get_logger("worker_pool")

ClientFactory = Callable[[str, str | None], WorkerClient]


def _http_client(address: str, auth_token: str | None) -> WorkerClient:
    return HttpWorkerClient(address, auth_token)


class WorkerPool:
    """Set of registered workers that tasks are dispatched to.

    Only ONLINE workers that serve the requested capability and have a free
    concurrency slot are eligible. Dispatches go through the WorkQueue, so a
    request waits while every healthy worker is busy and fails immediately
    with WorkerUnavailableError when no healthy worker serves it.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        *,
        strategy: SelectionStrategy | str = SelectionStrategy.ROUND_ROBIN,
        task_timeout: float | None = DEFAULT_TASK_TIMEOUT,
        default_concurrency_limit: int = 1,
        monitor: HealthMonitor | None = None,
        queue: WorkQueue | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._bus = bus or EventBus()
        self._clock: Clock = clock or SystemClock()
        self._selector = WorkerSelector(strategy)
        self._task_timeout = task_timeout
        self._default_concurrency_limit = default_concurrency_limit
        self._monitor = monitor or HealthMonitor(self._bus, self._clock)
        self._queue = queue or WorkQueue(self._bus, self._clock)
        self._queue.bind(self)
        self._client_factory = client_factory or _http_client

        self._workers: dict[str, WorkerSpec] = {}
        self._clients: dict[str, WorkerClient] = {}
        self._order: dict[str, int] = {}
        self._active: dict[str, int] = {}
        self._counters: dict[str, dict[str, int]] = {}
        self._registration = itertools.count()
        self._background: set[asyncio.Task[None]] = set()

        self._bus.on(Event.SERVER_RECOVERED, self._on_recovered)
        self._bus.on(Event.RECONNECT_FAILED, self._on_reconnect_failed)

    @classmethod
    def from_config(
        cls,
        config: ArmadaConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        client_factory: ClientFactory | None = None,
    ) -> WorkerPool:
        """Create a pool with its monitor and queue from configuration."""
        config = config or ArmadaConfig.load()
        bus = bus or EventBus(config.logging.events_file)
        clock = clock or SystemClock()
        return cls(
            bus,
            clock,
            strategy=config.pool.strategy,
            task_timeout=config.pool.task_timeout,
            default_concurrency_limit=config.pool.default_concurrency_limit,
            monitor=HealthMonitor.from_config(bus, config, clock),
            queue=WorkQueue.from_config(bus, config, clock),
            client_factory=client_factory,
        )

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def strategy(self) -> SelectionStrategy:
        return self._selector.strategy

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def add_worker(
        self,
        worker_id: str,
        address: str,
        auth_token: str | None = None,
        *,
        priority: int = 0,
        capabilities: Iterable[str] = (),
        concurrency_limit: int | None = None,
        client: WorkerClient | None = None,
    ) -> WorkerSpec:
        """Connect to a worker and register it.

        Args:
            worker_id: Unique worker identifier
            address: Worker base address
            auth_token: Token carried on every request
            priority: Selection weight, higher first
            capabilities: Capability tags served; empty serves any tag
            concurrency_limit: Maximum simultaneous tasks on this worker,
                defaults to the pool's default limit
            client: Pre-built connection, defaults to an HTTP client

        Returns:
            The registered WorkerSpec

        Raises:
            ConfigurationError: If the id is taken or the limit is below 1
            WorkerCommunicationError: If the initial connection fails
        """
        if worker_id in self._workers:
            raise ConfigurationError(f"Worker {worker_id} is already registered")
        if concurrency_limit is None:
            concurrency_limit = self._default_concurrency_limit
        if concurrency_limit < 1:
            raise ConfigurationError(f"Worker {worker_id} concurrency_limit must be >= 1")

        client = client or self._client_factory(address, auth_token)
        try:
            await client.connect()
        except Exception as e:  # noqa: BLE001 — any connect failure rejects the registration
            raise WorkerCommunicationError(f"Failed to connect to worker {worker_id} at {address}: {e}", worker_id) from e

        spec = WorkerSpec(
            worker_id=worker_id,
            address=address,
            capabilities=tuple(capabilities),
            concurrency_limit=concurrency_limit,
            priority=priority,
            auth_token=auth_token,
        )
        self._workers[worker_id] = spec
        self._clients[worker_id] = client
        self._order[worker_id] = next(self._registration)
        self._active[worker_id] = 0
        self._counters[worker_id] = {"dispatched": 0, "completed": 0, "failed": 0}
        self._monitor.add_worker(worker_id, client)

        logger.info(f"Registered worker {worker_id} at {address} capabilities={list(spec.capabilities) or 'any'}")
        self._queue.kick()
        return spec

    async def add_worker_spec(self, spec: WorkerSpec, client: WorkerClient | None = None) -> WorkerSpec:
        return await self.add_worker(
            spec.worker_id,
            spec.address,
            spec.auth_token,
            priority=spec.priority,
            capabilities=spec.capabilities,
            concurrency_limit=spec.concurrency_limit,
            client=client,
        )

    async def remove_worker(self, worker_id: str) -> bool:
        """Unregister a worker. In-flight tasks on it run to completion."""
        spec = self._workers.pop(worker_id, None)
        if spec is None:
            return False
        client = self._clients.pop(worker_id)
        self._order.pop(worker_id, None)
        self._monitor.remove_worker(worker_id)
        logger.info(f"Removed worker {worker_id}")

        await client.close()
        self._queue.kick()
        return True

    def _on_recovered(self, data: dict[str, Any]) -> None:
        self._queue.kick()

    def _on_reconnect_failed(self, data: dict[str, Any]) -> None:
        worker_id = data.get("worker_id")
        if worker_id not in self._workers:
            return
        logger.warning(f"Dropping worker {worker_id}: reconnection attempts exhausted")
        bg = asyncio.create_task(self.remove_worker(worker_id), name=f"armada-remove-{worker_id}")
        self._background.add(bg)
        bg.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start periodic health probing."""
        self._monitor.start()

    async def shutdown(self) -> None:
        """Cancel queued work, stop probing and close every connection."""
        await self._queue.close()
        await self._monitor.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for worker_id in list(self._workers):
            await self.remove_worker(worker_id)

    # ------------------------------------------------------------------
    # Selection and dispatch
    # ------------------------------------------------------------------

    def get_workers(self) -> list[WorkerSpec]:
        return sorted(self._workers.values(), key=lambda w: self._order[w.worker_id])

    def get_healthy_workers(self, capability: str | None = None) -> list[WorkerSpec]:
        return [
            w
            for w in self.get_workers()
            if self._monitor.is_healthy(w.worker_id) and (capability is None or w.serves(capability))
        ]

    def active_tasks(self, worker_id: str) -> int:
        return self._active.get(worker_id, 0)

    def select_worker(self, capability: str, preferred_worker: str | None = None) -> WorkerSpec | None:
        """Choose a worker for one task without reserving it.

        Returns:
            The chosen worker, or None if every healthy capable worker is busy

        Raises:
            WorkerUnavailableError: If no healthy worker serves the capability
        """
        healthy = self.get_healthy_workers(capability)
        if not healthy:
            raise WorkerUnavailableError(f"No healthy worker serves capability '{capability}'", capability)

        free = [w for w in healthy if self._active[w.worker_id] < w.concurrency_limit]
        if not free:
            return None

        if preferred_worker is not None:
            for worker in free:
                if worker.worker_id == preferred_worker:
                    return worker
        return self._selector.select(free, self._active, self._order)

    def try_reserve(self, task: QueuedTask) -> bool:
        worker = self.select_worker(task.task_type, task.preferred_worker)
        if worker is None:
            return False
        self._active[worker.worker_id] += 1
        self._counters[worker.worker_id]["dispatched"] += 1
        task.worker_id = worker.worker_id
        return True

    async def run(self, task: QueuedTask) -> ExecutionResult:
        worker_id = task.worker_id
        client = self._clients.get(worker_id) if worker_id else None
        timeout = task.timeout if task.timeout is not None else self._task_timeout
        try:
            if client is None:
                raise TaskExecutionError(f"Worker {worker_id} was removed before {task.task_id} started", task.task_id)
            options = {"task_id": task.task_id, "timeout": timeout}
            call = client.execute_agent(task.task_type, task.payload, options)
            try:
                result = await asyncio.wait_for(call, timeout) if timeout else await call
            except TimeoutError as e:
                raise TaskTimeoutError(
                    f"Task {task.task_id} timed out on worker {worker_id} after {timeout}s",
                    task.task_id,
                    timeout,
                ) from e
            except TaskError:
                raise
            except Exception as e:  # noqa: BLE001 — opaque client errors become execution errors
                raise TaskExecutionError(
                    f"Worker {worker_id} failed to execute {task.task_id}: {e}",
                    task.task_id,
                    {"worker_id": worker_id},
                ) from e
            if not result.success:
                raise TaskExecutionError(
                    result.error or f"Worker {worker_id} reported failure for {task.task_id}",
                    task.task_id,
                    {"worker_id": worker_id, "execution_id": result.execution_id},
                )
        except TaskError as e:
            e.details.setdefault("worker_id", worker_id)
            self._count(worker_id, "failed")
            raise
        finally:
            self._release(worker_id)

        self._count(worker_id, "completed")
        result.worker_id = worker_id
        return result

    def _release(self, worker_id: str | None) -> None:
        if worker_id in self._active:
            self._active[worker_id] = max(0, self._active[worker_id] - 1)
            if worker_id not in self._workers:
                del self._active[worker_id]

    def _count(self, worker_id: str | None, key: str) -> None:
        counters = self._counters.get(worker_id) if worker_id else None
        if counters is not None:
            counters[key] += 1

    async def dispatch(
        self,
        capability: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        preferred_worker: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ) -> ExecutionResult:
        """Run one task on a healthy worker and wait for the result.

        Args:
            capability: Capability tag the task requires
            payload: Opaque payload handed to the worker
            priority: Queue priority, higher first
            preferred_worker: Worker to use when it is eligible
            timeout: Per-attempt timeout, defaults to the pool's task timeout
            max_retries: Queue retry budget, defaults to the queue's

        Returns:
            ExecutionResult of the successful attempt

        Raises:
            WorkerUnavailableError: No healthy worker serves the capability
            TaskExecutionError: The worker reported or raised a failure
            TaskTimeoutError: The attempt exceeded its timeout
        """
        future = self._queue.enqueue(
            capability,
            payload,
            priority=priority,
            max_retries=max_retries,
            preferred_worker=preferred_worker,
            timeout=timeout,
        )
        return await future

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def describe_workers(self) -> list[dict[str, Any]]:
        rows = []
        for worker in self.get_workers():
            record = self._monitor.get_record(worker.worker_id)
            rows.append(
                {
                    **worker.to_dict(),
                    "status": record.status.value if record else HealthStatus.OFFLINE.value,
                    "failed_checks": record.failed_checks if record else 0,
                    "active_tasks": self._active.get(worker.worker_id, 0),
                    **self._counters.get(worker.worker_id, {}),
                }
            )
        return rows

    def get_stats(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "total_workers": len(self._workers),
            "healthy_workers": len(self._monitor.get_healthy_workers()),
            "degraded_workers": len(self._monitor.get_degraded_workers()),
            "offline_workers": len(self._monitor.get_offline_workers()),
            "active_tasks": sum(self._active.values()),
            "queue": self._queue.get_stats(),
            "workers": self.describe_workers(),
        }
