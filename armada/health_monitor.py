"""Worker health monitoring with degradation and reconnection."""

from __future__ import annotations

import asyncio
from typing import Any

from armada.clock import Clock, PeriodicTask, SystemClock
from armada.config import ArmadaConfig, HealthConfig
from armada.constants import (
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_DEGRADED_THRESHOLD,
    DEFAULT_OFFLINE_THRESHOLD,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY,
    Event,
    HealthStatus,
)
from armada.events import EventBus
from armada.exceptions import HealthCheckError
from armada.logging import get_logger
from armada.retry_backoff import RetryBackoffCalculator
from armada.types import HealthRecord
from armada.worker_client import WorkerClient

logger = get_logger("health_monitor")


class HealthMonitor:
    """Probe workers on an interval and track their health state.

    State machine per worker::

        ONLINE --(>= degraded_threshold failures)--> DEGRADED
        DEGRADED --(>= offline_threshold failures)--> OFFLINE
        OFFLINE <--> RECONNECTING (exponential backoff)
        any --(one successful probe or reconnect)--> ONLINE

    Each transition emits its event once; repeated failures in the same
    state only bump counters.
    """

    def __init__(
        self,
        bus: EventBus,
        clock: Clock | None = None,
        *,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        degraded_threshold: int = DEFAULT_DEGRADED_THRESHOLD,
        offline_threshold: int = DEFAULT_OFFLINE_THRESHOLD,
        reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
    ) -> None:
        """Initialize the monitor.

        Args:
            bus: Event bus health transitions are published on
            clock: Time source for probes and reconnect backoff
            check_interval: Seconds between periodic probes
            probe_timeout: Seconds a single probe or reconnect may take
            degraded_threshold: Consecutive failures before DEGRADED
            offline_threshold: Consecutive failures before OFFLINE
            reconnect_attempts: Reconnect attempts before giving up
            reconnect_delay: Base delay of the reconnect backoff
        """
        self._bus = bus
        self._clock: Clock = clock or SystemClock()
        self._check_interval = check_interval
        self._probe_timeout = probe_timeout
        self._degraded_threshold = degraded_threshold
        self._offline_threshold = max(offline_threshold, degraded_threshold)
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay

        self._records: dict[str, HealthRecord] = {}
        self._clients: dict[str, WorkerClient] = {}
        self._reconnect_tasks: dict[str, asyncio.Task[None]] = {}
        self._probe_loop = PeriodicTask("health-check", check_interval, self.check_all, self._clock)

    @classmethod
    def from_config(
        cls,
        bus: EventBus,
        config: ArmadaConfig | HealthConfig | None = None,
        clock: Clock | None = None,
    ) -> HealthMonitor:
        """Create a monitor from configuration.

        Args:
            bus: Event bus to publish on
            config: Full config or its health section; loads the default when None
            clock: Optional time source

        Returns:
            Configured HealthMonitor
        """
        if config is None:
            config = ArmadaConfig.load()
        health = config.health if isinstance(config, ArmadaConfig) else config
        return cls(
            bus,
            clock,
            check_interval=health.check_interval,
            probe_timeout=health.probe_timeout,
            degraded_threshold=health.degraded_threshold,
            offline_threshold=health.offline_threshold,
            reconnect_attempts=health.reconnect_attempts,
            reconnect_delay=health.reconnect_delay,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_worker(self, worker_id: str, client: WorkerClient) -> HealthRecord:
        """Start tracking a worker. New workers are ONLINE."""
        self._cancel_reconnect(worker_id)
        record = HealthRecord(worker_id=worker_id, last_check=self._clock.time())
        self._records[worker_id] = record
        self._clients[worker_id] = client
        logger.debug(f"Monitoring worker {worker_id}")
        return record

    def remove_worker(self, worker_id: str) -> None:
        self._cancel_reconnect(worker_id)
        self._records.pop(worker_id, None)
        self._clients.pop(worker_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_record(self, worker_id: str) -> HealthRecord | None:
        return self._records.get(worker_id)

    def get_status(self, worker_id: str) -> HealthStatus | None:
        record = self._records.get(worker_id)
        return record.status if record else None

    def is_healthy(self, worker_id: str) -> bool:
        return self.get_status(worker_id) == HealthStatus.ONLINE

    def get_all_statuses(self) -> dict[str, dict[str, Any]]:
        return {worker_id: record.to_dict() for worker_id, record in self._records.items()}

    def get_healthy_workers(self) -> list[str]:
        return self._with_status(HealthStatus.ONLINE)

    def get_degraded_workers(self) -> list[str]:
        return self._with_status(HealthStatus.DEGRADED)

    def get_offline_workers(self) -> list[str]:
        return self._with_status(HealthStatus.OFFLINE, HealthStatus.RECONNECTING)

    def _with_status(self, *statuses: HealthStatus) -> list[str]:
        return [wid for wid, record in self._records.items() if record.status in statuses]

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin periodic probing."""
        self._probe_loop.start()
        logger.info(f"Health monitor started (interval {self._check_interval}s)")

    async def stop(self) -> None:
        """Stop probing and cancel reconnect attempts."""
        await self._probe_loop.stop()
        tasks = list(self._reconnect_tasks.values())
        self._reconnect_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Health monitor stopped")

    async def check_all(self) -> dict[str, HealthStatus]:
        """Probe every tracked worker once.

        Returns:
            Mapping of worker id to status after the probe
        """
        worker_ids = list(self._records)
        statuses = await asyncio.gather(*(self.check_worker(wid) for wid in worker_ids))
        return {wid: status for wid, status in zip(worker_ids, statuses, strict=True) if status is not None}

    async def check_worker(self, worker_id: str) -> HealthStatus | None:
        """Probe one worker and apply the result to its state.

        Probe errors are recorded on the worker and never raised.

        Returns:
            Status after the probe, or None if the worker is not tracked
        """
        record = self._records.get(worker_id)
        client = self._clients.get(worker_id)
        if record is None or client is None:
            return None
        if record.reconnect_exhausted:
            return record.status

        try:
            healthy = await asyncio.wait_for(client.ping(), timeout=self._probe_timeout)
            if not healthy:
                raise HealthCheckError("Health check reported unhealthy", worker_id)
        except HealthCheckError as e:
            error = e.message
        except TimeoutError:
            error = f"Health check timed out after {self._probe_timeout}s"
        except Exception as e:  # noqa: BLE001 — probe errors are recorded, never raised
            error = str(e) or type(e).__name__
        else:
            if self._records.get(worker_id) is record:
                self.record_success(worker_id)
            return record.status

        if self._records.get(worker_id) is record:
            self.record_failure(worker_id, error)
        return record.status

    def record_success(self, worker_id: str) -> None:
        """Apply a successful probe: reset counters and return to ONLINE."""
        record = self._records.get(worker_id)
        if record is None:
            return
        previous = record.status
        record.failed_checks = 0
        record.reconnect_attempts = 0
        record.reconnect_exhausted = False
        record.last_error = None
        record.last_check = self._clock.time()
        record.status = HealthStatus.ONLINE
        self._cancel_reconnect(worker_id)

        if previous != HealthStatus.ONLINE:
            logger.info(f"Worker {worker_id} {previous.value} -> online")
            self._bus.emit(
                Event.SERVER_RECOVERED,
                {"worker_id": worker_id, "previous_status": previous.value},
            )

    def record_failure(self, worker_id: str, error: str) -> None:
        """Apply a failed probe and move the worker down the state machine."""
        record = self._records.get(worker_id)
        if record is None:
            return
        record.failed_checks += 1
        record.last_error = error
        record.last_check = self._clock.time()

        if record.status in (HealthStatus.OFFLINE, HealthStatus.RECONNECTING):
            return

        if record.failed_checks >= self._offline_threshold:
            record.status = HealthStatus.OFFLINE
            logger.warning(f"Worker {worker_id} offline after {record.failed_checks} failed checks: {error}")
            self._bus.emit(
                Event.SERVER_OFFLINE,
                {"worker_id": worker_id, "failed_checks": record.failed_checks, "error": error},
            )
            self._start_reconnect(worker_id)
        elif record.failed_checks >= self._degraded_threshold and record.status == HealthStatus.ONLINE:
            record.status = HealthStatus.DEGRADED
            logger.warning(f"Worker {worker_id} degraded after {record.failed_checks} failed checks")
            self._bus.emit(
                Event.SERVER_DEGRADED,
                {"worker_id": worker_id, "failed_checks": record.failed_checks, "error": error},
            )

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _start_reconnect(self, worker_id: str) -> None:
        if worker_id in self._reconnect_tasks:
            return
        self._reconnect_tasks[worker_id] = asyncio.create_task(
            self._reconnect(worker_id), name=f"armada-reconnect-{worker_id}"
        )

    def _cancel_reconnect(self, worker_id: str) -> None:
        task = self._reconnect_tasks.pop(worker_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect(self, worker_id: str) -> None:
        for attempt in range(self._reconnect_attempts):
            delay = RetryBackoffCalculator.calculate_delay(attempt, "exponential", self._reconnect_delay)
            await self._clock.sleep(delay)

            record = self._records.get(worker_id)
            client = self._clients.get(worker_id)
            if record is None or client is None or record.status == HealthStatus.ONLINE:
                return

            record.status = HealthStatus.RECONNECTING
            record.reconnect_attempts = attempt + 1
            logger.info(
                f"Reconnecting to worker {worker_id} (attempt {attempt + 1}/{self._reconnect_attempts})"
            )
            try:
                await asyncio.wait_for(client.connect(), timeout=self._probe_timeout)
            except Exception as e:  # noqa: BLE001 — reconnect failures are retried with backoff
                record.status = HealthStatus.OFFLINE
                record.last_error = str(e) or type(e).__name__
                logger.debug(f"Reconnect attempt {attempt + 1} for {worker_id} failed: {record.last_error}")
                continue

            self._reconnect_tasks.pop(worker_id, None)
            self.record_success(worker_id)
            return

        record = self._records.get(worker_id)
        self._reconnect_tasks.pop(worker_id, None)
        if record is None:
            return
        record.reconnect_exhausted = True
        logger.error(f"Giving up on worker {worker_id} after {self._reconnect_attempts} reconnect attempts")
        self._bus.emit(
            Event.RECONNECT_FAILED,
            {"worker_id": worker_id, "attempts": self._reconnect_attempts, "error": record.last_error},
        )
