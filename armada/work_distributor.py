"""Top-level coordinator: batch-by-batch distribution of features."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any

from armada.clock import Clock, SystemClock
from armada.config import ArmadaConfig
from armada.constants import (
    DEFAULT_FEATURE_RETRIES,
    DEFAULT_FEATURE_RETRY_DELAY,
    DEFAULT_MAX_RETRY_DELAY,
    PRIORITY_NAMES,
    Event,
    FeatureStatus,
    RunState,
)
from armada.dependency_analyzer import DependencyAnalyzer
from armada.events import EventBus
from armada.exceptions import ArmadaError, OrchestratorError
from armada.execution_planner import ExecutionPlanner
from armada.logging import get_feature_logger, get_logger
from armada.progress_aggregator import ProgressAggregator
from armada.retry_backoff import RetryBackoffCalculator
from armada.types import BatchPlan, DistributionResult, ExecutionPlan, Feature, FeatureOutcome
from armada.worker_pool import WorkerPool

logger = get_logger("work_distributor")

_PRIORITY_LABELS = {value: name for name, value in PRIORITY_NAMES.items()}


def build_task_description(feature: Feature) -> str:
    """Render the human-readable task text sent to a worker."""
    lines = [
        f"Feature: {feature.id}",
        f"Priority: {_PRIORITY_LABELS.get(feature.priority, str(feature.priority))}",
    ]
    if feature.description:
        lines.extend(["", feature.description])
    if feature.requirements:
        lines.extend(["", "Requirements:"])
        lines.extend(f"- {req}" for req in feature.requirements)
    if feature.dependencies:
        lines.extend(["", f"Dependencies: {', '.join(feature.dependencies)}"])
    return "\n".join(lines)


def build_task_payload(feature: Feature) -> dict[str, Any]:
    return {
        "feature_id": feature.id,
        "capability": feature.capability,
        "priority": feature.priority,
        "task": build_task_description(feature),
        "metadata": dict(feature.metadata),
    }


class WorkDistributor:
    """Run a feature set to completion across a worker pool.

    Batches run strictly in order: every feature of batch N reaches a
    terminal state before batch N+1 starts. Features whose dependency failed
    or was skipped are skipped without being dispatched.
    """

    def __init__(
        self,
        pool: WorkerPool,
        *,
        planner: ExecutionPlanner | None = None,
        progress: ProgressAggregator | None = None,
        clock: Clock | None = None,
        max_retries: int = DEFAULT_FEATURE_RETRIES,
        retry_delay: float = DEFAULT_FEATURE_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        dispatch_retries: int = 0,
        dispatch_timeout: float | None = None,
        auto_optimize: bool = True,
        sequential: bool = False,
    ) -> None:
        """Initialize the distributor.

        Args:
            pool: Worker pool features are dispatched to
            planner: Execution planner, defaults to one with built-in estimates
            progress: Progress aggregator, defaults to an in-memory one
            clock: Time source for retry backoff and durations
            max_retries: Feature-level retries after the first attempt
            retry_delay: Base delay of the feature retry backoff
            max_retry_delay: Cap on the feature retry delay
            dispatch_retries: Queue-level retries within one feature attempt
            dispatch_timeout: Per-attempt timeout, defaults to the pool's
            auto_optimize: Re-balance each batch against currently healthy workers
            sequential: Run the features of each batch one at a time
        """
        self._pool = pool
        self._bus: EventBus = pool.bus
        self._clock: Clock = clock or SystemClock()
        self._planner = planner or ExecutionPlanner(clock=self._clock)
        self._progress = progress or ProgressAggregator(self._bus, self._clock)
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._dispatch_retries = dispatch_retries
        self._dispatch_timeout = dispatch_timeout
        self._auto_optimize = auto_optimize
        self._sequential = sequential

        self._state = RunState.CREATED
        self._stop_requested = False
        self._plan: ExecutionPlan | None = None
        self._outcomes: dict[str, FeatureOutcome] = {}
        self._blocked: set[str] = set()

    @classmethod
    def from_config(
        cls,
        pool: WorkerPool,
        config: ArmadaConfig | None = None,
        clock: Clock | None = None,
    ) -> WorkDistributor:
        config = config or ArmadaConfig.load()
        clock = clock or SystemClock()
        return cls(
            pool,
            planner=ExecutionPlanner.from_config(config, clock),
            progress=ProgressAggregator.from_config(config, pool.bus, clock),
            clock=clock,
            max_retries=config.distributor.max_retries,
            retry_delay=config.distributor.retry_delay,
            max_retry_delay=config.distributor.max_retry_delay,
            dispatch_retries=config.distributor.dispatch_retries,
            auto_optimize=config.distributor.auto_optimize,
            sequential=config.distributor.sequential,
        )

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def current_plan(self) -> ExecutionPlan | None:
        return self._plan

    @property
    def progress(self) -> ProgressAggregator:
        return self._progress

    def stop(self) -> None:
        """Request a cooperative stop.

        No new batch and no new retry starts; dispatches already in flight
        finish normally.
        """
        if self._state == RunState.RUNNING and not self._stop_requested:
            logger.info("Stop requested; finishing in-flight features")
        self._stop_requested = True

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, features: Iterable[Feature | dict[str, Any]]) -> tuple[list[Feature], ExecutionPlan]:
        """Validate, batch and plan a feature set without dispatching.

        Raises:
            ConfigurationError: On invalid or cyclic dependencies, or when
                the pool has no workers
        """
        feature_list = [f if isinstance(f, Feature) else Feature.from_dict(f) for f in features]
        analyzer = DependencyAnalyzer.from_features(feature_list)
        id_batches = analyzer.generate_batches()

        by_id = {f.id: f for f in feature_list}
        workers = self._pool.get_healthy_workers() or self._pool.get_workers()
        plan = self._planner.create_execution_plan(
            [[by_id[fid] for fid in batch] for batch in id_batches],
            workers,
        )
        return feature_list, plan

    def _rebalance(self, batch_plan: BatchPlan) -> BatchPlan:
        healthy = self._pool.get_healthy_workers()
        if not self._auto_optimize or not healthy:
            return batch_plan
        planned = {a.worker_id for a in batch_plan.assignments if a.worker_id}
        if planned <= {w.worker_id for w in healthy}:
            return batch_plan
        logger.info(f"Re-balancing batch {batch_plan.batch_number} across {len(healthy)} healthy workers")
        optimized = self._planner.optimize_plan(ExecutionPlan(batches=[batch_plan]), healthy)
        rebalanced = optimized.batches[0]
        rebalanced.batch_number = batch_plan.batch_number
        return rebalanced

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def distribute_work(
        self,
        features: Iterable[Feature | dict[str, Any]],
        *,
        sequential: bool | None = None,
    ) -> DistributionResult:
        """Run every feature to a terminal state.

        Args:
            features: Features (or feature mappings) to distribute
            sequential: Dispatch one feature at a time within each batch,
                defaults to the distributor setting

        Returns:
            DistributionResult covering every feature

        Raises:
            OrchestratorError: If a run is already in progress
            ConfigurationError: On invalid input, before anything is dispatched
            CycleError: If the dependencies are cyclic
        """
        if self._state == RunState.RUNNING:
            raise OrchestratorError("A distribution is already running")

        feature_list, plan = self.plan(features)
        one_at_a_time = self._sequential if sequential is None else sequential
        by_id = {f.id: f for f in feature_list}

        self._plan = plan
        self._state = RunState.RUNNING
        self._stop_requested = False
        self._blocked = set()
        self._outcomes = {
            f.id: FeatureOutcome(feature_id=f.id, status=FeatureStatus.PENDING) for f in feature_list
        }
        self._progress.initialize(feature_list, plan)
        self._progress.start_auto_save()
        started = self._clock.monotonic()
        batches_executed = 0

        logger.info(f"Distributing {len(feature_list)} features in {len(plan.batches)} batches")
        self._bus.emit(
            Event.DISTRIBUTION_STARTED,
            {
                "total_features": len(feature_list),
                "total_batches": len(plan.batches),
                "workers": list(plan.worker_utilization),
                "estimated_seconds": plan.total_estimated_seconds,
                "sequential": one_at_a_time,
            },
        )

        try:
            for batch_plan in plan.batches:
                if self._stop_requested:
                    break
                await self._run_batch(self._rebalance(batch_plan), by_id, len(plan.batches), one_at_a_time)
                batches_executed += 1

            for feature in feature_list:
                if self._outcomes[feature.id].status == FeatureStatus.PENDING:
                    self._skip(feature, "distribution stopped")
        finally:
            self._state = RunState.STOPPED if self._stop_requested else RunState.COMPLETED
            await self._progress.close()

        result = self._build_result(self._clock.monotonic() - started, batches_executed)
        logger.info(
            f"Distribution {self._state.value}: {result.successful} complete, "
            f"{result.failed} failed, {result.skipped} skipped in {result.duration_seconds:.1f}s"
        )
        self._bus.emit(
            Event.DISTRIBUTION_COMPLETE,
            {k: v for k, v in result.to_dict().items() if k != "outcomes"},
        )
        return result

    async def _run_batch(
        self,
        batch_plan: BatchPlan,
        by_id: dict[str, Feature],
        total_batches: int,
        sequential: bool = False,
    ) -> None:
        number = batch_plan.batch_number
        self._bus.emit(
            Event.BATCH_STARTED,
            {"batch": number, "total_batches": total_batches, "features": batch_plan.feature_ids},
        )

        runnable = []
        for assignment in batch_plan.assignments:
            feature = by_id[assignment.feature_id]
            blocked = [dep for dep in feature.dependencies if dep in self._blocked]
            if blocked:
                self._skip(feature, f"dependency {blocked[0]} did not complete")
            else:
                runnable.append((feature, assignment.worker_id))

        if sequential:
            for feature, worker_id in runnable:
                # Features not yet started when stop() arrives are skipped at the end of the run
                if self._stop_requested:
                    break
                await self._run_feature(feature, worker_id)
        else:
            await asyncio.gather(*(self._run_feature(feature, worker_id) for feature, worker_id in runnable))

        statuses = [self._outcomes[fid].status for fid in batch_plan.feature_ids]
        self._bus.emit(
            Event.BATCH_COMPLETE,
            {
                "batch": number,
                "total_batches": total_batches,
                "successful": statuses.count(FeatureStatus.COMPLETE),
                "failed": statuses.count(FeatureStatus.FAILED),
                "skipped": statuses.count(FeatureStatus.SKIPPED),
            },
        )

    async def _run_feature(self, feature: Feature, planned_worker: str | None) -> None:
        flog = get_feature_logger(feature.id, planned_worker)
        outcome = self._outcomes[feature.id]
        payload = build_task_payload(feature)
        self._progress.update_feature(feature.id, status=FeatureStatus.IN_PROGRESS, worker_id=planned_worker)

        while True:
            outcome.attempts += 1
            try:
                result = await self._pool.dispatch(
                    feature.capability,
                    payload,
                    priority=feature.priority,
                    preferred_worker=planned_worker,
                    timeout=self._dispatch_timeout,
                    max_retries=self._dispatch_retries,
                )
            except ArmadaError as e:
                error = str(e)
                worker_id = e.details.get("worker_id")
                retries_used = outcome.attempts - 1
                if retries_used >= self._max_retries or self._stop_requested:
                    self._fail(feature, error, worker_id)
                    return

                delay = RetryBackoffCalculator.calculate_delay(
                    retries_used, "exponential", self._retry_delay, self._max_retry_delay
                )
                flog.warning(f"Attempt {outcome.attempts} failed, retrying in {delay:.1f}s: {error}")
                self._progress.update_feature(feature.id, retry_count=outcome.attempts, error=error)
                self._bus.emit(
                    Event.FEATURE_RETRY,
                    {"feature_id": feature.id, "attempt": outcome.attempts, "delay": delay, "error": error},
                )
                await self._clock.sleep(delay)
                if self._stop_requested:
                    self._fail(feature, f"distribution stopped before retry: {error}", worker_id)
                    return
                continue

            outcome.status = FeatureStatus.COMPLETE
            outcome.worker_id = result.worker_id
            outcome.error = None
            self._progress.update_feature(feature.id, status=FeatureStatus.COMPLETE, worker_id=result.worker_id)
            flog.info(f"Complete on {result.worker_id} after {outcome.attempts} attempt(s)")
            self._bus.emit(
                Event.FEATURE_COMPLETE,
                {
                    "feature_id": feature.id,
                    "worker_id": result.worker_id,
                    "attempts": outcome.attempts,
                    "execution_id": result.execution_id,
                },
            )
            return

    def _fail(self, feature: Feature, error: str, worker_id: str | None) -> None:
        outcome = self._outcomes[feature.id]
        outcome.status = FeatureStatus.FAILED
        outcome.error = error
        outcome.worker_id = worker_id
        self._blocked.add(feature.id)
        self._progress.update_feature(feature.id, status=FeatureStatus.FAILED, error=error, worker_id=worker_id)
        logger.error(f"Feature {feature.id} failed after {outcome.attempts} attempt(s): {error}")
        self._bus.emit(
            Event.FEATURE_FAILED,
            {"feature_id": feature.id, "worker_id": worker_id, "attempts": outcome.attempts, "error": error},
        )

    def _skip(self, feature: Feature, reason: str) -> None:
        outcome = self._outcomes[feature.id]
        outcome.status = FeatureStatus.SKIPPED
        outcome.error = reason
        self._blocked.add(feature.id)
        self._progress.update_feature(feature.id, status=FeatureStatus.SKIPPED, error=reason)
        logger.info(f"Skipping {feature.id}: {reason}")
        self._bus.emit(Event.FEATURE_SKIPPED, {"feature_id": feature.id, "reason": reason})

    def _build_result(self, duration: float, batches_executed: int) -> DistributionResult:
        statuses = [o.status for o in self._outcomes.values()]
        return DistributionResult(
            total=len(self._outcomes),
            successful=statuses.count(FeatureStatus.COMPLETE),
            failed=statuses.count(FeatureStatus.FAILED),
            skipped=statuses.count(FeatureStatus.SKIPPED),
            duration_seconds=duration,
            batches_executed=batches_executed,
            stopped=self._stop_requested,
            outcomes=dict(self._outcomes),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_progress(self) -> dict[str, Any]:
        return self._progress.get_progress()

    def get_summary(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "stop_requested": self._stop_requested,
            "plan": self._planner.get_plan_statistics(self._plan) if self._plan else None,
            "progress": self._progress.get_summary(),
            "pool": self._pool.get_stats(),
        }
