"""Capability- and load-aware assignment of features to workers."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from armada.clock import Clock, SystemClock
from armada.config import ArmadaConfig, PlannerConfig
from armada.exceptions import ConfigurationError
from armada.logging import get_logger
from armada.types import Assignment, BatchPlan, ExecutionPlan, Feature, WorkerSpec

logger = get_logger("execution_planner")


class ExecutionPlanner:
    """Build batch-by-batch execution plans.

    Each feature goes to the capable worker with the fewest features assigned
    so far in the plan; ties go to the higher worker priority, then to the
    earlier registered worker. Concurrency limits only affect the time
    estimates and the over-capacity flag, never the assignment itself.
    """

    def __init__(self, config: PlannerConfig | None = None, clock: Clock | None = None) -> None:
        self._config = config or PlannerConfig()
        self._clock: Clock = clock or SystemClock()

    @classmethod
    def from_config(cls, config: ArmadaConfig | None = None, clock: Clock | None = None) -> ExecutionPlanner:
        config = config or ArmadaConfig.load()
        return cls(config.planner, clock)

    def create_execution_plan(
        self,
        batches: Sequence[Sequence[Feature]],
        workers: Sequence[WorkerSpec],
    ) -> ExecutionPlan:
        """Assign every feature of every batch to a worker.

        Args:
            batches: Features grouped into dependency batches, in order
            workers: Candidate workers in registration order

        Returns:
            ExecutionPlan with one BatchPlan per non-empty batch

        Raises:
            ConfigurationError: If no workers are given
        """
        if not workers:
            raise ConfigurationError("Cannot plan execution without workers")

        order = {w.worker_id: i for i, w in enumerate(workers)}
        by_id = {w.worker_id: w for w in workers}
        load = {w.worker_id: 0 for w in workers}
        plan = ExecutionPlan(
            created_at=self._clock.time(),
            worker_concurrency={w.worker_id: max(1, w.concurrency_limit) for w in workers},
        )
        offset = 0.0

        for batch in batches:
            if not batch:
                continue

            batch_plan = BatchPlan(batch_number=len(plan.batches) + 1, start_offset=offset)
            eligible_workers: dict[str, WorkerSpec] = {}

            for feature in sorted(batch, key=lambda f: -f.priority):
                estimate = self._config.estimate_for(feature.capability)
                eligible = [w for w in workers if w.serves(feature.capability)]

                worker_id: str | None = None
                if eligible:
                    chosen = min(
                        eligible,
                        key=lambda w: (load[w.worker_id], -w.priority, order[w.worker_id]),
                    )
                    worker_id = chosen.worker_id
                    load[worker_id] += 1
                    eligible_workers.update((w.worker_id, w) for w in eligible)
                else:
                    logger.warning(
                        f"No worker serves capability '{feature.capability}' for feature {feature.id}"
                    )
                    plan.unassigned.append(feature.id)

                batch_plan.assignments.append(
                    Assignment(
                        feature_id=feature.id,
                        worker_id=worker_id,
                        capability=feature.capability,
                        priority=feature.priority,
                        estimated_seconds=estimate.time_seconds,
                        memory_mb=estimate.memory_mb,
                        cpu=estimate.cpu,
                    )
                )

            capacity = sum(max(1, w.concurrency_limit) for w in eligible_workers.values())
            if len(batch_plan.assignments) > capacity:
                batch_plan.over_capacity = True
                logger.info(
                    f"Batch {batch_plan.batch_number} has {len(batch_plan.assignments)} features "
                    f"for {capacity} worker slots; excess features will queue"
                )

            batch_plan.estimated_seconds = self._batch_time(batch_plan, by_id)
            batch_plan.end_offset = offset + batch_plan.estimated_seconds
            offset = batch_plan.end_offset
            plan.batches.append(batch_plan)

        plan.total_features = sum(len(b.assignments) for b in plan.batches)
        plan.total_estimated_seconds = offset
        plan.worker_utilization = load

        logger.info(
            f"Planned {plan.total_features} features in {len(plan.batches)} batches "
            f"across {len(workers)} workers"
        )
        return plan

    def optimize_plan(self, plan: ExecutionPlan, workers: Sequence[WorkerSpec]) -> ExecutionPlan:
        """Re-balance an existing plan against the current workers.

        Args:
            plan: Plan to re-balance
            workers: Workers currently available

        Returns:
            A new plan over the same batches
        """
        batches = [
            [Feature(id=a.feature_id, capability=a.capability, priority=a.priority) for a in b.assignments]
            for b in plan.batches
        ]
        optimized = self.create_execution_plan(batches, workers)
        optimized.optimized = True
        return optimized

    def get_plan_statistics(self, plan: ExecutionPlan) -> dict[str, Any]:
        """Summarize a plan.

        Returns:
            Dict with batch and feature counts, batch timing and per-worker
            feature count, estimated busy time and utilization percent
        """
        batch_times = [b.estimated_seconds for b in plan.batches]
        worker_stats: dict[str, dict[str, Any]] = {}

        for batch in plan.batches:
            for assignment in batch.assignments:
                if assignment.worker_id is None:
                    continue
                stats = worker_stats.setdefault(
                    assignment.worker_id, {"features": 0, "estimated_seconds": 0.0}
                )
                stats["features"] += 1
                concurrency = plan.worker_concurrency.get(assignment.worker_id, 1)
                stats["estimated_seconds"] += assignment.estimated_seconds / concurrency

        for stats in worker_stats.values():
            total = plan.total_estimated_seconds
            stats["utilization_percent"] = (stats["estimated_seconds"] / total * 100) if total else 0.0

        return {
            "total_batches": len(plan.batches),
            "total_features": plan.total_features,
            "total_estimated_seconds": plan.total_estimated_seconds,
            "avg_batch_seconds": sum(batch_times) / len(batch_times) if batch_times else 0.0,
            "max_batch_seconds": max(batch_times, default=0.0),
            "unassigned": len(plan.unassigned),
            "worker_stats": worker_stats,
        }

    @staticmethod
    def _batch_time(batch_plan: BatchPlan, workers: dict[str, WorkerSpec]) -> float:
        per_worker: dict[str, float] = {}
        for assignment in batch_plan.assignments:
            if assignment.worker_id is None:
                continue
            per_worker[assignment.worker_id] = per_worker.get(assignment.worker_id, 0.0) + assignment.estimated_seconds
        return max(
            (total / max(1, workers[wid].concurrency_limit) for wid, total in per_worker.items()),
            default=0.0,
        )
