"""Progress tracking, ETA estimation and snapshot persistence."""

from __future__ import annotations

import asyncio
import json
import tempfile
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from armada.clock import Clock, PeriodicTask, SystemClock
from armada.config import ArmadaConfig
from armada.constants import (
    DEFAULT_SAVE_INTERVAL,
    SNAPSHOT_VERSION,
    Event,
    FeatureStatus,
    WorkerActivity,
)
from armada.events import EventBus
from armada.exceptions import StateError
from armada.logging import get_logger
from armada.types import ExecutionPlan, Feature, FeatureProgress, WorkerProgress

logger = get_logger("progress")

_TRANSITIONS: dict[FeatureStatus, set[FeatureStatus]] = {
    FeatureStatus.PENDING: {FeatureStatus.IN_PROGRESS, FeatureStatus.SKIPPED},
    FeatureStatus.IN_PROGRESS: {FeatureStatus.COMPLETE, FeatureStatus.FAILED},
    FeatureStatus.COMPLETE: set(),
    FeatureStatus.FAILED: set(),
    FeatureStatus.SKIPPED: set(),
}


class ProgressAggregator:
    """Per-feature and per-worker progress for one distribution run."""

    def __init__(
        self,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        *,
        persistence_path: str | Path | None = None,
        auto_save: bool = False,
        save_interval: float = DEFAULT_SAVE_INTERVAL,
    ) -> None:
        """Initialize the aggregator.

        Args:
            bus: Event bus for save failure notifications
            clock: Time source for timestamps and the auto-save timer
            persistence_path: Snapshot file, or None to disable persistence
            auto_save: Save the snapshot every ``save_interval`` seconds
            save_interval: Seconds between automatic saves
        """
        self._bus = bus or EventBus()
        self._clock: Clock = clock or SystemClock()
        self.persistence_path = Path(persistence_path) if persistence_path else None
        self.auto_save = auto_save and self.persistence_path is not None

        self._features: dict[str, FeatureProgress] = {}
        self._workers: dict[str, WorkerProgress] = {}
        self._started_at: float | None = None
        self._started_monotonic: float | None = None
        self._dirty = False
        self._saver = PeriodicTask("progress-save", save_interval, self._auto_save_tick, self._clock)

    @classmethod
    def from_config(
        cls,
        config: ArmadaConfig | None = None,
        bus: EventBus | None = None,
        clock: Clock | None = None,
    ) -> ProgressAggregator:
        config = config or ArmadaConfig.load()
        return cls(
            bus,
            clock,
            persistence_path=config.progress.persistence_path,
            auto_save=config.progress.auto_save,
            save_interval=config.progress.save_interval,
        )

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def initialize(self, features: Iterable[Feature], plan: ExecutionPlan | None = None) -> None:
        """Reset tracking to one pending entry per feature.

        Args:
            features: Features of the run
            plan: Execution plan; its workers get idle worker entries
        """
        self._features = {
            f.id: FeatureProgress(feature_id=f.id, capability=f.capability, metadata={"priority": f.priority})
            for f in features
        }
        self._workers = {}
        if plan is not None:
            for worker_id in plan.worker_utilization:
                self._workers[worker_id] = WorkerProgress(worker_id=worker_id)
            for batch in plan.batches:
                for assignment in batch.assignments:
                    entry = self._features.get(assignment.feature_id)
                    if entry is not None:
                        entry.worker_id = assignment.worker_id
                        entry.metadata["batch"] = batch.batch_number

        self._started_at = self._clock.time()
        self._started_monotonic = self._clock.monotonic()
        self._dirty = True
        logger.debug(f"Tracking {len(self._features)} features across {len(self._workers)} workers")

    def update_feature(
        self,
        feature_id: str,
        *,
        status: FeatureStatus | str | None = None,
        progress: int | None = None,
        worker_id: str | None = None,
        error: str | None = None,
        retry_count: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> FeatureProgress:
        """Apply a partial update to one feature.

        Args:
            feature_id: Feature to update
            status: New status; must be a legal transition
            progress: Completion estimate 0-100
            worker_id: Worker now running the feature
            error: Last error message
            retry_count: Attempts retried so far
            metadata: Extra fields merged into the feature metadata

        Returns:
            The updated FeatureProgress

        Raises:
            StateError: If the feature is unknown or the transition is illegal
        """
        entry = self._features.get(feature_id)
        if entry is None:
            raise StateError(f"Unknown feature: {feature_id}")

        new_status = FeatureStatus(status) if status is not None else None
        if new_status is not None and new_status != entry.status:
            if new_status not in _TRANSITIONS[entry.status]:
                raise StateError(
                    f"Illegal transition for {feature_id}: {entry.status.value} -> {new_status.value}"
                )

        now = self._clock.time()

        if worker_id is not None and worker_id != entry.worker_id:
            if entry.status == FeatureStatus.IN_PROGRESS and entry.worker_id:
                self._worker_leave(entry.worker_id, feature_id, now)
            entry.worker_id = worker_id
            if entry.status == FeatureStatus.IN_PROGRESS and new_status is None:
                self._worker_join(worker_id, feature_id, now)

        if progress is not None:
            entry.progress = max(0, min(100, int(progress)))
        if error is not None:
            entry.error = error
        if retry_count is not None:
            entry.retry_count = retry_count
        if metadata:
            entry.metadata.update(metadata)

        if new_status is not None and new_status != entry.status:
            self._apply_status(entry, new_status, now)

        self._dirty = True
        return entry

    def _apply_status(self, entry: FeatureProgress, status: FeatureStatus, now: float) -> None:
        entry.status = status

        if status == FeatureStatus.IN_PROGRESS:
            entry.start_time = entry.start_time or now
            if entry.worker_id:
                self._worker_join(entry.worker_id, entry.feature_id, now)
            return

        entry.end_time = now
        if status == FeatureStatus.COMPLETE:
            entry.progress = 100
            entry.error = None

        if status in (FeatureStatus.COMPLETE, FeatureStatus.FAILED) and entry.worker_id:
            worker = self._worker_leave(entry.worker_id, entry.feature_id, now)
            if status == FeatureStatus.COMPLETE:
                worker.completed_features += 1
            else:
                worker.failed_features += 1
            if entry.start_time is not None:
                worker.total_time_seconds += now - entry.start_time

    def _worker(self, worker_id: str) -> WorkerProgress:
        worker = self._workers.get(worker_id)
        if worker is None:
            worker = self._workers[worker_id] = WorkerProgress(worker_id=worker_id)
        return worker

    def _worker_join(self, worker_id: str, feature_id: str, now: float) -> None:
        worker = self._worker(worker_id)
        if feature_id not in worker.active_features:
            worker.active_features.append(feature_id)
        worker.current_feature = feature_id
        worker.status = WorkerActivity.ACTIVE
        worker.last_seen = now

    def _worker_leave(self, worker_id: str, feature_id: str, now: float) -> WorkerProgress:
        worker = self._worker(worker_id)
        if feature_id in worker.active_features:
            worker.active_features.remove(feature_id)
        worker.current_feature = worker.active_features[-1] if worker.active_features else None
        worker.status = WorkerActivity.ACTIVE if worker.active_features else WorkerActivity.IDLE
        worker.last_seen = now
        return worker

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _count(self, status: FeatureStatus) -> int:
        return sum(1 for f in self._features.values() if f.status == status)

    def get_progress(self) -> dict[str, Any]:
        """Aggregate counts, percent complete and ETA.

        ``percent_complete`` is completed / total * 100. ``eta_seconds`` is
        elapsed / completed * remaining, where remaining counts features not
        yet in a terminal state; it is None until one feature completes.
        """
        total = len(self._features)
        completed = self._count(FeatureStatus.COMPLETE)
        remaining = sum(1 for f in self._features.values() if not f.status.is_terminal)
        elapsed = self._clock.monotonic() - self._started_monotonic if self._started_monotonic is not None else 0.0

        eta: float | None = None
        if completed:
            eta = elapsed / completed * remaining

        return {
            "total": total,
            "completed": completed,
            "failed": self._count(FeatureStatus.FAILED),
            "skipped": self._count(FeatureStatus.SKIPPED),
            "in_progress": self._count(FeatureStatus.IN_PROGRESS),
            "pending": self._count(FeatureStatus.PENDING),
            "percent_complete": completed / total * 100 if total else 0.0,
            "elapsed_seconds": elapsed,
            "eta_seconds": eta,
            "started_at": self._started_at,
        }

    def get_feature_progress(self, feature_id: str) -> FeatureProgress | None:
        return self._features.get(feature_id)

    def get_all_feature_progress(self) -> list[FeatureProgress]:
        return list(self._features.values())

    def get_worker_status(self, worker_id: str) -> WorkerProgress | None:
        return self._workers.get(worker_id)

    def get_all_worker_statuses(self) -> list[WorkerProgress]:
        return list(self._workers.values())

    def get_summary(self) -> dict[str, Any]:
        by_status: dict[str, list[str]] = {s.value: [] for s in FeatureStatus}
        for entry in self._features.values():
            by_status[entry.status.value].append(entry.feature_id)
        return {
            "progress": self.get_progress(),
            "features": by_status,
            "workers": {
                w.worker_id: {
                    "status": w.status.value,
                    "completed": w.completed_features,
                    "failed": w.failed_features,
                    "total_time_seconds": w.total_time_seconds,
                }
                for w in self._workers.values()
            },
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Build the persisted snapshot structure."""
        return {
            "version": SNAPSHOT_VERSION,
            "timestamp": datetime.fromtimestamp(self._clock.time(), UTC).isoformat(),
            "progress": self.get_progress(),
            "features": [f.to_dict() for f in self._features.values()],
            "workers": [w.to_dict() for w in self._workers.values()],
        }

    def save(self) -> bool:
        """Write the snapshot atomically.

        Failures are logged and published as ``progress-save-failed``; they
        never raise.

        Returns:
            True if a snapshot was written
        """
        if self.persistence_path is None:
            return False
        return self._write(self.snapshot())

    async def save_async(self) -> bool:
        """Async version of save(); the file write runs in a thread."""
        if self.persistence_path is None:
            return False
        data = self.snapshot()
        return await asyncio.to_thread(self._write, data)

    def _write(self, data: dict[str, Any]) -> bool:
        assert self.persistence_path is not None
        path = self.persistence_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(suffix=".tmp", prefix="progress_", dir=path.parent)
            temp_file = Path(temp_path)
            try:
                with open(temp_fd, "w") as f:
                    json.dump(data, f, indent=2, default=str)
                temp_file.replace(path)
            except Exception:
                if temp_file.exists():
                    temp_file.unlink()
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save progress to {path}: {e}")
            self._bus.emit(Event.PROGRESS_SAVE_FAILED, {"path": str(path), "error": str(e)})
            return False

        self._dirty = False
        logger.debug(f"Saved progress snapshot to {path}")
        return True

    def load(self, path: str | Path | None = None) -> bool:
        """Restore features and workers from a snapshot file.

        Returns:
            True if a snapshot was loaded, False if the file does not exist

        Raises:
            StateError: If the snapshot is unreadable or malformed
        """
        source = Path(path) if path else self.persistence_path
        if source is None or not source.exists():
            return False

        try:
            data = json.loads(source.read_text())
            features = {f.feature_id: f for f in map(FeatureProgress.from_dict, data["features"])}
            workers = {w.worker_id: w for w in map(WorkerProgress.from_dict, data.get("workers") or [])}
            progress = data.get("progress") or {}
            elapsed = float(progress.get("elapsed_seconds") or 0.0)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StateError(f"Cannot load progress snapshot {source}: {e}") from e

        self._features = features
        self._workers = workers
        self._started_at = progress.get("started_at")
        # Keep counting from the elapsed time the snapshot recorded
        self._started_monotonic = self._clock.monotonic() - elapsed
        logger.info(f"Loaded progress snapshot with {len(features)} features from {source}")
        return True

    def start_auto_save(self) -> None:
        if self.auto_save:
            self._saver.start()

    async def _auto_save_tick(self) -> None:
        if self._dirty:
            await self.save_async()

    async def close(self) -> None:
        """Stop auto-save and write a final snapshot."""
        await self._saver.stop()
        if self.persistence_path is not None and self._dirty:
            await self.save_async()
