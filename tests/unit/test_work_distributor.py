"""Unit tests for ARMADA work distributor."""

import asyncio

import pytest

from armada.config import ArmadaConfig, DistributorConfig
from armada.constants import Event, FeatureStatus, RunState
from armada.exceptions import ConfigurationError, CycleError, OrchestratorError
from armada.execution_planner import ExecutionPlanner
from armada.health_monitor import HealthMonitor
from armada.types import Feature
from armada.work_distributor import WorkDistributor, build_task_description, build_task_payload
from armada.work_queue import WorkQueue
from armada.worker_pool import WorkerPool
from tests.helpers.fake_clock import settle
from tests.helpers.fake_worker import FakeWorkerClient

_FLOW_EVENTS = {"distribution-started", "batch-started", "batch-complete", "distribution-complete"}


class RecordingPlanner(ExecutionPlanner):
    """Planner that remembers which workers each re-balance used."""

    def __init__(self, clock) -> None:
        super().__init__(clock=clock)
        self.optimized: list[list[str]] = []

    def optimize_plan(self, plan, workers):
        self.optimized.append([w.worker_id for w in workers])
        return super().optimize_plan(plan, workers)


async def _pool(bus, clock, clients, **monitor_kwargs):
    monitor = HealthMonitor(bus, clock, **monitor_kwargs)
    pool = WorkerPool(bus, clock, monitor=monitor, queue=WorkQueue(bus, clock, max_retries=0))
    for worker_id, client in clients.items():
        await pool.add_worker(worker_id, f"http://{worker_id}", client=client)
    return pool


def _distributor(pool, clock, **kwargs):
    params = {"max_retries": 0, "retry_delay": 1.0}
    params.update(kwargs)
    return WorkDistributor(pool, clock=clock, **params)


def _flow(recorder):
    return [name for name in recorder.names() if name in _FLOW_EVENTS]


def _offline_after_first_batch(pool, worker_id):
    def handler(data) -> None:
        if data["batch"] == 1:
            for _ in range(3):
                pool.monitor.record_failure(worker_id, "health check failed")

    return handler


class TestHappyPath:
    """Tests for complete runs."""

    @pytest.mark.smoke
    async def test_diamond_completes_in_three_batches(self, bus, recorder, clock, diamond_features) -> None:
        clients = {"w1": FakeWorkerClient("w1"), "w2": FakeWorkerClient("w2")}
        distributor = _distributor(await _pool(bus, clock, clients), clock)

        result = await distributor.distribute_work(diamond_features)

        assert result.success
        assert (result.total, result.successful, result.failed, result.skipped) == (5, 5, 0, 0)
        assert result.batches_executed == 3
        assert distributor.state == RunState.COMPLETED
        assert _flow(recorder) == [
            "distribution-started",
            "batch-started",
            "batch-complete",
            "batch-started",
            "batch-complete",
            "batch-started",
            "batch-complete",
            "distribution-complete",
        ]
        completed = [e["feature_id"] for e in recorder.of_type(Event.FEATURE_COMPLETE)]
        assert set(completed[:2]) == {"A", "B"}
        assert set(completed[2:4]) == {"C", "D"}
        assert completed[4] == "E"

    async def test_batch_barrier(self, bus, clock, diamond_features) -> None:
        slow = FakeWorkerClient("slow")
        slow.gate = asyncio.Event()
        fast = FakeWorkerClient("fast")
        distributor = _distributor(await _pool(bus, clock, {"slow": slow, "fast": fast}), clock)

        run = asyncio.create_task(distributor.distribute_work(diamond_features))
        await settle()

        assert slow.executed_features == ["A"]
        assert fast.executed_features == ["B"]
        assert distributor.state == RunState.RUNNING

        slow.gate.set()
        result = await run
        assert result.successful == 5

    async def test_payload_sent_to_worker(self, bus, clock) -> None:
        client = FakeWorkerClient("w1")
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock)
        feature = Feature(id="F1", capability="backend", priority=2, description="Build the API")

        await distributor.distribute_work([feature])

        capability, payload = client.calls[0]
        assert capability == "backend"
        assert payload["feature_id"] == "F1"
        assert payload["priority"] == 2
        assert "Build the API" in payload["task"]

    async def test_accepts_feature_mappings(self, bus, clock) -> None:
        distributor = _distributor(await _pool(bus, clock, {"w1": FakeWorkerClient()}), clock)
        result = await distributor.distribute_work(
            [
                {"id": "A", "agent": "backend", "priority": "high"},
                {"id": "B", "capability": "tester", "dependencies": ["A"]},
            ]
        )
        assert result.successful == 2
        assert result.batches_executed == 2

    async def test_completion_event_has_no_outcomes(self, bus, recorder, clock) -> None:
        distributor = _distributor(await _pool(bus, clock, {"w1": FakeWorkerClient()}), clock)
        await distributor.distribute_work([Feature(id="A", capability="backend")])
        data = recorder.of_type(Event.DISTRIBUTION_COMPLETE)[0]
        assert data["successful"] == 1
        assert "outcomes" not in data


class TestSequentialBatches:
    """Tests for one-at-a-time execution within a batch."""

    @staticmethod
    def _independent(n=4):
        return [Feature(id=f"F{i}", capability="backend") for i in range(n)]

    async def test_one_feature_in_flight(self, bus, clock) -> None:
        shared = FakeWorkerClient("shared", delay=0.01)
        distributor = _distributor(await _pool(bus, clock, {"w1": shared, "w2": shared}), clock)

        result = await distributor.distribute_work(self._independent(), sequential=True)

        assert result.successful == 4
        assert result.batches_executed == 1
        assert shared.max_active == 1
        assert shared.executed_features == ["F0", "F1", "F2", "F3"]

    async def test_parallel_by_default(self, bus, clock) -> None:
        shared = FakeWorkerClient("shared", delay=0.01)
        distributor = _distributor(await _pool(bus, clock, {"w1": shared, "w2": shared}), clock)

        result = await distributor.distribute_work(self._independent())

        assert result.successful == 4
        assert shared.max_active == 2

    async def test_stop_between_features(self, bus, clock) -> None:
        client = FakeWorkerClient()
        client.gate = asyncio.Event()
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock, sequential=True)

        run = asyncio.create_task(distributor.distribute_work(self._independent(3)))
        await settle()
        assert client.executed_features == ["F0"]
        distributor.stop()
        client.gate.set()
        result = await run

        assert result.outcomes["F0"].status == FeatureStatus.COMPLETE
        assert [result.outcomes[fid].status for fid in ("F1", "F2")] == [FeatureStatus.SKIPPED] * 2
        assert result.outcomes["F1"].error == "distribution stopped"
        assert client.executed_features == ["F0"]

    async def test_sequential_from_config(self, bus, recorder, clock) -> None:
        shared = FakeWorkerClient("shared", delay=0.01)
        pool = await _pool(bus, clock, {"w1": shared, "w2": shared})
        config = ArmadaConfig(distributor=DistributorConfig(max_retries=0, sequential=True))
        config.progress.persistence_path = None

        result = await WorkDistributor.from_config(pool, config, clock).distribute_work(self._independent(2))

        assert result.successful == 2
        assert shared.max_active == 1
        assert recorder.of_type(Event.DISTRIBUTION_STARTED)[0]["sequential"] is True


class TestFailures:
    """Tests for retries, failures and skip propagation."""

    @pytest.mark.smoke
    async def test_failed_dependency_skips_dependents(self, bus, recorder, clock, diamond_features) -> None:
        clients = {"w1": FakeWorkerClient("w1", fail_features={"C"}), "w2": FakeWorkerClient("w2", fail_features={"C"})}
        distributor = _distributor(await _pool(bus, clock, clients), clock)

        result = await distributor.distribute_work(diamond_features)

        assert not result.success
        assert result.outcomes["C"].status == FeatureStatus.FAILED
        assert result.outcomes["E"].status == FeatureStatus.SKIPPED
        assert result.outcomes["E"].error == "dependency C did not complete"
        assert (result.successful, result.failed, result.skipped) == (3, 1, 1)
        assert "E" not in clients["w1"].executed_features + clients["w2"].executed_features
        assert recorder.of_type(Event.FEATURE_SKIPPED) == [
            {"feature_id": "E", "reason": "dependency C did not complete"}
        ]

    async def test_skip_propagates_transitively(self, bus, clock) -> None:
        client = FakeWorkerClient(fail_features={"A"})
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock)
        features = [
            Feature(id="A", capability="x"),
            Feature(id="B", capability="x", dependencies=("A",)),
            Feature(id="C", capability="x", dependencies=("B",)),
        ]
        result = await distributor.distribute_work(features)
        assert [result.outcomes[f].status for f in "ABC"] == [
            FeatureStatus.FAILED,
            FeatureStatus.SKIPPED,
            FeatureStatus.SKIPPED,
        ]
        assert client.executed_features == ["A"]

    @pytest.mark.smoke
    async def test_retry_with_backoff(self, bus, recorder, clock) -> None:
        client = FakeWorkerClient(failures=2)
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock, max_retries=3, retry_delay=1.0)

        result = await distributor.distribute_work([Feature(id="A", capability="backend")])

        assert result.success
        assert result.outcomes["A"].attempts == 3
        assert clock.sleeps == [1.0, 2.0]
        assert [e["attempt"] for e in recorder.of_type(Event.FEATURE_RETRY)] == [1, 2]
        assert distributor.progress.get_feature_progress("A").retry_count == 2

    async def test_retries_exhausted(self, bus, recorder, clock) -> None:
        client = FakeWorkerClient(failures=10)
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock, max_retries=2)

        result = await distributor.distribute_work([Feature(id="A", capability="backend")])

        outcome = result.outcomes["A"]
        assert outcome.status == FeatureStatus.FAILED
        assert outcome.attempts == 3
        assert outcome.worker_id == "w1"
        failed = recorder.of_type(Event.FEATURE_FAILED)
        assert len(failed) == 1
        assert failed[0]["attempts"] == 3

    async def test_unservable_feature_fails_and_blocks_dependents(self, bus, clock) -> None:
        pool = await _pool(bus, clock, {})
        distributor = _distributor(pool, clock, max_retries=1)
        await pool.add_worker("be", "http://be", capabilities=["backend"], client=FakeWorkerClient())

        result = await distributor.distribute_work(
            [
                Feature(id="Q", capability="quantum"),
                Feature(id="OK", capability="backend"),
                Feature(id="AFTER", capability="backend", dependencies=("Q",)),
            ]
        )

        assert distributor.current_plan.unassigned == ["Q"]
        assert result.outcomes["Q"].status == FeatureStatus.FAILED
        assert result.outcomes["Q"].attempts == 2
        assert "quantum" in result.outcomes["Q"].error
        assert result.outcomes["OK"].status == FeatureStatus.COMPLETE
        assert result.outcomes["AFTER"].status == FeatureStatus.SKIPPED


class TestValidation:
    """Invalid input is rejected before anything is dispatched."""

    async def test_cycle(self, bus, clock) -> None:
        client = FakeWorkerClient()
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock)
        with pytest.raises(CycleError):
            await distributor.distribute_work(
                [Feature(id="A", capability="x", dependencies=("B",)), Feature(id="B", capability="x", dependencies=("A",))]
            )
        assert client.calls == []
        assert distributor.state == RunState.CREATED

    async def test_unknown_dependency(self, bus, clock) -> None:
        distributor = _distributor(await _pool(bus, clock, {"w1": FakeWorkerClient()}), clock)
        with pytest.raises(ConfigurationError, match="GHOST"):
            await distributor.distribute_work([Feature(id="A", capability="x", dependencies=("GHOST",))])

    async def test_no_workers(self, bus, clock) -> None:
        distributor = _distributor(await _pool(bus, clock, {}), clock)
        with pytest.raises(ConfigurationError):
            await distributor.distribute_work([Feature(id="A", capability="x")])

    async def test_concurrent_run_rejected(self, bus, clock) -> None:
        client = FakeWorkerClient()
        client.gate = asyncio.Event()
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock)
        run = asyncio.create_task(distributor.distribute_work([Feature(id="A", capability="x")]))
        await settle()

        with pytest.raises(OrchestratorError, match="already running"):
            await distributor.distribute_work([Feature(id="B", capability="x")])

        client.gate.set()
        await run


class TestStopAndRebalance:
    """Tests for cooperative stop and auto-optimization."""

    async def test_stop_finishes_in_flight_and_skips_the_rest(self, bus, clock, diamond_features) -> None:
        client = FakeWorkerClient()
        client.gate = asyncio.Event()
        distributor = _distributor(await _pool(bus, clock, {"w1": client}), clock)

        run = asyncio.create_task(distributor.distribute_work(diamond_features))
        await settle()
        distributor.stop()
        client.gate.set()
        result = await run

        assert result.stopped
        assert not result.success
        assert distributor.state == RunState.STOPPED
        assert result.batches_executed == 1
        assert {fid for fid, o in result.outcomes.items() if o.status == FeatureStatus.COMPLETE} == {"A", "B"}
        assert {fid for fid, o in result.outcomes.items() if o.status == FeatureStatus.SKIPPED} == {"C", "D", "E"}
        assert result.outcomes["C"].error == "distribution stopped"

    async def test_rebalance_when_planned_worker_goes_offline(self, bus, clock, diamond_features) -> None:
        clients = {"w1": FakeWorkerClient("w1"), "w2": FakeWorkerClient("w2")}
        pool = await _pool(bus, clock, clients, reconnect_attempts=0)
        planner = RecordingPlanner(clock)
        distributor = WorkDistributor(pool, planner=planner, clock=clock, max_retries=0)

        bus.on(Event.BATCH_COMPLETE, _offline_after_first_batch(pool, "w1"))
        result = await distributor.distribute_work(diamond_features)

        assert result.successful == 5
        assert planner.optimized == [["w2"], ["w2"]]
        assert set(clients["w2"].executed_features) >= {"C", "D", "E"}
        assert clients["w1"].executed_features == ["A"]

    async def test_no_rebalance_when_disabled(self, bus, clock, diamond_features) -> None:
        clients = {"w1": FakeWorkerClient("w1"), "w2": FakeWorkerClient("w2")}
        pool = await _pool(bus, clock, clients, reconnect_attempts=0)
        planner = RecordingPlanner(clock)
        distributor = WorkDistributor(pool, planner=planner, clock=clock, max_retries=0, auto_optimize=False)

        bus.on(Event.BATCH_COMPLETE, _offline_after_first_batch(pool, "w1"))
        result = await distributor.distribute_work(diamond_features)

        assert result.successful == 5
        assert planner.optimized == []
        assert clients["w1"].executed_features == ["A"]


class TestReporting:
    """Tests for summaries and helpers."""

    async def test_summary(self, bus, clock, diamond_features) -> None:
        distributor = _distributor(await _pool(bus, clock, {"w1": FakeWorkerClient()}), clock)
        await distributor.distribute_work(diamond_features)

        summary = distributor.get_summary()
        assert summary["state"] == "completed"
        assert summary["plan"]["total_batches"] == 3
        assert summary["progress"]["features"]["complete"] == ["A", "B", "C", "D", "E"]
        assert summary["pool"]["total_workers"] == 1
        assert distributor.get_progress()["percent_complete"] == 100.0

    def test_task_description(self) -> None:
        feature = Feature(
            id="AUTH",
            capability="backend",
            priority=3,
            description="Add login",
            requirements=("JWT", "rate limit"),
            dependencies=("DB",),
        )
        text = build_task_description(feature)
        assert text.splitlines()[:2] == ["Feature: AUTH", "Priority: critical"]
        assert "- JWT" in text
        assert "Dependencies: DB" in text
        assert build_task_payload(feature)["task"] == text

    async def test_from_config(self, bus, clock) -> None:
        pool = await _pool(bus, clock, {"w1": FakeWorkerClient(failures=1)})
        config = ArmadaConfig(distributor=DistributorConfig(max_retries=1, retry_delay=2.0))
        config.progress.persistence_path = None
        distributor = WorkDistributor.from_config(pool, config, clock)

        result = await distributor.distribute_work([Feature(id="A", capability="backend")])
        assert result.success
        assert clock.sleeps == [2.0]
