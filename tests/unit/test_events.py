"""Unit tests for ARMADA event bus."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from armada.constants import Event
from armada.events import EventBus, EventRecorder


class TestEventBus:
    """Tests for in-memory delivery."""

    @pytest.mark.smoke
    def test_subscribers_receive_name_and_data(self) -> None:
        """Test subscribers get the event string and payload."""
        bus = EventBus()
        received = []
        bus.subscribe(lambda name, data: received.append((name, data)))

        bus.emit(Event.BATCH_STARTED, {"batch": 1})
        bus.emit("custom-event")

        assert received == [("batch-started", {"batch": 1}), ("custom-event", {})]

    def test_unsubscribe(self) -> None:
        """Test unsubscribed callbacks stop receiving."""
        bus = EventBus()
        recorder = EventRecorder(bus)
        bus.emit(Event.FEATURE_COMPLETE, {})
        bus.unsubscribe(recorder)
        bus.emit(Event.FEATURE_COMPLETE, {})
        assert recorder.names() == ["feature-complete"]

    def test_per_event_handlers(self) -> None:
        """Test on/off handlers only see their event."""
        bus = EventBus()
        offline = []
        bus.on(Event.SERVER_OFFLINE, offline.append)
        bus.emit(Event.SERVER_OFFLINE, {"worker_id": "w1"})
        bus.emit(Event.SERVER_RECOVERED, {"worker_id": "w1"})
        bus.off("server-offline", offline.append)
        bus.emit(Event.SERVER_OFFLINE, {"worker_id": "w2"})
        assert offline == [{"worker_id": "w1"}]

    def test_failing_subscriber_does_not_break_others(self) -> None:
        """Test an exception in one subscriber is contained."""
        bus = EventBus()

        def broken(name, data) -> None:
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        recorder = EventRecorder(bus)
        bus.emit(Event.TASK_FAILED, {"task_id": "t1"})
        assert recorder.of_type(Event.TASK_FAILED) == [{"task_id": "t1"}]


class TestEventFile:
    """Tests for the JSONL sink."""

    def test_events_appended_to_file(self, tmp_path: Path) -> None:
        """Test events are written one JSON object per line."""
        path = tmp_path / "logs" / "events.jsonl"
        bus = EventBus(path)
        bus.emit(Event.DISTRIBUTION_STARTED, {"total_features": 3})
        bus.emit(Event.DISTRIBUTION_COMPLETE, {"successful": 3})

        lines = path.read_text().splitlines()
        assert [json.loads(line)["type"] for line in lines] == ["distribution-started", "distribution-complete"]
        assert bus.event_file == path

    def test_get_events_since(self, tmp_path: Path) -> None:
        """Test get_events filters by timestamp and skips bad lines."""
        bus = EventBus(tmp_path / "events.jsonl")
        bus.emit(Event.BATCH_STARTED, {"batch": 1})
        with open(tmp_path / "events.jsonl", "a") as f:
            f.write("not json\n\n")

        assert len(bus.get_events()) == 1
        future = datetime.now(UTC) + timedelta(hours=1)
        assert bus.get_events(since=future) == []

    def test_memory_only_bus_has_no_history(self) -> None:
        """Test get_events is empty without a sink."""
        bus = EventBus()
        bus.emit(Event.BATCH_STARTED, {})
        assert bus.get_events() == []

    def test_clear(self, tmp_path: Path) -> None:
        """Test clear removes the sink file."""
        bus = EventBus(tmp_path / "events.jsonl")
        bus.emit(Event.BATCH_STARTED, {})
        bus.clear()
        assert not (tmp_path / "events.jsonl").exists()
