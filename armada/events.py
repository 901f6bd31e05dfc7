"""Event bus for ARMADA lifecycle notifications.

Components publish lifecycle events (distribution, batch, feature, worker
health and task events) on a shared EventBus. Subscribers receive
``(event_type, data)``. Events can optionally be appended to a JSONL file so
that a separate status process can replay them.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from armada.constants import Event
from armada.logging import get_logger

logger = get_logger("events")

EventCallback = Callable[[str, dict[str, Any]], None]


def _event_name(event_type: Event | str) -> str:
    return event_type.value if isinstance(event_type, Event) else event_type


class EventBus:
    """In-process observer channel with an optional JSONL sink."""

    def __init__(self, event_file: Path | str | None = None) -> None:
        """Initialize the bus.

        Args:
            event_file: JSONL file events are appended to, or None to keep
                events in memory only
        """
        self._event_file = Path(event_file) if event_file else None
        self._subscribers: list[EventCallback] = []
        self._handlers: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
        self._lock = threading.Lock()

        if self._event_file is not None:
            self._event_file.parent.mkdir(parents=True, exist_ok=True)

    @property
    def event_file(self) -> Path | None:
        return self._event_file

    def emit(self, event_type: Event | str, data: dict[str, Any] | None = None) -> None:
        """Publish an event to the sink and all subscribers.

        Args:
            event_type: Event name, e.g. ``Event.BATCH_STARTED`` or ``"batch-started"``
            data: Event payload
        """
        name = _event_name(event_type)
        event_data: dict[str, Any] = data or {}

        if self._event_file is not None:
            event = {
                "timestamp": datetime.now(UTC).isoformat(),
                "type": name,
                "data": event_data,
            }
            with self._lock:
                try:
                    with open(self._event_file, "a") as f:
                        f.write(json.dumps(event, default=str) + "\n")
                except OSError as e:
                    logger.error(f"Failed to write event: {e}")

        logger.debug(f"Emitted event: {name}")

        for callback in list(self._subscribers):
            try:
                callback(name, event_data)
            except Exception as e:  # noqa: BLE001 — subscriber errors must not break the emitter
                logger.warning(f"Subscriber callback error for {name}: {e}")

        for handler in list(self._handlers.get(name, ())):
            try:
                handler(event_data)
            except Exception as e:  # noqa: BLE001 — subscriber errors must not break the emitter
                logger.warning(f"Handler error for {name}: {e}")

    def subscribe(self, callback: EventCallback) -> None:
        """Subscribe to every event.

        Args:
            callback: Function called with (event_type, data) for each event
        """
        self._subscribers.append(callback)
        logger.debug(f"Added subscriber, total: {len(self._subscribers)}")

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def on(self, event_type: Event | str, handler: Callable[[dict[str, Any]], None]) -> None:
        """Register a handler for one event type.

        Args:
            event_type: Event to listen for
            handler: Function called with the event data
        """
        self._handlers.setdefault(_event_name(event_type), []).append(handler)

    def off(self, event_type: Event | str, handler: Callable[[dict[str, Any]], None]) -> None:
        handlers = self._handlers.get(_event_name(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def get_events(self, since: datetime | None = None) -> list[dict[str, Any]]:
        """Read back events from the JSONL sink.

        Args:
            since: Only return events after this timestamp

        Returns:
            List of event dictionaries, empty when no sink is configured
        """
        events: list[dict[str, Any]] = []

        if self._event_file is None or not self._event_file.exists():
            return events

        with open(self._event_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                    if since:
                        event_time = datetime.fromisoformat(event.get("timestamp", ""))
                        if event_time <= since:
                            continue
                    events.append(event)
                except (json.JSONDecodeError, ValueError):
                    continue

        return events

    def clear(self) -> None:
        """Remove the JSONL sink file."""
        with self._lock:
            if self._event_file is not None and self._event_file.exists():
                self._event_file.unlink()
                logger.info(f"Cleared events: {self._event_file}")


class EventRecorder:
    """Subscriber that keeps every event in memory, in order."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append((event_type, data))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of_type(self, event_type: Event | str) -> list[dict[str, Any]]:
        name = _event_name(event_type)
        return [data for event, data in self.events if event == name]
