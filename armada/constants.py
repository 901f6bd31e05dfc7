"""ARMADA constants and enumerations."""

from enum import Enum


class HealthStatus(Enum):
    """Worker health state as tracked by the health monitor."""

    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    RECONNECTING = "reconnecting"


class FeatureStatus(Enum):
    """Progress status of a single feature."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (FeatureStatus.COMPLETE, FeatureStatus.FAILED, FeatureStatus.SKIPPED)


class TaskState(Enum):
    """Lifecycle state of a queued dispatch."""

    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class WorkerActivity(Enum):
    """Whether a worker is currently running a feature."""

    IDLE = "idle"
    ACTIVE = "active"


class SelectionStrategy(Enum):
    """Worker selection strategy used by the pool."""

    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"
    PRIORITY = "priority"


class RunState(Enum):
    """Distribution run state."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class Event(Enum):
    """Lifecycle events published on the event bus."""

    DISTRIBUTION_STARTED = "distribution-started"
    BATCH_STARTED = "batch-started"
    FEATURE_COMPLETE = "feature-complete"
    FEATURE_FAILED = "feature-failed"
    FEATURE_RETRY = "feature-retry"
    FEATURE_SKIPPED = "feature-skipped"
    BATCH_COMPLETE = "batch-complete"
    DISTRIBUTION_COMPLETE = "distribution-complete"
    SERVER_OFFLINE = "server-offline"
    SERVER_RECOVERED = "server-recovered"
    SERVER_DEGRADED = "server-degraded"
    RECONNECT_FAILED = "reconnect-failed"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    TASK_RETRY = "task-retry"
    PROGRESS_SAVE_FAILED = "progress-save-failed"


# Feature priority names accepted on input
PRIORITY_NAMES = {
    "critical": 3,
    "high": 2,
    "medium": 1,
    "low": 0,
}

# Default health monitor values (seconds)
DEFAULT_CHECK_INTERVAL = 30.0
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_DEGRADED_THRESHOLD = 2
DEFAULT_OFFLINE_THRESHOLD = 3
DEFAULT_RECONNECT_ATTEMPTS = 5
DEFAULT_RECONNECT_DELAY = 5.0

# Default queue values
DEFAULT_MAX_CONCURRENT = 10
DEFAULT_QUEUE_RETRIES = 3
DEFAULT_QUEUE_RETRY_DELAY = 1.0
DEFAULT_MAX_RETRY_DELAY = 300.0
DEFAULT_TASK_TIMEOUT = 300.0
DEFAULT_TASK_HISTORY = 1000

# Default distributor values
DEFAULT_FEATURE_RETRIES = 3
DEFAULT_FEATURE_RETRY_DELAY = 5.0

# Default progress persistence
DEFAULT_SAVE_INTERVAL = 5.0
SNAPSHOT_VERSION = "1.0"

# File locations
ARMADA_DIR = ".armada"
CONFIG_PATH = ".armada/config.yaml"
STATE_DIR = ".armada/state"
LOGS_DIR = ".armada/logs"
PROGRESS_FILE = ".armada/state/progress.json"
