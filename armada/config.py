"""ARMADA configuration management using Pydantic."""

__all__ = [
    # Main config
    "ArmadaConfig",
    # Sub-configs
    "HealthConfig",
    "QueueConfig",
    "PoolConfig",
    "ResourceEstimate",
    "PlannerConfig",
    "DistributorConfig",
    "ProgressConfig",
    "LoggingConfig",
]

import logging
import threading
from pathlib import Path
from typing import Any, ClassVar

import yaml
from pydantic import BaseModel, Field, model_validator

from armada.constants import (
    CONFIG_PATH,
    DEFAULT_CHECK_INTERVAL,
    DEFAULT_DEGRADED_THRESHOLD,
    DEFAULT_FEATURE_RETRIES,
    DEFAULT_FEATURE_RETRY_DELAY,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_OFFLINE_THRESHOLD,
    DEFAULT_PROBE_TIMEOUT,
    DEFAULT_QUEUE_RETRIES,
    DEFAULT_QUEUE_RETRY_DELAY,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SAVE_INTERVAL,
    DEFAULT_TASK_HISTORY,
    DEFAULT_TASK_TIMEOUT,
    LOGS_DIR,
    PROGRESS_FILE,
)

logger = logging.getLogger(__name__)


class HealthConfig(BaseModel):
    """Worker health monitoring configuration."""

    check_interval: float = Field(default=DEFAULT_CHECK_INTERVAL, gt=0, le=3600)
    probe_timeout: float = Field(default=DEFAULT_PROBE_TIMEOUT, gt=0, le=300)
    degraded_threshold: int = Field(default=DEFAULT_DEGRADED_THRESHOLD, ge=1, le=100)
    offline_threshold: int = Field(default=DEFAULT_OFFLINE_THRESHOLD, ge=1, le=100)
    reconnect_attempts: int = Field(default=DEFAULT_RECONNECT_ATTEMPTS, ge=0, le=50)
    reconnect_delay: float = Field(default=DEFAULT_RECONNECT_DELAY, ge=0, le=3600)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "HealthConfig":
        if self.offline_threshold < self.degraded_threshold:
            raise ValueError("offline_threshold must be >= degraded_threshold")
        return self


class QueueConfig(BaseModel):
    """Dispatch queue configuration."""

    max_concurrent: int = Field(default=DEFAULT_MAX_CONCURRENT, ge=1, le=1000)
    max_retries: int = Field(default=DEFAULT_QUEUE_RETRIES, ge=0, le=20)
    retry_delay: float = Field(default=DEFAULT_QUEUE_RETRY_DELAY, ge=0, le=600)
    max_retry_delay: float = Field(default=DEFAULT_MAX_RETRY_DELAY, ge=0, le=3600)
    history_size: int = Field(default=DEFAULT_TASK_HISTORY, ge=0, le=100_000)


class PoolConfig(BaseModel):
    """Worker pool configuration."""

    strategy: str = Field(default="round_robin", pattern="^(round_robin|least_loaded|priority)$")
    task_timeout: float | None = Field(default=DEFAULT_TASK_TIMEOUT, gt=0)
    default_concurrency_limit: int = Field(default=1, ge=1, le=100)


class ResourceEstimate(BaseModel):
    """Expected cost of running one feature of a capability."""

    time_seconds: float = Field(default=180.0, ge=0)
    memory_mb: int = Field(default=256, ge=0)
    cpu: float = Field(default=1.0, ge=0)


def _default_estimates() -> dict[str, ResourceEstimate]:
    return {
        "backend": ResourceEstimate(time_seconds=300, memory_mb=512),
        "frontend": ResourceEstimate(time_seconds=240, memory_mb=768),
        "tester": ResourceEstimate(time_seconds=180, memory_mb=256),
        "reviewer": ResourceEstimate(time_seconds=120, memory_mb=256),
        "fixer": ResourceEstimate(time_seconds=180, memory_mb=256),
        "architect": ResourceEstimate(time_seconds=240, memory_mb=512),
        "orchestrator": ResourceEstimate(time_seconds=60, memory_mb=128),
    }


class PlannerConfig(BaseModel):
    """Execution planner configuration."""

    resource_estimates: dict[str, ResourceEstimate] = Field(default_factory=_default_estimates)
    default_estimate: ResourceEstimate = Field(default_factory=ResourceEstimate)

    def estimate_for(self, capability: str) -> ResourceEstimate:
        """Look up the resource estimate for a capability tag."""
        return self.resource_estimates.get(capability, self.default_estimate)


class DistributorConfig(BaseModel):
    """Work distributor configuration."""

    max_retries: int = Field(default=DEFAULT_FEATURE_RETRIES, ge=0, le=20)
    retry_delay: float = Field(default=DEFAULT_FEATURE_RETRY_DELAY, ge=0, le=3600)
    max_retry_delay: float = Field(default=DEFAULT_MAX_RETRY_DELAY, ge=0, le=3600)
    dispatch_retries: int = Field(
        default=0,
        ge=0,
        le=20,
        description="Queue-level retries per dispatch attempt, on top of feature retries",
    )
    auto_optimize: bool = True
    sequential: bool = Field(default=False, description="Run the features of a batch one at a time")


class ProgressConfig(BaseModel):
    """Progress snapshot persistence configuration."""

    persistence_path: str | None = PROGRESS_FILE
    auto_save: bool = True
    save_interval: float = Field(default=DEFAULT_SAVE_INTERVAL, gt=0, le=3600)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="info", pattern="^(debug|info|warn|error)$")
    directory: str = LOGS_DIR
    max_log_size_mb: int = Field(default=10, ge=1, le=1000)
    structured_output: bool = True
    events_file: str | None = None


class ArmadaConfig(BaseModel):
    """Complete ARMADA configuration."""

    _cached_instance: ClassVar["ArmadaConfig | None"] = None
    _cache_mtime: ClassVar[float | None] = None
    _cache_path: ClassVar[Path | None] = None
    _cache_lock: ClassVar[threading.Lock] = threading.Lock()

    health: HealthConfig = Field(default_factory=HealthConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    distributor: DistributorConfig = Field(default_factory=DistributorConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None, force_reload: bool = False) -> "ArmadaConfig":
        """Load configuration from YAML file with mtime-based caching.

        The cached instance is returned if the file hasn't been modified since
        the last load.

        Args:
            config_path: Path to config file. Defaults to .armada/config.yaml
            force_reload: Bypass cache and force reload from disk

        Returns:
            ArmadaConfig instance (cached if valid)
        """
        config_path = Path(CONFIG_PATH) if config_path is None else Path(config_path)

        with cls._cache_lock:
            if not force_reload and cls._cached_instance is not None:
                if cls._cache_path == config_path:
                    try:
                        current_mtime: float | None = config_path.stat().st_mtime
                        if current_mtime == cls._cache_mtime:
                            logger.debug("Cache hit for ArmadaConfig")
                            return cls._cached_instance
                    except FileNotFoundError:
                        if cls._cache_mtime is None:
                            logger.debug("Cache hit for ArmadaConfig (no file)")
                            return cls._cached_instance

            logger.debug("Cache miss for ArmadaConfig, loading from %s", config_path)

            if not config_path.exists():
                instance = cls()
                current_mtime = None
            else:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
                instance = cls.from_dict(data)
                current_mtime = config_path.stat().st_mtime

            cls._cached_instance = instance
            cls._cache_path = config_path
            cls._cache_mtime = current_mtime

            return instance

    @classmethod
    def invalidate_cache(cls) -> None:
        """Drop the cached instance so the next load() reads from disk."""
        with cls._cache_lock:
            cls._cached_instance = None
            cls._cache_mtime = None
            cls._cache_path = None
            logger.debug("Invalidating cache for ArmadaConfig")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArmadaConfig":
        """Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            ArmadaConfig instance
        """
        return cls(**data)

    def save(self, config_path: str | Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Defaults to .armada/config.yaml
        """
        config_path = Path(CONFIG_PATH) if config_path is None else Path(config_path)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()
