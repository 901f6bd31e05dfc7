"""Shared utilities for ARMADA CLI commands."""

import json
from pathlib import Path
from typing import Any

import yaml

from armada.exceptions import ConfigurationError
from armada.types import Feature, WorkerSpec


def read_document(path: str | Path) -> Any:
    """Read a YAML or JSON document.

    Files ending in .json are parsed as JSON, everything else as YAML.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        text = path.read_text()
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e


def _items(document: Any, key: str, path: str | Path) -> list[dict[str, Any]]:
    if isinstance(document, dict):
        document = document.get(key)
    if not isinstance(document, list) or not all(isinstance(item, dict) for item in document):
        raise ConfigurationError(f"{path} must contain a list of {key} (or a '{key}' key holding one)")
    return document


def load_features(path: str | Path) -> list[Feature]:
    """Load features from a YAML or JSON file.

    Args:
        path: File holding a list of features, or a mapping with a
            ``features`` key

    Returns:
        Parsed features in file order
    """
    try:
        return [Feature.from_dict(item) for item in _items(read_document(path), "features", path)]
    except ValueError as e:
        raise ConfigurationError(f"Invalid feature in {path}: {e}") from e


def load_workers(path: str | Path, default_concurrency_limit: int = 1) -> list[WorkerSpec]:
    """Load worker specs from a YAML or JSON file.

    Args:
        path: File holding a list of workers, or a mapping with a
            ``workers`` key
        default_concurrency_limit: Limit for workers that do not set one

    Returns:
        Parsed worker specs in file order
    """
    try:
        items = _items(read_document(path), "workers", path)
        workers = [WorkerSpec.from_dict(item, default_concurrency_limit) for item in items]
    except ValueError as e:
        raise ConfigurationError(f"Invalid worker in {path}: {e}") from e
    for worker in workers:
        if not worker.worker_id or not worker.address:
            raise ConfigurationError(f"Every worker in {path} needs an id and an address")
    return workers


def format_seconds(seconds: float | None) -> str:
    """Format a duration as ``1h02m``, ``3m05s`` or ``12s``."""
    if seconds is None:
        return "-"
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"
