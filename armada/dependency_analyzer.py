"""Dependency graph analysis and batch partitioning for ARMADA features."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from armada.exceptions import ConfigurationError, CycleError
from armada.logging import get_logger
from armada.types import Batch, Feature, GraphValidation

logger = get_logger("dependency_analyzer")

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyAnalyzer:
    """Directed graph over features, with edges from a feature to its dependencies.

    Features are kept in registration order; batches and cycle reports follow
    that order so results are deterministic for a given input.
    """

    def __init__(self) -> None:
        self._features: dict[str, Feature] = {}
        self._graph: dict[str, list[str]] = {}
        self._reverse: dict[str, list[str]] = {}

    @classmethod
    def from_features(cls, features: Iterable[Feature]) -> DependencyAnalyzer:
        analyzer = cls()
        analyzer.add_features(features)
        return analyzer

    @property
    def features(self) -> dict[str, Feature]:
        return dict(self._features)

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_feature(self, feature: Feature) -> None:
        """Register a feature and its dependency edges.

        Args:
            feature: Feature to add

        Raises:
            ConfigurationError: If the id or capability is missing, or the id
                is already registered
        """
        if not feature.id:
            raise ConfigurationError("Feature must have an id", {"feature": feature.to_dict()})
        if not feature.capability:
            raise ConfigurationError(f"Feature {feature.id} must declare a capability")
        if feature.id in self._features:
            raise ConfigurationError(f"Duplicate feature id: {feature.id}")

        deps = list(dict.fromkeys(feature.dependencies))
        self._features[feature.id] = feature
        self._graph[feature.id] = deps
        self._reverse.setdefault(feature.id, [])
        for dep in deps:
            self._reverse.setdefault(dep, []).append(feature.id)

        logger.debug(f"Added feature {feature.id} ({feature.capability}) deps={deps}")

    def add_features(self, features: Iterable[Feature]) -> None:
        for feature in features:
            self.add_feature(feature)

    def reset(self) -> None:
        """Forget all registered features."""
        self._features.clear()
        self._graph.clear()
        self._reverse.clear()

    # ------------------------------------------------------------------
    # Validation and cycles
    # ------------------------------------------------------------------

    def validate(self) -> GraphValidation:
        """Check that every dependency references a registered feature.

        Returns:
            GraphValidation with one error per unknown reference
        """
        errors: list[str] = []
        unknown: dict[str, list[str]] = {}
        for feature_id, deps in self._graph.items():
            for dep in deps:
                if dep not in self._features:
                    errors.append(f"Feature '{feature_id}' depends on unknown feature '{dep}'")
                    unknown.setdefault(feature_id, []).append(dep)
        return GraphValidation(valid=not errors, errors=errors, unknown=unknown)

    def detect_cycles(self) -> list[list[str]]:
        """Find dependency cycles with a depth-first traversal.

        Each cycle is reported once, as the path from the first occurrence of
        the revisited node up to the node that closes it. A->B->C->A is
        reported as ``["A", "B", "C"]``.

        Returns:
            List of cycles, empty when the graph is acyclic
        """
        color = {node: _WHITE for node in self._features}
        cycles: list[list[str]] = []

        for node in self._features:
            if color[node] == _WHITE:
                self._dfs_cycle(node, [], color, cycles)

        return cycles

    def _dfs_cycle(
        self,
        node: str,
        path: list[str],
        color: dict[str, int],
        cycles: list[list[str]],
    ) -> None:
        color[node] = _GRAY
        path.append(node)

        for neighbor in self._graph.get(node, []):
            if neighbor not in color:
                continue
            if color[neighbor] == _GRAY:
                cycles.append(path[path.index(neighbor) :])
            elif color[neighbor] == _WHITE:
                self._dfs_cycle(neighbor, path, color, cycles)

        path.pop()
        color[node] = _BLACK

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def generate_batches(self) -> list[Batch]:
        """Partition features into maximal parallel-safe batches.

        Each round collects every remaining feature whose dependencies all lie
        in earlier batches.

        Returns:
            Batches in execution order

        Raises:
            ConfigurationError: If a dependency references an unknown feature
            CycleError: If the remaining features can make no progress
        """
        validation = self.validate()
        if not validation.valid:
            raise ConfigurationError(
                "Invalid feature dependencies",
                {"errors": validation.errors},
            )

        in_degree = {node: len(deps) for node, deps in self._graph.items()}
        remaining = list(self._features)
        batches: list[Batch] = []

        while remaining:
            batch = [node for node in remaining if in_degree[node] == 0]
            if not batch:
                cycles = self.detect_cycles()
                raise CycleError(
                    f"Circular dependencies detected among {len(remaining)} features",
                    cycles,
                )

            for node in batch:
                for dependent in self._reverse.get(node, []):
                    in_degree[dependent] -= 1

            placed = set(batch)
            remaining = [node for node in remaining if node not in placed]
            batches.append(batch)

        logger.debug(f"Generated {len(batches)} batches for {len(self._features)} features")
        return batches

    def topological_sort(self) -> list[str]:
        """Return feature ids so that every dependency precedes its dependents."""
        return [node for batch in self.generate_batches() for node in batch]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_feature(self, feature_id: str) -> Feature:
        try:
            return self._features[feature_id]
        except KeyError:
            raise ConfigurationError(f"Unknown feature: {feature_id}") from None

    def get_dependencies(self, feature_id: str) -> list[str]:
        return list(self._graph.get(feature_id, []))

    def get_dependents(self, feature_id: str) -> list[str]:
        return list(self._reverse.get(feature_id, []))

    def get_transitive_dependents(self, feature_id: str) -> list[str]:
        """All features that depend on ``feature_id`` directly or indirectly."""
        seen: dict[str, None] = {}
        stack = list(reversed(self._reverse.get(feature_id, [])))
        while stack:
            node = stack.pop()
            if node in seen or node == feature_id:
                continue
            seen[node] = None
            stack.extend(reversed(self._reverse.get(node, [])))
        return list(seen)

    def get_root_features(self) -> list[str]:
        """Features with no dependencies."""
        return [node for node, deps in self._graph.items() if not deps]

    def get_leaf_features(self) -> list[str]:
        """Features nothing else depends on."""
        return [node for node in self._features if not self._reverse.get(node)]

    def get_statistics(self) -> dict[str, Any]:
        """Summarize graph shape.

        Returns:
            Dict with feature, root, leaf and batch counts, maximum
            parallelism, average batch size and average dependency count
        """
        batches = self.generate_batches()
        total = len(self._features)
        total_deps = sum(len(deps) for deps in self._graph.values())
        return {
            "total_features": total,
            "root_features": len(self.get_root_features()),
            "leaf_features": len(self.get_leaf_features()),
            "total_batches": len(batches),
            "max_parallelism": max((len(b) for b in batches), default=0),
            "avg_batch_size": total / len(batches) if batches else 0.0,
            "avg_dependencies": total_deps / total if total else 0.0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "features": [f.to_dict() for f in self._features.values()],
            "graph": {node: list(deps) for node, deps in self._graph.items()},
        }
