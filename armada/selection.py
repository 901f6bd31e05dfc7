"""Worker selection strategies."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from armada.constants import SelectionStrategy
from armada.types import WorkerSpec


class WorkerSelector:
    """Pick one worker among eligible candidates.

    ``round_robin`` cycles through workers in registration order,
    ``least_loaded`` picks the fewest active tasks (earliest registered on a
    tie) and ``priority`` picks the highest weight (least loaded on a tie).
    """

    def __init__(self, strategy: SelectionStrategy | str = SelectionStrategy.ROUND_ROBIN) -> None:
        self.strategy = SelectionStrategy(strategy)
        self._last_index = -1

    def select(
        self,
        candidates: Sequence[WorkerSpec],
        load: Mapping[str, int],
        order: Mapping[str, int],
    ) -> WorkerSpec | None:
        """Choose a worker.

        Args:
            candidates: Eligible workers
            load: Active task count per worker id
            order: Registration index per worker id

        Returns:
            The selected worker, or None if there are no candidates
        """
        if not candidates:
            return None

        if self.strategy == SelectionStrategy.ROUND_ROBIN:
            ranked = sorted(candidates, key=lambda w: order[w.worker_id])
            chosen = next((w for w in ranked if order[w.worker_id] > self._last_index), ranked[0])
            self._last_index = order[chosen.worker_id]
            return chosen

        if self.strategy == SelectionStrategy.LEAST_LOADED:
            return min(candidates, key=lambda w: (load.get(w.worker_id, 0), order[w.worker_id]))

        return min(
            candidates,
            key=lambda w: (-w.priority, load.get(w.worker_id, 0), order[w.worker_id]),
        )

    def reset(self) -> None:
        self._last_index = -1
