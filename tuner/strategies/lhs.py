"""Latin hypercube exploration of the most effective parameters."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np

from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


def latin_hypercube(samples: int, dimensions: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Return ``samples`` points in ``[0, 1)^dimensions`` with one point per stratum per column.

    Each column is divided into ``samples`` equal strata; every stratum is used
    exactly once with a uniform offset inside it, and the stratum order is
    permuted independently per column.
    """

    if samples <= 0 or dimensions <= 0:
        raise ValueError("samples and dimensions must be positive")
    rng = rng or np.random.default_rng()
    points = np.empty((samples, dimensions), dtype=float)
    for column in range(dimensions):
        strata = rng.permutation(samples)
        points[:, column] = (strata + rng.random(samples)) / samples
    return points


class LatinHypercubePhase(SearchPhase):
    name = "Latin Hypercube"
    min_remaining = 0.4

    def __init__(self, samples: int = 8, top_parameters: int = 6, parameters: Optional[Sequence[str]] = None) -> None:
        self.samples = int(samples)
        self.top_parameters = int(top_parameters)
        self.parameters = list(parameters) if parameters is not None else None

    def _select(self, context: SearchContext) -> List[str]:
        if self.parameters is not None:
            return list(self.parameters)
        ranked = context.ranked_parameters(self.top_parameters, positive_only=True)
        if ranked:
            return ranked
        numeric = [rule.name for rule in context.space if rule.is_numeric]
        return numeric[: self.top_parameters]

    def run(self, best: BestState, context: SearchContext) -> BestState:
        names = self._select(context)
        if not names:
            return context.best
        LOGGER.info("Latin hypercube over %s (%d samples)", ", ".join(names), self.samples)
        points = latin_hypercube(self.samples, len(names), context.rng)
        base = context.best.configuration
        for row in points:
            if context.should_stop():
                break
            values = {name: context.space.from_unit(name, unit) for name, unit in zip(names, row)}
            context.evaluate(context.space.with_values(base, values), self.name)
        return context.best


__all__ = ["LatinHypercubePhase", "latin_hypercube"]
