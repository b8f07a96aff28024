"""Simulated annealing over single-parameter perturbations."""
from __future__ import annotations

import logging
import math
from typing import List, Optional

from tuner.space import Configuration, clone_config
from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


def acceptance_probability(delta: float, temperature: float) -> float:
    """Metropolis criterion: 1 for non-worsening moves, ``exp(delta / T)`` otherwise."""

    if delta >= 0:
        return 1.0
    if temperature <= 0:
        return 0.0
    return math.exp(delta / temperature)


class SimulatedAnnealingPhase(SearchPhase):
    name = "Simulated Annealing"
    min_remaining = 0.15

    def __init__(
        self,
        initial_temperature: float = 100.0,
        cooling_rate: float = 0.95,
        min_temperature: float = 0.1,
        max_iterations: int = 100,
        perturbation_scale: float = 0.1,
    ) -> None:
        if not 0 < cooling_rate < 1:
            raise ValueError("cooling_rate must be between 0 and 1")
        self.initial_temperature = float(initial_temperature)
        self.cooling_rate = float(cooling_rate)
        self.min_temperature = float(min_temperature)
        self.max_iterations = int(max_iterations)
        self.perturbation_scale = float(perturbation_scale)

    def _neighbour(self, context: SearchContext, config: Configuration) -> Configuration:
        present: List[str] = [name for name in context.space.names if context.space.value(config, name) is not None]
        names = present or context.space.names
        name = names[int(context.rng.integers(len(names)))]
        current = context.space.value(config, name)
        value = context.space.perturb(name, current, context.rng, self.perturbation_scale)
        return context.space.with_value(config, name, value)

    def run(self, best: BestState, context: SearchContext) -> BestState:
        working: Configuration = clone_config(context.best.configuration)
        working_score: Optional[float] = context.best.score
        temperature = self.initial_temperature
        accepted = 0

        for _ in range(self.max_iterations):
            if temperature < self.min_temperature or context.should_stop():
                break
            candidate = self._neighbour(context, working)
            result = context.evaluate(candidate, self.name)
            if result is not None and result.admissible:
                delta = result.score - working_score
                if context.rng.random() < acceptance_probability(delta, temperature):
                    working = clone_config(result.configuration)
                    working_score = result.score
                    accepted += 1
            temperature *= self.cooling_rate

        LOGGER.info(
            "Annealing finished at T=%.3f with %d accepted moves (working %.2f, best %.2f)",
            temperature,
            accepted,
            working_score,
            context.best.score,
        )
        return context.best


__all__ = ["SimulatedAnnealingPhase", "acceptance_probability"]
