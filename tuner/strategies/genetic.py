"""Genetic search with section-level crossover and per-parameter mutation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from tuner.space import Configuration, clone_config
from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)

UNFIT = float("-inf")


@dataclass
class Individual:
    configuration: Configuration
    fitness: Optional[float] = None


class GeneticPhase(SearchPhase):
    name = "Genetic Algorithm"
    min_remaining = 0.1

    def __init__(
        self,
        population_size: int = 20,
        generations: int = 10,
        mutation_rate: float = 0.1,
        crossover_rate: float = 0.7,
        elite_count: int = 2,
        tournament_size: int = 3,
        variant_rate: float = 0.3,
    ) -> None:
        if population_size < 2:
            raise ValueError("population_size must be at least 2")
        self.population_size = int(population_size)
        self.generations = int(generations)
        self.mutation_rate = float(mutation_rate)
        self.crossover_rate = float(crossover_rate)
        self.elite_count = max(0, min(int(elite_count), self.population_size))
        self.tournament_size = max(1, int(tournament_size))
        self.variant_rate = float(variant_rate)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------
    def random_variant(self, context: SearchContext, base: Configuration) -> Configuration:
        values = {
            name: context.space.random_value(name, context.rng)
            for name in context.space.names
            if context.rng.random() < self.variant_rate
        }
        return context.space.with_values(base, values)

    def crossover(self, context: SearchContext, first: Configuration, second: Configuration) -> Configuration:
        """Take each section wholesale from one of the two parents."""

        child: Configuration = {}
        for section in context.space.sections:
            parent = first if context.rng.random() < 0.5 else second
            if section in parent:
                child[section] = dict(parent[section])
        return child

    def mutate(self, context: SearchContext, config: Configuration) -> Configuration:
        values = {}
        for name in context.space.names:
            if context.rng.random() < self.mutation_rate:
                values[name] = context.space.perturb(name, context.space.value(config, name), context.rng)
        return context.space.with_values(config, values) if values else clone_config(config)

    def _tournament(self, context: SearchContext, population: List[Individual]) -> Individual:
        picks = context.rng.choice(len(population), size=min(self.tournament_size, len(population)), replace=False)
        contenders = [population[int(index)] for index in picks]
        return max(contenders, key=lambda individual: individual.fitness if individual.fitness is not None else UNFIT)

    # ------------------------------------------------------------------
    # Evolution
    # ------------------------------------------------------------------
    def _evaluate_population(self, context: SearchContext, population: List[Individual]) -> bool:
        for individual in population:
            if individual.fitness is not None:
                continue
            if context.should_stop():
                return False
            result = context.evaluate(individual.configuration, self.name)
            individual.fitness = result.score if result is not None and result.admissible else UNFIT
        return True

    def run(self, best: BestState, context: SearchContext) -> BestState:
        seed = clone_config(context.best.configuration)
        population = [Individual(seed, context.best.score)]
        while len(population) < self.population_size:
            population.append(Individual(self.random_variant(context, seed)))

        for generation in range(self.generations):
            if not self._evaluate_population(context, population):
                break
            population.sort(key=lambda individual: individual.fitness, reverse=True)
            LOGGER.debug("Generation %d best fitness %.2f", generation + 1, population[0].fitness)

            next_population = [Individual(clone_config(ind.configuration), ind.fitness) for ind in population[: self.elite_count]]
            while len(next_population) < self.population_size:
                first = self._tournament(context, population)
                if context.rng.random() < self.crossover_rate:
                    second = self._tournament(context, population)
                    child = self.crossover(context, first.configuration, second.configuration)
                else:
                    child = clone_config(first.configuration)
                next_population.append(Individual(self.mutate(context, child)))
            population = next_population

        return context.best


__all__ = ["GeneticPhase", "Individual"]
