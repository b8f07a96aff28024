"""TPE-guided exploration of the top-ranked parameters using Optuna's ask/tell API."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import optuna
from optuna.trial import TrialState

from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


class BayesianPhase(SearchPhase):
    name = "Bayesian"
    min_remaining = 0.1

    def __init__(
        self,
        n_trials: int = 20,
        top_parameters: int = 6,
        n_startup_trials: int = 5,
        parameters: Optional[Sequence[str]] = None,
    ) -> None:
        self.n_trials = int(n_trials)
        self.top_parameters = int(top_parameters)
        self.n_startup_trials = int(n_startup_trials)
        self.parameters = list(parameters) if parameters is not None else None

    def _select(self, context: SearchContext) -> List[str]:
        if self.parameters is not None:
            return list(self.parameters)
        ranked = context.ranked_parameters(self.top_parameters, positive_only=True)
        return ranked or context.space.names[: self.top_parameters]

    def _seed_params(self, context: SearchContext, names: Sequence[str]) -> Dict[str, object]:
        params: Dict[str, object] = {}
        for name in names:
            value = context.space.value(context.best.configuration, name)
            if value is not None:
                params[context.space.trial_key(name)] = value
        return params

    def run(self, best: BestState, context: SearchContext) -> BestState:
        names = self._select(context)
        if not names:
            return context.best
        optuna.logging.set_verbosity(optuna.logging.WARNING)
        seed = int(context.rng.integers(2**31 - 1))
        sampler = optuna.samplers.TPESampler(seed=seed, n_startup_trials=self.n_startup_trials)
        study = optuna.create_study(direction="maximize", sampler=sampler)
        seed_params = self._seed_params(context, names)
        if seed_params:
            study.enqueue_trial(seed_params, skip_if_exists=True)

        base = context.best.configuration
        for _ in range(self.n_trials):
            if context.should_stop():
                break
            trial = study.ask()
            values = {name: context.space.suggest(trial, name) for name in names}
            result = context.evaluate(context.space.with_values(base, values), self.name)
            if result is None or not result.admissible:
                study.tell(trial, state=TrialState.FAIL)
                continue
            study.tell(trial, result.score)

        completed = [trial for trial in study.trials if trial.state == TrialState.COMPLETE]
        LOGGER.info("Bayesian exploration completed %d/%d trials", len(completed), len(study.trials))
        return context.best


__all__ = ["BayesianPhase"]
