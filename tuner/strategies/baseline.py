"""Baseline establishment: the anchor every later phase must improve on."""
from __future__ import annotations

import logging
from typing import Optional

from tuner.space import Configuration, default_baseline
from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


class BaselineError(RuntimeError):
    """The starting configuration cannot anchor an optimisation run."""


class BaselinePhase(SearchPhase):
    name = "Baseline"

    def __init__(self, initial: Optional[Configuration] = None) -> None:
        self.initial = initial

    def establish(self, context: SearchContext) -> BestState:
        config = self.initial if self.initial else default_baseline()
        candidate = context.space.canonical(config)
        problems = context.space.validate(candidate)
        if problems:
            raise BaselineError("Baseline configuration is invalid: " + "; ".join(problems))

        result = context.evaluate(candidate, self.name)
        if result is None:
            if context.token.cancelled:
                raise BaselineError("Cancelled before the baseline was scored")
            raise BaselineError("Baseline could not be scored by the oracle")
        metrics = result.metrics
        if metrics is None or metrics.token_count < context.scorer.min_tokens:
            count = metrics.token_count if metrics is not None else 0
            raise BaselineError(
                f"Baseline has insufficient tokens: {count} < {context.scorer.min_tokens}"
            )

        if context.best is None:
            # Rejected only by the win-rate floor: anchor on the raw score.
            LOGGER.warning("Baseline rejected (%s); anchoring on raw score", result.rejection_reason)
            context.best = BestState(candidate, float(result.raw_score or 0.0), metrics, self.name)
        LOGGER.info(
            "Baseline score %.2f (%d tokens, %.1f%% win rate)",
            context.best.score,
            metrics.token_count,
            metrics.effective_win_rate,
        )
        return context.best

    def run(self, best: Optional[BestState], context: SearchContext) -> BestState:
        if best is not None:
            context.best = best.copy()
            return context.best
        return self.establish(context)


__all__ = ["BaselineError", "BaselinePhase"]
