"""Shared evaluation context and the interface implemented by every search phase."""
from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from oracle.client import OracleCancelled, OracleError, RateLimitExhausted
from tuner.cache import ResultCache
from tuner.control import CancellationToken, RunBudget
from tuner.metrics import Metrics, ScoredResult, Scorer
from tuner.space import Configuration, ParameterSpace, clone_config

LOGGER = logging.getLogger(__name__)


@dataclass
class BestState:
    """Best admissible configuration seen so far and the phase that found it."""

    configuration: Configuration
    score: float
    metrics: Optional[Metrics] = None
    source: str = "Baseline"

    def copy(self) -> "BestState":
        return BestState(clone_config(self.configuration), self.score, self.metrics, self.source)


@dataclass
class ParameterEffect:
    name: str
    section: str
    improvement: float = 0.0
    tests: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"name": self.name, "section": self.section, "improvement": self.improvement, "tests": self.tests}


class AdaptiveSteps:
    """Per-parameter sweep step that widens while a parameter keeps paying off.

    A success rate above ``widen_above`` doubles the rule step, capped at
    ``max_fraction`` of the range but never below the rule step. A rate below
    ``reset_below`` returns to the rule step.
    """

    def __init__(
        self,
        space: ParameterSpace,
        widen_above: float = 0.3,
        reset_below: float = 0.1,
        max_fraction: float = 0.1,
    ) -> None:
        self.space = space
        self.widen_above = float(widen_above)
        self.reset_below = float(reset_below)
        self.max_fraction = float(max_fraction)
        self.attempts: Dict[str, int] = {}
        self.successes: Dict[str, int] = {}
        self._steps: Dict[str, float] = {}

    def step(self, name: str) -> Optional[float]:
        rule = self.space.rule(name)
        if not rule.is_numeric:
            return None
        return self._steps.get(name, float(rule.step))

    def success_rate(self, name: str) -> float:
        attempts = self.attempts.get(name, 0)
        return self.successes.get(name, 0) / attempts if attempts else 0.0

    def record(self, name: str, improved: bool) -> None:
        self.attempts[name] = self.attempts.get(name, 0) + 1
        if improved:
            self.successes[name] = self.successes.get(name, 0) + 1
        rule = self.space.rule(name)
        if not rule.is_numeric:
            return
        rate = self.success_rate(name)
        base = float(rule.step)
        if rate > self.widen_above:
            widened = max(base, min(base * 2.0, rule.span * self.max_fraction))
            if rule.type == "integer":
                widened = float(math.floor(widened))
            self._steps[name] = widened
        elif rate < self.reset_below:
            self._steps.pop(name, None)


class SearchContext:
    """Single evaluation path for every phase: validate, cache, oracle, score, track best."""

    def __init__(
        self,
        oracle,
        space: ParameterSpace,
        scorer: Scorer,
        *,
        cache: Optional[ResultCache] = None,
        use_cache: bool = True,
        budget: Optional[RunBudget] = None,
        token: Optional[CancellationToken] = None,
        rng: Optional[np.random.Generator] = None,
        target_score: Optional[float] = None,
        best: Optional[BestState] = None,
        adaptive_steps: bool = True,
    ) -> None:
        self.oracle = oracle
        self.space = space
        self.scorer = scorer
        self.cache = cache if cache is not None else ResultCache(space=space)
        self.use_cache = use_cache
        self.budget = budget
        self.token = token or CancellationToken()
        self.rng = rng or np.random.default_rng()
        self.target_score = target_score
        self.best = best
        self.steps = AdaptiveSteps(space) if adaptive_steps else None
        self.history: List[Dict[str, object]] = []
        self.effectiveness: Dict[str, ParameterEffect] = {}
        self.test_count = 0
        self.failed_count = 0
        self.skipped_count = 0

    # ------------------------------------------------------------------
    # Stop conditions
    # ------------------------------------------------------------------
    @property
    def target_reached(self) -> bool:
        return (
            self.target_score is not None
            and self.best is not None
            and self.best.score >= self.target_score
        )

    def should_stop(self) -> bool:
        if self.token.cancelled:
            return True
        if self.budget is not None and self.budget.exhausted:
            return True
        return self.target_reached

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def evaluate(self, config: Configuration, source: str) -> Optional[ScoredResult]:
        """Score ``config``; ``None`` when stopped, skipped as invalid, or the oracle failed."""

        if self.should_stop():
            return None
        candidate = self.space.canonical(config)
        problems = self.space.validate(candidate)
        if problems:
            self.skipped_count += 1
            LOGGER.debug("Skipping invalid candidate from %s: %s", source, "; ".join(problems))
            return None

        cached = self.cache.get(candidate) if self.use_cache else None
        if cached is not None:
            self.cache.record_hit()
            result = self.scorer.score(candidate, cached)
            self.offer(result, source)
            self._record(result, source, cached=True)
            return result
        self.cache.record_miss()

        try:
            metrics = self.oracle.evaluate(candidate)
        except OracleCancelled:
            LOGGER.info("Evaluation cancelled during %s", source)
            return None
        except RateLimitExhausted:
            raise
        except OracleError as exc:
            self.failed_count += 1
            LOGGER.warning("Oracle failure during %s: %s", source, exc)
            return None

        self.test_count += 1
        result = self.scorer.score(candidate, metrics)
        if self.use_cache:
            self.cache.put(candidate, metrics)
        if result.rejected:
            LOGGER.debug("Rejected candidate from %s: %s", source, result.rejection_reason)
        self.offer(result, source)
        self._record(result, source, cached=False)
        return result

    def offer(self, result: ScoredResult, source: str) -> bool:
        if not result.admissible:
            return False
        if self.best is not None and result.score <= self.best.score:
            return False
        previous = None if self.best is None else self.best.score
        self.best = BestState(clone_config(result.configuration), float(result.score), result.metrics, source)
        if previous is None:
            LOGGER.info("Best score %.2f from %s", result.score, source)
        else:
            LOGGER.info("New best %.2f (was %.2f) from %s", result.score, previous, source)
        return True

    def _record(self, result: ScoredResult, source: str, *, cached: bool) -> None:
        metrics = result.metrics
        self.history.append(
            {
                "evaluation": len(self.history) + 1,
                "source": source,
                "score": result.score,
                "rejected": result.rejected,
                "reason": result.rejection_reason,
                "cached": cached,
                "token_count": metrics.token_count if metrics is not None else None,
                "pnl_percent": metrics.pnl_percent if metrics is not None else None,
                "win_rate": metrics.effective_win_rate if metrics is not None else None,
                "best_score": self.best.score if self.best is not None else None,
                "configuration": clone_config(result.configuration),
            }
        )

    # ------------------------------------------------------------------
    # Parameter effectiveness
    # ------------------------------------------------------------------
    def step_for(self, name: str) -> Optional[float]:
        """Sweep step for ``name``; ``None`` keeps the rule step."""

        return self.steps.step(name) if self.steps is not None else None

    def record_attempt(self, name: str, improved: bool) -> None:
        if self.steps is not None:
            self.steps.record(name, improved)

    def record_effect(self, name: str, improvement: float) -> None:
        effect = self.effectiveness.get(name)
        if effect is None:
            effect = ParameterEffect(name=name, section=self.space.section_of(name))
            self.effectiveness[name] = effect
        effect.tests += 1
        effect.improvement = max(effect.improvement, float(improvement))

    def ranked_parameters(self, limit: Optional[int] = None, *, positive_only: bool = False) -> List[str]:
        effects = [effect for effect in self.effectiveness.values() if effect.tests > 0]
        if positive_only:
            effects = [effect for effect in effects if effect.improvement > 0]
        effects.sort(key=lambda effect: effect.improvement, reverse=True)
        names = [effect.name for effect in effects]
        return names[:limit] if limit is not None else names

    def effectiveness_report(self, limit: int = 10) -> List[Dict[str, object]]:
        ranked = sorted(self.effectiveness.values(), key=lambda effect: effect.improvement, reverse=True)
        return [effect.to_dict() for effect in ranked[:limit]]


class SearchPhase(ABC):
    """A search phase proposes candidates around ``best`` and returns the best it knows."""

    name = "phase"
    min_remaining = 0.0

    def can_start(self, context: SearchContext) -> bool:
        if context.should_stop():
            return False
        if context.budget is None:
            return True
        return context.budget.allows(self.min_remaining)

    @abstractmethod
    def run(self, best: BestState, context: SearchContext) -> BestState:
        """Explore around ``best`` through ``context.evaluate`` and return the best state."""


__all__ = ["AdaptiveSteps", "BestState", "ParameterEffect", "SearchContext", "SearchPhase"]
