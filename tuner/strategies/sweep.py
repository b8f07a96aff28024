"""One-parameter-at-a-time sweep over each rule's interesting values."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


class ParameterSweepPhase(SearchPhase):
    name = "Parameter Sweep"
    min_remaining = 0.0

    def __init__(self, parameters: Optional[Sequence[str]] = None, max_values: Optional[int] = None) -> None:
        self.parameters = list(parameters) if parameters is not None else None
        self.max_values = max_values

    def _order(self, context: SearchContext) -> List[str]:
        if self.parameters is not None:
            return list(self.parameters)
        ranked = context.ranked_parameters(positive_only=True)
        return ranked + [name for name in context.space.names if name not in ranked]

    def run(self, best: BestState, context: SearchContext) -> BestState:
        for name in self._order(context):
            if context.should_stop():
                break
            source = f"Parameter: {name}"
            start_score = context.best.score
            current = context.space.value(context.best.configuration, name)
            values = context.space.test_values(name, current, context.step_for(name))
            if self.max_values is not None:
                values = values[: self.max_values]
            LOGGER.debug("Sweeping %s over %s", name, values)
            for value in values:
                if context.should_stop():
                    break
                before = context.best.score
                candidate = context.space.with_value(context.best.configuration, name, value)
                if context.evaluate(candidate, source) is not None:
                    context.record_attempt(name, context.best.score > before)
            improvement = context.best.score - start_score
            context.record_effect(name, improvement)
            if improvement > 0:
                LOGGER.info("%s improved score by %.2f", name, improvement)
        return context.best


__all__ = ["ParameterSweepPhase"]
