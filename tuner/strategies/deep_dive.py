"""Fine-grained refinement of the parameters that moved the score most."""
from __future__ import annotations

import logging
from typing import Optional, Sequence

from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


class DeepDivePhase(SearchPhase):
    name = "Deep Dive"
    min_remaining = 0.05

    def __init__(
        self,
        top_k: int = 3,
        span: int = 3,
        max_variations: int = 12,
        parameters: Optional[Sequence[str]] = None,
    ) -> None:
        self.top_k = int(top_k)
        self.span = int(span)
        self.max_variations = int(max_variations)
        self.parameters = list(parameters) if parameters is not None else None

    def run(self, best: BestState, context: SearchContext) -> BestState:
        names = self.parameters
        if names is None:
            names = context.ranked_parameters(self.top_k, positive_only=True)
        if not names:
            LOGGER.info("No parameter effectiveness recorded; skipping deep dive")
            return context.best
        for name in names:
            source = f"Deep Dive: {name}"
            tried = 0
            current = context.space.value(context.best.configuration, name)
            for value in context.space.refined_values(name, current, self.span):
                if context.should_stop():
                    return context.best
                if tried >= self.max_variations:
                    break
                candidate = context.space.with_value(context.best.configuration, name, value)
                context.evaluate(candidate, source)
                tried += 1
        return context.best


__all__ = ["DeepDivePhase"]
