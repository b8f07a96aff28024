"""Exploration from named preset configurations away from the incumbent best."""
from __future__ import annotations

import logging
from typing import Mapping, Optional

from tuner.space import DEFAULT_PRESETS, Configuration
from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


class StartingPointsPhase(SearchPhase):
    """Score each preset on its own, then a few sweep values around it."""

    name = "Starting Points"
    min_remaining = 0.05

    def __init__(self, presets: Optional[Mapping[str, Configuration]] = None, variations: int = 2) -> None:
        self.presets = dict(presets) if presets is not None else dict(DEFAULT_PRESETS)
        self.variations = max(0, int(variations))

    def _variation_parameter(self, context: SearchContext, config: Configuration) -> Optional[str]:
        ranked = context.ranked_parameters(1, positive_only=True)
        if ranked:
            return ranked[0]
        for name in context.space.names:
            if context.space.value(config, name) is not None:
                return name
        return None

    def run(self, best: BestState, context: SearchContext) -> BestState:
        for label, preset in self.presets.items():
            if context.should_stop():
                break
            config = context.space.canonical(preset)
            if not config:
                LOGGER.debug("Preset %s has no parameters in this space", label)
                continue
            source = f"Starting Point: {label}"
            result = context.evaluate(config, source)
            if result is None:
                continue

            name = self._variation_parameter(context, config)
            if name is None or not self.variations:
                continue
            current = context.space.value(config, name)
            values = context.space.test_values(name, current, context.step_for(name))[: self.variations]
            for value in values:
                if context.should_stop():
                    break
                context.evaluate(context.space.with_value(config, name, value), f"{source} / {name}")
        return context.best


__all__ = ["StartingPointsPhase"]
