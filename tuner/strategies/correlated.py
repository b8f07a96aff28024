"""Joint sweeps over parameter groups that interact."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from tuner.space import Configuration, ParameterSpace
from tuner.strategies.base import BestState, SearchContext, SearchPhase

LOGGER = logging.getLogger(__name__)


@dataclass
class CorrelatedGroup:
    name: str
    presets: List[Dict[str, object]] = field(default_factory=list)


DEFAULT_GROUPS: List[CorrelatedGroup] = [
    CorrelatedGroup(
        "MCAP Range",
        [
            {"Min MCAP (USD)": 0, "Max MCAP (USD)": 20000},
            {"Min MCAP (USD)": 5000, "Max MCAP (USD)": 35000},
            {"Min MCAP (USD)": 10000, "Max MCAP (USD)": 50000},
        ],
    ),
    CorrelatedGroup(
        "Wallet Cluster",
        [
            {"Min Unique Wallets": 1, "Max Unique Wallets": 3, "Min KYC Wallets": 0, "Max KYC Wallets": 2},
            {"Min Unique Wallets": 2, "Max Unique Wallets": 5, "Min KYC Wallets": 1, "Max KYC Wallets": 4},
            {"Min Unique Wallets": 3, "Max Unique Wallets": 7, "Min KYC Wallets": 2, "Max KYC Wallets": 6},
        ],
    ),
]


def pair_presets(space: ParameterSpace, config: Configuration) -> List[CorrelatedGroup]:
    """Widen, narrow and shift each min/max pair that is set in ``config``."""

    groups: List[CorrelatedGroup] = []
    for low_name, high_name in space.pairs:
        low = space.value(config, low_name)
        high = space.value(config, high_name)
        if low is None or high is None:
            continue
        low_step = float(space.rule(low_name).step)
        high_step = float(space.rule(high_name).step)
        moves = [(-1, 1), (1, -1), (1, 1), (-1, -1)]
        presets = [
            {
                low_name: space.rule(low_name).clamp(float(low) + low_dir * low_step),
                high_name: space.rule(high_name).clamp(float(high) + high_dir * high_step),
            }
            for low_dir, high_dir in moves
        ]
        groups.append(CorrelatedGroup(f"{low_name} / {high_name}", presets))
    return groups


class CorrelatedSweepPhase(SearchPhase):
    name = "Correlated Sweep"
    min_remaining = 0.3

    def __init__(self, groups: Optional[Sequence[CorrelatedGroup]] = None, include_pairs: bool = True) -> None:
        self.groups = list(groups) if groups is not None else list(DEFAULT_GROUPS)
        self.include_pairs = include_pairs

    def run(self, best: BestState, context: SearchContext) -> BestState:
        groups = list(self.groups)
        if self.include_pairs:
            groups.extend(pair_presets(context.space, context.best.configuration))
        for group in groups:
            known = [preset for preset in group.presets if all(name in context.space for name in preset)]
            if not known:
                continue
            source = f"Correlated: {group.name}"
            for preset in known:
                if context.should_stop():
                    return context.best
                candidate = context.space.with_values(context.best.configuration, preset)
                context.evaluate(candidate, source)
        return context.best


__all__ = ["CorrelatedGroup", "CorrelatedSweepPhase", "DEFAULT_GROUPS", "pair_presets"]
