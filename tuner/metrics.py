"""Oracle metrics, admission rules and scoring modes for candidate configurations."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from tuner.space import Configuration, clone_config

ScoringFunction = Callable[["Metrics"], float]

_TOKEN_KEYS = ("token_count", "tokenCount", "totalTokens", "tokensMatched")
_PNL_KEYS = ("pnl_percent", "pnlPercent", "tpPnlPercent")
_WIN_RATE_KEYS = ("win_rate", "winRate")
_REAL_WIN_RATE_KEYS = ("real_win_rate", "realWinRate")

RETURN_WEIGHT = 0.6
CONSISTENCY_WEIGHT = 0.4
RELIABILITY_WEIGHT = 0.3


def _first_present(payload: Mapping[str, object], keys) -> Optional[object]:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _finite(name: str, value: object) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Metric '{name}' is not numeric: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"Metric '{name}' is not finite: {value!r}")
    return number


@dataclass(frozen=True)
class Metrics:
    """Validated oracle result for a single configuration."""

    token_count: int
    pnl_percent: float
    win_rate: float
    real_win_rate: Optional[float] = None
    extras: Dict[str, object] = field(default_factory=dict)

    @property
    def effective_win_rate(self) -> float:
        return self.real_win_rate if self.real_win_rate is not None else self.win_rate

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "Metrics":
        if not isinstance(payload, Mapping):
            raise ValueError(f"Oracle payload must be a mapping, got {type(payload).__name__}")
        tokens = _first_present(payload, _TOKEN_KEYS)
        pnl = _first_present(payload, _PNL_KEYS)
        win = _first_present(payload, _WIN_RATE_KEYS)
        missing = [
            name
            for name, value in (("tokenCount", tokens), ("pnlPercent", pnl), ("winRate", win))
            if value is None
        ]
        if missing:
            raise ValueError(f"Oracle payload missing required metrics: {', '.join(missing)}")
        token_count = _finite("tokenCount", tokens)
        if token_count < 0:
            raise ValueError(f"Metric 'tokenCount' must be non-negative: {tokens!r}")
        real = _first_present(payload, _REAL_WIN_RATE_KEYS)
        known = set(_TOKEN_KEYS + _PNL_KEYS + _WIN_RATE_KEYS + _REAL_WIN_RATE_KEYS)
        return cls(
            token_count=int(token_count),
            pnl_percent=_finite("pnlPercent", pnl),
            win_rate=_finite("winRate", win),
            real_win_rate=_finite("realWinRate", real) if real is not None else None,
            extras={key: value for key, value in payload.items() if key not in known},
        )

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "tokenCount": self.token_count,
            "pnlPercent": self.pnl_percent,
            "winRate": self.win_rate,
        }
        if self.real_win_rate is not None:
            payload["realWinRate"] = self.real_win_rate
        payload.update(self.extras)
        return payload


@dataclass(frozen=True)
class WinRateThresholds:
    """Minimum win rate per sample-size tier; larger samples tolerate a lower rate."""

    small_sample: float = 50.0
    medium_sample: float = 40.0
    large_sample: float = 30.0
    medium_threshold: int = 500
    large_threshold: int = 1000

    def __post_init__(self) -> None:
        if self.medium_threshold > self.large_threshold:
            raise ValueError("medium_threshold must not exceed large_threshold")

    @classmethod
    def from_dict(cls, cfg: Optional[Mapping[str, object]]) -> "WinRateThresholds":
        cfg = cfg or {}
        return cls(
            small_sample=float(cfg.get("small_sample", 50.0)),
            medium_sample=float(cfg.get("medium_sample", 40.0)),
            large_sample=float(cfg.get("large_sample", 30.0)),
            medium_threshold=int(cfg.get("medium_threshold", 500)),
            large_threshold=int(cfg.get("large_threshold", 1000)),
        )

    def floor_for(self, token_count: int) -> float:
        if token_count >= self.large_threshold:
            return self.large_sample
        if token_count >= self.medium_threshold:
            return self.medium_sample
        return self.small_sample


@dataclass(frozen=True)
class ScoredResult:
    configuration: Configuration
    metrics: Optional[Metrics]
    score: Optional[float]
    rejected: bool = False
    rejection_reason: Optional[str] = None
    raw_score: Optional[float] = None

    @property
    def admissible(self) -> bool:
        return not self.rejected and self.score is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            "configuration": clone_config(self.configuration),
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
            "score": self.score,
            "rejected": self.rejected,
            "rejectionReason": self.rejection_reason,
            "rawScore": self.raw_score,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ScoredResult":
        metrics = payload.get("metrics")
        return cls(
            configuration=clone_config(payload.get("configuration")),
            metrics=Metrics.from_payload(metrics) if metrics is not None else None,
            score=None if payload.get("score") is None else float(payload["score"]),
            rejected=bool(payload.get("rejected", False)),
            rejection_reason=payload.get("rejectionReason"),
            raw_score=None if payload.get("rawScore") is None else float(payload["rawScore"]),
        )


def _composite(metrics: Metrics) -> float:
    return metrics.pnl_percent * (metrics.effective_win_rate / 100.0)


def _robust(metrics: Metrics) -> float:
    reliability = min(1.0, math.log(max(metrics.token_count, 1)) / math.log(100))
    base = metrics.pnl_percent * RETURN_WEIGHT + metrics.effective_win_rate * CONSISTENCY_WEIGHT
    return base * (1.0 - RELIABILITY_WEIGHT + reliability * RELIABILITY_WEIGHT)


SCORING_MODES: Dict[str, ScoringFunction] = {
    "composite": _composite,
    "pnl": lambda metrics: metrics.pnl_percent,
    "win_rate": lambda metrics: metrics.win_rate,
    "real_win_rate": lambda metrics: metrics.effective_win_rate,
    "robust": _robust,
}

_MODE_ALIASES = {
    "tp_only": "pnl",
    "pnl_only": "pnl",
    "winrate_only": "win_rate",
    "real_winrate_only": "real_win_rate",
}


def normalise_scoring_mode(name: Optional[str]) -> str:
    text = str(name or "composite").strip().lower()
    text = _MODE_ALIASES.get(text, text)
    if text not in SCORING_MODES:
        raise ValueError(f"Unknown scoring mode '{name}'. Available: {sorted(SCORING_MODES)}")
    return text


def register_scoring_mode(name: str, func: ScoringFunction) -> None:
    SCORING_MODES[str(name).strip().lower()] = func


def min_tokens_for_range(days: Optional[float], per_day: float = 0.0, floor: int = 10) -> int:
    """Token threshold scaled by the requested date range, never below ``floor``."""

    if not days or per_day <= 0:
        return int(floor)
    return max(int(floor), int(math.ceil(float(days) * float(per_day))))


def score_metrics(
    metrics: Metrics,
    min_tokens: int,
    thresholds: Optional[WinRateThresholds] = None,
    mode: str = "composite",
    configuration: Optional[Mapping[str, Mapping[str, object]]] = None,
) -> ScoredResult:
    """Apply the admission rules and the selected scoring mode to ``metrics``."""

    thresholds = thresholds or WinRateThresholds()
    func = SCORING_MODES[normalise_scoring_mode(mode)]
    config = clone_config(configuration)

    if metrics.token_count < min_tokens:
        return ScoredResult(
            configuration=config,
            metrics=metrics,
            score=None,
            rejected=True,
            rejection_reason=f"Insufficient tokens: {metrics.token_count} < {min_tokens}",
        )

    raw = float(func(metrics))
    floor = thresholds.floor_for(metrics.token_count)
    win = metrics.effective_win_rate
    if win < floor:
        return ScoredResult(
            configuration=config,
            metrics=metrics,
            score=None,
            rejected=True,
            rejection_reason=f"Win rate {win:.1f}% below {floor:.1f}% for {metrics.token_count} tokens",
            raw_score=raw,
        )
    return ScoredResult(configuration=config, metrics=metrics, score=raw, raw_score=raw)


@dataclass(frozen=True)
class Scorer:
    mode: str = "composite"
    min_tokens: int = 10
    thresholds: WinRateThresholds = field(default_factory=WinRateThresholds)

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", normalise_scoring_mode(self.mode))

    def score(self, configuration: Mapping[str, Mapping[str, object]], metrics: Metrics) -> ScoredResult:
        return score_metrics(metrics, self.min_tokens, self.thresholds, self.mode, configuration)


__all__ = [
    "Metrics",
    "SCORING_MODES",
    "ScoredResult",
    "Scorer",
    "WinRateThresholds",
    "min_tokens_for_range",
    "normalise_scoring_mode",
    "register_scoring_mode",
    "score_metrics",
]
