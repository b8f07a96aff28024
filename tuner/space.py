"""Parameter table and candidate value helpers for the tuner search space."""
from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import optuna

Configuration = Dict[str, Dict[str, object]]

PARAM_TYPES = ("number", "integer", "string")


def clone_config(config: Optional[Mapping[str, Mapping[str, object]]]) -> Configuration:
    return {str(section): dict(params) for section, params in (config or {}).items() if isinstance(params, Mapping)}


@dataclass(frozen=True)
class ParameterRule:
    """Allowed domain of a single tunable field."""

    name: str
    section: str
    type: str = "number"
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    values: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.type not in PARAM_TYPES:
            raise ValueError(f"Unsupported parameter type for '{self.name}': {self.type}")
        if self.type == "string":
            if not self.values:
                raise ValueError(f"String parameter '{self.name}' requires a non-empty 'values' list.")
            object.__setattr__(self, "values", tuple(str(value) for value in self.values))
            return
        if self.min is None or self.max is None or self.step is None:
            raise ValueError(f"Numeric parameter '{self.name}' requires min, max and step.")
        if float(self.min) > float(self.max):
            raise ValueError(f"Parameter '{self.name}' has min {self.min} greater than max {self.max}.")
        if float(self.step) <= 0:
            raise ValueError(f"Parameter '{self.name}' requires a positive step, got {self.step}.")

    @property
    def is_numeric(self) -> bool:
        return self.type != "string"

    @property
    def span(self) -> float:
        return float(self.max) - float(self.min)

    @property
    def midpoint(self) -> float:
        return float(self.min) + self.span / 2.0

    def coerce(self, value: object) -> object:
        if self.type == "string":
            return str(value)
        number = float(value)
        if self.type == "integer":
            return int(round(number))
        return round(number, 10)

    def clamp(self, value: object) -> object:
        if self.type == "string":
            return self.coerce(value)
        number = max(float(self.min), min(float(self.max), float(value)))
        return self.coerce(number)

    def contains(self, value: object) -> bool:
        if self.type == "string":
            return str(value) in self.values
        if isinstance(value, bool):
            return False
        try:
            number = float(value)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(number):
            return False
        if self.type == "integer" and not float(number).is_integer():
            return False
        return float(self.min) - 1e-9 <= number <= float(self.max) + 1e-9

    def describe(self) -> str:
        if self.type == "string":
            return "{" + ", ".join(self.values) + "}"
        return f"[{self.min}, {self.max}] step {self.step}"


class ParameterSpace:
    """Single authoritative table of parameters, their sections and min/max pairs."""

    def __init__(self, rules: Iterable[ParameterRule], pairs: Iterable[Tuple[str, str]] = ()) -> None:
        self._rules: Dict[str, ParameterRule] = {}
        for rule in rules:
            if rule.name in self._rules:
                raise ValueError(f"Duplicate parameter rule: {rule.name}")
            self._rules[rule.name] = rule
        self._pairs: List[Tuple[str, str]] = []
        for low, high in pairs:
            for name in (low, high):
                if name not in self._rules:
                    raise ValueError(f"Min/max pair references unknown parameter: {name}")
                if not self._rules[name].is_numeric:
                    raise ValueError(f"Min/max pair requires numeric parameters: {name}")
            self._pairs.append((low, high))

    @classmethod
    def from_dict(
        cls,
        mapping: Mapping[str, Mapping[str, Mapping[str, object]]],
        pairs: Iterable[Sequence[str]] = (),
    ) -> "ParameterSpace":
        rules: List[ParameterRule] = []
        for section, params in mapping.items():
            for name, spec in params.items():
                rules.append(
                    ParameterRule(
                        name=str(name),
                        section=str(section),
                        type=str(spec.get("type", "number")),
                        min=spec.get("min"),
                        max=spec.get("max"),
                        step=spec.get("step"),
                        values=tuple(spec.get("values") or ()),
                    )
                )
        return cls(rules, [(str(low), str(high)) for low, high in pairs])

    def __iter__(self) -> Iterator[ParameterRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: object) -> bool:
        return name in self._rules

    @property
    def names(self) -> List[str]:
        return list(self._rules)

    @property
    def sections(self) -> List[str]:
        ordered: List[str] = []
        for rule in self._rules.values():
            if rule.section not in ordered:
                ordered.append(rule.section)
        return ordered

    @property
    def pairs(self) -> List[Tuple[str, str]]:
        return list(self._pairs)

    def rule(self, name: str) -> ParameterRule:
        try:
            return self._rules[name]
        except KeyError:
            raise KeyError(f"Unknown parameter: {name}") from None

    def section_of(self, name: str) -> str:
        return self.rule(name).section

    def params_in(self, section: str) -> List[str]:
        return [rule.name for rule in self._rules.values() if rule.section == section]

    # ------------------------------------------------------------------
    # Configuration access
    # ------------------------------------------------------------------
    def value(self, config: Mapping[str, Mapping[str, object]], name: str) -> Optional[object]:
        return (config.get(self.section_of(name)) or {}).get(name)

    def with_value(self, config: Mapping[str, Mapping[str, object]], name: str, value: object) -> Configuration:
        return self.with_values(config, {name: value})

    def with_values(self, config: Mapping[str, Mapping[str, object]], values: Mapping[str, object]) -> Configuration:
        updated = clone_config(config)
        for name, value in values.items():
            section = updated.setdefault(self.section_of(name), {})
            if value is None:
                section.pop(name, None)
            else:
                section[name] = value
        return updated

    def canonical(self, config: Optional[Mapping[str, Mapping[str, object]]]) -> Configuration:
        """Drop unknown sections/parameters and absent values, coerce known ones."""

        result: Configuration = {}
        for section, params in (config or {}).items():
            if not isinstance(params, Mapping):
                continue
            for name, value in params.items():
                rule = self._rules.get(name)
                if rule is None or rule.section != section or value is None:
                    continue
                try:
                    coerced = rule.coerce(value)
                except (TypeError, ValueError):
                    coerced = value
                result.setdefault(section, {})[name] = coerced
        return result

    def validate(self, config: Mapping[str, Mapping[str, object]]) -> List[str]:
        errors: List[str] = []
        for section, params in config.items():
            if not isinstance(params, Mapping):
                continue
            for name, value in params.items():
                rule = self._rules.get(name)
                if rule is None or value is None:
                    continue
                if not rule.contains(value):
                    errors.append(f"{name}={value!r} outside {rule.describe()}")
        for low, high in self._pairs:
            low_value = self.value(config, low)
            high_value = self.value(config, high)
            if low_value is None or high_value is None:
                continue
            try:
                if float(low_value) > float(high_value):
                    errors.append(f"{low}={low_value} exceeds {high}={high_value}")
            except (TypeError, ValueError):
                continue
        return errors

    def is_valid(self, config: Mapping[str, Mapping[str, object]]) -> bool:
        return not self.validate(config)

    # ------------------------------------------------------------------
    # Candidate values
    # ------------------------------------------------------------------
    def test_values(self, name: str, current: Optional[object] = None, step: Optional[float] = None) -> List[object]:
        """Return the coarse sweep candidates for ``name`` around ``current``.

        ``step`` overrides the rule step for the neighbour offsets.
        """

        rule = self.rule(name)
        if rule.type == "string":
            skip = None if current is None else str(current)
            return [value for value in rule.values if value != skip]

        base = rule.midpoint if current is None else float(current)
        step = float(rule.step) if step is None else float(step)
        quarter = float(rule.min) + 0.25 * rule.span
        three_quarter = float(rule.min) + 0.75 * rule.span
        if rule.type == "integer":
            quarter = math.floor(quarter)
            three_quarter = math.floor(three_quarter)
        raw = [
            base - 2 * step,
            base - step,
            base + step,
            base + 2 * step,
            float(rule.min),
            float(rule.max),
            quarter,
            three_quarter,
        ]
        return self._unique_clamped(rule, raw, base)

    def refined_values(self, name: str, current: Optional[object] = None, span: int = 3) -> List[object]:
        """Finer-grained values clustered around ``current`` for local refinement."""

        rule = self.rule(name)
        if rule.type == "string":
            values = list(rule.values)
            if current is None or str(current) not in values:
                return values[: span + 1]
            index = values.index(str(current))
            lower = max(0, index - span)
            return [value for value in values[lower:index + span + 1] if value != values[index]]

        base = rule.midpoint if current is None else float(current)
        fine = float(rule.step) / 2.0
        if rule.type == "integer":
            fine = max(1.0, math.floor(fine))
        raw = [base + offset * fine for offset in range(-span, span + 1) if offset != 0]
        return self._unique_clamped(rule, raw, base)

    @staticmethod
    def _unique_clamped(rule: ParameterRule, raw: Iterable[float], current: float) -> List[object]:
        current_value = rule.clamp(current)
        values: List[object] = []
        for candidate in raw:
            value = rule.clamp(candidate)
            if value == current_value or value in values:
                continue
            values.append(value)
        return values

    def random_value(self, name: str, rng: np.random.Generator) -> object:
        rule = self.rule(name)
        if rule.type == "string":
            return rule.values[int(rng.integers(len(rule.values)))]
        steps = int(math.floor(rule.span / float(rule.step)))
        offset = int(rng.integers(steps + 1)) * float(rule.step)
        return rule.clamp(float(rule.min) + offset)

    def perturb(self, name: str, value: Optional[object], rng: np.random.Generator, scale: float = 0.1) -> object:
        rule = self.rule(name)
        if rule.type == "string":
            choices = [option for option in rule.values if option != value]
            if not choices:
                return rule.values[0]
            return choices[int(rng.integers(len(choices)))]
        base = rule.midpoint if value is None else float(value)
        width = max(rule.span * scale, float(rule.step))
        return rule.clamp(base + rng.uniform(-width, width))

    def from_unit(self, name: str, unit: float) -> object:
        """Map ``unit`` in ``[0, 1)`` onto the parameter domain."""

        rule = self.rule(name)
        unit = min(max(float(unit), 0.0), 1.0)
        if rule.type == "string":
            return rule.values[min(int(unit * len(rule.values)), len(rule.values) - 1)]
        value = float(rule.min) + unit * rule.span
        if rule.type == "integer":
            value = math.floor(value)
        return rule.clamp(value)

    def suggest(self, trial: optuna.Trial, name: str) -> object:
        rule = self.rule(name)
        key = f"{rule.section}.{name}"
        if rule.type == "string":
            return trial.suggest_categorical(key, list(rule.values))
        if rule.type == "integer":
            return trial.suggest_int(key, int(rule.min), int(rule.max))
        return trial.suggest_float(key, float(rule.min), float(rule.max))

    def trial_key(self, name: str) -> str:
        return f"{self.section_of(name)}.{name}"


DEFAULT_RULES: Dict[str, Dict[str, Dict[str, object]]] = {
    "basic": {
        "Min MCAP (USD)": {"type": "integer", "min": 0, "max": 10000, "step": 1000},
        "Max MCAP (USD)": {"type": "integer", "min": 10000, "max": 60000, "step": 1000},
    },
    "tokenDetails": {
        "Min Deployer Age (min)": {"type": "integer", "min": 0, "max": 1440, "step": 5},
        "Max Token Age (min)": {"type": "integer", "min": 5, "max": 300, "step": 15},
        "Min AG Score": {"type": "string", "values": [str(score) for score in range(1, 11)]},
    },
    "wallets": {
        "Min Holders": {"type": "integer", "min": 1, "max": 5, "step": 1},
        "Max Holders": {"type": "integer", "min": 1, "max": 50, "step": 5},
        "Min Unique Wallets": {"type": "integer", "min": 1, "max": 3, "step": 1},
        "Max Unique Wallets": {"type": "integer", "min": 1, "max": 8, "step": 1},
        "Min KYC Wallets": {"type": "integer", "min": 0, "max": 3, "step": 1},
        "Max KYC Wallets": {"type": "integer", "min": 1, "max": 8, "step": 1},
    },
    "risk": {
        "Min Bundled %": {"type": "number", "min": 0, "max": 5, "step": 1},
        "Max Bundled %": {"type": "number", "min": 0, "max": 100, "step": 5},
        "Min Deployer Balance (SOL)": {"type": "number", "min": 0, "max": 50, "step": 2},
        "Min Buy Ratio %": {"type": "number", "min": 0, "max": 100, "step": 10},
        "Max Buy Ratio %": {"type": "number", "min": 50, "max": 100, "step": 5},
        "Min Vol MCAP %": {"type": "number", "min": 0, "max": 300, "step": 10},
        "Max Vol MCAP %": {"type": "number", "min": 50, "max": 300, "step": 20},
        "Max Drained %": {"type": "number", "min": 0, "max": 100, "step": 5},
        "Max Drained Count": {"type": "integer", "min": 0, "max": 100, "step": 5},
        "Description": {"type": "string", "values": ["Yes", "No"]},
        "Fresh Deployer": {"type": "string", "values": ["Yes", "No"]},
    },
    "advanced": {
        "Min TTC (sec)": {"type": "integer", "min": 0, "max": 3600, "step": 5},
        "Max TTC (sec)": {"type": "integer", "min": 5, "max": 3600, "step": 10},
        "Max Liquidity %": {"type": "number", "min": 10, "max": 100, "step": 10},
        "Min Win Pred %": {"type": "number", "min": 0, "max": 70, "step": 5},
    },
}

DEFAULT_MIN_MAX_PAIRS: List[Tuple[str, str]] = [
    ("Min MCAP (USD)", "Max MCAP (USD)"),
    ("Min Holders", "Max Holders"),
    ("Min Unique Wallets", "Max Unique Wallets"),
    ("Min KYC Wallets", "Max KYC Wallets"),
    ("Min Bundled %", "Max Bundled %"),
    ("Min Buy Ratio %", "Max Buy Ratio %"),
    ("Min Vol MCAP %", "Max Vol MCAP %"),
    ("Min TTC (sec)", "Max TTC (sec)"),
]

DEFAULT_SPACE = ParameterSpace.from_dict(DEFAULT_RULES, DEFAULT_MIN_MAX_PAIRS)

# Conservative starting point used when the caller supplies no configuration.
DEFAULT_BASELINE: Configuration = {
    "basic": {"Max MCAP (USD)": 50000},
    "tokenDetails": {"Min AG Score": "3"},
    "wallets": {"Min Unique Wallets": 1, "Max Unique Wallets": 8},
    "risk": {"Min Bundled %": 0, "Max Buy Ratio %": 100},
    "advanced": {"Max Liquidity %": 100},
}


# Named starting points explored alongside the incumbent best.
DEFAULT_PRESETS: Dict[str, Configuration] = {
    "conservative": {
        "basic": {"Min MCAP (USD)": 8000, "Max MCAP (USD)": 25000},
        "tokenDetails": {"Min AG Score": "7", "Max Token Age (min)": 30},
        "wallets": {"Min Unique Wallets": 2, "Max Unique Wallets": 4, "Min KYC Wallets": 3, "Max KYC Wallets": 6},
        "risk": {
            "Min Bundled %": 0.1,
            "Max Bundled %": 25,
            "Min Buy Ratio %": 65,
            "Max Vol MCAP %": 50,
            "Min Deployer Balance (SOL)": 2.0,
        },
        "advanced": {"Max Liquidity %": 60, "Min Win Pred %": 30},
    },
    "aggressive": {
        "basic": {"Min MCAP (USD)": 1000, "Max MCAP (USD)": 15000},
        "tokenDetails": {"Min AG Score": "4", "Max Token Age (min)": 60},
        "wallets": {"Min Unique Wallets": 1, "Max Unique Wallets": 8, "Min KYC Wallets": 0, "Max KYC Wallets": 3},
        "risk": {
            "Min Bundled %": 0,
            "Max Bundled %": 80,
            "Min Buy Ratio %": 40,
            "Max Vol MCAP %": 150,
            "Min Deployer Balance (SOL)": 0.5,
        },
        "advanced": {"Max Liquidity %": 90, "Min Win Pred %": 20},
    },
    "balanced": {
        "basic": {"Min MCAP (USD)": 3000, "Max MCAP (USD)": 35000},
        "tokenDetails": {"Min AG Score": "5", "Max Token Age (min)": 45},
        "wallets": {"Min Unique Wallets": 1, "Max Unique Wallets": 6, "Min KYC Wallets": 1, "Max KYC Wallets": 5},
        "risk": {
            "Min Bundled %": 0,
            "Max Bundled %": 50,
            "Min Buy Ratio %": 55,
            "Max Vol MCAP %": 100,
            "Min Deployer Balance (SOL)": 1.0,
        },
        "advanced": {"Max Liquidity %": 75, "Min Win Pred %": 30},
    },
    "microCap": {
        "basic": {"Min MCAP (USD)": 200, "Max MCAP (USD)": 10000},
        "tokenDetails": {"Min AG Score": "3", "Max Token Age (min)": 15, "Min Deployer Age (min)": 5},
        "wallets": {"Min Unique Wallets": 1, "Max Unique Wallets": 3, "Min KYC Wallets": 0, "Max KYC Wallets": 2},
        "risk": {"Min Bundled %": 0, "Max Bundled %": 100, "Min Buy Ratio %": 70, "Max Vol MCAP %": 300, "Fresh Deployer": "Yes"},
        "advanced": {"Max Liquidity %": 95, "Min Win Pred %": 15},
    },
    "oldDeployer": {"tokenDetails": {"Min Deployer Age (min)": 1440, "Min AG Score": "4"}},
}


def default_baseline() -> Configuration:
    return copy.deepcopy(DEFAULT_BASELINE)


__all__ = [
    "Configuration",
    "DEFAULT_BASELINE",
    "DEFAULT_MIN_MAX_PAIRS",
    "DEFAULT_PRESETS",
    "DEFAULT_RULES",
    "DEFAULT_SPACE",
    "ParameterRule",
    "ParameterSpace",
    "clone_config",
    "default_baseline",
]
