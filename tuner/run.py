"""Run orchestration: phased optimisation runs, chained runs and the command line entry point."""
from __future__ import annotations

import argparse
import logging
import signal
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np
import yaml

from oracle.client import HttpTransport, OracleError, RateLimitedOracle, RateLimitExhausted
from tuner.cache import JsonFileStore, ResultCache, cache_namespace
from tuner.control import CancellationToken, RunBudget
from tuner.metrics import Metrics, Scorer, WinRateThresholds, min_tokens_for_range, normalise_scoring_mode
from tuner.report import write_chain_report
from tuner.space import DEFAULT_SPACE, Configuration, ParameterSpace, clone_config
from tuner.strategies.annealing import SimulatedAnnealingPhase
from tuner.strategies.base import BestState, SearchContext, SearchPhase
from tuner.strategies.baseline import BaselineError, BaselinePhase
from tuner.strategies.bayesian import BayesianPhase
from tuner.strategies.correlated import CorrelatedSweepPhase
from tuner.strategies.deep_dive import DeepDivePhase
from tuner.strategies.genetic import GeneticPhase
from tuner.strategies.lhs import LatinHypercubePhase
from tuner.strategies.starting_points import StartingPointsPhase
from tuner.strategies.sweep import ParameterSweepPhase

LOGGER = logging.getLogger("tuner")


def load_yaml(path: Optional[Path]) -> Dict[str, object]:
    if path is None or not Path(path).exists():
        return {}
    with Path(path).open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _configure_logging(log_dir: Path) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / "run.log", mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)


@dataclass
class PhaseToggles:
    latin_hypercube: bool = True
    correlated: bool = True
    annealing: bool = True
    genetic: bool = True
    bayesian: bool = False
    starting_points: bool = True
    deep_dive: bool = True

    @classmethod
    def from_dict(cls, cfg: Optional[Mapping[str, object]]) -> "PhaseToggles":
        cfg = cfg or {}
        defaults = cls()
        return cls(**{item.name: bool(cfg.get(item.name, getattr(defaults, item.name))) for item in fields(cls)})


@dataclass
class RunSettings:
    """Tunable run parameters; everything here is configuration, not code."""

    target_score: float = 100.0
    max_runtime_min: float = 30.0
    min_tokens: int = 10
    min_tokens_per_day: float = 0.0
    date_range_days: Optional[float] = None
    win_rate: WinRateThresholds = field(default_factory=WinRateThresholds)
    scoring_mode: str = "composite"
    use_cache: bool = True
    adaptive_steps: bool = True
    cache_capacity: int = 1000
    chain_runs: int = 3
    run_minutes: float = 15.0
    phases: PhaseToggles = field(default_factory=PhaseToggles)
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        self.scoring_mode = normalise_scoring_mode(self.scoring_mode)
        if self.max_runtime_min <= 0 or self.run_minutes <= 0:
            raise ValueError("Runtime budgets must be positive")
        if self.chain_runs < 1:
            raise ValueError("chain_runs must be at least 1")

    @classmethod
    def from_dict(cls, cfg: Optional[Mapping[str, object]]) -> "RunSettings":
        cfg = cfg or {}
        chain = cfg.get("chain") or {}
        days = cfg.get("date_range_days")
        seed = cfg.get("seed")
        return cls(
            target_score=float(cfg.get("target_score", 100.0)),
            max_runtime_min=float(cfg.get("max_runtime_min", 30.0)),
            min_tokens=int(cfg.get("min_tokens", 10)),
            min_tokens_per_day=float(cfg.get("min_tokens_per_day", 0.0)),
            date_range_days=float(days) if days is not None else None,
            win_rate=WinRateThresholds.from_dict(cfg.get("win_rate")),
            scoring_mode=str(cfg.get("scoring_mode", "composite")),
            use_cache=bool(cfg.get("use_cache", True)),
            adaptive_steps=bool(cfg.get("adaptive_steps", True)),
            cache_capacity=int(cfg.get("cache_capacity", 1000)),
            chain_runs=int(chain.get("runs", 3)),
            run_minutes=float(chain.get("run_minutes", 15.0)),
            phases=PhaseToggles.from_dict(cfg.get("phases")),
            seed=int(seed) if seed is not None else None,
        )

    @property
    def min_token_threshold(self) -> int:
        return min_tokens_for_range(self.date_range_days, self.min_tokens_per_day, self.min_tokens)

    def scorer(self) -> Scorer:
        return Scorer(self.scoring_mode, self.min_token_threshold, self.win_rate)


def default_phases(toggles: PhaseToggles) -> List[SearchPhase]:
    phases: List[SearchPhase] = [ParameterSweepPhase()]
    if toggles.latin_hypercube:
        phases.append(LatinHypercubePhase())
    if toggles.correlated:
        phases.append(CorrelatedSweepPhase())
    if toggles.annealing:
        phases.append(SimulatedAnnealingPhase())
    if toggles.genetic:
        phases.append(GeneticPhase())
    if toggles.bayesian:
        phases.append(BayesianPhase())
    if toggles.starting_points:
        phases.append(StartingPointsPhase())
    if toggles.deep_dive:
        phases.append(DeepDivePhase())
    return phases


@dataclass
class RunResult:
    best_config: Configuration
    best_score: float
    best_metrics: Optional[Metrics]
    best_source: str
    test_count: int
    failed_count: int
    skipped_count: int
    runtime: float
    target_achieved: bool
    parameter_effectiveness: List[Dict[str, object]]
    history: List[Dict[str, object]] = field(default_factory=list)
    cache_stats: Dict[str, object] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def best_state(self) -> BestState:
        return BestState(clone_config(self.best_config), self.best_score, self.best_metrics, self.best_source)

    def summary(self) -> Dict[str, object]:
        return {
            "best_score": self.best_score,
            "best_source": self.best_source,
            "best_metrics": self.best_metrics.to_dict() if self.best_metrics is not None else None,
            "test_count": self.test_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "runtime": round(self.runtime, 3),
            "target_achieved": self.target_achieved,
            "cancelled": self.cancelled,
            "cache": self.cache_stats,
        }


class OptimizationRun:
    """Execute the baseline and every enabled phase under one time budget."""

    def __init__(
        self,
        oracle,
        settings: Optional[RunSettings] = None,
        *,
        space: ParameterSpace = DEFAULT_SPACE,
        cache: Optional[ResultCache] = None,
        token: Optional[CancellationToken] = None,
        rng: Optional[np.random.Generator] = None,
        phases: Optional[Sequence[SearchPhase]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.oracle = oracle
        self.settings = settings or RunSettings()
        self.space = space
        self.cache = cache if cache is not None else ResultCache(self.settings.cache_capacity, space=space)
        self.token = token or CancellationToken()
        self.rng = rng or np.random.default_rng(self.settings.seed)
        self.phases = list(phases) if phases is not None else default_phases(self.settings.phases)
        self._clock = clock

    def execute(
        self,
        initial: Optional[Configuration] = None,
        seed: Optional[BestState] = None,
        runtime_seconds: Optional[float] = None,
    ) -> RunResult:
        started = self._clock()
        budget = RunBudget(runtime_seconds or self.settings.max_runtime_min * 60.0, self._clock)
        context = SearchContext(
            self.oracle,
            self.space,
            self.settings.scorer(),
            cache=self.cache,
            use_cache=self.settings.use_cache,
            budget=budget,
            token=self.token,
            rng=self.rng,
            target_score=self.settings.target_score,
            adaptive_steps=self.settings.adaptive_steps,
        )

        best = BaselinePhase(initial).run(seed, context)
        for phase in self.phases:
            if context.should_stop():
                break
            if not phase.can_start(context):
                LOGGER.info(
                    "Skipping %s (%.0f%% of budget left)", phase.name, budget.remaining_fraction * 100
                )
                continue
            LOGGER.info("Starting %s from score %.2f", phase.name, context.best.score)
            best = phase.run(best, context)

        best = context.best
        runtime = self._clock() - started
        LOGGER.info(
            "Run finished: best %.2f from %s after %d tests (%d failed, %d skipped) in %.1fs",
            best.score,
            best.source,
            context.test_count,
            context.failed_count,
            context.skipped_count,
            runtime,
        )
        return RunResult(
            best_config=clone_config(best.configuration),
            best_score=best.score,
            best_metrics=best.metrics,
            best_source=best.source,
            test_count=context.test_count,
            failed_count=context.failed_count,
            skipped_count=context.skipped_count,
            runtime=runtime,
            target_achieved=context.target_reached,
            parameter_effectiveness=context.effectiveness_report(10),
            history=context.history,
            cache_stats=self.cache.stats(),
            cancelled=self.token.cancelled,
        )


@dataclass
class ChainRunRecord:
    run_number: int
    result: Optional[RunResult] = None
    error: Optional[str] = None
    seed_score: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None


@dataclass
class ChainResult:
    runs: List[ChainRunRecord]
    best_config: Optional[Configuration]
    best_score: Optional[float]
    best_metrics: Optional[Metrics]
    best_source: Optional[str]
    total_tests: int
    target_achieved: bool
    runtime: float

    def summary(self) -> Dict[str, object]:
        return {
            "best_score": self.best_score,
            "best_source": self.best_source,
            "best_metrics": self.best_metrics.to_dict() if self.best_metrics is not None else None,
            "total_tests": self.total_tests,
            "target_achieved": self.target_achieved,
            "runtime": round(self.runtime, 3),
            "runs": [
                {
                    "run": record.run_number,
                    "seed_score": record.seed_score,
                    "score": record.result.best_score if record.result is not None else None,
                    "tests": record.result.test_count if record.result is not None else 0,
                    "error": record.error,
                }
                for record in self.runs
            ],
        }


RunFactory = Callable[[int], OptimizationRun]


class ChainedRun:
    """Sequence of runs where every run after the first is seeded with the global best."""

    def __init__(
        self,
        oracle,
        settings: Optional[RunSettings] = None,
        *,
        space: ParameterSpace = DEFAULT_SPACE,
        cache: Optional[ResultCache] = None,
        token: Optional[CancellationToken] = None,
        run_factory: Optional[RunFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.oracle = oracle
        self.settings = settings or RunSettings()
        self.space = space
        self.cache = cache if cache is not None else ResultCache(self.settings.cache_capacity, space=space)
        self.token = token or CancellationToken()
        self.rng = np.random.default_rng(self.settings.seed)
        self.run_factory = run_factory or self._build_run
        self._clock = clock

    def _build_run(self, run_number: int) -> OptimizationRun:
        return OptimizationRun(
            self.oracle,
            self.settings,
            space=self.space,
            cache=self.cache,
            token=self.token,
            rng=self.rng,
            clock=self._clock,
        )

    def execute(self, initial: Optional[Configuration] = None) -> ChainResult:
        started = self._clock()
        records: List[ChainRunRecord] = []
        global_best: Optional[BestState] = None
        total_tests = 0
        slice_seconds = self.settings.run_minutes * 60.0

        for run_number in range(1, self.settings.chain_runs + 1):
            if self.token.cancelled:
                LOGGER.info("Chain cancelled before run %d", run_number)
                break
            seed = global_best.copy() if global_best is not None else None
            record = ChainRunRecord(run_number, seed_score=seed.score if seed is not None else None)
            records.append(record)
            LOGGER.info(
                "Chain run %d/%d starting from %s",
                run_number,
                self.settings.chain_runs,
                "baseline" if seed is None else f"score {seed.score:.2f}",
            )
            try:
                result = self.run_factory(run_number).execute(
                    initial=initial if seed is None else None,
                    seed=seed,
                    runtime_seconds=slice_seconds,
                )
            except RateLimitExhausted as exc:
                record.error = str(exc)
                LOGGER.error("Chain run %d aborted: %s", run_number, exc)
                break
            except (BaselineError, OracleError) as exc:
                record.error = str(exc)
                LOGGER.error("Chain run %d failed: %s", run_number, exc)
                continue

            record.result = result
            total_tests += result.test_count
            if global_best is None or result.best_score > global_best.score:
                global_best = result.best_state
                LOGGER.info("Chain best improved to %.2f in run %d", global_best.score, run_number)
            if global_best.score >= self.settings.target_score:
                LOGGER.info("Target %.2f reached after run %d", self.settings.target_score, run_number)
                break

        return ChainResult(
            runs=records,
            best_config=clone_config(global_best.configuration) if global_best is not None else None,
            best_score=global_best.score if global_best is not None else None,
            best_metrics=global_best.metrics if global_best is not None else None,
            best_source=global_best.source if global_best is not None else None,
            total_tests=total_tests,
            target_achieved=global_best is not None and global_best.score >= self.settings.target_score,
            runtime=self._clock() - started,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tune filter configuration against a backtest oracle")
    parser.add_argument("--config", type=Path, default=Path("config/tuner.yaml"))
    parser.add_argument("--initial", type=Path, help="YAML file with the starting configuration")
    parser.add_argument("--output", type=Path, default=Path("reports"))
    parser.add_argument("--runs", type=int, help="Override chain run count")
    parser.add_argument("--run-minutes", type=float, help="Override per-run time slice")
    parser.add_argument("--target", type=float, help="Override target score")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--no-cache", action="store_true", help="Always call the oracle")
    parser.add_argument("--cache-dir", type=Path, help="Persist the result cache in this directory")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def execute(args: argparse.Namespace) -> ChainResult:
    cfg = load_yaml(args.config)
    run_cfg = dict(cfg.get("run") or {})
    chain_cfg = dict(run_cfg.get("chain") or {})
    if args.runs is not None:
        chain_cfg["runs"] = args.runs
    if args.run_minutes is not None:
        chain_cfg["run_minutes"] = args.run_minutes
    run_cfg["chain"] = chain_cfg
    if args.target is not None:
        run_cfg["target_score"] = args.target
    if args.seed is not None:
        run_cfg["seed"] = args.seed
    if args.no_cache:
        run_cfg["use_cache"] = False
    settings = RunSettings.from_dict(run_cfg)

    space = DEFAULT_SPACE
    if cfg.get("space"):
        space = ParameterSpace.from_dict(cfg["space"], cfg.get("pairs") or [])

    output_dir = Path(args.output)
    _configure_logging(output_dir)

    oracle_cfg = cfg.get("oracle") or {}
    transport = HttpTransport.from_settings(oracle_cfg)
    store = JsonFileStore(args.cache_dir) if args.cache_dir else None
    namespace = cache_namespace({"url": transport.base_url, "params": transport.static_params})
    cache = ResultCache(settings.cache_capacity, space=space, store=store, namespace=namespace)
    cache.load()

    token = CancellationToken()
    signal.signal(signal.SIGINT, lambda *_: token.cancel())

    oracle = RateLimitedOracle.from_settings(transport, oracle_cfg, token=token)
    initial = load_yaml(args.initial) if args.initial else None

    chain = ChainedRun(oracle, settings, space=space, cache=cache, token=token)
    result = chain.execute(initial or None)
    cache.save()
    write_chain_report(result, output_dir)
    LOGGER.info(
        "Chain complete: best %s after %d tests. Outputs saved to %s",
        "n/a" if result.best_score is None else f"{result.best_score:.2f}",
        result.total_tests,
        output_dir,
    )
    return result


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for ``python -m tuner.run``."""

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    execute(parse_args(argv))


__all__ = [
    "ChainResult",
    "ChainRunRecord",
    "ChainedRun",
    "OptimizationRun",
    "PhaseToggles",
    "RunResult",
    "RunSettings",
    "default_phases",
    "execute",
    "load_yaml",
    "main",
    "parse_args",
]


if __name__ == "__main__":
    main()
