import math

import numpy as np
import pytest

from oracle.client import OracleError
from tuner.metrics import Metrics, Scorer
from tuner.space import DEFAULT_SPACE, ParameterSpace
from tuner.strategies.annealing import SimulatedAnnealingPhase, acceptance_probability
from tuner.strategies.base import AdaptiveSteps, SearchContext
from tuner.strategies.baseline import BaselinePhase
from tuner.strategies.bayesian import BayesianPhase
from tuner.strategies.correlated import DEFAULT_GROUPS, CorrelatedSweepPhase, pair_presets
from tuner.strategies.deep_dive import DeepDivePhase
from tuner.strategies.genetic import GeneticPhase
from tuner.strategies.lhs import LatinHypercubePhase, latin_hypercube
from tuner.strategies.starting_points import StartingPointsPhase
from tuner.strategies.sweep import ParameterSweepPhase

SPACE = ParameterSpace.from_dict(
    {
        "basic": {
            "Min Cap": {"type": "integer", "min": 0, "max": 100, "step": 10},
            "Max Cap": {"type": "integer", "min": 0, "max": 100, "step": 10},
        },
        "risk": {
            "Ratio %": {"type": "number", "min": 0, "max": 100, "step": 5},
            "Score": {"type": "string", "values": ["1", "2", "3"]},
        },
    },
    [("Min Cap", "Max Cap")],
)

BASE = {"basic": {"Min Cap": 20, "Max Cap": 80}, "risk": {"Ratio %": 50.0, "Score": "2"}}


class FakeOracle:
    def __init__(self, fn):
        self.fn = fn
        self.calls = []

    def evaluate(self, config):
        self.calls.append(config)
        return self.fn(config)


def _metrics(pnl: float, tokens: int = 200, win: float = 60.0) -> Metrics:
    return Metrics(token_count=tokens, pnl_percent=pnl, win_rate=win)


def _landscape(config) -> Metrics:
    ratio = float(config.get("risk", {}).get("Ratio %", 50))
    low = float(config.get("basic", {}).get("Min Cap", 0))
    return _metrics(60 - abs(ratio - 70) / 2 - abs(low - 30) / 5)


def _context(fn=_landscape, *, use_cache=True, seed=7):
    oracle = FakeOracle(fn)
    context = SearchContext(oracle, SPACE, Scorer("pnl", 10), use_cache=use_cache, rng=np.random.default_rng(seed))
    return context, oracle


def _with_baseline(fn=_landscape, **kwargs):
    context, oracle = _context(fn, **kwargs)
    best = BaselinePhase(BASE).run(None, context)
    return context, oracle, best


def _scores(context):
    return [record["score"] for record in context.history if record["score"] is not None]


def test_latin_hypercube_single_parameter_hits_every_decile():
    space = ParameterSpace.from_dict({"s": {"x": {"type": "number", "min": 0, "max": 100, "step": 1}}})
    points = latin_hypercube(10, 1, np.random.default_rng(3))
    values = [space.from_unit("x", unit) for unit in points[:, 0]]

    assert sorted(int(value // 10) for value in values) == list(range(10))


def test_latin_hypercube_stratifies_every_column_independently():
    points = latin_hypercube(8, 3, np.random.default_rng(11))
    for column in range(3):
        assert sorted(np.floor(points[:, column] * 8).astype(int).tolist()) == list(range(8))
    assert not np.array_equal(np.argsort(points[:, 0]), np.argsort(points[:, 1]))


def test_acceptance_probability_limits():
    assert acceptance_probability(0.0, 50.0) == 1.0
    assert acceptance_probability(3.0, 0.001) == 1.0
    assert acceptance_probability(-10.0, 0.0) == 0.0
    assert acceptance_probability(-10.0, 1e-6) < 1e-12
    assert acceptance_probability(-10.0, 100.0) == pytest.approx(math.exp(-0.1))
    assert acceptance_probability(-1.0, 1.0) < acceptance_probability(-1.0, 10.0)


def test_invalid_candidate_is_skipped_not_failed():
    context, oracle = _context()
    result = context.evaluate({"basic": {"Min Cap": 90, "Max Cap": 10}}, "test")

    assert result is None
    assert oracle.calls == []
    assert context.skipped_count == 1
    assert context.failed_count == 0


def test_oracle_error_is_counted_and_search_continues():
    def flaky(config):
        if config["risk"]["Score"] == "3":
            raise OracleError("HTTP 500")
        return _landscape(config)

    context, oracle, _ = _with_baseline(flaky)
    ParameterSweepPhase(["Score"]).run(context.best, context)

    assert context.failed_count == 1
    assert len(oracle.calls) == 3


def test_cache_hit_after_first_miss():
    context, oracle = _context()
    context.evaluate(BASE, "a")
    context.evaluate(dict(reversed(list(BASE.items()))), "b")

    assert len(oracle.calls) == 1
    assert (context.cache.hits, context.cache.misses) == (1, 1)
    assert context.history[-1]["cached"] is True


def test_disabled_cache_always_misses():
    context, oracle = _context(use_cache=False)
    context.evaluate(BASE, "a")
    context.evaluate(BASE, "b")

    assert len(oracle.calls) == 2
    assert (context.cache.hits, context.cache.misses) == (0, 2)
    assert len(context.cache) == 0


def test_sweep_records_effectiveness_and_labels_source():
    context, _, baseline = _with_baseline()
    best = ParameterSweepPhase().run(baseline, context)

    assert best.score > baseline.score
    assert best.source.startswith("Parameter: ")
    assert set(context.effectiveness) == set(SPACE.names)
    assert context.ranked_parameters(1) == ["Ratio %"]


def test_lhs_phase_varies_selected_parameters_only():
    context, oracle, _ = _with_baseline()
    LatinHypercubePhase(samples=5, parameters=["Ratio %"]).run(context.best, context)

    assert len(oracle.calls) <= 6
    for config in oracle.calls[1:]:
        assert config["basic"] == BASE["basic"]
        assert config["risk"]["Score"] == "2"


def test_annealing_never_lowers_the_global_best():
    context, _, baseline = _with_baseline()
    phase = SimulatedAnnealingPhase(initial_temperature=50.0, max_iterations=60)
    best = phase.run(baseline, context)

    recorded = [record["best_score"] for record in context.history]
    assert recorded == sorted(recorded)
    assert best.score == max(_scores(context))


def test_annealing_stops_at_temperature_floor():
    context, oracle, baseline = _with_baseline()
    SimulatedAnnealingPhase(initial_temperature=1.0, cooling_rate=0.5, min_temperature=0.2, max_iterations=100).run(
        baseline, context
    )
    assert len(oracle.calls) <= 1 + 3


def test_genetic_crossover_takes_sections_wholesale():
    context, _ = _context()
    phase = GeneticPhase()
    first = {"basic": {"Min Cap": 10, "Max Cap": 90}, "risk": {"Ratio %": 20.0}}
    second = {"basic": {"Min Cap": 40, "Max Cap": 60}, "risk": {"Ratio %": 80.0, "Score": "3"}}
    for _ in range(20):
        child = phase.crossover(context, first, second)
        assert child["basic"] in (first["basic"], second["basic"])
        assert child["risk"] in (first["risk"], second["risk"])


def test_genetic_phase_improves_on_seed():
    context, _, baseline = _with_baseline()
    best = GeneticPhase(population_size=8, generations=4).run(baseline, context)

    assert best.score >= baseline.score
    assert best.score == max(_scores(context))


def test_pair_presets_move_both_bounds_together():
    groups = pair_presets(SPACE, BASE)

    assert [group.name for group in groups] == ["Min Cap / Max Cap"]
    assert groups[0].presets == [
        {"Min Cap": 10, "Max Cap": 90},
        {"Min Cap": 30, "Max Cap": 70},
        {"Min Cap": 30, "Max Cap": 90},
        {"Min Cap": 10, "Max Cap": 70},
    ]


def test_default_correlated_presets_are_valid_configurations():
    for group in DEFAULT_GROUPS:
        for preset in group.presets:
            assert DEFAULT_SPACE.is_valid(DEFAULT_SPACE.with_values({}, preset))


def test_correlated_phase_labels_group_source():
    context, oracle, _ = _with_baseline()
    CorrelatedSweepPhase().run(context.best, context)

    sources = {record["source"] for record in context.history[1:]}
    assert sources == {"Correlated: Min Cap / Max Cap"}
    assert len(oracle.calls) == 5


def test_deep_dive_refines_top_ranked_parameter():
    context, _, baseline = _with_baseline()
    context.record_effect("Ratio %", 5.0)
    context.record_effect("Min Cap", 0.0)
    best = DeepDivePhase(top_k=1).run(baseline, context)

    sources = {record["source"] for record in context.history[1:]}
    assert sources == {"Deep Dive: Ratio %"}
    assert best.score > baseline.score


def test_deep_dive_without_effectiveness_is_a_no_op():
    context, oracle, baseline = _with_baseline()
    DeepDivePhase().run(baseline, context)
    assert len(oracle.calls) == 1


def test_bayesian_phase_explores_with_optuna():
    context, oracle, baseline = _with_baseline()
    best = BayesianPhase(n_trials=6, n_startup_trials=3, parameters=["Ratio %", "Min Cap"]).run(baseline, context)

    assert 1 < len(oracle.calls) <= 7
    assert best.score >= baseline.score
    assert {record["source"] for record in context.history[1:]} == {"Bayesian"}


def test_phases_stop_when_cancelled():
    context, oracle, baseline = _with_baseline()
    context.token.cancel()
    ParameterSweepPhase().run(baseline, context)
    GeneticPhase().run(baseline, context)

    assert len(oracle.calls) == 1


def test_deep_dive_ignores_parameters_without_gain():
    context, oracle, baseline = _with_baseline()
    context.record_effect("Ratio %", 0.0)
    DeepDivePhase().run(baseline, context)
    assert len(oracle.calls) == 1


CAP_SPACE = ParameterSpace.from_dict({"basic": {"Cap": {"type": "integer", "min": 0, "max": 100, "step": 10}}})


class ScriptedRng:
    """Generator stand-in with fixed perturbation offsets and acceptance draws."""

    def __init__(self, offsets, draw):
        self.offsets = list(offsets)
        self.draw = draw

    def integers(self, high):
        return 0

    def uniform(self, low, high):
        return self.offsets.pop(0)

    def random(self):
        return self.draw


def _cap_context(draw):
    pnl = {50: 20.0, 40: 10.0, 30: 30.0}
    oracle = FakeOracle(lambda config: _metrics(pnl[config["basic"]["Cap"]]))
    context = SearchContext(oracle, CAP_SPACE, Scorer("pnl", 10), rng=ScriptedRng([-10.0, -10.0], draw))
    BaselinePhase({"basic": {"Cap": 50}}).run(None, context)
    return context, oracle


def test_annealing_accepts_worse_move_without_touching_global_best():
    context, oracle = _cap_context(draw=0.0)
    SimulatedAnnealingPhase(initial_temperature=100.0, max_iterations=2).run(context.best, context)

    # The second neighbour is derived from the accepted worse state, not from the best.
    assert [config["basic"]["Cap"] for config in oracle.calls] == [50, 40, 30]
    assert [record["best_score"] for record in context.history] == [20.0, 20.0, 30.0]
    assert [record["source"] for record in context.history] == ["Baseline", "Simulated Annealing", "Simulated Annealing"]
    assert context.best.configuration == {"basic": {"Cap": 30}}
    assert context.best.source == "Simulated Annealing"


def test_annealing_rejected_move_keeps_working_state():
    context, oracle = _cap_context(draw=0.99)
    SimulatedAnnealingPhase(initial_temperature=100.0, max_iterations=2).run(context.best, context)

    assert [config["basic"]["Cap"] for config in oracle.calls] == [50, 40]
    assert context.history[-1]["cached"] is True
    assert context.best.score == 20.0
    assert context.best.source == "Baseline"


def test_adaptive_steps_widen_on_success_and_reset_on_failure():
    steps = AdaptiveSteps(SPACE)
    assert steps.step("Ratio %") == 5.0
    assert steps.step("Score") is None

    steps.record("Ratio %", True)
    assert steps.step("Ratio %") == 10.0
    for _ in range(9):
        steps.record("Ratio %", False)
    assert steps.step("Ratio %") == 10.0
    steps.record("Ratio %", False)
    assert steps.step("Ratio %") == 5.0

    steps.record("Min Cap", True)
    assert steps.step("Min Cap") == 10.0


def test_sweep_feeds_adaptive_step_sizes():
    context, _, baseline = _with_baseline()
    ParameterSweepPhase().run(baseline, context)

    assert context.steps.attempts["Ratio %"] == 8
    assert context.steps.successes["Ratio %"] == 3
    assert context.step_for("Ratio %") == 10.0


def test_adaptive_steps_can_be_disabled():
    oracle = FakeOracle(_landscape)
    context = SearchContext(oracle, SPACE, Scorer("pnl", 10), adaptive_steps=False)
    context.record_attempt("Ratio %", True)
    assert context.step_for("Ratio %") is None


def test_starting_points_score_presets_and_nearby_values():
    context, oracle, _ = _with_baseline()
    presets = {
        "wide": {"basic": {"Min Cap": 30, "Max Cap": 90}, "risk": {"Ratio %": 70.0}},
        "foreign": {"other": {"X": 1}},
        "inverted": {"basic": {"Min Cap": 90, "Max Cap": 10}},
    }
    best = StartingPointsPhase(presets, variations=2).run(context.best, context)

    assert oracle.calls[1] == {"basic": {"Min Cap": 30, "Max Cap": 90}, "risk": {"Ratio %": 70.0}}
    assert [config["basic"]["Min Cap"] for config in oracle.calls[2:]] == [10, 20]
    assert [record["source"] for record in context.history[1:]] == [
        "Starting Point: wide",
        "Starting Point: wide / Min Cap",
        "Starting Point: wide / Min Cap",
    ]
    assert context.skipped_count == 1
    assert best.score == 60.0
    assert best.source == "Starting Point: wide"
