import math

import pytest

from tuner.metrics import (
    SCORING_MODES,
    Metrics,
    Scorer,
    WinRateThresholds,
    min_tokens_for_range,
    register_scoring_mode,
    score_metrics,
)


def test_rejects_below_min_tokens_regardless_of_pnl():
    result = score_metrics(Metrics(token_count=49, pnl_percent=500.0, win_rate=90.0), min_tokens=50)

    assert result.rejected
    assert result.score is None
    assert "Insufficient tokens" in result.rejection_reason


def test_accepts_at_exact_min_tokens():
    result = score_metrics(Metrics(token_count=50, pnl_percent=10.0, win_rate=90.0), min_tokens=50)
    assert result.admissible


@pytest.mark.parametrize(
    "tokens,rejected",
    [(200, True), (499, True), (500, True), (999, True), (1000, False), (1200, False)],
)
def test_win_rate_floor_depends_on_sample_tier(tokens, rejected):
    result = score_metrics(Metrics(token_count=tokens, pnl_percent=40.0, win_rate=32.0), min_tokens=10)
    assert result.rejected is rejected


def test_medium_tier_uses_medium_floor():
    thresholds = WinRateThresholds(small_sample=35.0, medium_sample=30.0, large_sample=25.0)
    assert score_metrics(Metrics(600, 10.0, 32.0), 10, thresholds).admissible
    assert score_metrics(Metrics(200, 10.0, 32.0), 10, thresholds).rejected


def test_real_win_rate_takes_precedence():
    metrics = Metrics(token_count=1200, pnl_percent=40.0, win_rate=60.0, real_win_rate=20.0)
    result = score_metrics(metrics, min_tokens=10)
    assert result.rejected
    assert result.raw_score == pytest.approx(8.0)


@pytest.mark.parametrize(
    "mode,expected",
    [
        ("composite", 50.0 * 0.6),
        ("pnl", 50.0),
        ("tp_only", 50.0),
        ("win_rate", 70.0),
        ("real_win_rate", 60.0),
        ("robust", (50.0 * 0.6 + 60.0 * 0.4) * 1.0),
    ],
)
def test_scoring_modes(mode, expected):
    metrics = Metrics(token_count=100, pnl_percent=50.0, win_rate=70.0, real_win_rate=60.0)
    result = Scorer(mode, min_tokens=10).score({"basic": {"x": 1}}, metrics)

    assert result.score == pytest.approx(expected)
    assert result.configuration == {"basic": {"x": 1}}


def test_robust_mode_discounts_small_samples():
    small = score_metrics(Metrics(20, 50.0, 60.0), 10, mode="robust").score
    large = score_metrics(Metrics(2000, 50.0, 60.0), 10, WinRateThresholds(large_sample=0), mode="robust").score
    reliability = math.log(20) / math.log(100)
    assert small == pytest.approx(54.0 * (0.7 + 0.3 * reliability))
    assert large == pytest.approx(54.0)


def test_unknown_mode_raises():
    with pytest.raises(ValueError):
        Scorer("sharpe")


def test_register_scoring_mode(monkeypatch):
    monkeypatch.setattr("tuner.metrics.SCORING_MODES", dict(SCORING_MODES))
    register_scoring_mode("double_pnl", lambda metrics: metrics.pnl_percent * 2)

    assert score_metrics(Metrics(100, 12.0, 80.0), 10, mode="double_pnl").score == pytest.approx(24.0)


def test_metrics_from_payload_accepts_oracle_field_names():
    metrics = Metrics.from_payload(
        {"totalTokens": 120, "tpPnlPercent": "35.5", "winRate": 55, "realWinRate": 48, "avgPnl": 3.2}
    )

    assert metrics.token_count == 120
    assert metrics.pnl_percent == pytest.approx(35.5)
    assert metrics.effective_win_rate == pytest.approx(48.0)
    assert metrics.extras == {"avgPnl": 3.2}


@pytest.mark.parametrize(
    "payload",
    [
        {"pnlPercent": 10, "winRate": 50},
        {"tokenCount": 10, "pnlPercent": float("nan"), "winRate": 50},
        {"tokenCount": "many", "pnlPercent": 1, "winRate": 50},
        {"tokenCount": -1, "pnlPercent": 1, "winRate": 50},
        ["not", "a", "mapping"],
    ],
)
def test_metrics_from_payload_rejects_bad_shapes(payload):
    with pytest.raises(ValueError):
        Metrics.from_payload(payload)


def test_min_tokens_scale_with_date_range():
    assert min_tokens_for_range(7, 70, 10) == 490
    assert min_tokens_for_range(None, 70, 10) == 10
    assert min_tokens_for_range(1, 5, 10) == 10
    assert min_tokens_for_range(3, 0, 25) == 25


def test_win_rate_thresholds_from_dict():
    thresholds = WinRateThresholds.from_dict({"small_sample": 35, "large_threshold": 2000})
    assert thresholds.floor_for(100) == 35.0
    assert thresholds.floor_for(1500) == 40.0
    assert thresholds.floor_for(2000) == 30.0
