"""Unit tests for the optimization harness

Tests verify that:
1. Range/choice parameters enumerate the expected values
2. Grid search runs every combination once, in enumeration order
3. Parallel runs give the same results and winner as sequential runs
4. Random search is seeded and samples without replacement
5. Failures, unsupported methods and cancellation are handled per combination
"""

import pytest

from tradesim.config import OptimizationConfig
from tradesim.errors import OptimizationMethodUnsupported
from tradesim.events import CancellationToken, EventBus, OptimizationCompleted, OptimizationProgress
from tradesim.grid_search import (
    ChoiceParameter,
    OptimizationEngine,
    OptimizationResult,
    ParameterSpace,
    RangeParameter,
    generate_grid,
    sample_random,
    select_best,
)
from tradesim.analytics import MetricsRecord

from helpers import AlternatingStrategy, SizedBuyStrategy, StopLevelStrategy, make_config, rising_candles


SIZE_SPACE = {"size": {"type": "range", "min": 0, "max": 10, "step": 2}}


def make_optimizer(event_bus=None, **optimization) -> OptimizationEngine:
    optimization.setdefault("n_jobs", 1)
    config = make_config(optimization=OptimizationConfig(**optimization))
    return OptimizationEngine(config, event_bus=event_bus)


def test_range_parameter_includes_both_bounds():
    """Test 1: Repeated addition keeps the upper bound despite float drift"""
    assert RangeParameter(0, 10, 2).values() == [0, 2, 4, 6, 8, 10]
    assert len(RangeParameter(0.1, 0.3, 0.1).values()) == 3
    assert RangeParameter(5, 5, 1).values() == [5]

    with pytest.raises(ValueError):
        RangeParameter(0, 10, 0)


def test_parameter_space_from_dict():
    """Test 2: Dict, list and scalar forms are accepted"""
    space = ParameterSpace.from_dict({
        "fast": {"type": "range", "min": 5, "max": 15, "step": 5},
        "slow": {"type": "choice", "values": [50, 100]},
        "mode": ["a", "b"],
        "fixed": 3,
    })

    assert isinstance(space.parameters["fast"], RangeParameter)
    assert isinstance(space.parameters["slow"], ChoiceParameter)
    assert space.parameters["fixed"].values() == [3]
    assert space.size == 3 * 2 * 2 * 1


def test_grid_is_depth_first_cross_product():
    """Test 3: First parameter varies slowest"""
    space = ParameterSpace.from_dict({"a": [1, 2], "b": [3, 4]})

    assert generate_grid(space) == [
        {"a": 1, "b": 3},
        {"a": 1, "b": 4},
        {"a": 2, "b": 3},
        {"a": 2, "b": 4},
    ]


def test_grid_search_runs_every_combination():
    """Test 4: Range [0, 10] step 2 -> 6 runs, best is the largest size"""
    print("\n" + "=" * 80)
    print("TEST 4: Grid search over size")
    print("=" * 80)

    report = make_optimizer().optimize(
        SizedBuyStrategy, rising_candles(30), SIZE_SPACE, method="grid", objective="returns"
    )

    for result in report.results:
        print(f"{result.parameters} -> {result.score('returns'):.6f}")

    assert report.total_combinations == 6
    assert len(report.results) == 6
    assert [r.parameters["size"] for r in report.results] == [0, 2, 4, 6, 8, 10]
    assert report.best.parameters["size"] == 10
    assert report.failed == 0
    assert not report.cancelled


def test_parallel_threads_match_sequential():
    """Test 5: n_jobs=4 on threads gives identical ordered results"""
    candles = rising_candles(30)
    sequential = make_optimizer().optimize(SizedBuyStrategy, candles, SIZE_SPACE, objective="returns")
    parallel = make_optimizer(n_jobs=4, executor="thread").optimize(
        SizedBuyStrategy, candles, SIZE_SPACE, objective="returns"
    )

    assert [r.parameters for r in parallel.results] == [r.parameters for r in sequential.results]
    assert [r.metrics.total_return for r in parallel.results] == pytest.approx(
        [r.metrics.total_return for r in sequential.results]
    )
    assert parallel.best.parameters == sequential.best.parameters


def test_best_is_first_seen_maximum():
    """Test 6: Ties keep the earlier combination"""
    results = [
        OptimizationResult({"x": 1}, MetricsRecord(sharpe_ratio=1.0)),
        OptimizationResult({"x": 2}, MetricsRecord(sharpe_ratio=2.0)),
        OptimizationResult({"x": 3}, MetricsRecord(sharpe_ratio=2.0)),
        OptimizationResult({"x": 4}, MetricsRecord(sharpe_ratio=float("nan"))),
    ]

    assert select_best(results, "sharpe").parameters == {"x": 2}
    assert select_best([], "sharpe") is None


def test_random_search_is_seeded_and_distinct():
    """Test 7: Same seed -> same sample, no duplicates"""
    space = ParameterSpace.from_dict({"a": list(range(10)), "b": list(range(10))})

    first = sample_random(space, 15, seed=7)
    second = sample_random(space, 15, seed=7)

    assert first == second
    assert len(first) == 15
    assert len({(p["a"], p["b"]) for p in first}) == 15


def test_random_search_falls_back_to_full_grid():
    """Test 8: Asking for more samples than exist returns the grid"""
    space = ParameterSpace.from_dict({"a": [1, 2, 3]})
    assert sample_random(space, 100, seed=1) == generate_grid(space)


def test_random_method_respects_max_iterations():
    """Test 9: optimize(method="random") evaluates max_iterations combinations"""
    report = make_optimizer(max_iterations=3, seed=11).optimize(
        SizedBuyStrategy, rising_candles(30), SIZE_SPACE, method="random", objective="returns"
    )

    assert report.method == "random"
    assert report.total_combinations == 3
    assert len(report.results) == 3


def test_unsupported_method_fails_before_any_run():
    """Test 10: Unknown method raises without invoking the template"""
    calls = []

    def template(params):
        calls.append(params)
        return SizedBuyStrategy(params)

    with pytest.raises(OptimizationMethodUnsupported):
        make_optimizer().optimize(template, rising_candles(10), SIZE_SPACE, method="genetic")

    with pytest.raises(ValueError):
        make_optimizer().optimize(template, rising_candles(10), SIZE_SPACE, objective="luck")

    assert calls == []


def test_failed_combination_is_counted_and_skipped():
    """Test 11: StrategyFault in one combination does not stop the search"""
    space = {"size": [1, 2, 3], "fail_on": [2]}

    report = make_optimizer().optimize(SizedBuyStrategy, rising_candles(20), space, objective="returns")

    assert report.failed == 1
    assert [r.parameters["size"] for r in report.results] == [1, 3]
    assert report.best.parameters["size"] == 3


def test_cancellation_between_combinations():
    """Test 12: A cancelled token stops the search after the current run"""
    bus = EventBus()
    token = CancellationToken()
    bus.subscribe(OptimizationProgress, lambda event: token.cancel() if event.completed == 2 else None)

    report = make_optimizer(event_bus=bus).optimize(
        SizedBuyStrategy, rising_candles(20), SIZE_SPACE, cancel_token=token, objective="returns"
    )

    assert len(report.results) == 2
    assert report.cancelled


def test_progress_and_completion_events():
    """Test 13: One progress event per combination plus a completion event"""
    bus = EventBus()
    progress, completed = [], []
    bus.subscribe(OptimizationProgress, progress.append)
    bus.subscribe(OptimizationCompleted, completed.append)

    make_optimizer(event_bus=bus).optimize(SizedBuyStrategy, rising_candles(20), SIZE_SPACE, objective="returns")

    assert [e.completed for e in progress] == [1, 2, 3, 4, 5, 6]
    assert len(completed) == 1
    assert completed[0].best_parameters["size"] == 10


def test_report_top_and_dataframe():
    """Test 14: top(n) sorts by objective, to_dataframe has one row per result"""
    report = make_optimizer().optimize(SizedBuyStrategy, rising_candles(20), SIZE_SPACE, objective="returns")

    top = report.top(3)
    assert [r.parameters["size"] for r in top] == [10, 8, 6]

    df = report.to_dataframe()
    assert len(df) == 6
    assert "param_size" in df.columns
    assert "metric_total_return" in df.columns


def test_compare_strategies():
    """Test 15: Each template runs once with defaults"""
    result = make_optimizer().compare_strategies(
        {"buy_and_hold": SizedBuyStrategy, "alternating": AlternatingStrategy},
        rising_candles(40),
        objective="returns"
    )

    assert set(result["metrics"]) == {"buy_and_hold", "alternating"}
    assert result["best"] in result["metrics"]
    assert result["failed"] == []


def test_malformed_signal_does_not_fail_the_combination():
    """Test 16: A combination emitting an invalid stop-loss is scored, not aborted"""
    space = {"stop_loss": ["95", 50]}

    report = make_optimizer().optimize(StopLevelStrategy, rising_candles(20), space, objective="returns")

    assert report.failed == 0
    assert [r.parameters["stop_loss"] for r in report.results] == ["95", 50]
    assert report.results[0].metrics.total_trades == 0
    assert report.results[1].metrics.total_trades == 1
    assert report.best.parameters["stop_loss"] == 50
