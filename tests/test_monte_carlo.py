"""Unit tests for Monte Carlo trade resampling"""

import numpy as np
import pytest

from tradesim.config import MonteCarloConfig
from tradesim.events import CancellationToken, EventBus, MonteCarloProgress
from tradesim.monte_carlo import MonteCarloSimulator, confidence_interval, fisher_yates

from helpers import make_trade


PNLS = [120.0, -80.0, 45.0, -150.0, 60.0, 30.0, -20.0, 90.0, -60.0, 15.0]


def make_trades(pnls=PNLS):
    return [make_trade(p) for p in pnls]


def test_seeded_results_are_reproducible():
    """Test 1: Same seed -> identical runs"""
    config = MonteCarloConfig(simulations=200, seed=42)

    first = MonteCarloSimulator(config).resample(make_trades(), 10000)
    second = MonteCarloSimulator(config).resample(make_trades(), 10000)

    assert first.runs == second.runs
    assert first.returns == second.returns


def test_results_independent_of_worker_count():
    """Test 2: n_jobs=4 gives the same per-iteration results as n_jobs=1"""
    sequential = MonteCarloSimulator(MonteCarloConfig(simulations=300, seed=7, n_jobs=1))
    threaded = MonteCarloSimulator(MonteCarloConfig(simulations=300, seed=7, n_jobs=4))

    assert sequential.resample(make_trades(), 10000).runs == threaded.resample(make_trades(), 10000).runs


def test_final_equity_is_order_independent():
    """Test 3: Every permutation ends at initial balance + total P&L"""
    result = MonteCarloSimulator(MonteCarloConfig(simulations=50, seed=1)).resample(make_trades(), 10000)

    expected = 10000 + sum(PNLS)
    assert all(run.final_equity == pytest.approx(expected) for run in result.runs)
    assert result.returns.std == pytest.approx(0.0, abs=1e-12)
    # Sequencing changes the path, so drawdowns vary
    assert result.drawdowns.max > result.drawdowns.min


def test_empty_ledger_gives_flat_runs():
    """Test 4: No trades -> zero return and drawdown in every run"""
    result = MonteCarloSimulator(MonteCarloConfig(simulations=20, seed=3)).resample([], 5000)

    assert len(result.runs) == 20
    assert all(run.final_equity == 5000 for run in result.runs)
    assert result.returns.mean == 0.0
    assert result.expected_drawdown == 0.0
    assert result.probability_of_ruin == 0.0


def test_probability_of_ruin():
    """Test 5: A single loss past the threshold ruins every run"""
    config = MonteCarloConfig(simulations=10, seed=5, ruin_threshold=0.1)
    result = MonteCarloSimulator(config).resample(make_trades([-200.0]), 1000)

    assert result.probability_of_ruin == 1.0
    assert result.probability_of_profit == 0.0
    assert result.runs[0].min_equity == pytest.approx(800)


def test_confidence_interval_brackets_median():
    """Test 6: Percentile bounds contain the median"""
    config = MonteCarloConfig(simulations=500, seed=11, confidence_level=0.9)
    result = MonteCarloSimulator(config).resample(make_trades(), 10000)

    low, high = result.confidence_intervals["drawdowns"]
    assert low <= result.drawdowns.median <= high
    assert result.expected_drawdown == pytest.approx(result.drawdowns.mean)

    assert confidence_interval(list(range(101)), 0.9) == pytest.approx((5.0, 95.0))
    assert confidence_interval([], 0.9) == (0.0, 0.0)


def test_progress_events_at_interval_and_end():
    """Test 7: 250 iterations with interval 100 -> events at 100, 200, 250"""
    bus = EventBus()
    events = []
    bus.subscribe(MonteCarloProgress, events.append)

    config = MonteCarloConfig(simulations=250, seed=2, progress_interval=100)
    MonteCarloSimulator(config, event_bus=bus).resample(make_trades(), 10000)

    assert [e.completed for e in events] == [100, 200, 250]
    assert all(e.total == 250 for e in events)


def test_cancellation_keeps_completed_runs():
    """Test 8: Cancel from a progress handler stops after that iteration"""
    bus = EventBus()
    token = CancellationToken()
    bus.subscribe(MonteCarloProgress, lambda event: token.cancel())

    config = MonteCarloConfig(simulations=250, seed=2, progress_interval=100)
    result = MonteCarloSimulator(config, event_bus=bus).resample(make_trades(), 10000, cancel_token=token)

    assert result.cancelled
    assert len(result.runs) == 100
    assert result.iterations == 250


def test_invalid_balance_rejected():
    """Test 9: Non-positive initial balance or iteration count raises"""
    with pytest.raises(ValueError):
        MonteCarloSimulator().resample(make_trades(), 0)

    for iterations in (0, -5):
        with pytest.raises(ValueError):
            MonteCarloSimulator().resample(make_trades(), 1000, iterations=iterations)


def test_fisher_yates_is_a_permutation():
    """Test 10: Shuffle keeps every element and leaves the input intact"""
    values = np.arange(20, dtype=float)
    shuffled = fisher_yates(values, np.random.default_rng(0))

    assert sorted(shuffled) == list(values)
    assert list(values) == list(range(20))


def test_to_dict_reports_completed_count():
    """Test 11: Serialized result carries aggregates and CI bounds"""
    result = MonteCarloSimulator(MonteCarloConfig(simulations=30, seed=9)).resample(make_trades(), 10000)
    data = result.to_dict()

    assert data["iterations"] == 30
    assert data["completed"] == 30
    assert set(data["returns"]) == {"mean", "median", "std", "min", "max"}
    assert len(data["confidence_intervals"]["returns"]) == 2
