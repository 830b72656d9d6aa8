"""Unit tests for performance and risk metrics"""

from datetime import datetime, timedelta
import math

import numpy as np
import pytest

from tradesim.account import EquityPoint
from tradesim.analytics import (
    MetricsRecord,
    annualized_return,
    compute_metrics,
    conditional_value_at_risk,
    drawdown_series,
    drawdowns,
    max_drawdown,
    monthly_returns,
    omega_ratio,
    sharpe_ratio,
    step_returns,
    ulcer_index,
    value_at_risk,
)

from helpers import START, make_trade


def make_curve(values, step=timedelta(days=1)):
    return [EquityPoint(START + i * step, v) for i, v in enumerate(values)]


def test_flat_series_gives_neutral_record():
    """Test 1: No trades and flat equity -> zero metrics"""
    record = compute_metrics([], make_curve([10000] * 10))

    assert record.total_trades == 0
    assert record.final_equity == 10000
    assert record.initial_balance == 10000
    assert record.total_return == 0.0
    assert record.sharpe_ratio == 0.0
    assert record.sortino_ratio == 0.0
    assert record.max_drawdown == 0.0
    assert record.profit_factor == 0.0
    assert record.trading_periods == 9


def test_trade_statistics():
    """Test 2: Win/loss statistics from the trade ledger"""
    trades = [make_trade(10), make_trade(-5), make_trade(20)]
    record = compute_metrics(trades, make_curve([10000, 10010, 10005, 10025]))

    assert record.total_trades == 3
    assert record.winning_trades == 2
    assert record.losing_trades == 1
    assert record.win_rate == pytest.approx(2 / 3)
    assert record.total_profit == pytest.approx(30)
    assert record.total_loss == pytest.approx(5)
    assert record.net_profit == pytest.approx(25)
    assert record.profit_factor == pytest.approx(6)
    assert record.avg_win == pytest.approx(15)
    assert record.avg_loss == pytest.approx(5)
    assert record.largest_win == pytest.approx(20)
    assert record.largest_loss == pytest.approx(-5)
    assert record.avg_hold_time_hours == pytest.approx(2)
    assert record.total_return == pytest.approx(0.0025)


def test_net_profit_equals_wins_minus_losses():
    """Test 3: net_profit == sum(wins) - sum(|losses|)"""
    rng = np.random.default_rng(1)
    pnls = rng.normal(0, 50, size=40)
    trades = [make_trade(float(p)) for p in pnls]
    values = 10000 + np.concatenate(([0.0], np.cumsum(pnls)))

    record = compute_metrics(trades, make_curve(values))

    wins = sum(p for p in pnls if p > 0)
    losses = sum(abs(p) for p in pnls if p < 0)
    assert record.net_profit == pytest.approx(wins - losses)


def test_profit_factor_without_losses_is_infinite():
    """Test 4: Only winners -> infinite profit factor and omega"""
    record = compute_metrics([make_trade(10), make_trade(5)], make_curve([10000, 10010, 10015]))

    assert math.isinf(record.profit_factor)
    assert math.isinf(record.omega_ratio)


def test_max_drawdown():
    """Test 5: Largest fractional drop from a running peak"""
    assert max_drawdown([100, 120, 90, 130]) == pytest.approx(0.25)
    assert max_drawdown([100, 110, 120]) == 0.0
    assert max_drawdown([]) == 0.0


def test_drawdowns_clipped_to_unit_interval():
    """Test 6: Equity below zero cannot exceed a 100% drawdown"""
    dd = drawdowns([100, -50, 20])
    assert dd.max() == 1.0
    assert dd.min() == 0.0


def test_sharpe_zero_when_returns_constant():
    """Test 7: Zero volatility -> Sharpe 0"""
    returns = np.full(10, 0.25)
    assert sharpe_ratio(returns, risk_free_rate=0.0, periods_per_year=252) == 0.0


def test_sharpe_sign_follows_mean_excess_return():
    """Test 8: Positive drift with noise gives positive Sharpe"""
    returns = np.array([0.01, 0.02, -0.005, 0.015, 0.01])
    assert sharpe_ratio(returns, risk_free_rate=0.0, periods_per_year=252) > 0
    assert sharpe_ratio(-returns, risk_free_rate=0.0, periods_per_year=252) < 0


def test_var_and_cvar():
    """Test 9: Historical VaR/CVaR at 95% over 20 returns"""
    returns = np.arange(-10, 10) / 100.0

    assert value_at_risk(returns, 0.95) == pytest.approx(0.09)
    assert conditional_value_at_risk(returns, 0.95) == pytest.approx(0.10)


def test_omega_ratio():
    """Test 10: Gains over losses around zero"""
    assert omega_ratio(np.array([0.02, -0.01, 0.01, -0.01])) == pytest.approx(1.5)
    assert omega_ratio(np.array([])) == 0.0


def test_annualized_return_total_loss():
    """Test 11: Non-positive growth maps to -100%"""
    assert annualized_return(np.array([-1.0]), 252) == -1.0
    assert annualized_return(np.array([]), 252) == 0.0


def test_step_returns():
    """Test 12: Simple per-step returns"""
    assert step_returns([100, 110, 99]) == pytest.approx([0.1, -0.1])
    assert len(step_returns([100])) == 0


def test_objective_aliases():
    """Test 13: Objective names resolve to metric fields"""
    assert MetricsRecord.resolve_objective("sharpe") == "sharpe_ratio"
    assert MetricsRecord.resolve_objective("returns") == "total_return"
    assert MetricsRecord.resolve_objective("win_rate") == "win_rate"
    assert MetricsRecord(total_return=0.5).objective("returns") == 0.5

    with pytest.raises(ValueError):
        MetricsRecord.resolve_objective("start_date")
    with pytest.raises(ValueError):
        MetricsRecord.resolve_objective("luck")


def test_monthly_returns():
    """Test 14: Each month runs from the point before its first step"""
    curve = [
        EquityPoint(datetime(2024, 1, 1), 100),
        EquityPoint(datetime(2024, 1, 15), 110),
        EquityPoint(datetime(2024, 2, 1), 121),
        EquityPoint(datetime(2024, 2, 15), 121),
    ]

    months = monthly_returns(curve)

    assert [m["month"] for m in months] == ["2024-01", "2024-02"]
    assert months[0]["return"] == pytest.approx(0.1)
    assert months[1]["return"] == pytest.approx(0.1)


def test_drawdown_series_matches_curve():
    """Test 15: One drawdown row per equity point"""
    curve = make_curve([100, 80, 100])
    rows = drawdown_series(curve)

    assert [r["drawdown"] for r in rows] == pytest.approx([0.0, 0.2, 0.0])
    assert rows[1]["timestamp"] == curve[1].timestamp


def test_ulcer_index():
    """Test 16: Root-mean-square drawdown in percent, zero without drawdowns"""
    assert ulcer_index([100, 50, 100]) == pytest.approx(math.sqrt(0.25 / 3) * 100)
    assert ulcer_index([100, 110, 120]) == 0.0
    assert ulcer_index([]) == 0.0

    trades = [make_trade(10), make_trade(-30), make_trade(5)]
    record = compute_metrics(trades, make_curve([10000, 10010, 9980, 9985]))
    assert record.ulcer_index > 0
    assert record.ulcer_index == pytest.approx(ulcer_index([10000, 10010, 9980, 9985]))
