"""Performance and risk metrics for a completed replay run.

A period is one equity-trace step. Every standard deviation is the
population (ddof=0) deviation. Unbounded ratios (profit factor, omega) use
``math.inf`` as their sentinel.
"""

from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional, Sequence
import math

import numpy as np
import pandas as pd

from .account import Account, EquityPoint, Trade


OBJECTIVE_ALIASES = {
    "sharpe": "sharpe_ratio",
    "sortino": "sortino_ratio",
    "calmar": "calmar_ratio",
    "omega": "omega_ratio",
    "returns": "total_return",
    "return": "total_return",
    "drawdown": "max_drawdown",
}


@dataclass(frozen=True)
class MetricsRecord:
    """Immutable metrics snapshot of one run."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    net_profit: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_trade: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_hold_time_hours: float = 0.0
    total_return: float = 0.0
    annualized_return: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    var_95: float = 0.0
    cvar_95: float = 0.0
    omega_ratio: float = 0.0
    ulcer_index: float = 0.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trading_periods: int = 0
    initial_balance: float = 0.0
    final_balance: float = 0.0
    final_equity: float = 0.0

    @staticmethod
    def resolve_objective(name: str) -> str:
        """Map an objective name or alias to a numeric field name.

        Raises:
            ValueError: If the name is not a numeric metric
        """
        field_name = OBJECTIVE_ALIASES.get(name, name)
        numeric = {f.name for f in fields(MetricsRecord) if f.type in (float, int, "float", "int")}
        if field_name not in numeric:
            raise ValueError(
                f"Unknown objective: {name!r}. Use a metric name or one of {sorted(OBJECTIVE_ALIASES)}"
            )
        return field_name

    def objective(self, name: str) -> float:
        return float(getattr(self, self.resolve_objective(name)))

    def to_dict(self) -> dict:
        return asdict(self)


def step_returns(values: Sequence[float]) -> np.ndarray:
    """Per-step simple returns; a step from zero equity counts as 0."""
    arr = np.asarray(values, dtype=float)
    if len(arr) < 2:
        return np.empty(0)
    prev = arr[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        returns = np.where(prev != 0, (arr[1:] - prev) / prev, 0.0)
    return returns


def drawdowns(values: Sequence[float]) -> np.ndarray:
    """Fractional drawdown from the running peak at every point, clipped to [0, 1]."""
    arr = np.asarray(values, dtype=float)
    if len(arr) == 0:
        return np.empty(0)
    peaks = np.maximum.accumulate(arr)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peaks > 0, (peaks - arr) / peaks, 0.0)
    return np.clip(dd, 0.0, 1.0)


def max_drawdown(values: Sequence[float]) -> float:
    dd = drawdowns(values)
    return float(dd.max()) if len(dd) else 0.0


def ulcer_index(values: Sequence[float]) -> float:
    dd = drawdowns(values)
    if len(dd) == 0:
        return 0.0
    return float(math.sqrt(np.mean(dd ** 2)) * 100)


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float, periods_per_year: int) -> float:
    if len(returns) == 0:
        return 0.0
    excess = returns - risk_free_rate / periods_per_year
    std = np.std(excess)
    if std == 0:
        return 0.0
    return float(np.mean(excess) / std * math.sqrt(periods_per_year))


def sortino_ratio(returns: np.ndarray, risk_free_rate: float, periods_per_year: int) -> float:
    if len(returns) == 0:
        return 0.0
    rf = risk_free_rate / periods_per_year
    downside = returns[returns < rf]
    if len(downside) == 0:
        return 0.0
    downside_dev = np.std(downside)
    if downside_dev == 0:
        return 0.0
    return float((np.mean(returns) - rf) / downside_dev * math.sqrt(periods_per_year))


def annualized_return(returns: np.ndarray, periods_per_year: int) -> float:
    """Compound the step returns and scale to ``periods_per_year``.

    A non-positive growth factor (total loss or worse) maps to -1.0.
    """
    if len(returns) == 0:
        return 0.0
    growth = float(np.prod(1 + returns))
    if growth <= 0:
        return -1.0
    try:
        return growth ** (periods_per_year / len(returns)) - 1
    except OverflowError:
        return math.inf


def value_at_risk(returns: np.ndarray, confidence: float) -> float:
    if len(returns) == 0:
        return 0.0
    ordered = np.sort(returns)
    index = int(math.floor((1 - confidence) * len(ordered)))
    if index >= len(ordered):
        return 0.0
    return float(abs(ordered[index]))


def conditional_value_at_risk(returns: np.ndarray, confidence: float) -> float:
    if len(returns) == 0:
        return 0.0
    ordered = np.sort(returns)
    index = int(math.floor((1 - confidence) * len(ordered)))
    tail = ordered[:index]
    if len(tail) == 0:
        return 0.0
    return float(np.mean(np.abs(tail)))


def omega_ratio(returns: np.ndarray, threshold: float = 0.0) -> float:
    if len(returns) == 0:
        return 0.0
    gains = float(np.sum(returns[returns > threshold] - threshold))
    losses = float(np.sum(threshold - returns[returns <= threshold]))
    if losses > 0:
        return gains / losses
    return math.inf if gains > 0 else 0.0


def compute_metrics(
    trades: Sequence[Trade],
    equity_curve: Sequence[EquityPoint],
    account: Optional[Account] = None,
    risk_free_rate: float = 0.02,
    periods_per_year: int = 252,
    confidence: float = 0.95
) -> MetricsRecord:
    """Convert a run's trade ledger and equity trace into a metrics record.

    Args:
        trades: Closed trades of the run
        equity_curve: Equity trace including the seed point
        account: Final account (balances); inferred from the trace when omitted
        risk_free_rate: Annual risk-free rate
        periods_per_year: Annualization factor
        confidence: VaR/CVaR confidence level

    Returns:
        MetricsRecord; all derived fields are zero when there are no trades
    """
    values = [p.value for p in equity_curve]
    initial_balance = account.initial_balance if account else (values[0] if values else 0.0)
    final_equity = values[-1] if values else initial_balance
    final_balance = account.balance if account else final_equity

    base = dict(
        start_date=equity_curve[0].timestamp if equity_curve else None,
        end_date=equity_curve[-1].timestamp if equity_curve else None,
        trading_periods=max(len(equity_curve) - 1, 0),
        initial_balance=initial_balance,
        final_balance=final_balance,
        final_equity=final_equity,
    )

    if not trades:
        return MetricsRecord(**base)

    pnls = np.array([t.realized_pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]

    total_profit = float(wins.sum())
    total_loss = float(abs(losses.sum()))

    if total_loss > 0:
        profit_factor = total_profit / total_loss
    else:
        profit_factor = math.inf if total_profit > 0 else 0.0

    returns = step_returns(values)
    annual = annualized_return(returns, periods_per_year)
    mdd = max_drawdown(values)
    hold_hours = [t.hold_time.total_seconds() / 3600 for t in trades]

    return MetricsRecord(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(trades),
        total_profit=total_profit,
        total_loss=total_loss,
        net_profit=total_profit - total_loss,
        profit_factor=profit_factor,
        avg_win=total_profit / len(wins) if len(wins) else 0.0,
        avg_loss=total_loss / len(losses) if len(losses) else 0.0,
        avg_trade=float(pnls.mean()),
        largest_win=float(pnls.max()),
        largest_loss=float(pnls.min()),
        avg_hold_time_hours=float(np.mean(hold_hours)),
        total_return=(values[-1] - values[0]) / values[0] if values and values[0] else 0.0,
        annualized_return=annual,
        max_drawdown=mdd,
        sharpe_ratio=sharpe_ratio(returns, risk_free_rate, periods_per_year),
        sortino_ratio=sortino_ratio(returns, risk_free_rate, periods_per_year),
        calmar_ratio=annual / mdd if mdd > 0 else 0.0,
        var_95=value_at_risk(returns, confidence),
        cvar_95=conditional_value_at_risk(returns, confidence),
        omega_ratio=omega_ratio(returns),
        ulcer_index=ulcer_index(values),
        **base
    )


def equity_frame(equity_curve: Sequence[EquityPoint]) -> pd.DataFrame:
    df = pd.DataFrame(
        [{"timestamp": p.timestamp, "equity": p.value} for p in equity_curve],
        columns=["timestamp", "equity"]
    )
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    return df


def drawdown_series(equity_curve: Sequence[EquityPoint]) -> List[Dict]:
    """Drawdown at every equity point as ``{"timestamp", "drawdown"}`` rows."""
    dd = drawdowns([p.value for p in equity_curve])
    return [{"timestamp": p.timestamp, "drawdown": float(d)} for p, d in zip(equity_curve, dd)]


def monthly_returns(equity_curve: Sequence[EquityPoint]) -> List[Dict]:
    """Return per calendar month, keyed ``YYYY-MM``.

    Each month runs from the equity point just before its first step to its
    last point.
    """
    if len(equity_curve) < 2:
        return []

    df = equity_frame(equity_curve)
    df["prev"] = df["equity"].shift(1)
    df = df.iloc[1:]
    months = df["timestamp"].dt.strftime("%Y-%m")

    grouped = df.groupby(months, sort=False)
    start = grouped["prev"].first()
    end = grouped["equity"].last()

    return [
        {"month": month, "return": float((end[month] - start[month]) / start[month]) if start[month] else 0.0}
        for month in start.index
    ]
