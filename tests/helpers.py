"""Shared builders for the tradesim tests."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from tradesim.account import AccountView, ExitReason, PositionSide, Trade
from tradesim.broker_sim import ExecutionSimulator, always_fill
from tradesim.config import BacktestConfig, ExecutionConfig, OptimizationConfig
from tradesim.data_source import Candle
from tradesim.engine import BacktestEngine
from tradesim.strategy import MarketSnapshot, Signal, Strategy


START = datetime(2024, 1, 1)
HOUR = timedelta(hours=1)


def make_candle(
    index: int,
    close: float,
    high: Optional[float] = None,
    low: Optional[float] = None,
    open_: Optional[float] = None,
    start: datetime = START,
    step: timedelta = HOUR
) -> Candle:
    """Candle ``index`` steps after ``start``; high/low default to the close."""
    open_ = close if open_ is None else open_
    return Candle(
        timestamp=start + index * step,
        open=open_,
        high=max(open_, close) if high is None else high,
        low=min(open_, close) if low is None else low,
        close=close,
        volume=1000.0
    )


def make_candles(closes: Sequence[float], start: datetime = START, step: timedelta = HOUR) -> tuple:
    return tuple(make_candle(i, c, start=start, step=step) for i, c in enumerate(closes))


def rising_candles(n: int, start_price: float = 100.0, increment: float = 1.0) -> tuple:
    return make_candles([start_price + i * increment for i in range(n)])


def make_trade(pnl: float, hours: float = 2.0, start: datetime = START) -> Trade:
    """Closed long trade with the given realized P&L."""
    return Trade(
        symbol="BTCUSDT",
        side=PositionSide.LONG,
        entry_time=start,
        entry_price=100.0,
        exit_time=start + timedelta(hours=hours),
        exit_price=100.0 + pnl,
        quantity=1.0,
        realized_pnl=pnl,
        exit_reason=ExitReason.MANUAL
    )


def make_config(**overrides) -> BacktestConfig:
    """Frictionless, sequential config so results are exact."""
    overrides.setdefault("execution", ExecutionConfig.frictionless())
    overrides.setdefault("optimization", OptimizationConfig(n_jobs=1))
    return BacktestConfig(**overrides)


def make_engine(config: Optional[BacktestConfig] = None, event_bus=None, fill_decider=always_fill) -> BacktestEngine:
    config = config or make_config()
    simulator = ExecutionSimulator(config.execution, fill_decider=fill_decider)
    return BacktestEngine(config, simulator=simulator, event_bus=event_bus)


class ScriptedStrategy(Strategy):
    """Emits pre-programmed signals at given step indices."""

    name = "scripted"

    def __init__(self, script: Dict[int, List[Signal]]):
        super().__init__()
        self.script = script
        self.views: List[AccountView] = []

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        self.views.append(account)
        return list(self.script.get(snapshot.index, []))


class FaultyStrategy(Strategy):
    """Raises at a fixed step."""

    name = "faulty"
    default_parameters = {"fail_at": 3}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        if snapshot.index == self.params["fail_at"]:
            raise ZeroDivisionError("boom")
        return []


class SizedBuyStrategy(Strategy):
    """Buys ``size`` units on the first candle and holds to the end.

    On rising prices the return grows with ``size``; ``size`` 0 trades
    nothing. ``fail_on`` makes one size raise.
    """

    name = "sized_buy"
    default_parameters = {"size": 1, "fail_on": None}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        size = self.params["size"]
        if size == self.params["fail_on"]:
            raise RuntimeError(f"size {size} not supported")
        if snapshot.index == 0 and size > 0:
            return [Signal.buy(quantity=size)]
        return []


class AlternatingStrategy(Strategy):
    """Opens a long every ``period`` candles and closes it ``period`` later."""

    name = "alternating"
    default_parameters = {"period": 5}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        period = int(self.params["period"])
        if snapshot.index % period != 0:
            return []
        if account.has_position(snapshot.symbol):
            return [Signal.close()]
        return [Signal.buy(quantity=1)]


class StopLevelStrategy(Strategy):
    """Buys one unit on the first candle with a configurable stop-loss level."""

    name = "stop_level"
    default_parameters = {"stop_loss": None}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        if snapshot.index == 0:
            return [Signal.buy(quantity=1, stop_loss=self.params["stop_loss"])]
        return []
