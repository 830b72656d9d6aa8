"""Unit tests for strategies, indicators and the event bus"""

from types import MappingProxyType

import pytest

from tradesim.account import AccountView, OrderType
from tradesim.events import (
    CancellationToken,
    DataLoaded,
    Event,
    EventBus,
    MonteCarloProgress,
)
from tradesim.indicators import atr, compute_indicators, rsi, sma
from tradesim.strategy import (
    MarketSnapshot,
    RsiReversalStrategy,
    Signal,
    SignalType,
    SmaCrossoverStrategy,
    StrategyRegistry,
)

from helpers import make_candle, make_candles, rising_candles


def make_snapshot(closes) -> MarketSnapshot:
    candles = make_candles(closes)
    return MarketSnapshot(
        symbol="BTCUSDT",
        candles=candles,
        indicators={},
        current_candle=candles[-1],
        timestamp=candles[-1].timestamp,
        index=len(candles) - 1
    )


EMPTY_VIEW = AccountView(
    balance=10000.0,
    equity=10000.0,
    initial_balance=10000.0,
    positions=MappingProxyType({}),
    open_orders=()
)


def test_signal_coerces_string_enums():
    """Test 1: Plain strings are accepted for type and order_type"""
    signal = Signal("buy", quantity=1, order_type="limit", price=95)

    assert signal.type is SignalType.BUY
    assert signal.order_type is OrderType.LIMIT

    with pytest.raises(ValueError):
        Signal("hold")


def test_strategy_parameters_override_defaults():
    """Test 2: Constructor values win over default_parameters"""
    strategy = SmaCrossoverStrategy({"fast_period": 5})

    assert strategy.params == {"fast_period": 5, "slow_period": 50}
    assert SmaCrossoverStrategy.default_parameters["fast_period"] == 20


def test_sma_crossover_signals():
    """Test 3: Golden cross buys, death cross sells"""
    strategy = SmaCrossoverStrategy({"fast_period": 2, "slow_period": 3})

    buy = strategy.analyze(make_snapshot([5, 4, 3, 2, 6]), EMPTY_VIEW)
    sell = strategy.analyze(make_snapshot([1, 2, 3, 4, 0]), EMPTY_VIEW)
    none = strategy.analyze(make_snapshot([1, 2, 3, 4, 5]), EMPTY_VIEW)

    assert [s.type for s in buy] == [SignalType.BUY]
    assert [s.type for s in sell] == [SignalType.SELL]
    assert none == []


def test_sma_crossover_needs_history():
    """Test 4: No signal until slow_period + 1 closes exist"""
    strategy = SmaCrossoverStrategy({"fast_period": 2, "slow_period": 3})
    assert strategy.analyze(make_snapshot([5, 4, 6]), EMPTY_VIEW) == []


def test_rsi_reversal_buys_out_of_oversold():
    """Test 5: RSI crossing up through the oversold level buys"""
    strategy = RsiReversalStrategy({"period": 3, "oversold": 30, "overbought": 70})
    signals = strategy.analyze(make_snapshot([10, 9, 8, 7, 6, 8]), EMPTY_VIEW)

    assert [s.type for s in signals] == [SignalType.BUY]


def test_registry():
    """Test 6: Built-ins registered, duplicates and unknown names rejected"""
    registry = StrategyRegistry.with_builtins()

    assert registry.names() == ["rsi_oversold", "sma_cross"]
    assert isinstance(registry.create("sma_cross", {"fast_period": 3}), SmaCrossoverStrategy)

    with pytest.raises(ValueError):
        registry.register("sma_cross", SmaCrossoverStrategy)
    registry.register("sma_cross", SmaCrossoverStrategy, overwrite=True)

    with pytest.raises(KeyError):
        registry.template("missing")


def test_indicators():
    """Test 7: SMA, RSI and ATR on simple series"""
    assert sma([1, 2, 3, 4], 2) == pytest.approx(3.5)
    assert sma([1], 2) is None
    assert rsi([1, 2, 3, 4, 5], 4) == 100.0
    assert rsi([1, 2], 14) == 50.0
    assert rsi([4, 3, 4, 3, 4], 4) == pytest.approx(50.0)

    candles = (make_candle(0, 100, high=102, low=98), make_candle(1, 101, high=104, low=100))
    assert atr(candles, 14) == pytest.approx(4.0)


def test_compute_indicators_grows_with_history():
    """Test 8: Indicators appear once their window is filled"""
    candles = rising_candles(60)

    assert compute_indicators(candles, 10) == {}
    early = compute_indicators(candles, 30)
    assert "sma_20" in early and "sma_50" not in early
    late = compute_indicators(candles, 59)
    assert late["sma_50"] == pytest.approx(sum(range(110, 160)) / 50)


def test_event_bus_dispatch_and_unsubscribe():
    """Test 9: Handlers see matching events until unsubscribed"""
    bus = EventBus()
    everything, progress = [], []
    bus.subscribe(Event, everything.append)
    unsubscribe = bus.subscribe(MonteCarloProgress, progress.append)

    bus.emit(MonteCarloProgress(completed=1, total=2))
    unsubscribe()
    bus.emit(MonteCarloProgress(completed=2, total=2))
    bus.emit(DataLoaded(symbol="BTCUSDT", candles=0, first_timestamp=None, last_timestamp=None))

    assert [e.completed for e in progress] == [1]
    assert len(everything) == 3


def test_failing_handler_does_not_block_others():
    """Test 10: A raising handler is logged and skipped"""
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(MonteCarloProgress, broken)
    bus.subscribe(MonteCarloProgress, seen.append)

    bus.emit(MonteCarloProgress(completed=1, total=1))

    assert len(seen) == 1


def test_cancellation_token():
    """Test 11: Token starts clear and stays cancelled"""
    token = CancellationToken()
    assert not token.cancelled
    token.cancel()
    token.cancel()
    assert token.cancelled
