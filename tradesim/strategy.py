"""Strategy capability consumed by the replay engine.

The engine depends only on the ``Strategy`` interface: ``analyze`` is called
once per candle with a bounded market snapshot and a read-only account view,
and ``initialize`` once before the first candle. ``SmaCrossoverStrategy`` and
``RsiReversalStrategy`` are reference implementations.

A *strategy template* is any callable taking a parameter dict and returning
a fresh ``Strategy``; strategy classes themselves qualify. Templates passed to
a process pool must be picklable (module-level classes or functions).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .account import AccountView, OrderType
from .data_source import Candle
from .indicators import rsi, sma


class SignalType(Enum):
    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Signal:
    """Instruction emitted by a strategy.

    ``quantity`` defaults to a fraction of the balance and ``price`` to the
    candle close when omitted. ``price`` is the limit/stop price for
    non-market orders.
    """

    type: SignalType
    quantity: Optional[float] = None
    price: Optional[float] = None
    order_type: OrderType = OrderType.MARKET
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    symbol: Optional[str] = None
    order_id: Optional[str] = None  # Target of a cancel signal
    confidence: Optional[float] = None
    reason: str = ""

    def __post_init__(self):
        if not isinstance(self.type, SignalType):
            object.__setattr__(self, "type", SignalType(self.type))
        if not isinstance(self.order_type, OrderType):
            object.__setattr__(self, "order_type", OrderType(self.order_type))

    @classmethod
    def buy(cls, **kwargs) -> "Signal":
        return cls(SignalType.BUY, **kwargs)

    @classmethod
    def sell(cls, **kwargs) -> "Signal":
        return cls(SignalType.SELL, **kwargs)

    @classmethod
    def close(cls, symbol: Optional[str] = None, reason: str = "") -> "Signal":
        return cls(SignalType.CLOSE, symbol=symbol, reason=reason)

    @classmethod
    def cancel(cls, order_id: Optional[str] = None, reason: str = "") -> "Signal":
        return cls(SignalType.CANCEL, order_id=order_id, reason=reason)


@dataclass(frozen=True)
class MarketSnapshot:
    """Bounded lookback handed to ``Strategy.analyze``."""

    symbol: str
    candles: Tuple[Candle, ...]
    indicators: Mapping[str, float]
    current_candle: Candle
    timestamp: datetime
    index: int

    @property
    def closes(self) -> List[float]:
        return [c.close for c in self.candles]


@dataclass(frozen=True)
class StrategyContext:
    """Run information passed to ``Strategy.initialize``."""

    symbol: str
    initial_balance: float
    total_steps: int
    parameters: Mapping[str, Any] = field(default_factory=dict)


class Strategy(ABC):
    """Base class for pluggable strategies.

    Subclasses declare ``default_parameters``; values passed to the
    constructor override them.
    """

    name: str = "strategy"
    default_parameters: Dict[str, Any] = {}

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params: Dict[str, Any] = {**self.default_parameters, **dict(params or {})}

    def initialize(self, context: StrategyContext):
        """Called once before the first candle. Optional."""

    @abstractmethod
    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        """Return zero or more signals for the current candle."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.params})"


StrategyTemplate = Callable[[Mapping[str, Any]], Strategy]


class SmaCrossoverStrategy(Strategy):
    """Buy on a golden cross, sell on a death cross of two simple moving averages."""

    name = "sma_cross"
    default_parameters = {"fast_period": 20, "slow_period": 50}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        fast = int(self.params["fast_period"])
        slow = int(self.params["slow_period"])
        closes = snapshot.closes

        if fast >= slow or len(closes) < slow + 1:
            return []

        fast_now, slow_now = sma(closes, fast), sma(closes, slow)
        fast_prev, slow_prev = sma(closes[:-1], fast), sma(closes[:-1], slow)

        if fast_prev <= slow_prev and fast_now > slow_now:
            return [Signal.buy(confidence=0.7, reason="SMA golden cross")]
        if fast_prev >= slow_prev and fast_now < slow_now:
            return [Signal.sell(confidence=0.7, reason="SMA death cross")]
        return []


class RsiReversalStrategy(Strategy):
    """Buy when RSI climbs out of oversold, sell when it falls out of overbought."""

    name = "rsi_oversold"
    default_parameters = {"period": 14, "oversold": 30, "overbought": 70}

    def analyze(self, snapshot: MarketSnapshot, account: AccountView) -> List[Signal]:
        period = int(self.params["period"])
        closes = snapshot.closes

        if len(closes) < period + 2:
            return []

        now = rsi(closes, period)
        prev = rsi(closes[:-1], period)

        if prev <= self.params["oversold"] < now:
            return [Signal.buy(confidence=0.6, reason="RSI oversold bounce")]
        if prev >= self.params["overbought"] > now:
            return [Signal.sell(confidence=0.6, reason="RSI overbought reversal")]
        return []


class StrategyRegistry:
    """Caller-owned name -> strategy template mapping."""

    def __init__(self):
        self._templates: Dict[str, StrategyTemplate] = {}

    def register(self, name: str, template: StrategyTemplate, overwrite: bool = False):
        if name in self._templates and not overwrite:
            raise ValueError(f"Strategy already registered: {name}")
        self._templates[name] = template

    def template(self, name: str) -> StrategyTemplate:
        try:
            return self._templates[name]
        except KeyError:
            raise KeyError(
                f"Unknown strategy: {name!r}. Registered: {', '.join(sorted(self._templates))}"
            ) from None

    def create(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Strategy:
        return self.template(name)(params or {})

    def names(self) -> List[str]:
        return sorted(self._templates)

    def __contains__(self, name: str) -> bool:
        return name in self._templates

    @classmethod
    def with_builtins(cls) -> "StrategyRegistry":
        """Registry preloaded with the reference strategies."""
        registry = cls()
        registry.register(SmaCrossoverStrategy.name, SmaCrossoverStrategy)
        registry.register(RsiReversalStrategy.name, RsiReversalStrategy)
        return registry
