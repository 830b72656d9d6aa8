"""Backtest engine replaying candles through a strategy and the account ledger.

Each candle is processed in strict order:
1. Advance the clock to the candle timestamp
2. Recompute rolling indicators
3. Check resting limit/stop orders against the candle high/low
4. Mark positions to the close and fire stop-loss/take-profit triggers
5. Ask the strategy for signals
6. Execute the signals through the execution simulator
7. Append an equity snapshot
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import math
import numbers

from .account import (
    Account,
    EquityPoint,
    ExitReason,
    Order,
    OrderSide,
    OrderType,
    PositionSide,
    Trade,
)
from .analytics import MetricsRecord, compute_metrics
from .broker_sim import ExecutionSimulator, FillOutcome, Rejected, RejectReason, is_triggered
from .config import BacktestConfig
from .data_source import Candle
from .errors import InvalidSignal, StrategyFault
from .events import (
    EventBus,
    RunCompleted,
    RunFailed,
    RunProgress,
    RunStarted,
    TradeCompleted,
    emit,
)
from .indicators import compute_indicators
from .strategy import MarketSnapshot, Signal, SignalType, Strategy, StrategyContext


@dataclass(frozen=True)
class SignalAccepted:
    """Signal translated and applied; ``order`` is None for cancel signals."""

    signal: Signal
    order: Optional[Order] = None
    fill: Optional[FillOutcome] = None
    trades: Tuple[Trade, ...] = ()

    @property
    def queued(self) -> bool:
        return self.order is not None and self.order.is_open


SignalResult = Union[SignalAccepted, Rejected]


def is_positive_number(value: Any) -> bool:
    """True for finite real numbers above zero (bools excluded)."""
    return (
        isinstance(value, numbers.Real)
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


@dataclass
class BacktestResult:
    """Outcome of one replay run."""

    strategy_name: str
    symbol: str
    account: Account
    trades: List[Trade]
    equity_curve: List[EquityPoint]
    metrics: MetricsRecord
    parameters: Dict[str, Any] = field(default_factory=dict)
    rejected_signals: int = 0

    @property
    def final_equity(self) -> float:
        return self.equity_curve[-1].value if self.equity_curve else self.account.equity


class BacktestEngine:
    """Main backtest orchestration engine.

    One engine can run many backtests sequentially; each run resets (or
    creates) the account it works on. Runs never share an account.
    """

    def __init__(
        self,
        config: Optional[BacktestConfig] = None,
        simulator: Optional[ExecutionSimulator] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize backtest engine.

        Args:
            config: Backtest configuration
            simulator: Execution simulator (built from config.execution if omitted)
            event_bus: Optional bus for lifecycle/progress events
            logger: Optional logger
        """
        self.config = config or BacktestConfig()
        self.simulator = simulator or ExecutionSimulator(self.config.execution)
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

        self._symbol = self.config.data.symbol
        self._strategy_name = ""

    def run(
        self,
        strategy: Strategy,
        candles: Sequence[Candle],
        account: Optional[Account] = None,
        symbol: Optional[str] = None
    ) -> BacktestResult:
        """Run the backtest.

        Args:
            strategy: Object implementing ``analyze`` (and optionally ``initialize``)
            candles: Candles ordered by timestamp
            account: Account to run on; reset before use. A new one is created if omitted
            symbol: Symbol traded (defaults to config.data.symbol)

        Returns:
            BacktestResult with trades, equity curve and metrics

        Raises:
            StrategyFault: If the strategy raises; the account must be discarded
        """
        candles = tuple(candles)
        if not candles:
            raise ValueError("No candles to replay")

        self._symbol = symbol or self.config.data.symbol
        self._strategy_name = getattr(strategy, "name", type(strategy).__name__)
        account = account or Account(self.config.initial_balance)
        account.reset(candles[0].timestamp)

        total = len(candles)
        verbose = self.config.verbose
        log = self.logger.info if verbose else self.logger.debug

        log("=" * 70)
        log(f"Starting Backtest: {self._strategy_name}")
        log("=" * 70)
        log(f"Symbol: {self._symbol}")
        log(f"Candles: {total} ({candles[0].timestamp} to {candles[-1].timestamp})")
        log(f"Initial Balance: ${account.initial_balance:,.2f}")

        emit(self.event_bus, RunStarted(strategy=self._strategy_name, total_steps=total))

        initialize = getattr(strategy, "initialize", None)
        if initialize is not None:
            context = StrategyContext(
                symbol=self._symbol,
                initial_balance=account.initial_balance,
                total_steps=total,
                parameters=dict(getattr(strategy, "params", {}) or {})
            )
            self._call_strategy(initialize, 0, context)

        rejected = 0
        for i, candle in enumerate(candles):
            # 1-2. Clock and indicators
            current_time = candle.timestamp
            indicators = compute_indicators(candles, i, self.config.indicator_lookback)

            # 3. Resting orders
            self._check_orders(candle, account)

            # 4. Mark-to-market and risk triggers
            self._update_positions(candle, account)

            # 5. Strategy
            snapshot = self._snapshot(candles, i, indicators, current_time)
            signals = self._call_strategy(strategy.analyze, i, snapshot, account.view())

            # 6. Signal execution
            for signal in self._normalize_signals(signals):
                result = self.execute_signal(signal, candle, account)
                if isinstance(result, Rejected):
                    rejected += 1

            if i == total - 1 and self.config.close_at_end:
                self._close_all(candle, account, ExitReason.END_OF_DATA)

            # 7. Equity snapshot
            account.mark_to_market({self._symbol: candle.close})
            account.record_equity(current_time)

            if (i + 1) % self.config.progress_interval == 0:
                emit(self.event_bus, RunProgress(
                    strategy=self._strategy_name, step=i + 1, total_steps=total, equity=account.equity
                ))
                log(
                    f"Progress: {(i + 1) / total * 100:.1f}% ({i + 1}/{total} candles) "
                    f"| Trades: {len(account.trades)} | Equity: ${account.equity:,.2f}"
                )

        metrics = compute_metrics(
            account.trades,
            account.equity_curve,
            account,
            risk_free_rate=self.config.analysis.risk_free_rate,
            periods_per_year=self.config.analysis.periods_per_year,
            confidence=self.config.analysis.confidence_level
        )

        emit(self.event_bus, RunCompleted(
            strategy=self._strategy_name, total_trades=len(account.trades), final_equity=account.equity
        ))

        log("=" * 70)
        log(
            f"Backtest Complete: {len(account.trades)} trades, "
            f"final equity ${account.equity:,.2f}, {rejected} signals rejected"
        )
        log("=" * 70)

        return BacktestResult(
            strategy_name=self._strategy_name,
            symbol=self._symbol,
            account=account,
            trades=list(account.trades),
            equity_curve=list(account.equity_curve),
            metrics=metrics,
            parameters=dict(getattr(strategy, "params", {}) or {}),
            rejected_signals=rejected
        )

    def _call_strategy(self, fn, step: int, *args):
        try:
            return fn(*args)
        except Exception as e:
            self.logger.error(f"Strategy {self._strategy_name} failed at step {step}: {e}", exc_info=True)
            emit(self.event_bus, RunFailed(strategy=self._strategy_name, step=step, error=str(e)))
            raise StrategyFault(
                f"Strategy {self._strategy_name} raised {type(e).__name__} at step {step}: {e}",
                strategy_name=self._strategy_name,
                step=step
            ) from e

    @staticmethod
    def _normalize_signals(signals) -> List[Any]:
        """Turn whatever ``analyze`` returned into a list of items.

        Items are not type-checked here; ``execute_signal`` drops anything
        that is not a ``Signal``.
        """
        if signals is None:
            return []
        if isinstance(signals, (Signal, str, bytes, Mapping)) or not isinstance(signals, Iterable):
            return [signals]
        return list(signals)

    def _snapshot(
        self,
        candles: Tuple[Candle, ...],
        index: int,
        indicators: Dict[str, float],
        current_time: datetime
    ) -> MarketSnapshot:
        start = max(0, index - self.config.snapshot_lookback + 1)
        return MarketSnapshot(
            symbol=self._symbol,
            candles=candles[start:index + 1],
            indicators=indicators,
            current_candle=candles[index],
            timestamp=current_time,
            index=index
        )

    def _check_orders(self, candle: Candle, account: Account):
        """Evaluate every resting limit/stop order once against this candle."""
        for order in account.open_orders():
            if order.type is OrderType.MARKET or not is_triggered(order, candle):
                continue

            conflict = self._fill_conflict(order, account)
            if conflict is not None:
                order.cancel()
                self.logger.warning(f"[{candle.timestamp}] Cancelled order {order.id}: {conflict}")
                continue

            outcome = self.simulator.simulate_fill(order, candle)
            if isinstance(outcome, FillOutcome):
                self._apply_fill(order, outcome, candle, account)
            elif outcome.reason is not RejectReason.NO_FILL:
                order.cancel()
                self.logger.warning(f"[{candle.timestamp}] Cancelled order {order.id}: {outcome.message}")

    def _update_positions(self, candle: Candle, account: Account):
        """Mark positions and close any whose stop-loss or take-profit was touched.

        Stop-loss is evaluated first, so a candle touching both exits at the
        stop. Exits happen at the trigger price, not the close.
        """
        for position in list(account.positions.values()):
            position.mark(candle.close)

            if position.side is PositionSide.LONG:
                sl_hit = position.stop_loss is not None and candle.low <= position.stop_loss
                tp_hit = position.take_profit is not None and candle.high >= position.take_profit
            else:
                sl_hit = position.stop_loss is not None and candle.high >= position.stop_loss
                tp_hit = position.take_profit is not None and candle.low <= position.take_profit

            if sl_hit:
                self._close_at(position.symbol, position.stop_loss, candle, account, ExitReason.STOP_LOSS)
            elif tp_hit:
                self._close_at(position.symbol, position.take_profit, candle, account, ExitReason.TAKE_PROFIT)

    def _close_at(
        self,
        symbol: str,
        price: float,
        candle: Candle,
        account: Account,
        reason: ExitReason
    ) -> Trade:
        position = account.positions[symbol]
        commission = position.quantity * price * self.simulator.config.commission_rate
        trade = account.close_position(symbol, price, candle.timestamp, reason, commission)
        self._on_trade(trade)
        return trade

    def _close_all(self, candle: Candle, account: Account, reason: ExitReason):
        for order in account.open_orders():
            order.cancel()
        for symbol in list(account.positions):
            self.logger.debug(f"Closing remaining {symbol} position at end of data")
            self._close_at(symbol, candle.close, candle, account, reason)

    def _on_trade(self, trade: Trade):
        emit(self.event_bus, TradeCompleted(trade=trade))
        if self.config.verbose:
            self.logger.info(
                f"[{trade.exit_time}] Closed {trade.side.value} {trade.symbol} "
                f"@ {trade.exit_price:.5f} ({trade.exit_reason.value}) - P&L: ${trade.realized_pnl:.2f}"
            )

    def execute_signal(self, signal: Signal, candle: Candle, account: Account) -> SignalResult:
        """Translate one signal into orders and apply it.

        Malformed signals are dropped with a warning and reported as
        ``Rejected``; they never abort the run.
        """
        try:
            if not isinstance(signal, Signal):
                raise InvalidSignal(f"Expected a Signal, got {type(signal).__name__}: {signal!r}")
            if signal.type is SignalType.CANCEL:
                return self._cancel(signal, account)
            order = self._build_order(signal, candle, account)
        except InvalidSignal as e:
            label = signal.type.value if isinstance(signal, Signal) else "malformed"
            self.logger.warning(f"[{candle.timestamp}] Dropped {label} signal: {e}")
            return Rejected(None, RejectReason.INVALID_SIGNAL, str(e))

        account.add_order(order)

        if order.type is not OrderType.MARKET:
            self.logger.debug(f"[{candle.timestamp}] Queued {order.type.value} {order.side.value} @ {order.price}")
            return SignalAccepted(signal, order=order)

        outcome = self.simulator.simulate_fill(order, candle)
        if isinstance(outcome, Rejected):
            # Market orders never rest
            order.cancel()
            self.logger.debug(f"[{candle.timestamp}] Market order {order.id} not filled: {outcome.reason.value}")
            return outcome

        trades = self._apply_fill(order, outcome, candle, account)
        return SignalAccepted(signal, order=order, fill=outcome, trades=trades)

    def _cancel(self, signal: Signal, account: Account) -> SignalAccepted:
        if signal.order_id is None:
            for order in account.open_orders():
                order.cancel()
            return SignalAccepted(signal)
        if not account.cancel_order(signal.order_id):
            raise InvalidSignal(f"No open order with id {signal.order_id}")
        return SignalAccepted(signal, order=account.orders[signal.order_id])

    def _build_order(self, signal: Signal, candle: Candle, account: Account) -> Order:
        symbol = signal.symbol or self._symbol
        if symbol != self._symbol:
            raise InvalidSignal(f"No market data for symbol {symbol}")

        position = account.positions.get(symbol)

        if signal.type is SignalType.CLOSE:
            if position is None:
                raise InvalidSignal(f"No open position for {symbol}")
            side = OrderSide.SELL if position.side is PositionSide.LONG else OrderSide.BUY
            return Order(
                id=account.next_order_id(),
                symbol=symbol,
                side=side,
                type=OrderType.MARKET,
                quantity=position.quantity,
                price=candle.close,
                created_at=candle.timestamp
            )

        side = OrderSide.BUY if signal.type is SignalType.BUY else OrderSide.SELL
        order_type = signal.order_type

        if signal.price is None and order_type is not OrderType.MARKET:
            raise InvalidSignal(f"{order_type.value} order requires a price")
        price = candle.close if signal.price is None else signal.price
        if not is_positive_number(price):
            raise InvalidSignal(f"Invalid price {price!r}")
        if signal.quantity is not None and not is_positive_number(signal.quantity):
            raise InvalidSignal(f"Invalid quantity {signal.quantity!r}")
        for label, level in (("stop_loss", signal.stop_loss), ("take_profit", signal.take_profit)):
            if level is not None and not is_positive_number(level):
                raise InvalidSignal(f"Invalid {label} {level!r}")

        if position is not None:
            if PositionSide.from_order_side(side) is position.side:
                raise InvalidSignal(f"{position.side.value} position already open for {symbol}")
            # Opposite side reduces or closes the open position
            quantity = position.quantity if signal.quantity is None else min(signal.quantity, position.quantity)
        else:
            if side is OrderSide.SELL and not self.config.allow_short:
                raise InvalidSignal("Short selling disabled")
            if signal.quantity is None:
                quantity = account.balance * self.config.position_size_fraction / price
            else:
                quantity = signal.quantity

        if not is_positive_number(quantity):
            raise InvalidSignal(f"Invalid quantity {quantity!r}")

        return Order(
            id=account.next_order_id(),
            symbol=symbol,
            side=side,
            type=order_type,
            quantity=float(quantity),
            price=price,
            created_at=candle.timestamp,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit
        )

    def _fill_conflict(self, order: Order, account: Account) -> Optional[str]:
        """Reason the order can no longer be booked against the current positions."""
        position = account.positions.get(order.symbol)
        side = PositionSide.from_order_side(order.side)
        if position is None:
            if side is PositionSide.SHORT and not self.config.allow_short:
                return "short selling disabled"
        elif position.side is side:
            return f"{side.value} position already open"
        return None

    def _apply_fill(
        self,
        order: Order,
        fill: FillOutcome,
        candle: Candle,
        account: Account
    ) -> Tuple[Trade, ...]:
        """Book a fill: open a position, or reduce/close the opposite one.

        Callers check ``_fill_conflict`` before simulating the fill.
        """
        position = account.positions.get(order.symbol)

        if position is None:
            side = PositionSide.from_order_side(order.side)
            account.open_position(
                order.symbol,
                side,
                fill.quantity,
                fill.price,
                fill.filled_at,
                commission=fill.commission,
                stop_loss=order.stop_loss,
                take_profit=order.take_profit
            )
            account.positions[order.symbol].mark(candle.close)
            if self.config.verbose:
                self.logger.info(
                    f"[{candle.timestamp}] Opened {side.value} {fill.quantity:.6f} {order.symbol} @ {fill.price:.5f}"
                )
            return ()

        trade = account.close_position(
            order.symbol,
            fill.price,
            fill.filled_at,
            ExitReason.MANUAL,
            commission=fill.commission,
            quantity=fill.quantity
        )
        self._on_trade(trade)
        return (trade,)
