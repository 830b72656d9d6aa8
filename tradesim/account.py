"""Virtual account ledger: orders, positions, closed trades and equity trace.

Accounting is margin-style. Opening a position debits only the entry
commission, closing credits the gross P&L minus the exit commission, so
``equity = balance + sum(unrealized P&L)`` at every step and each
``Trade.realized_pnl`` already nets both commissions.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

# Quantities below this are treated as fully closed
QUANTITY_EPSILON = 1e-12


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class OrderStatus(Enum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def direction(self) -> int:
        return 1 if self is PositionSide.LONG else -1

    @classmethod
    def from_order_side(cls, side: OrderSide) -> "PositionSide":
        return cls.LONG if side is OrderSide.BUY else cls.SHORT


class ExitReason(Enum):
    """Reason for position exit."""
    MANUAL = "manual"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    END_OF_DATA = "end_of_data"


@dataclass
class Order:
    """Simulated order. Terminal once filled or cancelled."""

    id: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: float
    price: Optional[float] = None  # Limit/stop price, or reference price for market orders
    status: OrderStatus = OrderStatus.OPEN
    created_at: Optional[datetime] = None
    filled_at: Optional[datetime] = None
    fill_price: Optional[float] = None
    filled_quantity: float = 0.0
    commission: float = 0.0
    slippage: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status is OrderStatus.OPEN

    def cancel(self):
        if self.is_open:
            self.status = OrderStatus.CANCELLED


@dataclass
class Position:
    """Open position, marked to the latest close every step."""

    id: str
    symbol: str
    side: PositionSide
    quantity: float
    entry_price: float
    entry_time: datetime
    current_price: float
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    entry_commission: float = 0.0  # Not yet attributed to a closed trade
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_reason: Optional[ExitReason] = None

    def mark(self, price: float):
        """Update mark price and unrealized P&L."""
        self.current_price = price
        self.unrealized_pnl = self.side.direction * (price - self.entry_price) * self.quantity

    def gross_pnl(self, exit_price: float, quantity: Optional[float] = None) -> float:
        qty = self.quantity if quantity is None else quantity
        return self.side.direction * (exit_price - self.entry_price) * qty


@dataclass(frozen=True)
class Trade:
    """Immutable record of a closed position (or closed portion of one)."""

    symbol: str
    side: PositionSide
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    quantity: float
    realized_pnl: float  # Net of entry and exit commission
    exit_reason: ExitReason
    commission: float = 0.0

    @property
    def hold_time(self) -> timedelta:
        return self.exit_time - self.entry_time

    @property
    def return_pct(self) -> float:
        notional = self.entry_price * self.quantity
        return self.realized_pnl / notional if notional else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for CSV export."""
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_time": self.entry_time,
            "entry_price": self.entry_price,
            "exit_time": self.exit_time,
            "exit_price": self.exit_price,
            "quantity": self.quantity,
            "realized_pnl": self.realized_pnl,
            "commission": self.commission,
            "hold_time_hours": self.hold_time.total_seconds() / 3600,
            "exit_reason": self.exit_reason.value
        }


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class AccountView:
    """Read-only account snapshot handed to strategies.

    Positions and orders are copies; mutating them has no effect on the
    ledger.
    """

    balance: float
    equity: float
    initial_balance: float
    positions: Mapping[str, Position]
    open_orders: Tuple[Order, ...]

    def position(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol)

    def has_position(self, symbol: str) -> bool:
        return symbol in self.positions


class Account:
    """Account state for exactly one replay run.

    Never share an instance between concurrent runs; batch harnesses build a
    fresh one per run.
    """

    def __init__(self, initial_balance: float = 10000.0):
        if initial_balance <= 0:
            raise ValueError(f"initial_balance must be > 0, got: {initial_balance}")
        self.initial_balance = initial_balance
        self.reset()

    def reset(self, start_time: Optional[datetime] = None):
        """Return to a pristine state; seeds the equity trace when ``start_time`` is given."""
        self.balance: float = self.initial_balance
        self.positions: Dict[str, Position] = {}
        self.orders: Dict[str, Order] = {}
        self._open_orders: Dict[str, Order] = {}
        self.trades: List[Trade] = []
        self.equity_curve: List[EquityPoint] = []
        self._order_seq = 0
        self._position_seq = 0

        if start_time is not None:
            self.equity_curve.append(EquityPoint(start_time, self.initial_balance))

    @property
    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self.positions.values())

    @property
    def equity(self) -> float:
        return self.balance + self.unrealized_pnl

    def next_order_id(self) -> str:
        self._order_seq += 1
        return f"ord-{self._order_seq}"

    def add_order(self, order: Order) -> Order:
        self.orders[order.id] = order
        if order.is_open:
            self._open_orders[order.id] = order
        return order

    def open_orders(self) -> List[Order]:
        """Open orders in creation order.

        Orders are filled and cancelled in place; terminal ones are pruned
        from the open index on each call.
        """
        for order_id in [i for i, o in self._open_orders.items() if not o.is_open]:
            del self._open_orders[order_id]
        return list(self._open_orders.values())

    def cancel_order(self, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or not order.is_open:
            return False
        order.cancel()
        return True

    def open_position(
        self,
        symbol: str,
        side: PositionSide,
        quantity: float,
        price: float,
        time: datetime,
        commission: float = 0.0,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> Position:
        """Open a new position from a fill; debits the entry commission."""
        if symbol in self.positions:
            raise ValueError(f"Position already open for {symbol}")

        self._position_seq += 1
        position = Position(
            id=f"pos-{self._position_seq}",
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=price,
            entry_time=time,
            current_price=price,
            entry_commission=commission,
            stop_loss=stop_loss,
            take_profit=take_profit
        )
        self.positions[symbol] = position
        self.balance -= commission
        return position

    def close_position(
        self,
        symbol: str,
        price: float,
        time: datetime,
        reason: ExitReason,
        commission: float = 0.0,
        quantity: Optional[float] = None
    ) -> Trade:
        """Close all (or ``quantity`` of) the position on ``symbol``.

        The closed portion becomes a ``Trade`` carrying its share of the
        entry commission plus the exit commission.
        """
        position = self.positions[symbol]
        qty = position.quantity if quantity is None else min(quantity, position.quantity)

        share = qty / position.quantity
        entry_commission = position.entry_commission * share
        gross = position.gross_pnl(price, qty)
        realized = gross - entry_commission - commission

        self.balance += gross - commission
        position.realized_pnl += realized
        position.entry_commission -= entry_commission
        position.quantity -= qty

        trade = Trade(
            symbol=symbol,
            side=position.side,
            entry_time=position.entry_time,
            entry_price=position.entry_price,
            exit_time=time,
            exit_price=price,
            quantity=qty,
            realized_pnl=realized,
            exit_reason=reason,
            commission=entry_commission + commission
        )
        self.trades.append(trade)

        if position.quantity <= QUANTITY_EPSILON:
            position.quantity = 0.0
            position.unrealized_pnl = 0.0
            position.exit_time = time
            position.exit_reason = reason
            del self.positions[symbol]
        else:
            position.mark(position.current_price)

        return trade

    def mark_to_market(self, prices: Mapping[str, float]):
        for symbol, position in self.positions.items():
            if symbol in prices:
                position.mark(prices[symbol])

    def record_equity(self, timestamp: datetime) -> EquityPoint:
        point = EquityPoint(timestamp, self.equity)
        self.equity_curve.append(point)
        return point

    def view(self) -> AccountView:
        return AccountView(
            balance=self.balance,
            equity=self.equity,
            initial_balance=self.initial_balance,
            positions=MappingProxyType({s: replace(p) for s, p in self.positions.items()}),
            open_orders=tuple(replace(o) for o in self.open_orders())
        )
