"""Execution simulator for realistic order fills.

Models fill probability, slippage, commission, latency and (optionally)
partial fills. Every call returns a result value, ``FillOutcome`` or
``Rejected``, instead of raising.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union
import math

import numpy as np

from .account import Order, OrderSide, OrderStatus, OrderType
from .config import ExecutionConfig
from .data_source import Candle


class RejectReason(Enum):
    NO_FILL = "no_fill"
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    NOT_OPEN = "not_open"
    INVALID_SIGNAL = "invalid_signal"


@dataclass(frozen=True)
class FillOutcome:
    order_id: str
    price: float
    quantity: float
    commission: float
    slippage: float  # Absolute price adjustment applied
    filled_at: datetime
    partial: bool = False


@dataclass(frozen=True)
class Rejected:
    order_id: Optional[str]
    reason: RejectReason
    message: str = ""


FillResult = Union[FillOutcome, Rejected]

FillDecider = Callable[[Order, Candle, ExecutionConfig], bool]
PartialFillSampler = Callable[[Order, Candle, ExecutionConfig], float]


def always_fill(order: Order, candle: Candle, config: ExecutionConfig) -> bool:
    return True


def never_fill(order: Order, candle: Candle, config: ExecutionConfig) -> bool:
    return False


def is_triggered(order: Order, candle: Candle) -> bool:
    """Check a resting limit/stop order against the candle's high/low.

    A limit buy fills when low <= price, a limit sell when high >= price.
    Stop orders use the inverse relation.
    """
    if order.price is None:
        return False
    if order.type is OrderType.LIMIT:
        if order.side is OrderSide.BUY:
            return candle.low <= order.price
        return candle.high >= order.price
    if order.type is OrderType.STOP:
        if order.side is OrderSide.BUY:
            return candle.high >= order.price
        return candle.low <= order.price
    return False


class ExecutionSimulator:
    """Simulates order execution with costs and fill uncertainty.

    The fill/no-fill draw and the partial fill ratio go through injectable
    callables so tests can pin outcomes; by default both use a seeded
    ``numpy`` generator.
    """

    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        fill_decider: Optional[FillDecider] = None,
        partial_fill_sampler: Optional[PartialFillSampler] = None,
        seed: Optional[int] = None
    ):
        """Initialize execution simulator.

        Args:
            config: Default execution cost model
            fill_decider: Callable deciding whether an order fills
            partial_fill_sampler: Callable returning the filled fraction
            seed: Seed for the default random draws (falls back to config.seed)
        """
        self.config = config or ExecutionConfig()
        self._rng = np.random.default_rng(seed if seed is not None else self.config.seed)
        self.fill_decider = fill_decider or self._draw_fill
        self.partial_fill_sampler = partial_fill_sampler or self._draw_partial_ratio

    def _draw_fill(self, order: Order, candle: Candle, config: ExecutionConfig) -> bool:
        return self._rng.random() < config.fill_probability

    def _draw_partial_ratio(self, order: Order, candle: Candle, config: ExecutionConfig) -> float:
        return float(self._rng.uniform(config.min_partial_fill_ratio, 1.0))

    def simulate_fill(
        self,
        order: Order,
        candle: Candle,
        config: Optional[ExecutionConfig] = None
    ) -> FillResult:
        """Attempt to fill ``order`` on ``candle``.

        Market orders execute at their reference price (or the candle close)
        adjusted by slippage: added for buys, subtracted for sells. Limit and
        stop orders execute exactly at their price. On a fill the order is
        marked filled; a partially filled order is terminal too, the
        remainder is not re-queued.

        Args:
            order: Open order to execute
            candle: Candle the decision is made on
            config: Cost model override for this call

        Returns:
            FillOutcome on execution, Rejected otherwise
        """
        cfg = config or self.config

        if not order.is_open:
            return Rejected(order.id, RejectReason.NOT_OPEN, f"Order status is {order.status.value}")

        if not (order.quantity > 0 and math.isfinite(order.quantity)):
            return Rejected(order.id, RejectReason.INVALID_QUANTITY, f"Quantity {order.quantity}")

        if order.type is OrderType.MARKET:
            reference = order.price if order.price is not None else candle.close
        else:
            reference = order.price

        if reference is None or not (reference > 0 and math.isfinite(reference)):
            return Rejected(order.id, RejectReason.INVALID_PRICE, f"Price {reference}")

        if not self.fill_decider(order, candle, cfg):
            return Rejected(order.id, RejectReason.NO_FILL, "Fill probability draw failed")

        quantity = order.quantity
        partial = False
        if cfg.partial_fills:
            ratio = min(max(self.partial_fill_sampler(order, candle, cfg), 0.0), 1.0)
            if ratio <= 0.0:
                return Rejected(order.id, RejectReason.NO_FILL, "Zero partial fill")
            partial = ratio < 1.0
            quantity = order.quantity * ratio

        if order.type is OrderType.MARKET:
            slippage = reference * cfg.slippage_fraction
            price = reference + slippage if order.side is OrderSide.BUY else reference - slippage
        else:
            slippage = 0.0
            price = reference

        commission = quantity * price * cfg.commission_rate
        filled_at = candle.timestamp + timedelta(milliseconds=cfg.latency_ms)

        order.status = OrderStatus.FILLED
        order.filled_at = filled_at
        order.fill_price = price
        order.filled_quantity = quantity
        order.commission = commission
        order.slippage = slippage

        return FillOutcome(
            order_id=order.id,
            price=price,
            quantity=quantity,
            commission=commission,
            slippage=slippage,
            filled_at=filled_at,
            partial=partial
        )
