"""tradesim - candle replay backtesting and analytics.

This package replays historical candles through a pluggable strategy and:
- Caches candle series per (symbol, resolution, start, end) with FIFO eviction
- Simulates fills with slippage, commission, latency and fill probability
- Tracks balance, positions, trades and the equity curve per run
- Computes performance and risk metrics for each run
- Searches parameter spaces (grid/random), resamples trades (Monte Carlo)
  and validates parameters out-of-sample (walk-forward)

Usage:
    python -m tradesim --mode backtest --strategy sma_cross --resolution 1h --start 2024-01-01 --end 2024-03-31

Package structure:
- config: BacktestConfig and its nested section dataclasses
- data_source / api_client / cache: candle backends and the historical data cache
- account / broker_sim / engine: account ledger, execution simulator, replay loop
- strategy / indicators: strategy interface, reference strategies, indicators
- analytics: MetricsRecord and metric functions
- grid_search / monte_carlo / walk_forward: analysis layers
- reporting: BacktestReporter for report building and export
- cli: Command-line interface
"""

__version__ = "1.0.0"

from .account import Account, AccountView, ExitReason, Order, OrderSide, OrderType, Position, Trade
from .analytics import MetricsRecord, compute_metrics
from .broker_sim import ExecutionSimulator, FillOutcome, Rejected
from .cache import HistoricalDataCache, create_cache
from .config import BacktestConfig, ExecutionConfig
from .data_source import Candle
from .engine import BacktestEngine, BacktestResult
from .errors import (
    BacktestError,
    ConfigError,
    DataLoadFailure,
    InvalidSignal,
    OptimizationMethodUnsupported,
    StrategyFault,
)
from .events import CancellationToken, EventBus
from .grid_search import ChoiceParameter, OptimizationEngine, ParameterSpace, RangeParameter
from .monte_carlo import MonteCarloSimulator
from .reporting import BacktestReporter
from .strategy import MarketSnapshot, Signal, Strategy, StrategyRegistry
from .walk_forward import WalkForwardAnalyzer

__all__ = [
    "Account",
    "AccountView",
    "ExitReason",
    "Order",
    "OrderSide",
    "OrderType",
    "Position",
    "Trade",
    "MetricsRecord",
    "compute_metrics",
    "ExecutionSimulator",
    "FillOutcome",
    "Rejected",
    "HistoricalDataCache",
    "create_cache",
    "BacktestConfig",
    "ExecutionConfig",
    "Candle",
    "BacktestEngine",
    "BacktestResult",
    "BacktestError",
    "ConfigError",
    "DataLoadFailure",
    "InvalidSignal",
    "OptimizationMethodUnsupported",
    "StrategyFault",
    "CancellationToken",
    "EventBus",
    "ChoiceParameter",
    "OptimizationEngine",
    "ParameterSpace",
    "RangeParameter",
    "MonteCarloSimulator",
    "BacktestReporter",
    "MarketSnapshot",
    "Signal",
    "Strategy",
    "StrategyRegistry",
    "WalkForwardAnalyzer"
]
