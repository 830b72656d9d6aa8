"""Rolling walk-forward analysis.

Slides a fixed-size window over the candle series. In each window the first
``floor(window_size * in_sample_ratio)`` candles are used to optimize the
strategy parameters; the remaining candles are replayed once with the best
parameters found. Windows are independent and share no state.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union
import logging

import numpy as np

from .account import Account
from .analytics import MetricsRecord
from .config import BacktestConfig, WalkForwardConfig
from .data_source import Candle
from .engine import BacktestEngine
from .errors import ConfigError, StrategyFault
from .events import EventBus, WalkForwardWindowCompleted, emit
from .grid_search import EngineFactory, OptimizationEngine, ParameterSpace
from .strategy import StrategyTemplate


@dataclass
class WalkForwardWindow:
    """One window.

    ``*_end`` indices are exclusive; the ``*_time`` fields are the
    timestamps of the first and last candle of each slice, both inclusive.
    """

    index: int
    in_sample_start: int
    in_sample_end: int
    out_of_sample_start: int
    out_of_sample_end: int
    in_sample_start_time: datetime
    in_sample_end_time: datetime
    out_of_sample_start_time: datetime
    out_of_sample_end_time: datetime
    parameters: Optional[Dict[str, Any]] = None
    metrics: Optional[MetricsRecord] = None
    in_sample_score: Optional[float] = None

    def to_dict(self) -> dict:
        row = {
            "window": self.index,
            "in_sample_start": self.in_sample_start,
            "in_sample_end": self.in_sample_end,
            "out_of_sample_start": self.out_of_sample_start,
            "out_of_sample_end": self.out_of_sample_end,
            "in_sample_start_time": self.in_sample_start_time,
            "in_sample_end_time": self.in_sample_end_time,
            "out_of_sample_start_time": self.out_of_sample_start_time,
            "out_of_sample_end_time": self.out_of_sample_end_time,
            "parameters": self.parameters,
            "in_sample_score": self.in_sample_score,
        }
        if self.metrics is not None:
            row.update({
                "oos_total_trades": self.metrics.total_trades,
                "oos_total_return": self.metrics.total_return,
                "oos_sharpe_ratio": self.metrics.sharpe_ratio,
                "oos_max_drawdown": self.metrics.max_drawdown,
            })
        return row


@dataclass
class WalkForwardResult:
    windows: List[WalkForwardWindow]
    summary: Dict[str, Any] = field(default_factory=dict)


class WalkForwardAnalyzer:
    """Optimizes on in-sample slices and validates on the following slice."""

    def __init__(
        self,
        config: Optional[BacktestConfig] = None,
        optimizer: Optional[OptimizationEngine] = None,
        engine_factory: Optional[EngineFactory] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize walk-forward analyzer.

        Args:
            config: Backtest configuration (window settings in config.walk_forward)
            optimizer: Optimization engine for the in-sample search
            engine_factory: Builds the engine for out-of-sample runs
            event_bus: Optional bus for per-window events
            logger: Optional logger
        """
        self.config = config or BacktestConfig()
        self.engine_factory = engine_factory
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)
        self.optimizer = optimizer or OptimizationEngine(
            self.config, engine_factory=engine_factory, logger=self.logger
        )

    def walk_forward(
        self,
        strategy_template: StrategyTemplate,
        candles: Sequence[Candle],
        parameter_space: Union[ParameterSpace, Mapping[str, Any]],
        in_sample_ratio: Optional[float] = None,
        window_size: Optional[int] = None,
        step_size: Optional[int] = None,
        method: Optional[str] = None,
        objective: Optional[str] = None,
        symbol: Optional[str] = None
    ) -> WalkForwardResult:
        """Run walk-forward analysis.

        Args:
            strategy_template: Callable building a strategy from a parameter dict
            candles: Full candle series
            parameter_space: Search space for the in-sample optimization
            in_sample_ratio: Fraction of each window used in-sample
            window_size: Candles per window
            step_size: Candles between consecutive window starts
            method: Optimization method (defaults to config)
            objective: Optimization objective (defaults to config)
            symbol: Symbol traded

        Returns:
            WalkForwardResult with one entry per window and a summary

        Raises:
            ConfigError: Window settings invalid or leaving an empty slice
        """
        defaults = self.config.walk_forward
        settings = WalkForwardConfig(
            in_sample_ratio=defaults.in_sample_ratio if in_sample_ratio is None else in_sample_ratio,
            window_size=defaults.window_size if window_size is None else window_size,
            step_size=defaults.step_size if step_size is None else step_size,
        )
        in_sample_size = int(settings.window_size * settings.in_sample_ratio)
        if in_sample_size < 1 or in_sample_size >= settings.window_size:
            raise ConfigError(
                f"window_size={settings.window_size} with in_sample_ratio={settings.in_sample_ratio} "
                f"leaves an empty in-sample or out-of-sample slice"
            )

        objective = objective or self.config.optimization.objective
        MetricsRecord.resolve_objective(objective)

        candles = tuple(candles)
        starts = list(range(0, len(candles) - settings.window_size + 1, settings.step_size))
        total = len(starts)

        self.logger.info("=" * 70)
        self.logger.info("WALK-FORWARD ANALYSIS")
        self.logger.info("=" * 70)
        self.logger.info(f"Candles: {len(candles)}")
        self.logger.info(f"Window size: {settings.window_size} (in-sample {in_sample_size})")
        self.logger.info(f"Step size: {settings.step_size}")
        self.logger.info(f"Windows: {total}")
        self.logger.info("=" * 70)

        windows: List[WalkForwardWindow] = []
        for index, start in enumerate(starts):
            split = start + in_sample_size
            end = start + settings.window_size
            window = WalkForwardWindow(
                index=index,
                in_sample_start=start,
                in_sample_end=split,
                out_of_sample_start=split,
                out_of_sample_end=end,
                in_sample_start_time=candles[start].timestamp,
                in_sample_end_time=candles[split - 1].timestamp,
                out_of_sample_start_time=candles[split].timestamp,
                out_of_sample_end_time=candles[end - 1].timestamp
            )

            self.logger.info("-" * 70)
            self.logger.info(f"WINDOW {index + 1}/{total}: in-sample [{start}, {split}), out-of-sample [{split}, {end})")

            report = self.optimizer.optimize(
                strategy_template,
                candles[start:split],
                parameter_space,
                method=method,
                objective=objective,
                symbol=symbol
            )

            if report.best is None:
                self.logger.warning(f"Window {index + 1}: no successful in-sample combination")
            else:
                window.parameters = dict(report.best.parameters)
                window.in_sample_score = report.best.score(objective)
                window.metrics = self._run_out_of_sample(
                    strategy_template, window.parameters, candles[split:end], symbol
                )
                if window.metrics is not None:
                    self.logger.info(
                        f"Window {index + 1}: params {window.parameters}, "
                        f"in-sample {objective} {window.in_sample_score:.4f}, "
                        f"out-of-sample return {window.metrics.total_return:.2%}"
                    )

            windows.append(window)
            emit(self.event_bus, WalkForwardWindowCompleted(
                index=index,
                total=total,
                parameters=window.parameters,
                out_of_sample_return=window.metrics.total_return if window.metrics else None
            ))

        summary = summarize_windows(windows)

        self.logger.info("=" * 70)
        self.logger.info("WALK-FORWARD ANALYSIS COMPLETE")
        self.logger.info(f"Windows evaluated: {summary['evaluated_windows']}/{summary['windows']}")
        self.logger.info(f"Average OOS return: {summary['avg_oos_return']:.2%}")
        self.logger.info(f"Profitable windows: {summary['profitable_windows_ratio']:.2%}")
        self.logger.info("=" * 70)

        return WalkForwardResult(windows=windows, summary=summary)

    def _run_out_of_sample(
        self,
        strategy_template: StrategyTemplate,
        parameters: Dict[str, Any],
        candles: Sequence[Candle],
        symbol: Optional[str]
    ) -> Optional[MetricsRecord]:
        engine = self.engine_factory(self.config) if self.engine_factory else BacktestEngine(self.config)
        try:
            result = engine.run(
                strategy_template(parameters), candles, Account(self.config.initial_balance), symbol=symbol
            )
        except StrategyFault as e:
            self.logger.warning(f"Out-of-sample run failed with {parameters}: {e}")
            return None
        return result.metrics


def summarize_windows(windows: Sequence[WalkForwardWindow]) -> Dict[str, Any]:
    """Aggregate out-of-sample results across windows."""
    evaluated = [w.metrics for w in windows if w.metrics is not None]
    returns = np.array([m.total_return for m in evaluated], dtype=float)

    if len(evaluated) == 0:
        return {
            "windows": len(windows),
            "evaluated_windows": 0,
            "total_oos_trades": 0,
            "avg_oos_return": 0.0,
            "profitable_windows_ratio": 0.0,
            "worst_oos_return": 0.0,
            "median_oos_return": 0.0,
            "avg_oos_sharpe": 0.0,
        }

    return {
        "windows": len(windows),
        "evaluated_windows": len(evaluated),
        "total_oos_trades": sum(m.total_trades for m in evaluated),
        "avg_oos_return": float(returns.mean()),
        "profitable_windows_ratio": float(np.mean(returns > 0)),
        "worst_oos_return": float(returns.min()),
        "median_oos_return": float(np.median(returns)),
        "avg_oos_sharpe": float(np.mean([m.sharpe_ratio for m in evaluated])),
    }
