"""Parameter search driving many independent replay runs.

Grid search enumerates the full cross product of the parameter space
depth-first; random search samples combinations from the same grid. Both go
through the same per-combination path: fresh account, fresh strategy, one
full replay, one metrics record.
"""

from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import math
import os

import numpy as np
import pandas as pd

from .account import Account
from .analytics import MetricsRecord
from .config import BacktestConfig
from .data_source import Candle
from .engine import BacktestEngine
from .errors import OptimizationMethodUnsupported, StrategyFault
from .events import CancellationToken, EventBus, OptimizationCompleted, OptimizationProgress, emit
from .strategy import StrategyTemplate


SUPPORTED_METHODS = ("grid", "random")

EngineFactory = Callable[[BacktestConfig], BacktestEngine]


@dataclass(frozen=True)
class RangeParameter:
    """Numeric range generated by repeated addition, both bounds included."""

    min: float
    max: float
    step: float

    def __post_init__(self):
        if self.step <= 0:
            raise ValueError(f"step must be > 0, got: {self.step}")
        if self.max < self.min:
            raise ValueError(f"max ({self.max}) must be >= min ({self.min})")

    def values(self) -> List[float]:
        # Tolerance keeps the upper bound despite float drift
        tolerance = self.step * 1e-9
        values = []
        value = self.min
        while value <= self.max + tolerance:
            values.append(value)
            value += self.step
        return values


@dataclass(frozen=True)
class ChoiceParameter:
    """Explicit set of values, enumerated in the given order."""

    choices: Tuple[Any, ...]

    def __post_init__(self):
        if not self.choices:
            raise ValueError("choices must not be empty")

    def values(self) -> List[Any]:
        return list(self.choices)


Parameter = Union[RangeParameter, ChoiceParameter]


class ParameterSpace:
    """Ordered mapping of parameter name to range or choice set.

    Parameter order affects enumeration order, never the set of
    combinations.
    """

    def __init__(self, parameters: Mapping[str, Parameter]):
        self.parameters: Dict[str, Parameter] = dict(parameters)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParameterSpace":
        """Build from plain data.

        Example:
            {
                "fast_period": {"type": "range", "min": 5, "max": 20, "step": 5},
                "slow_period": {"type": "choice", "values": [50, 100]},
                "oversold": [25, 30]
            }
        """
        parameters: Dict[str, Parameter] = {}
        for name, value in data.items():
            if isinstance(value, (RangeParameter, ChoiceParameter)):
                parameters[name] = value
            elif isinstance(value, Mapping):
                kind = value.get("type", "range" if "step" in value else "choice")
                if kind == "range":
                    parameters[name] = RangeParameter(value["min"], value["max"], value["step"])
                elif kind == "choice":
                    parameters[name] = ChoiceParameter(tuple(value["values"]))
                else:
                    raise ValueError(f"Unknown parameter type for {name}: {kind}")
            elif isinstance(value, (list, tuple)):
                parameters[name] = ChoiceParameter(tuple(value))
            else:
                parameters[name] = ChoiceParameter((value,))
        return cls(parameters)

    @classmethod
    def coerce(cls, space: Union["ParameterSpace", Mapping[str, Any]]) -> "ParameterSpace":
        return space if isinstance(space, ParameterSpace) else cls.from_dict(space)

    @property
    def size(self) -> int:
        return math.prod(len(p.values()) for p in self.parameters.values())

    def __len__(self) -> int:
        return len(self.parameters)


def generate_grid(space: ParameterSpace) -> List[Dict[str, Any]]:
    """Full cross product, binding one parameter at a time (depth-first)."""
    names = list(space.parameters)
    values = [space.parameters[name].values() for name in names]
    combinations: List[Dict[str, Any]] = []

    def bind(depth: int, current: Dict[str, Any]):
        if depth == len(names):
            combinations.append(dict(current))
            return
        for value in values[depth]:
            current[names[depth]] = value
            bind(depth + 1, current)
        current.pop(names[depth], None)

    bind(0, {})
    return combinations


def sample_random(space: ParameterSpace, n: int, seed: Optional[int] = None) -> List[Dict[str, Any]]:
    """Draw ``n`` distinct combinations from the grid; the whole grid if smaller."""
    grid = generate_grid(space)
    if n >= len(grid):
        return grid
    rng = np.random.default_rng(seed)
    indices = rng.choice(len(grid), size=n, replace=False)
    return [grid[int(i)] for i in indices]


@dataclass(frozen=True)
class OptimizationResult:
    parameters: Dict[str, Any]
    metrics: MetricsRecord

    def score(self, objective: str) -> float:
        return self.metrics.objective(objective)


@dataclass
class OptimizationReport:
    """All evaluated combinations in enumeration order plus the winner."""

    best: Optional[OptimizationResult]
    results: List[OptimizationResult]
    method: str
    objective: str
    total_combinations: int
    failed: int = 0
    cancelled: bool = False

    def top(self, n: int = 10) -> List[OptimizationResult]:
        """Best ``n`` results by objective; ties keep enumeration order."""
        scored = [r for r in self.results if not math.isnan(r.score(self.objective))]
        return sorted(scored, key=lambda r: r.score(self.objective), reverse=True)[:n]

    def to_dataframe(self) -> pd.DataFrame:
        rows = []
        for result in self.results:
            row = {f"param_{k}": v for k, v in result.parameters.items()}
            row.update({f"metric_{k}": v for k, v in result.metrics.to_dict().items()})
            rows.append(row)
        return pd.DataFrame(rows)


def select_best(results: Sequence[OptimizationResult], objective: str) -> Optional[OptimizationResult]:
    """Linear scan for the first-seen maximum; ties keep the earlier result."""
    best = None
    best_score = None
    for result in results:
        score = result.score(objective)
        if math.isnan(score):
            continue
        if best_score is None or score > best_score:
            best, best_score = result, score
    return best


def _evaluate_combination_worker(
    strategy_template: StrategyTemplate,
    params: Dict[str, Any],
    candles: Tuple[Candle, ...],
    config: BacktestConfig,
    symbol: Optional[str] = None,
    engine_factory: Optional[EngineFactory] = None
) -> OptimizationResult:
    """Run one combination on a fresh engine and account.

    Module-level so it can run in a separate process. ``StrategyFault``
    propagates to the caller.
    """
    engine = engine_factory(config) if engine_factory else BacktestEngine(config)
    strategy = strategy_template(params)
    result = engine.run(strategy, candles, Account(config.initial_balance), symbol=symbol)
    return OptimizationResult(parameters=dict(params), metrics=result.metrics)


class OptimizationEngine:
    """Grid/random search engine for strategy parameters.

    Runs the combinations sequentially or on a bounded worker pool and picks
    the best by the configured objective.
    """

    def __init__(
        self,
        config: Optional[BacktestConfig] = None,
        engine_factory: Optional[EngineFactory] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize optimization engine.

        Args:
            config: Backtest configuration (search settings in config.optimization)
            engine_factory: Builds the engine for each run; must be picklable for process pools
            event_bus: Optional bus for progress events
            logger: Optional logger
        """
        self.config = config or BacktestConfig()
        self.engine_factory = engine_factory
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

    def optimize(
        self,
        strategy_template: StrategyTemplate,
        candles: Sequence[Candle],
        parameter_space: Union[ParameterSpace, Mapping[str, Any]],
        method: Optional[str] = None,
        objective: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        symbol: Optional[str] = None
    ) -> OptimizationReport:
        """Search the parameter space.

        Args:
            strategy_template: Callable building a strategy from a parameter dict
            candles: Candles shared read-only by every run
            parameter_space: ParameterSpace or its dict form
            method: "grid" or "random" (defaults to config)
            objective: Metric to maximize (defaults to config)
            cancel_token: Checked between runs
            symbol: Symbol traded

        Returns:
            OptimizationReport with results in enumeration order

        Raises:
            OptimizationMethodUnsupported: Unknown method, before any run starts
            ValueError: Unknown objective, before any run starts
        """
        opt = self.config.optimization
        method = method or opt.method
        objective = objective or opt.objective

        if method not in SUPPORTED_METHODS:
            raise OptimizationMethodUnsupported(method, SUPPORTED_METHODS)
        MetricsRecord.resolve_objective(objective)

        space = ParameterSpace.coerce(parameter_space)
        if method == "grid":
            combinations = generate_grid(space)
        else:
            combinations = sample_random(space, opt.max_iterations, opt.seed)

        candles = tuple(candles)
        total = len(combinations)

        self.logger.info("=" * 70)
        self.logger.info(f"PARAMETER OPTIMIZATION ({method})")
        self.logger.info("=" * 70)
        self.logger.info(f"Objective: {objective}")
        self.logger.info(f"Parallel workers: {opt.n_jobs} ({opt.executor})")
        for name, param in space.parameters.items():
            self.logger.info(f"  {name}: {param.values()}")
        self.logger.info(f"Total combinations to test: {total}")
        self.logger.info("=" * 70)

        token = cancel_token or CancellationToken()
        if opt.n_jobs == 1 or total <= 1:
            outcomes, failed = self._run_sequential(strategy_template, combinations, candles, objective, token, symbol)
        else:
            outcomes, failed = self._run_parallel(strategy_template, combinations, candles, objective, token, symbol)

        results = [r for r in outcomes if r is not None]
        best = select_best(results, objective)
        cancelled = token.cancelled and len(results) + failed < total

        emit(self.event_bus, OptimizationCompleted(
            total=total,
            failed=failed,
            best_parameters=best.parameters if best else None,
            best_score=best.score(objective) if best else None
        ))

        self.logger.info("=" * 70)
        self.logger.info(
            f"OPTIMIZATION COMPLETE: {len(results)}/{total} evaluated, {failed} failed"
            + (" (cancelled)" if cancelled else "")
        )
        if best:
            self.logger.info(f"Best {objective} = {best.score(objective):.4f} with {best.parameters}")
        self.logger.info("=" * 70)

        return OptimizationReport(
            best=best,
            results=results,
            method=method,
            objective=objective,
            total_combinations=total,
            failed=failed,
            cancelled=cancelled
        )

    def _run_sequential(
        self,
        strategy_template: StrategyTemplate,
        combinations: List[Dict[str, Any]],
        candles: Tuple[Candle, ...],
        objective: str,
        token: CancellationToken,
        symbol: Optional[str]
    ) -> Tuple[List[Optional[OptimizationResult]], int]:
        outcomes: List[Optional[OptimizationResult]] = [None] * len(combinations)
        failed = 0
        total = len(combinations)

        for i, params in enumerate(combinations):
            if token.cancelled:
                self.logger.warning(f"Optimization cancelled after {i}/{total} combinations")
                break

            try:
                result = _evaluate_combination_worker(
                    strategy_template, params, candles, self.config, symbol, self.engine_factory
                )
            except StrategyFault as e:
                failed += 1
                self.logger.warning(f"[{i + 1}/{total}] Failed {params}: {e}")
                emit(self.event_bus, OptimizationProgress(i + 1, total, params, None))
                continue

            outcomes[i] = result
            score = result.score(objective)
            self.logger.debug(f"[{i + 1}/{total}] {params} -> {objective} = {score:.4f}")
            emit(self.event_bus, OptimizationProgress(i + 1, total, params, score))

        return outcomes, failed

    def _run_parallel(
        self,
        strategy_template: StrategyTemplate,
        combinations: List[Dict[str, Any]],
        candles: Tuple[Candle, ...],
        objective: str,
        token: CancellationToken,
        symbol: Optional[str]
    ) -> Tuple[List[Optional[OptimizationResult]], int]:
        opt = self.config.optimization
        n_jobs = (os.cpu_count() or 1) if opt.n_jobs == -1 else opt.n_jobs
        pool_cls = ProcessPoolExecutor if opt.executor == "process" else ThreadPoolExecutor

        self.logger.info(f"Running with {n_jobs} parallel workers")

        outcomes: List[Optional[OptimizationResult]] = [None] * len(combinations)
        failed = 0
        completed = 0
        total = len(combinations)

        executor = pool_cls(max_workers=n_jobs)
        try:
            futures = {
                executor.submit(
                    _evaluate_combination_worker,
                    strategy_template,
                    params,
                    candles,
                    self.config,
                    symbol,
                    self.engine_factory
                ): i
                for i, params in enumerate(combinations)
            }

            for future in as_completed(futures):
                i = futures[future]
                params = combinations[i]
                completed += 1

                try:
                    result = future.result()
                except StrategyFault as e:
                    failed += 1
                    self.logger.warning(f"[{completed}/{total}] Failed {params}: {e}")
                    emit(self.event_bus, OptimizationProgress(completed, total, params, None))
                else:
                    outcomes[i] = result
                    score = result.score(objective)
                    self.logger.debug(f"[{completed}/{total}] Completed {params} -> {objective} = {score:.4f}")
                    emit(self.event_bus, OptimizationProgress(completed, total, params, score))

                if token.cancelled:
                    self.logger.warning(f"Optimization cancelled after {completed}/{total} combinations")
                    break
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        return outcomes, failed

    def compare_strategies(
        self,
        templates: Mapping[str, StrategyTemplate],
        candles: Sequence[Candle],
        objective: Optional[str] = None,
        symbol: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run each strategy once with its default parameters.

        Returns:
            Dictionary with per-strategy ``metrics`` and the first-seen ``best`` name
        """
        objective = objective or self.config.optimization.objective
        MetricsRecord.resolve_objective(objective)
        candles = tuple(candles)

        metrics: Dict[str, MetricsRecord] = {}
        failed: List[str] = []
        for name, template in templates.items():
            try:
                metrics[name] = _evaluate_combination_worker(
                    template, {}, candles, self.config, symbol, self.engine_factory
                ).metrics
            except StrategyFault as e:
                failed.append(name)
                self.logger.warning(f"Strategy {name} failed: {e}")

        best_name = None
        best_score = None
        for name, record in metrics.items():
            score = record.objective(objective)
            if not math.isnan(score) and (best_score is None or score > best_score):
                best_name, best_score = name, score

        return {"metrics": metrics, "best": best_name, "objective": objective, "failed": failed}
