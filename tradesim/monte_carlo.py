"""Monte Carlo resampling of a completed trade ledger.

Each iteration shuffles the realized P&L sequence (Fisher-Yates), rebuilds a
synthetic equity curve from the initial balance and records its total return
and max drawdown. This is a what-if about trade sequencing, not a
re-simulation of strategy logic.

Iteration ``i`` always uses the ``i``-th child of the configured seed, so a
fixed seed gives identical results whatever the worker count.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np

from .account import Trade
from .analytics import max_drawdown
from .config import MonteCarloConfig
from .events import CancellationToken, EventBus, MonteCarloProgress, emit


@dataclass(frozen=True)
class SimulationRun:
    final_equity: float
    total_return: float
    max_drawdown: float
    min_equity: float


@dataclass(frozen=True)
class DistributionStats:
    mean: float = 0.0
    median: float = 0.0
    std: float = 0.0  # Population standard deviation
    min: float = 0.0
    max: float = 0.0

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "DistributionStats":
        if len(values) == 0:
            return cls()
        arr = np.asarray(values, dtype=float)
        return cls(
            mean=float(arr.mean()),
            median=float(np.median(arr)),
            std=float(arr.std()),
            min=float(arr.min()),
            max=float(arr.max())
        )


@dataclass
class MonteCarloResult:
    iterations: int
    runs: List[SimulationRun]
    returns: DistributionStats
    drawdowns: DistributionStats
    confidence_level: float
    confidence_intervals: Dict[str, Tuple[float, float]] = field(default_factory=dict)
    probability_of_ruin: float = 0.0
    probability_of_profit: float = 0.0
    expected_drawdown: float = 0.0
    cancelled: bool = False

    @property
    def aggregate_stats(self) -> Dict[str, DistributionStats]:
        return {"returns": self.returns, "drawdowns": self.drawdowns}

    def to_dict(self) -> dict:
        return {
            "iterations": self.iterations,
            "completed": len(self.runs),
            "returns": vars(self.returns),
            "drawdowns": vars(self.drawdowns),
            "confidence_level": self.confidence_level,
            "confidence_intervals": {k: list(v) for k, v in self.confidence_intervals.items()},
            "probability_of_ruin": self.probability_of_ruin,
            "probability_of_profit": self.probability_of_profit,
            "expected_drawdown": self.expected_drawdown,
            "cancelled": self.cancelled
        }


def fisher_yates(values: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Uniformly random permutation of a copy of ``values``."""
    shuffled = values.copy()
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng.integers(0, i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def simulate_run(
    pnls: np.ndarray,
    initial_balance: float,
    seed: np.random.SeedSequence,
    ruin_level: float
) -> Tuple[SimulationRun, bool]:
    """One resampled equity path; also reports whether it touched ``ruin_level``."""
    rng = np.random.default_rng(seed)
    shuffled = fisher_yates(pnls, rng)
    curve = np.concatenate(([initial_balance], initial_balance + np.cumsum(shuffled)))

    run = SimulationRun(
        final_equity=float(curve[-1]),
        total_return=float((curve[-1] - initial_balance) / initial_balance),
        max_drawdown=max_drawdown(curve),
        min_equity=float(curve.min())
    )
    return run, bool(curve.min() <= ruin_level)


class MonteCarloSimulator:
    """Resamples trade order to estimate sequencing risk."""

    def __init__(
        self,
        config: Optional[MonteCarloConfig] = None,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config or MonteCarloConfig()
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

    def resample(
        self,
        trades: Sequence[Trade],
        initial_balance: float,
        iterations: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> MonteCarloResult:
        """Run the resampling.

        Args:
            trades: Completed trades of a run
            initial_balance: Starting equity of every synthetic curve
            iterations: Number of permutations (defaults to config.simulations)
            cancel_token: Checked between iterations

        Returns:
            MonteCarloResult with per-run and aggregate statistics

        Raises:
            ValueError: If initial_balance is not positive or iterations < 1
        """
        if initial_balance <= 0:
            raise ValueError(f"initial_balance must be > 0, got: {initial_balance}")

        if iterations is None:
            iterations = self.config.simulations
        if iterations < 1:
            raise ValueError(f"iterations must be >= 1, got: {iterations}")
        pnls = np.array([t.realized_pnl for t in trades], dtype=float)
        seeds = np.random.SeedSequence(self.config.seed).spawn(iterations)
        ruin_level = initial_balance * (1 - self.config.ruin_threshold)
        token = cancel_token or CancellationToken()

        self.logger.info(f"Running {iterations} Monte Carlo simulations over {len(pnls)} trades")

        runs: List[SimulationRun] = []
        ruined = 0
        cancelled = False
        interval = self.config.progress_interval

        if self.config.n_jobs == 1:
            outcomes = (simulate_run(pnls, initial_balance, s, ruin_level) for s in seeds)
            executor = None
        else:
            executor = ThreadPoolExecutor(max_workers=self.config.n_jobs)
            futures = [executor.submit(simulate_run, pnls, initial_balance, s, ruin_level) for s in seeds]
            outcomes = (f.result() for f in futures)

        try:
            for i, (run, hit_ruin) in enumerate(outcomes, 1):
                runs.append(run)
                ruined += hit_ruin

                if i % interval == 0 or i == iterations:
                    emit(self.event_bus, MonteCarloProgress(completed=i, total=iterations))

                if token.cancelled and i < iterations:
                    self.logger.warning(f"Monte Carlo cancelled after {i}/{iterations} iterations")
                    cancelled = True
                    break
        finally:
            if executor is not None:
                executor.shutdown(wait=True, cancel_futures=True)

        returns = [r.total_return for r in runs]
        drawdowns = [r.max_drawdown for r in runs]
        confidence = self.config.confidence_level

        result = MonteCarloResult(
            iterations=iterations,
            runs=runs,
            returns=DistributionStats.from_values(returns),
            drawdowns=DistributionStats.from_values(drawdowns),
            confidence_level=confidence,
            confidence_intervals={
                "returns": confidence_interval(returns, confidence),
                "drawdowns": confidence_interval(drawdowns, confidence)
            },
            probability_of_ruin=ruined / len(runs) if runs else 0.0,
            probability_of_profit=float(np.mean(np.asarray(returns) > 0)) if runs else 0.0,
            expected_drawdown=float(np.mean(drawdowns)) if runs else 0.0,
            cancelled=cancelled
        )

        self.logger.info(
            f"Monte Carlo complete: mean return {result.returns.mean:.2%}, "
            f"expected drawdown {result.expected_drawdown:.2%}, "
            f"ruin probability {result.probability_of_ruin:.2%}"
        )
        return result


def confidence_interval(values: Sequence[float], confidence: float) -> Tuple[float, float]:
    """Two-sided percentile interval covering ``confidence`` of the values."""
    if len(values) == 0:
        return (0.0, 0.0)
    tail = (1 - confidence) / 2
    low, high = np.percentile(np.asarray(values, dtype=float), [tail * 100, (1 - tail) * 100])
    return (float(low), float(high))
