"""Results reporting and CSV/JSON export.

Builds the structured per-run report and writes backtest, optimization,
Monte Carlo and walk-forward results to disk.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import math

import pandas as pd

from .analytics import drawdown_series, monthly_returns
from .engine import BacktestResult
from .grid_search import OptimizationReport
from .monte_carlo import MonteCarloResult
from .walk_forward import WalkForwardResult


TRADE_TAIL = 100


def _jsonable(value: Any) -> Any:
    """Recursively convert a report into JSON-safe values.

    Datetimes become ISO strings and non-finite floats become None.
    """
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


class BacktestReporter:
    """Generates reports and exports backtest results."""

    def __init__(self, output_dir: str = "./backtest_results", logger: Optional[logging.Logger] = None):
        """Initialize reporter.

        Args:
            output_dir: Directory to save reports
            logger: Optional logger
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def build_report(self, result: BacktestResult) -> Dict[str, Any]:
        """Build the structured report of a completed run.

        Args:
            result: Result returned by BacktestEngine.run

        Returns:
            Dictionary with summary, performance, risk, trades (last 100),
            equity, drawdown and monthly sections
        """
        m = result.metrics
        return {
            "summary": {
                "strategy": result.strategy_name,
                "symbol": result.symbol,
                "parameters": dict(result.parameters),
                "period": {
                    "start": m.start_date,
                    "end": m.end_date,
                    "periods": m.trading_periods,
                },
                "initial_balance": m.initial_balance,
                "final_balance": m.final_balance,
                "final_equity": m.final_equity,
                "total_return": m.total_return,
                "annualized_return": m.annualized_return,
                "rejected_signals": result.rejected_signals,
            },
            "performance": {
                "trades": m.total_trades,
                "winning_trades": m.winning_trades,
                "losing_trades": m.losing_trades,
                "win_rate": m.win_rate,
                "net_profit": m.net_profit,
                "profit_factor": m.profit_factor,
                "avg_win": m.avg_win,
                "avg_loss": m.avg_loss,
                "avg_trade": m.avg_trade,
                "largest_win": m.largest_win,
                "largest_loss": m.largest_loss,
                "avg_hold_time_hours": m.avg_hold_time_hours,
            },
            "risk": {
                "max_drawdown": m.max_drawdown,
                "sharpe_ratio": m.sharpe_ratio,
                "sortino_ratio": m.sortino_ratio,
                "calmar_ratio": m.calmar_ratio,
                "var_95": m.var_95,
                "cvar_95": m.cvar_95,
                "omega_ratio": m.omega_ratio,
                "ulcer_index": m.ulcer_index,
            },
            "trades": [t.to_dict() for t in result.trades[-TRADE_TAIL:]],
            "equity": [{"timestamp": p.timestamp, "equity": p.value} for p in result.equity_curve],
            "drawdown": drawdown_series(result.equity_curve),
            "monthly": monthly_returns(result.equity_curve),
        }

    def _prefix(self, *parts: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return "_".join([p for p in parts if p] + [timestamp])

    def _write_json(self, data: Any, path: Path) -> Path:
        with open(path, "w") as f:
            json.dump(_jsonable(data), f, indent=2)
        return path

    def save_results(
        self,
        result: BacktestResult,
        resolution: str = "",
        save_trades: bool = True,
        save_equity: bool = True
    ) -> Dict[str, Path]:
        """Save backtest results to files.

        Args:
            result: Result returned by BacktestEngine.run
            resolution: Candle resolution, used in file names
            save_trades: Whether to save trades CSV
            save_equity: Whether to save equity curve CSV

        Returns:
            Dictionary mapping file type to file path
        """
        saved_files = {}
        prefix = self._prefix(result.symbol, resolution, result.strategy_name)

        if save_trades and result.trades:
            df = pd.DataFrame([t.to_dict() for t in result.trades])
            df = df.sort_values("entry_time")
            path = self.output_dir / f"{prefix}_trades.csv"
            df.to_csv(path, index=False)
            saved_files["trades"] = path
            self.logger.info(f"Saved trades to: {path}")

        if save_equity and result.equity_curve:
            df = pd.DataFrame(
                [{"timestamp": p.timestamp, "equity": p.value} for p in result.equity_curve]
            )
            path = self.output_dir / f"{prefix}_equity.csv"
            df.to_csv(path, index=False)
            saved_files["equity"] = path
            self.logger.info(f"Saved equity curve to: {path}")

        path = self._write_json(self.build_report(result), self.output_dir / f"{prefix}_report.json")
        saved_files["report"] = path
        self.logger.info(f"Saved report to: {path}")

        return saved_files

    def save_optimization(self, report: OptimizationReport, top_n: int = 10) -> Dict[str, Path]:
        """Save optimization results (all combinations, top N and best parameters)."""
        saved_files = {}
        prefix = self._prefix("optimization", report.method)

        if report.results:
            path = self.output_dir / f"{prefix}_results.csv"
            report.to_dataframe().to_csv(path, index=False)
            saved_files["results"] = path

            top = report.top(top_n)
            rows = [{"rank": i, "score": r.score(report.objective), **r.parameters} for i, r in enumerate(top, 1)]
            path = self.output_dir / f"{prefix}_top{top_n}.csv"
            pd.DataFrame(rows).to_csv(path, index=False)
            saved_files["top"] = path

        if report.best is not None:
            best = {
                "objective": report.objective,
                "score": report.best.score(report.objective),
                "parameters": report.best.parameters,
                "metrics": report.best.metrics.to_dict(),
            }
            saved_files["best_params"] = self._write_json(best, self.output_dir / f"{prefix}_best_params.json")

        for kind, path in saved_files.items():
            self.logger.info(f"Saved {kind} to: {path}")
        return saved_files

    def save_monte_carlo(self, result: MonteCarloResult) -> Dict[str, Path]:
        """Save per-run outcomes as CSV and the distribution summary as JSON."""
        prefix = self._prefix("monte_carlo")
        runs_path = self.output_dir / f"{prefix}_runs.csv"
        pd.DataFrame([vars(r) for r in result.runs]).to_csv(runs_path, index=False)
        summary_path = self._write_json(result.to_dict(), self.output_dir / f"{prefix}_summary.json")

        self.logger.info(f"Saved Monte Carlo runs to: {runs_path}")
        self.logger.info(f"Saved Monte Carlo summary to: {summary_path}")
        return {"runs": runs_path, "summary": summary_path}

    def save_walk_forward(self, result: WalkForwardResult) -> Dict[str, Path]:
        """Save one CSV row per window and the summary as JSON."""
        prefix = self._prefix("walk_forward")
        windows_path = self.output_dir / f"{prefix}_windows.csv"
        pd.DataFrame([w.to_dict() for w in result.windows]).to_csv(windows_path, index=False)
        summary_path = self._write_json(result.summary, self.output_dir / f"{prefix}_summary.json")

        self.logger.info(f"Saved walk-forward windows to: {windows_path}")
        self.logger.info(f"Saved walk-forward summary to: {summary_path}")
        return {"windows": windows_path, "summary": summary_path}

    def print_summary(self, result: BacktestResult):
        """Print summary to console."""
        m = result.metrics

        print("\n" + "=" * 70)
        print("BACKTEST RESULTS SUMMARY")
        print("=" * 70)
        print(f"Strategy: {result.strategy_name} {result.parameters}")
        print(f"Symbol: {result.symbol}")
        print(f"Period: {m.start_date} to {m.end_date} ({m.trading_periods} periods)")
        print()

        print("TRADE STATISTICS")
        print("-" * 70)
        print(f"Total Trades: {m.total_trades}")
        print(f"Winning Trades: {m.winning_trades}")
        print(f"Losing Trades: {m.losing_trades}")
        print(f"Win Rate: {m.win_rate * 100:.2f}%")
        print(f"Rejected Signals: {result.rejected_signals}")
        print()

        print("PROFIT/LOSS")
        print("-" * 70)
        print(f"Net Profit: ${m.net_profit:,.2f}")
        print(f"Gross Profit: ${m.total_profit:,.2f}")
        print(f"Gross Loss: ${m.total_loss:,.2f}")
        print(f"Profit Factor: {m.profit_factor:.2f}")
        print(f"Return: {m.total_return * 100:.2f}%")
        print(f"Annualized Return: {m.annualized_return * 100:.2f}%")
        print()

        print("RISK METRICS")
        print("-" * 70)
        print(f"Max Drawdown: {m.max_drawdown * 100:.2f}%")
        print(f"Sharpe Ratio: {m.sharpe_ratio:.2f}")
        print(f"Sortino Ratio: {m.sortino_ratio:.2f}")
        print(f"Calmar Ratio: {m.calmar_ratio:.2f}")
        print(f"VaR 95%: {m.var_95 * 100:.2f}%  CVaR 95%: {m.cvar_95 * 100:.2f}%")
        print()

        print("ACCOUNT BALANCE")
        print("-" * 70)
        print(f"Initial Balance: ${m.initial_balance:,.2f}")
        print(f"Final Balance: ${m.final_balance:,.2f}")
        print("=" * 70 + "\n")

    def print_top_results(self, report: OptimizationReport, top_n: int = 5):
        """Print the best parameter combinations."""
        top: List = report.top(top_n)

        print("\n" + "=" * 70)
        print(f"TOP {len(top)} PARAMETER COMBINATIONS")
        print("=" * 70)
        print(f"Objective: {report.objective}")
        print()

        for i, result in enumerate(top, 1):
            m = result.metrics
            print(f"{i}. {report.objective} = {result.score(report.objective):.4f}")
            print(f"   Parameters: {result.parameters}")
            print(f"   Total Trades: {m.total_trades}")
            print(f"   Win Rate: {m.win_rate * 100:.2f}%")
            print(f"   Return: {m.total_return * 100:.2f}%")
            print(f"   Max Drawdown: {m.max_drawdown * 100:.2f}%")
            print()

        print("=" * 70 + "\n")
