"""Command-line interface for backtests and the analysis layers."""

import argparse
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from .cache import create_cache
from .config import BacktestConfig
from .engine import BacktestEngine
from .errors import BacktestError
from .events import EventBus
from .grid_search import ChoiceParameter, OptimizationEngine, ParameterSpace, RangeParameter
from .logger import attach_event_logging, setup_logger
from .monte_carlo import MonteCarloSimulator
from .reporting import BacktestReporter
from .strategy import StrategyRegistry
from .walk_forward import WalkForwardAnalyzer


MODES = ["backtest", "optimize", "monte-carlo", "walk-forward"]


def parse_args(argv: Optional[List[str]] = None):
    """Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="tradesim - candle replay backtesting and analysis",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("--mode", type=str, default="backtest", choices=MODES, help="What to run")
    parser.add_argument("--config", type=str,
                        help="Path to JSON config file (otherwise TRADESIM_* environment variables)")

    # Strategy
    parser.add_argument("--strategy", type=str, default="sma_cross", help="Registered strategy name")
    parser.add_argument("--param", action="append", default=[], metavar="NAME=VALUE",
                        help="Strategy parameter (repeatable)")
    parser.add_argument("--grid", action="append", default=[], metavar="NAME=MIN:MAX:STEP|A,B,C",
                        help="Search dimension for optimize/walk-forward (repeatable)")

    # Data
    parser.add_argument("--symbol", type=str, help="Trading symbol")
    parser.add_argument("--resolution", type=str, help="Candle resolution (1m, 5m, 15m, 1h, 4h, 1d)")
    parser.add_argument("--start", type=str, default="2024-01-01", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="End date (YYYY-MM-DD), defaults to start + 30 days")
    parser.add_argument("--source", type=str, choices=["local", "api", "database", "file"],
                        help="Candle source")
    parser.add_argument("--file", type=str, help="CSV/Parquet file (file source) or SQLite path (database source)")

    # Cost model
    parser.add_argument("--initial-balance", type=float, help="Initial account balance")
    parser.add_argument("--slippage-bps", type=float, help="Slippage in basis points")
    parser.add_argument("--commission-rate", type=float, help="Commission as fraction of notional")
    parser.add_argument("--latency-ms", type=int, help="Fill latency in milliseconds")
    parser.add_argument("--fill-probability", type=float, help="Probability an order fills")
    parser.add_argument("--seed", type=int, help="Seed for fills, search sampling and Monte Carlo")

    # Analysis layers
    parser.add_argument("--method", type=str, choices=["grid", "random"], help="Optimization method")
    parser.add_argument("--objective", type=str, help="Metric to maximize")
    parser.add_argument("--n-jobs", type=int, help="Parallel workers for optimization")
    parser.add_argument("--simulations", type=int, help="Monte Carlo iterations")

    # Output
    parser.add_argument("--output-dir", type=str, help="Output directory for results")
    parser.add_argument("--log-dir", type=str, help="Also write dated log files to this directory")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None):
    """Setup logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_dir: Directory for dated log files, if any
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if log_dir:
        setup_logger("tradesim", log_dir=log_dir, level=logging.getLevelName(level), console=False)


def parse_value(raw: str) -> Any:
    """Interpret a command-line value as int, float, bool or string."""
    lowered = raw.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def parse_params(items: List[str]) -> Dict[str, Any]:
    params = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Expected NAME=VALUE, got: {item!r}")
        name, raw = item.split("=", 1)
        params[name.strip()] = parse_value(raw)
    return params


def parse_grid(items: List[str]) -> ParameterSpace:
    """Build a search space from ``name=min:max:step`` or ``name=a,b,c`` items."""
    parameters = {}
    for item in items:
        if "=" not in item:
            raise ValueError(f"Expected NAME=SPEC, got: {item!r}")
        name, dimension = item.split("=", 1)
        if ":" in dimension:
            bounds = [parse_value(v) for v in dimension.split(":")]
            if len(bounds) != 3:
                raise ValueError(f"Range must be MIN:MAX:STEP, got: {dimension!r}")
            parameters[name.strip()] = RangeParameter(*bounds)
        else:
            parameters[name.strip()] = ChoiceParameter(tuple(parse_value(v) for v in dimension.split(",")))
    return ParameterSpace(parameters)


def build_config(args) -> BacktestConfig:
    """Load the base config and apply command-line overrides."""
    config = BacktestConfig.from_json(args.config) if args.config else BacktestConfig.from_env()

    def overrides(**values):
        return {k: v for k, v in values.items() if v is not None}

    data_overrides = overrides(symbol=args.symbol, resolution=args.resolution, source=args.source)
    if args.file:
        source = args.source or config.data.source
        key = "database_path" if source == "database" else "file_path"
        data_overrides[key] = args.file

    execution = replace(config.execution, **overrides(
        slippage_bps=args.slippage_bps,
        commission_rate=args.commission_rate,
        latency_ms=args.latency_ms,
        fill_probability=args.fill_probability,
        seed=args.seed
    ))
    optimization = replace(config.optimization, **overrides(
        method=args.method, objective=args.objective, n_jobs=args.n_jobs, seed=args.seed
    ))
    monte_carlo = replace(config.monte_carlo, **overrides(simulations=args.simulations, seed=args.seed))

    return replace(
        config,
        execution=execution,
        data=replace(config.data, **data_overrides),
        optimization=optimization,
        monte_carlo=monte_carlo,
        **overrides(
            initial_balance=args.initial_balance,
            output_dir=args.output_dir,
            verbose=args.verbose or config.verbose
        )
    )


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    args = parse_args(argv)
    setup_logging(args.verbose, args.log_dir)
    logger = logging.getLogger(__name__)

    try:
        config = build_config(args)
        start = datetime.strptime(args.start, "%Y-%m-%d")
        end = datetime.strptime(args.end, "%Y-%m-%d") if args.end else start + timedelta(days=30)
        registry = StrategyRegistry.with_builtins()
        template = registry.template(args.strategy)
        params = parse_params(args.param)
        grid = parse_grid(args.grid) if args.grid else None
    except (BacktestError, KeyError, ValueError, OSError) as e:
        logger.error(f"Invalid arguments or config: {e}")
        return 1

    if args.mode in ("optimize", "walk-forward") and grid is None:
        logger.error(f"--grid is required for --mode {args.mode}")
        return 1

    bus = EventBus(logger=logger)
    attach_event_logging(bus)

    logger.info("=" * 70)
    logger.info(f"TRADESIM {args.mode.upper()}")
    logger.info("=" * 70)
    logger.info(f"Strategy: {args.strategy} {params}")
    logger.info(f"Symbol: {config.data.symbol} ({config.data.resolution}, source={config.data.source})")
    logger.info(f"Period: {start.date()} to {end.date()}")
    logger.info("=" * 70)

    reporter = BacktestReporter(output_dir=config.output_dir, logger=logger)

    try:
        cache = create_cache(config.data, event_bus=bus, logger=logger)
        candles = cache.get_or_load(config.data.symbol, config.data.resolution, start, end)
        if not candles:
            logger.error("No candles loaded for the requested period")
            return 1

        if args.mode == "backtest":
            engine = BacktestEngine(config, event_bus=bus, logger=logger)
            result = engine.run(template(params), candles)
            reporter.save_results(result, resolution=config.data.resolution)
            reporter.print_summary(result)

        elif args.mode == "optimize":
            optimizer = OptimizationEngine(config, event_bus=bus, logger=logger)
            report = optimizer.optimize(template, candles, grid)
            reporter.save_optimization(report, top_n=config.optimization.top_n)
            reporter.print_top_results(report)

        elif args.mode == "monte-carlo":
            engine = BacktestEngine(config, event_bus=bus, logger=logger)
            result = engine.run(template(params), candles)
            simulator = MonteCarloSimulator(config.monte_carlo, event_bus=bus, logger=logger)
            mc = simulator.resample(result.trades, config.initial_balance)
            reporter.save_results(result, resolution=config.data.resolution)
            reporter.save_monte_carlo(mc)
            _print_monte_carlo_summary(mc)

        else:
            analyzer = WalkForwardAnalyzer(config, event_bus=bus, logger=logger)
            wf = analyzer.walk_forward(template, candles, grid)
            reporter.save_walk_forward(wf)
            _print_walk_forward_summary(wf)

    except (BacktestError, ValueError) as e:
        logger.error(f"{args.mode} failed: {e}", exc_info=True)
        return 1

    stats = cache.stats()
    logger.info(f"Cache: {stats['entries']} entries, {stats['hits']} hits, {stats['misses']} misses")
    logger.info(f"Results saved to: {config.output_dir}")
    return 0


def _print_monte_carlo_summary(mc):
    """Print Monte Carlo distribution summary."""
    low, high = mc.confidence_intervals["returns"]
    dd_low, dd_high = mc.confidence_intervals["drawdowns"]

    print("\n" + "=" * 70)
    print("MONTE CARLO SUMMARY")
    print("=" * 70)
    print(f"Simulations: {len(mc.runs)}/{mc.iterations}" + (" (cancelled)" if mc.cancelled else ""))
    print()
    print("RETURNS")
    print("-" * 70)
    print(f"Mean: {mc.returns.mean * 100:.2f}%  Median: {mc.returns.median * 100:.2f}%  "
          f"Std: {mc.returns.std * 100:.2f}%")
    print(f"Min: {mc.returns.min * 100:.2f}%  Max: {mc.returns.max * 100:.2f}%")
    print(f"{mc.confidence_level:.0%} interval: [{low * 100:.2f}%, {high * 100:.2f}%]")
    print()
    print("DRAWDOWNS")
    print("-" * 70)
    print(f"Expected: {mc.expected_drawdown * 100:.2f}%  Worst: {mc.drawdowns.max * 100:.2f}%")
    print(f"{mc.confidence_level:.0%} interval: [{dd_low * 100:.2f}%, {dd_high * 100:.2f}%]")
    print()
    print(f"Probability of Ruin: {mc.probability_of_ruin * 100:.2f}%")
    print(f"Probability of Profit: {mc.probability_of_profit * 100:.2f}%")
    print("=" * 70 + "\n")


def _print_walk_forward_summary(wf):
    """Print walk-forward window results and aggregate metrics."""
    print("\n" + "=" * 70)
    print("WALK-FORWARD SUMMARY")
    print("=" * 70)

    print("RESULTS BY WINDOW")
    print("-" * 70)
    for window in wf.windows:
        if window.metrics is None:
            print(f"{window.index + 1}: no result")
            continue
        print(f"{window.index + 1}: [{window.out_of_sample_start}, {window.out_of_sample_end}) "
              f"params={window.parameters} trades={window.metrics.total_trades} "
              f"return={window.metrics.total_return * 100:.2f}%")
    print()

    s = wf.summary
    print("AGGREGATE METRICS")
    print("-" * 70)
    print(f"Windows Evaluated: {s['evaluated_windows']}/{s['windows']}")
    print(f"Total OOS Trades: {s['total_oos_trades']}")
    print(f"Avg OOS Return: {s['avg_oos_return'] * 100:.2f}%")
    print(f"Median OOS Return: {s['median_oos_return'] * 100:.2f}%")
    print(f"Worst OOS Return: {s['worst_oos_return'] * 100:.2f}%")
    print(f"Profitable Windows: {s['profitable_windows_ratio'] * 100:.2f}%")
    print(f"Avg OOS Sharpe: {s['avg_oos_sharpe']:.2f}")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    exit(main())
