"""Logging setup for tradesim."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .events import (
    DataLoaded,
    DataLoadStarted,
    Event,
    EventBus,
    MonteCarloProgress,
    OptimizationProgress,
    RunCompleted,
    RunFailed,
    RunProgress,
    RunStarted,
    TradeCompleted,
    WalkForwardWindowCompleted,
)


def setup_logger(
    name: str = "tradesim",
    log_dir: str = "logs",
    level: str = "INFO",
    console: bool = True
) -> logging.Logger:
    """
    Setup logger with file and console handlers.

    Log format: [TIMESTAMP] [LEVEL] [MODULE] Message
    Logs to: logs/tradesim_YYYY-MM-DD.log

    Args:
        name: Logger name
        log_dir: Directory for log files
        level: Console logging level (DEBUG, INFO, WARNING, ERROR)
        console: Also attach a console handler

    Returns:
        Configured logger instance
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    detailed_formatter = logging.Formatter(
        fmt='[%(asctime)s] [%(levelname)8s] [%(name)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        fmt='[%(levelname)s] %(message)s'
    )

    # File handler (detailed logs)
    log_file = log_path / f"{name}_{datetime.now().strftime('%Y-%m-%d')}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(detailed_formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(getattr(logging, level.upper()))
        console_handler.setFormatter(simple_formatter)
        logger.addHandler(console_handler)

    return logger


def log_event(logger: logging.Logger, event: Event):
    """
    Log a lifecycle event at a level matching its importance.

    Progress events go to DEBUG, lifecycle events to INFO and failures to
    ERROR.

    Args:
        logger: Logger instance
        event: Event emitted on the bus
    """
    if isinstance(event, DataLoadStarted):
        logger.info(f"Loading {event.symbol} {event.resolution}: {event.start} -> {event.end}")

    elif isinstance(event, DataLoaded):
        source = "cache" if event.from_cache else "source"
        logger.info(f"Loaded {event.candles} candles for {event.symbol} from {source}")

    elif isinstance(event, RunStarted):
        logger.info(f"=== RUN STARTED: {event.strategy} ({event.total_steps} candles) ===")

    elif isinstance(event, RunProgress):
        logger.debug(f"Progress: {event.step}/{event.total_steps} ({event.progress:.0%})")

    elif isinstance(event, TradeCompleted):
        trade = event.trade
        logger.debug(
            f"Trade closed: {trade.side.value} {trade.quantity:.6f} {trade.symbol} "
            f"{trade.entry_price:.2f} -> {trade.exit_price:.2f} "
            f"P&L {trade.realized_pnl:+.2f} ({trade.exit_reason.value})"
        )

    elif isinstance(event, RunCompleted):
        logger.info(f"=== RUN COMPLETE: {event.strategy}, {event.total_trades} trades, "
                    f"final equity {event.final_equity:,.2f} ===")

    elif isinstance(event, RunFailed):
        logger.error(f"=== RUN FAILED: {event.strategy} at step {event.step}: {event.error} ===")

    elif isinstance(event, OptimizationProgress):
        score = "failed" if event.score is None else f"{event.score:.4f}"
        logger.debug(f"[{event.completed}/{event.total}] {event.parameters} -> {score}")

    elif isinstance(event, MonteCarloProgress):
        logger.debug(f"Monte Carlo: {event.completed}/{event.total} simulations")

    elif isinstance(event, WalkForwardWindowCompleted):
        oos = "n/a" if event.out_of_sample_return is None else f"{event.out_of_sample_return:.2%}"
        logger.debug(f"Walk-forward window {event.index + 1}/{event.total}: OOS return {oos}")


def attach_event_logging(bus: EventBus, logger: Optional[logging.Logger] = None) -> Callable[[], None]:
    """Subscribe ``log_event`` to every event on ``bus``.

    Returns:
        Function that removes the subscription
    """
    logger = logger or logging.getLogger("tradesim.events")
    return bus.subscribe(Event, lambda event: log_event(logger, event))
