"""Exception taxonomy for the backtest core.

Fatal conditions (data loading, strategy faults, unsupported search methods)
are raised as exceptions. Per-step failures such as unfillable orders or
malformed signals are reported as result values instead, see
``broker_sim.Rejected``.
"""


class BacktestError(Exception):
    """Base class for all tradesim errors."""


class ConfigError(BacktestError, ValueError):
    """Invalid configuration value."""


class DataLoadFailure(BacktestError):
    """Candle source unreachable or returned a malformed payload."""

    def __init__(self, message: str, symbol: str = None, resolution: str = None):
        super().__init__(message)
        self.symbol = symbol
        self.resolution = resolution


class StrategyFault(BacktestError):
    """Uncaught exception raised by a strategy during a replay run.

    The original exception is chained as ``__cause__``.
    """

    def __init__(self, message: str, strategy_name: str = None, step: int = None):
        super().__init__(message)
        self.strategy_name = strategy_name
        self.step = step


class InvalidSignal(BacktestError, ValueError):
    """Signal that cannot be translated into a valid order."""


class OptimizationMethodUnsupported(BacktestError, ValueError):
    """Unknown parameter search method requested."""

    def __init__(self, method: str, supported=("grid", "random")):
        super().__init__(
            f"Unsupported optimization method: {method!r}. "
            f"Must be one of {', '.join(supported)}"
        )
        self.method = method
