"""Backtest configuration settings using dataclasses."""

from dataclasses import dataclass, field, asdict, fields
from typing import Optional, Dict, Any
import json
import os

from dotenv import load_dotenv

from .errors import ConfigError


@dataclass
class ExecutionConfig:
    """Execution cost model for simulated fills."""

    slippage_bps: float = 1.0  # 1 bp = 0.01% of price
    commission_rate: float = 0.001  # Fraction of notional per side
    latency_ms: int = 100  # Accounting delay only, never changes eligibility
    fill_probability: float = 0.95
    partial_fills: bool = False
    min_partial_fill_ratio: float = 0.5
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.slippage_bps < 0:
            raise ConfigError(f"slippage_bps must be >= 0, got: {self.slippage_bps}")
        if self.commission_rate < 0:
            raise ConfigError(f"commission_rate must be >= 0, got: {self.commission_rate}")
        if self.latency_ms < 0:
            raise ConfigError(f"latency_ms must be >= 0, got: {self.latency_ms}")
        if not 0.0 <= self.fill_probability <= 1.0:
            raise ConfigError(f"fill_probability must be in [0, 1], got: {self.fill_probability}")
        if not 0.0 < self.min_partial_fill_ratio <= 1.0:
            raise ConfigError(
                f"min_partial_fill_ratio must be in (0, 1], got: {self.min_partial_fill_ratio}"
            )

    @property
    def slippage_fraction(self) -> float:
        """Slippage as a fraction of price."""
        return self.slippage_bps / 10_000.0

    @classmethod
    def frictionless(cls) -> "ExecutionConfig":
        """Zero-cost, always-fill execution (useful for tests and what-if runs)."""
        return cls(slippage_bps=0.0, commission_rate=0.0, latency_ms=0, fill_probability=1.0)


@dataclass
class DataConfig:
    """Where candles come from and how they are cached."""

    source: str = "local"  # "local", "api", "database" or "file"
    symbol: str = "BTCUSDT"
    resolution: str = "1m"
    cache_enabled: bool = True
    max_cache_entries: int = 100

    # Remote API
    api_url: str = "https://api.binance.com/api/v3/klines"
    api_timeout: float = 30.0
    api_max_retries: int = 3
    api_retry_delay: float = 1.0
    api_chunk_size: int = 1000
    api_rate_limit_delay: float = 0.1

    # Database / file backends
    database_path: Optional[str] = None
    database_table: str = "candles"
    file_path: Optional[str] = None

    # Synthetic generator
    synthetic_start_price: float = 50000.0
    synthetic_volatility: float = 0.002
    synthetic_seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.source not in ["local", "api", "database", "file"]:
            raise ConfigError(
                f"source must be 'local', 'api', 'database' or 'file', got: {self.source}"
            )
        if self.max_cache_entries < 1:
            raise ConfigError(f"max_cache_entries must be >= 1, got: {self.max_cache_entries}")
        if self.api_chunk_size < 1:
            raise ConfigError(f"api_chunk_size must be >= 1, got: {self.api_chunk_size}")


@dataclass
class AnalysisConfig:
    """Parameters of the metrics computation."""

    risk_free_rate: float = 0.02
    periods_per_year: int = 252
    confidence_level: float = 0.95

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.periods_per_year < 1:
            raise ConfigError(f"periods_per_year must be >= 1, got: {self.periods_per_year}")
        if not 0.0 < self.confidence_level < 1.0:
            raise ConfigError(f"confidence_level must be in (0, 1), got: {self.confidence_level}")


@dataclass
class OptimizationConfig:
    """Parameter search settings."""

    method: str = "grid"  # "grid" or "random"
    objective: str = "sharpe"
    max_iterations: int = 1000  # Sample size for random search
    n_jobs: int = 4  # 1 = sequential, -1 = all CPUs
    executor: str = "process"  # "process" or "thread"
    seed: Optional[int] = None
    top_n: int = 10

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.executor not in ["process", "thread"]:
            raise ConfigError(f"executor must be 'process' or 'thread', got: {self.executor}")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ConfigError(f"n_jobs must be -1 or >= 1, got: {self.n_jobs}")
        if self.max_iterations < 1:
            raise ConfigError(f"max_iterations must be >= 1, got: {self.max_iterations}")


@dataclass
class MonteCarloConfig:
    """Trade resampling settings."""

    simulations: int = 1000
    confidence_level: float = 0.95
    ruin_threshold: float = 0.5  # Ruin = losing this fraction of the initial balance
    seed: Optional[int] = None
    n_jobs: int = 1  # Worker threads; results do not depend on it
    progress_interval: int = 100

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.simulations < 1:
            raise ConfigError(f"simulations must be >= 1, got: {self.simulations}")
        if not 0.0 < self.confidence_level < 1.0:
            raise ConfigError(f"confidence_level must be in (0, 1), got: {self.confidence_level}")
        if not 0.0 < self.ruin_threshold <= 1.0:
            raise ConfigError(f"ruin_threshold must be in (0, 1], got: {self.ruin_threshold}")
        if self.n_jobs < 1:
            raise ConfigError(f"n_jobs must be >= 1, got: {self.n_jobs}")
        if self.progress_interval < 1:
            raise ConfigError(f"progress_interval must be >= 1, got: {self.progress_interval}")


@dataclass
class WalkForwardConfig:
    """Rolling in-sample / out-of-sample window settings."""

    in_sample_ratio: float = 0.7
    window_size: int = 252
    step_size: int = 63

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not 0.0 < self.in_sample_ratio < 1.0:
            raise ConfigError(f"in_sample_ratio must be in (0, 1), got: {self.in_sample_ratio}")
        if self.window_size < 2:
            raise ConfigError(f"window_size must be >= 2, got: {self.window_size}")
        if self.step_size < 1:
            raise ConfigError(f"step_size must be >= 1, got: {self.step_size}")


_SECTIONS = {
    "execution": ExecutionConfig,
    "data": DataConfig,
    "analysis": AnalysisConfig,
    "optimization": OptimizationConfig,
    "monte_carlo": MonteCarloConfig,
    "walk_forward": WalkForwardConfig,
}


@dataclass
class BacktestConfig:
    """Configuration for backtest execution.

    Top-level fields control the replay loop; nested sections hold the
    execution cost model, data loading, metrics and the analysis layers.
    """

    initial_balance: float = 10000.0
    allow_short: bool = True
    position_size_fraction: float = 0.1  # Default order size as fraction of balance
    indicator_lookback: int = 200  # Closes used for rolling indicators
    snapshot_lookback: int = 100  # Candles handed to the strategy each step
    progress_interval: int = 100
    close_at_end: bool = True

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    data: DataConfig = field(default_factory=DataConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    monte_carlo: MonteCarloConfig = field(default_factory=MonteCarloConfig)
    walk_forward: WalkForwardConfig = field(default_factory=WalkForwardConfig)

    # Output settings
    output_dir: str = "./backtest_results"
    verbose: bool = False

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.initial_balance <= 0:
            raise ConfigError(f"initial_balance must be > 0, got: {self.initial_balance}")
        if not 0.0 < self.position_size_fraction <= 1.0:
            raise ConfigError(
                f"position_size_fraction must be in (0, 1], got: {self.position_size_fraction}"
            )
        if self.indicator_lookback < 1 or self.snapshot_lookback < 1:
            raise ConfigError("indicator_lookback and snapshot_lookback must be >= 1")
        if self.progress_interval < 1:
            raise ConfigError(f"progress_interval must be >= 1, got: {self.progress_interval}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestConfig":
        """Build a config from a (possibly nested) dictionary.

        Unknown keys raise ``ConfigError`` instead of being silently ignored.
        """
        data = dict(data)
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")

        for name, section_cls in _SECTIONS.items():
            if name in data and isinstance(data[name], dict):
                try:
                    data[name] = section_cls(**data[name])
                except TypeError as e:
                    raise ConfigError(f"Invalid '{name}' section: {e}") from e

        return cls(**data)

    @classmethod
    def from_json(cls, filepath: str) -> "BacktestConfig":
        """Load configuration from JSON file.

        Args:
            filepath: Path to JSON config file

        Returns:
            BacktestConfig instance

        Example JSON:
            {
                "initial_balance": 25000,
                "execution": {"slippage_bps": 2.0, "commission_rate": 0.0005},
                "data": {"source": "file", "file_path": "btc_1h.csv", "resolution": "1h"},
                "optimization": {"method": "random", "max_iterations": 200}
            }
        """
        with open(filepath, 'r') as f:
            data = json.load(f)

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a nested plain dictionary."""
        return asdict(self)

    def to_json(self, filepath: str):
        """Save configuration to JSON file.

        Args:
            filepath: Path to save JSON config file
        """
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "BacktestConfig":
        """Build a config from ``TRADESIM_*`` environment variables.

        A ``.env`` file is loaded first (existing variables win). Variables
        that are not set keep their dataclass defaults.

        Args:
            dotenv_path: Optional explicit path to the .env file

        Returns:
            BacktestConfig instance
        """
        load_dotenv(dotenv_path)

        def env(name: str, cast, default):
            raw = os.getenv(f"TRADESIM_{name}")
            if raw is None or raw == "":
                return default
            try:
                if cast is bool:
                    return raw.strip().lower() in ("1", "true", "yes", "on")
                return cast(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for TRADESIM_{name}: {raw!r}") from e

        execution = ExecutionConfig(
            slippage_bps=env("SLIPPAGE_BPS", float, ExecutionConfig.slippage_bps),
            commission_rate=env("COMMISSION_RATE", float, ExecutionConfig.commission_rate),
            latency_ms=env("LATENCY_MS", int, ExecutionConfig.latency_ms),
            fill_probability=env("FILL_PROBABILITY", float, ExecutionConfig.fill_probability),
            partial_fills=env("PARTIAL_FILLS", bool, ExecutionConfig.partial_fills),
            seed=env("SEED", int, None),
        )
        data = DataConfig(
            source=env("DATA_SOURCE", str, DataConfig.source),
            symbol=env("SYMBOL", str, DataConfig.symbol),
            resolution=env("RESOLUTION", str, DataConfig.resolution),
            cache_enabled=env("CACHE_ENABLED", bool, DataConfig.cache_enabled),
            max_cache_entries=env("MAX_CACHE_ENTRIES", int, DataConfig.max_cache_entries),
            api_url=env("API_URL", str, DataConfig.api_url),
            database_path=env("DATABASE_PATH", str, None),
            file_path=env("FILE_PATH", str, None),
        )
        analysis = AnalysisConfig(
            risk_free_rate=env("RISK_FREE_RATE", float, AnalysisConfig.risk_free_rate),
            periods_per_year=env("PERIODS_PER_YEAR", int, AnalysisConfig.periods_per_year),
        )
        optimization = OptimizationConfig(
            method=env("OPTIMIZATION_METHOD", str, OptimizationConfig.method),
            objective=env("OPTIMIZATION_OBJECTIVE", str, OptimizationConfig.objective),
            n_jobs=env("N_JOBS", int, OptimizationConfig.n_jobs),
        )
        monte_carlo = MonteCarloConfig(
            simulations=env("MC_SIMULATIONS", int, MonteCarloConfig.simulations),
            seed=env("MC_SEED", int, None),
        )

        return cls(
            initial_balance=env("INITIAL_BALANCE", float, cls.initial_balance),
            execution=execution,
            data=data,
            analysis=analysis,
            optimization=optimization,
            monte_carlo=monte_carlo,
            output_dir=env("OUTPUT_DIR", str, cls.output_dir),
            verbose=env("VERBOSE", bool, cls.verbose),
        )
