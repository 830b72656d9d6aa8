"""Data sources for loading historical OHLCV candles.

Every backend implements ``CandleSource.fetch(symbol, start, end, resolution)``
and returns an ordered tuple of immutable ``Candle`` objects. The replay core
only depends on that contract. Backend failures surface as
``DataLoadFailure``; retry policy (where any) lives inside the backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple
import logging
import math
import re
import sqlite3
from contextlib import closing

import numpy as np
import pandas as pd

from .errors import ConfigError, DataLoadFailure


RESOLUTIONS: Dict[str, timedelta] = {
    "1m": timedelta(minutes=1),
    "5m": timedelta(minutes=5),
    "15m": timedelta(minutes=15),
    "30m": timedelta(minutes=30),
    "1h": timedelta(hours=1),
    "4h": timedelta(hours=4),
    "1d": timedelta(days=1),
}

REQUIRED_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

_EPOCH = datetime(1970, 1, 1)
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Candle:
    """Represents a single OHLCV candle."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict:
        """Convert to dictionary for CSV/JSON export."""
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume
        }


CandleSeries = Tuple[Candle, ...]


def resolution_to_timedelta(resolution: str) -> timedelta:
    """Map a resolution string such as ``"15m"`` to its candle interval."""
    try:
        return RESOLUTIONS[resolution]
    except KeyError:
        raise ConfigError(
            f"Unsupported resolution: {resolution!r}. Must be one of {', '.join(RESOLUTIONS)}"
        ) from None


def to_millis(ts: datetime) -> int:
    """Epoch milliseconds; naive datetimes are treated as UTC."""
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return int((ts - _EPOCH) / timedelta(milliseconds=1))


def from_millis(ms: int) -> datetime:
    """Naive UTC datetime from epoch milliseconds."""
    return _EPOCH + timedelta(milliseconds=int(ms))


def candles_from_dataframe(df: pd.DataFrame) -> CandleSeries:
    """Convert a DataFrame with ``REQUIRED_COLUMNS`` to a candle tuple."""
    candles = []
    for row in df.itertuples(index=False):
        ts = pd.Timestamp(row.timestamp)
        if ts.tzinfo is not None:
            ts = ts.tz_convert("UTC").tz_localize(None)
        candles.append(Candle(
            timestamp=ts.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume)
        ))
    return tuple(candles)


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Convert candles to a DataFrame with ``REQUIRED_COLUMNS``."""
    return pd.DataFrame([c.to_dict() for c in candles], columns=REQUIRED_COLUMNS)


class CandleSource(ABC):
    """Interface for historical candle backends."""

    @abstractmethod
    def fetch(self, symbol: str, start: datetime, end: datetime, resolution: str) -> CandleSeries:
        """Load candles for ``symbol`` in ``[start, end]``.

        Returns:
            Candles ordered by timestamp

        Raises:
            DataLoadFailure: Source unreachable or payload malformed
        """


class SyntheticCandleSource(CandleSource):
    """Seeded random-walk generator with a slow monthly drift cycle.

    Useful for demos and tests when no market data is available.
    """

    def __init__(
        self,
        start_price: float = 50000.0,
        volatility: float = 0.002,
        seed: Optional[int] = None
    ):
        """Initialize generator.

        Args:
            start_price: Price before the first candle
            volatility: Per-candle relative price range (0.002 = 0.2%)
            seed: Seed for reproducible series
        """
        self.start_price = start_price
        self.volatility = volatility
        self.seed = seed

    def fetch(self, symbol: str, start: datetime, end: datetime, resolution: str) -> CandleSeries:
        interval = resolution_to_timedelta(resolution)
        rng = np.random.default_rng(self.seed)
        vol = self.volatility

        candles = []
        price = self.start_price
        current = start
        month_ms = 86_400_000 * 30

        while current <= end:
            trend = math.sin(to_millis(current) / month_ms) * 0.0001
            u = rng.random(5)

            price *= 1 + (u[0] - 0.5) * vol + trend
            high = price * (1 + u[1] * vol)
            low = price * (1 - u[2] * vol)
            open_ = price * (1 + (u[3] - 0.5) * vol * 0.5)

            candles.append(Candle(
                timestamp=current,
                open=open_,
                high=max(open_, price, high),
                low=min(open_, price, low),
                close=price,
                volume=float(u[4] * 1_000_000)
            ))
            current += interval

        return tuple(candles)


class FileCandleSource(CandleSource):
    """Loads candles from a CSV or Parquet file.

    The file must contain ``timestamp`` (or ``time``), open, high, low, close
    and volume columns. An optional ``symbol`` column restricts rows to the
    requested symbol.
    """

    def __init__(self, file_path: str, logger: Optional[logging.Logger] = None):
        self.file_path = Path(file_path)
        self.logger = logger or logging.getLogger(__name__)

    def fetch(self, symbol: str, start: datetime, end: datetime, resolution: str) -> CandleSeries:
        try:
            if self.file_path.suffix.lower() in (".parquet", ".pq"):
                df = pd.read_parquet(self.file_path)
            else:
                df = pd.read_csv(self.file_path)
        except (OSError, ValueError, ImportError) as e:
            raise DataLoadFailure(
                f"Failed to read {self.file_path}: {e}", symbol=symbol, resolution=resolution
            ) from e

        if "timestamp" not in df.columns and "time" in df.columns:
            df = df.rename(columns={"time": "timestamp"})

        missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing:
            raise DataLoadFailure(
                f"{self.file_path.name} missing required columns: {missing}",
                symbol=symbol,
                resolution=resolution
            )

        if "symbol" in df.columns:
            df = df[df["symbol"] == symbol]

        try:
            if not pd.api.types.is_datetime64_any_dtype(df["timestamp"]):
                df = df.assign(timestamp=pd.to_datetime(df["timestamp"]))
        except (ValueError, TypeError) as e:
            raise DataLoadFailure(
                f"Unparseable timestamps in {self.file_path.name}: {e}",
                symbol=symbol,
                resolution=resolution
            ) from e

        df = df.sort_values("timestamp")
        df = df[(df["timestamp"] >= pd.Timestamp(start)) & (df["timestamp"] <= pd.Timestamp(end))]
        self.logger.debug(f"Loaded {len(df)} rows from {self.file_path}")

        return candles_from_dataframe(df[REQUIRED_COLUMNS].reset_index(drop=True))


class DatabaseCandleSource(CandleSource):
    """Loads candles from a SQLite table.

    Table layout: ``symbol TEXT, resolution TEXT, timestamp INTEGER`` (epoch
    milliseconds) plus the OHLCV columns.
    """

    def __init__(self, database_path: str, table: str = "candles"):
        if not _IDENTIFIER.match(table):
            raise ConfigError(f"Invalid table name: {table!r}")
        self.database_path = database_path
        self.table = table

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.database_path)

    def fetch(self, symbol: str, start: datetime, end: datetime, resolution: str) -> CandleSeries:
        query = (
            f"SELECT timestamp, open, high, low, close, volume FROM {self.table} "
            "WHERE symbol = ? AND resolution = ? AND timestamp >= ? AND timestamp <= ? "
            "ORDER BY timestamp"
        )
        params = (symbol, resolution, to_millis(start), to_millis(end))

        try:
            with closing(self._connect()) as conn:
                df = pd.read_sql_query(query, conn, params=params)
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            raise DataLoadFailure(
                f"Database query failed: {e}", symbol=symbol, resolution=resolution
            ) from e

        df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms")
        return candles_from_dataframe(df)

    def store(self, symbol: str, resolution: str, candles: Sequence[Candle]) -> int:
        """Insert candles, creating the table when needed.

        Returns:
            Number of rows written
        """
        rows = [
            (symbol, resolution, to_millis(c.timestamp), c.open, c.high, c.low, c.close, c.volume)
            for c in candles
        ]
        with closing(self._connect()) as conn, conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table} ("
                "symbol TEXT NOT NULL, resolution TEXT NOT NULL, timestamp INTEGER NOT NULL, "
                "open REAL, high REAL, low REAL, close REAL, volume REAL, "
                "PRIMARY KEY (symbol, resolution, timestamp))"
            )
            conn.executemany(
                f"INSERT OR REPLACE INTO {self.table} VALUES (?, ?, ?, ?, ?, ?, ?, ?)", rows
            )
        return len(rows)
