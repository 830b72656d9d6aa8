"""Bounded store of loaded candle series.

Entries are keyed by ``(symbol, resolution, start, end)`` with no
partial-range merging. When the entry bound is exceeded the oldest
*inserted* series is evicted (FIFO); reads do not refresh an entry.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Optional, Tuple
import logging

from .api_client import RemoteCandleSource
from .config import DataConfig
from .data_source import (
    CandleSeries,
    CandleSource,
    DatabaseCandleSource,
    FileCandleSource,
    SyntheticCandleSource,
)
from .errors import ConfigError
from .events import DataLoaded, DataLoadStarted, EventBus, emit


CacheKey = Tuple[str, str, datetime, datetime]


class HistoricalDataCache:
    """FIFO-evicting cache in front of a ``CandleSource``.

    The cache is owned by the caller and passed to whatever needs it; there
    is no process-wide instance.
    """

    def __init__(
        self,
        source: CandleSource,
        max_entries: int = 100,
        enabled: bool = True,
        event_bus: Optional[EventBus] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize cache.

        Args:
            source: Backend used on a miss
            max_entries: Maximum number of cached series
            enabled: When False every call goes to the source
            event_bus: Optional bus for data-loading events
            logger: Optional logger
        """
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got: {max_entries}")
        self.source = source
        self.max_entries = max_entries
        self.enabled = enabled
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

        self._entries: "OrderedDict[CacheKey, CandleSeries]" = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get_or_load(self, symbol: str, resolution: str, start: datetime, end: datetime) -> CandleSeries:
        """Return cached candles or load them from the source.

        Source errors (``DataLoadFailure``) propagate unchanged; nothing is
        inserted on failure and there is no retry at this layer.
        """
        key = (symbol, resolution, start, end)
        emit(self.event_bus, DataLoadStarted(symbol=symbol, resolution=resolution, start=start, end=end))

        if self.enabled and key in self._entries:
            self.hits += 1
            candles = self._entries[key]
            self.logger.debug(f"Cache hit: {symbol} {resolution} {start} - {end}")
            self._emit_loaded(symbol, candles, from_cache=True)
            return candles

        self.misses += 1
        self.logger.info(f"Loading {symbol} {resolution} candles from {start} to {end}")
        candles = tuple(self.source.fetch(symbol, start, end, resolution))

        if self.enabled:
            self._insert(key, candles)

        self._emit_loaded(symbol, candles, from_cache=False)
        return candles

    def _insert(self, key: CacheKey, candles: CandleSeries):
        self._entries[key] = candles
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            self.logger.debug(f"Evicted cache entry {evicted}")

    def _emit_loaded(self, symbol: str, candles: CandleSeries, from_cache: bool):
        emit(self.event_bus, DataLoaded(
            symbol=symbol,
            candles=len(candles),
            first_timestamp=candles[0].timestamp if candles else None,
            last_timestamp=candles[-1].timestamp if candles else None,
            from_cache=from_cache
        ))

    def clear(self):
        self._entries.clear()

    def keys(self):
        return list(self._entries.keys())

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions
        }


def create_source(
    config: DataConfig,
    event_bus: Optional[EventBus] = None,
    logger: Optional[logging.Logger] = None
) -> CandleSource:
    """Build the backend selected by ``config.source``."""
    if config.source == "local":
        return SyntheticCandleSource(
            start_price=config.synthetic_start_price,
            volatility=config.synthetic_volatility,
            seed=config.synthetic_seed
        )
    if config.source == "api":
        return RemoteCandleSource(
            base_url=config.api_url,
            timeout=config.api_timeout,
            max_retries=config.api_max_retries,
            retry_delay=config.api_retry_delay,
            chunk_size=config.api_chunk_size,
            rate_limit_delay=config.api_rate_limit_delay,
            event_bus=event_bus,
            logger=logger
        )
    if config.source == "database":
        if not config.database_path:
            raise ConfigError("database_path required for database source")
        return DatabaseCandleSource(config.database_path, table=config.database_table)
    if config.source == "file":
        if not config.file_path:
            raise ConfigError("file_path required for file source")
        return FileCandleSource(config.file_path, logger=logger)
    raise ConfigError(f"Invalid source: {config.source}")


def create_cache(
    config: DataConfig,
    event_bus: Optional[EventBus] = None,
    logger: Optional[logging.Logger] = None
) -> HistoricalDataCache:
    """Build a cache in front of the configured backend."""
    return HistoricalDataCache(
        create_source(config, event_bus=event_bus, logger=logger),
        max_entries=config.max_cache_entries,
        enabled=config.cache_enabled,
        event_bus=event_bus,
        logger=logger
    )
