"""Unit tests for the historical data cache"""

import pytest

from tradesim.cache import HistoricalDataCache, create_cache, create_source
from tradesim.config import DataConfig
from tradesim.data_source import CandleSource, SyntheticCandleSource
from tradesim.errors import ConfigError, DataLoadFailure
from tradesim.events import DataLoaded, DataLoadStarted, EventBus

from helpers import HOUR, START, make_candles


class CountingSource(CandleSource):
    """Returns a short fixed series and counts fetches."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def fetch(self, symbol, start, end, resolution):
        self.calls.append((symbol, resolution, start, end))
        if self.fail:
            raise DataLoadFailure("backend down", symbol=symbol, resolution=resolution)
        return make_candles([100, 101, 102], start=start)


def test_second_load_is_a_hit():
    """Test 1: Identical key is served from the cache"""
    source = CountingSource()
    cache = HistoricalDataCache(source)

    first = cache.get_or_load("BTCUSDT", "1h", START, START + 2 * HOUR)
    second = cache.get_or_load("BTCUSDT", "1h", START, START + 2 * HOUR)

    assert first is second
    assert len(source.calls) == 1
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_keys_are_exact_ranges():
    """Test 2: Overlapping ranges are distinct entries"""
    source = CountingSource()
    cache = HistoricalDataCache(source)

    cache.get_or_load("BTCUSDT", "1h", START, START + 2 * HOUR)
    cache.get_or_load("BTCUSDT", "1h", START, START + HOUR)
    cache.get_or_load("BTCUSDT", "4h", START, START + 2 * HOUR)

    assert len(source.calls) == 3
    assert len(cache) == 3


def test_fifo_eviction_ignores_reads():
    """Test 3: Oldest inserted entry is evicted even if it was just read"""
    source = CountingSource()
    cache = HistoricalDataCache(source, max_entries=2)

    cache.get_or_load("A", "1h", START, START + HOUR)
    cache.get_or_load("B", "1h", START, START + HOUR)
    cache.get_or_load("A", "1h", START, START + HOUR)
    cache.get_or_load("C", "1h", START, START + HOUR)

    assert ("A", "1h", START, START + HOUR) not in cache
    assert [k[0] for k in cache.keys()] == ["B", "C"]
    assert cache.stats()["evictions"] == 1


def test_failed_load_is_not_cached():
    """Test 4: Source errors propagate and leave no entry"""
    cache = HistoricalDataCache(CountingSource(fail=True))

    with pytest.raises(DataLoadFailure):
        cache.get_or_load("BTCUSDT", "1h", START, START + HOUR)

    assert len(cache) == 0


def test_disabled_cache_always_loads():
    """Test 5: enabled=False bypasses storage"""
    source = CountingSource()
    cache = HistoricalDataCache(source, enabled=False)

    cache.get_or_load("BTCUSDT", "1h", START, START + HOUR)
    cache.get_or_load("BTCUSDT", "1h", START, START + HOUR)

    assert len(source.calls) == 2
    assert len(cache) == 0


def test_load_events():
    """Test 6: Started/loaded events, with from_cache on hits"""
    bus = EventBus()
    started, loaded = [], []
    bus.subscribe(DataLoadStarted, started.append)
    bus.subscribe(DataLoaded, loaded.append)

    cache = HistoricalDataCache(CountingSource(), event_bus=bus)
    cache.get_or_load("BTCUSDT", "1h", START, START + 2 * HOUR)
    cache.get_or_load("BTCUSDT", "1h", START, START + 2 * HOUR)

    assert len(started) == 2
    assert [e.from_cache for e in loaded] == [False, True]
    assert loaded[0].candles == 3
    assert loaded[0].first_timestamp == START


def test_invalid_bound_rejected():
    """Test 7: The entry bound must be positive"""
    with pytest.raises(ValueError):
        HistoricalDataCache(CountingSource(), max_entries=0)


def test_create_cache_from_config():
    """Test 8: Factory wires the configured backend and limits"""
    cache = create_cache(DataConfig(source="local", max_cache_entries=5, synthetic_seed=1))

    assert isinstance(cache.source, SyntheticCandleSource)
    assert cache.max_entries == 5
    assert len(cache.get_or_load("BTCUSDT", "1h", START, START + 4 * HOUR)) == 5

    with pytest.raises(ConfigError):
        create_source(DataConfig(source="file"))
    with pytest.raises(ConfigError):
        create_source(DataConfig(source="database"))
