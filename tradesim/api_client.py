"""Remote candle source backed by a paginated klines HTTP API.

Handles pagination, retries with exponential backoff, timeouts and a fixed
delay between pages. Progress is published as ``DataLoadProgress`` events.
"""

from datetime import datetime
from typing import List, Optional
import logging
import time

import requests

from .data_source import (
    Candle,
    CandleSeries,
    CandleSource,
    from_millis,
    resolution_to_timedelta,
    to_millis,
)
from .errors import DataLoadFailure
from .events import DataLoadProgress, EventBus, emit


class RemoteCandleSource(CandleSource):
    """Client for a Binance-style ``/klines`` endpoint.

    Each page is requested with ``symbol``, ``interval``, ``limit``,
    ``startTime`` and ``endTime`` query parameters. Rows may be arrays
    (``[open_time_ms, open, high, low, close, volume, ...]``) or objects with
    ``timestamp``/OHLCV keys.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        chunk_size: int = 1000,
        rate_limit_delay: float = 0.1,
        event_bus: Optional[EventBus] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize API client.

        Args:
            base_url: Full URL of the klines endpoint
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts per page
            retry_delay: Base delay between retries in seconds
            chunk_size: Candles requested per page
            rate_limit_delay: Pause between pages in seconds
            event_bus: Optional bus for progress events
            session: Optional pre-built session (tests inject a fake here)
            logger: Optional logger for request/response logging
        """
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.chunk_size = chunk_size
        self.rate_limit_delay = rate_limit_delay
        self.event_bus = event_bus
        self.logger = logger or logging.getLogger(__name__)

        # Connection pooling across pages
        self.session = session or requests.Session()

        # Stats tracking
        self.total_requests = 0
        self.failed_requests = 0
        self.total_retry_count = 0

    def fetch(self, symbol: str, start: datetime, end: datetime, resolution: str) -> CandleSeries:
        interval_ms = int(resolution_to_timedelta(resolution).total_seconds() * 1000)
        start_ms = to_millis(start)
        end_ms = to_millis(end)
        span = max(end_ms - start_ms, 1)

        candles: List[Candle] = []
        current = start_ms

        while current <= end_ms:
            params = {
                "symbol": symbol,
                "interval": resolution,
                "limit": self.chunk_size,
                "startTime": current,
                "endTime": end_ms
            }
            payload = self._request(params)
            rows = self._parse_chunk(payload, symbol, resolution)
            # Rows before the cursor were already loaded (or precede the range)
            chunk = [c for c in rows if current <= to_millis(c.timestamp) <= end_ms]

            if not chunk:
                if rows:
                    self.logger.warning(
                        f"API returned {len(rows)} candles for {symbol} with no progress "
                        f"past {from_millis(current)}; stopping pagination"
                    )
                break

            candles.extend(chunk)
            current = to_millis(chunk[-1].timestamp) + interval_ms

            emit(self.event_bus, DataLoadProgress(
                symbol=symbol,
                progress=min((current - start_ms) / span, 1.0),
                candles_loaded=len(candles)
            ))

            if self.rate_limit_delay > 0:
                time.sleep(self.rate_limit_delay)

        self.logger.info(f"Fetched {len(candles)} candles for {symbol} {resolution} from API")
        return tuple(candles)

    def _request(self, params: dict):
        """GET one page with retries.

        Raises:
            DataLoadFailure: If the request fails after all retries
        """
        self.total_requests += 1

        for attempt in range(self.max_retries):
            try:
                self.logger.debug(f"GET {self.base_url} (attempt {attempt + 1}/{self.max_retries})")
                response = self.session.get(self.base_url, params=params, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

            except requests.exceptions.RequestException as e:
                self.logger.warning(f"Request failed (attempt {attempt + 1}/{self.max_retries}): {e}")

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)
                    self.logger.debug(f"Retrying in {delay:.1f}s...")
                    time.sleep(delay)
                    self.total_retry_count += 1
                else:
                    self.failed_requests += 1
                    self.logger.error(f"Request failed after {self.max_retries} attempts")
                    raise DataLoadFailure(
                        f"Candle API unreachable: {e}",
                        symbol=params["symbol"],
                        resolution=params["interval"]
                    ) from e

        raise DataLoadFailure("max_retries must be >= 1", symbol=params["symbol"])

    @staticmethod
    def _parse_chunk(payload, symbol: str, resolution: str) -> List[Candle]:
        if not isinstance(payload, list):
            raise DataLoadFailure(
                f"Expected a list of candles, got {type(payload).__name__}",
                symbol=symbol,
                resolution=resolution
            )

        candles = []
        try:
            for row in payload:
                if isinstance(row, dict):
                    ts, o, h, l, c, v = (row["timestamp"], row["open"], row["high"],
                                         row["low"], row["close"], row["volume"])
                else:
                    ts, o, h, l, c, v = row[:6]
                candles.append(Candle(
                    timestamp=from_millis(ts),
                    open=float(o),
                    high=float(h),
                    low=float(l),
                    close=float(c),
                    volume=float(v)
                ))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DataLoadFailure(
                f"Malformed candle payload: {e}", symbol=symbol, resolution=resolution
            ) from e

        return candles

    def get_stats(self) -> dict:
        """Get client statistics.

        Returns:
            Dictionary with total_requests, failed_requests, total_retry_count
        """
        return {
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "total_retry_count": self.total_retry_count,
            "success_rate": (self.total_requests - self.failed_requests) / max(self.total_requests, 1)
        }

    def close(self):
        """Close the HTTP session and release resources."""
        self.session.close()
