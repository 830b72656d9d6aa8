"""Rolling technical indicators over a bounded candle window.

Pure functions of the candle history; nothing here is persisted between
replay steps.
"""

from typing import Dict, Optional, Sequence

import numpy as np

from .data_source import Candle


def sma(values: Sequence[float], period: int) -> Optional[float]:
    """Simple moving average of the last ``period`` values, None if too short."""
    if period < 1 or len(values) < period:
        return None
    return float(np.mean(np.asarray(values[-period:], dtype=float)))


def rsi(closes: Sequence[float], period: int = 14) -> float:
    """Relative strength index from simple averages of the last ``period`` changes.

    Returns the neutral 50 when there is not enough history and 100 when the
    window holds no losses.
    """
    if len(closes) < period + 1:
        return 50.0

    changes = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    avg_gain = np.clip(changes, 0, None).sum() / period
    avg_loss = np.clip(-changes, 0, None).sum() / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - 100 / (1 + rs))


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Average true range over the last ``period`` true ranges."""
    if len(candles) < 2:
        return None

    window = candles[-(period + 1):]
    true_ranges = [
        max(cur.high - cur.low, abs(cur.high - prev.close), abs(cur.low - prev.close))
        for prev, cur in zip(window, window[1:])
    ]
    return float(np.mean(true_ranges))


def compute_indicators(candles: Sequence[Candle], index: int, lookback: int = 200) -> Dict[str, float]:
    """Indicators for candle ``index`` using at most ``lookback`` closes.

    Returns an empty mapping until at least 20 closes are available; slower
    indicators appear once their own window is filled.

    Args:
        candles: Full candle series
        index: Current step
        lookback: Maximum number of closes considered

    Returns:
        Mapping with any of ``sma_20``, ``sma_50``, ``rsi_14``, ``atr_14``
    """
    start = max(0, index - lookback + 1)
    window = candles[start:index + 1]
    closes = [c.close for c in window]

    if len(closes) < 20:
        return {}

    indicators = {"sma_20": sma(closes, 20), "rsi_14": rsi(closes, 14)}

    sma_50 = sma(closes, 50)
    if sma_50 is not None:
        indicators["sma_50"] = sma_50

    atr_14 = atr(window, 14)
    if atr_14 is not None:
        indicators["atr_14"] = atr_14

    return indicators
