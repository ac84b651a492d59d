"""
Technical Indicators Module
Numerical helpers shared by the wave analyzer and the confluence system:
- Candle list -> pandas frame conversion and timeframe resampling
- SMA (Simple Moving Average)
- ATR (Average True Range)
- Volatility and momentum
- Volume profile (volume-at-price buckets)
- Swing point detection
"""

import math
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.signal import find_peaks

from wave_confluence.models import Candle

logger = logging.getLogger(__name__)

OHLCV_COLUMNS = ['open', 'high', 'low', 'close', 'volume']

_TIMEFRAME_UNITS = {'m': 1, 'h': 60, 'd': 60 * 24, 'w': 60 * 24 * 7}


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    """Clip to [lower, upper]; NaN and infinities become `lower`."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return lower
    if math.isnan(value) or math.isinf(value):
        return lower
    return max(lower, min(upper, value))


def parse_timeframe(timeframe: str) -> Optional[int]:
    """
    Convert a timeframe string such as '15m', '4h' or '1d' to minutes.

    Returns:
        Number of minutes, or None when the string is not understood
    """
    if not timeframe:
        return None
    text = str(timeframe).strip().lower()
    unit = text[-1]
    if unit not in _TIMEFRAME_UNITS:
        logger.warning(f"Unrecognised timeframe '{timeframe}'")
        return None
    try:
        count = int(text[:-1] or 1)
    except ValueError:
        logger.warning(f"Unrecognised timeframe '{timeframe}'")
        return None
    if count <= 0:
        return None
    return count * _TIMEFRAME_UNITS[unit]


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """
    Build an OHLCV DataFrame from candles.

    The frame is sorted by timestamp, keeps the raw millisecond timestamp in a
    'timestamp' column and is indexed by a UTC DatetimeIndex.
    """
    if not candles:
        frame = pd.DataFrame(columns=['timestamp'] + OHLCV_COLUMNS, dtype=float)
        frame.index = pd.DatetimeIndex([], tz='UTC')
        return frame

    frame = pd.DataFrame({
        'timestamp': [int(c.timestamp) for c in candles],
        'open': [float(c.open) for c in candles],
        'high': [float(c.high) for c in candles],
        'low': [float(c.low) for c in candles],
        'close': [float(c.close) for c in candles],
        'volume': [float(c.volume) for c in candles],
    })
    frame = frame.sort_values('timestamp', kind='mergesort').reset_index(drop=True)
    frame.index = pd.to_datetime(frame['timestamp'], unit='ms', utc=True)
    return frame


def resample_frame(frame: pd.DataFrame, timeframe: str) -> pd.DataFrame:
    """Aggregate an OHLCV frame to a coarser timeframe. Unknown timeframes return an empty frame."""
    minutes = parse_timeframe(timeframe)
    if minutes is None or frame.empty:
        return frame.iloc[0:0]
    resampled = frame.resample(f"{minutes}min").agg({
        'timestamp': 'first',
        'open': 'first',
        'high': 'max',
        'low': 'min',
        'close': 'last',
        'volume': 'sum',
    })
    return resampled.dropna(subset=['close'])


class TechnicalIndicators:
    """
    A class to compute technical indicators from candle frames.
    """

    @staticmethod
    def calculate_sma(prices: pd.Series, period: int) -> pd.Series:
        """
        Calculate Simple Moving Average (SMA)

        Args:
            prices: Series of prices
            period: Number of periods

        Returns:
            Series of SMA values
        """
        return prices.rolling(window=period).mean()

    @staticmethod
    def calculate_atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
        """
        Calculate Average True Range (ATR)

        Args:
            high: Series of high prices
            low: Series of low prices
            close: Series of closing prices
            period: Number of periods (default 14)

        Returns:
            Series of ATR values (min_periods=1 so short inputs still yield a value)
        """
        tr0 = abs(high - low)
        tr1 = abs(high - close.shift())
        tr2 = abs(low - close.shift())
        tr = pd.DataFrame({'tr0': tr0, 'tr1': tr1, 'tr2': tr2}).max(axis=1)
        return tr.rolling(window=period, min_periods=1).mean()

    @staticmethod
    def calculate_volatility(close: pd.Series, period: int = 20) -> float:
        """
        Standard deviation of simple returns over the last `period` candles.

        Returns:
            Volatility as a fraction (0.02 == 2 %), 0.0 when there is not enough data
        """
        returns = close.pct_change().dropna().tail(period)
        if len(returns) < 2:
            return 0.0
        value = float(returns.std())
        return value if math.isfinite(value) else 0.0

    @staticmethod
    def calculate_momentum(close: pd.Series, period: int = 10) -> float:
        """Relative price change over the last `period` candles."""
        if len(close) < 2:
            return 0.0
        period = min(period, len(close) - 1)
        base = float(close.iloc[-period - 1])
        if base == 0:
            return 0.0
        return (float(close.iloc[-1]) - base) / base

    @staticmethod
    def calculate_volume_profile(frame: pd.DataFrame, lower: float, upper: float,
                                 bins: int = 20) -> List[Tuple[float, float, float]]:
        """
        Distribute candle volume over equal-width price buckets.

        Each candle's volume is split across the buckets its high-low range
        overlaps, in proportion to the overlap. Candles with no overlap (or no
        range) put their whole volume into the bucket holding their clipped
        typical price.

        Args:
            frame: OHLCV DataFrame
            lower: Lower bound of the profile
            upper: Upper bound of the profile
            bins: Number of buckets (default 20)

        Returns:
            List of (bucket centre price, volume, percentage) tuples; the
            percentages sum to 100
        """
        if not math.isfinite(lower) or not math.isfinite(upper):
            lower, upper = 0.0, 1.0
        if upper <= lower:
            pad = abs(lower) * 0.001 or 1.0
            lower, upper = lower - pad, upper + pad

        edges = np.linspace(lower, upper, bins + 1)
        centres = (edges[:-1] + edges[1:]) / 2
        bucket_volume = np.zeros(bins)

        if not frame.empty:
            highs = frame['high'].to_numpy(dtype=float)[:, None]
            lows = frame['low'].to_numpy(dtype=float)[:, None]
            volumes = np.nan_to_num(frame['volume'].to_numpy(dtype=float), nan=0.0)

            overlap = np.clip(np.minimum(highs, edges[1:]) - np.maximum(lows, edges[:-1]), 0, None)
            ranges = (highs - lows).ravel()
            overlap_total = overlap.sum(axis=1)
            spread = (ranges > 0) & (overlap_total > 0)

            shares = np.zeros_like(overlap)
            shares[spread] = overlap[spread] / overlap_total[spread][:, None]

            typical = ((frame['high'] + frame['low'] + frame['close']) / 3).to_numpy(dtype=float)
            idx = np.clip(np.searchsorted(edges, np.clip(typical, lower, upper), side='right') - 1, 0, bins - 1)
            fallback = np.where(~spread)[0]
            shares[fallback, idx[fallback]] = 1.0

            bucket_volume = (shares * volumes[:, None]).sum(axis=0)

        total = bucket_volume.sum()
        if total > 0:
            percentages = bucket_volume / total * 100
        else:
            percentages = np.full(bins, 100.0 / bins)
        return [(float(p), float(v), float(pct)) for p, v, pct in zip(centres, bucket_volume, percentages)]

    @staticmethod
    def find_swing_points(high: pd.Series, low: pd.Series, window: int = 2) -> Tuple[np.ndarray, np.ndarray]:
        """
        Locate swing highs and lows.

        A swing high is a local maximum of `high` that is also the highest
        value within `window` candles on either side (swing lows mirror this
        on `low`). Edges are never swings.

        Returns:
            Tuple of (swing high positions, swing low positions)
        """
        highs = high.to_numpy(dtype=float)
        lows = low.to_numpy(dtype=float)
        n = len(highs)
        if n < 3:
            return np.array([], dtype=int), np.array([], dtype=int)

        distance = max(1, window)
        peaks, _ = find_peaks(highs, distance=distance)
        troughs, _ = find_peaks(-lows, distance=distance)

        def _strict(values: np.ndarray, positions: np.ndarray, is_max: bool) -> np.ndarray:
            kept = []
            for i in positions:
                segment = values[max(0, i - window):min(n, i + window + 1)]
                extreme = segment.max() if is_max else segment.min()
                if values[i] == extreme:
                    kept.append(i)
            return np.array(kept, dtype=int)

        return _strict(highs, peaks, True), _strict(lows, troughs, False)
