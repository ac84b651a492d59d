"""
Dynamic pivot channel detection and channel-based trend analysis.
"""

import logging
import math
from typing import List, Sequence

import numpy as np
import pandas as pd

from wave_confluence.config import PivotChannelSettings
from wave_confluence.exceptions import InsufficientDataError
from wave_confluence.indicators import TechnicalIndicators, clamp
from wave_confluence.models import (
    ChannelDirection, PivotChannel, TrendAnalysis, TrendDirection, VolumeNode,
)

logger = logging.getLogger(__name__)

DYNAMIC_LEVEL_RATIOS = [0.236, 0.382, 0.5, 0.618, 0.786]
VOLUME_PROFILE_BUCKETS = 20
SLOPE_THRESHOLD = 0.0005  # relative slope per candle separating trending from horizontal channels


class PivotChannelDetector:
    """
    Fits regression channels over the most recent candles.

    For each window (lookback, 2x and 4x lookback, capped at the data length)
    the centre line is a least-squares fit of closes against candle index and
    the upper/lower lines are offset by the extreme residuals of the swing
    highs and lows.
    """

    def __init__(self, settings: PivotChannelSettings):
        self.settings = settings
        self.indicators = TechnicalIndicators()

    def detect_channels(self, frame: pd.DataFrame) -> List[PivotChannel]:
        """
        Detect channels on an OHLCV frame.

        Args:
            frame: Candle frame from candles_to_frame

        Returns:
            Channels with at least `min_touches` touches, strongest first

        Raises:
            InsufficientDataError: fewer candles than `lookback_period`
        """
        lookback = self.settings.lookback_period
        if len(frame) < lookback:
            raise InsufficientDataError('pivot channel detection', lookback, len(frame))

        windows = sorted({min(w, len(frame)) for w in (lookback, lookback * 2, lookback * 4)})
        channels = []
        for window in windows:
            channel = self._fit_channel(frame.tail(window))
            if channel is None:
                continue
            if channel.touches < self.settings.min_touches:
                logger.debug(f"Discarding {window}-candle channel with {channel.touches} touches")
                continue
            channels.append(channel)

        channels.sort(key=lambda c: c.strength, reverse=True)
        return channels

    def _fit_channel(self, window: pd.DataFrame):
        n = len(window)
        if n < 3:
            return None
        x = np.arange(n, dtype=float)
        closes = window['close'].to_numpy(dtype=float)
        highs = window['high'].to_numpy(dtype=float)
        lows = window['low'].to_numpy(dtype=float)

        slope, intercept = np.polyfit(x, closes, 1)
        centre_line = intercept + slope * x

        high_idx, low_idx = self.indicators.find_swing_points(window['high'], window['low'], window=2)
        high_residuals = (highs - centre_line)[high_idx] if len(high_idx) else highs - centre_line
        low_residuals = (lows - centre_line)[low_idx] if len(low_idx) else lows - centre_line
        upper_offset = max(float(np.max(high_residuals)), 0.0)
        lower_offset = min(float(np.min(low_residuals)), 0.0)

        centre = float(centre_line[-1])
        if upper_offset - lower_offset <= 0:
            pad = abs(centre) * self.settings.channel_width / 2 or 1.0
            upper_offset, lower_offset = pad, -pad

        upper_line = centre_line + upper_offset
        lower_line = centre_line + lower_offset
        upper = float(upper_line[-1])
        lower = float(lower_line[-1])
        tolerance = abs(centre) * self.settings.channel_width

        upper_hits = np.abs(highs - upper_line) <= tolerance
        lower_hits = np.abs(lows - lower_line) <= tolerance
        touches = int(np.count_nonzero(upper_hits | lower_hits))

        pivot_hits = np.concatenate([upper_hits[high_idx], lower_hits[low_idx]])
        alignment = float(pivot_hits.mean()) if len(pivot_hits) else 0.0
        contained = (closes <= upper_line + tolerance) & (closes >= lower_line - tolerance)
        containment = float(contained.mean())

        touch_score = min(touches / (2 * self.settings.min_touches), 1.0)
        strength = clamp(0.4 * touch_score + 0.3 * alignment + 0.3 * containment)

        mean_price = float(np.mean(closes))
        relative_slope = slope / mean_price if mean_price else 0.0
        if relative_slope > SLOPE_THRESHOLD:
            direction = ChannelDirection.ASCENDING
        elif relative_slope < -SLOPE_THRESHOLD:
            direction = ChannelDirection.DESCENDING
        else:
            direction = ChannelDirection.HORIZONTAL

        width = upper - lower
        dynamic_levels = [lower + r * width for r in DYNAMIC_LEVEL_RATIOS]
        profile = [VolumeNode(price=p, volume=v, percentage=pct)
                   for p, v, pct in self.indicators.calculate_volume_profile(window, lower, upper,
                                                                              VOLUME_PROFILE_BUCKETS)]

        return PivotChannel(
            upper_channel=upper,
            lower_channel=lower,
            center_line=centre,
            strength=strength,
            dynamic_levels=dynamic_levels,
            volume_profile=profile,
            breakout_probability=self._breakout_probability(window, upper, lower),
            support_resistance=self._support_resistance(highs, lows, high_idx, low_idx, upper, lower, centre),
            touches=touches,
            direction=direction,
            slope=float(slope),
            width=width,
            window=n,
            end_time=int(window['timestamp'].iloc[-1]),
        )

    def _breakout_probability(self, window: pd.DataFrame, upper: float, lower: float) -> float:
        """Base 0.3 plus proximity to a boundary, rising volume and momentum."""
        probability = 0.3
        price = float(window['close'].iloc[-1])
        if price:
            distance = min(abs(price - upper), abs(price - lower)) / abs(price)
            probability += 0.3 * clamp(1 - distance / 0.02)

        volumes = window['volume']
        if len(volumes) >= 10 and volumes.mean() > 0:
            recent_ratio = volumes.tail(5).mean() / volumes.mean()
            probability += 0.2 * clamp((recent_ratio - 1) / 0.5)

        momentum = self.indicators.calculate_momentum(window['close'], period=10)
        probability += 0.2 * clamp(abs(momentum) / 0.05)
        return clamp(probability)

    @staticmethod
    def _support_resistance(highs, lows, high_idx, low_idx, upper, lower, centre) -> List[float]:
        levels = {round(upper, 8), round(lower, 8), round(centre, 8)}
        levels.update(round(float(highs[i]), 8) for i in high_idx[-5:])
        levels.update(round(float(lows[i]), 8) for i in low_idx[-5:])
        return sorted((lvl for lvl in levels if math.isfinite(lvl)), reverse=True)

    # --- trend ---

    def analyze_trend(self, frame: pd.DataFrame, channels: Sequence[PivotChannel]) -> TrendAnalysis:
        """
        Combine price, channel and volume trends over `trend_analysis_depth` candles.
        """
        recent = frame.tail(self.settings.trend_analysis_depth)
        price_direction, price_strength = self._price_trend(recent)
        channel_direction, channel_strength = self._channel_trend(channels)
        volume_strength = self._volume_trend(recent)

        directions = [price_direction, channel_direction]
        bullish = directions.count(TrendDirection.BULLISH)
        bearish = directions.count(TrendDirection.BEARISH)
        sideways = directions.count(TrendDirection.SIDEWAYS)
        if bullish > bearish and bullish > sideways:
            direction = TrendDirection.BULLISH
        elif bearish > bullish and bearish > sideways:
            direction = TrendDirection.BEARISH
        else:
            direction = TrendDirection.SIDEWAYS

        probability = 0.5
        if price_direction == channel_direction:
            probability += 0.3
        if volume_strength > 0.7:
            probability += 0.2

        confirming = sum(
            1 for c in channels
            if (c.direction == ChannelDirection.ASCENDING and price_direction == TrendDirection.BULLISH)
            or (c.direction == ChannelDirection.DESCENDING and price_direction == TrendDirection.BEARISH)
        )
        average_strength = (price_strength + channel_strength + volume_strength) / 3
        confidence = 0.5 + average_strength * 0.4 + min(confirming / 3, 0.3)

        return TrendAnalysis(
            direction=direction,
            strength=clamp(average_strength),
            duration=self._trend_duration(frame, direction),
            probability=clamp(probability),
            confidence=clamp(confidence),
        )

    @staticmethod
    def _price_trend(frame: pd.DataFrame):
        if len(frame) < 2 or frame['close'].iloc[0] == 0:
            return TrendDirection.SIDEWAYS, 0.0
        change = (frame['close'].iloc[-1] - frame['close'].iloc[0]) / frame['close'].iloc[0]
        if change > 0.02:
            return TrendDirection.BULLISH, min(change * 5, 1.0)
        if change < -0.02:
            return TrendDirection.BEARISH, min(abs(change) * 5, 1.0)
        return TrendDirection.SIDEWAYS, 0.3

    @staticmethod
    def _channel_trend(channels: Sequence[PivotChannel]):
        if not channels:
            return TrendDirection.SIDEWAYS, 0.0
        strongest = channels[0]
        mapping = {
            ChannelDirection.ASCENDING: TrendDirection.BULLISH,
            ChannelDirection.DESCENDING: TrendDirection.BEARISH,
        }
        return mapping.get(strongest.direction, TrendDirection.SIDEWAYS), strongest.strength

    @staticmethod
    def _volume_trend(frame: pd.DataFrame) -> float:
        if len(frame) < 10:
            return 0.5
        half = len(frame) // 2
        first = frame['volume'].iloc[:half].mean()
        second = frame['volume'].iloc[half:].mean()
        if not first:
            return 0.5
        return 0.5 + min(abs((second - first) / first), 0.5)

    @staticmethod
    def _trend_duration(frame: pd.DataFrame, direction: TrendDirection) -> int:
        """Milliseconds covered by the latest run of candles moving in `direction`."""
        closes = frame['close'].to_numpy(dtype=float)
        timestamps = frame['timestamp'].to_numpy()
        duration = 0
        for i in range(len(closes) - 1, 0, -1):
            if closes[i - 1] == 0:
                break
            change = (closes[i] - closes[i - 1]) / closes[i - 1]
            if change > 0.005:
                candle_trend = TrendDirection.BULLISH
            elif change < -0.005:
                candle_trend = TrendDirection.BEARISH
            else:
                candle_trend = TrendDirection.SIDEWAYS
            if candle_trend != direction:
                break
            duration += int(timestamps[i] - timestamps[i - 1])
        return duration
