"""
Fibonacci & Pivot Confluence System
Combines Fibonacci levels, dynamic pivot channels and confluence zones:
- Enhanced retracement/extension levels with volume, timeframe and price-action context
- Regression pivot channels with dynamic levels and volume profiles
- Confluence zones and market bias
- Dynamic level adjustment toward volume nodes and reaction points
- Per-timeframe pipeline and channel breakout detection
"""

import copy
import logging
import math
import threading
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from wave_confluence.config import EngineConfig
from wave_confluence.confluence import (
    ConfluenceZoneBuilder, eligible_timeframes, level_touch_count, resample_timeframes,
)
from wave_confluence.exceptions import InsufficientDataError
from wave_confluence.fibonacci import FibonacciCalculator
from wave_confluence.indicators import TechnicalIndicators, candles_to_frame, clamp
from wave_confluence.models import (
    Breakout, BreakoutKind, Candle, ConfluenceAnalysis, FibonacciLevel, LevelAdjustment,
    MarketPhase, MarketStructure, PivotChannel, SwingPoints, TimeframeAnalysis,
    TrendAnalysis, TrendDirection, VolumeRegime,
)
from wave_confluence.pivot_channels import PivotChannelDetector

logger = logging.getLogger(__name__)

MIN_TIMEFRAME_CANDLES = 50
LEVEL_TOLERANCE = 0.01          # 1 % band used for volume and touch analysis around a level
REJECTION_TOLERANCE = 0.005     # 0.5 % band for bounces/rejections
ADJUSTMENT_RADIUS = 0.02        # how far (fraction of price) a level may look for an anchor
HIGH_VOLUME_MULTIPLE = 1.5
BREAKOUT_VOLUME_LOOKBACK = 20


class FibonacciPivotSystem:
    """
    Fibonacci, pivot channel and confluence analysis over candle series.

    The system keeps only its configuration. Each call works on a snapshot of
    the configuration taken under a lock at entry; `update_config` swaps in a
    merged copy, so sections that are not updated keep their values.
    """

    def __init__(self, config: Optional[Union[EngineConfig, Dict]] = None):
        if config is None:
            config = EngineConfig()
        elif isinstance(config, dict):
            config = EngineConfig.from_dict(config)
        else:
            config = copy.deepcopy(config)
            config.validate()
        self._config = config
        self._lock = threading.RLock()
        self.indicators = TechnicalIndicators()
        logger.info("FibonacciPivotSystem initialized")

    # --- configuration ---

    def update_config(self, updates: Dict) -> None:
        """Merge a partial configuration section by section; unknown keys raise ConfigurationError."""
        with self._lock:
            self._config = self._config.merged(updates)
        logger.info(f"FibonacciPivotSystem configuration updated: {sorted(updates)}")

    def get_config(self) -> EngineConfig:
        with self._lock:
            return copy.deepcopy(self._config)

    def _snapshot(self) -> EngineConfig:
        with self._lock:
            return self._config

    # --- Fibonacci ---

    def calculate_comprehensive_fibonacci(self, candles: Sequence[Candle], swing_high: float, swing_low: float,
                                          start_time: int, end_time: int) -> List[FibonacciLevel]:
        """
        Retracement and extension levels between two swing points, enriched with candle context.

        Args:
            candles: Candles of the instrument (may be empty)
            swing_high: Swing high price
            swing_low: Swing low price
            start_time: Start of the swing (ms)
            end_time: End of the swing (ms)

        Returns:
            Retracement levels followed by extension levels, in configured ratio order.
            Level prices always follow the plain formulas; the dynamic adjustment is
            reported separately and never moves the price.
        """
        config = self._snapshot()
        if swing_high < swing_low:
            logger.warning(f"Swing high {swing_high} is below swing low {swing_low}; levels use the raw formula")

        calculator = FibonacciCalculator(config.fibonacci.retracement_levels, config.fibonacci.extension_levels)
        levels = (calculator.calculate_retracements(swing_high, swing_low)
                  + calculator.calculate_extensions(swing_high, swing_low))

        frame = candles_to_frame(candles)
        window = self._swing_window(frame, start_time, end_time)
        if window.empty:
            return levels

        source_timeframe = candles[0].timeframe if candles else None
        bars = resample_timeframes(window, eligible_timeframes(config.multi_timeframe, source_timeframe))
        volatility = self.indicators.calculate_volatility(window['close'], period=20)

        for level in levels:
            if not math.isfinite(level.price):
                continue
            tolerance = abs(level.price) * LEVEL_TOLERANCE
            level.volume_confirmation = self._volume_confirmation(window, level.price)
            level.timeframe_consensus = self._timeframe_consensus(bars, level.price, tolerance)

            touches = level_touch_count(window, level.price, abs(level.price) * config.fibonacci.confluence_threshold)
            if config.fibonacci.dynamic_adjustment and touches >= 2:
                level.dynamic_adjustment = min(volatility * 0.1, 0.05)

            rejections, bounces = self._reactions(window, level.price, REJECTION_TOLERANCE)
            level.price_action_confirmation = clamp((rejections + bounces) / 10)

            level.strength = clamp(0.7 * level.strength + 0.1 * level.volume_confirmation
                                   + 0.1 * level.timeframe_consensus + 0.1 * level.price_action_confirmation)
        return levels

    # --- pivot channels ---

    def detect_dynamic_pivot_channels(self, candles: Sequence[Candle]) -> List[PivotChannel]:
        """
        Detect regression pivot channels.

        Raises:
            InsufficientDataError: fewer candles than `pivot_channels.lookback_period`
        """
        config = self._snapshot()
        detector = PivotChannelDetector(config.pivot_channels)
        channels = detector.detect_channels(candles_to_frame(candles))
        logger.debug(f"Detected {len(channels)} pivot channel(s) on {len(candles)} candles")
        return channels

    def analyze_trend(self, candles: Sequence[Candle], pivot_channels: Sequence[PivotChannel]) -> TrendAnalysis:
        config = self._snapshot()
        return PivotChannelDetector(config.pivot_channels).analyze_trend(candles_to_frame(candles), pivot_channels)

    # --- confluence ---

    def build_confluence_zone_analysis(self, candles: Sequence[Candle], fib_levels: Sequence[FibonacciLevel],
                                       pivot_channels: Sequence[PivotChannel],
                                       wave_levels: Optional[Sequence[float]] = None) -> ConfluenceAnalysis:
        """Cluster every available level into confluence zones and derive the market bias."""
        config = self._snapshot()
        builder = ConfluenceZoneBuilder(config.confluence_zones, config.multi_timeframe)
        source_timeframe = candles[0].timeframe if candles else None
        return builder.build(candles_to_frame(candles), fib_levels, pivot_channels, wave_levels, source_timeframe)

    # --- dynamic adjustment ---

    def adjust_levels_dynamically(self, fib_levels: Sequence[FibonacciLevel],
                                  candles: Sequence[Candle]) -> List[LevelAdjustment]:
        """
        Nudge each level halfway toward the nearest high-volume node or pivot reaction point.

        Returns:
            One adjustment per input level. Levels with no anchor nearby are
            returned unchanged with a reason saying so.
        """
        frame = candles_to_frame(candles)
        if frame.empty:
            return [LevelAdjustment(original_level=level.price, adjusted_level=level.price, adjustment_factor=0.0,
                                    reason="No candle data available for adjustment",
                                    confidence=clamp(0.3 * level.strength))
                    for level in fib_levels]

        profile = self.indicators.calculate_volume_profile(frame, float(frame['low'].min()),
                                                           float(frame['high'].max()), bins=50)
        mean_volume = float(np.mean([volume for _, volume, _ in profile]))
        volume_nodes = [price for price, volume, _ in profile
                        if mean_volume > 0 and volume >= HIGH_VOLUME_MULTIPLE * mean_volume]

        high_idx, low_idx = self.indicators.find_swing_points(frame['high'], frame['low'], window=3)
        reaction_points = ([float(frame['high'].iloc[i]) for i in high_idx]
                           + [float(frame['low'].iloc[i]) for i in low_idx])
        historical_volume = float(frame['volume'].mean())

        adjustments = []
        for level in fib_levels:
            price = level.price
            radius = abs(price) * ADJUSTMENT_RADIUS
            anchor, source = self._nearest_anchor(price, radius, volume_nodes, reaction_points)

            rejections, bounces = self._reactions(frame, price, abs(price) * LEVEL_TOLERANCE)
            tolerance = abs(price) * LEVEL_TOLERANCE
            near = (frame['low'] <= price + tolerance) & (frame['high'] >= price - tolerance)
            volume_at_level = float(frame.loc[near, 'volume'].mean()) if near.any() else 0.0

            confidence = 0.5 + 0.3 * level.strength
            if volume_at_level > historical_volume:
                confidence += 0.2
            if rejections > 1 or bounces > 1:
                confidence += 0.2

            if anchor is None:
                adjustments.append(LevelAdjustment(
                    original_level=price,
                    adjusted_level=price,
                    adjustment_factor=0.0,
                    reason=f"No high-volume node or pivot reaction within {ADJUSTMENT_RADIUS:.1%} of level",
                    confidence=clamp(confidence - 0.2),
                ))
                continue

            adjusted = price + 0.5 * (anchor - price)
            adjustments.append(LevelAdjustment(
                original_level=price,
                adjusted_level=adjusted,
                adjustment_factor=(adjusted - price) / price if price else 0.0,
                reason=f"{source} at {anchor:.4f}",
                confidence=clamp(confidence),
            ))
        return adjustments

    @staticmethod
    def _nearest_anchor(price: float, radius: float, volume_nodes: List[float], reaction_points: List[float]):
        candidates = [(abs(p - price), p, "High-volume node") for p in volume_nodes if abs(p - price) <= radius]
        candidates += [(abs(p - price), p, "Pivot reaction point") for p in reaction_points
                       if abs(p - price) <= radius]
        if not candidates:
            return None, None
        _, anchor, source = min(candidates, key=lambda c: c[0])
        return anchor, source

    # --- multi-timeframe ---

    def perform_multi_timeframe_analysis(self, candles_by_timeframe: Dict[str, Sequence[Candle]],
                                         swing_points: SwingPoints) -> List[TimeframeAnalysis]:
        """
        Run the full pipeline on every timeframe that has at least 50 candles.
        """
        analyses = []
        for timeframe, candles in candles_by_timeframe.items():
            if len(candles) < MIN_TIMEFRAME_CANDLES:
                logger.warning(f"Skipping {timeframe}: {len(candles)} candles, need {MIN_TIMEFRAME_CANDLES}")
                continue

            fib_levels = self.calculate_comprehensive_fibonacci(
                candles, swing_points.high, swing_points.low,
                min(swing_points.high_time, swing_points.low_time),
                max(swing_points.high_time, swing_points.low_time),
            )
            try:
                channels = self.detect_dynamic_pivot_channels(candles)
            except InsufficientDataError as e:
                logger.warning(f"{timeframe}: {e}")
                channels = []

            confluence = self.build_confluence_zone_analysis(candles, fib_levels, channels)
            analyses.append(TimeframeAnalysis(
                timeframe=timeframe,
                fibonacci_levels=fib_levels,
                pivot_channels=channels,
                confluence_zones=confluence.zones,
                market_structure=self.analyze_market_structure(candles),
            ))
        return analyses

    def analyze_market_structure(self, candles: Sequence[Candle]) -> MarketStructure:
        """Trend, strength, phase, volatility and volume regime over the last 50 candles."""
        frame = candles_to_frame(candles)
        if len(frame) < 2:
            return MarketStructure(trend=TrendDirection.SIDEWAYS, strength=0.0, phase=MarketPhase.ACCUMULATION,
                                   volatility=0.0, volume=VolumeRegime.MEDIUM)

        recent = frame.tail(MIN_TIMEFRAME_CANDLES)
        change = self.indicators.calculate_momentum(recent['close'], period=len(recent) - 1)
        if change > 0.05:
            trend = TrendDirection.BULLISH
        elif change < -0.05:
            trend = TrendDirection.BEARISH
        else:
            trend = TrendDirection.SIDEWAYS

        volatility = self.indicators.calculate_volatility(recent['close'], period=len(recent))
        if change > 0.02 and volatility < 0.03:
            phase = MarketPhase.MARKUP
        elif change < -0.02 and volatility < 0.03:
            phase = MarketPhase.MARKDOWN
        elif abs(change) < 0.01 and volatility < 0.02:
            phase = MarketPhase.ACCUMULATION
        else:
            phase = MarketPhase.DISTRIBUTION

        overall_volume = frame['volume'].mean()
        ratio = recent['volume'].mean() / overall_volume if overall_volume else 1.0
        if ratio > 1.3:
            volume = VolumeRegime.HIGH
        elif ratio > 0.7:
            volume = VolumeRegime.MEDIUM
        else:
            volume = VolumeRegime.LOW

        return MarketStructure(trend=trend, strength=clamp(abs(change) * 10), phase=phase,
                               volatility=clamp(volatility), volume=volume)

    # --- breakouts ---

    def detect_pivot_channel_breakouts(self, candles: Sequence[Candle],
                                       pivot_channels: Sequence[PivotChannel]) -> List[Breakout]:
        """
        Confirmed closes beyond a channel boundary.

        A breakout needs the last `confirmation_candles` closes beyond the
        boundary (projected along the channel slope) and their average volume
        at least `volume_threshold` times the average of the preceding candles.

        Returns:
            Breakouts sorted by probability, highest first
        """
        config = self._snapshot().breakout_detection
        frame = candles_to_frame(candles)
        confirm = config.confirmation_candles
        if len(frame) <= confirm:
            return []

        recent = frame.tail(confirm)
        preceding = frame.iloc[:-confirm].tail(BREAKOUT_VOLUME_LOOKBACK)
        baseline = float(preceding['volume'].mean())
        if not baseline or not math.isfinite(baseline):
            return []
        volume_ratio = float(recent['volume'].mean()) / baseline
        if volume_ratio < config.volume_threshold:
            return []

        timestamps = frame['timestamp'].to_numpy()
        positions = np.arange(len(frame) - confirm, len(frame))
        closes = recent['close'].to_numpy(dtype=float)

        breakouts = []
        for channel in pivot_channels:
            # Candle offsets from the channel's last fitted candle
            anchor = int(np.searchsorted(timestamps, channel.end_time)) if channel.end_time else len(frame) - 1
            anchor = min(anchor, len(frame) - 1)
            offsets = positions - anchor
            upper = channel.upper_channel + channel.slope * offsets
            lower = channel.lower_channel + channel.slope * offsets
            width = channel.upper_channel - channel.lower_channel

            if np.all(closes > upper):
                kind, boundary, target = BreakoutKind.UPPER, float(upper[-1]), float(upper[-1]) + width
            elif np.all(closes < lower):
                kind, boundary, target = BreakoutKind.LOWER, float(lower[-1]), float(lower[-1]) - width
            else:
                continue

            price = float(closes[-1])
            penetration = abs(price - boundary) / abs(boundary) if boundary else 0.0
            penetration_score = min(penetration / config.price_threshold, 1.0)
            volume_confirmation = clamp(volume_ratio / (2 * config.volume_threshold))
            probability = clamp(0.3 + 0.25 * penetration_score + 0.25 * volume_confirmation
                                + 0.2 * channel.strength)

            breakouts.append(Breakout(
                kind=kind,
                price=price,
                timestamp=int(timestamps[-1]),
                strength=clamp(0.5 * penetration_score + 0.5 * channel.strength),
                target=target,
                probability_score=probability,
                volume_confirmation=volume_confirmation,
            ))
            logger.debug(f"{kind.value} breakout at {price:.4f} (boundary {boundary:.4f}, "
                         f"volume x{volume_ratio:.2f})")

        breakouts.sort(key=lambda b: b.probability_score, reverse=True)
        return breakouts

    # --- helpers ---

    @staticmethod
    def _swing_window(frame: pd.DataFrame, start_time: int, end_time: int) -> pd.DataFrame:
        """Candles inside the swing; all candles when the swing window holds none."""
        if frame.empty:
            return frame
        lo, hi = min(start_time, end_time), max(start_time, end_time)
        window = frame[(frame['timestamp'] >= lo) & (frame['timestamp'] <= hi)]
        return window if not window.empty else frame

    @staticmethod
    def _volume_confirmation(frame: pd.DataFrame, price: float) -> float:
        """Share of volume traded by candles with close, high or low within 1 % of the level."""
        total = frame['volume'].sum()
        if total <= 0:
            return 0.0
        tolerance = abs(price) * LEVEL_TOLERANCE
        near = ((frame['close'] - price).abs() <= tolerance) | ((frame['high'] - price).abs() <= tolerance) \
            | ((frame['low'] - price).abs() <= tolerance)
        return clamp(frame.loc[near, 'volume'].sum() / total)

    @staticmethod
    def _timeframe_consensus(bars: Dict[str, pd.DataFrame], price: float, tolerance: float) -> float:
        """Fraction of eligible timeframes whose bars traded at the level (0.5 when none apply)."""
        if not bars:
            return 0.5
        agreeing = sum(1 for frame in bars.values() if level_touch_count(frame, price, tolerance) > 0)
        return agreeing / len(bars)

    @staticmethod
    def _reactions(frame: pd.DataFrame, price: float, tolerance: float):
        """(rejections, bounces): bearish candles topping at the level and bullish candles basing on it."""
        rejections = ((frame['high'] - price).abs() <= tolerance) & (frame['close'] < frame['open'])
        bounces = ((frame['low'] - price).abs() <= tolerance) & (frame['close'] > frame['open'])
        return int(rejections.sum()), int(bounces.sum())
