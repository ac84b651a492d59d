"""
Confluence zone construction.

Price levels from every available source (Fibonacci levels, pivot channels,
swing clusters, moving averages and caller-supplied wave levels) are
clustered by proximity. A cluster backed by enough independent factors
becomes a ConfluenceZone.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from wave_confluence.config import ConfluenceZoneSettings, MultiTimeframeSettings
from wave_confluence.indicators import TechnicalIndicators, clamp, parse_timeframe, resample_frame
from wave_confluence.models import (
    ConfluenceAnalysis, ConfluenceFactor, ConfluenceZone, FactorKind,
    FibonacciLevel, MarketBias, PivotChannel, TimeframeConsensus, VolumeNode, ZoneKind,
)

logger = logging.getLogger(__name__)

STRONG_ZONE_THRESHOLD = 0.7
BIAS_RATIO = 1.5
MIN_FACTOR_WEIGHT = 0.05


@dataclass
class _LevelCandidate:
    price: float
    kind: FactorKind
    weight: float
    description: str


def level_touch_count(frame: pd.DataFrame, price: float, tolerance: float) -> int:
    """Number of candles whose high-low range comes within `tolerance` of `price`."""
    if frame.empty:
        return 0
    touched = (frame['low'] - tolerance <= price) & (frame['high'] + tolerance >= price)
    return int(touched.sum())


def eligible_timeframes(settings: MultiTimeframeSettings, source_timeframe: Optional[str]) -> List[str]:
    """Configured timeframes at least as coarse as the candles' own timeframe."""
    source_minutes = parse_timeframe(source_timeframe) if source_timeframe else None
    eligible = []
    for timeframe in settings.timeframes:
        minutes = parse_timeframe(timeframe)
        if minutes is None:
            continue
        if source_minutes is None or minutes >= source_minutes:
            eligible.append(timeframe)
    return eligible


def resample_timeframes(frame: pd.DataFrame, timeframes: Sequence[str]) -> Dict[str, pd.DataFrame]:
    return {timeframe: resample_frame(frame, timeframe) for timeframe in timeframes}


def timeframe_consensus(bars_by_timeframe: Dict[str, pd.DataFrame], price: float,
                        tolerance: float) -> List[TimeframeConsensus]:
    """For each timeframe, whether its resampled bars have traded at `price`."""
    results = []
    for timeframe, bars in bars_by_timeframe.items():
        touches = level_touch_count(bars, price, tolerance)
        agreement = touches > 0
        factors = []
        if agreement:
            factors.append(ConfluenceFactor(
                kind=FactorKind.SUPPORT_RESISTANCE,
                description=f"{touches} {timeframe} bar(s) traded at {price:.4f}",
                weight=clamp(touches / 3, MIN_FACTOR_WEIGHT),
            ))
        results.append(TimeframeConsensus(
            timeframe=timeframe,
            agreement=agreement,
            strength=clamp(touches / 3),
            factors=factors,
        ))
    return results


class ConfluenceZoneBuilder:
    """
    Clusters price levels into confluence zones and derives the market bias.
    """

    def __init__(self, settings: ConfluenceZoneSettings, timeframe_settings: MultiTimeframeSettings):
        self.settings = settings
        self.timeframe_settings = timeframe_settings
        self.indicators = TechnicalIndicators()

    def build(self, frame: pd.DataFrame, fib_levels: Sequence[FibonacciLevel],
              channels: Sequence[PivotChannel], wave_levels: Optional[Sequence[float]] = None,
              source_timeframe: Optional[str] = None) -> ConfluenceAnalysis:
        """
        Build the confluence analysis for one candle series.

        Args:
            frame: Candle frame (empty frames give an empty, neutral analysis)
            fib_levels: Fibonacci levels, usually from calculate_comprehensive_fibonacci
            channels: Pivot channels from the same candles
            wave_levels: Optional prices from a wave count (targets, invalidation levels)
            source_timeframe: Timeframe of the candles, used for timeframe consensus

        Returns:
            ConfluenceAnalysis with zones sorted by strength
        """
        if frame.empty:
            return ConfluenceAnalysis(zones=[], total_zones=0, strong_zones=[], critical_levels=[],
                                      market_bias=MarketBias.NEUTRAL, confidence_score=0.0)

        candidates = self._collect_levels(frame, fib_levels, channels, wave_levels)
        groups = self._group_by_proximity(candidates)
        bars = resample_timeframes(frame, eligible_timeframes(self.timeframe_settings, source_timeframe))
        current_price = float(frame['close'].iloc[-1])

        zones = []
        for group in groups:
            if len(group) < self.settings.min_factors:
                continue
            zones.append(self._create_zone(group, frame, channels, bars, current_price))
        zones.sort(key=lambda z: z.strength, reverse=True)
        logger.debug(f"{len(candidates)} levels -> {len(groups)} clusters -> {len(zones)} zones")

        strong_zones = [z for z in zones if z.strength > STRONG_ZONE_THRESHOLD]
        bias, consistency = self._market_bias(strong_zones, current_price)
        return ConfluenceAnalysis(
            zones=zones,
            total_zones=len(zones),
            strong_zones=strong_zones,
            critical_levels=[z.price_level for z in strong_zones],
            market_bias=bias,
            confidence_score=self._confidence(zones, consistency),
        )

    # --- level collection ---

    def _collect_levels(self, frame: pd.DataFrame, fib_levels: Sequence[FibonacciLevel],
                        channels: Sequence[PivotChannel],
                        wave_levels: Optional[Sequence[float]]) -> List[_LevelCandidate]:
        levels = []
        for fib in fib_levels:
            levels.append(_LevelCandidate(fib.price, FactorKind.FIBONACCI, fib.strength,
                                          fib.description or f"{fib.ratio} {fib.kind.value}"))

        for channel in channels:
            levels.append(_LevelCandidate(channel.upper_channel, FactorKind.SUPPORT_RESISTANCE, channel.strength,
                                          f"Channel resistance at {channel.upper_channel:.4f}"))
            levels.append(_LevelCandidate(channel.lower_channel, FactorKind.SUPPORT_RESISTANCE, channel.strength,
                                          f"Channel support at {channel.lower_channel:.4f}"))
            levels.append(_LevelCandidate(channel.center_line, FactorKind.SUPPORT_RESISTANCE,
                                          channel.strength * 0.8,
                                          f"Channel centre line at {channel.center_line:.4f}"))
            for price in channel.dynamic_levels:
                levels.append(_LevelCandidate(price, FactorKind.PATTERN, channel.strength * 0.5,
                                              f"Channel level at {price:.4f}"))

        levels.extend(self._swing_cluster_levels(frame))
        levels.extend(self._moving_average_levels(frame))

        for price in wave_levels or []:
            levels.append(_LevelCandidate(float(price), FactorKind.ELLIOTT_WAVE, 0.8,
                                          f"Elliott wave level at {float(price):.4f}"))

        for level in levels:
            level.weight = max(clamp(level.weight), MIN_FACTOR_WEIGHT)
        return [level for level in levels if np.isfinite(level.price)]

    def _swing_cluster_levels(self, frame: pd.DataFrame) -> List[_LevelCandidate]:
        """Swing highs/lows that repeat within tolerance become support/resistance levels."""
        high_idx, low_idx = self.indicators.find_swing_points(frame['high'], frame['low'], window=3)
        prices = sorted([float(frame['high'].iloc[i]) for i in high_idx] +
                        [float(frame['low'].iloc[i]) for i in low_idx])
        tolerance = self.settings.price_tolerance_percent / 100

        levels = []
        cluster = []
        for price in prices:
            if cluster and abs(price - cluster[0]) > abs(cluster[0]) * tolerance:
                levels.extend(self._swing_cluster(cluster))
                cluster = []
            cluster.append(price)
        levels.extend(self._swing_cluster(cluster))
        return levels

    @staticmethod
    def _swing_cluster(cluster: List[float]) -> List[_LevelCandidate]:
        if len(cluster) < 2:
            return []
        price = float(np.mean(cluster))
        return [_LevelCandidate(price, FactorKind.SUPPORT_RESISTANCE, min(0.5 + 0.1 * len(cluster), 0.9),
                                f"{len(cluster)} swing reactions near {price:.4f}")]

    def _moving_average_levels(self, frame: pd.DataFrame) -> List[_LevelCandidate]:
        levels = []
        for period, weight in ((20, 0.6), (50, 0.7)):
            if len(frame) < period:
                continue
            value = float(self.indicators.calculate_sma(frame['close'], period).iloc[-1])
            if np.isfinite(value):
                levels.append(_LevelCandidate(value, FactorKind.INDICATOR, weight, f"SMA {period} at {value:.4f}"))
        return levels

    def _group_by_proximity(self, levels: List[_LevelCandidate]) -> List[List[_LevelCandidate]]:
        """Greedy clustering over sorted prices, anchored on the first level of each group."""
        tolerance = self.settings.price_tolerance_percent / 100
        groups = []
        for level in sorted(levels, key=lambda l: l.price):
            if groups:
                anchor = groups[-1][0].price
                limit = abs(anchor) * tolerance if anchor else tolerance
                if abs(level.price - anchor) <= limit:
                    groups[-1].append(level)
                    continue
            groups.append([level])
        return groups

    # --- zone construction ---

    def _create_zone(self, group: List[_LevelCandidate], frame: pd.DataFrame, channels: Sequence[PivotChannel],
                     bars: Dict[str, pd.DataFrame], current_price: float) -> ConfluenceZone:
        price = float(np.mean([level.price for level in group]))
        tolerance = abs(price) * self.settings.price_tolerance_percent / 100
        avg_weight = float(np.mean([level.weight for level in group]))

        strength = avg_weight * (0.7 + 0.3 * min(len(group) / 3, 1))
        consensus = timeframe_consensus(bars, price, tolerance)
        if self.settings.volume_weighting:
            strength *= 0.8 + 0.4 * self._volume_share(frame, price, tolerance)
        if self.settings.timeframe_weighting and consensus:
            strength *= 0.9 + 0.2 * float(np.mean([c.strength for c in consensus]))

        if abs(price - current_price) <= tolerance:
            kind = ZoneKind.REVERSAL
        elif price < current_price:
            kind = ZoneKind.SUPPORT
        else:
            kind = ZoneKind.RESISTANCE

        diversity = len({level.kind for level in group}) / 5
        reliability = clamp(avg_weight * 0.7 + diversity * 0.3)

        nodes = [VolumeNode(price=n.price, volume=n.volume, percentage=n.percentage)
                 for channel in channels for n in channel.volume_profile
                 if abs(n.price - price) <= abs(price) * 0.01]

        distance = abs(current_price - price) / abs(price) if price else 1.0
        significance_tolerance = abs(price) * 0.02
        recent = frame.tail(20)
        bounces = ((recent['low'] - price).abs() <= abs(price) * 0.01) & (recent['close'] > recent['open'])

        return ConfluenceZone(
            price_level=price,
            strength=clamp(strength),
            factors=[ConfluenceFactor(kind=l.kind, description=l.description, weight=l.weight) for l in group],
            kind=kind,
            reliability=reliability,
            volume_profile=nodes,
            timeframe_consensus=consensus,
            dynamic_support=int(bounces.sum()) >= 2,
            breakout_probability=clamp(max(0.1, 1 - distance * 10)),
            historical_significance=clamp(level_touch_count(frame, price, significance_tolerance) / 10),
        )

    @staticmethod
    def _volume_share(frame: pd.DataFrame, price: float, tolerance: float) -> float:
        total = frame['volume'].sum()
        if total <= 0:
            return 0.0
        near = (frame['low'] - tolerance <= price) & (frame['high'] + tolerance >= price)
        return clamp(frame.loc[near, 'volume'].sum() / total)

    @staticmethod
    def _market_bias(strong_zones: Sequence[ConfluenceZone], current_price: float):
        """Bias from strong zones below (support) versus above (resistance) the current price."""
        supports = sum(1 for z in strong_zones if z.price_level < current_price)
        resistances = len(strong_zones) - supports
        if supports > resistances * BIAS_RATIO:
            bias = MarketBias.BULLISH
        elif resistances > supports * BIAS_RATIO:
            bias = MarketBias.BEARISH
        else:
            bias = MarketBias.NEUTRAL
        consistency = abs(supports - resistances) / len(strong_zones) if strong_zones else 0.0
        return bias, consistency

    @staticmethod
    def _confidence(zones: Sequence[ConfluenceZone], consistency: float) -> float:
        if not zones:
            return 0.0
        avg_strength = float(np.mean([z.strength for z in zones]))
        return clamp(0.4 * avg_strength + 0.3 * min(len(zones) / 5, 1) + 0.3 * consistency)
