"""
Base Fibonacci calculations: retracements, extensions, time projections and
clusters of levels that land on the same price.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from wave_confluence.indicators import clamp
from wave_confluence.models import (
    ClusterKind, FibonacciCluster, FibonacciLevel, LevelKind, SwingPoints,
    TimeProjection, Wave,
)

logger = logging.getLogger(__name__)

RETRACEMENT_RATIOS = [0.236, 0.382, 0.5, 0.618, 0.786]
EXTENSION_RATIOS = [1.272, 1.618, 2.618]
TIME_RATIOS = [0.382, 0.618, 1.0, 1.618, 2.618]

GOLDEN_RATIO = 0.618
INVERSE_GOLDEN_RATIO = 1.618
CLUSTER_TOLERANCE = 0.001  # 0.1 % of the average level price


def _is_ratio(value: float, target: float) -> bool:
    return abs(value - target) < 0.001


def is_golden_ratio(ratio: float) -> bool:
    return _is_ratio(ratio, GOLDEN_RATIO) or _is_ratio(ratio, INVERSE_GOLDEN_RATIO)


class FibonacciCalculator:
    """
    Computes Fibonacci levels between a swing high and a swing low.

    The ratio sets default to the standard Fibonacci sequence and can be
    replaced per instance (the confluence system passes its configured lists).
    """

    def __init__(self, retracement_ratios: Optional[Sequence[float]] = None,
                 extension_ratios: Optional[Sequence[float]] = None):
        # An explicit empty list disables that kind of level
        self.retracement_ratios = list(RETRACEMENT_RATIOS if retracement_ratios is None else retracement_ratios)
        self.extension_ratios = list(EXTENSION_RATIOS if extension_ratios is None else extension_ratios)

    def level_strength(self, ratio: float) -> float:
        """Golden ratio 1.0, 50 % level 0.9, other standard ratios 0.8, anything else 0.6."""
        if is_golden_ratio(ratio):
            return 1.0
        if _is_ratio(ratio, 0.5):
            return 0.9
        if any(_is_ratio(ratio, r) for r in RETRACEMENT_RATIOS + EXTENSION_RATIOS):
            return 0.8
        return 0.6

    @staticmethod
    def level_description(ratio: float, kind: LevelKind) -> str:
        percentage = f"{ratio * 100:.1f}"
        if _is_ratio(ratio, GOLDEN_RATIO) or _is_ratio(ratio, INVERSE_GOLDEN_RATIO):
            return f"{percentage}% {kind.value} (Golden Ratio)"
        if _is_ratio(ratio, 0.5):
            return f"{percentage}% {kind.value} (50% Level)"
        return f"{percentage}% {kind.value}"

    def _level(self, ratio: float, price: float, kind: LevelKind) -> FibonacciLevel:
        return FibonacciLevel(
            ratio=ratio,
            price=price,
            kind=kind,
            strength=self.level_strength(ratio),
            description=self.level_description(ratio, kind),
        )

    def calculate_retracements(self, high: float, low: float) -> List[FibonacciLevel]:
        """
        Retracement prices measured down from the swing high.

        Args:
            high: Swing high price
            low: Swing low price

        Returns:
            One level per retracement ratio at high - ratio * (high - low)
        """
        price_range = high - low
        return [self._level(r, high - r * price_range, LevelKind.RETRACEMENT)
                for r in self.retracement_ratios]

    def calculate_extensions(self, high: float, low: float) -> List[FibonacciLevel]:
        """
        Extension prices projected above the swing high.

        Only ratios above 1.0 are extensions; each lands at
        high + (ratio - 1) * (high - low).
        """
        price_range = high - low
        return [self._level(r, high + (r - 1) * price_range, LevelKind.EXTENSION)
                for r in self.extension_ratios if r > 1]

    def calculate_wave_extensions(self, wave1: Wave, wave2: Wave) -> List[FibonacciLevel]:
        """Project wave 3 targets from the end of wave 2 using multiples of wave 1's length."""
        direction = 1 if wave1.end_price >= wave1.start_price else -1
        wave1_length = abs(wave1.end_price - wave1.start_price)
        return [self._level(r, wave2.end_price + wave1_length * r * direction, LevelKind.EXTENSION)
                for r in self.extension_ratios]

    @staticmethod
    def calculate_time_projections(start_time: int, end_time: int,
                                   ratios: Iterable[float] = TIME_RATIOS) -> List[TimeProjection]:
        """Project future timestamps at Fibonacci multiples of the swing duration."""
        duration = end_time - start_time
        projections = []
        for ratio in ratios:
            if ratio == 1.0:
                label = '1:1'
            elif _is_ratio(ratio, GOLDEN_RATIO):
                label = 'Golden Ratio'
            elif _is_ratio(ratio, INVERSE_GOLDEN_RATIO):
                label = 'Inverse Golden Ratio'
            else:
                label = f"{ratio:.3f}"
            projections.append(TimeProjection(
                ratio=ratio,
                timestamp=int(end_time + duration * ratio),
                description=f"Time projection at {ratio} ratio ({label})",
            ))
        return projections

    def identify_golden_ratio_zones(self, levels: Sequence[FibonacciLevel]) -> List[FibonacciCluster]:
        """Every 0.618 / 1.618 level becomes its own cluster with boosted strength."""
        return [
            FibonacciCluster(
                price_level=level.price,
                strength=clamp(level.strength * 1.5),
                levels=[level],
                kind=ClusterKind.GOLDEN_RATIO,
            )
            for level in levels if is_golden_ratio(level.ratio)
        ]

    def find_fibonacci_clusters(self, levels: Sequence[FibonacciLevel],
                                min_levels: int = 2) -> List[FibonacciCluster]:
        """
        Group levels whose prices lie within 0.1 % of the average level price.

        Returns:
            Clusters with at least `min_levels` members, strongest first
        """
        if not levels:
            return []
        avg_price = sum(level.price for level in levels) / len(levels)
        tolerance = abs(avg_price) * CLUSTER_TOLERANCE

        groups = []
        used = set()
        for i, anchor in enumerate(levels):
            if i in used:
                continue
            group = [anchor]
            used.add(i)
            for j in range(i + 1, len(levels)):
                if j not in used and abs(anchor.price - levels[j].price) <= tolerance:
                    group.append(levels[j])
                    used.add(j)
            groups.append(group)

        clusters = []
        for group in groups:
            if len(group) < min_levels:
                continue
            base = sum(level.strength for level in group)
            strength = clamp(base * min(len(group) / 3, 2))
            if any(is_golden_ratio(level.ratio) for level in group):
                kind = ClusterKind.GOLDEN_RATIO
            elif len(group) >= 3:
                kind = ClusterKind.CONFLUENCE
            else:
                kind = ClusterKind.STANDARD
            clusters.append(FibonacciCluster(
                price_level=sum(level.price for level in group) / len(group),
                strength=strength,
                levels=group,
                kind=kind,
            ))
        clusters.sort(key=lambda c: c.strength, reverse=True)
        return clusters

    def analyze_swing_clusters(self, swing_points: Sequence[SwingPoints]) -> List[FibonacciCluster]:
        """Retracements for every pair of swing ranges, clustered by price."""
        levels = []
        for i in range(len(swing_points) - 1):
            for j in range(i + 1, len(swing_points)):
                a, b = swing_points[i], swing_points[j]
                levels.extend(self.calculate_retracements(max(a.high, b.high), min(a.low, b.low)))
        logger.debug(f"Clustering {len(levels)} retracement levels from {len(swing_points)} swings")
        return self.find_fibonacci_clusters(levels)
