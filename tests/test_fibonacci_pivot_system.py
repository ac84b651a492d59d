"""
Tests for level adjustment, multi-timeframe analysis, market structure and
channel breakout detection.
"""

import numpy as np
import pytest

from wave_confluence.fibonacci_pivot_system import FibonacciPivotSystem
from wave_confluence.models import (
    BreakoutKind, MarketPhase, SwingPoints, TrendDirection, VolumeRegime,
)

from conftest import DAY_MS, HOUR_MS, build_candles


@pytest.fixture
def system():
    return FibonacciPivotSystem()


def swing_points_for(candles):
    high = max(candles, key=lambda c: c.high)
    low = min(candles, key=lambda c: c.low)
    return SwingPoints(high=high.high, low=low.low, high_time=high.timestamp, low_time=low.timestamp)


# --- dynamic adjustment ---

def test_adjustments_are_one_per_level(system, random_candles):
    candles = random_candles(200)
    swing = swing_points_for(candles)
    levels = system.calculate_comprehensive_fibonacci(candles, swing.high, swing.low, candles[0].timestamp,
                                                      candles[-1].timestamp)
    adjustments = system.adjust_levels_dynamically(levels, candles)

    assert len(adjustments) == len(levels)
    for level, adjustment in zip(levels, adjustments):
        assert adjustment.original_level == level.price
        assert adjustment.reason, "Every adjustment carries a reason"
        assert 0.0 <= adjustment.confidence <= 1.0
        assert abs(adjustment.adjusted_level - level.price) <= abs(level.price) * 0.01 + 1e-9, \
            "Levels move at most halfway across the 2% search radius"


def test_adjustment_without_candles(system):
    levels = system.calculate_comprehensive_fibonacci([], 200, 100, 0, 1)
    adjustments = system.adjust_levels_dynamically(levels, [])

    assert len(adjustments) == len(levels)
    for adjustment in adjustments:
        assert adjustment.adjusted_level == adjustment.original_level
        assert adjustment.reason == "No candle data available for adjustment"


def test_level_far_from_data_is_unchanged(system, random_candles):
    candles = random_candles(100)
    far = system.calculate_comprehensive_fibonacci([], 1_000_000, 900_000, 0, 1)[:1]
    adjustment = system.adjust_levels_dynamically(far, candles)[0]

    assert adjustment.adjusted_level == adjustment.original_level
    assert adjustment.adjustment_factor == 0.0
    assert adjustment.reason.startswith("No high-volume node")


# --- multi-timeframe ---

def test_multi_timeframe_skips_short_series(system, random_candles):
    hourly = random_candles(120)
    candles_by_timeframe = {
        '1h': hourly,
        '4h': random_candles(60, seed=5, timeframe='4h', step_ms=4 * HOUR_MS),
        '1d': random_candles(20, seed=6, timeframe='1d', step_ms=DAY_MS),
    }
    analyses = system.perform_multi_timeframe_analysis(candles_by_timeframe, swing_points_for(hourly))

    assert [a.timeframe for a in analyses] == ['1h', '4h'], "Timeframes under 50 candles are skipped"
    for analysis in analyses:
        assert len(analysis.fibonacci_levels) == 8
        assert all(len(z.factors) >= 2 for z in analysis.confluence_zones)
        assert 0.0 <= analysis.market_structure.volatility <= 1.0


def test_multi_timeframe_empty_input(system):
    assert system.perform_multi_timeframe_analysis({}, SwingPoints(1, 0, 0, 1)) == []


# --- market structure ---

def test_market_structure_trend(system, candle_factory):
    rising = system.analyze_market_structure(candle_factory(np.linspace(100, 130, 60)))
    assert rising.trend == TrendDirection.BULLISH
    assert rising.phase == MarketPhase.MARKUP
    assert rising.strength == 1.0

    falling = system.analyze_market_structure(candle_factory(np.linspace(130, 100, 60)))
    assert falling.trend == TrendDirection.BEARISH
    assert falling.phase == MarketPhase.MARKDOWN

    flat = system.analyze_market_structure(candle_factory([100.0] * 60))
    assert flat.trend == TrendDirection.SIDEWAYS
    assert flat.phase == MarketPhase.ACCUMULATION
    assert flat.volume == VolumeRegime.MEDIUM


def test_market_structure_volume_regime(system, candle_factory):
    volumes = [100.0] * 100 + [1000.0] * 50
    structure = system.analyze_market_structure(candle_factory([100.0] * 150, volumes=volumes))
    assert structure.volume == VolumeRegime.HIGH


# --- breakouts ---

def breakout_series(oscillating_candles, final_closes, final_volume):
    base = oscillating_candles(100)
    closes = [c.close for c in base] + list(final_closes)
    volumes = [c.volume for c in base] + [final_volume] * len(final_closes)
    return base, build_candles(closes, volumes)


def test_upper_breakout_detected(system, oscillating_candles):
    base, candles = breakout_series(oscillating_candles, [106.0, 106.5, 107.0], 5000.0)
    channels = system.detect_dynamic_pivot_channels(base)
    breakouts = system.detect_pivot_channel_breakouts(candles, channels)

    assert breakouts, "Three high-volume closes above the range should break out"
    for breakout in breakouts:
        assert breakout.kind == BreakoutKind.UPPER
        assert breakout.price == pytest.approx(107.0)
        assert breakout.timestamp == candles[-1].timestamp
        assert breakout.target > breakout.price - 5, "Target sits a channel width above the boundary"
        assert 0.0 <= breakout.probability_score <= 1.0
        assert 0.0 < breakout.volume_confirmation <= 1.0
    probabilities = [b.probability_score for b in breakouts]
    assert probabilities == sorted(probabilities, reverse=True)


def test_lower_breakout_detected(system, oscillating_candles):
    base, candles = breakout_series(oscillating_candles, [94.0, 93.5, 93.0], 5000.0)
    breakouts = system.detect_pivot_channel_breakouts(candles, system.detect_dynamic_pivot_channels(base))

    assert breakouts
    assert all(b.kind == BreakoutKind.LOWER for b in breakouts)


def test_breakout_needs_volume(system, oscillating_candles):
    base, candles = breakout_series(oscillating_candles, [106.0, 106.5, 107.0], 1000.0)
    assert system.detect_pivot_channel_breakouts(candles, system.detect_dynamic_pivot_channels(base)) == []


def test_breakout_needs_all_confirmation_candles(system, oscillating_candles):
    base, candles = breakout_series(oscillating_candles, [106.0, 100.0, 107.0], 5000.0)
    assert system.detect_pivot_channel_breakouts(candles, system.detect_dynamic_pivot_channels(base)) == []


def test_more_volume_raises_probability(system, oscillating_candles):
    base, moderate = breakout_series(oscillating_candles, [106.0, 106.5, 107.0], 1800.0)
    _, heavy = breakout_series(oscillating_candles, [106.0, 106.5, 107.0], 3000.0)
    channels = system.detect_dynamic_pivot_channels(base)

    moderate_best = system.detect_pivot_channel_breakouts(moderate, channels)[0]
    heavy_best = system.detect_pivot_channel_breakouts(heavy, channels)[0]
    assert heavy_best.probability_score > moderate_best.probability_score
