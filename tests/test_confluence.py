"""
Tests for confluence zone construction and market bias.
"""

import pytest

from wave_confluence.fibonacci_pivot_system import FibonacciPivotSystem
from wave_confluence.models import FactorKind, MarketBias, ZoneKind


def pipeline_inputs(system, candles):
    closes = [c.close for c in candles]
    fib_levels = system.calculate_comprehensive_fibonacci(candles, max(closes), min(closes),
                                                          candles[0].timestamp, candles[-1].timestamp)
    channels = system.detect_dynamic_pivot_channels(candles)
    return fib_levels, channels


@pytest.fixture
def system():
    return FibonacciPivotSystem()


def test_zones_respect_min_factors(system, random_candles):
    candles = random_candles(200)
    fib_levels, channels = pipeline_inputs(system, candles)
    analysis = system.build_confluence_zone_analysis(candles, fib_levels, channels)

    assert analysis.total_zones == len(analysis.zones)
    assert analysis.zones, "A 200-candle series with channels and Fibonacci levels should form zones"
    for zone in analysis.zones:
        assert len(zone.factors) >= 2, f"Zone at {zone.price_level} has {len(zone.factors)} factor(s)"
        assert all(f.weight > 0 for f in zone.factors)
        assert 0.0 <= zone.strength <= 1.0
        assert 0.0 <= zone.reliability <= 1.0
        assert len(zone.timeframe_consensus) == 3, "1h candles are checked on 1h, 4h and 1d"

    strengths = [z.strength for z in analysis.zones]
    assert strengths == sorted(strengths, reverse=True)
    assert all(z.strength > 0.7 for z in analysis.strong_zones)
    assert analysis.critical_levels == [z.price_level for z in analysis.strong_zones]
    assert analysis.market_bias in set(MarketBias)
    assert 0.0 <= analysis.confidence_score <= 1.0


def test_stricter_min_factors_reduces_zones(system, random_candles):
    candles = random_candles(200)
    fib_levels, channels = pipeline_inputs(system, candles)
    loose = system.build_confluence_zone_analysis(candles, fib_levels, channels)

    system.update_config({'confluence_zones': {'min_factors': 4}})
    strict = system.build_confluence_zone_analysis(candles, fib_levels, channels)

    assert strict.total_zones <= loose.total_zones
    assert all(len(z.factors) >= 4 for z in strict.zones)


def test_wave_levels_become_elliott_factors(system, random_candles):
    candles = random_candles(120)
    far_above = max(c.high for c in candles) * 2
    analysis = system.build_confluence_zone_analysis(candles, [], [], wave_levels=[far_above, far_above * 1.001])

    zone = next(z for z in analysis.zones if z.price_level > far_above * 0.99)
    assert [f.kind for f in zone.factors] == [FactorKind.ELLIOTT_WAVE, FactorKind.ELLIOTT_WAVE]
    assert zone.kind == ZoneKind.RESISTANCE


def test_zone_at_current_price_is_reversal(system, random_candles):
    candles = random_candles(120)
    current = candles[-1].close
    analysis = system.build_confluence_zone_analysis(candles, [], [], wave_levels=[current, current * 1.0005])

    assert any(z.kind == ZoneKind.REVERSAL for z in analysis.zones)


@pytest.mark.parametrize("wave_levels, expected", [
    ([90.0, 90.1, 90.2], MarketBias.BULLISH),
    ([110.0, 110.1, 110.2], MarketBias.BEARISH),
    ([90.0, 90.1, 90.2, 110.0, 110.1, 110.2], MarketBias.NEUTRAL),
])
def test_market_bias_follows_strong_zones(candle_factory, wave_levels, expected):
    system = FibonacciPivotSystem({'confluence_zones': {'volume_weighting': False, 'timeframe_weighting': False}})
    # Flat closes leave only the moving averages, which stay below the strong threshold
    candles = candle_factory([100.0] * 60)
    analysis = system.build_confluence_zone_analysis(candles, [], [], wave_levels=wave_levels)

    assert analysis.market_bias == expected
    assert all(any(f.kind == FactorKind.ELLIOTT_WAVE for f in z.factors) for z in analysis.strong_zones)


def test_empty_candles_give_neutral_analysis(system):
    analysis = system.build_confluence_zone_analysis([], [], [])

    assert analysis.zones == []
    assert analysis.total_zones == 0
    assert analysis.market_bias == MarketBias.NEUTRAL
    assert analysis.confidence_score == 0.0


def test_analysis_serialises(system, random_candles):
    candles = random_candles(120)
    fib_levels, channels = pipeline_inputs(system, candles)
    data = system.build_confluence_zone_analysis(candles, fib_levels, channels).to_dict()

    assert isinstance(data['market_bias'], str)
    for zone in data['zones']:
        assert isinstance(zone['kind'], str)
        assert all(isinstance(f['kind'], str) for f in zone['factors'])
