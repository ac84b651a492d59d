"""
Shared fixtures: deterministic candle generators and the reference 5-wave count.
"""

import numpy as np
import pytest

from wave_confluence.models import Candle, Wave, WaveDegree, WaveType

START_MS = 1_700_000_000_000
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def build_candles(closes, volumes=None, start_ms=START_MS, step_ms=HOUR_MS, spread=0.002,
                  symbol='BTCUSDT', timeframe='1h'):
    """Candles whose open is the previous close and whose wicks extend `spread` beyond the body."""
    closes = [float(c) for c in closes]
    if volumes is None:
        volumes = [1000.0] * len(closes)
    candles = []
    previous = closes[0]
    for i, (close, volume) in enumerate(zip(closes, volumes)):
        open_ = previous
        high = max(open_, close) * (1 + spread)
        low = min(open_, close) * (1 - spread)
        candles.append(Candle(symbol=symbol, timeframe=timeframe, timestamp=start_ms + i * step_ms,
                              open=open_, high=high, low=low, close=close, volume=float(volume)))
        previous = close
    return candles


def random_walk_closes(n, seed=42, start_price=50000.0, volatility=0.01):
    rng = np.random.default_rng(seed)
    returns = rng.normal(0, volatility, n)
    return start_price * np.cumprod(1 + returns)


@pytest.fixture
def candle_factory():
    return build_candles


@pytest.fixture
def random_candles():
    """Factory for seeded random-walk candles with random volume."""
    def _make(n, seed=42, start_price=50000.0, timeframe='1h', step_ms=HOUR_MS):
        rng = np.random.default_rng(seed + 1)
        volumes = rng.uniform(500, 1500, n)
        return build_candles(random_walk_closes(n, seed, start_price), volumes, step_ms=step_ms,
                             timeframe=timeframe)
    return _make


@pytest.fixture
def oscillating_candles():
    """Factory for candles swinging inside a horizontal range."""
    def _make(n, centre=100.0, amplitude=2.0, period=12, seed=7):
        rng = np.random.default_rng(seed)
        x = np.arange(n)
        closes = centre + amplitude * np.sin(2 * np.pi * x / period) + rng.normal(0, amplitude * 0.05, n)
        volumes = rng.uniform(900, 1100, n)
        return build_candles(closes, volumes)
    return _make


def make_wave(wave_id, wave_type, start_price, end_price, start_time, end_time, degree=WaveDegree.MINOR):
    return Wave(id=wave_id, wave_type=wave_type, degree=degree, start_price=start_price, end_price=end_price,
                start_time=start_time, end_time=end_time)


@pytest.fixture
def mock_waves():
    """Reference impulse: 100->120, 120->108, 108->140, 140->125, 125->145, one day each."""
    points = [100, 120, 108, 140, 125, 145]
    types = [WaveType.WAVE_1, WaveType.WAVE_2, WaveType.WAVE_3, WaveType.WAVE_4, WaveType.WAVE_5]
    return [
        make_wave(f"wave_{i + 1}", types[i], points[i], points[i + 1], START_MS + i * DAY_MS,
                  START_MS + (i + 1) * DAY_MS)
        for i in range(5)
    ]


@pytest.fixture
def wave_path_candles():
    """Hourly candles tracing a wave count's price path with small seeded noise."""
    def _make(waves, seed=3, noise=0.002):
        rng = np.random.default_rng(seed)
        closes = []
        for wave in waves:
            steps = max(2, int((wave.end_time - wave.start_time) // HOUR_MS))
            path = np.linspace(wave.start_price, wave.end_price, steps + 1)[:-1]
            closes.extend(path * (1 + rng.normal(0, noise, len(path))))
        closes.append(waves[-1].end_price)
        volumes = rng.uniform(800, 1200, len(closes))
        return build_candles(closes, volumes, start_ms=waves[0].start_time, spread=0.001)
    return _make
