#!/usr/bin/env python3
"""
Create sample CSV data files for testing

Hourly candles trace a five-wave impulse with seeded noise; the 4h and 1d
files are resampled from the hourly series. The wave count used to build the
path is written next to the CSVs so analyze_sample_data.py can score it.
"""

import argparse
import json
import logging
import os

import numpy as np
import pandas as pd

from wave_confluence.indicators import resample_frame

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
START_MS = 1_672_531_200_000  # 2023-01-01 00:00 UTC

# Impulse pivots (price multiples of the start price) and the share of candles per wave
IMPULSE_POINTS = [1.0, 1.2, 1.08, 1.4, 1.25, 1.45]
WAVE_SHARES = [0.15, 0.1, 0.35, 0.15, 0.25]
WAVE_TYPES = ['1', '2', '3', '4', '5']


def build_hourly_frame(candles, start_price, seed):
    rng = np.random.default_rng(seed)
    counts = [max(2, int(candles * share)) for share in WAVE_SHARES]

    closes = []
    waves = []
    index = 0
    for i, count in enumerate(counts):
        start, end = start_price * IMPULSE_POINTS[i], start_price * IMPULSE_POINTS[i + 1]
        closes.extend(np.linspace(start, end, count + 1)[:-1])
        waves.append({
            'id': f"wave_{WAVE_TYPES[i]}",
            'wave_type': WAVE_TYPES[i],
            'degree': 'minor',
            'start_price': float(start),
            'end_price': float(end),
            'start_time': START_MS + index * HOUR_MS,
            'end_time': START_MS + (index + count) * HOUR_MS,
        })
        index += count
    closes.append(start_price * IMPULSE_POINTS[-1])

    closes = np.asarray(closes) * (1 + rng.normal(0, 0.004, len(closes)))
    # Pin the pivots so the wave count matches the candles
    pivots = np.cumsum([0] + counts)
    closes[pivots] = [start_price * p for p in IMPULSE_POINTS]

    opens = np.concatenate([[closes[0]], closes[:-1]])
    wick = np.abs(rng.normal(0, 0.002, len(closes)))
    timestamps = START_MS + np.arange(len(closes)) * HOUR_MS
    frame = pd.DataFrame({
        'timestamp': timestamps,
        'open': opens,
        'high': np.maximum(opens, closes) * (1 + wick),
        'low': np.minimum(opens, closes) * (1 - wick),
        'close': closes,
        'volume': rng.uniform(500, 1500, len(closes)),
    })
    frame.index = pd.to_datetime(frame['timestamp'], unit='ms', utc=True)
    return frame, waves


def create_sample_data(data_dir="data", candles=2000, start_price=20000.0, seed=42):
    os.makedirs(data_dir, exist_ok=True)
    hourly, waves = build_hourly_frame(candles, start_price, seed)

    frames = {'1h': hourly, '4h': resample_frame(hourly, '4h'), '1d': resample_frame(hourly, '1d')}
    for interval, frame in frames.items():
        filename = os.path.join(data_dir, f"sample_{interval}.csv")
        frame.to_csv(filename, index=False, columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'])
        logger.info(f"Created {filename} with {len(frame)} rows")

    waves_file = os.path.join(data_dir, "sample_waves.json")
    with open(waves_file, 'w') as f:
        json.dump(waves, f, indent=2)
    logger.info(f"Created {waves_file} with {len(waves)} waves")


def main():
    parser = argparse.ArgumentParser(description="Create synthetic OHLCV sample data")
    parser.add_argument("--data-dir", type=str, default="data", help="Output directory (default: data)")
    parser.add_argument("--candles", type=int, default=2000, help="Number of hourly candles (default: 2000)")
    parser.add_argument("--start-price", type=float, default=20000.0, help="Price at the start of wave 1")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    create_sample_data(args.data_dir, args.candles, args.start_price, args.seed)


if __name__ == "__main__":
    main()
