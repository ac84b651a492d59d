#!/usr/bin/env python3
"""
Run the wave analyzer and the confluence system over sample CSV candles and
print the results as JSON.

Expects the files written by create_sample_data.py: data/sample_<tf>.csv with
timestamp (ms), open, high, low, close and volume columns, and optionally
data/sample_waves.json holding a wave count for the finest timeframe.
"""

import argparse
import json
import logging
import os
import sys

import pandas as pd

from wave_confluence.config import load_engine_config, load_wave_config
from wave_confluence.exceptions import InsufficientDataError
from wave_confluence.fibonacci_pivot_system import FibonacciPivotSystem
from wave_confluence.indicators import parse_timeframe
from wave_confluence.models import Candle, SwingPoints, Wave
from wave_confluence.wave_analyzer import ElliottWaveAnalyzer

logger = logging.getLogger(__name__)


def load_sample_data(file_path, symbol, timeframe):
    """Load candles from a CSV file"""
    df = pd.read_csv(file_path)
    missing = {'timestamp', 'open', 'high', 'low', 'close', 'volume'} - set(df.columns)
    if missing:
        raise ValueError(f"{file_path} is missing columns: {', '.join(sorted(missing))}")
    candles = [
        Candle(symbol=symbol, timeframe=timeframe, timestamp=int(row.timestamp), open=float(row.open),
               high=float(row.high), low=float(row.low), close=float(row.close), volume=float(row.volume))
        for row in df.itertuples(index=False)
    ]
    logger.info(f"Loaded {len(candles)} {timeframe} candles from {file_path}")
    return candles


def load_waves(file_path):
    if not os.path.exists(file_path):
        logger.warning(f"{file_path} not found; skipping wave analysis")
        return []
    with open(file_path, 'r') as f:
        return [Wave(**item) for item in json.load(f)]


def find_sample_files(data_dir):
    """Map timeframe -> CSV path for every data/sample_<timeframe>.csv, finest first."""
    files = {}
    if os.path.isdir(data_dir):
        for name in os.listdir(data_dir):
            if name.startswith("sample_") and name.endswith(".csv"):
                timeframe = name[len("sample_"):-len(".csv")]
                if parse_timeframe(timeframe) is not None:
                    files[timeframe] = os.path.join(data_dir, name)
    return dict(sorted(files.items(), key=lambda item: parse_timeframe(item[0])))


def swing_points_from(candles):
    high = max(candles, key=lambda c: c.high)
    low = min(candles, key=lambda c: c.low)
    return SwingPoints(high=high.high, low=low.low, high_time=high.timestamp, low_time=low.timestamp)


def analyze(candles_by_timeframe, waves, analyzer, system):
    timeframe, candles = next(iter(candles_by_timeframe.items()))
    swing = swing_points_from(candles)
    report = {'symbol': candles[0].symbol, 'primary_timeframe': timeframe, 'swing_points': swing.to_dict()}

    wave_levels = []
    if waves:
        scores = analyzer.calculate_wave_probabilities(waves, candles)
        wave_levels = [s.invalidation_level for s in scores]
        wave_levels += [t.price for s in scores for t in s.next_targets[:1]]
        report['waves'] = {
            'scores': [s.to_dict() for s in scores],
            'validation': analyzer.validate_elliott_wave_rules(waves).to_dict(),
            'relationships': [r.to_dict() for r in analyzer.analyze_wave_relationships(waves)[:10]],
            'nested': [n.to_dict() for n in analyzer.perform_nested_analysis(waves, candles)],
        }

    fib_levels = system.calculate_comprehensive_fibonacci(candles, swing.high, swing.low,
                                                          min(swing.high_time, swing.low_time),
                                                          max(swing.high_time, swing.low_time))
    try:
        channels = system.detect_dynamic_pivot_channels(candles)
    except InsufficientDataError as e:
        logger.warning(str(e))
        channels = []

    report['fibonacci_levels'] = [level.to_dict() for level in fib_levels]
    report['pivot_channels'] = [channel.to_dict() for channel in channels]
    report['trend'] = system.analyze_trend(candles, channels).to_dict()
    report['confluence'] = system.build_confluence_zone_analysis(candles, fib_levels, channels,
                                                                 wave_levels).to_dict()
    report['adjustments'] = [a.to_dict() for a in system.adjust_levels_dynamically(fib_levels, candles)]
    report['breakouts'] = [b.to_dict() for b in system.detect_pivot_channel_breakouts(candles, channels)]
    report['timeframes'] = [t.to_dict() for t in
                            system.perform_multi_timeframe_analysis(candles_by_timeframe, swing)]
    return report


def main():
    parser = argparse.ArgumentParser(description="Analyze sample OHLCV data with the wave confluence engines")
    parser.add_argument("--data-dir", type=str, default="data", help="Directory holding sample_<tf>.csv files")
    parser.add_argument("--config", type=str, default="config.yaml", help="YAML configuration file")
    parser.add_argument("--symbol", type=str, default="BTCUSDT", help="Symbol label for the candles")
    parser.add_argument("--output", type=str, help="Write the JSON report here instead of stdout")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    sample_files = find_sample_files(args.data_dir)
    if not sample_files:
        logger.error(f"No sample data files found in {args.data_dir}/ (run create_sample_data.py first)")
        return 1

    candles_by_timeframe = {tf: load_sample_data(path, args.symbol, tf) for tf, path in sample_files.items()}
    candles_by_timeframe = {tf: candles for tf, candles in candles_by_timeframe.items() if candles}
    if not candles_by_timeframe:
        logger.error("Sample data files are empty")
        return 1

    analyzer = ElliottWaveAnalyzer(load_wave_config(args.config))
    system = FibonacciPivotSystem(load_engine_config(args.config))
    waves = load_waves(os.path.join(args.data_dir, "sample_waves.json"))

    report = analyze(candles_by_timeframe, waves, analyzer, system)
    output = json.dumps(report, indent=2)
    if args.output:
        with open(args.output, 'w') as f:
            f.write(output)
        logger.info(f"Report written to {args.output}")
    else:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
