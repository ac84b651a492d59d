"""
Elliott Wave Analyzer
Scores an existing Elliott Wave count against candle data:
- Per-wave probability, confidence, invalidation level and price targets
- Hard-rule validation with price-based, direction-aware checks
- Fibonacci relationships between waves
- Nested (sub-wave) decomposition down to a configured depth
"""

import copy
import logging
import math
import threading
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from wave_confluence.config import ElliottWaveConfig
from wave_confluence.indicators import TechnicalIndicators, candles_to_frame, clamp
from wave_confluence.models import (
    CORRECTIVE_SEQUENCE, IMPULSE_SEQUENCE, Candle, ElliottValidation,
    NestedWaveAnalysis, RelationshipKind, TargetKind, Wave, WaveDegree,
    WaveProbabilityScore, WaveRelationship, WaveTarget, WaveType,
)

logger = logging.getLogger(__name__)

FIBONACCI_RATIOS = [0.236, 0.382, 0.5, 0.618, 0.786, 1.0, 1.272, 1.618, 2.618]

# Probability blend
STRUCTURE_WEIGHT = 0.3
FIBONACCI_WEIGHT = 0.2
PRICE_ACTION_WEIGHT = 0.15
VOLUME_WEIGHT = 0.15
BASE_PROBABILITY = 0.2
VOLUME_CONTEXT_CANDLES = 50

MALFORMED_PENALTY = 0.5
SHORT_HISTORY_CANDLES = 10
SHORT_HISTORY_CONFIDENCE_CAP = 0.7


def nearest_fibonacci_ratio(ratio: float) -> float:
    return min(FIBONACCI_RATIOS, key=lambda r: abs(ratio - r))


def ratio_strength(ratio: float) -> float:
    """1.0 on a canonical Fibonacci ratio, falling with the relative deviation from the nearest one."""
    if not math.isfinite(ratio) or ratio <= 0:
        return 0.0
    nearest = nearest_fibonacci_ratio(ratio)
    return clamp(1 - abs(ratio - nearest) / nearest)


class ElliottWaveAnalyzer:
    """
    Scores and validates an Elliott Wave count.

    The analyzer keeps only its configuration. Every public call takes a
    snapshot of it under a lock, so `update_config` from another thread never
    affects a call that is already running.
    """

    def __init__(self, config: Optional[Union[ElliottWaveConfig, Dict]] = None):
        if config is None:
            config = ElliottWaveConfig()
        elif isinstance(config, dict):
            config = ElliottWaveConfig.from_dict(config)
        else:
            config = copy.deepcopy(config)
            config.validate()
        self._config = config
        self._lock = threading.RLock()
        self.indicators = TechnicalIndicators()
        logger.info("ElliottWaveAnalyzer initialized")

    # --- configuration ---

    def update_config(self, updates: Dict) -> None:
        """Merge a partial configuration; unknown fields raise ConfigurationError."""
        with self._lock:
            self._config = self._config.merged(updates)
        logger.info(f"ElliottWaveAnalyzer configuration updated: {sorted(updates)}")

    def get_config(self) -> ElliottWaveConfig:
        with self._lock:
            return copy.deepcopy(self._config)

    def _snapshot(self) -> ElliottWaveConfig:
        with self._lock:
            return self._config

    # --- public operations ---

    def calculate_wave_probabilities(self, waves: Sequence[Wave],
                                     candles: Sequence[Candle]) -> List[WaveProbabilityScore]:
        """
        Score every wave of a count.

        Args:
            waves: The wave count, in sequence order
            candles: Candles covering the count (ascending timestamps)

        Returns:
            One WaveProbabilityScore per wave, in input order
        """
        if not waves:
            return []
        frame = candles_to_frame(candles)
        atr = self._recent_atr(frame)
        context_score = self._market_context_score(frame)

        scores = []
        for index, wave in enumerate(waves):
            probability = self._wave_probability(wave, index, waves, frame)
            confidence = self._wave_confidence(wave, index, waves, len(frame), context_score)
            scores.append(WaveProbabilityScore(
                wave_id=wave.id,
                probability=probability,
                confidence=confidence,
                invalidation_level=self._invalidation_level(wave, waves, atr),
                next_targets=self._wave_targets(wave, index, waves),
            ))
            logger.debug(f"Wave {wave.id} ({wave.wave_type.value}): probability={probability:.3f}, "
                         f"confidence={confidence:.3f}")
        return scores

    def perform_nested_analysis(self, waves: Sequence[Wave],
                                candles: Sequence[Candle]) -> List[NestedWaveAnalysis]:
        """
        Decompose each wave into sub-waves from the local pivots inside its time bounds.

        Returns:
            One NestedWaveAnalysis per input wave. Waves spanning fewer than
            `min_wave_length` candles get an empty analysis.
        """
        config = self._snapshot()
        frame = candles_to_frame(candles)
        return [self._nested_analysis(wave, frame, config, level=1) for wave in waves]

    def calculate_invalidation_levels(self, waves: Sequence[Wave],
                                      candles: Sequence[Candle]) -> List[float]:
        """One invalidation price per wave, in input order."""
        frame = candles_to_frame(candles)
        atr = self._recent_atr(frame)
        return [self._invalidation_level(wave, waves, atr) for wave in waves]

    def analyze_wave_relationships(self, waves: Sequence[Wave]) -> List[WaveRelationship]:
        """
        Compare every pair of waves by length ratio (later / earlier).

        Returns:
            Relationships sorted by strength, strongest first
        """
        config = self._snapshot()
        relationships = []
        for i in range(len(waves) - 1):
            for j in range(i + 1, len(waves)):
                wave_a, wave_b = waves[i], waves[j]
                if not wave_a.length or not wave_b.length or wave_a.length <= 0 or wave_b.length <= 0:
                    continue
                ratio = wave_b.length / wave_a.length
                relationships.append(WaveRelationship(
                    wave_a=wave_a,
                    wave_b=wave_b,
                    fibonacci_ratio=ratio,
                    relationship=self._classify_relationship(ratio, config.fibonacci_tolerance),
                    strength=ratio_strength(ratio),
                ))
        relationships.sort(key=lambda r: r.strength, reverse=True)
        return relationships

    def validate_elliott_wave_rules(self, waves: Sequence[Wave]) -> ElliottValidation:
        """
        Check a count against the Elliott Wave hard rules and Fibonacci compliance.

        Hard rules:
            - waves follow each other in time without inversion
            - wave 2 never retraces more than 100% of wave 1
            - wave 3 is never the shortest of waves 1, 3 and 5
            - wave 4 never enters wave 1 price territory
            - wave 3 travels beyond the end of wave 1
        Soft rule:
            - more than half of consecutive length ratios sit on Fibonacci ratios

        Confidence is the share of rules passed, halved for every broken hard
        rule. The count is valid only when no hard rule is broken and
        confidence reaches `probability_threshold`.
        """
        config = self._snapshot()
        if not waves:
            return ElliottValidation(is_valid=False, violations=["No waves supplied for validation"],
                                     confidence=0.0)

        violations = []
        hard_violations = 0
        passed = 0
        total = 0

        def record(ok: bool, message: str, hard: bool = True):
            nonlocal passed, total, hard_violations
            total += 1
            if ok:
                passed += 1
                return
            violations.append(message)
            if hard:
                hard_violations += 1
            logger.debug(f"Rule violation: {message}")

        by_type = self._index_by_type(waves)
        wave1 = by_type.get(WaveType.WAVE_1)
        wave2 = by_type.get(WaveType.WAVE_2)
        wave3 = by_type.get(WaveType.WAVE_3)
        wave4 = by_type.get(WaveType.WAVE_4)
        wave5 = by_type.get(WaveType.WAVE_5)
        direction = self._structure_direction(waves)

        record(self._check_time_ordering(waves), "Waves are not in chronological order")

        if wave1 and wave2:
            retraces_past_origin = direction * (wave2.end_price - wave1.start_price) < 0
            record(not retraces_past_origin, "Wave 2 retraces more than 100% of wave 1")

        if wave1 and wave3 and wave5:
            record(wave3.length >= min(wave1.length, wave5.length), "Wave 3 is the shortest impulse wave")

        if wave1 and wave4:
            enters_territory = direction * (wave4.end_price - wave1.end_price) < 0
            record(not enters_territory, "Wave 4 enters the price territory of wave 1")

        if wave1 and wave3:
            record(direction * (wave3.end_price - wave1.end_price) > 0,
                   "Wave 3 does not travel beyond the end of wave 1")

        compliance = self._fibonacci_compliance(waves, config.fibonacci_tolerance)
        if compliance is not None:
            record(compliance > 0.5, f"Poor Fibonacci ratio compliance ({compliance:.0%})", hard=False)

        confidence = clamp(passed / total * (0.5 ** hard_violations)) if total else 0.0
        is_valid = hard_violations == 0 and confidence >= config.probability_threshold
        return ElliottValidation(is_valid=is_valid, violations=violations, confidence=confidence)

    # --- probability / confidence ---

    def _wave_probability(self, wave: Wave, index: int, waves: Sequence[Wave],
                          frame: pd.DataFrame) -> float:
        structure = self._structure_score(wave, waves)
        fibonacci = self._fibonacci_score(wave, index, waves)
        price_action = self._price_action_score(wave, frame)
        volume = self._volume_score(wave, frame)
        probability = (BASE_PROBABILITY + STRUCTURE_WEIGHT * structure + FIBONACCI_WEIGHT * fibonacci
                       + PRICE_ACTION_WEIGHT * price_action + VOLUME_WEIGHT * volume)
        if wave.is_malformed:
            probability *= MALFORMED_PENALTY
        return clamp(probability)

    def _wave_confidence(self, wave: Wave, index: int, waves: Sequence[Wave],
                         candle_count: int, context_score: float) -> float:
        position = max(1 - abs(index / len(waves) - 0.5) * 2, 0.3)
        confidence = 0.3 + 0.3 * min(candle_count / 50, 1) + 0.2 * position + 0.2 * context_score
        if candle_count < SHORT_HISTORY_CANDLES:
            confidence = min(confidence, SHORT_HISTORY_CONFIDENCE_CAP)
        if wave.is_malformed:
            confidence *= MALFORMED_PENALTY
        return clamp(confidence)

    def _structure_score(self, wave: Wave, waves: Sequence[Wave]) -> float:
        by_type = self._index_by_type(waves)
        wave1 = by_type.get(WaveType.WAVE_1)
        direction = self._structure_direction(waves)

        if wave.wave_type == WaveType.WAVE_3:
            others = [by_type[t].length for t in (WaveType.WAVE_1, WaveType.WAVE_5) if t in by_type]
            if not others:
                return 0.7
            if wave.length >= max(others):
                return 1.0
            if wave.length > min(others):
                return 0.6
            return 0.0

        if wave.wave_type == WaveType.WAVE_2:
            if not wave1 or not wave1.length:
                return 0.5
            if direction * (wave.end_price - wave1.start_price) < 0:
                return 0.0
            retracement = wave.length / wave1.length
            if 0.382 <= retracement <= 0.786:
                return 1.0
            return 0.7

        if wave.wave_type == WaveType.WAVE_4:
            wave2 = by_type.get(WaveType.WAVE_2)
            if wave1 and direction * (wave.end_price - wave1.end_price) < 0:
                return 0.1
            score = 0.8 if wave1 else 0.5
            if wave2 and max(wave2.duration, wave.duration) > 0:
                alternation = abs(wave2.duration - wave.duration) / max(wave2.duration, wave.duration)
                if alternation > 0.3:
                    score += 0.2
            return score

        if wave.wave_type == WaveType.WAVE_5:
            wave3 = by_type.get(WaveType.WAVE_3)
            if not wave3:
                return 0.6
            # A wave 5 that fails to pass wave 3 is a truncation
            return 1.0 if direction * (wave.end_price - wave3.end_price) > 0 else 0.5

        if wave.wave_type == WaveType.WAVE_1:
            return 0.7 if wave.direction != 0 else 0.0

        if wave.wave_type == WaveType.C:
            wave_a = by_type.get(WaveType.A)
            if wave_a and wave_a.length:
                return clamp(0.6 + 0.4 * ratio_strength(wave.length / wave_a.length))
        return 0.6

    def _fibonacci_score(self, wave: Wave, index: int, waves: Sequence[Wave]) -> float:
        """Average closeness of this wave's length to Fibonacci multiples of the preceding waves."""
        previous = [w.length for w in waves[:index] if w.length and w.length > 0]
        if not previous or not wave.length:
            return 0.5
        return float(np.mean([ratio_strength(wave.length / length) for length in previous]))

    def _price_action_score(self, wave: Wave, frame: pd.DataFrame) -> float:
        """Directional consistency of closes inside the wave and how well the candles reach its end price."""
        window = self._wave_window(wave, frame)
        if len(window) < 3 or wave.direction == 0 or not wave.length:
            return 0.5
        closes = window['close'].to_numpy(dtype=float)
        consistency = float(np.mean(np.sign(np.diff(closes)) == wave.direction))
        extreme = window['high'].max() if wave.direction > 0 else window['low'].min()
        boundary = clamp(1 - abs(extreme - wave.end_price) / wave.length)
        return clamp(0.6 * consistency + 0.4 * boundary)

    def _volume_score(self, wave: Wave, frame: pd.DataFrame) -> float:
        """
        Wave volume against the average of the last 50 candles.

        Impulse waves score higher on expanding volume (full marks at 1.5x the
        average), corrective waves on contracting volume.
        """
        window = self._wave_window(wave, frame)
        if window.empty:
            return 0.5
        context = float(frame['volume'].tail(VOLUME_CONTEXT_CANDLES).mean())
        if context <= 0:
            return 0.5
        ratio = float(window['volume'].mean()) / context
        if wave.wave_type.is_impulse:
            return min(ratio / 1.5, 1.0)
        return min(1.5 / ratio, 1.0) if ratio > 0 else 1.0

    def _market_context_score(self, frame: pd.DataFrame) -> float:
        if frame.empty:
            return 0.5
        volatility = self.indicators.calculate_volatility(frame['close'], period=20)
        return max(1 - volatility, 0.3)

    # --- invalidation and targets ---

    def _recent_atr(self, frame: pd.DataFrame) -> float:
        if frame.empty:
            return 0.0
        recent = frame.tail(14)
        atr = self.indicators.calculate_atr(recent['high'], recent['low'], recent['close'], period=14)
        value = float(atr.iloc[-1])
        return value if math.isfinite(value) else 0.0

    def _invalidation_level(self, wave: Wave, waves: Sequence[Wave], atr: float) -> float:
        by_type = self._index_by_type(waves)
        wave1 = by_type.get(WaveType.WAVE_1)
        direction = self._structure_direction(waves)
        buffer = max(0.5 * atr, 0.01 * (wave.length or 0.0), 0.0005 * abs(wave.start_price))

        if wave.wave_type == WaveType.WAVE_1:
            level = wave.start_price - direction * buffer
        elif wave.wave_type == WaveType.WAVE_2:
            # Wave 2 may not move past the origin of wave 1
            origin = wave1.start_price if wave1 else wave.end_price
            level = origin - direction * buffer
        elif wave.wave_type == WaveType.WAVE_4:
            if wave1:
                level = wave1.end_price + direction * 0.1 * buffer
            else:
                level = wave.start_price - direction * buffer
        elif wave.wave_type in (WaveType.WAVE_3, WaveType.WAVE_5):
            level = wave.start_price - direction * buffer
        else:
            own_direction = wave.direction or 1
            level = wave.start_price - own_direction * buffer

        return level if math.isfinite(level) else wave.start_price

    def _wave_targets(self, wave: Wave, index: int, waves: Sequence[Wave]) -> List[WaveTarget]:
        targets = []
        direction = wave.direction or self._structure_direction(waves)
        by_type = self._index_by_type(waves)

        reference = waves[index - 1] if index > 0 else wave
        if len(waves) >= 2 and reference.length:
            for ratio, probability in ((1.618, 0.8), (1.272, 0.7), (2.618, 0.55)):
                targets.append(WaveTarget(
                    price=wave.start_price + direction * reference.length * ratio,
                    probability=probability,
                    kind=TargetKind.FIB_EXTENSION,
                    description=f"{ratio * 100:.1f}% Fibonacci extension of wave {reference.wave_type.value}",
                ))

        if wave.length:
            for ratio, probability in ((0.618, 0.65), (0.382, 0.6)):
                targets.append(WaveTarget(
                    price=wave.end_price - direction * wave.length * ratio,
                    probability=probability,
                    kind=TargetKind.FIB_RETRACEMENT,
                    description=f"{ratio * 100:.1f}% retracement of wave {wave.wave_type.value}",
                ))

        wave1 = by_type.get(WaveType.WAVE_1)
        if len(waves) >= 3 and wave1 and wave1 is not wave and wave1.length:
            targets.append(WaveTarget(
                price=wave.start_price + direction * wave1.length,
                probability=0.7,
                kind=TargetKind.WAVE_EQUALITY,
                description="Wave equality with wave 1",
            ))

        projection = self._channel_projection(wave, by_type)
        if projection is not None:
            targets.append(projection)

        targets.sort(key=lambda t: t.probability, reverse=True)
        return targets

    @staticmethod
    def _channel_projection(wave: Wave, by_type: Dict[WaveType, Wave]) -> Optional[WaveTarget]:
        """
        Project wave 3 from the 0-2 trendline, or wave 5 from the 2-4 trendline,
        drawing the parallel through the opposite extreme.
        """
        if wave.wave_type == WaveType.WAVE_3 and WaveType.WAVE_1 in by_type and WaveType.WAVE_2 in by_type:
            wave1, wave2 = by_type[WaveType.WAVE_1], by_type[WaveType.WAVE_2]
            base = ((wave1.start_time, wave1.start_price), (wave2.end_time, wave2.end_price))
            anchor = (wave1.end_time, wave1.end_price)
            label = "0-2"
        elif wave.wave_type == WaveType.WAVE_5 and WaveType.WAVE_2 in by_type and WaveType.WAVE_4 in by_type \
                and WaveType.WAVE_3 in by_type:
            wave2, wave3, wave4 = by_type[WaveType.WAVE_2], by_type[WaveType.WAVE_3], by_type[WaveType.WAVE_4]
            base = ((wave2.end_time, wave2.end_price), (wave4.end_time, wave4.end_price))
            anchor = (wave3.end_time, wave3.end_price)
            label = "2-4"
        else:
            return None

        (t0, p0), (t1, p1) = base
        if t1 == t0:
            return None
        slope = (p1 - p0) / (t1 - t0)
        price = anchor[1] + slope * (wave.end_time - anchor[0])
        if not math.isfinite(price):
            return None
        return WaveTarget(
            price=price,
            probability=0.6,
            kind=TargetKind.CHANNEL_PROJECTION,
            description=f"Parallel of the {label} trendline",
        )

    # --- nested analysis ---

    def _nested_analysis(self, wave: Wave, frame: pd.DataFrame, config: ElliottWaveConfig,
                         level: int) -> NestedWaveAnalysis:
        window = self._wave_window(wave, frame)
        if len(window) < config.min_wave_length:
            return NestedWaveAnalysis(parent_wave=wave, sub_waves=[], completeness=0.0, probability=0.0)

        sub_waves = self._identify_sub_waves(wave, window)
        completeness = clamp(len(sub_waves) / wave.wave_type.expected_sub_waves)
        probability = self._nested_probability(sub_waves, completeness, window, config)

        children = []
        if level < config.degree_analysis_depth and wave.degree != WaveDegree.SUBMINUETTE:
            for sub_wave in sub_waves:
                child = self._nested_analysis(sub_wave, frame, config, level + 1)
                if child.sub_waves:
                    children.append(child)

        logger.debug(f"Nested analysis of {wave.id}: {len(sub_waves)} sub-waves, "
                     f"completeness={completeness:.2f}, {len(children)} children")
        return NestedWaveAnalysis(parent_wave=wave, sub_waves=sub_waves, completeness=completeness,
                                  probability=probability, children=children)

    def _identify_sub_waves(self, wave: Wave, window: pd.DataFrame) -> List[Wave]:
        """
        Build a zigzag from the wave's start, through alternating pivots, to its end.
        """
        direction = wave.direction or 1
        swing_window = max(2, len(window) // 20)
        high_idx, low_idx = self.indicators.find_swing_points(window['high'], window['low'], window=swing_window)

        timestamps = window['timestamp'].to_numpy()
        pivots = [(int(timestamps[i]), float(window['high'].iloc[i]), 'high') for i in high_idx]
        pivots += [(int(timestamps[i]), float(window['low'].iloc[i]), 'low') for i in low_idx]
        pivots = [p for p in pivots if wave.start_time < p[0] < wave.end_time]
        pivots.sort(key=lambda p: p[0])

        start_kind = 'low' if direction > 0 else 'high'
        end_kind = 'high' if direction > 0 else 'low'
        points = [(wave.start_time, wave.start_price, start_kind, True)]
        for time, price, kind in pivots:
            points.append((time, price, kind, False))
        points.append((wave.end_time, wave.end_price, end_kind, True))

        zigzag = []
        for point in points:
            if zigzag and zigzag[-1][2] == point[2]:
                previous = zigzag[-1]
                if previous[3]:
                    continue
                more_extreme = point[1] > previous[1] if point[2] == 'high' else point[1] < previous[1]
                if point[3] or more_extreme:
                    zigzag[-1] = point
                continue
            zigzag.append(point)

        sequence = IMPULSE_SEQUENCE if wave.wave_type.is_impulse else CORRECTIVE_SEQUENCE
        sub_degree = wave.degree.lower()
        sub_waves = []
        for i in range(len(zigzag) - 1):
            start, end = zigzag[i], zigzag[i + 1]
            if end[0] <= start[0]:
                continue
            sub_waves.append(Wave(
                id=f"{wave.id}_sub_{len(sub_waves) + 1}",
                wave_type=sequence[len(sub_waves) % len(sequence)],
                degree=sub_degree,
                start_price=start[1],
                end_price=end[1],
                start_time=start[0],
                end_time=end[0],
                is_derived=True,
            ))
        return sub_waves

    def _nested_probability(self, sub_waves: List[Wave], completeness: float, window: pd.DataFrame,
                            config: ElliottWaveConfig) -> float:
        if not sub_waves:
            return 0.0
        quality = float(np.mean([self._price_action_score(w, window) for w in sub_waves]))
        compliance = self._fibonacci_compliance(sub_waves, config.fibonacci_tolerance)
        if compliance is None:
            compliance = 0.5
        return clamp(0.3 + 0.3 * completeness + 0.2 * quality + 0.2 * compliance)

    # --- helpers ---

    @staticmethod
    def _classify_relationship(ratio: float, tolerance: float) -> RelationshipKind:
        if abs(ratio - 1.0) <= tolerance:
            return RelationshipKind.EQUALITY
        if any(abs(ratio - r) <= tolerance for r in FIBONACCI_RATIOS):
            return RelationshipKind.FIBONACCI
        return RelationshipKind.EXTENSION

    @staticmethod
    def _fibonacci_compliance(waves: Sequence[Wave], tolerance: float) -> Optional[float]:
        """Share of consecutive length ratios within tolerance of a Fibonacci ratio (None if no pairs)."""
        ratios = [b.length / a.length for a, b in zip(waves, waves[1:])
                  if a.length and a.length > 0 and b.length and b.length > 0]
        if not ratios:
            return None
        compliant = sum(1 for r in ratios if any(abs(r - f) <= tolerance for f in FIBONACCI_RATIOS))
        return compliant / len(ratios)

    @staticmethod
    def _check_time_ordering(waves: Sequence[Wave]) -> bool:
        for wave in waves:
            if wave.start_time >= wave.end_time:
                return False
        for previous, current in zip(waves, waves[1:]):
            if current.start_time < previous.end_time:
                return False
        return True

    @staticmethod
    def _index_by_type(waves: Sequence[Wave]) -> Dict[WaveType, Wave]:
        by_type = {}
        for wave in waves:
            by_type.setdefault(wave.wave_type, wave)
        return by_type

    @staticmethod
    def _structure_direction(waves: Sequence[Wave]) -> int:
        """+1 for a bullish count, -1 for a bearish one, taken from wave 1 when present."""
        for wave in waves:
            if wave.wave_type == WaveType.WAVE_1 and wave.direction:
                return wave.direction
        for wave in waves:
            if wave.direction:
                return wave.direction if wave.wave_type.is_impulse else -wave.direction
        return 1

    @staticmethod
    def _wave_window(wave: Wave, frame: pd.DataFrame) -> pd.DataFrame:
        if frame.empty:
            return frame
        mask = (frame['timestamp'] >= wave.start_time) & (frame['timestamp'] <= wave.end_time)
        return frame.loc[mask]
