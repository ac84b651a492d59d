"""
Test suite for the wave analyzer: probabilities, invalidation levels,
relationships, targets and nested analysis.
"""

from dataclasses import replace

import pytest

from wave_confluence.config import ElliottWaveConfig
from wave_confluence.exceptions import ConfigurationError
from wave_confluence.models import RelationshipKind, TargetKind, Wave, WaveDegree, WaveType
from wave_confluence.wave_analyzer import ElliottWaveAnalyzer

from conftest import DAY_MS, START_MS, make_wave


@pytest.fixture
def analyzer():
    return ElliottWaveAnalyzer()


def test_empty_waves_give_empty_scores(analyzer, random_candles):
    assert analyzer.calculate_wave_probabilities([], random_candles(20)) == []


def test_probability_scores_follow_structure(analyzer, mock_waves, wave_path_candles):
    """Valid wave 3 scores above 0.5 and valid wave 2 above 0.3."""
    candles = wave_path_candles(mock_waves)
    scores = analyzer.calculate_wave_probabilities(mock_waves, candles)

    assert [s.wave_id for s in scores] == [w.id for w in mock_waves], "Scores must be 1:1 and in order"
    by_id = {s.wave_id: s for s in scores}
    assert by_id['wave_3'].probability > 0.5, f"Wave 3 probability {by_id['wave_3'].probability}"
    assert by_id['wave_2'].probability > 0.3, f"Wave 2 probability {by_id['wave_2'].probability}"
    for score in scores:
        assert 0.0 <= score.probability <= 1.0
        assert 0.0 <= score.confidence <= 1.0


def _scale_volume(candles, wave, factor):
    return [replace(c, volume=c.volume * factor) if wave.start_time <= c.timestamp <= wave.end_time else c
            for c in candles]


def test_volume_expansion_favours_impulse_waves(analyzer, mock_waves, wave_path_candles):
    candles = wave_path_candles(mock_waves)
    wave2, wave3 = mock_waves[1], mock_waves[2]
    base = {s.wave_id: s.probability for s in analyzer.calculate_wave_probabilities(mock_waves, candles)}

    loud_impulse = analyzer.calculate_wave_probabilities(mock_waves, _scale_volume(candles, wave3, 5))
    assert loud_impulse[2].probability > base['wave_3'], "Heavy volume should support wave 3"

    loud_correction = analyzer.calculate_wave_probabilities(mock_waves, _scale_volume(candles, wave2, 5))
    assert loud_correction[1].probability < base['wave_2'], "Heavy volume should count against wave 2"


def test_confidence_capped_with_short_history(analyzer, mock_waves, candle_factory):
    candles = candle_factory([100, 110, 120, 115, 130])
    scores = analyzer.calculate_wave_probabilities(mock_waves, candles)
    assert all(s.confidence < 0.8 for s in scores), "Fewer than 10 candles must keep confidence below 0.8"


def test_malformed_wave_is_penalised(analyzer, mock_waves, wave_path_candles):
    candles = wave_path_candles(mock_waves)
    clean = analyzer.calculate_wave_probabilities(mock_waves, candles)[0]

    broken = list(mock_waves)
    broken[0] = make_wave('wave_1', WaveType.WAVE_1, -100, 120, START_MS, START_MS + DAY_MS)
    degraded = analyzer.calculate_wave_probabilities(broken, candles)[0]

    assert degraded.probability < clean.probability, "Negative start price should lower the probability"


def test_invalidation_levels_bullish(analyzer, mock_waves, wave_path_candles):
    candles = wave_path_candles(mock_waves)
    levels = analyzer.calculate_invalidation_levels(mock_waves, candles)

    assert len(levels) == len(mock_waves), "Invalidation levels must be 1:1 with waves"
    wave1, wave2, _, wave4, _ = mock_waves
    assert levels[0] < wave1.start_price, "Wave 1 is invalidated below its own start"
    assert levels[1] < wave1.start_price, "Wave 2 is invalidated below the origin of wave 1"
    assert levels[3] >= wave1.end_price, "Wave 4 may not enter wave 1 territory"


def test_invalidation_levels_bearish_mirror(analyzer):
    waves = [
        make_wave('b1', WaveType.WAVE_1, 200, 180, START_MS, START_MS + DAY_MS),
        make_wave('b2', WaveType.WAVE_2, 180, 192, START_MS + DAY_MS, START_MS + 2 * DAY_MS),
        make_wave('b3', WaveType.WAVE_3, 192, 150, START_MS + 2 * DAY_MS, START_MS + 3 * DAY_MS),
        make_wave('b4', WaveType.WAVE_4, 150, 170, START_MS + 3 * DAY_MS, START_MS + 4 * DAY_MS),
    ]
    levels = analyzer.calculate_invalidation_levels(waves, [])

    assert levels[0] > 200, "Bearish wave 1 is invalidated above its start"
    assert levels[1] > 200, "Bearish wave 2 is invalidated above wave 1's origin"
    assert levels[3] <= 180, "Bearish wave 4 may not rise into wave 1 territory"


def test_fibonacci_tolerance_is_absolute(analyzer):
    waves = [
        make_wave('a', WaveType.WAVE_1, 100, 110, START_MS, START_MS + DAY_MS),
        make_wave('b', WaveType.WAVE_3, 110, 137, START_MS + DAY_MS, START_MS + 2 * DAY_MS),
    ]
    # 2.7 is within 5 % of 2.618 but more than 0.05 away from it
    assert analyzer.analyze_wave_relationships(waves)[0].relationship == RelationshipKind.EXTENSION

    loose = ElliottWaveAnalyzer({'fibonacci_tolerance': 0.1})
    assert loose.analyze_wave_relationships(waves)[0].relationship == RelationshipKind.FIBONACCI


def test_fibonacci_relationship_golden_ratio(analyzer):
    """Lengths 20 and 32 relate by ~1.6 which is a Fibonacci relationship."""
    waves = [
        make_wave('a', WaveType.WAVE_1, 100, 120, START_MS, START_MS + DAY_MS),
        make_wave('b', WaveType.WAVE_3, 110, 142, START_MS + DAY_MS, START_MS + 2 * DAY_MS),
    ]
    relationships = analyzer.analyze_wave_relationships(waves)

    assert len(relationships) == 1
    rel = relationships[0]
    assert rel.relationship == RelationshipKind.FIBONACCI
    assert rel.fibonacci_ratio == pytest.approx(1.6)
    assert rel.strength == pytest.approx(1.0, abs=0.02)


def test_relationships_sorted_and_skip_zero_length(analyzer, mock_waves):
    flat = make_wave('flat', WaveType.B, 130, 130, START_MS + 6 * DAY_MS, START_MS + 7 * DAY_MS)
    relationships = analyzer.analyze_wave_relationships(mock_waves + [flat])

    assert len(relationships) == 10, "Zero-length waves must not form relationships"
    strengths = [r.strength for r in relationships]
    assert strengths == sorted(strengths, reverse=True), "Relationships must be sorted by strength"
    assert all(r.fibonacci_ratio > 0 for r in relationships)


def test_equality_relationship(analyzer):
    waves = [
        make_wave('a', WaveType.WAVE_1, 100, 120, START_MS, START_MS + DAY_MS),
        make_wave('c', WaveType.WAVE_5, 125, 145, START_MS + DAY_MS, START_MS + 2 * DAY_MS),
    ]
    assert analyzer.analyze_wave_relationships(waves)[0].relationship == RelationshipKind.EQUALITY


def test_targets_are_sorted_and_typed(analyzer, mock_waves, wave_path_candles):
    scores = analyzer.calculate_wave_probabilities(mock_waves, wave_path_candles(mock_waves))
    wave5_targets = scores[4].next_targets

    kinds = {t.kind for t in wave5_targets}
    assert TargetKind.FIB_EXTENSION in kinds
    assert TargetKind.WAVE_EQUALITY in kinds
    assert TargetKind.CHANNEL_PROJECTION in kinds, "Wave 5 should get a 2-4 channel projection"
    probabilities = [t.probability for t in wave5_targets]
    assert probabilities == sorted(probabilities, reverse=True)


def test_nested_analysis_builds_derived_sub_waves(analyzer, mock_waves, wave_path_candles):
    candles = wave_path_candles(mock_waves)
    analyses = analyzer.perform_nested_analysis(mock_waves, candles)

    assert len(analyses) == len(mock_waves), "One nested analysis per parent wave"
    for analysis in analyses:
        parent = analysis.parent_wave
        assert 0.0 <= analysis.completeness <= 1.0
        assert analysis.sub_waves, f"{parent.id} spans 24 candles and should have sub-waves"
        for sub in analysis.sub_waves:
            assert sub.is_derived
            assert sub.degree == WaveDegree.MINUTE, "Sub-waves are one degree lower"
            assert parent.start_time <= sub.start_time < sub.end_time <= parent.end_time
        assert analysis.sub_waves[0].start_price == parent.start_price
        assert analysis.sub_waves[-1].end_price == parent.end_price


def test_nested_analysis_short_wave_is_empty(analyzer, candle_factory):
    wave = make_wave('w', WaveType.WAVE_1, 100, 110, START_MS, START_MS + 2 * 60 * 60 * 1000)
    analysis = analyzer.perform_nested_analysis([wave], candle_factory([100, 104, 110]))[0]

    assert analysis.sub_waves == []
    assert analysis.completeness == 0.0
    assert analysis.probability == 0.0


def test_nested_analysis_depth_is_bounded(mock_waves, wave_path_candles):
    candles = wave_path_candles(mock_waves)
    shallow = ElliottWaveAnalyzer({'degree_analysis_depth': 1})
    analyses = shallow.perform_nested_analysis(mock_waves, candles)
    assert all(a.children == [] for a in analyses), "Depth 1 must not recurse"

    def depth(analysis):
        return 1 + max((depth(c) for c in analysis.children), default=0)

    deep = ElliottWaveAnalyzer({'degree_analysis_depth': 3, 'min_wave_length': 3})
    for analysis in deep.perform_nested_analysis(mock_waves, candles):
        assert depth(analysis) <= 3


def test_update_config_merges_and_get_config_copies(analyzer):
    analyzer.update_config({'fibonacci_tolerance': 0.02})
    config = analyzer.get_config()
    assert config.fibonacci_tolerance == 0.02
    assert config.min_wave_length == ElliottWaveConfig().min_wave_length

    config.fibonacci_tolerance = 0.5
    assert analyzer.get_config().fibonacci_tolerance == 0.02, "get_config must return a copy"

    with pytest.raises(ConfigurationError):
        analyzer.update_config({'no_such_field': 1})


def test_wave_accepts_string_labels():
    wave = Wave(id='x', wave_type='3', degree='Minor', start_price=1, end_price=3, start_time=0, end_time=10)
    assert wave.wave_type == WaveType.WAVE_3
    assert wave.degree == WaveDegree.MINOR
    assert wave.length == 2
    assert wave.to_dict()['wave_type'] == '3'
