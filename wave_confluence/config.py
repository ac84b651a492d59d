"""
Configuration for the wave analyzer and the Fibonacci/pivot confluence system.

Both engines take an explicit configuration object. Partial updates arrive as
plain dicts (from the API layer or a YAML file) and are merged section by
section; unknown sections or fields raise ConfigurationError.
"""

import copy
import logging
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional

import yaml

from wave_confluence.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _matches_kind(value, reference) -> bool:
    """True when `value` has the same kind as the field default `reference`."""
    if isinstance(reference, bool):
        return isinstance(value, bool)
    if isinstance(reference, int):
        return isinstance(value, int) and not isinstance(value, bool)
    if isinstance(reference, float):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if isinstance(reference, list):
        if not isinstance(value, (list, tuple)):
            return False
        element = reference[0] if reference else None
        return element is None or all(_matches_kind(item, element) for item in value)
    return isinstance(value, type(reference))


def _merge_dataclass(instance, updates: Dict[str, Any], section: str):
    """Return a copy of `instance` with `updates` applied; validates field names and value types."""
    if updates is None:
        return copy.deepcopy(instance)
    if not isinstance(updates, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping, got {type(updates).__name__}")

    known = {f.name for f in fields(instance)}
    unknown = sorted(set(updates) - known)
    if unknown:
        raise ConfigurationError(f"Unknown field(s) in '{section}': {', '.join(unknown)}")

    defaults = type(instance)()
    for key, value in updates.items():
        default = getattr(defaults, key)
        if not _matches_kind(value, default):
            kind = "a list" if isinstance(default, list) else type(default).__name__
            raise ConfigurationError(f"Field '{key}' in '{section}' must be {kind}, got {value!r}")

    merged = copy.deepcopy(instance)
    for key, value in updates.items():
        setattr(merged, key, list(value) if isinstance(value, tuple) else copy.deepcopy(value))
    merged.validate()
    return merged


def _require(condition: bool, message: str):
    if not condition:
        raise ConfigurationError(message)


@dataclass
class ElliottWaveConfig:
    min_wave_length: int = 5            # candles needed inside a wave before it is subdivided
    max_wave_length: int = 100
    fibonacci_tolerance: float = 0.05   # absolute tolerance for ratio matching
    probability_threshold: float = 0.6  # validation confidence below this is invalid
    degree_analysis_depth: int = 3      # recursion depth for nested analysis

    def validate(self):
        _require(self.min_wave_length >= 2, "min_wave_length must be >= 2")
        _require(self.max_wave_length >= self.min_wave_length,
                 "max_wave_length must be >= min_wave_length")
        _require(0 < self.fibonacci_tolerance < 1, "fibonacci_tolerance must be in (0, 1)")
        _require(0 <= self.probability_threshold <= 1, "probability_threshold must be in [0, 1]")
        _require(self.degree_analysis_depth >= 0, "degree_analysis_depth must be >= 0")

    def merged(self, updates: Optional[Dict[str, Any]]) -> 'ElliottWaveConfig':
        return _merge_dataclass(self, updates, 'elliott_wave')

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ElliottWaveConfig':
        return cls().merged(data or {})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FibonacciSettings:
    retracement_levels: List[float] = field(default_factory=lambda: [0.236, 0.382, 0.5, 0.618, 0.786])
    extension_levels: List[float] = field(default_factory=lambda: [1.272, 1.618, 2.618])
    confluence_threshold: float = 0.01
    dynamic_adjustment: bool = True

    def validate(self):
        _require(all(r > 0 for r in self.retracement_levels), "retracement_levels must be positive")
        _require(all(r > 0 for r in self.extension_levels), "extension_levels must be positive")
        _require(self.confluence_threshold >= 0, "confluence_threshold must be >= 0")


@dataclass
class PivotChannelSettings:
    lookback_period: int = 50
    min_touches: int = 3
    channel_width: float = 0.02        # touch tolerance as a fraction of price
    trend_analysis_depth: int = 20

    def validate(self):
        _require(self.lookback_period >= 3, "lookback_period must be >= 3")
        _require(self.min_touches >= 1, "min_touches must be >= 1")
        _require(self.channel_width > 0, "channel_width must be > 0")
        _require(self.trend_analysis_depth >= 2, "trend_analysis_depth must be >= 2")


@dataclass
class ConfluenceZoneSettings:
    min_factors: int = 2
    price_tolerance_percent: float = 1.0
    volume_weighting: bool = True
    timeframe_weighting: bool = True

    def validate(self):
        _require(self.min_factors >= 1, "min_factors must be >= 1")
        _require(self.price_tolerance_percent > 0, "price_tolerance_percent must be > 0")


@dataclass
class MultiTimeframeSettings:
    timeframes: List[str] = field(default_factory=lambda: ['1h', '4h', '1d'])
    consensus_threshold: float = 0.7
    weighting_scheme: str = 'higher_priority'

    def validate(self):
        _require(0 <= self.consensus_threshold <= 1, "consensus_threshold must be in [0, 1]")
        _require(self.weighting_scheme in ('higher_priority', 'equal'),
                 "weighting_scheme must be 'higher_priority' or 'equal'")


@dataclass
class BreakoutSettings:
    volume_threshold: float = 1.5      # multiple of the recent average volume
    price_threshold: float = 0.02      # penetration (fraction of price) for full strength
    confirmation_candles: int = 3

    def validate(self):
        _require(self.volume_threshold > 0, "volume_threshold must be > 0")
        _require(self.price_threshold > 0, "price_threshold must be > 0")
        _require(self.confirmation_candles >= 1, "confirmation_candles must be >= 1")


_ENGINE_SECTIONS = {
    'fibonacci': FibonacciSettings,
    'pivot_channels': PivotChannelSettings,
    'confluence_zones': ConfluenceZoneSettings,
    'multi_timeframe': MultiTimeframeSettings,
    'breakout_detection': BreakoutSettings,
}


@dataclass
class EngineConfig:
    fibonacci: FibonacciSettings = field(default_factory=FibonacciSettings)
    pivot_channels: PivotChannelSettings = field(default_factory=PivotChannelSettings)
    confluence_zones: ConfluenceZoneSettings = field(default_factory=ConfluenceZoneSettings)
    multi_timeframe: MultiTimeframeSettings = field(default_factory=MultiTimeframeSettings)
    breakout_detection: BreakoutSettings = field(default_factory=BreakoutSettings)

    def validate(self):
        for name in _ENGINE_SECTIONS:
            getattr(self, name).validate()

    def merged(self, updates: Optional[Dict[str, Any]]) -> 'EngineConfig':
        """
        Merge a partial update section by section.

        Sections absent from `updates` keep their existing objects, so callers
        holding a previous snapshot see those sections unchanged.
        """
        if not updates:
            return copy.copy(self)
        unknown = sorted(set(updates) - set(_ENGINE_SECTIONS))
        if unknown:
            raise ConfigurationError(f"Unknown configuration section(s): {', '.join(unknown)}")

        result = copy.copy(self)
        for name, section_updates in updates.items():
            setattr(result, name, _merge_dataclass(getattr(self, name), section_updates, name))
        return result

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EngineConfig':
        config = cls().merged(data or {})
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"{path} not found. Using default configuration values.")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Error loading {path}: {e}. Using default configuration values.")
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_engine_config(path: str = "config.yaml") -> EngineConfig:
    """Load the `fibonacci_pivot` section of a YAML file into an EngineConfig."""
    data = _read_yaml(path)
    return EngineConfig.from_dict(data.get('fibonacci_pivot'))


def load_wave_config(path: str = "config.yaml") -> ElliottWaveConfig:
    """Load the `elliott_wave` section of a YAML file into an ElliottWaveConfig."""
    data = _read_yaml(path)
    return ElliottWaveConfig.from_dict(data.get('elliott_wave'))
