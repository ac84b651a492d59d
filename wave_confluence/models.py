"""
Core data model for the wave and confluence engines.

Every analysis result is a plain dataclass created fresh per call. Closed
string unions from the trading platform (wave types, degrees, level kinds...)
are str-valued Enums so they serialise to the same strings the API layer
already broadcasts.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


def _to_primitive(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, SerializableMixin):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_to_primitive(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_primitive(v) for k, v in value.items()}
    return value


class SerializableMixin:
    """Adds a JSON-ready to_dict() to dataclasses (enums become their values)."""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _to_primitive(getattr(self, f.name)) for f in fields(self)}


# --- Enumerations ---

class WaveType(str, Enum):
    WAVE_1 = '1'
    WAVE_2 = '2'
    WAVE_3 = '3'
    WAVE_4 = '4'
    WAVE_5 = '5'
    A = 'A'
    B = 'B'
    C = 'C'
    W = 'W'
    X = 'X'
    Y = 'Y'
    Z = 'Z'

    @property
    def is_impulse(self) -> bool:
        return self in (WaveType.WAVE_1, WaveType.WAVE_3, WaveType.WAVE_5)

    @property
    def expected_sub_waves(self) -> int:
        # Motive waves subdivide into five, everything else into three
        return 5 if self.is_impulse else 3


IMPULSE_SEQUENCE = [WaveType.WAVE_1, WaveType.WAVE_2, WaveType.WAVE_3, WaveType.WAVE_4, WaveType.WAVE_5]
CORRECTIVE_SEQUENCE = [WaveType.A, WaveType.B, WaveType.C]


class WaveDegree(str, Enum):
    SUBMINUETTE = 'subminuette'
    MINUETTE = 'minuette'
    MINUTE = 'minute'
    MINOR = 'minor'
    INTERMEDIATE = 'intermediate'
    PRIMARY = 'primary'
    CYCLE = 'cycle'
    SUPERCYCLE = 'supercycle'
    GRAND_SUPERCYCLE = 'grand_supercycle'

    @property
    def rank(self) -> int:
        return list(WaveDegree).index(self)

    def lower(self) -> 'WaveDegree':
        """Next smaller degree (subminuette is the floor)."""
        degrees = list(WaveDegree)
        return degrees[max(0, self.rank - 1)]


class TargetKind(str, Enum):
    FIB_EXTENSION = 'fib_extension'
    FIB_RETRACEMENT = 'fib_retracement'
    WAVE_EQUALITY = 'wave_equality'
    CHANNEL_PROJECTION = 'channel_projection'


class RelationshipKind(str, Enum):
    EQUALITY = 'equality'
    FIBONACCI = 'fibonacci'
    EXTENSION = 'extension'


class LevelKind(str, Enum):
    RETRACEMENT = 'retracement'
    EXTENSION = 'extension'


class FactorKind(str, Enum):
    FIBONACCI = 'fibonacci'
    SUPPORT_RESISTANCE = 'support_resistance'
    ELLIOTT_WAVE = 'elliott_wave'
    PATTERN = 'pattern'
    INDICATOR = 'indicator'


class ZoneKind(str, Enum):
    SUPPORT = 'support'
    RESISTANCE = 'resistance'
    REVERSAL = 'reversal'


class MarketBias(str, Enum):
    BULLISH = 'bullish'
    BEARISH = 'bearish'
    NEUTRAL = 'neutral'


class TrendDirection(str, Enum):
    BULLISH = 'bullish'
    BEARISH = 'bearish'
    SIDEWAYS = 'sideways'


class MarketPhase(str, Enum):
    ACCUMULATION = 'accumulation'
    MARKUP = 'markup'
    DISTRIBUTION = 'distribution'
    MARKDOWN = 'markdown'


class VolumeRegime(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'


class ChannelDirection(str, Enum):
    ASCENDING = 'ascending'
    DESCENDING = 'descending'
    HORIZONTAL = 'horizontal'


class BreakoutKind(str, Enum):
    UPPER = 'upper'
    LOWER = 'lower'


# --- Inputs ---

@dataclass
class Candle(SerializableMixin):
    symbol: str
    timeframe: str
    timestamp: int  # epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class Wave(SerializableMixin):
    """A single labelled wave. length/duration are derived when omitted."""
    id: str
    wave_type: WaveType
    degree: WaveDegree
    start_price: float
    end_price: float
    start_time: int
    end_time: int
    length: Optional[float] = None
    duration: Optional[int] = None
    fibonacci_ratio: Optional[float] = None
    is_derived: bool = False

    def __post_init__(self):
        if not isinstance(self.wave_type, WaveType):
            self.wave_type = WaveType(str(self.wave_type).upper())
        if not isinstance(self.degree, WaveDegree):
            self.degree = WaveDegree(str(self.degree).lower())
        if self.length is None:
            self.length = abs(self.end_price - self.start_price)
        if self.duration is None:
            self.duration = self.end_time - self.start_time

    @property
    def direction(self) -> int:
        if self.end_price > self.start_price:
            return 1
        if self.end_price < self.start_price:
            return -1
        return 0

    @property
    def is_malformed(self) -> bool:
        return self.start_price < 0 or self.end_price < 0 or self.start_time >= self.end_time


@dataclass
class SwingPoints(SerializableMixin):
    high: float
    low: float
    high_time: int
    low_time: int


# --- Wave analyzer outputs ---

@dataclass
class WaveTarget(SerializableMixin):
    price: float
    probability: float
    kind: TargetKind
    description: str


@dataclass
class WaveProbabilityScore(SerializableMixin):
    wave_id: str
    probability: float
    confidence: float
    invalidation_level: float
    next_targets: List[WaveTarget] = field(default_factory=list)


@dataclass
class NestedWaveAnalysis(SerializableMixin):
    parent_wave: Wave
    sub_waves: List[Wave]
    completeness: float
    probability: float
    children: List['NestedWaveAnalysis'] = field(default_factory=list)


@dataclass
class WaveRelationship(SerializableMixin):
    wave_a: Wave
    wave_b: Wave
    fibonacci_ratio: float
    relationship: RelationshipKind
    strength: float


@dataclass
class ElliottValidation(SerializableMixin):
    is_valid: bool
    violations: List[str]
    confidence: float


# --- Fibonacci / pivot / confluence outputs ---

@dataclass
class FibonacciLevel(SerializableMixin):
    ratio: float
    price: float
    kind: LevelKind
    strength: float
    volume_confirmation: float = 0.0
    timeframe_consensus: float = 0.0
    dynamic_adjustment: float = 0.0
    price_action_confirmation: float = 0.0
    description: str = ''


@dataclass
class VolumeNode(SerializableMixin):
    price: float
    volume: float
    percentage: float


@dataclass
class PivotChannel(SerializableMixin):
    upper_channel: float
    lower_channel: float
    center_line: float
    strength: float
    dynamic_levels: List[float] = field(default_factory=list)
    volume_profile: List[VolumeNode] = field(default_factory=list)
    breakout_probability: float = 0.0
    support_resistance: List[float] = field(default_factory=list)
    touches: int = 0
    direction: ChannelDirection = ChannelDirection.HORIZONTAL
    slope: float = 0.0  # price change per candle
    width: float = 0.0
    window: int = 0  # number of candles the channel was fitted on
    end_time: int = 0  # timestamp of the last candle in the fitted window


@dataclass
class ConfluenceFactor(SerializableMixin):
    kind: FactorKind
    description: str
    weight: float


@dataclass
class TimeframeConsensus(SerializableMixin):
    timeframe: str
    agreement: bool
    strength: float
    factors: List[ConfluenceFactor] = field(default_factory=list)


@dataclass
class ConfluenceZone(SerializableMixin):
    price_level: float
    strength: float
    factors: List[ConfluenceFactor]
    kind: ZoneKind
    reliability: float
    volume_profile: List[VolumeNode] = field(default_factory=list)
    timeframe_consensus: List[TimeframeConsensus] = field(default_factory=list)
    dynamic_support: bool = False
    breakout_probability: float = 0.0
    historical_significance: float = 0.0


@dataclass
class ConfluenceAnalysis(SerializableMixin):
    zones: List[ConfluenceZone]
    total_zones: int
    strong_zones: List[ConfluenceZone]
    critical_levels: List[float]
    market_bias: MarketBias
    confidence_score: float


@dataclass
class LevelAdjustment(SerializableMixin):
    original_level: float
    adjusted_level: float
    adjustment_factor: float
    reason: str
    confidence: float


@dataclass
class MarketStructure(SerializableMixin):
    trend: TrendDirection
    strength: float
    phase: MarketPhase
    volatility: float
    volume: VolumeRegime


@dataclass
class TimeframeAnalysis(SerializableMixin):
    timeframe: str
    fibonacci_levels: List[FibonacciLevel]
    pivot_channels: List[PivotChannel]
    confluence_zones: List[ConfluenceZone]
    market_structure: MarketStructure


@dataclass
class Breakout(SerializableMixin):
    kind: BreakoutKind
    price: float
    timestamp: int
    strength: float
    target: float
    probability_score: float
    volume_confirmation: float


@dataclass
class TrendAnalysis(SerializableMixin):
    direction: TrendDirection
    strength: float
    duration: int  # milliseconds the latest run of same-direction candles lasted
    probability: float
    confidence: float


# --- Fibonacci calculator outputs ---

class ClusterKind(str, Enum):
    GOLDEN_RATIO = 'golden_ratio'
    CONFLUENCE = 'confluence'
    STANDARD = 'standard'


@dataclass
class TimeProjection(SerializableMixin):
    ratio: float
    timestamp: int
    description: str


@dataclass
class FibonacciCluster(SerializableMixin):
    price_level: float
    strength: float
    levels: List[FibonacciLevel]
    kind: ClusterKind
