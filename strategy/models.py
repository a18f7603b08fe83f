from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Union
import time


class Direction(Enum):
    LONG = "long"
    SHORT = "short"


class Trend(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

    def direction(self) -> Optional[Direction]:
        if self is Trend.BULLISH:
            return Direction.LONG
        if self is Trend.BEARISH:
            return Direction.SHORT
        return None


class Regime(Enum):
    BULL = "bull"
    BEAR = "bear"
    VOLATILE = "volatile"
    SIDEWAYS = "sideways"

    @classmethod
    def parse(cls, value) -> Optional['Regime']:
        if value is None or isinstance(value, Regime):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class MonitorStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ScoreComponent:
    name: str
    raw_value: float
    weight: float
    weighted_value: float
    description: str = ''
    bias: Optional[Trend] = None

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'raw_value': self.raw_value,
            'weight': self.weight,
            'weighted_value': self.weighted_value,
            'description': self.description,
        }


@dataclass(frozen=True)
class SignalResult:
    symbol: str
    timeframe: str
    total_score: float
    is_valid: bool
    confirmation_count: int = 0
    strength_factors: FrozenSet[str] = frozenset()
    is_ml_driven: bool = False
    reason: str = ''
    score_components: Tuple[ScoreComponent, ...] = ()
    signal_trend: Trend = Trend.NEUTRAL
    effective_trend: Trend = Trend.NEUTRAL
    ml_probability: float = 0.5
    created_at: float = field(default_factory=time.time)

    @property
    def direction(self) -> Optional[Direction]:
        return self.signal_trend.direction()

    @property
    def component_total(self) -> float:
        return sum(c.weighted_value for c in self.score_components)

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'total_score': round(self.total_score, 4),
            'is_valid': self.is_valid,
            'confirmation_count': self.confirmation_count,
            'strength_factors': sorted(self.strength_factors),
            'is_ml_driven': self.is_ml_driven,
            'reason': self.reason,
            'signal_trend': self.signal_trend.value,
            'effective_trend': self.effective_trend.value,
            'ml_probability': self.ml_probability,
            'score_components': [c.to_dict() for c in self.score_components],
            'created_at': self.created_at,
        }


@dataclass(frozen=True)
class TradingLevels:
    entry: float
    targets: Tuple[float, ...]
    stop_loss: float
    risk_reward_ratio: float
    direction: Direction
    source: str = 'percentage'

    def is_consistent(self) -> bool:
        if not self.targets or self.entry <= 0 or self.stop_loss <= 0:
            return False
        if any(t <= 0 for t in self.targets):
            return False
        pairs = list(zip(self.targets, self.targets[1:]))
        if self.direction == Direction.LONG:
            return (
                self.stop_loss < self.entry
                and all(t > self.entry for t in self.targets)
                and all(b > a for a, b in pairs)
            )
        return (
            self.stop_loss > self.entry
            and all(t < self.entry for t in self.targets)
            and all(b < a for a, b in pairs)
        )

    def to_dict(self) -> Dict:
        return {
            'entry': self.entry,
            'targets': list(self.targets),
            'stop_loss': self.stop_loss,
            'risk_reward_ratio': self.risk_reward_ratio,
            'direction': self.direction.value,
            'source': self.source,
        }


@dataclass(frozen=True)
class CorrelationSignal:
    """Cross-asset alignment reported by an external analysis collaborator."""
    trend: Trend = Trend.NEUTRAL
    strength: float = 0.0
    alignment: Optional[bool] = None
    bonus: float = 0.0

    @classmethod
    def from_mapping(cls, data: Optional[Dict]) -> Optional['CorrelationSignal']:
        if not data:
            return None
        try:
            trend = Trend(str(data.get('trend', 'neutral')).lower())
        except ValueError:
            trend = Trend.NEUTRAL
        return cls(
            trend=trend,
            strength=float(data.get('strength', 0.0) or 0.0),
            alignment=data.get('alignment'),
            bonus=float(data.get('bonus', 0.0) or 0.0),
        )


# Lifecycle events emitted by the position monitor.

@dataclass(frozen=True)
class TargetHit:
    symbol: str
    index: int
    target_price: float
    price: float
    pnl: float
    kind: str = 'target_hit'

    def to_dict(self) -> Dict:
        return {
            'event': self.kind,
            'symbol': self.symbol,
            'index': self.index,
            'target_price': self.target_price,
            'price': self.price,
            'pnl': self.pnl,
        }


@dataclass(frozen=True)
class StopMoved:
    symbol: str
    new_stop: float
    targets_hit: int
    kind: str = 'stop_moved'

    def to_dict(self) -> Dict:
        return {
            'event': self.kind,
            'symbol': self.symbol,
            'new_stop': self.new_stop,
            'targets_hit': self.targets_hit,
        }


@dataclass(frozen=True)
class Completed:
    symbol: str
    reason: str
    final_pnl: float
    leveraged_pnl: float
    duration_ms: int
    targets_hit: int
    exit_price: Optional[float]
    kind: str = 'completed'

    @property
    def is_win(self) -> bool:
        return self.final_pnl > 0

    def to_dict(self) -> Dict:
        return {
            'event': self.kind,
            'symbol': self.symbol,
            'reason': self.reason,
            'final_pnl': self.final_pnl,
            'leveraged_pnl': self.leveraged_pnl,
            'duration_ms': self.duration_ms,
            'targets_hit': self.targets_hit,
            'exit_price': self.exit_price,
        }


@dataclass
class OutcomeRecord:
    symbol: str
    timeframe: str
    direction: str
    reason: str
    targets_hit: int
    final_pnl: float
    leveraged_pnl: float
    is_win: bool
    duration_ms: int
    indicators_at_entry: Dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'direction': self.direction,
            'reason': self.reason,
            'targets_hit': self.targets_hit,
            'final_pnl': self.final_pnl,
            'leveraged_pnl': self.leveraged_pnl,
            'is_win': self.is_win,
            'duration_ms': self.duration_ms,
            'indicators_at_entry': self.indicators_at_entry,
        }


LifecycleEvent = Union[TargetHit, StopMoved, Completed]
