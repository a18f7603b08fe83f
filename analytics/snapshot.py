import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class TunedParameters:
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    ma_short: int = 21
    ma_long: int = 200
    source: str = 'default'
    tuned_at: Optional[float] = None

    @classmethod
    def from_config(cls, indicator_cfg: Dict) -> 'TunedParameters':
        return cls(
            rsi_period=int(indicator_cfg.get('rsi_period', 14)),
            macd_fast=int(indicator_cfg.get('macd_fast', 12)),
            macd_slow=int(indicator_cfg.get('macd_slow', 26)),
            macd_signal=int(indicator_cfg.get('macd_signal', 9)),
            ma_short=int(indicator_cfg.get('ma_short', 21)),
            ma_long=int(indicator_cfg.get('ma_long', 200)),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class MACDValues:
    line: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class IchimokuValues:
    conversion_line: float
    base_line: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values for one (symbol, timeframe) candle series."""
    symbol: str
    timeframe: str
    last_close: float
    rsi: Optional[float] = None
    macd: Optional[MACDValues] = None
    short_ma: Optional[float] = None
    long_ma: Optional[float] = None
    volume_ma: Optional[float] = None
    current_volume: Optional[float] = None
    atr: Optional[float] = None
    ichimoku: Optional[IchimokuValues] = None
    volatility: Optional[float] = None
    rsi_divergence: bool = False
    tuned_parameters: TunedParameters = field(default_factory=TunedParameters)
    computed_at: float = field(default_factory=time.time)
    coherence_key: Tuple[int, float] = (0, 0.0)

    @property
    def volume_ratio(self) -> Optional[float]:
        if self.current_volume is None or not self.volume_ma or self.volume_ma <= 0:
            return None
        return self.current_volume / self.volume_ma

    @property
    def macd_histogram_pct(self) -> Optional[float]:
        if self.macd is None or not self.last_close:
            return None
        return abs(self.macd.histogram) / self.last_close * 100.0

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'last_close': self.last_close,
            'rsi': self.rsi,
            'macd': asdict(self.macd) if self.macd else None,
            'short_ma': self.short_ma,
            'long_ma': self.long_ma,
            'volume_ma': self.volume_ma,
            'current_volume': self.current_volume,
            'volume_ratio': self.volume_ratio,
            'atr': self.atr,
            'ichimoku': asdict(self.ichimoku) if self.ichimoku else None,
            'volatility': self.volatility,
            'rsi_divergence': self.rsi_divergence,
            'tuned_parameters': self.tuned_parameters.to_dict(),
            'computed_at': self.computed_at,
        }
