"""External collaborators consumed by the evaluation cycle.

Each interface has a neutral default so the pipeline runs with only a candle
source configured: no patterns, ML probability 0.5, no correlation or regime.
"""
from abc import ABC, abstractmethod
from typing import Dict, Optional

from analytics.snapshot import IndicatorSnapshot
from strategy.models import CorrelationSignal, Regime


class CandleSource(ABC):
    @abstractmethod
    async def get_candles(self, symbol: str, timeframe: str):
        pass


class PatternDetector(ABC):
    @abstractmethod
    async def detect(self, symbol: str, timeframe: str, candles) -> Optional[Dict]:
        pass


class MLEstimator(ABC):
    @abstractmethod
    async def predict(self, symbol: str, timeframe: str, indicators: IndicatorSnapshot) -> float:
        pass


class CorrelationProvider(ABC):
    @abstractmethod
    async def get_correlation(self, symbol: str, timeframe: str) -> Optional[CorrelationSignal]:
        pass


class RegimeProvider(ABC):
    @abstractmethod
    async def get_regime(self) -> Optional[Regime]:
        pass


class TickStream(ABC):
    @abstractmethod
    def subscribe(self, symbol: str, callback) -> None:
        pass

    @abstractmethod
    def unsubscribe(self, symbol: str) -> None:
        pass


class NoPatterns(PatternDetector):
    async def detect(self, symbol: str, timeframe: str, candles) -> Optional[Dict]:
        return {}


class NeutralML(MLEstimator):
    async def predict(self, symbol: str, timeframe: str, indicators: IndicatorSnapshot) -> float:
        return 0.5


class NoCorrelation(CorrelationProvider):
    async def get_correlation(self, symbol: str, timeframe: str) -> Optional[CorrelationSignal]:
        return None


class NoRegime(RegimeProvider):
    async def get_regime(self) -> Optional[Regime]:
        return None
