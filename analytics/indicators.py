import logging
from typing import Dict, Optional

import numpy as np
import talib

from analytics.candles import CandleSeries
from analytics.snapshot import IchimokuValues, IndicatorSnapshot, MACDValues, TunedParameters


logger = logging.getLogger(__name__)

# MA readings outside these price ratios are treated as corrupt and dropped.
SHORT_MA_RATIO_BOUNDS = (0.8, 1.2)
LONG_MA_RATIO_BOUNDS = (0.6, 1.4)


def _last(values: np.ndarray) -> Optional[float]:
    if values is None or len(values) == 0:
        return None
    value = values[-1]
    if np.isnan(value):
        return None
    return float(value)


def detect_rsi_divergence(close: np.ndarray, rsi: np.ndarray, lookback: int = 5) -> bool:
    """Price and RSI moving in opposite directions over the last ``lookback`` bars."""
    if len(close) < 2 * lookback or len(rsi) < 2 * lookback:
        return False
    prices = close[-lookback:]
    rsi_tail = rsi[-lookback:]
    if np.isnan(rsi_tail).any():
        return False
    price_down = prices[-1] < prices[0]
    price_up = prices[-1] > prices[0]
    rsi_up = rsi_tail[-1] > rsi_tail[0]
    rsi_down = rsi_tail[-1] < rsi_tail[0]
    return bool((price_down and rsi_up) or (price_up and rsi_down))


def atr_percent(candles: CandleSeries, period: int = 14) -> Optional[float]:
    if len(candles) <= period:
        return None
    atr = _last(talib.ATR(candles.high, candles.low, candles.close, timeperiod=period))
    if atr is None or candles.last_close <= 0:
        return None
    return atr / candles.last_close * 100.0


class IndicatorCalculator:
    def __init__(
        self,
        volume_ma_period: int = 20,
        atr_period: int = 14,
        ichimoku_conversion: int = 9,
        ichimoku_base: int = 26,
        ma_long_fallback: int = 50,
    ):
        self.volume_ma_period = volume_ma_period
        self.atr_period = atr_period
        self.ichimoku_conversion = ichimoku_conversion
        self.ichimoku_base = ichimoku_base
        self.ma_long_fallback = ma_long_fallback

    @classmethod
    def from_config(cls, indicator_cfg: Dict) -> 'IndicatorCalculator':
        return cls(
            volume_ma_period=int(indicator_cfg.get('volume_ma_period', 20)),
            atr_period=int(indicator_cfg.get('atr_period', 14)),
            ichimoku_conversion=int(indicator_cfg.get('ichimoku_conversion', 9)),
            ichimoku_base=int(indicator_cfg.get('ichimoku_base', 26)),
            ma_long_fallback=int(indicator_cfg.get('ma_long_fallback', 50)),
        )

    def compute(self, symbol: str, timeframe: str, candles: CandleSeries,
                params: TunedParameters) -> IndicatorSnapshot:
        close = candles.close
        last_close = candles.last_close

        rsi_series = talib.RSI(close, timeperiod=params.rsi_period)
        rsi = _last(rsi_series)

        macd = None
        if len(close) > params.macd_slow + params.macd_signal:
            line, signal, hist = talib.MACD(
                close,
                fastperiod=params.macd_fast,
                slowperiod=params.macd_slow,
                signalperiod=params.macd_signal,
            )
            if _last(line) is not None and _last(signal) is not None:
                macd = MACDValues(line=_last(line), signal=_last(signal), histogram=_last(hist))

        short_ma = self._sma(close, params.ma_short)
        long_ma = self._sma(close, params.ma_long)
        if long_ma is None:
            long_ma = self._sma(close, self.ma_long_fallback)
            if long_ma is not None:
                logger.debug("%s %s: long MA using %d-period fallback", symbol, timeframe, self.ma_long_fallback)
        short_ma = self._bounded(short_ma, last_close, SHORT_MA_RATIO_BOUNDS, 'short MA', symbol)
        long_ma = self._bounded(long_ma, last_close, LONG_MA_RATIO_BOUNDS, 'long MA', symbol)

        atr = None
        if len(close) > self.atr_period:
            atr = _last(talib.ATR(candles.high, candles.low, close, timeperiod=self.atr_period))

        return IndicatorSnapshot(
            symbol=symbol,
            timeframe=timeframe,
            last_close=last_close,
            rsi=rsi,
            macd=macd,
            short_ma=short_ma,
            long_ma=long_ma,
            volume_ma=self._sma(candles.volume, self.volume_ma_period),
            current_volume=candles.last_volume,
            atr=atr,
            ichimoku=self._ichimoku(candles),
            volatility=(atr / last_close * 100.0) if atr and last_close > 0 else None,
            rsi_divergence=detect_rsi_divergence(close, rsi_series),
            tuned_parameters=params,
            coherence_key=candles.coherence_key,
        )

    @staticmethod
    def _sma(values: np.ndarray, period: int) -> Optional[float]:
        if period <= 0 or len(values) < period:
            return None
        return _last(talib.SMA(values, timeperiod=period))

    @staticmethod
    def _bounded(value: Optional[float], price: float, bounds, label: str, symbol: str) -> Optional[float]:
        if value is None or price <= 0:
            return value
        ratio = value / price
        if ratio < bounds[0] or ratio > bounds[1]:
            logger.warning("%s: %s ratio %.3f outside %s, discarding", symbol, label, ratio, bounds)
            return None
        return value

    def _ichimoku(self, candles: CandleSeries) -> Optional[IchimokuValues]:
        if len(candles) < self.ichimoku_base:
            return None
        conv = self.ichimoku_conversion
        base = self.ichimoku_base
        conversion_line = (np.max(candles.high[-conv:]) + np.min(candles.low[-conv:])) / 2.0
        base_line = (np.max(candles.high[-base:]) + np.min(candles.low[-base:])) / 2.0
        return IchimokuValues(conversion_line=float(conversion_line), base_line=float(base_line))
