import logging
import time
from dataclasses import replace
from itertools import product
from typing import Dict, List, Optional, Tuple

import numpy as np
import talib

from analytics.candles import CandleSeries
from analytics.indicators import atr_percent
from analytics.snapshot import TunedParameters


logger = logging.getLogger(__name__)


def _hit_rate(predicted: np.ndarray, close: np.ndarray) -> float:
    """Share of bars whose predicted sign matches the next bar's return sign."""
    next_returns = np.sign(np.diff(close))
    signs = np.sign(predicted[:-1])
    mask = ~np.isnan(signs) & (signs != 0) & (next_returns != 0)
    if not mask.any():
        return 0.0
    return float(np.mean(signs[mask] == next_returns[mask]))


class ParameterTuner:
    """Grid search of RSI and MACD periods against next-bar direction."""

    def __init__(self, tuning_cfg: Optional[Dict] = None):
        cfg = tuning_cfg or {}
        self.rsi_periods: List[int] = list(cfg.get('rsi_periods', [8, 9, 10, 11, 12]))
        self.macd_fast_periods: List[int] = list(cfg.get('macd_fast_periods', [8, 9, 10, 11, 12]))
        self.macd_slow_periods: List[int] = list(cfg.get('macd_slow_periods', [20, 21, 22, 23, 24]))
        self.macd_signal_periods: List[int] = list(cfg.get('macd_signal_periods', [6, 7, 8, 9]))
        self.low_volatility_pct = float(cfg.get('low_volatility_pct', 0.5))
        self.high_volatility_pct = float(cfg.get('high_volatility_pct', 2.0))
        self.min_rsi_period = int(cfg.get('min_rsi_period', 7))
        self.max_rsi_period = int(cfg.get('max_rsi_period', 30))

    def generate_macd_grid(self) -> List[Tuple[int, int, int]]:
        return [
            (fast, slow, signal)
            for fast, slow, signal in product(
                self.macd_fast_periods, self.macd_slow_periods, self.macd_signal_periods
            )
            if slow > fast
        ]

    def tune(self, candles: CandleSeries, previous: TunedParameters) -> TunedParameters:
        close = candles.close
        rsi_period = self._best_rsi_period(close, previous.rsi_period)
        volatility = atr_percent(candles)
        if volatility is not None:
            if volatility > self.high_volatility_pct:
                rsi_period += 2
            elif volatility < self.low_volatility_pct:
                rsi_period -= 2
        rsi_period = max(self.min_rsi_period, min(rsi_period, self.max_rsi_period))

        fast, slow, signal = self._best_macd(
            close, (previous.macd_fast, previous.macd_slow, previous.macd_signal)
        )
        tuned = replace(
            previous,
            rsi_period=rsi_period,
            macd_fast=fast,
            macd_slow=slow,
            macd_signal=signal,
            source='tuned',
            tuned_at=time.time(),
        )
        logger.debug(
            "Tuned parameters: RSI=%d MACD=%d/%d/%d (volatility=%s)",
            rsi_period, fast, slow, signal, volatility,
        )
        return tuned

    def _best_rsi_period(self, close: np.ndarray, fallback: int) -> int:
        best_score = -1.0
        best_period = fallback
        for period in self.rsi_periods:
            if len(close) <= period + 1:
                continue
            rsi = talib.RSI(close, timeperiod=period)
            # Mean reversion: below 50 predicts up, above 50 predicts down.
            score = _hit_rate(50.0 - rsi, close)
            if score > best_score:
                best_score = score
                best_period = period
        return best_period

    def _best_macd(self, close: np.ndarray, fallback: Tuple[int, int, int]) -> Tuple[int, int, int]:
        best_score = -1.0
        best = fallback
        for fast, slow, signal in self.generate_macd_grid():
            if len(close) <= slow + signal:
                continue
            _, _, hist = talib.MACD(close, fastperiod=fast, slowperiod=slow, signalperiod=signal)
            score = _hit_rate(hist, close)
            if score > best_score:
                best_score = score
                best = (fast, slow, signal)
        return best
