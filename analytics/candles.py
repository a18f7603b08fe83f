import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from strategy.errors import InsufficientDataError, InvalidCandleError


logger = logging.getLogger(__name__)

FIELDS = ('open', 'high', 'low', 'close', 'volume')


@dataclass(frozen=True)
class CandleSeries:
    open: np.ndarray
    high: np.ndarray
    low: np.ndarray
    close: np.ndarray
    volume: np.ndarray

    @classmethod
    def from_mapping(cls, data: Dict[str, Sequence[float]]) -> 'CandleSeries':
        if not isinstance(data, Mapping):
            raise InsufficientDataError(f"Expected a mapping of candle arrays, got {type(data).__name__}")
        missing = [name for name in FIELDS if data.get(name) is None]
        if missing:
            raise InsufficientDataError(f"Candle arrays missing: {', '.join(missing)}")
        try:
            lengths = {name: len(data[name]) for name in FIELDS}
            arrays = {name: np.asarray(data[name], dtype=float) for name in FIELDS}
        except (TypeError, ValueError) as exc:
            raise InvalidCandleError(f"Non-numeric candle values: {exc}") from exc
        if len(set(lengths.values())) != 1:
            raise InsufficientDataError(f"Candle arrays have mismatched lengths: {lengths}")
        if any(array.ndim != 1 for array in arrays.values()):
            raise InvalidCandleError("Candle fields must be one-dimensional")
        return cls(**arrays)

    @classmethod
    def from_klines(cls, klines: List[List]) -> 'CandleSeries':
        """Build from exchange kline rows ``[open_time, o, h, l, c, v, ...]``."""
        return cls.from_mapping({
            'open': [float(row[1]) for row in klines],
            'high': [float(row[2]) for row in klines],
            'low': [float(row[3]) for row in klines],
            'close': [float(row[4]) for row in klines],
            'volume': [float(row[5]) for row in klines],
        })

    def __len__(self) -> int:
        return int(self.close.shape[0])

    @property
    def last_close(self) -> float:
        return float(self.close[-1])

    @property
    def last_volume(self) -> float:
        return float(self.volume[-1])

    @property
    def coherence_key(self) -> Tuple[int, float]:
        if len(self) == 0:
            return (0, 0.0)
        return (len(self), self.last_close)

    def take(self, mask: np.ndarray) -> 'CandleSeries':
        return CandleSeries(
            open=self.open[mask],
            high=self.high[mask],
            low=self.low[mask],
            close=self.close[mask],
            volume=self.volume[mask],
        )


def _spot_indices(length: int, spot_count: int) -> np.ndarray:
    tail = np.arange(max(0, length - spot_count), length)
    stride = max(1, length // max(spot_count, 1))
    sampled = np.arange(0, length, stride)
    return np.unique(np.concatenate([sampled, tail]))


def validate_candles(candles: CandleSeries, min_length: int = 50,
                     spot_check_count: int = 20) -> CandleSeries:
    """Return a cleaned series or raise.

    Rows with non-finite or negative values are excluded unless they fall on a
    spot-checked index, in which case the whole series is rejected. OHLC
    consistency is enforced on the spot-checked indices.
    """
    if len(candles) < min_length:
        raise InsufficientDataError(f"Need {min_length} candles, got {len(candles)}")

    stacked = np.vstack([candles.open, candles.high, candles.low, candles.close, candles.volume])
    bad_rows = ~np.all(np.isfinite(stacked) & (stacked >= 0), axis=0)
    bad_rows |= candles.close <= 0
    spot = _spot_indices(len(candles), spot_check_count)

    spot_bad = [int(i) for i in spot if bad_rows[i]]
    if spot_bad:
        raise InvalidCandleError(f"Invalid values at spot-checked candle {spot_bad[0]}", spot_bad[0])

    if bad_rows.any():
        logger.warning("Excluding %d invalid candles", int(bad_rows.sum()))
        candles = candles.take(~bad_rows)
        if len(candles) < min_length:
            raise InsufficientDataError(
                f"Only {len(candles)} valid candles after exclusion (need {min_length})"
            )
        spot = _spot_indices(len(candles), spot_check_count)

    body_high = np.maximum(candles.open[spot], candles.close[spot])
    body_low = np.minimum(candles.open[spot], candles.close[spot])
    inconsistent = (candles.high[spot] < body_high) | (candles.low[spot] > body_low)
    if inconsistent.any():
        index = int(spot[np.argmax(inconsistent)])
        raise InvalidCandleError(f"OHLC inconsistent at candle {index}", index)

    return candles


def to_candle_series(data) -> Optional[CandleSeries]:
    if data is None:
        return None
    if isinstance(data, CandleSeries):
        return data
    return CandleSeries.from_mapping(data)
