import asyncio
import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Optional, Set, Tuple

from analytics.candles import CandleSeries, to_candle_series, validate_candles
from analytics.indicators import IndicatorCalculator
from analytics.parameter_tuner import ParameterTuner
from analytics.snapshot import IndicatorSnapshot, TunedParameters
from api.metrics import metrics
from config.utils import resolve_section
from strategy.errors import InsufficientDataError, InvalidCandleError


logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class IndicatorAggregator:
    """Per-(symbol, timeframe) indicator cache with background parameter tuning.

    A cached snapshot is reused while the candle series is unchanged (same
    length and last close) and the timeframe TTL has not elapsed. Each fresh
    computation may schedule one tuning pass on the running event loop; the
    pass is single-flight per key, cooldown-guarded and bounded by a timeout.
    """

    def __init__(self, indicator_cfg: Optional[Dict] = None, tuning_cfg: Optional[Dict] = None,
                 calculator: Optional[IndicatorCalculator] = None,
                 tuner: Optional[ParameterTuner] = None,
                 clock: Callable[[], float] = time.time):
        self.indicator_cfg = resolve_section(indicator_cfg, 'indicators')
        self.tuning_cfg = resolve_section(tuning_cfg, 'tuning')
        self.calculator = calculator or IndicatorCalculator.from_config(self.indicator_cfg)
        self.tuner = tuner or ParameterTuner(self.tuning_cfg)
        self.clock = clock

        self.min_candles = int(self.indicator_cfg.get('min_candles', 50))
        self.spot_check_count = int(self.indicator_cfg.get('spot_check_count', 20))
        self.cache_ttl: Dict[str, float] = dict(self.indicator_cfg.get('cache_ttl_s') or {})
        self.default_ttl = float(self.indicator_cfg.get('default_cache_ttl_s', 300))
        self.default_params = TunedParameters.from_config(self.indicator_cfg)

        self.tuning_enabled = bool(self.tuning_cfg.get('enabled', True))
        self.tuning_cooldown_s = float(self.tuning_cfg.get('cooldown_s', 1800))
        self.tuning_timeout_s = float(self.tuning_cfg.get('timeout_s', 5.0))

        self._cache: Dict[Key, IndicatorSnapshot] = {}
        self._params: Dict[Key, TunedParameters] = {}
        self._last_tuning_at: Dict[Key, float] = {}
        self._in_flight: Set[Key] = set()
        self._tasks: Dict[Key, asyncio.Task] = {}

    def ttl_for(self, timeframe: str) -> float:
        return float(self.cache_ttl.get(timeframe, self.default_ttl))

    def parameters_for(self, symbol: str, timeframe: str) -> TunedParameters:
        return self._params.get((symbol, timeframe), self.default_params)

    def cached(self, symbol: str, timeframe: str) -> Optional[IndicatorSnapshot]:
        return self._cache.get((symbol, timeframe))

    def get_indicators(self, symbol: str, timeframe: str, candles) -> Optional[IndicatorSnapshot]:
        """Return a snapshot for the series, or None when the candles fail validation."""
        try:
            series = to_candle_series(candles)
            if series is None:
                raise InsufficientDataError("No candles supplied")
            series = validate_candles(series, self.min_candles, self.spot_check_count)
        except InsufficientDataError as exc:
            logger.warning("%s %s: insufficient candle data: %s", symbol, timeframe, exc)
            metrics.invalid_snapshots.labels(reason='insufficient').inc()
            return None
        except InvalidCandleError as exc:
            logger.warning("%s %s: candle validation failed: %s", symbol, timeframe, exc)
            metrics.invalid_snapshots.labels(reason='invalid').inc()
            return None

        key = (symbol, timeframe)
        now = self.clock()
        cached = self._cache.get(key)
        if (
            cached is not None
            and cached.coherence_key == series.coherence_key
            and now - cached.computed_at < self.ttl_for(timeframe)
        ):
            metrics.indicator_cache.labels(result='hit').inc()
            return cached

        metrics.indicator_cache.labels(result='miss').inc()
        snapshot = self.calculator.compute(symbol, timeframe, series, self.parameters_for(symbol, timeframe))
        snapshot = replace(snapshot, computed_at=now)
        self._cache[key] = snapshot
        self._schedule_tuning(key, series)
        return snapshot

    def _schedule_tuning(self, key: Key, candles: CandleSeries) -> None:
        if not self.tuning_enabled:
            return
        if key in self._in_flight:
            logger.debug("%s %s: tuning already in flight", *key)
            return
        last = self._last_tuning_at.get(key)
        now = self.clock()
        if last is not None and now - last < self.tuning_cooldown_s:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._in_flight.add(key)
        self._last_tuning_at[key] = now
        task = loop.create_task(self._run_tuning(key, candles))
        self._tasks[key] = task
        task.add_done_callback(lambda _t, k=key: self._tasks.pop(k, None))

    async def _run_tuning(self, key: Key, candles: CandleSeries) -> None:
        previous = self._params.get(key, self.default_params)
        loop = asyncio.get_running_loop()
        try:
            tuned = await asyncio.wait_for(
                loop.run_in_executor(None, self.tuner.tune, candles, previous),
                self.tuning_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "%s %s: tuning timed out after %.1fs, keeping previous parameters",
                key[0], key[1], self.tuning_timeout_s,
            )
            metrics.tuning_runs.labels(result='timeout').inc()
            return
        except Exception:
            logger.exception("%s %s: tuning failed, keeping previous parameters", *key)
            metrics.tuning_runs.labels(result='error').inc()
            return
        finally:
            self._in_flight.discard(key)

        self._params[key] = tuned
        cached = self._cache.get(key)
        if cached is not None:
            self._cache[key] = replace(cached, tuned_parameters=tuned)
        metrics.tuning_runs.labels(result='success').inc()
        logger.info(
            "%s %s: tuned RSI=%d MACD=%d/%d/%d",
            key[0], key[1], tuned.rsi_period, tuned.macd_fast, tuned.macd_slow, tuned.macd_signal,
        )

    def is_tuning(self, symbol: str, timeframe: str) -> bool:
        return (symbol, timeframe) in self._in_flight

    def pending_tuning(self, symbol: str, timeframe: str) -> Optional[asyncio.Task]:
        return self._tasks.get((symbol, timeframe))

    async def wait_for_tuning(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def evict(self, symbol: str, timeframe: Optional[str] = None) -> None:
        for key in list(self._cache):
            if key[0] == symbol and (timeframe is None or key[1] == timeframe):
                self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()
        self._params.clear()
        self._last_tuning_at.clear()
