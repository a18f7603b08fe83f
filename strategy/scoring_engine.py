import logging
import math
import random
import time
from typing import Callable, Dict, List, Optional, Set

from analytics.snapshot import IndicatorSnapshot
from api.metrics import metrics
from config.utils import resolve_section
from strategy.adaptive_state import AdaptiveState
from strategy.counter_trend import CounterTrendPolicy
from strategy.models import CorrelationSignal, Regime, ScoreComponent, SignalResult, Trend
from strategy.patterns import BREAKOUT, CANDLESTICK, CONTINUATION, REVERSAL, PatternSet


logger = logging.getLogger(__name__)


def _has_candles(candles) -> bool:
    if candles is None:
        return False
    try:
        if isinstance(candles, dict):
            close = candles.get('close')
            return close is not None and len(close) > 0
        return len(candles) > 0
    except TypeError:
        return False


class _Run:
    """Mutable accumulator for a single evaluation."""

    def __init__(self):
        self.components: List[ScoreComponent] = []
        self.confirmations = 0
        self.tags: Set[str] = set()

    @property
    def total(self) -> float:
        return sum(c.weighted_value for c in self.components)

    def add(self, name: str, raw_value: float, weight: float, weighted_value: float,
            description: str = '', bias: Optional[Trend] = None, confirm: bool = False) -> ScoreComponent:
        component = ScoreComponent(name, raw_value, weight, weighted_value, description, bias)
        self.components.append(component)
        if confirm:
            self.confirmations += 1
        return component


class ScoringEngine:
    """Fuses indicators, patterns, volume, ML, regime and correlation into one decision.

    Every adjustment is appended to the audit trail as a ScoreComponent so the
    final total equals the sum of weighted values, including the clamp.
    """

    def __init__(self, scoring_cfg: Optional[Dict] = None, filter_cfg: Optional[Dict] = None,
                 counter_trend_cfg: Optional[Dict] = None, state: Optional[AdaptiveState] = None,
                 clock: Callable[[], float] = time.time, rng: Optional[random.Random] = None):
        self.cfg = resolve_section(scoring_cfg, 'scoring')
        self.filters = resolve_section(filter_cfg, 'quality_filters')
        self.state = state if state is not None else AdaptiveState(clock=clock)
        self.policy = CounterTrendPolicy(counter_trend_cfg, self.cfg, self.state)
        self.clock = clock
        self.rng = rng

        self.weights: Dict[str, float] = dict(self.cfg.get('weights') or {})
        self.threshold = float(self.cfg.get('min_signal_score', 70))
        self.hysteresis_band = float(self.cfg.get('hysteresis_band', 3.0))
        self.hysteresis_ttl_s = float(self.cfg.get('hysteresis_ttl_s', 21600))
        self.jitter_pct = float(self.cfg.get('jitter_pct', 0.0))

    def _w(self, name: str, default: float) -> float:
        return float(self.weights.get(name, default))

    def evaluate(self, candles, indicators: Optional[IndicatorSnapshot], patterns=None,
                 ml_probability: Optional[float] = None, regime=None,
                 correlation: Optional[CorrelationSignal] = None,
                 symbol: Optional[str] = None, timeframe: Optional[str] = None) -> SignalResult:
        started = time.perf_counter()
        symbol = symbol or (indicators.symbol if indicators else '')
        timeframe = timeframe or (indicators.timeframe if indicators else '')

        if not _has_candles(candles) or indicators is None:
            missing = 'candles' if not _has_candles(candles) else 'indicators'
            metrics.evaluations.labels(outcome='rejected_fast').inc()
            return self._result(symbol, timeframe, 0.0, False, _Run(), f"missing {missing}")

        if self.state.is_blacklisted(symbol):
            metrics.evaluations.labels(outcome='blacklisted').inc()
            return self._result(symbol, timeframe, 0.0, False, _Run(), 'blacklisted')

        patterns = PatternSet.from_mapping(patterns)
        regime = Regime.parse(regime)
        if isinstance(correlation, dict):
            correlation = CorrelationSignal.from_mapping(correlation)
        probability = self._normalise_probability(ml_probability)

        run = _Run()
        self._score_indicators(run, indicators)
        indicator_components = list(run.components)
        self._score_patterns(run, patterns)
        self._score_volume(run, indicators)

        failures = self._quality_failures(run, indicators)
        if failures:
            for failure in failures:
                metrics.filter_rejections.labels(filter=failure[0]).inc()
            reason = 'quality filters failed: ' + '; '.join(text for _, text in failures)
            total = self._clamp(run)
            with self.state.key_lock(symbol, timeframe):
                self.state.store_decision(symbol, timeframe, total, False)
            logger.info("%s %s rejected (%.1f): %s", symbol, timeframe, total, reason)
            metrics.record_evaluation(symbol, timeframe, total, False, time.perf_counter() - started)
            return self._result(symbol, timeframe, total, False, run, reason,
                                ml_probability=probability)

        ml_component = self._score_ml(run, probability)
        signal_trend = self.signal_trend(indicators, patterns)
        effective_trend = self.policy.effective_trend(regime, indicators)
        self._adjust_regime(run, regime, signal_trend)
        self._adjust_correlation(run, correlation, signal_trend)
        self._confirmation_bonus(run)
        self._performance(run, symbol)

        decision = self.policy.apply(
            run.total, symbol, signal_trend, effective_trend,
            indicators, patterns, correlation, indicator_components,
        )
        run.components.extend(decision.components)
        run.tags.update(decision.tags)

        if self.jitter_pct > 0 and self.rng is not None and not decision.blocked:
            pct = self.rng.uniform(-self.jitter_pct, self.jitter_pct)
            run.add('jitter', pct, run.total / 100.0, run.total * pct / 100.0, 'bounded random jitter')

        total = self._clamp(run)
        is_ml_driven = (
            total > 0
            and ml_component.weighted_value / total > float(self.cfg.get('ml_driven_share', 0.4))
            and probability > float(self.cfg.get('ml_driven_probability', 0.7))
        )

        with self.state.key_lock(symbol, timeframe):
            is_valid, reason = self._apply_hysteresis(symbol, timeframe, total)
            if is_valid and decision.records_usage and not self.policy.commit_usage(symbol):
                is_valid = False
                reason = f"{reason}; daily counter-trend cap reached"
            self.state.store_decision(symbol, timeframe, total, is_valid)

        if decision.branch:
            reason = f"{reason}; trend policy: {decision.branch}"
        logger.info(
            "%s %s %s score=%.1f valid=%s confirmations=%d",
            symbol, timeframe, signal_trend.value, total, is_valid, run.confirmations,
        )
        metrics.record_evaluation(symbol, timeframe, total, is_valid, time.perf_counter() - started)
        return self._result(
            symbol, timeframe, total, is_valid, run, reason,
            is_ml_driven=is_ml_driven,
            signal_trend=signal_trend,
            effective_trend=effective_trend,
            ml_probability=probability,
        )

    def _result(self, symbol: str, timeframe: str, total: float, is_valid: bool, run: _Run,
                reason: str, **extra) -> SignalResult:
        return SignalResult(
            symbol=symbol,
            timeframe=timeframe,
            total_score=total,
            is_valid=is_valid,
            confirmation_count=run.confirmations,
            strength_factors=frozenset(run.tags),
            reason=reason,
            score_components=tuple(run.components),
            created_at=self.clock(),
            **extra,
        )

    @staticmethod
    def _normalise_probability(value) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return 0.5
        if not math.isfinite(value):
            return 0.5
        return max(0.0, min(value, 1.0))

    # Indicators

    def _score_indicators(self, run: _Run, ind: IndicatorSnapshot) -> None:
        oversold = float(self.cfg.get('rsi_oversold', 30))
        overbought = float(self.cfg.get('rsi_overbought', 70))
        rsi_weight = self._w('rsi', 25)
        depth = self._w('rsi_depth_factor', 0.5)
        if ind.rsi is not None:
            if ind.rsi <= oversold:
                run.add('rsi', ind.rsi, rsi_weight, rsi_weight + (oversold - ind.rsi) * depth,
                        f"RSI {ind.rsi:.1f} oversold", Trend.BULLISH, confirm=True)
                if ind.rsi <= float(self.cfg.get('rsi_extreme_low', 20)):
                    run.tags.add('RSI_EXTREME')
            elif ind.rsi >= overbought:
                run.add('rsi', ind.rsi, rsi_weight, rsi_weight + (ind.rsi - overbought) * depth,
                        f"RSI {ind.rsi:.1f} overbought", Trend.BEARISH, confirm=True)
                if ind.rsi >= float(self.cfg.get('rsi_extreme_high', 80)):
                    run.tags.add('RSI_EXTREME')

        hist_pct = ind.macd_histogram_pct
        if hist_pct is not None and hist_pct >= float(self.cfg.get('macd_min_histogram_pct', 0.01)):
            strong = float(self.cfg.get('macd_strong_histogram_pct', 0.1))
            weight = self._w('macd', 30)
            bias = Trend.BULLISH if ind.macd.line > ind.macd.signal else Trend.BEARISH
            run.add('macd', hist_pct, weight, weight * (0.5 + 0.5 * min(hist_pct / strong, 1.0)),
                    f"MACD histogram {hist_pct:.3f}% of price", bias, confirm=True)
            if hist_pct >= strong:
                run.tags.add('MACD_STRONG')

        if ind.short_ma is not None and ind.long_ma:
            separation = abs(ind.short_ma - ind.long_ma) / ind.long_ma * 100.0
            if separation >= float(self.cfg.get('ma_min_separation_pct', 0.5)):
                strong = float(self.cfg.get('ma_strong_separation_pct', 5.0))
                weight = self._w('moving_average', 15)
                bias = Trend.BULLISH if ind.short_ma > ind.long_ma else Trend.BEARISH
                run.add('moving_average', separation, weight,
                        weight * (0.5 + 0.5 * min(separation / strong, 1.0)),
                        f"MA separation {separation:.2f}%", bias, confirm=True)
                if separation >= strong:
                    run.tags.add('MA_TREND_STRONG')

        if ind.ichimoku is not None and ind.ichimoku.conversion_line != ind.ichimoku.base_line:
            weight = self._w('ichimoku', 10)
            above = ind.ichimoku.conversion_line > ind.ichimoku.base_line
            run.add('ichimoku', ind.ichimoku.conversion_line - ind.ichimoku.base_line, weight, weight,
                    'conversion line above base line' if above else 'conversion line below base line',
                    Trend.BULLISH if above else Trend.BEARISH, confirm=True)

        if ind.rsi_divergence:
            weight = self._w('rsi_divergence', 15)
            run.add('rsi_divergence', 1.0, weight, weight, 'price/RSI divergence', confirm=True)
            run.tags.add('RSI_DIVERGENCE')

    # Patterns

    def _score_patterns(self, run: _Run, patterns: PatternSet) -> None:
        if not len(patterns):
            base = self._w('pattern_base', 5)
            run.add('pattern_base', 0.0, base, base, 'no chart pattern detected')
            return
        weights = {
            BREAKOUT: self._w('pattern_breakout', 25),
            REVERSAL: self._w('pattern_reversal', 20),
            CONTINUATION: self._w('pattern_continuation', 10),
            CANDLESTICK: self._w('pattern_candlestick', 5),
        }
        min_confidence = float(self.cfg.get('pattern_trend_confidence', 60))
        subtotal = 0.0
        for pattern in patterns:
            weight = weights[pattern.category]
            points = weight * pattern.confidence / 100.0
            subtotal += points
            run.add(f"pattern:{pattern.name}", pattern.confidence, weight, points,
                    f"{pattern.category} {pattern.bias.value} {pattern.confidence:.0f}%",
                    pattern.bias, confirm=pattern.confidence >= min_confidence)
        if patterns.breakout is not None:
            run.tags.add('BREAKOUT')
        cap = self._w('pattern_cap', 40)
        if subtotal > cap:
            run.add('pattern_cap', subtotal, cap, cap - subtotal, f"pattern points capped at {cap:.0f}")

    # Volume

    def _score_volume(self, run: _Run, ind: IndicatorSnapshot) -> None:
        ratio = ind.volume_ratio
        if ratio is None:
            return
        tiers = sorted(self.cfg.get('volume_tiers') or [], key=lambda t: -float(t[0]))
        for rank, (tier_ratio, points) in enumerate(tiers):
            if ratio >= float(tier_ratio):
                run.add('volume', ratio, float(tier_ratio), float(points),
                        f"volume {ratio:.2f}x average", confirm=True)
                if rank == 0:
                    run.tags.add('VOLUME_EXTREME')
                elif rank == 1:
                    run.tags.add('VOLUME_HIGH')
                return
        if ratio < float(self.cfg.get('volume_penalty_ratio', 0.5)):
            penalty = float(self.cfg.get('volume_penalty', -10))
            run.add('volume', ratio, 1.0, penalty, f"volume {ratio:.2f}x average (thin)")

    # Quality filters

    def _quality_failures(self, run: _Run, ind: IndicatorSnapshot) -> List[tuple]:
        failures = []
        min_ratio = self.filters.get('min_volume_ratio')
        ratio = ind.volume_ratio
        if min_ratio is not None and ratio is not None and ratio < float(min_ratio):
            failures.append(('volume', f"volume ratio {ratio:.2f}x below minimum {float(min_ratio):.2f}x"))

        band = self.filters.get('rsi_neutral_band')
        if band and ind.rsi is not None:
            low, high = float(band[0]), float(band[1])
            if high - low <= float(self.filters.get('rsi_band_max_width', 20)) and low <= ind.rsi <= high:
                failures.append(('rsi', f"RSI {ind.rsi:.1f} inside neutral band [{low:g}, {high:g}]"))

        if self.filters.get('require_multiple_confirmations'):
            needed = int(self.filters.get('min_confirmations', 3))
            if run.confirmations < needed:
                failures.append(('confirmations', f"{run.confirmations} of {needed} confirmations"))

        min_macd = self.filters.get('min_macd_strength_pct')
        hist_pct = ind.macd_histogram_pct
        if min_macd is not None and hist_pct is not None and hist_pct < float(min_macd):
            failures.append(('macd', f"MACD histogram {hist_pct:.4f}% below minimum {float(min_macd):g}%"))
        return failures

    # ML, regime, correlation

    def _score_ml(self, run: _Run, probability: float) -> ScoreComponent:
        weight = self._w('ml', 0.25)
        confirmed = probability >= float(self.cfg.get('ml_confirmation_probability', 0.6))
        if confirmed:
            run.tags.add('ML_CONFIRMED')
        return run.add('ml', probability, weight, probability * 100.0 * weight,
                       f"ML probability {probability:.2f}", confirm=confirmed)

    def signal_trend(self, ind: IndicatorSnapshot, patterns: PatternSet) -> Trend:
        bullish = bearish = total = 0
        if ind.rsi is not None:
            total += 1
            if ind.rsi <= float(self.cfg.get('rsi_oversold', 30)):
                bullish += 1
            elif ind.rsi >= float(self.cfg.get('rsi_overbought', 70)):
                bearish += 1
        if ind.macd is not None:
            total += 1
            if ind.macd.histogram > 0:
                bullish += 1
            elif ind.macd.histogram < 0:
                bearish += 1
        if ind.short_ma is not None and ind.long_ma is not None:
            total += 1
            if ind.short_ma > ind.long_ma:
                bullish += 1
            elif ind.short_ma < ind.long_ma:
                bearish += 1
        min_confidence = float(self.cfg.get('pattern_trend_confidence', 60))
        for pattern in patterns:
            if pattern.confidence > min_confidence:
                total += 1
                if pattern.bias == Trend.BULLISH:
                    bullish += 1
                elif pattern.bias == Trend.BEARISH:
                    bearish += 1
        if total == 0:
            return Trend.NEUTRAL
        if bullish / total >= 0.5 and bullish > bearish:
            return Trend.BULLISH
        if bearish / total >= 0.5 and bearish > bullish:
            return Trend.BEARISH
        return Trend.NEUTRAL

    def _adjust_regime(self, run: _Run, regime: Optional[Regime], signal_trend: Trend) -> None:
        if regime is None:
            return
        adj = self.cfg.get('regime_adjustments') or {}
        pct = 0.0
        if regime is Regime.BULL and signal_trend != Trend.NEUTRAL:
            pct = adj.get('bull_aligned_pct', 10) if signal_trend == Trend.BULLISH else adj.get('bull_opposed_pct', -10)
        elif regime is Regime.BEAR and signal_trend != Trend.NEUTRAL:
            pct = adj.get('bear_aligned_pct', 10) if signal_trend == Trend.BEARISH else adj.get('bear_opposed_pct', -10)
        elif regime is Regime.VOLATILE:
            pct = adj.get('volatile_pct', -5)
        elif regime is Regime.SIDEWAYS:
            pct = adj.get('sideways_pct', 0)
        bound = float(self.cfg.get('regime_max_pct', 25))
        pct = max(-bound, min(float(pct), bound))
        if pct:
            total = run.total
            run.add('regime', total, pct / 100.0, total * pct / 100.0,
                    f"{regime.value} regime {pct:+.0f}%")

    def _adjust_correlation(self, run: _Run, correlation: Optional[CorrelationSignal],
                            signal_trend: Trend) -> None:
        if correlation is None or signal_trend == Trend.NEUTRAL:
            return
        cfg = self.cfg.get('correlation') or {}
        aligned = correlation.alignment
        if aligned is None:
            if correlation.trend == Trend.NEUTRAL:
                aligned = None
            else:
                aligned = correlation.trend == signal_trend
        if aligned is None and not correlation.bonus:
            return
        pct = correlation.bonus
        if aligned is True:
            pct += float(cfg.get('aligned_pct', 8))
        elif aligned is False:
            pct += float(cfg.get('against_pct', -8))
        if correlation.strength < float(cfg.get('weak_strength', 30)):
            pct *= float(cfg.get('weak_damping', 0.5))
        bound = float(cfg.get('max_pct', 15))
        pct = max(-bound, min(pct, bound))
        total = run.total
        points_bound = float(cfg.get('max_points', 10))
        points = max(-points_bound, min(total * pct / 100.0, points_bound))
        if points:
            run.add('correlation', total, pct / 100.0, points,
                    f"correlation {correlation.trend.value} strength {correlation.strength:.0f}")

    def _confirmation_bonus(self, run: _Run) -> None:
        extra = run.confirmations - int(self.filters.get('min_confirmations', 3))
        if extra > 0:
            bonus = self._w('confirmation_bonus', 5)
            run.add('confirmation_bonus', extra, bonus, extra * bonus,
                    f"{extra} confirmations above minimum")

    def _performance(self, run: _Run, symbol: str) -> None:
        multiplier = self.state.performance_multiplier(symbol)
        if multiplier != 1.0:
            total = run.total
            run.add('performance', total, multiplier, total * (multiplier - 1.0),
                    f"symbol performance x{multiplier:.2f}")

    # Clamp and hysteresis

    @staticmethod
    def _clamp(run: _Run) -> float:
        total = run.total
        clamped = max(0.0, min(total, 100.0))
        if clamped != total:
            run.add('clamp', total, 1.0, clamped - total, 'clamped to [0, 100]')
        return clamped

    def _apply_hysteresis(self, symbol: str, timeframe: str, score: float):
        valid = score >= self.threshold
        prior = self.state.get_decision(symbol, timeframe)
        if prior is not None and self.clock() - prior.decided_at > self.hysteresis_ttl_s:
            prior = None
        if prior is not None:
            if prior.is_valid and not valid and score >= self.threshold - self.hysteresis_band:
                metrics.hysteresis_holds.labels(kept='valid').inc()
                return True, (f"score {score:.1f} within hysteresis band below {self.threshold:g}; "
                              f"kept valid")
            if not prior.is_valid and valid and score < self.threshold + self.hysteresis_band:
                metrics.hysteresis_holds.labels(kept='invalid').inc()
                return False, (f"score {score:.1f} within hysteresis band above {self.threshold:g}; "
                               f"kept invalid")
        if valid:
            return True, f"score {score:.1f} >= {self.threshold:g}"
        return False, f"score {score:.1f} below {self.threshold:g}"
