import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from analytics.snapshot import IndicatorSnapshot
from api.metrics import metrics
from config.utils import resolve_section
from strategy.adaptive_state import AdaptiveState
from strategy.models import CorrelationSignal, Regime, ScoreComponent, Trend
from strategy.patterns import PatternSet


logger = logging.getLogger(__name__)

ALIGNED = 'aligned'
DAILY_CAP = 'daily_cap'
COOLDOWN = 'cooldown'
WEAK_REVERSAL = 'weak_reversal'
STRONG_REVERSAL = 'strong_reversal'
EXTREME_REVERSAL = 'extreme_reversal'
SIDEWAYS_BREAKOUT = 'sideways_breakout'


@dataclass
class TrendDecision:
    branch: Optional[str] = None
    components: List[ScoreComponent] = field(default_factory=list)
    reversal_strength: Optional[float] = None
    is_counter_trend: bool = False
    tags: List[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.branch == DAILY_CAP

    @property
    def records_usage(self) -> bool:
        return self.branch in (STRONG_REVERSAL, EXTREME_REVERSAL)


def _scaled(name: str, total: float, multiplier: float, description: str) -> ScoreComponent:
    return ScoreComponent(
        name=name,
        raw_value=total,
        weight=multiplier,
        weighted_value=total * (multiplier - 1.0),
        description=description,
    )


class CounterTrendPolicy:
    """Trend-priority rules applied to a running score.

    Signals that agree with the effective trend get a bonus. Signals against
    it pass, in order, a global daily cap, a cooldown since the previous
    counter-trend signal, and a reversal-strength grade. A strong reversal only
    counts against the daily budget once the engine emits it as a valid
    signal, through :meth:`commit_usage`.
    """

    def __init__(self, counter_trend_cfg: Optional[Dict] = None, scoring_cfg: Optional[Dict] = None,
                 state: Optional[AdaptiveState] = None):
        self.cfg = resolve_section(counter_trend_cfg, 'counter_trend')
        self.scoring_cfg = resolve_section(scoring_cfg, 'scoring')
        self.state = state if state is not None else AdaptiveState()

        self.max_per_day = int(self.cfg.get('max_per_day', 3))
        self.cooldown_s = float(self.cfg.get('cooldown_s', 14400))
        self.daily_cap_multiplier = float(self.cfg.get('daily_cap_multiplier', 0.2))
        self.blocked_score_cap = float(self.cfg.get('blocked_score_cap', 20))
        self.cooldown_multiplier = float(self.cfg.get('cooldown_multiplier', 0.5))
        self.min_reversal_strength = float(self.cfg.get('min_reversal_strength', 60))
        self.extreme_reversal_threshold = float(self.cfg.get('extreme_reversal_threshold', 85))
        self.weak_multiplier = float(self.cfg.get('weak_reversal_multiplier', 0.3))
        self.strong_multiplier = float(self.cfg.get('strong_reversal_multiplier', 1.05))
        self.extreme_multiplier = float(self.cfg.get('extreme_reversal_multiplier', 1.15))
        self.aligned_bonus_pct = float(self.cfg.get('aligned_bonus_pct', 10))
        self.aligned_correlation_bonus_pct = float(self.cfg.get('aligned_correlation_bonus_pct', 5))
        self.sideways_breakout_multiplier = float(self.cfg.get('sideways_breakout_multiplier', 1.25))
        self.sideways_breakout_confidence = float(self.cfg.get('sideways_breakout_confidence', 70))
        self.min_volume_spike = float(self.cfg.get('min_volume_spike', 2.0))
        self.reversal_points: Dict[str, float] = dict(self.cfg.get('reversal_points') or {})
        self.convergence_min_indicators = int(self.cfg.get('convergence_min_indicators', 3))

        self.rsi_oversold = float(self.scoring_cfg.get('rsi_oversold', 30))
        self.rsi_overbought = float(self.scoring_cfg.get('rsi_overbought', 70))
        self.rsi_extreme_low = float(self.scoring_cfg.get('rsi_extreme_low', 20))
        self.rsi_extreme_high = float(self.scoring_cfg.get('rsi_extreme_high', 80))
        self.local_trend_band_pct = float(self.scoring_cfg.get('local_trend_band_pct', 0.5))

    def effective_trend(self, regime: Optional[Regime], indicators: IndicatorSnapshot) -> Trend:
        """Regime when it names a direction, else a moving-average fallback."""
        if regime is Regime.BULL:
            return Trend.BULLISH
        if regime is Regime.BEAR:
            return Trend.BEARISH
        if regime is Regime.SIDEWAYS:
            return Trend.NEUTRAL
        short_ma, long_ma = indicators.short_ma, indicators.long_ma
        if short_ma is None or long_ma is None or long_ma <= 0:
            return Trend.NEUTRAL
        band = long_ma * self.local_trend_band_pct / 100.0
        if short_ma > long_ma + band:
            return Trend.BULLISH
        if short_ma < long_ma - band:
            return Trend.BEARISH
        return Trend.NEUTRAL

    def reversal_strength(self, signal_trend: Trend, indicators: IndicatorSnapshot,
                          patterns: PatternSet, indicator_components: Sequence[ScoreComponent]) -> float:
        points = self.reversal_points
        strength = 0.0
        rsi = indicators.rsi
        if rsi is not None:
            if rsi <= self.rsi_extreme_low or rsi >= self.rsi_extreme_high:
                strength += float(points.get('rsi_extreme', 30))
            elif rsi <= self.rsi_oversold or rsi >= self.rsi_overbought:
                strength += float(points.get('rsi_zone', 20))
        if indicators.rsi_divergence:
            strength += float(points.get('divergence', 20))
        if any(p.bias in (signal_trend, Trend.NEUTRAL) for p in patterns.reversals()):
            strength += float(points.get('reversal_pattern', 20))
        ratio = indicators.volume_ratio
        if ratio is not None and ratio >= self.min_volume_spike:
            strength += float(points.get('volume_spike', 15))
        agreeing = sum(1 for c in indicator_components if c.bias == signal_trend)
        if agreeing >= self.convergence_min_indicators:
            strength += float(points.get('convergence', 15))
        return min(100.0, strength)

    def apply(self, total: float, symbol: str, signal_trend: Trend, effective_trend: Trend,
              indicators: IndicatorSnapshot, patterns: PatternSet,
              correlation: Optional[CorrelationSignal],
              indicator_components: Sequence[ScoreComponent]) -> TrendDecision:
        decision = TrendDecision()
        if signal_trend == Trend.NEUTRAL:
            return decision

        if effective_trend == Trend.NEUTRAL:
            breakout = patterns.breakout
            if (
                breakout is not None
                and breakout.confidence >= self.sideways_breakout_confidence
                and breakout.bias in (signal_trend, Trend.NEUTRAL)
            ):
                decision.branch = SIDEWAYS_BREAKOUT
                decision.components.append(_scaled(
                    'sideways_breakout', total, self.sideways_breakout_multiplier,
                    f"breakout {breakout.confidence:.0f}% in a sideways market",
                ))
                metrics.counter_trend.labels(branch=SIDEWAYS_BREAKOUT).inc()
            return decision

        if signal_trend == effective_trend:
            pct = self.aligned_bonus_pct
            if correlation is not None and correlation.trend == signal_trend:
                pct += self.aligned_correlation_bonus_pct
            decision.branch = ALIGNED
            decision.tags.append('TREND_ALIGNED')
            decision.components.append(ScoreComponent(
                name='trend_priority',
                raw_value=total,
                weight=pct / 100.0,
                weighted_value=total * pct / 100.0,
                description=f"{signal_trend.value} signal with {effective_trend.value} trend",
            ))
            metrics.counter_trend.labels(branch=ALIGNED).inc()
            return decision

        decision.is_counter_trend = True
        decision.tags.append('COUNTER_TREND')
        with self.state.global_lock:
            used = self.state.counter_trend_count_today()
            last_at = self.state.last_counter_trend_at()
            if used >= self.max_per_day:
                capped = min(total * self.daily_cap_multiplier, self.blocked_score_cap)
                decision.branch = DAILY_CAP
                decision.components.append(ScoreComponent(
                    name='counter_trend_cap',
                    raw_value=total,
                    weight=self.daily_cap_multiplier,
                    weighted_value=capped - total,
                    description=f"daily counter-trend cap reached ({used}/{self.max_per_day})",
                ))
            elif last_at is not None and self.state.clock() - last_at < self.cooldown_s:
                remaining = self.cooldown_s - (self.state.clock() - last_at)
                decision.branch = COOLDOWN
                decision.components.append(_scaled(
                    'counter_trend_cooldown', total, self.cooldown_multiplier,
                    f"counter-trend cooldown active ({remaining / 60:.0f}m left)",
                ))
            else:
                strength = self.reversal_strength(signal_trend, indicators, patterns, indicator_components)
                decision.reversal_strength = strength
                if strength < self.min_reversal_strength:
                    decision.branch = WEAK_REVERSAL
                    multiplier = self.weak_multiplier
                elif strength >= self.extreme_reversal_threshold:
                    decision.branch = EXTREME_REVERSAL
                    multiplier = self.extreme_multiplier
                else:
                    decision.branch = STRONG_REVERSAL
                    multiplier = self.strong_multiplier
                decision.components.append(_scaled(
                    'reversal_strength', total, multiplier,
                    f"{decision.branch.replace('_', ' ')} {strength:.0f}/100",
                ))

        metrics.counter_trend.labels(branch=decision.branch).inc()
        logger.info("%s: counter-trend %s vs %s -> %s", symbol, signal_trend.value,
                    effective_trend.value, decision.branch)
        return decision

    def commit_usage(self, symbol: str) -> bool:
        """Count an emitted counter-trend signal against the daily budget.

        Returns False without recording when the cap was reached after the
        signal was scored.
        """
        with self.state.global_lock:
            used = self.state.counter_trend_count_today()
            if used >= self.max_per_day:
                logger.info("%s: counter-trend cap reached before commit (%d/%d)",
                            symbol, used, self.max_per_day)
                return False
            count = self.state.record_counter_trend()
        logger.info("%s: counter-trend signal recorded (%d/%d today)", symbol, count, self.max_per_day)
        return True
