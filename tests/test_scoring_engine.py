import random
import sys

import pytest

sys.path.insert(0, '.')

from analytics.snapshot import IchimokuValues, IndicatorSnapshot, MACDValues
from config import config
from strategy.adaptive_state import AdaptiveState
from strategy.models import CorrelationSignal, Direction, Trend
from strategy.patterns import PatternSet, infer_bias
from strategy.scoring_engine import ScoringEngine


CANDLES = {'close': [100.0] * 60}


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def bullish_snapshot(**overrides):
    values = dict(
        symbol='BTCUSDT',
        timeframe='1h',
        last_close=100.0,
        rsi=25.0,
        macd=MACDValues(line=1.0, signal=0.8, histogram=0.2),
        short_ma=105.0,
        long_ma=100.0,
        volume_ma=1000.0,
        current_volume=2500.0,
        atr=1.5,
        ichimoku=IchimokuValues(conversion_line=101.0, base_line=100.0),
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)


def make_state(clock=None, **adaptive):
    cfg = {'blacklist_min_trades': 10, 'blacklist_win_rate': 0.3, 'blacklist_duration_s': 86400}
    cfg.update(adaptive)
    return AdaptiveState(cfg, config.section('scoring').get('performance', {}), clock=clock or FakeClock())


def make_engine(state=None, clock=None, scoring=None, rng=None):
    clock = clock or FakeClock()
    state = state or make_state(clock)
    scoring_cfg = config.section('scoring')
    scoring_cfg.update(scoring or {})
    return ScoringEngine(
        scoring_cfg, config.section('quality_filters'), config.section('counter_trend'),
        state=state, clock=clock, rng=rng,
    )


def tunable_engine(volume_points, state, clock, **weights):
    """Fixed-point engine: MACD 30 + MA 15 + ichimoku 10 + volume tier points."""
    scoring = {
        'weights': dict({
            'rsi': 25, 'macd': 30, 'moving_average': 15, 'ichimoku': 10,
            'pattern_base': 0, 'ml': 0, 'confirmation_bonus': 0,
        }, **weights),
        'volume_tiers': [[2.0, volume_points]],
    }
    return make_engine(state, clock, scoring)


def tunable_snapshot():
    return bullish_snapshot(rsi=None)


REVERSAL_PATTERNS = {'double_bottom': {'confidence': 70}}


def extreme_reversal_snapshot():
    """RSI 15, divergence, 2.5x volume and four agreeing indicators."""
    return bullish_snapshot(rsi=15.0, rsi_divergence=True)


def test_strong_aligned_signal_is_valid():
    engine = make_engine()
    result = engine.evaluate(CANDLES, bullish_snapshot(), symbol='BTCUSDT', timeframe='1h')
    assert result.is_valid
    assert result.total_score == pytest.approx(100.0)
    assert result.signal_trend == Trend.BULLISH
    assert result.effective_trend == Trend.BULLISH
    assert result.direction == Direction.LONG
    assert result.confirmation_count == 5
    assert {'MACD_STRONG', 'MA_TREND_STRONG', 'VOLUME_HIGH', 'TREND_ALIGNED'} <= result.strength_factors
    assert 'trend policy: aligned' in result.reason


def test_components_sum_to_total():
    engine = make_engine()
    for regime in (None, 'bull', 'bear', 'volatile', 'sideways'):
        engine.state.reset()
        result = engine.evaluate(CANDLES, bullish_snapshot(), regime=regime)
        assert result.component_total == pytest.approx(result.total_score)
        assert 0.0 <= result.total_score <= 100.0


def test_quality_filters_list_every_failure():
    engine = make_engine()
    weak = bullish_snapshot(
        rsi=50.0,
        macd=MACDValues(line=0.0011, signal=0.0010, histogram=0.001),
        short_ma=100.2,
        current_volume=900.0,
        ichimoku=None,
    )
    result = engine.evaluate(CANDLES, weak)
    assert not result.is_valid
    assert result.reason.startswith('quality filters failed')
    assert 'volume ratio 0.90x below minimum' in result.reason
    assert 'RSI 50.0 inside neutral band' in result.reason
    assert 'MACD histogram' in result.reason
    assert result.component_total == pytest.approx(result.total_score)
    decision = engine.state.get_decision('BTCUSDT', '1h')
    assert decision is not None and not decision.is_valid


def test_missing_inputs_reject_fast_without_storing_decision():
    engine = make_engine()
    no_candles = engine.evaluate(None, bullish_snapshot())
    assert not no_candles.is_valid
    assert no_candles.total_score == 0.0
    assert no_candles.reason == 'missing candles'

    no_indicators = engine.evaluate(CANDLES, None, symbol='ETHUSDT', timeframe='4h')
    assert no_indicators.reason == 'missing indicators'
    assert no_indicators.symbol == 'ETHUSDT'
    assert engine.state.get_decision('BTCUSDT', '1h') is None
    assert engine.state.get_decision('ETHUSDT', '4h') is None

    empty = engine.evaluate({'close': []}, bullish_snapshot())
    assert empty.reason == 'missing candles'


def test_blacklisted_symbol_scores_zero():
    state = make_state(blacklist_min_trades=1)
    state.record_outcome('BTCUSDT', '1h', False, -30.0)
    result = make_engine(state).evaluate(CANDLES, bullish_snapshot())
    assert not result.is_valid
    assert result.total_score == 0.0
    assert result.reason == 'blacklisted'


def test_tunable_engine_score_is_exact():
    clock = FakeClock()
    state = make_state(clock)
    result = tunable_engine(16, state, clock).evaluate(CANDLES, tunable_snapshot(), regime='sideways')
    assert result.total_score == pytest.approx(71.0)
    assert result.is_valid


def test_hysteresis_keeps_decision_within_band():
    clock = FakeClock()
    state = make_state(clock)

    def score(points):
        return tunable_engine(points, state, clock).evaluate(CANDLES, tunable_snapshot(), regime='sideways')

    assert score(16).is_valid                      # 71
    held = score(14)                               # 69, within 3 of 70
    assert held.total_score == pytest.approx(69.0)
    assert held.is_valid
    assert 'kept valid' in held.reason
    assert not score(10).is_valid                  # 65
    blocked = score(16)                            # 71 after an invalid decision
    assert not blocked.is_valid
    assert 'kept invalid' in blocked.reason
    assert score(20).is_valid                      # 75 clears the band


def test_hysteresis_ignores_stale_decisions():
    clock = FakeClock()
    state = make_state(clock)
    engine = tunable_engine(16, state, clock)
    engine.evaluate(CANDLES, tunable_snapshot(), regime='sideways')
    clock.now += 6 * 3600 + 1
    result = tunable_engine(14, state, clock).evaluate(CANDLES, tunable_snapshot(), regime='sideways')
    assert not result.is_valid


def test_alternating_scores_around_threshold_do_not_flip():
    clock = FakeClock()
    state = make_state(clock)
    flags = []
    for points in (16, 14, 16, 14, 16, 14):
        result = tunable_engine(points, state, clock).evaluate(CANDLES, tunable_snapshot(), regime='sideways')
        flags.append(result.is_valid)
    assert flags == [True] * 6


def test_counter_trend_daily_cap_limits_score():
    clock = FakeClock()
    state = make_state(clock)
    for _ in range(3):
        state.record_counter_trend()
    result = make_engine(state, clock).evaluate(CANDLES, bullish_snapshot(), regime='bear')
    assert result.signal_trend == Trend.BULLISH
    assert result.effective_trend == Trend.BEARISH
    assert 'COUNTER_TREND' in result.strength_factors
    assert result.total_score <= 20.0
    assert not result.is_valid
    assert 'daily_cap' in result.reason
    assert result.component_total == pytest.approx(result.total_score)


def test_daily_cap_holds_even_for_extreme_reversal():
    clock = FakeClock()
    state = make_state(clock)
    for _ in range(3):
        state.record_counter_trend()
    result = make_engine(state, clock).evaluate(
        CANDLES, extreme_reversal_snapshot(), patterns=REVERSAL_PATTERNS, regime='bear',
    )
    assert 'daily_cap' in result.reason
    assert result.total_score <= 20.0
    assert not result.is_valid
    assert state.counter_trend_count_today() == 3


def test_extreme_reversal_gets_bonus_and_is_counted():
    clock = FakeClock()
    state = make_state(clock)
    result = make_engine(state, clock).evaluate(
        CANDLES, extreme_reversal_snapshot(), patterns=REVERSAL_PATTERNS, regime='bear',
    )
    assert 'extreme_reversal' in result.reason
    assert 'RSI_EXTREME' in result.strength_factors
    reversal = [c for c in result.score_components if c.name == 'reversal_strength']
    assert reversal[0].weight == pytest.approx(1.15)
    assert '100/100' in reversal[0].description
    assert result.is_valid
    assert result.total_score == pytest.approx(100.0)
    assert state.counter_trend_count_today() == 1
    assert state.last_counter_trend_at() == clock.now


def test_weak_reversal_is_damped_and_not_counted():
    clock = FakeClock()
    state = make_state(clock)
    result = make_engine(state, clock).evaluate(CANDLES, bullish_snapshot(), regime='bear')
    assert 'weak_reversal' in result.reason
    assert state.counter_trend_count_today() == 0
    assert not result.is_valid


def test_strong_reversal_is_counted_then_cooldown_applies():
    clock = FakeClock()
    state = make_state(clock)
    engine = make_engine(state, clock)
    strong = engine.evaluate(CANDLES, bullish_snapshot(rsi_divergence=True), regime='bear')
    assert 'strong_reversal' in strong.reason
    assert strong.is_valid
    assert state.counter_trend_count_today() == 1

    clock.now += 60
    again = engine.evaluate(CANDLES, bullish_snapshot(rsi_divergence=True), regime='bear',
                            symbol='ETHUSDT', timeframe='1h')
    assert 'cooldown' in again.reason
    assert again.total_score < strong.total_score
    assert state.counter_trend_count_today() == 1


def test_rejected_counter_trend_does_not_use_daily_budget():
    clock = FakeClock()
    state = make_state(clock)
    low_weights = {
        'rsi': 5, 'rsi_depth_factor': 0, 'macd': 5, 'moving_average': 5, 'ichimoku': 2,
        'rsi_divergence': 2, 'pattern_base': 0, 'ml': 0, 'confirmation_bonus': 0,
    }
    weak_engine = make_engine(state, clock, {'weights': low_weights})
    rejected = weak_engine.evaluate(CANDLES, bullish_snapshot(rsi_divergence=True), regime='bear')
    assert 'strong_reversal' in rejected.reason
    assert not rejected.is_valid
    assert state.counter_trend_count_today() == 0
    assert state.last_counter_trend_at() is None

    clock.now += 60
    accepted = make_engine(state, clock).evaluate(
        CANDLES, bullish_snapshot(rsi_divergence=True), regime='bear', symbol='ETHUSDT',
    )
    assert 'strong_reversal' in accepted.reason
    assert accepted.is_valid
    assert state.counter_trend_count_today() == 1


def test_commit_rechecks_cap_reached_after_scoring():
    clock = FakeClock()
    state = make_state(clock)
    engine = make_engine(state, clock)
    assert engine.policy.commit_usage('BTCUSDT')
    for _ in range(2):
        state.record_counter_trend()
    assert not engine.policy.commit_usage('ETHUSDT')
    assert state.counter_trend_count_today() == 3


def test_ml_driven_flag():
    clock = FakeClock()
    state = make_state(clock)
    engine = tunable_engine(16, state, clock, ml=1.0)
    result = engine.evaluate(CANDLES, tunable_snapshot(), ml_probability=0.9, regime='sideways')
    assert result.is_ml_driven
    assert 'ML_CONFIRMED' in result.strength_factors

    neutral = make_engine().evaluate(CANDLES, bullish_snapshot(), ml_probability=0.9)
    assert not neutral.is_ml_driven


@pytest.mark.parametrize('probability', [None, 'x', float('nan')])
def test_unusable_ml_probability_defaults_to_neutral(probability):
    result = make_engine().evaluate(CANDLES, bullish_snapshot(), ml_probability=probability)
    assert result.ml_probability == 0.5


def test_patterns_are_scored_and_capped():
    engine = make_engine()
    patterns = {
        'breakout': {'confidence': 80, 'direction': 'bullish'},
        'double_bottom': {'confidence': 70},
        'wedge': {'confidence': 100, 'type': 'falling_wedge'},
        'candlestick': ['HAMMER'],
        'triangle': None,
    }
    result = engine.evaluate(CANDLES, bullish_snapshot(), patterns=patterns)
    names = [c.name for c in result.score_components]
    assert 'pattern:breakout' in names
    assert 'pattern:HAMMER' in names
    assert 'pattern:triangle' not in names
    pattern_points = sum(c.weighted_value for c in result.score_components
                         if c.name.startswith('pattern'))
    assert pattern_points == pytest.approx(40.0)
    assert 'BREAKOUT' in result.strength_factors


def test_pattern_bias_matches_whole_tokens():
    assert infer_bias('support_retest') == Trend.NEUTRAL
    assert infer_bias('pullup') == Trend.NEUTRAL
    assert infer_bias('topping_tail') == Trend.NEUTRAL
    assert infer_bias('double_bottom') == Trend.BULLISH
    assert infer_bias('BEARISH_ENGULFING') == Trend.BEARISH
    assert infer_bias(None, 'inverse_head_and_shoulders') == Trend.BULLISH
    assert infer_bias('head_and_shoulders') == Trend.BEARISH
    assert infer_bias('up', 'double_top') == Trend.BULLISH
    assert infer_bias('falling wedge') == Trend.BULLISH

    patterns = PatternSet.from_mapping({'flag': {'confidence': 65, 'type': 'pullup_flag'}})
    assert next(iter(patterns)).bias == Trend.NEUTRAL


def test_sideways_breakout_bonus():
    clock = FakeClock()
    state = make_state(clock)
    engine = tunable_engine(5, state, clock)
    patterns = PatternSet.from_mapping({'breakout': {'confidence': 75, 'direction': 'bullish'}})
    result = engine.evaluate(CANDLES, tunable_snapshot(), patterns=patterns, regime='sideways')
    assert 'sideways_breakout' in result.reason
    # (55 + 25 * 0.75 + 5) * 1.25
    assert result.total_score == pytest.approx(98.4375)


def test_aligned_correlation_adds_bonus():
    clock = FakeClock()
    state = make_state(clock)
    plain = tunable_engine(5, state, clock).evaluate(CANDLES, tunable_snapshot())
    state.reset()
    correlated = tunable_engine(5, state, clock).evaluate(
        CANDLES, tunable_snapshot(),
        correlation=CorrelationSignal(trend=Trend.BULLISH, strength=80.0),
    )
    assert correlated.total_score > plain.total_score
    assert any(c.name == 'correlation' for c in correlated.score_components)


def test_evaluation_is_deterministic_without_jitter():
    first = make_engine().evaluate(CANDLES, bullish_snapshot(), regime='volatile')
    second = make_engine().evaluate(CANDLES, bullish_snapshot(), regime='volatile')
    assert first.total_score == second.total_score
    assert first.score_components == second.score_components


def test_seeded_jitter_is_reproducible_and_bounded():
    def run():
        clock = FakeClock()
        state = make_state(clock)
        engine = make_engine(state, clock, {'jitter_pct': 2.0}, rng=random.Random(7))
        return engine.evaluate(CANDLES, bullish_snapshot(short_ma=100.6, current_volume=1300.0), regime='sideways')

    a, b = run(), run()
    assert a.total_score == b.total_score
    jitter = [c for c in a.score_components if c.name == 'jitter']
    assert len(jitter) == 1
    assert abs(jitter[0].raw_value) <= 2.0
