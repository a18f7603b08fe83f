import sys

import pytest

sys.path.insert(0, '.')

from monitoring.outcome_recorder import OutcomeRecorder
from strategy.adaptive_state import AdaptiveState
from strategy.models import OutcomeRecord


# 2023-11-14 22:13:20 UTC
START = 1_700_000_000.0

PERFORMANCE = {
    'min_trades_for_adjustment': 5,
    'strong_win_rate': 0.6,
    'weak_win_rate': 0.4,
    'strong_multiplier': 1.1,
    'weak_multiplier': 0.9,
}


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


def make_state(clock=None, **adaptive):
    cfg = {'blacklist_min_trades': 10, 'blacklist_win_rate': 0.3, 'blacklist_duration_s': 86400}
    cfg.update(adaptive)
    return AdaptiveState(cfg, PERFORMANCE, clock=clock or FakeClock())


def test_decisions_are_stored_per_key():
    state = make_state()
    assert state.get_decision('BTCUSDT', '1h') is None
    state.store_decision('BTCUSDT', '1h', 72.5, True)
    decision = state.get_decision('BTCUSDT', '1h')
    assert decision.score == 72.5 and decision.is_valid
    assert decision.decided_at == START
    assert state.get_decision('BTCUSDT', '4h') is None


def test_counter_trend_counter_rolls_at_utc_midnight():
    clock = FakeClock()
    state = make_state(clock)
    state.record_counter_trend()
    state.record_counter_trend()
    assert state.counter_trend_count_today() == 2
    assert state.last_counter_trend_at() == START

    # 22:13 UTC + 2h crosses midnight
    clock.now += 2 * 3600
    assert state.counter_trend_count_today() == 0
    assert state.record_counter_trend() == 1


def test_blacklist_after_poor_win_rate_and_expiry():
    clock = FakeClock()
    state = make_state(clock)
    for i in range(10):
        assert not state.is_blacklisted('DOGEUSDT')
        state.record_outcome('DOGEUSDT', '15m', i < 2, 30.0 if i < 2 else -20.0)
    assert state.stats('DOGEUSDT').win_rate == pytest.approx(0.2)
    assert state.is_blacklisted('DOGEUSDT')

    clock.now += 86400 - 1
    assert state.is_blacklisted('DOGEUSDT')
    clock.now += 1
    assert not state.is_blacklisted('DOGEUSDT')


def test_blacklist_needs_enough_trades():
    state = make_state()
    for _ in range(9):
        state.record_outcome('ADAUSDT', '1h', False, -10.0)
    assert not state.is_blacklisted('ADAUSDT')


def test_manual_blacklist_removal():
    state = make_state(blacklist_min_trades=1)
    state.record_outcome('ADAUSDT', '1h', False, -10.0)
    assert state.is_blacklisted('ADAUSDT')
    assert state.remove_from_blacklist('ADAUSDT')
    assert not state.remove_from_blacklist('ADAUSDT')
    assert not state.is_blacklisted('ADAUSDT')


def test_stats_split_by_key_and_symbol():
    state = make_state()
    state.record_outcome('ETHUSDT', '1h', True, 45.0)
    state.record_outcome('ETHUSDT', '4h', False, -30.0)
    assert state.stats('ETHUSDT', '1h').trades == 1
    combined = state.stats('ETHUSDT')
    assert combined.trades == 2
    assert combined.wins == 1
    assert combined.total_leveraged_pnl == pytest.approx(15.0)


def test_performance_multiplier():
    state = make_state()
    for _ in range(4):
        state.record_outcome('BTCUSDT', '1h', True, 10.0)
    assert state.performance_multiplier('BTCUSDT') == 1.0
    state.record_outcome('BTCUSDT', '1h', True, 10.0)
    assert state.performance_multiplier('BTCUSDT') == pytest.approx(1.1)

    for _ in range(5):
        state.record_outcome('XRPUSDT', '1h', False, -10.0)
    assert state.performance_multiplier('XRPUSDT') == pytest.approx(0.9)


def test_reset_clears_everything():
    state = make_state(blacklist_min_trades=1)
    state.store_decision('BTCUSDT', '1h', 80.0, True)
    state.record_counter_trend()
    state.record_outcome('BTCUSDT', '1h', False, -5.0)
    assert state.is_blacklisted('BTCUSDT')

    state.reset()
    assert state.get_decision('BTCUSDT', '1h') is None
    assert state.counter_trend_count_today() == 0
    assert state.last_counter_trend_at() is None
    assert state.stats('BTCUSDT').trades == 0
    assert not state.is_blacklisted('BTCUSDT')


def test_state_summary_reflects_counters_and_blacklist():
    clock = FakeClock()
    state = make_state(clock, blacklist_min_trades=1)
    state.record_counter_trend()
    state.record_outcome('ADAUSDT', '1h', False, -12.0)
    summary = state.to_dict()
    assert summary['counter_trend_today'] == 1
    assert summary['last_counter_trend_at'] == START
    assert summary['blacklist'] == {'ADAUSDT': START + 86400}
    assert summary['symbols']['ADAUSDT']['losses'] == 1

    clock.now += 2 * 3600
    assert state.to_dict()['counter_trend_today'] == 0


def test_isolated_instances_do_not_share_state():
    a, b = make_state(), make_state()
    a.record_counter_trend()
    a.store_decision('BTCUSDT', '1h', 50.0, False)
    assert b.counter_trend_count_today() == 0
    assert b.get_decision('BTCUSDT', '1h') is None


def test_outcome_recorder_appends_json_lines(tmp_path):
    recorder = OutcomeRecorder(str(tmp_path / 'nested' / 'outcomes.jsonl'))
    assert recorder.read_all() == []
    for reason, pnl in (('all targets', 7.0), ('stop loss', -4.5)):
        recorder.record(OutcomeRecord(
            symbol='BTCUSDT', timeframe='1h', direction='long', reason=reason,
            targets_hit=2 if pnl > 0 else 0, final_pnl=pnl, leveraged_pnl=pnl * 15,
            is_win=pnl > 0, duration_ms=1000, indicators_at_entry={'rsi': 28.0},
        ))
    rows = recorder.read_all()
    assert recorder.recorded == 2
    assert [r['reason'] for r in rows] == ['all targets', 'stop loss']
    assert rows[0]['indicators_at_entry'] == {'rsi': 28.0}
    assert rows[1]['leveraged_pnl'] == pytest.approx(-67.5)


def test_outcome_recorder_survives_unwritable_path(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('not a directory')
    recorder = OutcomeRecorder(str(blocker / 'outcomes.jsonl'))
    recorder.record(OutcomeRecord(
        symbol='BTCUSDT', timeframe='1h', direction='short', reason='manual',
        targets_hit=0, final_pnl=0.0, leveraged_pnl=0.0, is_win=False, duration_ms=0,
    ))
    assert recorder.recorded == 0
