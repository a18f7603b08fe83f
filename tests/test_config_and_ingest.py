import asyncio
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, '.')

from analytics.candles import CandleSeries
from config.config_loader import Config
from config.utils import get_config_section, resolve_section
from ingest.price_stream import PriceTickStream
from risk.risk_manager import RiskManager
from strategy.errors import InsufficientDataError
from strategy.models import Completed


def test_config_resolves_env_placeholders(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "monitoring:\n"
        "  alert_webhook: ${TEST_HOOK_URL}\n"
        "  missing: ${TEST_HOOK_UNSET}\n"
        "  region: ${TEST_HOOK_UNSET:-eu}\n"
        "  url: https://${TEST_HOOK_HOST:-example.org}/alerts\n"
        "levels:\n"
        "  target_percentages: [1.0, 2.0]\n"
    )
    monkeypatch.setenv('TEST_HOOK_URL', 'http://hooks.local/x')
    monkeypatch.delenv('TEST_HOOK_UNSET', raising=False)
    monkeypatch.delenv('TEST_HOOK_HOST', raising=False)
    cfg = Config(str(path))
    assert cfg.monitoring['alert_webhook'] == 'http://hooks.local/x'
    assert cfg.monitoring['missing'] == '${TEST_HOOK_UNSET}'
    assert cfg.monitoring['region'] == 'eu'
    assert cfg.monitoring.url == 'https://example.org/alerts'
    assert cfg.levels.get('target_percentages') == [1.0, 2.0]

    section = cfg.section('levels')
    section['target_percentages'].append(3.0)
    assert cfg.section('levels')['target_percentages'] == [1.0, 2.0]
    assert cfg.section('absent') == {}


def test_reload_picks_up_edited_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("risk:\n  max_concurrent_monitors: 3\n")
    cfg = Config(str(path))
    assert cfg.sections() == ['risk']
    path.write_text("risk:\n  max_concurrent_monitors: 5\nmonitor:\n  leverage: 10\n")
    cfg.reload()
    assert cfg.risk.max_concurrent_monitors == 5
    assert sorted(cfg.sections()) == ['monitor', 'risk']

    path.write_text("- not\n- a mapping\n")
    with pytest.raises(RuntimeError):
        cfg.reload()


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'nope.yaml'))


def test_section_helpers():
    assert get_config_section({'risk': {'max_concurrent_monitors': 3}}, 'risk') == {'max_concurrent_monitors': 3}
    assert get_config_section(None, 'risk') == {}
    assert resolve_section({'leverage': 10}, 'monitor') == {'leverage': 10}
    assert 'leverage' in resolve_section(None, 'monitor')


def test_bundled_config_has_every_section():
    from config import config
    expected = ('exchange', 'universe', 'indicators', 'tuning', 'scoring', 'quality_filters',
                'counter_trend', 'levels', 'monitor', 'risk', 'pipeline', 'adaptive', 'monitoring')
    assert set(expected) <= set(config.sections())
    for name in expected:
        assert config.section(name), name


def test_candles_from_klines():
    klines = [
        [1700000000000 + i * 60000, '100.0', '101.0', '99.0', str(100.0 + i), '12.5', 0]
        for i in range(3)
    ]
    series = CandleSeries.from_klines(klines)
    assert len(series) == 3
    assert series.last_close == 102.0
    assert series.coherence_key == (3, 102.0)
    assert series.volume.tolist() == [12.5, 12.5, 12.5]


def test_candles_missing_field_raises():
    with pytest.raises(InsufficientDataError):
        CandleSeries.from_mapping({'open': [1.0], 'high': [1.0], 'low': [1.0], 'close': [1.0]})


def test_tick_stream_delivers_mark_price():
    stream = PriceTickStream({'ws_base_url': 'ws://127.0.0.1:9/ws', 'reconnect_backoff': [5]})
    ticks = []

    async def scenario():
        stream.subscribe('BTCUSDT', lambda s, p, ts: ticks.append((s, p, ts)))
        assert stream.subscribed() == ['BTCUSDT']
        stream._deliver('BTCUSDT', {'e': 'markPriceUpdate', 'E': 1700000000123, 'p': '43000.5'})
        stream.unsubscribe('BTCUSDT')
        stream._deliver('BTCUSDT', {'p': '1'})
        await stream.close()

    asyncio.run(scenario())
    assert ticks == [('BTCUSDT', '43000.5', 1700000000.123)]
    assert stream.subscribed() == []


def test_risk_manager_caps_and_daily_roll():
    now = [datetime(2024, 3, 1, 23, 0, tzinfo=timezone.utc).timestamp()]
    risk = RiskManager({'max_concurrent_monitors': 2}, clock=lambda: now[0])
    assert risk.can_open('BTCUSDT', []) == (True, 'ok')
    assert not risk.can_open('BTCUSDT', ['BTCUSDT'])[0]
    assert not risk.can_open('SOLUSDT', ['BTCUSDT', 'ETHUSDT'])[0]

    risk.on_event(Completed('BTCUSDT', 'stop loss', -4.5, -67.5, 1000, 0, 95.5))
    risk.on_event(object())
    stats = risk.daily_stats()
    assert stats['trades'] == 1 and stats['losses'] == 1
    assert stats['date'] == '2024-03-01'

    now[0] += 2 * 3600
    assert risk.daily_stats()['trades'] == 0
