import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (AttributeError, TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.monitoring else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.evaluations = Counter('signal_evaluations_total', 'Scoring runs by outcome', ['outcome'])
        self.evaluation_latency = Histogram('signal_evaluation_seconds', 'Latency of a single (symbol, timeframe) evaluation')
        self.signal_score = Gauge('signal_last_score', 'Last total score per key', ['symbol', 'timeframe'])
        self.filter_rejections = Counter('quality_filter_rejections_total', 'Quality filter failures', ['filter'])
        self.counter_trend = Counter('counter_trend_decisions_total', 'Counter-trend policy branches taken', ['branch'])
        self.hysteresis_holds = Counter('hysteresis_holds_total', 'Decisions kept by the hysteresis band', ['kept'])

        self.level_corrections = Counter('level_self_corrections_total', 'Ladders recomputed after failing direction checks')
        self.invalid_snapshots = Counter('invalid_candle_snapshots_total', 'Candle series rejected by validation', ['reason'])
        self.indicator_cache = Counter('indicator_cache_total', 'Indicator cache lookups', ['result'])
        self.tuning_runs = Counter('parameter_tuning_total', 'Background tuning passes', ['result'])

        self.active_monitors = Gauge('active_position_monitors', 'Currently tracked positions')
        self.ticks = Counter('price_ticks_total', 'Price ticks handled by the monitor')
        self.dropped_ticks = Counter('price_ticks_dropped_total', 'Ticks dropped before processing', ['reason'])
        self.targets_hit = Counter('position_targets_hit_total', 'Target levels crossed')
        self.completions = Counter('position_completions_total', 'Completed positions', ['reason'])
        self.leveraged_pnl = Histogram(
            'position_leveraged_pnl_pct',
            'Leveraged P&L of completed positions, in percent',
            buckets=(-100, -50, -25, -10, 0, 10, 25, 50, 100, 200),
        )

        self.symbol_errors = Counter('symbol_errors_total', 'Exceptions caught at a per-symbol boundary', ['stage'])
        self.collaborator_fallbacks = Counter('collaborator_fallbacks_total', 'Awaited calls that fell back to a default', ['call'])
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')

    def record_evaluation(self, symbol: str, timeframe: str, score: float, is_valid: bool,
                          latency_seconds: Optional[float] = None):
        self.evaluations.labels(outcome='valid' if is_valid else 'invalid').inc()
        self.signal_score.labels(symbol=symbol, timeframe=timeframe).set(score)
        if latency_seconds is not None:
            self.evaluation_latency.observe(latency_seconds)

    def record_completion(self, reason: str, leveraged_pnl: float):
        self.completions.labels(reason=reason).inc()
        self.leveraged_pnl.observe(leveraged_pnl)

    def update_active_monitors(self, count: int):
        self.active_monitors.set(count)


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
