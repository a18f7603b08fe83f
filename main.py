import asyncio
import logging
from typing import List, Optional

from analytics.indicator_aggregator import IndicatorAggregator
from api.alerts import LifecycleWebhook
from api.metrics import metrics, start_metrics_server
from config import config
from ingest.binance_rest import BinanceRESTClient
from ingest.price_stream import PriceTickStream
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.outcome_recorder import OutcomeRecorder
from orchestration.services import CycleSummary, SignalPipeline
from risk.risk_manager import RiskManager
from strategy.adaptive_state import AdaptiveState
from strategy.level_calculator import LevelCalculator
from strategy.position_monitor import PositionMonitorService
from strategy.scoring_engine import ScoringEngine


logger = logging.getLogger(__name__)


class SignalSystem:
    """Wire config, scoring, levels, live monitoring, and the periodic cycle."""

    def __init__(self, config_obj=None, candle_source=None, tick_stream=None,
                 pattern_detector=None, ml_estimator=None, correlation_provider=None,
                 regime_provider=None):
        self.config = config_obj or config
        self.universe_cfg = self.config.section('universe')
        self.pipeline_cfg = self.config.section('pipeline')
        self.monitoring_cfg = self.config.section('monitoring')
        self.scoring_cfg = self.config.section('scoring')

        self.symbols: List[str] = list(self.universe_cfg.get('symbols') or [])
        self.timeframes: List[str] = list(self.universe_cfg.get('timeframes') or [])
        self.interval_s = float(self.pipeline_cfg.get('interval_s', 7200))

        self.state = AdaptiveState(
            self.config.section('adaptive'), self.scoring_cfg.get('performance', {}),
        )
        self.aggregator = IndicatorAggregator(
            self.config.section('indicators'), self.config.section('tuning'),
        )
        self.engine = ScoringEngine(
            self.scoring_cfg, self.config.section('quality_filters'),
            self.config.section('counter_trend'), state=self.state,
        )
        self.level_calculator = LevelCalculator(self.config.section('levels'))
        self.recorder = OutcomeRecorder(self.monitoring_cfg.get('outcome_log'))

        exchange_cfg = self.config.section('exchange')
        self.rest_client: Optional[BinanceRESTClient] = None
        if candle_source is None:
            self.rest_client = BinanceRESTClient(
                exchange_cfg.get('rest_base_url'), self.universe_cfg.get('candle_limit'),
            )
            candle_source = self.rest_client
        self.tick_stream = tick_stream or PriceTickStream(exchange_cfg)

        self.monitor = PositionMonitorService(
            self.config.section('monitor'), state=self.state,
            tick_stream=self.tick_stream, recorder=self.recorder,
        )
        self.risk = RiskManager(self.config.section('risk'))
        self.webhook = LifecycleWebhook(self.monitoring_cfg)
        self.monitor.add_listener(self.risk.on_event)
        self.monitor.add_listener(self.webhook.on_event)

        self.pipeline = SignalPipeline(
            self.aggregator, self.engine, self.level_calculator, self.monitor, candle_source,
            risk=self.risk,
            pattern_detector=pattern_detector,
            ml_estimator=ml_estimator,
            correlation_provider=correlation_provider,
            regime_provider=regime_provider,
            notifier=self.webhook,
            pipeline_cfg=self.pipeline_cfg,
        )
        self.running = False

    async def run_once(self) -> CycleSummary:
        summary = await self.pipeline.run_cycle(self.symbols, self.timeframes)
        metrics.update_active_monitors(len(self.monitor))
        if summary.opened is not None:
            logger.info(
                "Monitoring %s %s from %.6f (score %.1f)",
                summary.opened.symbol, summary.opened.direction.value,
                summary.opened.entry, summary.best.total_score,
            )
        return summary

    async def run_cycles(self):
        while self.running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Evaluation cycle failed")
                metrics.symbol_errors.labels(stage='cycle').inc()
            await asyncio.sleep(self.interval_s)

    async def report_monitors(self, every_s: float = 300.0):
        while self.running:
            await asyncio.sleep(every_s)
            for symbol, snap in self.monitor.snapshot().items():
                logger.info(
                    "[Monitor] %s pnl=%.2f%% peak=%.2f%% targets=%d stop=%.6f",
                    symbol, snap['current_pnl'], snap['peak_profit'],
                    snap['targets_hit'], snap['stop_loss'],
                )
            logger.info("[Risk] %s", self.risk.daily_stats())
            logger.info("[Adaptive] %s", self.state.to_dict())

    async def start(self):
        self.running = True
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))
        tasks = [
            asyncio.create_task(self.run_cycles()),
            asyncio.create_task(self.report_monitors()),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        closed = self.monitor.close_all('shutdown')
        if closed:
            logger.info("Closed %d monitors on shutdown", len(closed))
        close_stream = getattr(self.tick_stream, 'close', None)
        if close_stream is not None:
            await close_stream()
        if self.rest_client is not None:
            await self.rest_client.close()


async def main():
    system = SignalSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    asyncio.run(main())
