import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from analytics.indicator_aggregator import IndicatorAggregator
from analytics.snapshot import IndicatorSnapshot
from api.metrics import metrics
from config.utils import resolve_section
from monitoring.async_utils import with_timeout
from orchestration.collaborators import NeutralML, NoCorrelation, NoPatterns, NoRegime
from risk.risk_manager import RiskManager
from strategy.errors import DuplicateMonitorError, InvalidLevelsError
from strategy.level_calculator import LevelCalculator
from strategy.models import Regime, SignalResult, TradingLevels
from strategy.position_monitor import PositionMonitor, PositionMonitorService
from strategy.scoring_engine import ScoringEngine


logger = logging.getLogger(__name__)


@dataclass
class Evaluation:
    result: SignalResult
    snapshot: Optional[IndicatorSnapshot]


@dataclass
class CycleSummary:
    analyzed: int = 0
    valid: int = 0
    errors: int = 0
    best: Optional[SignalResult] = None
    levels: Optional[TradingLevels] = None
    opened: Optional[PositionMonitor] = None
    skipped_symbols: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    duration_s: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'analyzed': self.analyzed,
            'valid': self.valid,
            'errors': self.errors,
            'best': self.best.to_dict() if self.best else None,
            'levels': self.levels.to_dict() if self.levels else None,
            'opened': self.opened.symbol if self.opened else None,
            'skipped_symbols': list(self.skipped_symbols),
            'duration_s': self.duration_s,
        }


class SignalPipeline:
    """One evaluation cycle: candles -> indicators -> score -> levels -> monitor."""

    def __init__(self, aggregator: IndicatorAggregator, engine: ScoringEngine,
                 level_calculator: LevelCalculator, monitor: PositionMonitorService,
                 candle_source, risk: Optional[RiskManager] = None,
                 pattern_detector=None, ml_estimator=None, correlation_provider=None,
                 regime_provider=None, notifier=None, pipeline_cfg: Optional[Dict] = None):
        cfg = resolve_section(pipeline_cfg, 'pipeline')
        self.aggregator = aggregator
        self.engine = engine
        self.level_calculator = level_calculator
        self.monitor = monitor
        self.candle_source = candle_source
        self.risk = risk or RiskManager()
        self.pattern_detector = pattern_detector or NoPatterns()
        self.ml_estimator = ml_estimator or NeutralML()
        self.correlation_provider = correlation_provider or NoCorrelation()
        self.regime_provider = regime_provider or NoRegime()
        self.notifier = notifier

        self.candle_timeout_s = float(cfg.get('candle_timeout_s', 10.0))
        self.pattern_timeout_s = float(cfg.get('pattern_timeout_s', 5.0))
        self.ml_timeout_s = float(cfg.get('ml_timeout_s', 5.0))
        self.correlation_timeout_s = float(cfg.get('correlation_timeout_s', 5.0))
        self.regime_timeout_s = float(cfg.get('regime_timeout_s', 5.0))
        self.last_summary: Optional[CycleSummary] = None

    async def evaluate_symbol(self, symbol: str, timeframe: str,
                              regime: Optional[Regime] = None) -> Optional[Evaluation]:
        """Score one (symbol, timeframe); exceptions stop here and yield None."""
        context = f"{symbol} {timeframe}"
        try:
            candles = await with_timeout(
                self.candle_source.get_candles(symbol, timeframe),
                self.candle_timeout_s, None, label='candles', context=context,
            )
            snapshot = self.aggregator.get_indicators(symbol, timeframe, candles) if candles is not None else None
            if snapshot is None:
                result = self.engine.evaluate(candles, None, symbol=symbol, timeframe=timeframe)
                return Evaluation(result, None)

            patterns = await with_timeout(
                self.pattern_detector.detect(symbol, timeframe, candles),
                self.pattern_timeout_s, None, label='patterns', context=context,
            )
            ml_probability = await with_timeout(
                self.ml_estimator.predict(symbol, timeframe, snapshot),
                self.ml_timeout_s, 0.5, label='ml', context=context,
            )
            correlation = await with_timeout(
                self.correlation_provider.get_correlation(symbol, timeframe),
                self.correlation_timeout_s, None, label='correlation', context=context,
            )
            result = self.engine.evaluate(
                candles, snapshot, patterns, ml_probability, regime, correlation,
                symbol=symbol, timeframe=timeframe,
            )
            return Evaluation(result, snapshot)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Evaluation failed for %s", context)
            metrics.symbol_errors.labels(stage='evaluate').inc()
            return None

    async def run_cycle(self, symbols: Sequence[str], timeframes: Sequence[str]) -> CycleSummary:
        started = time.time()
        summary = CycleSummary(started_at=started)
        regime = Regime.parse(await with_timeout(
            self.regime_provider.get_regime(), self.regime_timeout_s, None, label='regime',
        ))

        pairs = []
        for symbol in symbols:
            if symbol in self.monitor:
                summary.skipped_symbols.append(symbol)
                continue
            pairs.extend((symbol, timeframe) for timeframe in timeframes)

        outcomes = await asyncio.gather(*(self.evaluate_symbol(s, tf, regime) for s, tf in pairs))
        evaluations = [e for e in outcomes if e is not None]
        summary.analyzed = len(pairs)
        summary.errors = len(outcomes) - len(evaluations)

        candidates = [e for e in evaluations if e.result.is_valid and e.snapshot is not None]
        summary.valid = len(candidates)
        candidates.sort(key=lambda e: e.result.total_score, reverse=True)

        for evaluation in candidates:
            result = evaluation.result
            if result.direction is None:
                logger.info("%s %s valid but trend is neutral; not opening", result.symbol, result.timeframe)
                continue
            allowed, why = self.risk.can_open(result.symbol, self.monitor.active_symbols())
            if not allowed:
                logger.info("%s %s not admitted: %s", result.symbol, result.timeframe, why)
                continue
            opened = await self._open(evaluation, summary)
            if opened:
                break
        if summary.best is None and candidates:
            summary.best = candidates[0].result

        summary.duration_s = time.time() - started
        self.last_summary = summary
        logger.info(
            "Cycle done: analyzed=%d valid=%d errors=%d opened=%s in %.1fs",
            summary.analyzed, summary.valid, summary.errors,
            summary.opened.symbol if summary.opened else None, summary.duration_s,
        )
        return summary

    async def _open(self, evaluation: Evaluation, summary: CycleSummary) -> bool:
        result, snapshot = evaluation.result, evaluation.snapshot
        levels = self.level_calculator.compute_levels(snapshot.last_close, result.direction, snapshot.atr)
        levels = self.level_calculator.ensure_consistent(levels)
        try:
            monitor = self.monitor.open_from_levels(
                result.symbol, levels,
                timeframe=result.timeframe,
                indicators_at_entry=snapshot.to_dict(),
                score=result.total_score,
            )
        except DuplicateMonitorError:
            logger.info("%s already monitored; skipping", result.symbol)
            return False
        except InvalidLevelsError as exc:
            logger.error("%s levels rejected by monitor: %s", result.symbol, exc)
            metrics.symbol_errors.labels(stage='open').inc()
            return False

        summary.best = result
        summary.levels = levels
        summary.opened = monitor
        if self.notifier is not None:
            await with_timeout(
                self.notifier.signal_alert(result, levels), 5.0, False,
                label='notify', context=result.symbol,
            )
        return True
