import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from api.metrics import metrics
from config.utils import resolve_section
from monitoring.outcome_recorder import OutcomeRecorder
from strategy.adaptive_state import AdaptiveState
from strategy.errors import DuplicateMonitorError, InvalidLevelsError
from strategy.models import (
    Completed,
    Direction,
    LifecycleEvent,
    MonitorStatus,
    OutcomeRecord,
    TradingLevels,
)


logger = logging.getLogger(__name__)


@dataclass
class PositionMonitor:
    symbol: str
    entry: float
    targets: tuple
    stop_loss: float
    direction: Direction
    timeframe: str = ''
    initial_stop: float = 0.0
    targets_hit: int = 0
    peak_profit: float = 0.0
    current_pnl: float = 0.0
    current_drawdown: float = 0.0
    last_price: Optional[float] = None
    status: MonitorStatus = MonitorStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    close_reason: Optional[str] = None
    score: Optional[float] = None
    indicators_at_entry: Dict = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if not self.initial_stop:
            self.initial_stop = self.stop_loss

    @property
    def stop_moved(self) -> bool:
        return self.stop_loss != self.initial_stop

    def pnl_at(self, price: float) -> float:
        """Signed P&L in percent of entry."""
        if self.direction == Direction.LONG:
            return (price - self.entry) / self.entry * 100.0
        return (self.entry - price) / self.entry * 100.0

    def update_price(self, price: float) -> float:
        pnl = self.pnl_at(price)
        self.last_price = price
        self.current_pnl = pnl
        self.peak_profit = max(self.peak_profit, pnl)
        self.current_drawdown = self.peak_profit - pnl
        return pnl

    def target_reached(self, index: int, price: float) -> bool:
        if self.direction == Direction.LONG:
            return price >= self.targets[index]
        return price <= self.targets[index]

    def stop_triggered(self, price: float) -> bool:
        if self.direction == Direction.LONG:
            return price <= self.stop_loss
        return price >= self.stop_loss

    def to_dict(self) -> Dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'direction': self.direction.value,
            'entry': self.entry,
            'targets': list(self.targets),
            'stop_loss': self.stop_loss,
            'initial_stop': self.initial_stop,
            'targets_hit': self.targets_hit,
            'peak_profit': self.peak_profit,
            'current_pnl': self.current_pnl,
            'current_drawdown': self.current_drawdown,
            'last_price': self.last_price,
            'status': self.status.value,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
            'close_reason': self.close_reason,
            'score': self.score,
        }


from .monitor_states import ActiveState


class PositionMonitorService:
    """Tracks at most one open position per symbol against live price ticks.

    Completion (all targets, stop, or manual close) removes the monitor,
    unsubscribes the tick stream, records the outcome in AdaptiveState and the
    outcome log, and dispatches a Completed event to listeners.
    """

    def __init__(self, monitor_cfg: Optional[Dict] = None, state: Optional[AdaptiveState] = None,
                 tick_stream=None, recorder: Optional[OutcomeRecorder] = None,
                 clock: Callable[[], float] = time.time):
        cfg = resolve_section(monitor_cfg, 'monitor')
        self.leverage = float(cfg.get('leverage', 15))
        self.trailing_stop = bool(cfg.get('trailing_stop', True))
        self.state = state if state is not None else AdaptiveState(clock=clock)
        self.tick_stream = tick_stream
        self.recorder = recorder
        self.clock = clock

        self.active: Dict[str, PositionMonitor] = {}
        self._listeners: List[Callable[[LifecycleEvent], object]] = []
        self._pending: Set[asyncio.Task] = set()
        self._guard = threading.Lock()
        self.state_map = {
            MonitorStatus.ACTIVE: ActiveState,
        }

    def add_listener(self, listener: Callable[[LifecycleEvent], object]) -> None:
        self._listeners.append(listener)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self.active

    def __len__(self) -> int:
        return len(self.active)

    def get(self, symbol: str) -> Optional[PositionMonitor]:
        return self.active.get(symbol)

    def active_symbols(self) -> List[str]:
        return list(self.active)

    def open(self, symbol: str, entry: float, targets: Sequence[float], stop_loss: float,
             direction, timeframe: str = '', indicators_at_entry: Optional[Dict] = None,
             score: Optional[float] = None) -> PositionMonitor:
        direction = Direction(direction)
        levels = TradingLevels(
            entry=float(entry),
            targets=tuple(float(t) for t in targets),
            stop_loss=float(stop_loss),
            risk_reward_ratio=0.0,
            direction=direction,
        )
        if not levels.is_consistent():
            raise InvalidLevelsError(f"Refusing to monitor inconsistent {direction.value} ladder for {symbol}")

        with self._guard:
            if symbol in self.active:
                raise DuplicateMonitorError(symbol)
            monitor = PositionMonitor(
                symbol=symbol,
                entry=levels.entry,
                targets=levels.targets,
                stop_loss=levels.stop_loss,
                direction=direction,
                timeframe=timeframe,
                created_at=self.clock(),
                score=score,
                indicators_at_entry=dict(indicators_at_entry or {}),
            )
            self.active[symbol] = monitor

        if self.tick_stream is not None:
            self.tick_stream.subscribe(symbol, self.on_tick)
        metrics.update_active_monitors(len(self.active))
        logger.info(
            "Monitoring %s %s entry=%.8g targets=%s stop=%.8g",
            symbol, direction.value, monitor.entry, list(monitor.targets), monitor.stop_loss,
        )
        return monitor

    def open_from_levels(self, symbol: str, levels: TradingLevels, timeframe: str = '',
                         indicators_at_entry: Optional[Dict] = None,
                         score: Optional[float] = None) -> PositionMonitor:
        return self.open(symbol, levels.entry, levels.targets, levels.stop_loss, levels.direction,
                         timeframe=timeframe, indicators_at_entry=indicators_at_entry, score=score)

    def on_tick(self, symbol: str, price, timestamp: Optional[float] = None) -> List[LifecycleEvent]:
        monitor = self.active.get(symbol)
        if monitor is None:
            logger.warning("Tick for %s with no active monitor; closing stream", symbol)
            metrics.dropped_ticks.labels(reason='orphan').inc()
            self._unsubscribe(symbol)
            return []

        try:
            price = float(price)
        except (TypeError, ValueError):
            price = float('nan')
        if not math.isfinite(price) or price <= 0:
            metrics.dropped_ticks.labels(reason='invalid').inc()
            return []

        try:
            with monitor.lock:
                if monitor.status is not MonitorStatus.ACTIVE:
                    metrics.dropped_ticks.labels(reason='completed').inc()
                    return []
                metrics.ticks.inc()
                events = self.state_map[monitor.status](monitor, self).process(price)
        except Exception:
            logger.exception("Tick handling failed for %s", symbol)
            metrics.symbol_errors.labels(stage='tick').inc()
            return []

        for event in events:
            if event.kind == 'target_hit':
                metrics.targets_hit.inc()
                logger.info("%s target %d hit at %.8g (pnl %.2f%%)", symbol, event.index, event.price, event.pnl)
            elif event.kind == 'stop_moved':
                logger.info("%s stop moved to %.8g after %d targets", symbol, event.new_stop, event.targets_hit)
            self._dispatch(event)
        return events

    def complete(self, symbol: str, reason: str, final_pnl: float,
                 price: Optional[float] = None) -> Optional[Completed]:
        monitor = self.active.get(symbol)
        if monitor is None:
            return None
        with monitor.lock:
            if monitor.status is not MonitorStatus.ACTIVE:
                return None
            event = self._finish(monitor, reason, final_pnl, price)
        self._dispatch(event)
        return event

    def close(self, symbol: str, reason: str = 'manual', price: Optional[float] = None) -> Optional[Completed]:
        """Operator exit at ``price`` (defaults to the last tick, else entry)."""
        monitor = self.active.get(symbol)
        if monitor is None:
            logger.warning("close(%s): no active monitor", symbol)
            return None
        exit_price = price if price is not None else (monitor.last_price or monitor.entry)
        return self.complete(symbol, reason, monitor.pnl_at(exit_price), exit_price)

    def close_all(self, reason: str = 'shutdown') -> List[Completed]:
        return [event for event in (self.close(s, reason) for s in self.active_symbols()) if event]

    def _finish(self, monitor: PositionMonitor, reason: str, final_pnl: float,
                price: Optional[float]) -> Completed:
        """Terminal transition; caller holds ``monitor.lock``."""
        now = self.clock()
        monitor.status = MonitorStatus.COMPLETED
        monitor.completed_at = now
        monitor.close_reason = reason
        leveraged = final_pnl * self.leverage
        duration_ms = int(max(0.0, now - monitor.created_at) * 1000)

        with self._guard:
            self.active.pop(monitor.symbol, None)
        self._unsubscribe(monitor.symbol)
        metrics.update_active_monitors(len(self.active))

        event = Completed(
            symbol=monitor.symbol,
            reason=reason,
            final_pnl=final_pnl,
            leveraged_pnl=leveraged,
            duration_ms=duration_ms,
            targets_hit=monitor.targets_hit,
            exit_price=price,
        )
        self.state.record_outcome(monitor.symbol, monitor.timeframe, event.is_win, leveraged)
        if self.recorder is not None:
            self.recorder.record(OutcomeRecord(
                symbol=monitor.symbol,
                timeframe=monitor.timeframe,
                direction=monitor.direction.value,
                reason=reason,
                targets_hit=monitor.targets_hit,
                final_pnl=final_pnl,
                leveraged_pnl=leveraged,
                is_win=event.is_win,
                duration_ms=duration_ms,
                indicators_at_entry=monitor.indicators_at_entry,
                timestamp=now,
            ))
        metrics.record_completion(reason, leveraged)
        logger.info(
            "%s completed: %s pnl=%.2f%% leveraged=%.2f%% targets=%d/%d",
            monitor.symbol, reason, final_pnl, leveraged, monitor.targets_hit, len(monitor.targets),
        )
        return event

    def _unsubscribe(self, symbol: str) -> None:
        if self.tick_stream is None:
            return
        try:
            self.tick_stream.unsubscribe(symbol)
        except Exception:
            logger.exception("Failed to unsubscribe tick stream for %s", symbol)

    def _dispatch(self, event: LifecycleEvent) -> None:
        for listener in self._listeners:
            try:
                outcome = listener(event)
            except Exception:
                logger.exception("Lifecycle listener failed for %s", event.kind)
                continue
            if asyncio.iscoroutine(outcome):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    outcome.close()
                    logger.debug("No running loop for async listener; %s dropped", event.kind)
                    continue
                task = loop.create_task(outcome)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def snapshot(self) -> Dict[str, Dict]:
        return {symbol: monitor.to_dict() for symbol, monitor in list(self.active.items())}
