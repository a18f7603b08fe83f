from __future__ import annotations
from typing import TYPE_CHECKING, List
from abc import ABC, abstractmethod

from strategy.models import Direction, LifecycleEvent, StopMoved, TargetHit

if TYPE_CHECKING:
    from .position_monitor import PositionMonitor, PositionMonitorService


class MonitorStateProcessor(ABC):
    def __init__(self, monitor: PositionMonitor, manager: PositionMonitorService):
        self.monitor = monitor
        self.manager = manager

    @abstractmethod
    def process(self, price: float) -> List[LifecycleEvent]:
        pass


class ActiveState(MonitorStateProcessor):
    def process(self, price: float) -> List[LifecycleEvent]:
        events: List[LifecycleEvent] = []
        monitor = self.monitor
        pnl = monitor.update_price(price)

        hit = monitor.targets_hit
        while hit < len(monitor.targets) and monitor.target_reached(hit, price):
            target = monitor.targets[hit]
            hit += 1
            events.append(TargetHit(
                symbol=monitor.symbol,
                index=hit,
                target_price=target,
                price=price,
                pnl=monitor.pnl_at(target),
            ))

        if hit > monitor.targets_hit:
            monitor.targets_hit = hit
            if hit == len(monitor.targets):
                events.append(self.manager._finish(monitor, 'all targets', pnl, price))
                return events
            if self.manager.trailing_stop:
                self._trail(events)

        if monitor.stop_triggered(price):
            reason = 'trailing stop' if monitor.stop_moved else 'stop loss'
            events.append(self.manager._finish(monitor, reason, pnl, price))
        return events

    def _trail(self, events: List[LifecycleEvent]) -> None:
        """Stop follows the ladder two targets behind, starting at breakeven."""
        monitor = self.monitor
        k = monitor.targets_hit
        if k < 2:
            return
        candidate = monitor.entry if k == 2 else monitor.targets[k - 3]
        if monitor.direction == Direction.LONG:
            tighter = candidate > monitor.stop_loss
        else:
            tighter = candidate < monitor.stop_loss
        if not tighter:
            return
        monitor.stop_loss = candidate
        events.append(StopMoved(symbol=monitor.symbol, new_stop=candidate, targets_hit=k))
