import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from config.utils import resolve_section
from strategy.models import Completed


logger = logging.getLogger(__name__)


class RiskManager:
    def __init__(self, risk_cfg: Optional[Dict] = None, clock: Callable[[], float] = time.time):
        cfg = resolve_section(risk_cfg, 'risk')
        self.max_concurrent_monitors = int(cfg.get('max_concurrent_monitors', 20))
        self.clock = clock
        self._day = self._utc_day()
        self.trades = 0
        self.wins = 0
        self.total_leveraged_pnl = 0.0

    def _utc_day(self) -> str:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc).strftime('%Y-%m-%d')

    def can_open(self, symbol: str, active_symbols: Iterable[str]) -> Tuple[bool, str]:
        active = set(active_symbols)
        if symbol in active:
            return False, f"{symbol} already monitored"
        if len(active) >= self.max_concurrent_monitors:
            return False, f"concurrent monitor cap reached ({len(active)}/{self.max_concurrent_monitors})"
        return True, 'ok'

    def _roll_day(self) -> None:
        today = self._utc_day()
        if today != self._day:
            logger.info(
                "Daily stats for %s: %d trades, %d wins, %.2f%% leveraged P&L",
                self._day, self.trades, self.wins, self.total_leveraged_pnl,
            )
            self._day = today
            self.trades = 0
            self.wins = 0
            self.total_leveraged_pnl = 0.0

    def on_event(self, event) -> None:
        if isinstance(event, Completed):
            self.record_trade(event.is_win, event.leveraged_pnl)

    def record_trade(self, is_win: bool, leveraged_pnl: float) -> None:
        self._roll_day()
        self.trades += 1
        if is_win:
            self.wins += 1
        self.total_leveraged_pnl += leveraged_pnl

    def daily_stats(self) -> Dict:
        self._roll_day()
        return {
            'date': self._day,
            'trades': self.trades,
            'wins': self.wins,
            'losses': self.trades - self.wins,
            'win_rate': self.wins / self.trades if self.trades else 0.0,
            'total_leveraged_pnl': self.total_leveraged_pnl,
        }
