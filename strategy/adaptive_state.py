import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from config.utils import resolve_section


logger = logging.getLogger(__name__)

Key = Tuple[str, str]


@dataclass(frozen=True)
class Decision:
    score: float
    is_valid: bool
    decided_at: float


@dataclass
class OutcomeStats:
    trades: int = 0
    wins: int = 0
    total_leveraged_pnl: float = 0.0

    @property
    def losses(self) -> int:
        return self.trades - self.wins

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    def add(self, is_win: bool, leveraged_pnl: float) -> None:
        self.trades += 1
        if is_win:
            self.wins += 1
        self.total_leveraged_pnl += leveraged_pnl

    def to_dict(self) -> Dict:
        return {
            'trades': self.trades,
            'wins': self.wins,
            'losses': self.losses,
            'win_rate': self.win_rate,
            'total_leveraged_pnl': self.total_leveraged_pnl,
        }


class AdaptiveState:
    """Shared mutable state read and written by scoring and the position monitor.

    Hysteresis decisions and outcome statistics are guarded by one lock per
    (symbol, timeframe). Counter-trend counters and the blacklist share a
    single global lock. Callers that need a read-modify-write sequence hold
    ``key_lock`` or ``global_lock`` across it; both are re-entrant.
    """

    def __init__(self, adaptive_cfg: Optional[Dict] = None, performance_cfg: Optional[Dict] = None,
                 clock: Callable[[], float] = time.time):
        self.adaptive_cfg = resolve_section(adaptive_cfg, 'adaptive')
        if performance_cfg is None:
            performance_cfg = resolve_section(None, 'scoring').get('performance', {})
        self.performance_cfg = dict(performance_cfg)
        self.clock = clock

        self.blacklist_min_trades = int(self.adaptive_cfg.get('blacklist_min_trades', 10))
        self.blacklist_win_rate = float(self.adaptive_cfg.get('blacklist_win_rate', 0.3))
        self.blacklist_duration_s = float(self.adaptive_cfg.get('blacklist_duration_s', 86400))

        self._locks: Dict[Key, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self.global_lock = threading.RLock()

        self._decisions: Dict[Key, Decision] = {}
        self._key_stats: Dict[Key, OutcomeStats] = {}
        self._symbol_stats: Dict[str, OutcomeStats] = {}
        self._blacklist: Dict[str, float] = {}
        self._counter_trend_count = 0
        self._last_counter_trend_at: Optional[float] = None
        self._counter_day = self._utc_day(self.clock())

    @staticmethod
    def _utc_day(ts: float) -> str:
        return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%Y-%m-%d')

    def key_lock(self, symbol: str, timeframe: str) -> threading.RLock:
        key = (symbol, timeframe)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    # Hysteresis

    def get_decision(self, symbol: str, timeframe: str) -> Optional[Decision]:
        with self.key_lock(symbol, timeframe):
            return self._decisions.get((symbol, timeframe))

    def store_decision(self, symbol: str, timeframe: str, score: float, is_valid: bool) -> Decision:
        decision = Decision(score=score, is_valid=is_valid, decided_at=self.clock())
        with self.key_lock(symbol, timeframe):
            self._decisions[(symbol, timeframe)] = decision
        return decision

    # Counter-trend usage

    def _roll_day(self) -> None:
        today = self._utc_day(self.clock())
        if today != self._counter_day:
            if self._counter_trend_count:
                logger.info("Resetting counter-trend counter (%d used on %s)",
                            self._counter_trend_count, self._counter_day)
            self._counter_day = today
            self._counter_trend_count = 0

    def counter_trend_count_today(self) -> int:
        with self.global_lock:
            self._roll_day()
            return self._counter_trend_count

    def last_counter_trend_at(self) -> Optional[float]:
        with self.global_lock:
            return self._last_counter_trend_at

    def record_counter_trend(self) -> int:
        with self.global_lock:
            self._roll_day()
            self._counter_trend_count += 1
            self._last_counter_trend_at = self.clock()
            return self._counter_trend_count

    # Outcomes

    def record_outcome(self, symbol: str, timeframe: str, is_win: bool, leveraged_pnl: float) -> None:
        with self.key_lock(symbol, timeframe):
            self._key_stats.setdefault((symbol, timeframe), OutcomeStats()).add(is_win, leveraged_pnl)
        with self.global_lock:
            stats = self._symbol_stats.setdefault(symbol, OutcomeStats())
            stats.add(is_win, leveraged_pnl)
            if (
                stats.trades >= self.blacklist_min_trades
                and stats.win_rate < self.blacklist_win_rate
                and symbol not in self._blacklist
            ):
                self._blacklist[symbol] = self.clock() + self.blacklist_duration_s
                logger.warning(
                    "Blacklisting %s for %.0fs (win rate %.1f%% over %d trades)",
                    symbol, self.blacklist_duration_s, stats.win_rate * 100, stats.trades,
                )

    def stats(self, symbol: str, timeframe: Optional[str] = None) -> OutcomeStats:
        if timeframe is None:
            with self.global_lock:
                stats = self._symbol_stats.get(symbol, OutcomeStats())
                return OutcomeStats(stats.trades, stats.wins, stats.total_leveraged_pnl)
        with self.key_lock(symbol, timeframe):
            stats = self._key_stats.get((symbol, timeframe), OutcomeStats())
            return OutcomeStats(stats.trades, stats.wins, stats.total_leveraged_pnl)

    def performance_multiplier(self, symbol: str) -> float:
        stats = self.stats(symbol)
        if stats.trades < int(self.performance_cfg.get('min_trades_for_adjustment', 5)):
            return 1.0
        if stats.win_rate > float(self.performance_cfg.get('strong_win_rate', 0.6)):
            return float(self.performance_cfg.get('strong_multiplier', 1.1))
        if stats.win_rate < float(self.performance_cfg.get('weak_win_rate', 0.4)):
            return float(self.performance_cfg.get('weak_multiplier', 0.9))
        return 1.0

    # Blacklist

    def is_blacklisted(self, symbol: str) -> bool:
        with self.global_lock:
            until = self._blacklist.get(symbol)
            if until is None:
                return False
            if self.clock() >= until:
                del self._blacklist[symbol]
                logger.info("Blacklist expired for %s", symbol)
                return False
            return True

    def remove_from_blacklist(self, symbol: str) -> bool:
        with self.global_lock:
            return self._blacklist.pop(symbol, None) is not None

    def reset(self) -> None:
        with self.global_lock:
            self._decisions.clear()
            self._key_stats.clear()
            self._symbol_stats.clear()
            self._blacklist.clear()
            self._counter_trend_count = 0
            self._last_counter_trend_at = None
            self._counter_day = self._utc_day(self.clock())

    def to_dict(self) -> Dict:
        with self.global_lock:
            return {
                'counter_trend_today': self.counter_trend_count_today(),
                'last_counter_trend_at': self._last_counter_trend_at,
                'blacklist': dict(self._blacklist),
                'symbols': {s: st.to_dict() for s, st in self._symbol_stats.items()},
            }
