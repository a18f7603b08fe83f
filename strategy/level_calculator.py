import logging
import math
from typing import Dict, List, Optional

from api.metrics import metrics
from config.utils import resolve_section
from strategy.errors import InvalidLevelsError
from strategy.models import Direction, TradingLevels


logger = logging.getLogger(__name__)


class LevelCalculator:
    """Entry, target ladder and stop for a new position.

    A volatility ladder (multiples of an ATR unit) is preferred when a positive
    volatility value is supplied; the fixed percentage ladder is the canonical
    fallback and is used whenever a ladder fails the direction checks.
    """

    def __init__(self, levels_cfg: Optional[Dict] = None):
        cfg = resolve_section(levels_cfg, 'levels')
        self.target_percentages: List[float] = [float(p) for p in cfg.get('target_percentages', [1.5, 3.0, 4.5, 6.0, 7.5, 9.0])]
        self.stop_loss_percentage = float(cfg.get('stop_loss_percentage', 4.5))
        self.use_volatility = bool(cfg.get('use_volatility', True))
        self.volatility_multiples: List[float] = [float(m) for m in cfg.get('volatility_target_multiples', [1, 2, 3, 4, 5, 6])]
        self.volatility_stop_multiple = float(cfg.get('volatility_stop_multiple', 1.5))
        self.min_unit_pct = float(cfg.get('min_unit_pct', 0.3))
        self.max_unit_pct = float(cfg.get('max_unit_pct', 5.0))
        self._validate_config()

    def _validate_config(self) -> None:
        if not self.target_percentages:
            raise ValueError("levels.target_percentages must not be empty")
        if any(p <= 0 or p >= 100 for p in self.target_percentages):
            raise ValueError("levels.target_percentages must lie in (0, 100)")
        if any(b <= a for a, b in zip(self.target_percentages, self.target_percentages[1:])):
            raise ValueError("levels.target_percentages must be strictly increasing")
        if not 0 < self.stop_loss_percentage < 100:
            raise ValueError("levels.stop_loss_percentage must lie in (0, 100)")
        if any(b <= a for a, b in zip(self.volatility_multiples, self.volatility_multiples[1:])):
            raise ValueError("levels.volatility_target_multiples must be strictly increasing")
        if self.volatility_stop_multiple <= 0 or not self.volatility_multiples or self.volatility_multiples[0] <= 0:
            raise ValueError("levels volatility multiples must be positive")

    def compute_levels(self, entry_price: float, direction: Direction,
                       volatility: Optional[float] = None) -> TradingLevels:
        if entry_price is None or not math.isfinite(entry_price) or entry_price <= 0:
            raise ValueError(f"Entry price must be a positive number, got {entry_price!r}")
        direction = Direction(direction)

        if self.use_volatility and volatility is not None and math.isfinite(volatility) and volatility > 0:
            levels = self._volatility_ladder(entry_price, direction, volatility)
            try:
                self.validate(levels)
                return levels
            except InvalidLevelsError as exc:
                logger.warning("Volatility ladder rejected for entry %.8g (%s); using percentage ladder",
                               entry_price, exc)
                metrics.level_corrections.inc()
        return self.percentage_ladder(entry_price, direction)

    def percentage_ladder(self, entry: float, direction: Direction) -> TradingLevels:
        sign = 1.0 if direction == Direction.LONG else -1.0
        targets = tuple(entry * (1 + sign * pct / 100.0) for pct in self.target_percentages)
        stop = entry * (1 - sign * self.stop_loss_percentage / 100.0)
        return self._build(entry, targets, stop, direction, 'percentage')

    def _volatility_ladder(self, entry: float, direction: Direction, volatility: float) -> TradingLevels:
        unit = min(max(volatility, entry * self.min_unit_pct / 100.0), entry * self.max_unit_pct / 100.0)
        sign = 1.0 if direction == Direction.LONG else -1.0
        targets = tuple(entry + sign * m * unit for m in self.volatility_multiples)
        stop = entry - sign * self.volatility_stop_multiple * unit
        return self._build(entry, targets, stop, direction, 'volatility')

    @staticmethod
    def _build(entry: float, targets, stop: float, direction: Direction, source: str) -> TradingLevels:
        stop_distance = abs(stop - entry)
        rr = abs(targets[0] - entry) / stop_distance if stop_distance > 0 else 0.0
        return TradingLevels(
            entry=entry,
            targets=tuple(targets),
            stop_loss=stop,
            risk_reward_ratio=rr,
            direction=direction,
            source=source,
        )

    @staticmethod
    def validate(levels: TradingLevels) -> None:
        if not levels.is_consistent():
            raise InvalidLevelsError(
                f"{levels.direction.value} ladder inconsistent: entry={levels.entry} "
                f"targets={list(levels.targets)} stop={levels.stop_loss}"
            )

    def ensure_consistent(self, levels: TradingLevels) -> TradingLevels:
        """Return ``levels`` unchanged when valid, else the canonical ladder for its entry."""
        try:
            self.validate(levels)
            return levels
        except InvalidLevelsError as exc:
            logger.warning("Recomputing levels: %s", exc)
            metrics.level_corrections.inc()
            return self.percentage_ladder(levels.entry, levels.direction)
