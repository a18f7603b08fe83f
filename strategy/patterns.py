import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from strategy.models import Trend


CONTINUATION = 'continuation'
REVERSAL = 'reversal'
BREAKOUT = 'breakout'
CANDLESTICK = 'candlestick'

_CATEGORY_BY_NAME = {
    'breakout': BREAKOUT,
    'triangle': CONTINUATION,
    'flag': CONTINUATION,
    'wedge': REVERSAL,
    'double': REVERSAL,
    'double_top': REVERSAL,
    'double_bottom': REVERSAL,
    'head_and_shoulders': REVERSAL,
    'head_shoulders': REVERSAL,
    'inverse_head_and_shoulders': REVERSAL,
}

REVERSAL_CANDLES = {
    'HAMMER',
    'HANGING_MAN',
    'BULLISH_ENGULFING',
    'BEARISH_ENGULFING',
    'DOJI',
}

_BULLISH_HINTS = ('bull', 'bullish', 'long', 'up', 'bottom', 'inverse', 'hammer', 'ascending',
                  'falling_wedge')
_BEARISH_HINTS = ('bear', 'bearish', 'short', 'down', 'top', 'hanging', 'descending',
                  'rising_wedge', 'head_and_shoulders', 'head_shoulders')

_TOKEN_SPLIT = re.compile(r'[^a-z0-9]+')


def infer_bias(*hints: Optional[str]) -> Trend:
    """First directional hint wins; hints match whole name tokens only."""
    for hint in hints:
        if not hint:
            continue
        tokens = [t for t in _TOKEN_SPLIT.split(str(hint).lower()) if t]
        if not tokens:
            continue
        text = '_' + '_'.join(tokens) + '_'
        if any(f"_{h}_" in text for h in _BULLISH_HINTS):
            return Trend.BULLISH
        if any(f"_{h}_" in text for h in _BEARISH_HINTS):
            return Trend.BEARISH
    return Trend.NEUTRAL


@dataclass(frozen=True)
class Pattern:
    name: str
    category: str
    bias: Trend = Trend.NEUTRAL
    confidence: float = 50.0
    type: Optional[str] = None

    @property
    def is_reversal(self) -> bool:
        if self.category == REVERSAL:
            return True
        return self.category == CANDLESTICK and (self.type or self.name).upper() in REVERSAL_CANDLES

    @classmethod
    def build(cls, name: str, category: str, payload) -> 'Pattern':
        if isinstance(payload, Pattern):
            return payload
        if not isinstance(payload, dict):
            payload = {}
        confidence = payload.get('confidence', payload.get('strength', 50.0))
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = 50.0
        kind = payload.get('type')
        # Inverse head and shoulders comes in under the same key with a type hint.
        bias_hint = payload.get('bias') or payload.get('direction')
        bias = infer_bias(bias_hint, kind, name)
        return cls(
            name=name,
            category=category,
            bias=bias,
            confidence=max(0.0, min(confidence, 100.0)),
            type=kind,
        )


@dataclass(frozen=True)
class PatternSet:
    patterns: tuple = ()

    @classmethod
    def from_mapping(cls, data: Optional[Dict]) -> 'PatternSet':
        """Normalise a detector result of named pattern objects.

        Keys map to categories (``breakout``, ``triangle``, ``flag``, ``wedge``,
        ``double_top``/``double_bottom``, ``head_and_shoulders``); the
        ``candlestick`` key holds a list. Falsy entries are skipped.
        """
        if data is None:
            return cls()
        if isinstance(data, PatternSet):
            return data
        found: List[Pattern] = []
        for name, payload in data.items():
            if not payload:
                continue
            if name == 'candlestick':
                for candle in payload:
                    if isinstance(candle, str):
                        candle = {'type': candle}
                    label = str(candle.get('type', 'candle')) if isinstance(candle, dict) else 'candle'
                    found.append(Pattern.build(label, CANDLESTICK, candle))
                continue
            category = _CATEGORY_BY_NAME.get(name)
            if category is None:
                continue
            found.append(Pattern.build(name, category, payload))
        return cls(tuple(found))

    def __len__(self) -> int:
        return len(self.patterns)

    def __iter__(self):
        return iter(self.patterns)

    def by_category(self, category: str) -> List[Pattern]:
        return [p for p in self.patterns if p.category == category]

    @property
    def breakout(self) -> Optional[Pattern]:
        found = self.by_category(BREAKOUT)
        return found[0] if found else None

    def reversals(self) -> List[Pattern]:
        return [p for p in self.patterns if p.is_reversal]
