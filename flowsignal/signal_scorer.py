"""
Mini scorer: trend + momentum + volatility-expansion proxy.

Each component votes +1 / 0 / -1; the sum picks the direction and a
confidence label in {60, 70, 80, 90}. Stop and target are ATR multiples
from the last close. The confidence is a label, not a backtested
probability.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Sequence

import numpy as np

from .indicators import atr, ema, rsi
from .models import Bar, Direction

logger = logging.getLogger(__name__)

MIN_BARS = 200

EMA_FAST = 50
EMA_SLOW = 200
RSI_PERIOD = 14
ATR_PERIOD = 14

RSI_BULL = 55.0
RSI_BEAR = 45.0
RSI_DEFAULT = 50.0

BODY_LOOKBACK = 30
MIN_AVG_BODY = 0.0001

STOP_ATR_MULT = 1.2
TARGET_ATR_MULT = 2.0

BASE_CONFIDENCE = 60
CONFIDENCE_SPAN = 30
MAX_SCORE = 3


class InsufficientBarsError(ValueError):
    """Fewer bars than the slow EMA needs."""


@dataclass(frozen=True)
class Signal:
    direction: Direction
    confidence_percent: int
    entry_price: float
    stop_loss: float
    take_profit: float
    rsi14: float
    ema50: float
    ema200: float
    atr14: float

    def to_dict(self) -> Dict:
        return {
            "direction": self.direction.value,
            "confidence_percent": self.confidence_percent,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "rsi14": self.rsi14,
            "ema50": self.ema50,
            "ema200": self.ema200,
            "atr14": self.atr14,
        }


def trend_component(ema_fast: float, ema_slow: float) -> int:
    return 1 if ema_fast > ema_slow else -1


def momentum_component(rsi_value: float) -> int:
    if rsi_value > RSI_BULL:
        return 1
    if rsi_value < RSI_BEAR:
        return -1
    return 0


def volatility_component(bars: Sequence[Bar], lookback: int = BODY_LOOKBACK) -> int:
    """+1 when the last body is larger than the mean body of the trailing window."""
    bodies = np.array([b.body for b in bars[-lookback:]], dtype=float)
    avg_body = float(bodies.mean()) if bodies.size else 0.0
    if avg_body == 0:
        avg_body = MIN_AVG_BODY
    return 1 if bars[-1].body > avg_body else -1


def confidence_for(total: int) -> int:
    return int(round(BASE_CONFIDENCE + (abs(total) / MAX_SCORE) * CONFIDENCE_SPAN))


def score(bars: Sequence[Bar]) -> Signal:
    """Score an oldest-first OHLC sequence into a Signal."""
    if len(bars) < MIN_BARS:
        raise InsufficientBarsError(
            f"Need at least {MIN_BARS} bars to score, got {len(bars)}"
        )

    closes = [b.close for b in bars]
    last = bars[-1]

    ema50 = ema(closes, EMA_FAST)[-1]
    ema200 = ema(closes, EMA_SLOW)[-1]
    rsi14 = rsi(closes, RSI_PERIOD)[-1]
    if rsi14 is None:
        rsi14 = RSI_DEFAULT
    atr14 = atr(bars, ATR_PERIOD)[-1]
    if atr14 is None:
        atr14 = last.high - last.low

    trend = trend_component(ema50, ema200)
    momentum = momentum_component(rsi14)
    volatility = volatility_component(bars)
    total = trend + momentum + volatility

    direction = Direction.LONG if total >= 0 else Direction.SHORT
    entry = last.close
    if direction is Direction.LONG:
        stop = entry - STOP_ATR_MULT * atr14
        target = entry + TARGET_ATR_MULT * atr14
    else:
        stop = entry + STOP_ATR_MULT * atr14
        target = entry - TARGET_ATR_MULT * atr14

    logger.debug(
        "score: trend=%+d momentum=%+d volatility=%+d total=%+d",
        trend, momentum, volatility, total,
    )

    return Signal(
        direction=direction,
        confidence_percent=confidence_for(total),
        entry_price=entry,
        stop_loss=stop,
        take_profit=target,
        rsi14=rsi14,
        ema50=ema50,
        ema200=ema200,
        atr14=atr14,
    )
