"""
Indicator engine: EMA, RSI and ATR over plain numeric sequences.

All functions are pure. Output lists are aligned index-for-index with the
input; positions where an indicator is not yet defined hold None.
"""

from typing import List, Optional, Sequence

from .models import Bar


def ema(values: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average seeded with the first raw value.

    k = 2 / (period + 1); out[0] = values[0];
    out[i] = k * values[i] + (1 - k) * out[i - 1]
    """
    if period < 1:
        raise ValueError(f"EMA period must be >= 1, got {period}")
    k = 2.0 / (period + 1)
    out: List[float] = []
    prev = 0.0
    for i, v in enumerate(values):
        prev = v if i == 0 else (v - prev) * k + prev
        out.append(prev)
    return out


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    return 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)


def rsi(closes: Sequence[float], period: int = 14) -> List[Optional[float]]:
    """
    Wilder RSI.

    The first `period` deltas seed the average gain/loss with simple means,
    so index `period` is the first defined value. Later values use Wilder
    smoothing: avg = (avg * (period - 1) + x) / period.
    """
    if period < 1:
        raise ValueError(f"RSI period must be >= 1, got {period}")
    n = len(closes)
    out: List[Optional[float]] = [None] * n
    if n <= period:
        return out

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        d = closes[i] - closes[i - 1]
        if d >= 0:
            gains += d
        else:
            losses -= d
    avg_gain = gains / period
    avg_loss = losses / period
    out[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, n):
        d = closes[i] - closes[i - 1]
        gain = d if d > 0 else 0.0
        loss = -d if d < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = _rsi_value(avg_gain, avg_loss)
    return out


def true_range(bars: Sequence[Bar]) -> List[float]:
    """Per-bar true range; the first bar has no previous close so it is high - low."""
    out: List[float] = []
    for i, bar in enumerate(bars):
        if i == 0:
            out.append(bar.high - bar.low)
            continue
        prev_close = bars[i - 1].close
        out.append(max(
            bar.high - bar.low,
            abs(bar.high - prev_close),
            abs(bar.low - prev_close),
        ))
    return out


def atr(bars: Sequence[Bar], period: int = 14) -> List[Optional[float]]:
    """Average true range as a sliding-window mean of true range."""
    if period < 1:
        raise ValueError(f"ATR period must be >= 1, got {period}")
    tr = true_range(bars)
    out: List[Optional[float]] = []
    window_sum = 0.0
    for i, value in enumerate(tr):
        window_sum += value
        if i >= period:
            window_sum -= tr[i - period]
        out.append(window_sum / period if i >= period - 1 else None)
    return out

