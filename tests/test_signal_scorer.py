"""Unit tests for the signal scorer."""

import pytest

from flowsignal.models import Direction
from flowsignal.signal_scorer import (
    MIN_BARS,
    InsufficientBarsError,
    confidence_for,
    momentum_component,
    score,
    trend_component,
    volatility_component,
)
from tests.conftest import make_bars


class TestComponents:

    def test_trend(self):
        assert trend_component(101.0, 100.0) == 1
        assert trend_component(100.0, 100.0) == -1
        assert trend_component(99.0, 100.0) == -1

    @pytest.mark.parametrize("value,expected", [
        (70.0, 1), (55.01, 1), (55.0, 0), (50.0, 0), (45.0, 0), (44.9, -1), (10.0, -1),
    ])
    def test_momentum(self, value, expected):
        assert momentum_component(value) == expected

    def test_volatility_expansion(self):
        closes = [100.0 + i for i in range(40)] + [150.0]
        assert volatility_component(make_bars(closes)) == 1

    def test_volatility_contraction(self):
        closes = [100.0 + 2 * i for i in range(40)] + [179.0]
        assert volatility_component(make_bars(closes)) == -1

    def test_volatility_zero_bodies(self):
        # mean body of 0 uses a small floor; a zero last body never expands
        assert volatility_component(make_bars([10.0] * 40)) == -1

    def test_confidence_labels(self):
        assert [confidence_for(t) for t in range(-3, 4)] == [90, 80, 70, 60, 70, 80, 90]


class TestScore:

    def test_rising_series_is_long(self, rising_bars):
        sig = score(rising_bars)
        assert sig.direction is Direction.LONG
        assert sig.ema50 > sig.ema200
        assert sig.rsi14 == 100.0
        # trend +1, momentum +1, equal bodies -1
        assert sig.confidence_percent == 70

    def test_long_stop_and_target(self, rising_bars):
        sig = score(rising_bars)
        assert sig.entry_price == rising_bars[-1].close
        assert sig.atr14 == pytest.approx(2.0)
        assert sig.stop_loss == pytest.approx(sig.entry_price - 1.2 * sig.atr14)
        assert sig.take_profit == pytest.approx(sig.entry_price + 2.0 * sig.atr14)

    def test_falling_series_is_short_with_mirrored_levels(self, falling_bars):
        sig = score(falling_bars)
        assert sig.direction is Direction.SHORT
        assert sig.confidence_percent == 90
        assert sig.stop_loss == pytest.approx(sig.entry_price + 1.2 * sig.atr14)
        assert sig.take_profit == pytest.approx(sig.entry_price - 2.0 * sig.atr14)

    def test_confidence_always_a_label(self):
        patterns = [
            [100.0 + (i % 7) - (i % 3) for i in range(220)],
            [100.0 + i * 0.1 * (-1) ** i for i in range(300)],
            [50.0] * 200,
        ]
        for closes in patterns:
            assert score(make_bars(closes)).confidence_percent in (60, 70, 80, 90)

    def test_minimum_bars_is_accepted(self):
        score(make_bars([100.0 + i for i in range(MIN_BARS)]))

    def test_insufficient_bars(self):
        bars = make_bars([100.0 + i for i in range(MIN_BARS - 1)])
        with pytest.raises(InsufficientBarsError, match="199"):
            score(bars)

    def test_insufficient_bars_is_value_error(self):
        with pytest.raises(ValueError):
            score([])

    def test_to_dict(self, rising_bars):
        data = score(rising_bars).to_dict()
        assert data["direction"] == "LONG"
        assert set(data) == {
            "direction", "confidence_percent", "entry_price", "stop_loss",
            "take_profit", "rsi14", "ema50", "ema200", "atr14",
        }
