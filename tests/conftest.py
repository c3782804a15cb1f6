"""Pytest configuration and fixtures."""

import json
from typing import Dict, List, Optional, Union

import pytest

from flowsignal.models import Bar


def make_bars(closes: List[float], start_ms: int = 1_700_000_000_000,
              step_ms: int = 60_000, spread: float = 0.5) -> List[Bar]:
    """Bars whose open is the previous close, with a fixed high/low spread."""
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        bars.append(Bar(
            open_time=start_ms + i * step_ms,
            open=prev,
            high=max(prev, close) + spread,
            low=min(prev, close) - spread,
            close=close,
            volume=1.0,
        ))
        prev = close
    return bars


def kline_rows(bars: List[Bar]) -> List[list]:
    """Binance-style kline rows (strings for prices, as the exchange sends)."""
    return [
        [b.open_time, str(b.open), str(b.high), str(b.low), str(b.close), str(b.volume),
         b.open_time + 59_999, "0", 0, "0", "0", "0"]
        for b in bars
    ]


class FakeResponse:
    def __init__(self, status: int = 200, body: Union[bytes, str, list, dict] = ""):
        self.status = status
        if isinstance(body, (list, dict)):
            body = json.dumps(body)
        self._body = body.encode() if isinstance(body, str) else body

    async def json(self, content_type=None):
        return json.loads(self._body)

    async def text(self, encoding="utf-8", errors="strict"):
        return self._body.decode(encoding, errors)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _Request:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Minimal aiohttp.ClientSession stand-in.

    `routes` maps a URL prefix to a FakeResponse, an exception instance, or a
    callable(url, params) returning either. Unmatched URLs get a 404.
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes = routes or {}
        self.calls: List[tuple] = []
        self.closed = False

    def get(self, url: str, params=None):
        self.calls.append((url, dict(params or {})))
        outcome: object = FakeResponse(404, "not found")
        for prefix, route in self.routes.items():
            if url.startswith(prefix):
                outcome = route(url, params) if callable(route) else route
                break
        return _Request(outcome)

    async def close(self):
        self.closed = True


@pytest.fixture
def rising_bars() -> List[Bar]:
    """250 strictly increasing closes."""
    return make_bars([100.0 + i for i in range(250)])


@pytest.fixture
def falling_bars() -> List[Bar]:
    """250 strictly decreasing closes."""
    return make_bars([1000.0 - i for i in range(250)])
