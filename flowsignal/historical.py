"""
Resilient historical kline fetcher.

Sources are tried in a fixed order. Each source translates the canonical
timeframe into its own interval code (or rejects it before any request),
tries every configured mirror, and normalizes the response into Bar objects.
The first source that succeeds wins; if all of them fail a single
SourcesExhaustedError carrying the last failure is raised.

Exchange endpoints:
  - Binance:    GET /api/v3/klines            → [[openTime, o, h, l, c, v, ...], ...]
  - Binance US: GET /api/v3/klines            → same shape
  - Bybit:      GET /v5/market/kline          → {"retCode": 0, "result": {"list": [...]}}  (newest first)
  - OKX:        GET /api/v5/market/candles    → {"code": "0", "data": [...]}              (newest first)
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Type

import aiohttp

from .config import HTTP_TIMEOUT, VALID_TIMEFRAMES
from .models import Bar

logger = logging.getLogger(__name__)

# Longest response body excerpt kept in error messages
ERROR_BODY_CHARS = 200


class FetchError(Exception):
    """Base class for historical fetch failures."""


class InvalidTimeframeError(FetchError, ValueError):
    """Timeframe is outside the canonical vocabulary."""

    def __init__(self, timeframe: str):
        self.timeframe = timeframe
        super().__init__(
            f"Unsupported timeframe {timeframe!r}; expected one of: {', '.join(VALID_TIMEFRAMES)}"
        )


class SourceError(FetchError):
    """One source (or one of its mirrors) failed."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source.upper()} {message}")


class UnsupportedTimeframeError(SourceError, ValueError):
    """The source has no native interval for the requested timeframe."""

    def __init__(self, source: str, timeframe: str, supported: Iterable[str]):
        self.timeframe = timeframe
        super().__init__(
            source,
            f"does not support timeframe {timeframe!r}; supported: {', '.join(supported)}",
        )


class SourcesExhaustedError(FetchError):
    """Every configured source failed."""

    def __init__(self, errors: List[SourceError]):
        self.errors = errors
        last = errors[-1] if errors else None
        super().__init__(f"All data sources failed: {last}")


def validate_timeframe(timeframe: str) -> str:
    if timeframe not in VALID_TIMEFRAMES:
        raise InvalidTimeframeError(timeframe)
    return timeframe


def normalize_bars(bars: Iterable[Bar]) -> List[Bar]:
    """Order bars oldest-first and drop repeated open times (first one wins)."""
    seen = set()
    out: List[Bar] = []
    for bar in sorted(bars, key=lambda b: b.open_time):
        if bar.open_time in seen:
            continue
        seen.add(bar.open_time)
        out.append(bar)
    return out


def _row_to_bar(row: Sequence) -> Bar:
    return Bar(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class HistoricalSource:
    """
    A venue that can serve historical klines.

    Subclasses set `name`, `base_urls`, `max_limit` and `timeframe_map`
    (canonical timeframe → native interval code) and implement
    `build_request` and `parse_payload`.
    """

    name: str = "source"
    base_urls: Tuple[str, ...] = ()
    max_limit: int = 1000
    timeframe_map: Dict[str, str] = {}

    def __init__(self, base_urls: Optional[Sequence[str]] = None):
        if base_urls is not None:
            self.base_urls = tuple(base_urls)
        if not self.base_urls:
            raise ValueError(f"{self.name}: at least one base URL is required")

    def supports(self, timeframe: str) -> bool:
        return timeframe in self.timeframe_map

    def native_timeframe(self, timeframe: str) -> str:
        try:
            return self.timeframe_map[timeframe]
        except KeyError:
            raise UnsupportedTimeframeError(self.name, timeframe, self.timeframe_map) from None

    def build_request(self, base_url: str, symbol: str, interval: str,
                      limit: int) -> Tuple[str, Dict[str, str]]:
        raise NotImplementedError

    def parse_payload(self, payload) -> List[Bar]:
        raise NotImplementedError

    async def fetch(self, session, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """Fetch bars, trying every mirror before giving up on this source."""
        interval = self.native_timeframe(timeframe)
        limit = max(1, min(limit, self.max_limit))

        last_error: Optional[SourceError] = None
        for base_url in self.base_urls:
            try:
                return await self._fetch_from(session, base_url, symbol, interval, limit)
            except SourceError as e:
                last_error = e
                logger.warning("%s mirror %s failed: %s", self.name, base_url, e)

        if len(self.base_urls) == 1:
            raise last_error
        raise SourceError(
            self.name, f"endpoints exhausted ({len(self.base_urls)} tried): {last_error}"
        ) from last_error

    async def _fetch_from(self, session, base_url: str, symbol: str,
                          interval: str, limit: int) -> List[Bar]:
        url, params = self.build_request(base_url, symbol, interval, limit)
        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text(errors="replace")
                    raise SourceError(self.name, f"{resp.status}: {text[:ERROR_BODY_CHARS]}")
                try:
                    payload = await resp.json(content_type=None)
                except ValueError as e:
                    raise SourceError(self.name, f"invalid JSON body: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceError(self.name, f"transport error at {base_url}: {e!r}") from e

        try:
            bars = self.parse_payload(payload)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            raise SourceError(self.name, f"malformed kline row: {e}") from e
        return normalize_bars(bars)


class BinanceSource(HistoricalSource):
    """Binance spot klines; tries each api{1,2,3} mirror before the main host."""

    name = "binance"
    base_urls = (
        "https://api1.binance.com",
        "https://api2.binance.com",
        "https://api3.binance.com",
        "https://api.binance.com",
    )
    max_limit = 1000
    # Binance intervals match the canonical vocabulary one-to-one
    timeframe_map = {tf: tf for tf in VALID_TIMEFRAMES}

    def build_request(self, base_url, symbol, interval, limit):
        return f"{base_url}/api/v3/klines", {
            "symbol": symbol,
            "interval": interval,
            "limit": str(limit),
        }

    def parse_payload(self, payload) -> List[Bar]:
        if not isinstance(payload, list):
            raise SourceError(self.name, f"non-array: {str(payload)[:ERROR_BODY_CHARS]}")
        return [_row_to_bar(r) for r in payload]


class BinanceUSSource(BinanceSource):
    name = "binance_us"
    base_urls = ("https://api.binance.us",)


class BybitSource(HistoricalSource):
    """Bybit v5 linear (USDT perpetual) klines."""

    name = "bybit"
    base_urls = ("https://api.bybit.com",)
    max_limit = 200
    timeframe_map = {
        "1m": "1", "3m": "3", "5m": "5", "15m": "15", "30m": "30",
        "1h": "60", "2h": "120", "4h": "240", "6h": "360", "8h": "480",
        "12h": "720", "1d": "D", "3d": "3D", "1w": "W", "1M": "M",
    }

    def build_request(self, base_url, symbol, interval, limit):
        return f"{base_url}/v5/market/kline", {
            "category": "linear",
            "symbol": symbol,
            "interval": interval,
            "limit": str(limit),
        }

    def parse_payload(self, payload) -> List[Bar]:
        if not isinstance(payload, dict):
            raise SourceError(self.name, f"non-object: {str(payload)[:ERROR_BODY_CHARS]}")
        rows = (payload.get("result") or {}).get("list")
        if payload.get("retCode") != 0 or not isinstance(rows, list):
            raise SourceError(
                self.name, f"retCode {payload.get('retCode')}: {str(payload)[:ERROR_BODY_CHARS]}"
            )
        # newest first
        return [_row_to_bar(r) for r in reversed(rows)]


class OKXSource(HistoricalSource):
    """
    OKX USDT swap candles.

    OKX has no 8h bar, so "8h" is rejected before any request. Intervals of
    6h and above use the UTC-aligned codes.
    """

    name = "okx"
    base_urls = ("https://www.okx.com",)
    max_limit = 300
    timeframe_map = {
        "1m": "1m", "3m": "3m", "5m": "5m", "15m": "15m", "30m": "30m",
        "1h": "1H", "2h": "2H", "4h": "4H", "6h": "6Hutc", "12h": "12Hutc",
        "1d": "1Dutc", "3d": "3Dutc", "1w": "1Wutc", "1M": "1Mutc",
    }

    @staticmethod
    def inst_id(symbol: str) -> str:
        """BTCUSDT → BTC-USDT-SWAP"""
        symbol = symbol.upper()
        if symbol.endswith("USDT"):
            return f"{symbol[:-4]}-USDT-SWAP"
        return symbol

    def build_request(self, base_url, symbol, interval, limit):
        return f"{base_url}/api/v5/market/candles", {
            "instId": self.inst_id(symbol),
            "bar": interval,
            "limit": str(limit),
        }

    def parse_payload(self, payload) -> List[Bar]:
        if not isinstance(payload, dict):
            raise SourceError(self.name, f"non-object: {str(payload)[:ERROR_BODY_CHARS]}")
        rows = payload.get("data")
        if str(payload.get("code")) != "0" or not isinstance(rows, list):
            raise SourceError(
                self.name, f"code {payload.get('code')}: {str(payload)[:ERROR_BODY_CHARS]}"
            )
        return [_row_to_bar(r) for r in reversed(rows)]


SOURCE_TYPES: Dict[str, Type[HistoricalSource]] = {
    BinanceSource.name: BinanceSource,
    BinanceUSSource.name: BinanceUSSource,
    BybitSource.name: BybitSource,
    OKXSource.name: OKXSource,
}


def build_sources(names: Iterable[str]) -> List[HistoricalSource]:
    """Instantiate sources by configured name, preserving order."""
    sources = []
    for name in names:
        source_type = SOURCE_TYPES.get(name.lower())
        if source_type is None:
            raise ValueError(
                f"Unknown data source {name!r}; available: {', '.join(SOURCE_TYPES)}"
            )
        sources.append(source_type())
    return sources


class ResilientFetcher:
    """
    Ordered multi-source kline fetcher.

    Constructor args:
        sources:       Sources in priority order
        session:       Optional aiohttp-compatible session (created lazily if omitted)
        http_timeout:  Total per-request timeout in seconds
    """

    def __init__(
        self,
        sources: Sequence[HistoricalSource],
        session=None,
        http_timeout: float = HTTP_TIMEOUT,
    ):
        if not sources:
            raise ValueError("ResilientFetcher needs at least one source")
        self.sources = list(sources)
        self.http_timeout = http_timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.http_timeout)
            )
        return self._session

    async def fetch(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        bars, _ = await self.fetch_with_source(symbol, timeframe, limit)
        return bars

    async def fetch_with_source(self, symbol: str, timeframe: str,
                                limit: int) -> Tuple[List[Bar], str]:
        """Like fetch(), also returning the name of the source that served the bars."""
        validate_timeframe(timeframe)
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        symbol = symbol.upper()
        session = self._get_session()

        errors: List[SourceError] = []
        for source in self.sources:
            try:
                bars = await source.fetch(session, symbol, timeframe, limit)
            except SourceError as e:
                errors.append(e)
                logger.warning("Source %s failed for %s %s: %s", source.name, symbol, timeframe, e)
                continue
            logger.info("Fetched %d %s %s bars from %s", len(bars), symbol, timeframe, source.name)
            return bars, source.name

        raise SourcesExhaustedError(errors) from (errors[-1] if errors else None)

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
