"""
Runtime configuration.

Defaults live as module-level constants; Settings.from_env() overrides them
from environment variables so deployments can change sources, symbols and
streams without editing code.

Environment variables:
    DATA_SOURCES            Ordered historical sources (default "binance,binance_us,bybit")
    SYMBOLS                 Tracked instruments (default "BTCUSDT,ETHUSDT,SOLUSDT")
    DEFAULT_SYMBOL          Symbol used when a request omits one
    DEFAULT_TF              Timeframe used when a request omits one
    STREAMS                 Stream specs "venue:market:kind", comma separated
    HTTP_TIMEOUT            Per-call REST timeout in seconds
    SIGNAL_REFRESH_SECONDS  Viewer signal refresh cadence
    API_HOST / API_PORT     Embedded API bind address
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

# Canonical timeframe vocabulary shared by every historical source.
VALID_TIMEFRAMES: Tuple[str, ...] = (
    "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w", "1M",
)

DEFAULT_SYMBOLS: List[str] = ["BTCUSDT", "ETHUSDT", "SOLUSDT"]
DEFAULT_SYMBOL = "BTCUSDT"
DEFAULT_TF = "5m"
DEFAULT_DATA_SOURCES: List[str] = ["binance", "binance_us", "bybit"]

# Bars requested per signal computation
DEFAULT_BAR_LIMIT = 500

# HTTP timeout per request (seconds)
HTTP_TIMEOUT = 15.0

# Liquidation rolling window (seconds)
LIQ_WINDOW_SECONDS = 300.0

# Reconnect backoff settings
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0
BACKOFF_MULTIPLIER = 2.0
JITTER_RANGE = 0.10

SIGNAL_REFRESH_SECONDS = 300.0

API_HOST = "127.0.0.1"
API_PORT = 8899

# venue:market:kind
DEFAULT_STREAMS: List[str] = [
    "binance:spot:trade",
    "binance:spot:depth",
    "binance:perp:trade",
    "binance:perp:depth",
    "binance:perp:liquidation",
    "bybit:perp:liquidation",
]

STREAM_KINDS = ("trade", "depth", "liquidation")
MARKETS = ("spot", "perp")


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class StreamSpec:
    """One inbound stream to open per tracked symbol."""
    venue: str
    market: str
    kind: str

    @classmethod
    def parse(cls, text: str) -> "StreamSpec":
        parts = [p.strip().lower() for p in text.split(":")]
        if len(parts) != 3:
            raise ValueError(f"Stream spec must be venue:market:kind, got {text!r}")
        venue, market, kind = parts
        if market not in MARKETS:
            raise ValueError(f"Unknown market {market!r} in {text!r} (expected one of {MARKETS})")
        if kind not in STREAM_KINDS:
            raise ValueError(f"Unknown stream kind {kind!r} in {text!r} (expected one of {STREAM_KINDS})")
        return cls(venue=venue, market=market, kind=kind)

    def __str__(self) -> str:
        return f"{self.venue}:{self.market}:{self.kind}"


@dataclass
class Settings:
    """Process-wide settings."""
    data_sources: List[str] = field(default_factory=lambda: list(DEFAULT_DATA_SOURCES))
    symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    default_symbol: str = DEFAULT_SYMBOL
    default_timeframe: str = DEFAULT_TF
    streams: List[StreamSpec] = field(
        default_factory=lambda: [StreamSpec.parse(s) for s in DEFAULT_STREAMS]
    )
    http_timeout: float = HTTP_TIMEOUT
    bar_limit: int = DEFAULT_BAR_LIMIT
    signal_refresh_seconds: float = SIGNAL_REFRESH_SECONDS
    api_host: str = API_HOST
    api_port: int = API_PORT

    def __post_init__(self):
        self.data_sources = [s.lower() for s in self.data_sources]
        self.symbols = [s.upper() for s in self.symbols]
        self.default_symbol = self.default_symbol.upper()
        if not self.data_sources:
            raise ValueError("At least one data source must be configured")
        if not self.symbols:
            raise ValueError("At least one symbol must be configured")
        if self.default_timeframe not in VALID_TIMEFRAMES:
            raise ValueError(
                f"DEFAULT_TF {self.default_timeframe!r} is not one of {', '.join(VALID_TIMEFRAMES)}"
            )
        if self.http_timeout <= 0:
            raise ValueError(f"HTTP_TIMEOUT must be positive, got {self.http_timeout}")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        kwargs = {}

        sources = _split_csv(env.get("DATA_SOURCES"))
        if sources:
            kwargs["data_sources"] = sources
        symbols = _split_csv(env.get("SYMBOLS"))
        if symbols:
            kwargs["symbols"] = symbols
        if env.get("DEFAULT_SYMBOL"):
            kwargs["default_symbol"] = env["DEFAULT_SYMBOL"]
        if env.get("DEFAULT_TF"):
            kwargs["default_timeframe"] = env["DEFAULT_TF"]
        streams = _split_csv(env.get("STREAMS"))
        if streams:
            kwargs["streams"] = [StreamSpec.parse(s) for s in streams]
        if env.get("HTTP_TIMEOUT"):
            kwargs["http_timeout"] = float(env["HTTP_TIMEOUT"])
        if env.get("SIGNAL_REFRESH_SECONDS"):
            kwargs["signal_refresh_seconds"] = float(env["SIGNAL_REFRESH_SECONDS"])
        if env.get("API_HOST"):
            kwargs["api_host"] = env["API_HOST"]
        if env.get("API_PORT"):
            kwargs["api_port"] = int(env["API_PORT"])

        return cls(**kwargs)
