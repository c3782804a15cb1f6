"""
On-demand signal pipeline: fetch bars → indicators → score.

This is the "compute signal for (symbol, timeframe)" interface consumed by
outer layers. Callers get a complete SignalReport or exactly one exception:
InvalidTimeframeError / InsufficientBarsError for bad input,
SourcesExhaustedError when no historical source could serve the bars.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from .aggregate_state import AggregateStateStore
from .config import DEFAULT_BAR_LIMIT
from .historical import ResilientFetcher, validate_timeframe
from .signal_scorer import MIN_BARS, InsufficientBarsError, Signal, score

logger = logging.getLogger(__name__)

# Microstructure fields copied from the aggregate state into a report
CONTEXT_FIELDS = (
    "premium",
    "imbalance_spot",
    "imbalance_perp",
    "spot_cvd",
    "perp_cvd",
    "long_liq_usd_5m",
    "short_liq_usd_5m",
)


@dataclass(frozen=True)
class SignalReport:
    symbol: str
    timeframe: str
    source: str
    bar_count: int
    signal: Signal
    computed_at: float
    context: Optional[Dict] = None

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "source": self.source,
            "bar_count": self.bar_count,
            "computed_at": self.computed_at,
            "signal": self.signal.to_dict(),
            "context": self.context,
        }


class SignalService:
    """
    Computes signals from historical bars.

    When a store is supplied, the live microstructure for the symbol is
    attached to the report as context. It does not influence the score.
    """

    def __init__(
        self,
        fetcher: ResilientFetcher,
        store: Optional[AggregateStateStore] = None,
        default_limit: int = DEFAULT_BAR_LIMIT,
    ):
        self.fetcher = fetcher
        self.store = store
        self.default_limit = default_limit

    def _context(self, symbol: str) -> Optional[Dict]:
        # Only read state that streams have actually created
        if self.store is None or not self.store.has(symbol):
            return None
        snap = self.store.snapshot(symbol)
        return {k: snap[k] for k in CONTEXT_FIELDS}

    async def compute(self, symbol: str, timeframe: str,
                      limit: Optional[int] = None) -> SignalReport:
        symbol = symbol.upper()
        validate_timeframe(timeframe)
        if limit is None:
            limit = self.default_limit
        if limit < MIN_BARS:
            raise InsufficientBarsError(
                f"limit {limit} is below the {MIN_BARS} bars needed to score"
            )

        bars, source = await self.fetcher.fetch_with_source(symbol, timeframe, limit)
        signal = score(bars)
        logger.info(
            "Signal %s %s: %s %d%% entry=%.2f",
            symbol, timeframe, signal.direction.value,
            signal.confidence_percent, signal.entry_price,
        )
        return SignalReport(
            symbol=symbol,
            timeframe=timeframe,
            source=source,
            bar_count=len(bars),
            signal=signal,
            computed_at=time.time(),
            context=self._context(symbol),
        )
