"""
Aggregate state store: one mutable record per instrument.

Connectors never touch InstrumentState directly. They publish typed events
onto the instrument's queue and a single aggregator task per instrument
applies them in arrival order, so every field has exactly one writer and
no locks are needed. Readers get plain snapshots; fields converge
independently and are not updated atomically as a group.

Design rules:
  - Each symbol MUST have its own independent InstrumentState. NEVER share
    flow, book or liquidation state between symbols.
  - State is created lazily on first reference and lives for the process
    lifetime.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .config import LIQ_WINDOW_SECONDS
from .stream_events import (
    LONG,
    SHORT,
    DepthEvent,
    LiquidationEvent,
    StreamEvent,
    TradeEvent,
)

logger = logging.getLogger(__name__)

# Floor for the imbalance denominator
IMBALANCE_EPSILON = 1e-12


@dataclass
class FlowState:
    """Cumulative and per-second signed trade flow for one market."""
    cvd: float = 0.0
    delta_1s: float = 0.0
    last_second: Optional[int] = None
    trade_count: int = 0

    def on_trade(self, quantity: float, trade_time_ms: int, is_seller_initiated: bool) -> None:
        signed = -quantity if is_seller_initiated else quantity
        second = trade_time_ms // 1000
        if second != self.last_second:
            self.delta_1s = 0.0
            self.last_second = second
        self.cvd += signed
        self.delta_1s += signed
        self.trade_count += 1


@dataclass
class LiqEntry:
    timestamp: float
    side: str          # "long" = longs liquidated, "short" = shorts liquidated
    notional_usd: float
    price: float


class LiquidationWindow:
    """
    Rolling window of liquidations.

    Invariant: after every append or evict, each entry satisfies
    now - timestamp <= window_seconds and the two sums equal the totals of
    the retained entries.
    """

    def __init__(self, window_seconds: float = LIQ_WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self.events: Deque[LiqEntry] = deque()
        self.long_usd_5m: float = 0.0
        self.short_usd_5m: float = 0.0

    def append(self, entry: LiqEntry, now: float) -> None:
        self.events.append(entry)
        self.evict(now)

    def evict(self, now: float) -> None:
        """Drop entries older than the window, then re-sum."""
        cutoff = now - self.window_seconds
        self.events = deque(e for e in self.events if e.timestamp >= cutoff)
        self.long_usd_5m = sum(e.notional_usd for e in self.events if e.side == LONG)
        self.short_usd_5m = sum(e.notional_usd for e in self.events if e.side == SHORT)

    def __len__(self) -> int:
        return len(self.events)

    def to_list(self) -> List[Dict]:
        return [
            {
                "timestamp": e.timestamp,
                "side": e.side,
                "notional_usd": e.notional_usd,
                "price": e.price,
            }
            for e in self.events
        ]


def book_mid(bids, asks) -> Optional[float]:
    """Midpoint of best bid and best ask, or None if either side is empty."""
    if not bids or not asks:
        return None
    best_bid = max(p for p, _ in bids)
    best_ask = min(p for p, _ in asks)
    return (best_bid + best_ask) / 2


def book_imbalance(bids, asks) -> float:
    """(bid volume - ask volume) / max(bid volume + ask volume, eps)."""
    bid_vol = sum(q for _, q in bids)
    ask_vol = sum(q for _, q in asks)
    return (bid_vol - ask_vol) / max(bid_vol + ask_vol, IMBALANCE_EPSILON)


@dataclass
class InstrumentState:
    """All derived microstructure metrics for ONE instrument."""
    symbol: str
    spot_flow: FlowState = field(default_factory=FlowState)
    perp_flow: FlowState = field(default_factory=FlowState)
    spot_mid: Optional[float] = None
    perp_mid: Optional[float] = None
    premium: Optional[float] = None
    imbalance_spot: float = 0.0
    imbalance_perp: float = 0.0
    liquidations: LiquidationWindow = field(default_factory=LiquidationWindow)
    msg_counts: Dict[str, int] = field(default_factory=dict)
    updated_at: float = 0.0

    def flow(self, market: str) -> FlowState:
        return self.perp_flow if market == "perp" else self.spot_flow

    def to_dict(self, now: Optional[float] = None) -> Dict:
        return {
            "symbol": self.symbol,
            "spot_cvd": self.spot_flow.cvd,
            "spot_delta_1s": self.spot_flow.delta_1s,
            "perp_cvd": self.perp_flow.cvd,
            "perp_delta_1s": self.perp_flow.delta_1s,
            "spot_mid": self.spot_mid,
            "perp_mid": self.perp_mid,
            "premium": self.premium,
            "imbalance_spot": self.imbalance_spot,
            "imbalance_perp": self.imbalance_perp,
            "long_liq_usd_5m": self.liquidations.long_usd_5m,
            "short_liq_usd_5m": self.liquidations.short_usd_5m,
            "liquidation_count_5m": len(self.liquidations),
            "msg_counts": dict(self.msg_counts),
            "updated_at": self.updated_at,
            "ts": time.time() if now is None else now,
        }


class AggregateStateStore:
    """
    Owns every InstrumentState and the per-instrument event channels.

    Usage:
        store = AggregateStateStore()
        store.publish(trade_event)          # from a connector (non-blocking)
        store.start(["BTCUSDT"])            # aggregator tasks, process lifetime
        snapshot = store.snapshot("BTCUSDT")
    """

    def __init__(
        self,
        window_seconds: float = LIQ_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        queue_maxsize: int = 10000,
    ):
        self.window_seconds = window_seconds
        self.clock = clock
        self.queue_maxsize = queue_maxsize
        self._states: Dict[str, InstrumentState] = {}
        self._queues: Dict[str, asyncio.Queue] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self.dropped_events = 0

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get(self, symbol: str) -> InstrumentState:
        """Return the instrument's state, creating it on first reference."""
        symbol = symbol.upper()
        state = self._states.get(symbol)
        if state is None:
            state = InstrumentState(
                symbol=symbol,
                liquidations=LiquidationWindow(self.window_seconds),
            )
            self._states[symbol] = state
            logger.info("Created aggregate state for %s", symbol)
        return state

    def has(self, symbol: str) -> bool:
        return symbol.upper() in self._states

    def symbols(self) -> List[str]:
        return list(self._states.keys())

    def snapshot(self, symbol: str) -> Dict:
        """Plain-dict view of the instrument's current metrics."""
        state = self.get(symbol)
        now = self.clock()
        # Window invariant must hold at observation time too
        state.liquidations.evict(now)
        return state.to_dict(now)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply(self, event: StreamEvent) -> None:
        """Apply one decoded event to its instrument's state."""
        state = self.get(event.symbol)
        now = self.clock()
        key = f"{event.venue}_{event.market}_{type(event).__name__}"
        state.msg_counts[key] = state.msg_counts.get(key, 0) + 1

        if isinstance(event, TradeEvent):
            state.flow(event.market).on_trade(
                event.quantity, event.trade_time_ms, event.is_seller_initiated
            )
        elif isinstance(event, DepthEvent):
            self._apply_depth(state, event)
        elif isinstance(event, LiquidationEvent):
            state.liquidations.append(
                LiqEntry(
                    timestamp=now,
                    side=event.side,
                    notional_usd=event.notional,
                    price=event.price,
                ),
                now=now,
            )
        else:
            raise TypeError(f"Unsupported event type: {type(event).__name__}")

        state.updated_at = now

    @staticmethod
    def _apply_depth(state: InstrumentState, event: DepthEvent) -> None:
        mid = book_mid(event.bids, event.asks)
        imbalance = book_imbalance(event.bids, event.asks)
        if event.market == "perp":
            if mid is not None:
                state.perp_mid = mid
            state.imbalance_perp = imbalance
        else:
            if mid is not None:
                state.spot_mid = mid
            state.imbalance_spot = imbalance
        if state.perp_mid is not None and state.spot_mid is not None:
            state.premium = state.perp_mid - state.spot_mid

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    def _queue(self, symbol: str) -> asyncio.Queue:
        queue = self._queues.get(symbol)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_maxsize)
            self._queues[symbol] = queue
        return queue

    def publish(self, event: StreamEvent) -> None:
        """Enqueue an event for its instrument's aggregator (fire-and-forget)."""
        symbol = event.symbol.upper()
        self.get(symbol)
        try:
            self._queue(symbol).put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_events += 1
            logger.warning("Event queue full for %s, dropping %s", symbol, type(event).__name__)
            return
        self._ensure_aggregator(symbol)

    def _ensure_aggregator(self, symbol: str) -> None:
        task = self._tasks.get(symbol)
        if task is not None and not task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet: start() creates the task later
            return
        self._tasks[symbol] = loop.create_task(
            self._aggregate(symbol), name=f"aggregator-{symbol}"
        )

    async def _aggregate(self, symbol: str) -> None:
        queue = self._queue(symbol)
        while True:
            event = await queue.get()
            try:
                self.apply(event)
            except Exception:
                logger.exception("Failed to apply %s for %s", type(event).__name__, symbol)
            finally:
                queue.task_done()

    def start(self, symbols: Optional[List[str]] = None) -> None:
        """Start aggregator tasks for the given (or all known) symbols."""
        for symbol in symbols or self.symbols():
            self.get(symbol)
            self._queue(symbol.upper())
            self._ensure_aggregator(symbol.upper())

    async def drain(self) -> None:
        """Wait until every queued event has been applied."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
