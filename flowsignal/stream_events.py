"""
Stream frame decoding. Converts raw exchange websocket frames into typed events.

Each venue sends trades, depth snapshots and liquidations in a different
structure with different field names and side conventions. Decoders return
a (possibly empty) list of events; anything that does not parse is dropped
and never raises.

Side conventions (CRITICAL, each exchange is different):
  - Binance aggTrade: "m" = buyer is maker → the SELLER was the aggressor
  - Binance forceOrder: "S" is the forced order side; SELL closes a long,
    BUY closes a short
  - Bybit publicTrade: "S" is the taker side ("Buy"/"Sell")
  - Bybit allLiquidation: "S" is the liquidated POSITION side;
    "Buy" = long liquidated, "Sell" = short liquidated
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

LONG = "long"
SHORT = "short"

FORCED_SELL = "sell"
FORCED_BUY = "buy"


def liquidated_side(forced_side: str) -> Optional[str]:
    """
    Position side closed by a forced order.

    A forced sell closes a long position; a forced buy closes a short.
    """
    forced_side = forced_side.lower()
    if forced_side == FORCED_SELL:
        return LONG
    if forced_side == FORCED_BUY:
        return SHORT
    return None


@dataclass(frozen=True)
class TradeEvent:
    venue: str
    market: str
    symbol: str
    price: float
    quantity: float
    trade_time_ms: int
    is_seller_initiated: bool


@dataclass(frozen=True)
class DepthEvent:
    """Top-of-book depth snapshot; bids descending, asks ascending."""
    venue: str
    market: str
    symbol: str
    bids: Tuple[Tuple[float, float], ...]
    asks: Tuple[Tuple[float, float], ...]


@dataclass(frozen=True)
class LiquidationEvent:
    """side is the position that was liquidated ("long" or "short")."""
    venue: str
    market: str
    symbol: str
    price: float
    quantity: float
    side: str

    @property
    def notional(self) -> float:
        return self.price * self.quantity


StreamEvent = Union[TradeEvent, DepthEvent, LiquidationEvent]

Decoder = Callable[[dict, str, str], List[StreamEvent]]


def _valid(price: float, qty: float) -> bool:
    """Finite, strictly positive price and quantity."""
    return math.isfinite(price) and math.isfinite(qty) and price > 0 and qty > 0


def _levels(raw) -> Tuple[Tuple[float, float], ...]:
    levels = []
    for level in raw or []:
        price, qty = float(level[0]), float(level[1])
        if _valid(price, qty):
            levels.append((price, qty))
    return tuple(levels)


def _unwrap_combined(data: dict) -> dict:
    # Combined stream format: {"stream": "...", "data": {...}}
    if "stream" in data and isinstance(data.get("data"), dict):
        return data["data"]
    return data


# ---------------------------------------------------------------------------
# Binance
# ---------------------------------------------------------------------------

def decode_binance_trade(data: dict, market: str, symbol: str) -> List[StreamEvent]:
    """
    aggTrade / trade:
        data["p"] → price (string)
        data["q"] → quantity (string)
        data["T"] → trade time in ms
        data["m"] → buyer is maker (True ⇒ seller-initiated)
    """
    data = _unwrap_combined(data)
    price = float(data["p"])
    qty = float(data["q"])
    if not _valid(price, qty):
        return []
    return [TradeEvent(
        venue="binance",
        market=market,
        symbol=(data.get("s") or symbol).upper(),
        price=price,
        quantity=qty,
        trade_time_ms=int(data["T"]),
        is_seller_initiated=bool(data["m"]),
    )]


def decode_binance_depth(data: dict, market: str, symbol: str) -> List[StreamEvent]:
    """
    Partial book depth:
        spot:    {"lastUpdateId": ..., "bids": [[p, q], ...], "asks": [...]}
        futures: {"e": "depthUpdate", "s": "BTCUSDT", "b": [...], "a": [...]}
    """
    data = _unwrap_combined(data)
    raw_bids = data["bids"] if "bids" in data else data["b"]
    raw_asks = data["asks"] if "asks" in data else data["a"]
    return [DepthEvent(
        venue="binance",
        market=market,
        symbol=(data.get("s") or symbol).upper(),
        bids=_levels(raw_bids),
        asks=_levels(raw_asks),
    )]


def decode_binance_liquidation(data: dict, market: str, symbol: str) -> List[StreamEvent]:
    """
    forceOrder:
        data["o"]["s"] → symbol
        data["o"]["S"] → forced order side ("BUY"/"SELL")
        data["o"]["p"] → order price (string)
        data["o"]["q"] → original quantity (string)
    """
    data = _unwrap_combined(data)
    order = data["o"]
    side = liquidated_side(order["S"])
    if side is None:
        logger.debug("binance forceOrder: unknown side %r", order.get("S"))
        return []
    price = float(order["p"])
    qty = float(order["q"])
    if not _valid(price, qty):
        return []
    return [LiquidationEvent(
        venue="binance",
        market=market,
        symbol=(order.get("s") or symbol).upper(),
        price=price,
        quantity=qty,
        side=side,
    )]


# ---------------------------------------------------------------------------
# Bybit
# ---------------------------------------------------------------------------

def _bybit_items(data: dict) -> list:
    items = data.get("data")
    if isinstance(items, dict):
        items = [items]
    if not isinstance(items, list):
        return []
    return items


def decode_bybit_trade(data: dict, market: str, symbol: str) -> List[StreamEvent]:
    """
    publicTrade.<SYM> (batched):
        item["p"] price, item["v"] size, item["T"] ms, item["S"] taker side
    """
    events: List[StreamEvent] = []
    for item in _bybit_items(data):
        price = float(item["p"])
        qty = float(item["v"])
        if not _valid(price, qty):
            continue
        events.append(TradeEvent(
            venue="bybit",
            market=market,
            symbol=(item.get("s") or symbol).upper(),
            price=price,
            quantity=qty,
            trade_time_ms=int(item["T"]),
            is_seller_initiated=item["S"] == "Sell",
        ))
    return events


def decode_bybit_liquidation(data: dict, market: str, symbol: str) -> List[StreamEvent]:
    """
    allLiquidation.<SYM> (batched at 500ms):
        item["S"] → liquidated position side: "Buy" = long, "Sell" = short
        item["p"] bankruptcy price, item["v"] size in base asset
    """
    events: List[StreamEvent] = []
    for item in _bybit_items(data):
        raw_side = item.get("S")
        if raw_side == "Buy":
            side = LONG
        elif raw_side == "Sell":
            side = SHORT
        else:
            logger.debug("bybit allLiquidation: unknown side %r", raw_side)
            continue
        price = float(item["p"])
        qty = float(item["v"])
        if not _valid(price, qty):
            continue
        events.append(LiquidationEvent(
            venue="bybit",
            market=market,
            symbol=(item.get("s") or symbol).upper(),
            price=price,
            quantity=qty,
            side=side,
        ))
    return events


DECODERS: Dict[Tuple[str, str], Decoder] = {
    ("binance", "trade"): decode_binance_trade,
    ("binance", "depth"): decode_binance_depth,
    ("binance", "liquidation"): decode_binance_liquidation,
    ("bybit", "trade"): decode_bybit_trade,
    ("bybit", "liquidation"): decode_bybit_liquidation,
}


def decode_frame(raw: Union[str, bytes], venue: str, market: str,
                 kind: str, symbol: str) -> List[StreamEvent]:
    """
    Main entry point. Decodes one raw websocket frame.

    Returns an empty list for control frames (subscription acks, pongs),
    unknown venue/kind pairs and anything that fails to parse.
    """
    decoder = DECODERS.get((venue, kind))
    if decoder is None:
        return []
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(data, dict):
        return []
    # Bybit acks carry "success"/"op"; they have no payload
    if "success" in data or data.get("op") == "pong":
        return []
    try:
        return decoder(data, market, symbol.upper())
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
        logger.debug("Dropped %s %s %s frame: %s", venue, market, kind, exc)
        return []
