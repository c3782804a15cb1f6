"""
Websocket connectors for real-time exchange data.

One StreamConnector per (venue, market, stream kind, symbol). Each connector
owns a single inbound channel, decodes frames into typed events and pushes
them to a sink (normally AggregateStateStore.publish). Frames that fail to
decode are dropped and counted.

Reconnects follow an explicit state machine:

    DISCONNECTED → CONNECTING → STREAMING → BACKOFF → CONNECTING → ...

Backoff starts at INITIAL_BACKOFF, doubles on every consecutive failure up
to MAX_BACKOFF, carries ±10% jitter, and resets once a connection reaches
STREAMING.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets

from .config import (
    BACKOFF_MULTIPLIER,
    DEFAULT_SYMBOLS,
    INITIAL_BACKOFF,
    JITTER_RANGE,
    MAX_BACKOFF,
    StreamSpec,
)
from .stream_events import StreamEvent, decode_frame

logger = logging.getLogger(__name__)

BINANCE_SPOT_WS = "wss://stream.binance.com:9443/ws"
BINANCE_PERP_WS = "wss://fstream.binance.com/ws"
BYBIT_SPOT_WS = "wss://stream.bybit.com/v5/public/spot"
BYBIT_PERP_WS = "wss://stream.bybit.com/v5/public/linear"

PING_INTERVAL = 20


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BACKOFF = "backoff"


@dataclass
class StreamConfig:
    """Configuration for a websocket stream."""
    venue: str
    market: str
    kind: str
    symbol: str
    url: str
    subscribe_msg: Optional[dict] = None

    @property
    def name(self) -> str:
        return f"{self.venue}_{self.market}_{self.kind}_{self.symbol.lower()}"


def _binance_config(spec: StreamSpec, symbol: str) -> StreamConfig:
    base = BINANCE_PERP_WS if spec.market == "perp" else BINANCE_SPOT_WS
    sym = symbol.lower()
    if spec.kind == "trade":
        stream = f"{sym}@aggTrade"
    elif spec.kind == "depth":
        stream = f"{sym}@depth20@100ms"
    elif spec.kind == "liquidation" and spec.market == "perp":
        stream = f"{sym}@forceOrder"
    else:
        raise ValueError(f"binance has no {spec.market} {spec.kind} stream")
    return StreamConfig(spec.venue, spec.market, spec.kind, symbol, f"{base}/{stream}")


def _bybit_config(spec: StreamSpec, symbol: str) -> StreamConfig:
    url = BYBIT_PERP_WS if spec.market == "perp" else BYBIT_SPOT_WS
    if spec.kind == "trade":
        topic = f"publicTrade.{symbol}"
    elif spec.kind == "liquidation" and spec.market == "perp":
        topic = f"allLiquidation.{symbol}"
    else:
        # orderbook topics are delta-based and need book reconstruction
        raise ValueError(f"bybit has no {spec.market} {spec.kind} snapshot stream")
    return StreamConfig(
        spec.venue, spec.market, spec.kind, symbol, url,
        subscribe_msg={"op": "subscribe", "args": [topic]},
    )


VENUE_CONFIG_BUILDERS: Dict[str, Callable[[StreamSpec, str], StreamConfig]] = {
    "binance": _binance_config,
    "bybit": _bybit_config,
}


def build_stream_config(spec: StreamSpec, symbol: str) -> StreamConfig:
    builder = VENUE_CONFIG_BUILDERS.get(spec.venue)
    if builder is None:
        raise ValueError(f"Unknown stream venue {spec.venue!r}")
    return builder(spec, symbol.upper())


class StreamConnector:
    """
    A single long-lived inbound stream.

    Constructor args:
        config:           Stream endpoint and identity
        sink:             Called with every decoded event, in arrival order
        connect:          websockets.connect-compatible factory
        initial_backoff:  First reconnect delay (seconds)
        max_backoff:      Reconnect delay cap (seconds)
    """

    def __init__(
        self,
        config: StreamConfig,
        sink: Callable[[StreamEvent], None],
        connect: Callable[..., Any] = websockets.connect,
        initial_backoff: float = INITIAL_BACKOFF,
        max_backoff: float = MAX_BACKOFF,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self.sink = sink
        self._connect = connect
        self._sleep = sleep
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

        self.running = False
        self.state = ConnectionState.DISCONNECTED
        self._backoff = initial_backoff
        self.message_count = 0
        self.dropped_count = 0
        self.event_count = 0
        self.connect_count = 0
        self.last_message: float = 0.0
        self.last_error: Optional[str] = None
        self.state_history: List[ConnectionState] = [ConnectionState.DISCONNECTED]

    @property
    def name(self) -> str:
        return self.config.name

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug("%s: %s → %s", self.name, self.state.value, state.value)
            self.state = state
            self.state_history.append(state)

    def _next_backoff(self) -> float:
        """Current delay with ±10% jitter; doubles the base for next time."""
        delay = self._backoff
        self._backoff = min(self._backoff * BACKOFF_MULTIPLIER, self.max_backoff)
        jitter = delay * JITTER_RANGE
        return max(0.0, delay + random.uniform(-jitter, jitter))

    def _handle_frame(self, raw) -> None:
        self.message_count += 1
        self.last_message = time.time()
        events = decode_frame(
            raw, self.config.venue, self.config.market,
            self.config.kind, self.config.symbol,
        )
        if not events:
            self.dropped_count += 1
            return
        for event in events:
            self.event_count += 1
            self.sink(event)

    async def run(self) -> None:
        """Connect and stream until stop() is called, reconnecting with backoff."""
        self.running = True
        while self.running:
            self._set_state(ConnectionState.CONNECTING)
            try:
                async with self._connect(self.config.url, ping_interval=PING_INTERVAL) as ws:
                    if self.config.subscribe_msg:
                        await ws.send(json.dumps(self.config.subscribe_msg))
                    self.connect_count += 1
                    self._set_state(ConnectionState.STREAMING)
                    self._backoff = self.initial_backoff
                    logger.info("%s: streaming from %s", self.name, self.config.url)

                    async for message in ws:
                        if not self.running:
                            break
                        self._handle_frame(message)

                if self.running:
                    self.last_error = "closed by server"
                    logger.warning("%s: stream ended, reconnecting", self.name)
            except websockets.exceptions.ConnectionClosed as e:
                self.last_error = f"connection closed: {e}"
                logger.warning("%s: %s", self.name, self.last_error)
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.warning("%s: connect failed: %s", self.name, self.last_error)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                logger.exception("%s: unexpected stream error", self.name)

            if not self.running:
                break
            delay = self._next_backoff()
            self._set_state(ConnectionState.BACKOFF)
            logger.info("%s: reconnecting in %.1fs", self.name, delay)
            await self._sleep(delay)

        self._set_state(ConnectionState.DISCONNECTED)

    def stop(self) -> None:
        self.running = False

    def get_stats(self) -> Dict:
        return {
            "state": self.state.value,
            "messages": self.message_count,
            "events": self.event_count,
            "dropped": self.dropped_count,
            "connects": self.connect_count,
            "last": self.last_message,
            "last_error": self.last_error,
        }


class StreamSupervisor:
    """
    Manages every connector for the configured streams and symbols.

    Args:
        sink:     Callback receiving decoded events (AggregateStateStore.publish)
        streams:  Stream specs to open for every symbol
        symbols:  Instruments to track. Defaults to DEFAULT_SYMBOLS.
    """

    def __init__(
        self,
        sink: Callable[[StreamEvent], None],
        streams: List[StreamSpec],
        symbols: Optional[List[str]] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.symbols = [s.upper() for s in (symbols or DEFAULT_SYMBOLS)]
        self.connectors: Dict[str, StreamConnector] = {}
        for symbol in self.symbols:
            for spec in streams:
                config = build_stream_config(spec, symbol)
                self.connectors[config.name] = StreamConnector(config, sink, connect=connect)

    async def connect_all(self) -> None:
        """Run every connector as an independent task."""
        tasks = [connector.run() for connector in self.connectors.values()]
        logger.info("Starting %d stream connectors", len(tasks))
        await asyncio.gather(*tasks, return_exceptions=True)

    def stop(self) -> None:
        for connector in self.connectors.values():
            connector.stop()

    def get_stats(self) -> Dict[str, Dict]:
        return {name: c.get_stats() for name, c in self.connectors.items()}

    def states(self) -> Dict[str, str]:
        return {name: c.state.value for name, c in self.connectors.items()}
