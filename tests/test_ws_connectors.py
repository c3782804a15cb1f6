"""Unit tests for stream connectors and the reconnect state machine."""

import json

import pytest
import websockets

from flowsignal.config import StreamSpec
from flowsignal.ws_connectors import (
    BINANCE_PERP_WS,
    BYBIT_PERP_WS,
    ConnectionState,
    StreamConfig,
    StreamConnector,
    StreamSupervisor,
    build_stream_config,
)

TRADE = json.dumps({"s": "BTCUSDT", "p": "100", "q": "1", "T": 1000, "m": False})


class FakeWebSocket:
    def __init__(self, frames, error=None):
        self.frames = list(frames)
        self.error = error
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.error is not None:
            raise self.error

    def __aiter__(self):
        return self._iterate()


class _Connection:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, *exc):
        return False


class FakeConnect:
    """websockets.connect stand-in that replays one scripted outcome per attempt."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("no more outcomes")
        return _Connection(outcome)


class SleepRecorder:
    """Records backoff delays and stops the connector after `limit` sleeps."""

    def __init__(self, limit):
        self.limit = limit
        self.delays = []
        self.connector = None

    async def __call__(self, delay):
        self.delays.append(delay)
        if len(self.delays) >= self.limit:
            self.connector.stop()


def make_connector(outcomes, sleep_limit, sink=None, config=None):
    config = config or StreamConfig("binance", "perp", "trade", "BTCUSDT", f"{BINANCE_PERP_WS}/btcusdt@aggTrade")
    connect = FakeConnect(outcomes)
    sleep = SleepRecorder(sleep_limit)
    events = []
    connector = StreamConnector(
        config, sink or events.append, connect=connect, sleep=sleep,
        initial_backoff=1.0, max_backoff=60.0,
    )
    sleep.connector = connector
    return connector, connect, sleep, events


@pytest.fixture
def no_jitter(monkeypatch):
    monkeypatch.setattr("flowsignal.ws_connectors.random.uniform", lambda a, b: 0.0)


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_transitions_and_backoff_reset(self, no_jitter):
        outcomes = [OSError("refused"), OSError("refused"), FakeWebSocket([TRADE, "garbage"])]
        connector, connect, sleep, events = make_connector(outcomes, sleep_limit=3)

        await connector.run()

        S = ConnectionState
        assert connector.state_history == [
            S.DISCONNECTED,
            S.CONNECTING, S.BACKOFF,
            S.CONNECTING, S.BACKOFF,
            S.CONNECTING, S.STREAMING, S.BACKOFF,
            S.DISCONNECTED,
        ]
        # 1s, doubled to 2s, then reset after reaching STREAMING
        assert sleep.delays == [1.0, 2.0, 1.0]
        assert len(events) == 1
        assert connector.message_count == 2
        assert connector.dropped_count == 1
        assert connector.connect_count == 1
        assert connect.calls[0][1] == {"ping_interval": 20}

    @pytest.mark.asyncio
    async def test_backoff_capped(self, no_jitter):
        connector, _, sleep, _ = make_connector([], sleep_limit=10)
        await connector.run()
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0, 60.0, 60.0]
        assert connector.state is ConnectionState.DISCONNECTED
        assert "OSError" in connector.last_error

    @pytest.mark.asyncio
    async def test_connection_closed_mid_stream(self, no_jitter):
        closed = websockets.exceptions.ConnectionClosed(None, None)
        connector, _, sleep, events = make_connector(
            [FakeWebSocket([TRADE, TRADE], error=closed)], sleep_limit=1
        )
        await connector.run()
        assert len(events) == 2
        assert connector.last_error.startswith("connection closed")
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_wrong_shape_frame_keeps_streaming(self, no_jitter):
        bad = json.dumps({"s": 7, "p": "1", "q": "1", "T": 1, "m": True})
        connector, _, sleep, events = make_connector(
            [FakeWebSocket([bad, TRADE])], sleep_limit=1
        )
        await connector.run()
        assert len(events) == 1
        assert connector.dropped_count == 1
        assert connector.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off_and_reconnects(self, no_jitter):
        calls = []

        def sink(event):
            calls.append(event)
            if len(calls) == 1:
                raise RuntimeError("sink exploded")

        connector, connect, sleep, _ = make_connector(
            [FakeWebSocket([TRADE, TRADE]), FakeWebSocket([TRADE])], sleep_limit=2, sink=sink
        )
        await connector.run()

        S = ConnectionState
        assert connector.state_history == [
            S.DISCONNECTED,
            S.CONNECTING, S.STREAMING, S.BACKOFF,
            S.CONNECTING, S.STREAMING, S.BACKOFF,
            S.DISCONNECTED,
        ]
        assert connector.connect_count == 2
        assert len(calls) == 2
        assert sleep.delays == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_stop_while_streaming(self):
        connector = None

        def sink(event):
            connector.stop()

        connector, _, sleep, _ = make_connector(
            [FakeWebSocket([TRADE, TRADE, TRADE])], sleep_limit=99, sink=sink
        )
        await connector.run()
        assert connector.event_count == 1
        assert sleep.delays == []
        assert connector.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_subscribe_message_sent(self):
        ws = FakeWebSocket([])
        config = build_stream_config(StreamSpec("bybit", "perp", "liquidation"), "btcusdt")
        connector, connect, _, _ = make_connector([ws], sleep_limit=1, config=config)
        await connector.run()
        assert connect.calls[0][0] == BYBIT_PERP_WS
        assert json.loads(ws.sent[0]) == {"op": "subscribe", "args": ["allLiquidation.BTCUSDT"]}


class TestBackoff:

    def test_jitter_within_ten_percent(self):
        connector, _, _, _ = make_connector([], sleep_limit=1)
        bases = [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]
        for base in bases:
            delay = connector._next_backoff()
            assert base * 0.9 <= delay <= base * 1.1


class TestStreamConfig:

    def test_binance_urls(self):
        trade = build_stream_config(StreamSpec("binance", "spot", "trade"), "BTCUSDT")
        depth = build_stream_config(StreamSpec("binance", "perp", "depth"), "ethusdt")
        liq = build_stream_config(StreamSpec("binance", "perp", "liquidation"), "BTCUSDT")
        assert trade.url == "wss://stream.binance.com:9443/ws/btcusdt@aggTrade"
        assert depth.url == "wss://fstream.binance.com/ws/ethusdt@depth20@100ms"
        assert liq.url.endswith("btcusdt@forceOrder")
        assert liq.subscribe_msg is None
        assert depth.name == "binance_perp_depth_ethusdt"

    @pytest.mark.parametrize("spec", [
        StreamSpec("binance", "spot", "liquidation"),
        StreamSpec("bybit", "perp", "depth"),
        StreamSpec("kraken", "spot", "trade"),
    ])
    def test_unsupported_streams(self, spec):
        with pytest.raises(ValueError):
            build_stream_config(spec, "BTCUSDT")


class TestSupervisor:

    def test_one_connector_per_symbol_and_stream(self):
        streams = [StreamSpec("binance", "spot", "trade"), StreamSpec("bybit", "perp", "trade")]
        supervisor = StreamSupervisor(lambda e: None, streams, ["btcusdt", "ETHUSDT"])
        assert sorted(supervisor.connectors) == [
            "binance_spot_trade_btcusdt",
            "binance_spot_trade_ethusdt",
            "bybit_perp_trade_btcusdt",
            "bybit_perp_trade_ethusdt",
        ]
        assert set(supervisor.states().values()) == {"disconnected"}

    @pytest.mark.asyncio
    async def test_connect_all_runs_every_connector(self):
        supervisor = StreamSupervisor(
            lambda e: None,
            [StreamSpec("binance", "perp", "trade")],
            ["BTCUSDT", "ETHUSDT"],
            connect=FakeConnect([]),
        )
        for connector in supervisor.connectors.values():
            sleep = SleepRecorder(1)
            sleep.connector = connector
            connector._sleep = sleep

        await supervisor.connect_all()

        stats = supervisor.get_stats()
        assert len(stats) == 2
        assert all(s["state"] == "disconnected" and s["last_error"] for s in stats.values())
