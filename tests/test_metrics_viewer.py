"""Tests for the terminal viewer's refresher and panel builders."""

import pytest
from rich.console import Console
from rich.layout import Layout

from flowsignal.aggregate_state import AggregateStateStore
from flowsignal.config import StreamSpec
from flowsignal.historical import BinanceSource, ResilientFetcher
from flowsignal.metrics_viewer import MetricsDisplay, SignalRefresher
from flowsignal.signal_pipeline import SignalReport, SignalService
from flowsignal.stream_events import LONG, DepthEvent, LiquidationEvent
from flowsignal.ws_connectors import StreamSupervisor
from tests.conftest import FakeResponse, FakeSession, kline_rows, make_bars


def make_service(routes):
    fetcher = ResilientFetcher([BinanceSource(["https://one.test"])], session=FakeSession(routes))
    return SignalService(fetcher)


class TestSignalRefresher:

    @pytest.mark.asyncio
    async def test_refresh_keeps_reports_and_errors(self):
        bars = make_bars([100.0 + i for i in range(250)])
        service = make_service({
            "https://one.test/api/v3/klines": lambda url, params: (
                FakeResponse(200, kline_rows(bars)) if params["symbol"] == "BTCUSDT"
                else FakeResponse(400, "Invalid symbol.")
            ),
        })
        refresher = SignalRefresher(service, [("BTCUSDT", "5m"), ("NOPEUSDT", "5m")], interval=60)

        await refresher.refresh_once()

        assert isinstance(refresher.latest[("BTCUSDT", "5m")], SignalReport)
        assert "Invalid symbol." in refresher.latest[("NOPEUSDT", "5m")]


class TestMetricsDisplay:

    @pytest.mark.asyncio
    async def test_renders_all_panels(self):
        store = AggregateStateStore(clock=lambda: 100.0)
        store.apply(DepthEvent("binance", "spot", "BTCUSDT", ((99.0, 1.0),), ((101.0, 1.0),)))
        store.apply(LiquidationEvent("binance", "perp", "BTCUSDT", 100.0, 3.0, LONG))
        supervisor = StreamSupervisor(lambda e: None, [StreamSpec("binance", "perp", "trade")], ["BTCUSDT"])
        bars = make_bars([100.0 + i for i in range(250)])
        refresher = SignalRefresher(
            make_service({"https://one.test": FakeResponse(200, kline_rows(bars))}),
            [("BTCUSDT", "1h"), ("ETHUSDT", "1h")],
            interval=60,
        )
        await refresher.refresh_once()
        refresher.latest[("ETHUSDT", "1h")] = "All data sources failed: BINANCE 503: down"

        layout = MetricsDisplay(store, supervisor, refresher).generate_display()

        assert isinstance(layout, Layout)
        console = Console(record=True, width=200, height=80)
        console.print(layout)
        text = console.export_text()
        assert "BTCUSDT" in text
        assert "LONG" in text
        assert "binance_perp_trade_btcusdt" in text
