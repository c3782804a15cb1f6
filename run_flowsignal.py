#!/usr/bin/env python3
"""
Run the flowsignal collector.

Usage:
    python run_flowsignal.py [--symbols BTCUSDT,ETHUSDT] [--api] [--headless]
    python run_flowsignal.py --scan --symbol BTCUSDT --timeframe 15m

Examples:
    python run_flowsignal.py                       # Streams + live viewer
    python run_flowsignal.py --api --headless      # Streams + HTTP API, no viewer
    python run_flowsignal.py --scan -s ETHUSDT -t 1h

Configuration is read from the environment (see flowsignal/config.py);
command-line flags override it.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from rich.console import Console
from rich.logging import RichHandler

from flowsignal.aggregate_state import AggregateStateStore
from flowsignal.config import Settings, VALID_TIMEFRAMES
from flowsignal.embedded_api import create_embedded_app, serve_api
from flowsignal.historical import FetchError, ResilientFetcher, build_sources
from flowsignal.metrics_viewer import MetricsDisplay, SignalRefresher, run_display
from flowsignal.signal_pipeline import SignalService
from flowsignal.signal_scorer import InsufficientBarsError
from flowsignal.ws_connectors import StreamSupervisor

logger = logging.getLogger("flowsignal")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="flowsignal - live crypto microstructure + on-demand signals"
    )
    parser.add_argument("--symbols", type=str, default=None,
                        help="Comma-separated symbols to stream (default: $SYMBOLS)")
    parser.add_argument("--api", action="store_true",
                        help="Start the embedded HTTP API")
    parser.add_argument("--api-host", default=None, help="API host (default: $API_HOST)")
    parser.add_argument("--api-port", type=int, default=None, help="API port (default: $API_PORT)")
    parser.add_argument("--headless", action="store_true",
                        help="Do not start the terminal viewer")
    parser.add_argument("--scan", action="store_true",
                        help="Compute one signal, print it as JSON and exit")
    parser.add_argument("--symbol", "-s", default=None, help="Symbol for --scan")
    parser.add_argument("--timeframe", "-t", default=None, choices=VALID_TIMEFRAMES,
                        help="Timeframe for --scan and the viewer")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def apply_overrides(settings: Settings, args) -> Settings:
    if args.symbols:
        settings.symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
    if args.symbol:
        settings.default_symbol = args.symbol.upper()
    if args.timeframe:
        settings.default_timeframe = args.timeframe
    if args.api_host:
        settings.api_host = args.api_host
    if args.api_port:
        settings.api_port = args.api_port
    return settings


async def scan(settings: Settings) -> int:
    fetcher = ResilientFetcher(build_sources(settings.data_sources),
                               http_timeout=settings.http_timeout)
    service = SignalService(fetcher, default_limit=settings.bar_limit)
    try:
        report = await service.compute(settings.default_symbol, settings.default_timeframe)
    except (FetchError, InsufficientBarsError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await fetcher.close()
    print(json.dumps(report.to_dict(), indent=2))
    return 0


async def run(settings: Settings, args, console: Console) -> None:
    store = AggregateStateStore()
    store.start(settings.symbols)
    supervisor = StreamSupervisor(store.publish, settings.streams, settings.symbols)
    fetcher = ResilientFetcher(build_sources(settings.data_sources),
                               http_timeout=settings.http_timeout)
    service = SignalService(fetcher, store=store, default_limit=settings.bar_limit)
    refresher = SignalRefresher(
        service,
        [(sym, settings.default_timeframe) for sym in settings.symbols],
        interval=settings.signal_refresh_seconds,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    tasks = [
        asyncio.create_task(supervisor.connect_all(), name="streams"),
        asyncio.create_task(refresher.run(), name="signals"),
    ]
    if args.api:
        app = create_embedded_app(
            store, service, supervisor,
            default_symbol=settings.default_symbol,
            default_timeframe=settings.default_timeframe,
        )
        tasks.append(asyncio.create_task(
            serve_api(app, settings.api_host, settings.api_port), name="api"
        ))
        console.print(f"[cyan]Embedded API on http://{settings.api_host}:{settings.api_port}[/]")

    try:
        if args.headless:
            await stop_event.wait()
        else:
            display = MetricsDisplay(store, supervisor, refresher)
            await run_display(display, console, stop_event)
    finally:
        console.print("\n[yellow]Shutting down...[/]")
        supervisor.stop()
        refresher.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await store.stop()
        await fetcher.close()


def main(argv=None):
    args = parse_args(argv)
    # stderr keeps --scan JSON on stdout clean
    console = Console(stderr=True)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    settings = apply_overrides(Settings.from_env(), args)

    if args.scan:
        sys.exit(asyncio.run(scan(settings)))

    console.print("\n[bold blue]flowsignal[/]")
    console.print(
        f"Symbols: {', '.join(settings.symbols)}  |  "
        f"Sources: {' → '.join(settings.data_sources)}  |  "
        f"Streams: {', '.join(str(s) for s in settings.streams)}\n"
    )

    try:
        asyncio.run(run(settings, args, console))
    except KeyboardInterrupt:
        pass
    console.print("[green]Goodbye![/]")


if __name__ == "__main__":
    main()
