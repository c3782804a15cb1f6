"""
Terminal viewer for live aggregate state and periodic signals.

Layout:
    header       runtime + clock
    state        one row per tracked symbol (CVD, mids, premium, imbalance, liqs)
    signals      latest signal per (symbol, timeframe), refreshed periodically
    connections  connector state machine + message counts
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from rich import box
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .aggregate_state import AggregateStateStore
from .historical import FetchError
from .signal_pipeline import SignalReport, SignalService
from .signal_scorer import InsufficientBarsError
from .ws_connectors import ConnectionState, StreamSupervisor

logger = logging.getLogger(__name__)

STATE_STYLES = {
    ConnectionState.STREAMING.value: "green",
    ConnectionState.CONNECTING.value: "yellow",
    ConnectionState.BACKOFF.value: "red",
    ConnectionState.DISCONNECTED.value: "dim",
}


def _fmt(value: Optional[float], spec: str = ",.2f") -> str:
    return "—" if value is None else format(value, spec)


def _signed_style(value: Optional[float]) -> str:
    if value is None or value == 0:
        return "white"
    return "green" if value > 0 else "red"


class SignalRefresher:
    """
    Recomputes the signal for each (symbol, timeframe) pair on a fixed cadence.

    Results (or the error message) are kept per pair for display.
    """

    def __init__(self, service: SignalService, pairs: List[Tuple[str, str]],
                 interval: float):
        self.service = service
        self.pairs = pairs
        self.interval = interval
        self.latest: Dict[Tuple[str, str], Union[SignalReport, str]] = {}
        self.running = False

    async def refresh_once(self) -> None:
        for symbol, timeframe in self.pairs:
            try:
                self.latest[(symbol, timeframe)] = await self.service.compute(symbol, timeframe)
            except (FetchError, InsufficientBarsError) as e:
                logger.warning("Signal refresh %s %s failed: %s", symbol, timeframe, e)
                self.latest[(symbol, timeframe)] = str(e)

    async def run(self) -> None:
        self.running = True
        while self.running:
            await self.refresh_once()
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        self.running = False


class MetricsDisplay:
    """Terminal UI for aggregate state, signals and connections."""

    def __init__(self, store: AggregateStateStore,
                 supervisor: Optional[StreamSupervisor] = None,
                 refresher: Optional[SignalRefresher] = None):
        self.store = store
        self.supervisor = supervisor
        self.refresher = refresher
        self.start_time = time.time()

    def create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="state", ratio=1),
            Layout(name="signals", ratio=1),
            Layout(name="connections", ratio=1),
            Layout(name="footer", size=3),
        )
        return layout

    def generate_display(self) -> Layout:
        layout = self.create_layout()

        runtime = time.time() - self.start_time
        header_text = Text()
        header_text.append(" FLOWSIGNAL ", style="bold white on blue")
        header_text.append(f"  Runtime: {int(runtime // 60)}m {int(runtime % 60)}s", style="dim")
        header_text.append(f"  |  {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", style="dim")
        layout["header"].update(Panel(header_text, box=box.MINIMAL))

        layout["state"].update(self._create_state_panel())
        layout["signals"].update(self._create_signals_panel())
        layout["connections"].update(self._create_connections_panel())

        footer = f"Dropped events: {self.store.dropped_events:,}  |  Ctrl+C to exit"
        layout["footer"].update(Panel(footer, box=box.MINIMAL))
        return layout

    def _create_state_panel(self) -> Panel:
        table = Table(box=box.SIMPLE, show_header=True, padding=(0, 1))
        table.add_column("Symbol", style="bold")
        table.add_column("Spot CVD", justify="right")
        table.add_column("Perp CVD", justify="right")
        table.add_column("Perp Δ1s", justify="right")
        table.add_column("Spot mid", justify="right")
        table.add_column("Perp mid", justify="right")
        table.add_column("Premium", justify="right")
        table.add_column("Imb spot/perp", justify="right")
        table.add_column("Liq L/S 5m", justify="right")

        for symbol in sorted(self.store.symbols()):
            s = self.store.snapshot(symbol)
            table.add_row(
                symbol,
                f"[{_signed_style(s['spot_cvd'])}]{s['spot_cvd']:+,.3f}[/]",
                f"[{_signed_style(s['perp_cvd'])}]{s['perp_cvd']:+,.3f}[/]",
                f"[{_signed_style(s['perp_delta_1s'])}]{s['perp_delta_1s']:+,.3f}[/]",
                _fmt(s["spot_mid"]),
                _fmt(s["perp_mid"]),
                f"[{_signed_style(s['premium'])}]{_fmt(s['premium'], '+,.2f')}[/]",
                f"{s['imbalance_spot']:+.3f} / {s['imbalance_perp']:+.3f}",
                f"[green]${s['long_liq_usd_5m']:,.0f}[/] / [red]${s['short_liq_usd_5m']:,.0f}[/]",
            )
        return Panel(table, title="[bold]Microstructure[/]", border_style="blue")

    def _create_signals_panel(self) -> Panel:
        table = Table(box=box.SIMPLE, show_header=True, padding=(0, 1))
        table.add_column("Pair", style="bold")
        table.add_column("Dir")
        table.add_column("Conf", justify="right")
        table.add_column("Entry", justify="right")
        table.add_column("SL", justify="right")
        table.add_column("TP", justify="right")
        table.add_column("RSI14", justify="right")
        table.add_column("EMA50 / EMA200", justify="right")
        table.add_column("Source", style="dim")

        latest = self.refresher.latest if self.refresher else {}
        for (symbol, timeframe), result in sorted(latest.items()):
            pair = f"{symbol} {timeframe}"
            if isinstance(result, str):
                table.add_row(pair, f"[red]error[/] {result[:60]}", "", "", "", "", "", "", "")
                continue
            sig = result.signal
            style = "green" if sig.direction.value == "LONG" else "red"
            table.add_row(
                pair,
                f"[bold {style}]{sig.direction.value}[/]",
                f"{sig.confidence_percent}%",
                f"{sig.entry_price:,.2f}",
                f"{sig.stop_loss:,.2f}",
                f"{sig.take_profit:,.2f}",
                f"{sig.rsi14:.0f}",
                f"{sig.ema50:,.2f} / {sig.ema200:,.2f}",
                result.source,
            )
        return Panel(table, title="[bold]Signals[/]", border_style="yellow")

    def _create_connections_panel(self) -> Panel:
        table = Table(box=box.SIMPLE, show_header=True, padding=(0, 1))
        table.add_column("Stream", style="dim")
        table.add_column("State")
        table.add_column("Msgs", justify="right")
        table.add_column("Dropped", justify="right")
        table.add_column("Last", justify="right")

        now = time.time()
        stats = self.supervisor.get_stats() if self.supervisor else {}
        for name, st in sorted(stats.items()):
            age = now - st["last"] if st["last"] > 0 else 999
            age_style = "green" if age < 5 else "yellow" if age < 30 else "red"
            state_style = STATE_STYLES.get(st["state"], "white")
            table.add_row(
                name,
                f"[{state_style}]{st['state']}[/]",
                f"{st['messages']:,}",
                f"{st['dropped']:,}",
                f"[{age_style}]{age:.1f}s[/]",
            )
        return Panel(table, title="[bold]Connections[/]", border_style="cyan")


async def run_display(display: MetricsDisplay, console: Console,
                      stop_event: asyncio.Event, refresh_seconds: float = 0.5) -> None:
    """Redraw until stop_event is set."""
    with Live(display.generate_display(), console=console, refresh_per_second=2, screen=True) as live:
        while not stop_event.is_set():
            live.update(display.generate_display())
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=refresh_seconds)
            except asyncio.TimeoutError:
                pass
