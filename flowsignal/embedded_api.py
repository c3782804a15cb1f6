"""
Embedded API server.

Exposes the two read interfaces over HTTP and shares the live store and
signal service directly with the collector, without snapshot files:

  GET /health                      uptime, tracked symbols, connector states
  GET /state/{symbol}              aggregate microstructure state
  GET /signal?symbol=&timeframe=   on-demand signal (fetch → score)

Usage:
    app = create_embedded_app(store=store, service=service, supervisor=supervisor)
    await serve_api(app, host="127.0.0.1", port=8899)
"""

import logging
import time
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from .aggregate_state import AggregateStateStore
from .config import DEFAULT_SYMBOL, DEFAULT_TF
from .historical import InvalidTimeframeError, SourcesExhaustedError
from .signal_pipeline import SignalService
from .signal_scorer import InsufficientBarsError
from .ws_connectors import StreamSupervisor

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

MAX_LIMIT = 1000


def create_embedded_app(
    store: AggregateStateStore,
    service: SignalService,
    supervisor: Optional[StreamSupervisor] = None,
    default_symbol: str = DEFAULT_SYMBOL,
    default_timeframe: str = DEFAULT_TF,
) -> FastAPI:
    app = FastAPI(title="flowsignal", version=API_VERSION)
    started_at = time.time()

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": API_VERSION,
            "uptime_s": round(time.time() - started_at, 1),
            "symbols": store.symbols(),
            "dropped_events": store.dropped_events,
            "connectors": supervisor.states() if supervisor else {},
        }

    @app.get("/state/{symbol}")
    async def state(symbol: str):
        symbol = symbol.upper()
        if not store.has(symbol):
            raise HTTPException(status_code=404, detail=f"No state for {symbol}")
        return store.snapshot(symbol)

    @app.get("/signal")
    async def signal(
        symbol: str = Query(default_symbol),
        timeframe: str = Query(default_timeframe),
        limit: Optional[int] = Query(None, ge=1, le=MAX_LIMIT),
    ):
        try:
            report = await service.compute(symbol, timeframe, limit)
        except (InvalidTimeframeError, InsufficientBarsError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SourcesExhaustedError as e:
            logger.warning("Signal %s %s unavailable: %s", symbol, timeframe, e)
            raise HTTPException(status_code=502, detail=str(e))
        return report.to_dict()

    return app


async def serve_api(app: FastAPI, host: str, port: int, log_level: str = "warning") -> None:
    """Run the API inside the current event loop so it shares the store and sessions."""
    config = uvicorn.Config(app, host=host, port=port, log_level=log_level, access_log=False)
    server = uvicorn.Server(config)
    logger.info("Embedded API listening on http://%s:%d", host, port)
    await server.serve()
