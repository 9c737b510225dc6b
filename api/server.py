import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import config, get_config_section
from monitoring.logging_utils import setup_logging
from risk.position_sizer import unrealized_pnl


pipeline = None

api_cfg = get_config_section(config, 'api')


@asynccontextmanager
async def lifespan(app: FastAPI):
    global pipeline
    from orchestration.pipeline import FootprintPipeline
    pipeline = FootprintPipeline()
    task = asyncio.create_task(pipeline.run())
    try:
        yield
    finally:
        if pipeline:
            await pipeline.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Footprint Order-Flow API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_cfg.get('cors_origins', []),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class StreamAction(BaseModel):
    action: str
    symbols: Optional[List[str]] = None


def _require_pipeline():
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")
    return pipeline


def _parse_symbols(symbols: Optional[str]) -> List[str]:
    if not symbols:
        return []
    return [s.strip().upper() for s in symbols.split(',') if s.strip()]


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "pipeline_running": pipeline.running if pipeline else False,
        "stream_halted": pipeline.stream.halted if pipeline else False,
        "symbols": list(pipeline.stream.symbols) if pipeline else [],
    }


@app.get("/api/bars/{symbol}")
async def get_bars(symbol: str, count: int = Query(20, ge=1, le=1000)):
    p = _require_pipeline()
    bars = p.aggregator.latest_bars(symbol, count)
    return {
        "symbol": symbol.upper(),
        "bars": [bar.to_dict() for bar in bars],
        "count": len(bars),
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/api/bars/{symbol}/current")
async def get_current_bar(symbol: str):
    p = _require_pipeline()
    bar = p.aggregator.current_bar(symbol)
    if bar is None:
        raise HTTPException(status_code=404, detail=f"No current bar for {symbol.upper()}")
    return bar.to_dict()


@app.get("/api/metrics/{symbol}")
async def get_order_flow_metrics(symbol: str):
    p = _require_pipeline()
    snapshot = p.engine.analytics.metrics_for(symbol.upper())
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Not enough completed bars for {symbol.upper()}")
    return {
        "symbol": symbol.upper(),
        "metrics": snapshot.to_dict(),
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.get("/api/positions")
async def get_positions():
    p = _require_pipeline()
    open_positions = await p.store.get_open_positions()
    closed_positions = await p.store.get_closed_positions()

    open_payload = []
    for position in open_positions:
        data = position.to_dict()
        bar = p.aggregator.current_bar(position.symbol)
        price = bar.close if bar is not None else None
        data["unrealized_pnl"] = unrealized_pnl(position.direction, position.entry_price, price, position.quantity)
        open_payload.append(data)

    return {
        "open": open_payload,
        "closed": [position.to_dict() for position in closed_positions],
        "timestamp": datetime.utcnow().isoformat(),
    }


@app.post("/api/stream")
async def manage_stream(body: StreamAction):
    p = _require_pipeline()
    if body.action == "start":
        if not body.symbols:
            raise HTTPException(status_code=400, detail="Symbols array is required for start action.")
        await p.stream.start(body.symbols)
        return {"status": "started", "symbols": list(p.stream.symbols)}
    if body.action == "stop":
        await p.stream.stop()
        p.aggregator.flush()
        return {"status": "stopped"}
    raise HTTPException(status_code=400, detail="Invalid action. Use 'start' or 'stop'.")


@app.websocket("/ws/footprint")
async def footprint_stream(websocket: WebSocket, symbols: Optional[str] = None):
    p = pipeline
    await websocket.accept()
    if p is None:
        await websocket.close(code=1013)
        return

    requested = _parse_symbols(symbols)
    subscription = p.event_bus.subscribe(symbols=requested or None, name=f"ws-{id(websocket):x}")
    try:
        initial_count = int(api_cfg.get('initial_bars', 5))
        for symbol in requested:
            for bar in p.aggregator.latest_bars(symbol, initial_count):
                await websocket.send_json({"type": "completed", "symbol": symbol, "bar": bar.to_dict()})
            current = p.aggregator.current_bar(symbol)
            if current is not None and current.total_volume > 0:
                await websocket.send_json({"type": "updated", "symbol": symbol, "bar": current.to_dict()})

        async for event in subscription:
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
