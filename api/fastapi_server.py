from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from ingest.events import now_ms
from api.metrics import start_metrics_server
from api.view_builder import build_detail
from monitoring.logging_utils import setup_logging


decision_service = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global decision_service
    # main.py injects a service it already runs; otherwise this app owns one
    owned = decision_service is None
    if owned:
        from main import DecisionEngineService
        decision_service = DecisionEngineService(config)
        await decision_service.start()
        start_metrics_server(decision_service.monitoring_cfg)
    try:
        yield
    finally:
        if owned and decision_service:
            await decision_service.stop()


app = FastAPI(title="Intent Decision Engine API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_service():
    if not decision_service:
        raise HTTPException(status_code=503, detail="Decision engine not initialized")
    return decision_service


@app.get("/")
async def root():
    return {
        "service": "Intent Decision Engine",
        "version": "1.0.0",
        "status": "running" if decision_service and decision_service.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    failure = decision_service.failure if decision_service else None
    return {
        "status": "unhealthy" if failure else "healthy",
        "timestamp": _utc_now(),
        "system_running": decision_service.running if decision_service else False,
        "failure": repr(failure) if failure else None,
    }

@app.get("/api/instruments")
async def get_instruments():
    service = _require_service()
    view = service.view()
    view["timestamp"] = _utc_now()
    return view

@app.get("/api/instruments/{symbol}")
async def get_instrument(symbol: str):
    service = _require_service()
    snapshot = service.engine.snapshot_for(symbol)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Instrument '{symbol}' not found")
    return build_detail(snapshot, now_ms(), service.display_timezone)

@app.post("/api/events/{stream}")
async def post_events(stream: str, payload: Any = Body(...)):
    service = _require_service()
    events = await service.submit(stream, payload)
    return {"accepted": len(events), "timestamp": _utc_now()}

@app.post("/api/clear")
async def clear_history(symbol: Optional[str] = None):
    service = _require_service()
    cleared = service.engine.clear(symbol)
    if symbol is not None and cleared == 0:
        raise HTTPException(status_code=404, detail=f"Instrument '{symbol}' not found")
    return {"cleared": cleared, "symbol": symbol, "timestamp": _utc_now()}

if __name__ == "__main__":
    import uvicorn
    setup_logging(config.monitoring.get('log_level', 'INFO'))
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
