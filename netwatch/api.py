"""
FastAPI application exposing the probing engine.

Endpoints
---------
- GET  /health                        -> Simple liveness check
- GET  /engine/status                 -> Loop counters, last cycle report, pool stats
- POST /devices/{device_id}/probe     -> Manual "probe now" (detailed, longer timeout)
- GET  /connections/{id}/traffic      -> In-memory traffic history for one connection
- GET  /devices/{id}/latency          -> In-memory latency history for one device
- POST /scan                          -> Range scan of a CIDR block

Device, map and credential CRUD belong to the dashboard backend; this app
only surfaces what the engine itself owns.
"""

from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from netwatch.config import settings
from netwatch.database import create_all
from netwatch.engine import ProbingEngine
from netwatch.exceptions import NotFound, ValidationError
from netwatch.logging_config import configure_logging
from netwatch.schemas import (
    EngineStatusOut,
    LatencyPoint,
    ProbeNowOut,
    ScanHitOut,
    ScanRequest,
    TrafficPoint,
)
from netwatch.storage import Storage


# ---------------------------------------------------------------------------
# Lifespan: tables, engine start/stop
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Make sure tables exist, then build the engine and (unless
    START_ENGINE=0) start its loops for the lifetime of the process.
    """
    configure_logging(settings.log_level)
    await create_all()

    engine = ProbingEngine(Storage())
    app.state.engine = engine
    if settings.start_engine:
        await engine.refresh_settings()
        engine.start()
    try:
        yield
    finally:
        await engine.stop()


app = FastAPI(
    title="Netwatch Probing Engine API",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Dependency: the process-wide engine
# ---------------------------------------------------------------------------

def get_engine(request: Request) -> ProbingEngine:
    """FastAPI dependency returning the engine created in `lifespan`."""
    return request.app.state.engine


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health() -> dict:
    """Simple liveness endpoint used for health checks."""
    return {"status": "ok"}


@app.get("/engine/status", response_model=EngineStatusOut)
def engine_status(engine: ProbingEngine = Depends(get_engine)):
    return engine.status()


@app.post("/devices/{device_id}/probe", response_model=ProbeNowOut)
async def probe_device(device_id: str, engine: ProbingEngine = Depends(get_engine)):
    """
    Probe one device immediately.

    The probe is always detailed (link speeds measured, ifIndexes resolved)
    and runs with the longer manual timeout. The device's status is updated
    exactly as a regular cycle would.
    """
    return await engine.probe_now(device_id)


@app.get("/connections/{connection_id}/traffic", response_model=List[TrafficPoint])
async def connection_traffic(connection_id: str, engine: ProbingEngine = Depends(get_engine)):
    """Return the recent traffic points for a connection, oldest first."""
    await engine.storage.get_connection(connection_id)
    return engine.traffic_history(connection_id)


@app.get("/devices/{device_id}/latency", response_model=List[LatencyPoint])
async def device_latency(device_id: str, engine: ProbingEngine = Depends(get_engine)):
    """Return the recent latency bursts for a device, oldest first."""
    await engine.storage.get_device(device_id)
    return engine.latency_history(device_id)


@app.post("/scan", response_model=List[ScanHitOut])
async def scan_range(request: ScanRequest, engine: ProbingEngine = Depends(get_engine)):
    """Scan a CIDR block with the given credential profiles."""
    return await engine.scan(request.cidr, request.credential_profile_ids, request.probe_types)
