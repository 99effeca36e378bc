# relaybridge/app.py
"""
Operator API for the relay bridge.

GET /health, GET /metrics, and under /api (x-api-key required unless MOCK_AUTH):
GET /api/status, GET /api/requests, GET /api/requests/{request_id}.

With BRIDGE_AUTOSTART=true (default) the app's lifespan runs the bridge in-process.
"""
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

# Load .env BEFORE any relaybridge imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request, Path, Query
from fastapi.responses import JSONResponse, Response, PlainTextResponse

from relaybridge import monitoring
from relaybridge import auth as authmod
from relaybridge import db as dbmod
from relaybridge.bridge import RelayBridge
from relaybridge.config import Settings

BRIDGE_AUTOSTART = os.getenv("BRIDGE_AUTOSTART", "true").lower() in ("1", "true", "yes")
API_KEY_HEADER = "x-api-key"
VALID_STATUSES = ("pending", "completed", "failed")

# Initialize DB tables on startup
dbmod.init_db()

bridge: Optional[RelayBridge] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global bridge
    if BRIDGE_AUTOSTART:
        bridge = RelayBridge(Settings.from_env())
        await bridge.start()
    try:
        yield
    finally:
        if bridge is not None:
            await bridge.stop()
            bridge = None


app = FastAPI(title="Relay Bridge", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Auth middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def log_middleware(request: Request, call_next):
    start = time.time()
    try:
        return await call_next(request)
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": request.url.path})
        raise
    finally:
        monitoring.logger.debug(
            "Handled request",
            extra={"path": request.url.path, "method": request.method, "elapsed": time.time() - start},
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.get("/api/status")
async def get_status():
    """BridgeState snapshot when the bridge runs in this process."""
    if bridge is None:
        return JSONResponse(status_code=200, content={"status": "idle", "running": False})
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "running": bridge.running, "state": bridge.state.snapshot()},
    )


@app.get("/api/requests")
def list_requests(
    status: Optional[str] = Query(None, description="pending | completed | failed"),
    limit: int = Query(100, ge=1, le=1000),
):
    """
    GET /api/requests?status=pending
    Stuck `pending` entries (bridge died mid-publish) need an operator; this lists them.
    """
    if status is not None and status not in VALID_STATUSES:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error_code": "E_BAD_STATUS", "message": f"status must be one of {VALID_STATUSES}"},
        )
    records = dbmod.list_entries(status=status, limit=limit)
    return JSONResponse(status_code=200, content={"status": "success", "count": len(records), "records": records})


@app.get("/api/requests/{request_id}")
def get_request(request_id: str = Path(..., description="Request reference to fetch")):
    """
    GET /api/requests/{request_id}
    Fetch a dedup entry by request reference.
    """
    rec = dbmod.get_entry(request_id)
    if not rec:
        return JSONResponse(
            status_code=404,
            content={
                "request_id": request_id,
                "status": "error",
                "error_code": "E_NOT_FOUND",
                "message": "Request not found"
            }
        )
    return JSONResponse(status_code=200, content={"request_id": request_id, "status": "success", "record": rec})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
