import sqlite3
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()

_start_time = time.time()


@router.get("/healthz")
def liveness():
    return {"status": "alive"}


@router.get("/ready")
def readiness(request: Request):
    store = request.app.state.store
    try:
        store.ping()
    except sqlite3.Error as e:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "reason": f"store unavailable: {e}"},
        )

    report = getattr(request.app.state, "last_reconcile", None)
    return {
        "status": "ready",
        "uptime_seconds": round(time.time() - _start_time, 1),
        "lastReconcile": report.to_json() if report is not None else None,
    }
