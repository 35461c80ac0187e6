from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from mongokeeper.db import get_session
from mongokeeper.dependencies import get_scheduler
from mongokeeper.models.backup import Cadence
from mongokeeper.services.scheduler import CadenceScheduler

router = APIRouter(prefix="/api", tags=["health"])

SERVICE_NAME = "mongokeeper"
SERVICE_VERSION = "0.1.0"


@router.get("/health")
async def health(
    request: Request,
    session: Session = Depends(get_session),
    scheduler: CadenceScheduler | None = Depends(get_scheduler),
):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {exc}"

    # Scheduler and run-lock state
    scheduler_status: dict = {"status": "not_started"}
    if scheduler is not None:
        scheduler_status = {
            "status": "running" if scheduler.started else "starting",
            "cadences": [c.value for c in scheduler.enabled_cadences()],
            "next_runs": scheduler.next_runs(),
        }

    coordinator = getattr(request.app.state, "coordinator", None)
    backup_running = coordinator.is_running if coordinator is not None else False

    # Last successful backup per cadence
    last_success: dict[str, str | None] = {}
    store = getattr(request.app.state, "store", None)
    clock = getattr(request.app.state, "clock", None)
    if store is not None and clock is not None:
        for cadence in Cadence:
            try:
                record = store.latest_success(cadence)
            except Exception:
                last_success[cadence.value] = "error"
                continue
            last_success[cadence.value] = (
                clock.localize(record.timestamp).isoformat() if record is not None else None
            )

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "checks": {
            "database": db_status,
            "scheduler": scheduler_status,
            "backup_running": backup_running,
            "last_successful_backup": last_success,
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": SERVICE_NAME,
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": SERVICE_NAME,
    }
