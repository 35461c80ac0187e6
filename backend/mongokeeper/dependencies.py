"""FastAPI dependency injection for the engine services held on app.state."""

from __future__ import annotations

from fastapi import HTTPException, Request

from mongokeeper.config import Settings, get_settings
from mongokeeper.services.clock import Clock
from mongokeeper.services.coordinator import BackupCoordinator
from mongokeeper.services.scheduler import CadenceScheduler
from mongokeeper.services.store import MetadataStore


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Backup service is not initialized")
    return service


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_store(request: Request) -> MetadataStore:
    return _from_state(request, "store")


def get_clock(request: Request) -> Clock:
    return _from_state(request, "clock")


def get_coordinator(request: Request) -> BackupCoordinator:
    return _from_state(request, "coordinator")


def get_scheduler(request: Request) -> CadenceScheduler | None:
    """The scheduler is optional: it is absent when scheduling is disabled."""
    return getattr(request.app.state, "scheduler", None)
