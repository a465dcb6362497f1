# services/docflow-service/docflow/api/routers/health_routes.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request

from docflow.config import settings

logger = logging.getLogger("docflow.api.health")

router = APIRouter(tags=["meta"])


@router.get("/", summary="Root metadata")
def root() -> Dict[str, Any]:
    return {
        "service": settings.service_name,
        "status": "ok",
        "message": "docflow orchestration engine",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
        "version": "/version",
    }


@router.get("/health", summary="Liveness check")
def health() -> Dict[str, Any]:
    """
    Liveness check: process is up and app is constructed.
    """
    return {
        "status": "ok",
        "service": settings.service_name,
        "at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/ready", summary="Readiness check")
async def ready(request: Request) -> Dict[str, Any]:
    """
    Readiness check: the engine is built and the schema compiled.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "starting", "service": settings.service_name}
    return {
        "status": "ready",
        "service": settings.service_name,
        "entities": len(engine.schema.entities),
        "viewDefinitions": len(engine.schema.view_definitions),
        "at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/version", summary="Service version")
def version() -> Dict[str, Any]:
    return {
        "service": settings.service_name,
        "version": settings.app_version,
    }
