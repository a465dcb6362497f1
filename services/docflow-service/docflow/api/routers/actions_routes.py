# services/docflow-service/docflow/api/routers/actions_routes.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from docflow.config import settings
from docflow.core.engine import DocflowEngine
from docflow.models import Action, LogicResult

router = APIRouter(tags=["actions"])
logger = logging.getLogger("docflow.api.actions")


class PatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dst_paths: List[str] = Field(..., alias="dstPaths", min_length=1)
    app_version: Optional[str] = Field(default=None, alias="appVersion")
    queue: bool = False


def _engine(request: Request) -> DocflowEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not ready")
    return engine


def _summary(result: LogicResult) -> Dict[str, Any]:
    return result.model_dump(by_alias=True, mode="json", exclude={"documents"}, exclude_none=True) | {
        "documents": len(result.documents)
    }


@router.post("/actions", summary="Dispatch business logics for an action")
async def dispatch_action(action: Action, request: Request) -> Dict[str, Any]:
    engine = _engine(request)
    logger.info("Dispatching %s on %s", action.action_type, action.event_context.doc_path)
    outcome = await engine.dispatch_business_logic(action, settings.app_version)
    return {
        "eventId": action.event_context.id,
        "status": outcome.status.value,
        "pages": outcome.pages,
        "logicResults": [_summary(r) for r in outcome.logic_results],
    }


@router.post("/patches", summary="Run (or queue) patch logics for documents")
async def run_patches(payload: PatchRequest, request: Request) -> Dict[str, Any]:
    engine = _engine(request)
    app_version = payload.app_version or settings.app_version

    if payload.queue:
        await engine.patches.queue_run_patch_logics(app_version, *payload.dst_paths)
        return {"status": "queued", "appVersion": app_version, "count": len(payload.dst_paths)}

    results: Dict[str, Any] = {}
    for path in payload.dst_paths:
        results[path] = [_summary(r) for r in await engine.dispatch_patch_logic(app_version, path)]
    return {"status": "done", "appVersion": app_version, "results": results}
