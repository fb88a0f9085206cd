from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

from episode_store.errors import ApiError
from episode_store.routes._deps import engine_from_request, trace_id_from_request
from episode_store.schemas import ProjectCreateRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["projects"])


@router.get("/projects")
async def list_projects(request: Request):
    engine = engine_from_request(request)
    items = [entry.to_wire() for entry in await engine.list_projects()]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/projects")
async def create_project(payload: ProjectCreateRequest, request: Request):
    engine = engine_from_request(request)
    doc = await engine.create_project(payload.source_series)
    return JSONResponse(status_code=201, content=success_envelope(doc.to_wire(), trace_id_from_request(request)))


@router.get("/session")
async def get_session(request: Request):
    engine = engine_from_request(request)
    data = {
        "active_project_id": engine.active.id,
        "save_status": engine.save_status.value,
        "origin": engine.origin,
        "stats": engine.persister.stats.as_dict(),
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/projects/{project_id}")
async def load_project(project_id: str, request: Request):
    engine = engine_from_request(request)
    doc = await engine.load_project(project_id)
    return success_envelope(doc.to_wire(), trace_id_from_request(request))


@router.patch("/projects/{project_id}")
async def update_project(project_id: str, request: Request, changes: dict[str, Any] = Body(...)):
    engine = engine_from_request(request)
    if "id" in changes and str(changes["id"]) != project_id:
        raise ApiError(
            code="PROJECT_ID_IMMUTABLE",
            message="project id cannot be changed",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    if engine.active.id != project_id:
        await engine.load_project(project_id)
    ticket = engine.update_project(changes)
    data = {
        "project_id": project_id,
        "ticket_id": ticket.ticket_id,
        "save_status": engine.save_status.value,
    }
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request)))


@router.post("/projects/{project_id}/flush")
async def flush_project(project_id: str, request: Request):
    engine = engine_from_request(request)
    await engine.flush(project_id)
    data = {"project_id": project_id, "save_status": engine.save_status.value}
    return success_envelope(data, trace_id_from_request(request))


@router.post("/projects/{project_id}/duplicate")
async def duplicate_project(project_id: str, request: Request):
    engine = engine_from_request(request)
    doc = await engine.duplicate_project(project_id)
    return JSONResponse(status_code=201, content=success_envelope(doc.to_wire(), trace_id_from_request(request)))


@router.delete("/projects/{project_id}")
async def delete_project(project_id: str, request: Request):
    engine = engine_from_request(request)
    data = await engine.delete_project(project_id)
    return success_envelope(data, trace_id_from_request(request))


@router.delete("/series/{series_name}")
async def delete_series(series_name: str, request: Request):
    engine = engine_from_request(request)
    deleted = await engine.delete_series(series_name)
    return success_envelope({"deleted": deleted, "total": len(deleted)}, trace_id_from_request(request))
