from __future__ import annotations

from fastapi import APIRouter, Request, Response

from episode_store.errors import BundleFormatError
from episode_store.routes._deps import engine_from_request, trace_id_from_request
from episode_store.schemas import ExportRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["maintenance"])


@router.post("/maintenance/recover-orphans")
async def recover_orphans(request: Request):
    recovered = await engine_from_request(request).recover_orphans()
    return success_envelope({"recovered": recovered, "total": len(recovered)}, trace_id_from_request(request))


@router.post("/maintenance/migrate")
async def migrate_all(request: Request):
    reports = await engine_from_request(request).migrate_all()
    data = {
        "items": [report.as_dict() for report in reports],
        "changed": sum(1 for report in reports if report.changed),
    }
    return success_envelope(data, trace_id_from_request(request))


@router.post("/bundles/export")
async def export_bundle(payload: ExportRequest, request: Request):
    data = await engine_from_request(request).export_bundle(payload.project_ids or None)
    return Response(
        content=data,
        media_type="application/zip",
        headers={"content-disposition": 'attachment; filename="episode-bundle.zip"'},
    )


@router.post("/bundles/import")
async def import_bundle(request: Request):
    body = await request.body()
    if not body:
        raise BundleFormatError("request body is empty")
    report = await engine_from_request(request).import_bundle(body)
    return success_envelope(report.as_dict(), trace_id_from_request(request))
