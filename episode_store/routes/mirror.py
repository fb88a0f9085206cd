from __future__ import annotations

from fastapi import APIRouter, Request

from episode_store.errors import ApiError
from episode_store.routes._deps import engine_from_request, trace_id_from_request
from episode_store.schemas import MirrorRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["mirror"])


def _mirror_state(request: Request) -> dict[str, object]:
    engine = engine_from_request(request)
    if engine.mirror is None:
        return {"attached": False, "path": None, "permission": None}
    directory = engine.mirror.directory
    return {
        "attached": True,
        "path": str(directory.path),
        "permission": directory.query_permission().value,
    }


@router.get("/mirror")
def get_mirror(request: Request):
    return success_envelope(_mirror_state(request), trace_id_from_request(request))


@router.post("/mirror")
async def attach_mirror(payload: MirrorRequest, request: Request):
    engine = engine_from_request(request)
    path = payload.path or engine.settings.mirror_dir
    if not path:
        raise ApiError(
            code="MIRROR_PATH_REQUIRED",
            message="mirror path is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    directory = engine.attach_mirror(path)
    await directory.request_permission()
    return success_envelope(_mirror_state(request), trace_id_from_request(request))


@router.delete("/mirror")
def detach_mirror(request: Request):
    engine_from_request(request).detach_mirror()
    return success_envelope(_mirror_state(request), trace_id_from_request(request))


@router.post("/mirror/revoke")
def revoke_mirror(request: Request):
    engine = engine_from_request(request)
    if engine.mirror is not None:
        engine.mirror.directory.revoke()
    return success_envelope(_mirror_state(request), trace_id_from_request(request))


@router.post("/mirror/sync")
async def sync_mirror(request: Request):
    data = await engine_from_request(request).sync_mirror_all()
    return success_envelope(data, trace_id_from_request(request))


@router.post("/mirror/restore")
async def restore_mirror(request: Request):
    data = await engine_from_request(request).restore_from_mirror()
    return success_envelope(data, trace_id_from_request(request))
