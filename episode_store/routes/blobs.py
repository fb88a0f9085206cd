from __future__ import annotations

from fastapi import APIRouter, Request, Response

from episode_store.errors import ApiError
from episode_store.handles import BLOB_TYPES, make_handle
from episode_store.routes._deps import engine_from_request

router = APIRouter(prefix="/api/v1", tags=["blobs"])


@router.get("/blobs/{blob_type}/{key:path}")
async def get_blob(blob_type: str, key: str, request: Request):
    if blob_type not in BLOB_TYPES:
        raise ApiError(
            code="BLOB_TYPE_INVALID",
            message=f"unsupported blob type: {blob_type}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    record = await engine_from_request(request).blobs.get_record(make_handle(blob_type, key))
    if record is None:
        raise ApiError(
            code="BLOB_NOT_FOUND",
            message=f"blob not found: {blob_type}/{key}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    return Response(content=record.data, media_type=record.content_type)
