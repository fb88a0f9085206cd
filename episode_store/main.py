from __future__ import annotations

import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from episode_store.engine import ProjectEngine, build_engine
from episode_store.errors import ApiError
from episode_store.routes import blobs, maintenance, mirror, projects
from episode_store.routes._deps import error_response, trace_id_from_request
from episode_store.schemas import success_envelope
from episode_store.settings import EngineSettings

logger = logging.getLogger(__name__)


def create_app(
    *,
    engine: ProjectEngine | None = None,
    settings: EngineSettings | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        current = engine or build_engine(settings or EngineSettings.from_env())
        await current.open()
        app.state.engine = current
        try:
            yield
        finally:
            await current.close()

    app = FastAPI(title="Episode Store API", version="0.1.0", lifespan=lifespan)
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request %s failed: %s", request.url.path, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        engine_state = request.app.state.engine
        data = {
            "status": "ok",
            "store_backend": engine_state.kv.backend_name,
            "broadcast_backend": engine_state.broadcaster.backend_name,
            "save_status": engine_state.save_status.value,
        }
        return success_envelope(data, trace_id_from_request(request))

    app.include_router(projects.router)
    app.include_router(blobs.router)
    app.include_router(mirror.router)
    app.include_router(maintenance.router)
    return app


app = create_app()
