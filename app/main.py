from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.errors import ApiError
from app.llm_provider import get_provider_info
from app.queue_backend import InMemoryQueueBackend, create_queue_from_env
from app.routes import audits, internal, notifications, price_lists
from app.routes._deps import error_response, request_id_from_request, trace_id_from_request
from app.runtime_profile import real_providers_required
from app.schemas import success_envelope
from app.security import JwtSecurityConfig, parse_and_validate_bearer_token
from app.store import store

logger = logging.getLogger(__name__)


def _create_queue_backend_for_runtime(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | object:
    env = os.environ if environ is None else environ
    try:
        return create_queue_from_env(env)
    except RuntimeError:
        if real_providers_required(env):
            raise
        logger.warning("queue_backend_fallback backend=memory")
        return InMemoryQueueBackend()


queue_backend = _create_queue_backend_for_runtime()


def _identify_user(request: Request, security_cfg: JwtSecurityConfig) -> None:
    if security_cfg.enabled:
        auth_ctx = parse_and_validate_bearer_token(
            authorization=request.headers.get("Authorization"),
            cfg=security_cfg,
        )
        user_id, email = auth_ctx.user_id, auth_ctx.email
    else:
        # local development without an identity provider
        user_id = request.headers.get("x-user-id", "").strip()
        email = None
    if not user_id:
        return
    request.state.user_id = user_id
    existing = store.get_user(user_id=user_id)
    if existing is None or (email and existing.get("email") != email):
        store.ensure_user(user_id=user_id, email=email)


def create_app() -> FastAPI:
    app = FastAPI(title="Salon Price List Assistant API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.queue_backend = queue_backend
    app.state.worker_runtime = None
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
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.user_id = None
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and not path.startswith("/api/v1/internal/"):
                _identify_user(request, security_cfg)
            response = await call_next(request)
        except ApiError as exc:
            logger.info("request_rejected path=%s code=%s", request.url.path, exc.code)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
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
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
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
        return success_envelope(
            {"status": "ok", "llm": get_provider_info(), "queue": type(queue_backend).__name__},
            trace_id_from_request(request),
        )

    app.include_router(audits.router)
    app.include_router(price_lists.router)
    app.include_router(notifications.router)
    app.include_router(internal.router)
    return app


app = create_app()
