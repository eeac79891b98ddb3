from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from app.email_service import EmailSender
from app.errors import ApiError
from app.llm_provider import create_llm_gateway_from_env
from app.queue_backend import QueueMessage, WorkItem, enqueue_work_item
from app.schemas import error_envelope
from app.scraper import create_scraper_from_env
from app.security import require_ops_token
from app.store import store
from app.worker_runtime import WorkerRuntime, create_worker_runtime_from_env


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def user_id_from_request(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id
    raise ApiError(
        code="AUTH_UNAUTHORIZED",
        message="authenticated user required",
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def require_ops(request: Request) -> None:
    require_ops_token(provided=request.headers.get("x-ops-token"), cfg=request.app.state.security_cfg)


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def enqueue_item(request: Request, item: WorkItem) -> QueueMessage:
    return enqueue_work_item(request.app.state.queue_backend, item)


def worker_runtime_from_request(request: Request) -> WorkerRuntime:
    runtime = getattr(request.app.state, "worker_runtime", None)
    if runtime is None:
        runtime = create_worker_runtime_from_env(
            store=store,
            queue_backend=request.app.state.queue_backend,
            scraper=create_scraper_from_env(),
            llm=create_llm_gateway_from_env(),
            email_sender=EmailSender.from_env(),
        )
        request.app.state.worker_runtime = runtime
    return runtime
