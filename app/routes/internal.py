from __future__ import annotations

from fastapi import APIRouter, Request

from app import audit_pipeline
from app.routes._deps import (
    enqueue_item,
    require_ops,
    trace_id_from_request,
    worker_runtime_from_request,
)
from app.routes.audits import audit_view
from app.schemas import (
    PromptTemplateUpdateRequest,
    PurchaseConfirmRequest,
    WorkerRunOnceRequest,
    success_envelope,
)
from app.store import store
from app.worker_runtime import WorkerRunStats

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


# ---------------------------------------------------------------------------
# Audit recovery
# ---------------------------------------------------------------------------


@router.post("/audits/{audit_id}/retry")
def internal_retry_audit(audit_id: str, request: Request):
    require_ops(request)
    job, item = audit_pipeline.retry_stuck_audit(store, audit_id=audit_id)
    enqueue_item(request, item)
    return success_envelope({"audit": audit_view(job), "step": item.step}, trace_id_from_request(request))


@router.post("/audits/{audit_id}/retry-analysis")
def internal_retry_analysis(audit_id: str, request: Request):
    require_ops(request)
    job, item = audit_pipeline.retry_analysis(store, audit_id=audit_id)
    enqueue_item(request, item)
    return success_envelope({"audit": audit_view(job), "step": item.step}, trace_id_from_request(request))


@router.post("/audits/{audit_id}/force-fail")
def internal_force_fail_audit(audit_id: str, request: Request):
    require_ops(request)
    job = audit_pipeline.force_fail_audit(store, audit_id=audit_id)
    return success_envelope(audit_view(job), trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.post("/purchases/confirm")
def internal_confirm_purchase(payload: PurchaseConfirmRequest, request: Request):
    require_ops(request)
    store.ensure_user(user_id=payload.user_id, email=payload.email)
    record = store.confirm_purchase(
        user_id=payload.user_id,
        product=payload.product,
        purchase_id=payload.purchase_id,
        price_list_id=payload.price_list_id,
    )
    return success_envelope(record, trace_id_from_request(request))


# ---------------------------------------------------------------------------
# Worker and prompt templates
# ---------------------------------------------------------------------------


@router.post("/worker/run-once")
def internal_worker_run_once(request: Request, payload: WorkerRunOnceRequest | None = None):
    require_ops(request)
    runtime = worker_runtime_from_request(request)
    stats = WorkerRunStats()
    for _ in range((payload or WorkerRunOnceRequest()).iterations):
        current = runtime.run_once()
        stats.add(current)
        if current["processed"] == 0:
            break
    return success_envelope(stats.as_dict(), trace_id_from_request(request))


@router.get("/prompt-templates")
def internal_list_prompt_templates(request: Request):
    require_ops(request)
    return success_envelope({"items": store.list_prompt_templates()}, trace_id_from_request(request))


@router.put("/prompt-templates/{stage}")
def internal_update_prompt_template(stage: str, payload: PromptTemplateUpdateRequest, request: Request):
    require_ops(request)
    template = store.upsert_prompt_template(stage=stage, payload=payload.model_dump(exclude_none=True))
    return success_envelope(template, trace_id_from_request(request))
