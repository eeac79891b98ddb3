from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app import audit_pipeline
from app.errors import ApiError
from app.routes._deps import enqueue_item, trace_id_from_request, user_id_from_request
from app.schemas import StartAuditRequest, success_envelope
from app.store import store

router = APIRouter(prefix="/api/v1", tags=["audits"])

# internal fields the client never needs
_HIDDEN_AUDIT_FIELDS = ("scraped_data", "error_detail", "normalized_url")


def audit_view(job: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in job.items() if key not in _HIDDEN_AUDIT_FIELDS}


@router.post("/audits")
def create_audit(payload: StartAuditRequest, request: Request):
    job, item = audit_pipeline.start_new_audit(
        store,
        user_id=user_id_from_request(request),
        source_url=payload.source_url,
    )
    enqueue_item(request, item)
    return JSONResponse(
        status_code=202,
        content=success_envelope(audit_view(job), trace_id_from_request(request)),
    )


@router.post("/audits/{audit_id}/start")
def start_audit(audit_id: str, payload: StartAuditRequest, request: Request):
    job, item = audit_pipeline.start_audit(
        store,
        user_id=user_id_from_request(request),
        audit_id=audit_id,
        source_url=payload.source_url,
    )
    enqueue_item(request, item)
    return JSONResponse(
        status_code=202,
        content=success_envelope(audit_view(job), trace_id_from_request(request)),
    )


@router.get("/audits")
def list_audits(request: Request):
    jobs = store.list_audit_jobs_for_user(user_id=user_id_from_request(request))
    return success_envelope({"items": [audit_view(job) for job in jobs], "total": len(jobs)}, trace_id_from_request(request))


@router.get("/audits/active")
def get_active_audit(request: Request):
    job = store.get_active_audit(user_id=user_id_from_request(request))
    return success_envelope(audit_view(job) if job else None, trace_id_from_request(request))


@router.get("/audits/{audit_id}")
def get_audit(audit_id: str, request: Request):
    job = store.get_audit_for_user(user_id=user_id_from_request(request), audit_id=audit_id)
    return success_envelope(audit_view(job), trace_id_from_request(request))


@router.get("/audits/{audit_id}/keywords")
def get_keyword_report(audit_id: str, request: Request):
    store.get_audit_for_user(user_id=user_id_from_request(request), audit_id=audit_id)
    report = store.get_keyword_report(audit_id=audit_id)
    if report is None:
        raise ApiError(
            code="KEYWORD_REPORT_NOT_FOUND",
            message="keyword report not ready",
            error_class="validation",
            retryable=True,
            http_status=404,
        )
    return success_envelope(report, trace_id_from_request(request))


@router.get("/audits/{audit_id}/category-proposal")
def get_category_proposal(audit_id: str, request: Request):
    store.get_audit_for_user(user_id=user_id_from_request(request), audit_id=audit_id)
    proposal = store.get_category_proposal(audit_id=audit_id)
    if proposal is None:
        raise ApiError(
            code="CATEGORY_PROPOSAL_NOT_FOUND",
            message="category proposal not ready",
            error_class="validation",
            retryable=True,
            http_status=404,
        )
    return success_envelope(proposal, trace_id_from_request(request))
