from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from app import optimization_pipeline
from app.errors import ApiError
from app.routes._deps import enqueue_item, trace_id_from_request, user_id_from_request
from app.schemas import PriceListCreateRequest, StartOptimizationRequest, success_envelope
from app.store import store

router = APIRouter(prefix="/api/v1", tags=["price-lists"])


@router.post("/price-lists")
def create_price_list(payload: PriceListCreateRequest, request: Request):
    price_list = store.create_price_list(
        user_id=user_id_from_request(request),
        name=payload.name,
        pricing_data=payload.pricing_data.model_dump(),
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(price_list, trace_id_from_request(request)),
    )


@router.get("/price-lists")
def list_price_lists(request: Request):
    items = store.list_price_lists(user_id=user_id_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/price-lists/{price_list_id}")
def get_price_list(price_list_id: str, request: Request):
    price_list = store.get_price_list_for_user(user_id=user_id_from_request(request), price_list_id=price_list_id)
    return success_envelope(price_list, trace_id_from_request(request))


@router.post("/price-lists/{price_list_id}/optimizations")
def start_optimization(price_list_id: str, payload: StartOptimizationRequest, request: Request):
    job, item = optimization_pipeline.start_optimization(
        store,
        user_id=user_id_from_request(request),
        price_list_id=price_list_id,
        options=list(payload.options),
        audit_id=payload.audit_id,
        audit_recommendations=payload.audit_recommendations,
    )
    enqueue_item(request, item)
    return JSONResponse(
        status_code=202,
        content=success_envelope(job, trace_id_from_request(request)),
    )


@router.get("/price-lists/{price_list_id}/optimization")
def get_price_list_optimization(price_list_id: str, request: Request):
    store.get_price_list_for_user(user_id=user_id_from_request(request), price_list_id=price_list_id)
    job = store.get_job_for_price_list(price_list_id=price_list_id)
    if job is None:
        raise ApiError(
            code="OPTIMIZATION_NOT_FOUND",
            message="price list has no optimization",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
    return success_envelope(job, trace_id_from_request(request))


@router.get("/optimizations")
def list_optimizations(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
):
    items = store.list_user_optimization_jobs(user_id=user_id_from_request(request), status=status, limit=limit)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/optimizations/{job_id}")
def get_optimization(job_id: str, request: Request):
    job = store.get_optimization_for_user(user_id=user_id_from_request(request), job_id=job_id)
    return success_envelope(job, trace_id_from_request(request))
