from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from app.pricing import PricingData

OptimizationOption = Literal[
    "descriptions",
    "seo",
    "categories",
    "order",
    "prices",
    "duplicates",
    "duration",
    "tags",
]


class StartAuditRequest(BaseModel):
    source_url: str = Field(min_length=1)


class PriceListCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    pricing_data: PricingData


class StartOptimizationRequest(BaseModel):
    options: list[OptimizationOption] = Field(min_length=1)
    audit_id: str | None = None
    audit_recommendations: list[str] = Field(default_factory=list)


class PurchaseConfirmRequest(BaseModel):
    user_id: str = Field(min_length=1)
    product: Literal["audit", "optimization"]
    purchase_id: str = Field(min_length=1)
    price_list_id: str | None = None
    email: str | None = None


class PromptTemplateUpdateRequest(BaseModel):
    display_name: str | None = None
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=32000)
    is_active: bool | None = None


class WorkerRunOnceRequest(BaseModel):
    iterations: int = Field(default=1, ge=1, le=50)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
