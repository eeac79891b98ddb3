"""
Optimization pipeline: rewrite a price list with one model call.

States: pending -> processing -> completed | failed, with processing ->
processing when a transient failure is retried after backoff.
"""
from __future__ import annotations

import logging
from typing import Any

from app.analysis_engine import (
    ParsedServiceLine,
    build_optimization_prompt,
    parse_optimization_response,
    sanitize_text,
    suggestion_keyword,
    validate_optimization_options,
)
from app.job_steps import (
    FAILED,
    OPTIMIZATION_JOB,
    RETRYING,
    SKIPPED,
    STEP_OPTIMIZATION_RUN,
    SUCCEEDED,
    StepOutcome,
)
from app.pricing import PriceListService, PricingData, load_pricing
from app.queue_backend import WorkItem
from app.retry_policy import (
    ERROR_CLASS_TRANSIENT,
    classify_error,
    error_detail,
    user_facing_message,
)
from app.store import MAIN_PROMPT_STAGE
from app.token_budget import check_prompt_budget, max_tokens_for_services

logger = logging.getLogger(__name__)

CHANGE_TYPES = ("name_improved", "description_added", "duration_added", "price_formatted", "tags_added")
DEFAULT_TEMPERATURE = 0.3


def _item(job: dict[str, Any], *, delay_ms: int = 0) -> WorkItem:
    return WorkItem(
        job_id=job["job_id"],
        job_kind=OPTIMIZATION_JOB,
        step=STEP_OPTIMIZATION_RUN,
        user_id=job["user_id"],
        delay_ms=delay_ms,
    )


def start_optimization(
    store: Any,
    *,
    user_id: str,
    price_list_id: str,
    options: list[str],
    audit_id: str | None = None,
    audit_recommendations: list[str] | None = None,
) -> tuple[dict[str, Any], WorkItem]:
    job = store.start_optimization(
        user_id=user_id,
        price_list_id=price_list_id,
        options=options,
        audit_id=audit_id,
        audit_recommendations=audit_recommendations,
    )
    return job, _item(job)


def build_audit_context(store: Any, job: dict[str, Any]) -> dict[str, Any]:
    """Collect what the linked audit knows about the salon for the prompt."""
    context: dict[str, Any] = {
        "salon_name": None,
        "overall_score": None,
        "weaknesses": list(job.get("audit_recommendations") or []),
        "suggested_keywords": [],
        "category_proposal": None,
    }
    audit_id = job.get("audit_id")
    if not audit_id:
        return context
    audit = store.get_audit_job(audit_id) or {}
    report = audit.get("report") or {}
    context["salon_name"] = audit.get("salon_name")
    context["overall_score"] = audit.get("overall_score")
    if not context["weaknesses"]:
        context["weaknesses"] = list(report.get("weaknesses") or [])
    keyword_report = store.get_keyword_report(audit_id=audit_id) or {}
    suggestions = [suggestion_keyword(s) for s in keyword_report.get("suggestions", [])]
    if not suggestions:
        suggestions = [entry["keyword"] for entry in keyword_report.get("keywords", [])[:8]]
    context["suggested_keywords"] = [s for s in suggestions if s]
    context["category_proposal"] = store.get_category_proposal(audit_id=audit_id)
    return context


def _prompt_settings(store: Any, options: list[str], service_count: int) -> tuple[float, int, str | None]:
    main = store.get_prompt_template(MAIN_PROMPT_STAGE) or {}
    stage = (store.get_prompt_template(f"optimization_{options[0]}") if options else None) or {}
    temperature = stage.get("temperature")
    if temperature is None:
        temperature = main.get("temperature", DEFAULT_TEMPERATURE)
    configured = int(stage.get("max_tokens") or main.get("max_tokens") or 0)
    max_tokens = max(configured, max_tokens_for_services(service_count))
    prompts = [p for p in (main.get("system_prompt"), stage.get("system_prompt")) if p]
    return float(temperature), max_tokens, "\n\n".join(prompts) or None


def _flatten(pricing: PricingData) -> list[PriceListService]:
    return [service for category in pricing.categories for service in category.services]


def _change(change_type: str, category: str, service_index: int, before: Any, after: Any) -> dict[str, Any]:
    return {
        "type": change_type,
        "category": category,
        "service_index": service_index,
        "before": before,
        "after": after,
    }


def merge_optimized_services(
    pricing: PricingData,
    lines: list[ParsedServiceLine],
    options: list[str],
    *,
    category_name: str | None = None,
) -> tuple[PricingData, list[dict[str, Any]]]:
    """Apply parsed model lines to a copy of ``pricing``.

    Line N maps to the N-th service in document order. Prices change only
    with ``prices`` selected and tags only with ``tags``; fields the model
    left empty keep their original value.
    """
    output = pricing.model_copy(deep=True)
    changes: list[dict[str, Any]] = []
    idx = 0
    for category in output.categories:
        for service in category.services:
            line = lines[idx]
            idx += 1
            where = category.category_name

            if line.name and line.name != service.name:
                changes.append(_change("name_improved", where, idx, service.name, line.name))
                service.name = line.name
            if line.description and line.description != (service.description or None):
                if not service.description:
                    changes.append(_change("description_added", where, idx, service.description, line.description))
                service.description = line.description
            if line.duration and line.duration != service.duration:
                if not service.duration:
                    changes.append(_change("duration_added", where, idx, service.duration, line.duration))
                service.duration = line.duration
            if "prices" in options and line.price and line.price != service.price:
                changes.append(_change("price_formatted", where, idx, service.price, line.price))
                service.price = line.price
            if "tags" in options and line.tags and line.tags != service.tags:
                changes.append(_change("tags_added", where, idx, list(service.tags), list(line.tags)))
                service.tags = list(line.tags)
            service.name = sanitize_text(service.name)
            if service.description:
                service.description = sanitize_text(service.description) or None
    if category_name and len(output.categories) == 1:
        output.categories[0].category_name = sanitize_text(category_name) or output.categories[0].category_name
    return output, changes


def calculate_quality_score(pricing: PricingData, changes_count: int) -> int:
    services = _flatten(pricing)
    if not services:
        return 0
    description_rate = sum(1 for s in services if s.description) / len(services)
    score = 50 + round(description_rate * 25) + min(changes_count * 2, 15)
    avg_name_length = sum(len(s.name) for s in services) / len(services)
    if 20 < avg_name_length < 60:
        score += 10
    return max(0, min(100, score))


def _summary(output: PricingData, changes: list[dict[str, Any]]) -> dict[str, int]:
    counts = {change_type: 0 for change_type in CHANGE_TYPES}
    for change in changes:
        counts[change["type"]] = counts.get(change["type"], 0) + 1
    return {
        "total_changes": len(changes),
        "names_improved": counts["name_improved"],
        "descriptions_added": counts["description_added"],
        "durations_added": counts["duration_added"],
        "prices_formatted": counts["price_formatted"],
        "tags_added": counts["tags_added"],
        "services_count": len(_flatten(output)),
        "categories_count": len(output.categories),
    }


def run_optimization_step(store: Any, *, job_id: str, llm: Any, email_sender: Any = None) -> StepOutcome:
    job = store.begin_optimization_processing(job_id=job_id)
    if job is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_optimization_job(job_id))

    options = list(job.get("selected_options") or [])
    context = build_audit_context(store, job)
    validation = validate_optimization_options(options, context["category_proposal"] is not None)
    if not validation.valid:
        return _fail(
            store,
            job=job,
            message=validation.error or "invalid options",
            detail=validation.error,
            retryable=False,
            email_sender=email_sender,
        )

    pricing = load_pricing(job["input_pricing_data"])
    services = _flatten(pricing)
    if not services:
        return _fail(
            store,
            job=job,
            message="Cennik nie zawiera żadnych usług.",
            detail="empty price list",
            retryable=False,
            email_sender=email_sender,
        )
    if len(pricing.categories) == 1:
        context["category_name"] = pricing.categories[0].category_name

    prompt = build_optimization_prompt(options, context, services)
    check_prompt_budget(prompt)
    temperature, max_tokens, system_prompt = _prompt_settings(store, options, len(services))
    try:
        raw = llm.optimize_services(
            prompt=prompt,
            services=services,
            options=options,
            temperature=temperature,
            max_tokens=max_tokens,
            system_prompt=system_prompt,
        )
        lines, category_name = parse_optimization_response(raw, len(services))
    except Exception as exc:
        detail = error_detail(exc)
        return _fail(
            store,
            job=job,
            message=user_facing_message(detail),
            detail=detail,
            retryable=classify_error(exc) == ERROR_CLASS_TRANSIENT,
            email_sender=email_sender,
        )

    output, changes = merge_optimized_services(
        pricing,
        lines,
        options,
        category_name=category_name if len(pricing.categories) == 1 else None,
    )
    result = {
        "options": options,
        "changes": changes,
        "summary": _summary(output, changes),
        "quality_score": calculate_quality_score(output, len(changes)),
        "recommendations": context["weaknesses"][:5],
    }
    updated = store.complete_optimization_job(
        job_id=job_id,
        attempt_token=job["attempt_token"],
        output=output.model_dump(),
        result=result,
    )
    if updated is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_optimization_job(job_id))

    if email_sender is not None:
        user = store.get_user(user_id=updated["user_id"]) or {}
        price_list = store.get_price_list(updated["price_list_id"]) or {}
        email_sender.optimization_completed(
            to_email=user.get("email"),
            price_list_name=price_list.get("name", ""),
            price_list_id=updated["price_list_id"],
            changes=len(changes),
        )
    return StepOutcome(final_status=SUCCEEDED, job=updated)


def _fail(
    store: Any,
    *,
    job: dict[str, Any],
    message: str,
    detail: str | None,
    retryable: bool,
    email_sender: Any,
) -> StepOutcome:
    updated, decision = store.fail_optimization_job(
        job_id=job["job_id"],
        attempt_token=job["attempt_token"],
        error_message=message,
        should_retry=retryable,
        error_detail=detail,
    )
    if updated is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_optimization_job(job["job_id"]))
    if decision.should_retry:
        return StepOutcome(final_status=RETRYING, job=updated, retry_after_ms=decision.delay_ms, detail=detail)

    logger.warning("optimization_failed job_id=%s detail=%s", job["job_id"], detail)
    if email_sender is not None:
        user = store.get_user(user_id=job["user_id"]) or {}
        price_list = store.get_price_list(job["price_list_id"]) or {}
        email_sender.optimization_failed(
            to_email=user.get("email"),
            price_list_name=price_list.get("name", ""),
            message=message,
        )
    return StepOutcome(final_status=FAILED, job=updated, detail=detail)
