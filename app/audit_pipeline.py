"""
Audit pipeline: scrape a Booksy profile, score it, publish the report.

Each ``run_*_step`` function is one unit of queued work. It re-reads the job,
makes at most one external call (scraper or model) outside the store lock and
writes its result through a status-checked store transition. A step that
finds the job in an unexpected status does nothing and reports ``skipped``.

Keyword report and category proposal are follow-up steps queued after the
audit completes; their failures never change the audit status.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from app.analysis_engine import (
    calculate_category_distribution,
    extract_keywords,
    parse_category_proposal,
    parse_keyword_suggestions,
)
from app.audit_scoring import build_audit_report, calculate_audit_stats, parse_audit_narrative
from app.job_steps import (
    AUDIT_JOB,
    FAILED,
    RETRYING,
    SKIPPED,
    STEP_AUDIT_ANALYZE,
    STEP_AUDIT_KEYWORDS,
    STEP_AUDIT_PROPOSAL,
    STEP_AUDIT_SCRAPE,
    SUCCEEDED,
    StepOutcome,
)
from app.pricing import load_scraped
from app.queue_backend import WorkItem
from app.retry_policy import classify_error, decide_retry, error_detail, user_facing_message
from app.scraper import validate_scraped_data
from app.store_audits import ANALYSIS_FAILED_PREFIX, AuditStatus

logger = logging.getLogger(__name__)


def _item(job: dict[str, Any], step: str, *, delay_ms: int = 0) -> WorkItem:
    return WorkItem(job_id=job["job_id"], job_kind=AUDIT_JOB, step=step, user_id=job["user_id"], delay_ms=delay_ms)


def start_audit(store: Any, *, user_id: str, audit_id: str, source_url: str) -> tuple[dict[str, Any], WorkItem]:
    job = store.start_audit(user_id=user_id, audit_id=audit_id, source_url=source_url)
    return job, _item(job, STEP_AUDIT_SCRAPE)


def start_new_audit(store: Any, *, user_id: str, source_url: str) -> tuple[dict[str, Any], WorkItem]:
    job = store.start_new_audit(user_id=user_id, source_url=source_url)
    return job, _item(job, STEP_AUDIT_SCRAPE)


def retry_stuck_audit(store: Any, *, audit_id: str) -> tuple[dict[str, Any], WorkItem]:
    job = store.reset_stuck_audit(audit_id=audit_id)
    step = STEP_AUDIT_ANALYZE if job["status"] == AuditStatus.ANALYZING else STEP_AUDIT_SCRAPE
    return job, _item(job, step)


def retry_analysis(store: Any, *, audit_id: str) -> tuple[dict[str, Any], WorkItem]:
    job = store.reset_audit_for_analysis(audit_id=audit_id)
    return job, _item(job, STEP_AUDIT_ANALYZE)


def force_fail_audit(store: Any, *, audit_id: str) -> dict[str, Any]:
    return store.force_fail_audit(audit_id=audit_id)


def run_scrape_step(store: Any, *, job_id: str, scraper: Any) -> StepOutcome:
    job = store.transition_audit_job(
        job_id=job_id,
        expected={AuditStatus.SCRAPING, AuditStatus.SCRAPING_RETRY},
        patch={"status": AuditStatus.SCRAPING, "progress": 10, "progress_message": "Pobieranie cennika"},
    )
    if job is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job_id))

    try:
        scraped = scraper.scrape(job["source_url"])
        validate_scraped_data(scraped)
    except Exception as exc:
        return _scrape_failed(store, job=job, exc=exc)

    updated = store.record_scrape_success(job_id=job_id, scraped=scraped)
    if updated is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job_id))
    return StepOutcome(final_status=SUCCEEDED, job=updated, next_items=[_item(updated, STEP_AUDIT_ANALYZE)])


def _scrape_failed(store: Any, *, job: dict[str, Any], exc: Exception) -> StepOutcome:
    detail = error_detail(exc)
    message = user_facing_message(detail)
    retry_count = int(job.get("retry_count", 0))
    decision = decide_retry(retry_count, error_class=classify_error(exc), max_retries=store.job_max_retries)
    if decision.should_retry:
        updated = store.transition_audit_job(
            job_id=job["job_id"],
            expected={AuditStatus.SCRAPING},
            patch={
                "status": AuditStatus.SCRAPING_RETRY,
                "retry_count": retry_count + 1,
                "last_retry_at": datetime.now(UTC).isoformat(),
                "error_message": message,
                "error_detail": detail,
                "progress_message": f"Ponowna próba pobrania ({retry_count + 1})",
            },
        )
        if updated is None:
            return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job["job_id"]))
        logger.info(
            "audit_scrape_retry job_id=%s retry=%s delay_ms=%s",
            job["job_id"],
            retry_count + 1,
            decision.delay_ms,
        )
        return StepOutcome(final_status=RETRYING, job=updated, retry_after_ms=decision.delay_ms, detail=detail)

    updated = store.fail_audit(
        job_id=job["job_id"],
        expected={AuditStatus.SCRAPING},
        error_message=message,
        error_detail=detail,
    )
    if updated is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job["job_id"]))
    logger.warning("audit_scrape_failed job_id=%s attempts=%s detail=%s", job["job_id"], decision.attempt, detail)
    return StepOutcome(final_status=FAILED, job=updated, detail=detail)


def run_analysis_step(store: Any, *, job_id: str, llm: Any, email_sender: Any = None) -> StepOutcome:
    job = store.get_audit_job(job_id)
    if job is None or job["status"] != AuditStatus.ANALYZING or not job.get("scraped_data"):
        return StepOutcome(final_status=SKIPPED, job=job)

    scraped = load_scraped(job["scraped_data"])
    stats = calculate_audit_stats(scraped)
    try:
        narrative = parse_audit_narrative(llm.audit_narrative(scraped, stats))
    except Exception as exc:
        detail = error_detail(exc)
        updated = store.fail_audit(
            job_id=job_id,
            expected={AuditStatus.ANALYZING},
            error_message=ANALYSIS_FAILED_PREFIX + user_facing_message(detail),
            error_detail=detail,
        )
        logger.warning("audit_analysis_failed job_id=%s detail=%s", job_id, detail)
        return StepOutcome(final_status=FAILED if updated else SKIPPED, job=updated, detail=detail)

    report = build_audit_report(stats, narrative)
    updated = store.complete_audit(job_id=job_id, report=report)
    if updated is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job_id))

    if email_sender is not None:
        user = store.get_user(user_id=updated["user_id"]) or {}
        email_sender.audit_completed(
            to_email=user.get("email"),
            salon_name=updated.get("salon_name") or "",
            audit_id=job_id,
            score=int(updated.get("overall_score") or 0),
        )
    return StepOutcome(final_status=SUCCEEDED, job=updated, next_items=[_item(updated, STEP_AUDIT_KEYWORDS)])


def _followup_job(store: Any, job_id: str) -> tuple[dict[str, Any] | None, Any]:
    job = store.get_audit_job(job_id)
    if job is None or job["status"] != AuditStatus.COMPLETED or not job.get("scraped_data"):
        return None, None
    return job, load_scraped(job["scraped_data"])


def _followup_retry(store: Any, *, job: dict[str, Any], step: str, exc: Exception, attempt: int) -> StepOutcome | None:
    decision = decide_retry(attempt, error_class=classify_error(exc), max_retries=store.job_max_retries)
    detail = error_detail(exc)
    if decision.should_retry:
        logger.info("audit_followup_retry job_id=%s step=%s delay_ms=%s", job["job_id"], step, decision.delay_ms)
        return StepOutcome(final_status=RETRYING, job=job, retry_after_ms=decision.delay_ms, detail=detail)
    logger.warning("audit_followup_degraded job_id=%s step=%s detail=%s", job["job_id"], step, detail)
    return None


def run_keywords_step(store: Any, *, job_id: str, llm: Any, attempt: int = 0) -> StepOutcome:
    job, scraped = _followup_job(store, job_id)
    if job is None:
        return StepOutcome(final_status=SKIPPED, job=store.get_audit_job(job_id))
    if store.get_keyword_report(audit_id=job_id) is not None:
        return StepOutcome(final_status=SKIPPED, job=job, next_items=[_item(job, STEP_AUDIT_PROPOSAL)])

    keywords = extract_keywords(scraped)
    suggestions: list[str] = []
    try:
        raw = llm.keyword_suggestions(scraped, [entry["keyword"] for entry in keywords])
        suggestions = parse_keyword_suggestions(raw)
    except Exception as exc:
        retry = _followup_retry(store, job=job, step=STEP_AUDIT_KEYWORDS, exc=exc, attempt=attempt)
        if retry is not None:
            return retry

    store.save_keyword_report(
        audit_id=job_id,
        report={
            "keywords": keywords,
            "category_distribution": calculate_category_distribution(scraped, keywords),
            "suggestions": suggestions,
        },
    )
    return StepOutcome(final_status=SUCCEEDED, job=store.get_audit_job(job_id), next_items=[_item(job, STEP_AUDIT_PROPOSAL)])


def run_proposal_step(store: Any, *, job_id: str, llm: Any, attempt: int = 0) -> StepOutcome:
    job, scraped = _followup_job(store, job_id)
    if job is None or store.get_category_proposal(audit_id=job_id) is not None:
        return StepOutcome(final_status=SKIPPED, job=job or store.get_audit_job(job_id))

    keyword_report = store.get_keyword_report(audit_id=job_id) or {}
    top_keywords = [entry["keyword"] for entry in keyword_report.get("keywords", [])[:10]]
    try:
        proposal = parse_category_proposal(llm.category_proposal(scraped, top_keywords), scraped.categories)
    except Exception as exc:
        retry = _followup_retry(store, job=job, step=STEP_AUDIT_PROPOSAL, exc=exc, attempt=attempt)
        if retry is not None:
            return retry
        return StepOutcome(final_status=FAILED, job=job, detail=error_detail(exc))

    if not proposal["changes"] and not proposal["proposed_categories"]:
        logger.warning("audit_proposal_empty job_id=%s", job_id)
        return StepOutcome(final_status=FAILED, job=job, detail="empty category proposal")
    store.save_category_proposal(audit_id=job_id, proposal=proposal)
    return StepOutcome(final_status=SUCCEEDED, job=store.get_audit_job(job_id))
