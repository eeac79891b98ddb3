from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from app.errors import ApiError
from app.pricing import ScrapedData, pricing_from_scraped
from app.scraper import is_valid_booksy_url, normalize_profile_url

logger = logging.getLogger(__name__)


class AuditStatus:
    PENDING = "pending"
    SCRAPING = "scraping"
    SCRAPING_RETRY = "scraping_retry"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"
    # legacy records written before scraping had its own status
    LEGACY_PROCESSING = "processing"

    ACTIVE = frozenset({PENDING, SCRAPING, SCRAPING_RETRY, ANALYZING})
    TERMINAL = frozenset({COMPLETED, FAILED})


FORCE_FAIL_MESSAGE = "Audyt został przerwany przez administratora. Skontaktuj się z nami, aby uruchomić go ponownie."
ANALYSIS_FAILED_PREFIX = "Analiza AI nie powiodła się: "


def normalize_audit_status(status: str) -> str:
    if status == AuditStatus.LEGACY_PROCESSING:
        return AuditStatus.SCRAPING
    return status


def _parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class StoreAuditsMixin:
    def _validate_source_url(self, source_url: str) -> str:
        url = str(source_url or "").strip()
        if not is_valid_booksy_url(url):
            raise ApiError(
                code="AUDIT_SOURCE_URL_INVALID",
                message="source_url must be a booksy.com profile url",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        return url

    def _assert_no_active_audit(self, *, user_id: str) -> None:
        active = self.audit_jobs_repository.find_in_scope(scope_id=user_id, statuses=AuditStatus.ACTIVE)
        if active is not None:
            raise ApiError(
                code="AUDIT_ALREADY_ACTIVE",
                message=f"audit {active['job_id']} is still {active['status']}",
                error_class="capacity",
                retryable=False,
                http_status=409,
            )

    def _assert_no_recent_duplicate(self, *, user_id: str, normalized_url: str) -> None:
        if self.audit_duplicate_window_s <= 0:
            return
        cutoff = datetime.fromisoformat(self._utcnow_iso()) - timedelta(seconds=self.audit_duplicate_window_s)
        for job in self.audit_jobs_repository.list_for_scope(scope_id=user_id):
            if job.get("normalized_url") != normalized_url:
                continue
            created_at = _parse_iso(job.get("created_at"))
            if created_at is not None and created_at >= cutoff:
                raise ApiError(
                    code="AUDIT_DUPLICATE_SUBMISSION",
                    message="an audit for this profile was started a moment ago",
                    error_class="capacity",
                    retryable=True,
                    http_status=409,
                )

    def _new_audit_job(self, *, user_id: str, status: str) -> dict[str, Any]:
        now = self._utcnow_iso()
        return {
            "job_id": f"aud_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "purchase_id": None,
            "status": status,
            "source_url": None,
            "normalized_url": None,
            "progress": 0,
            "progress_message": None,
            "retry_count": 0,
            "last_retry_at": None,
            "error_message": None,
            "error_detail": None,
            "scraped_data": None,
            "salon_name": None,
            "salon_address": None,
            "salon_logo_url": None,
            "total_services": None,
            "total_categories": None,
            "overall_score": None,
            "report": None,
            "base_price_list_id": None,
            "pro_price_list_id": None,
            "keyword_report_id": None,
            "category_proposal_id": None,
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "scraping_completed_at": None,
            "completed_at": None,
        }

    def create_pending_audit(self, *, user_id: str, purchase_id: str | None = None) -> dict[str, Any]:
        with self._lock:
            self._assert_no_active_audit(user_id=user_id)
            job = self._new_audit_job(user_id=user_id, status=AuditStatus.PENDING)
            job["purchase_id"] = purchase_id
            job["progress_message"] = "Oczekuje na adres profilu"
            saved = self.audit_jobs_repository.create(job=job)
            self._persist_state()
        logger.info("audit_created job_id=%s user_id=%s status=pending", saved["job_id"], user_id)
        return saved

    def start_audit(self, *, user_id: str, audit_id: str, source_url: str) -> dict[str, Any]:
        url = self._validate_source_url(source_url)
        with self._lock:
            job = self.get_audit_for_user(user_id=user_id, audit_id=audit_id)
            if job["status"] != AuditStatus.PENDING:
                raise ApiError(
                    code="AUDIT_STATE_INVALID",
                    message=f"audit is {job['status']}, expected pending",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            now = self._utcnow_iso()
            updated = self.audit_jobs_repository.transition(
                job_id=audit_id,
                expected={AuditStatus.PENDING},
                patch={
                    "status": AuditStatus.SCRAPING,
                    "source_url": url,
                    "normalized_url": normalize_profile_url(url),
                    "started_at": now,
                    "updated_at": now,
                    "retry_count": 0,
                    "last_retry_at": None,
                    "error_message": None,
                    "progress": 5,
                    "progress_message": "Pobieranie cennika",
                },
            )
            self._persist_state()
        logger.info("audit_started job_id=%s user_id=%s", audit_id, user_id)
        return updated

    def start_new_audit(self, *, user_id: str, source_url: str) -> dict[str, Any]:
        """Direct start: one credit is spent and the job skips ``pending``.

        Active-job, duplicate-url and credit checks plus the insert run under
        one lock hold, so a rejected request leaves nothing behind.
        """
        url = self._validate_source_url(source_url)
        normalized_url = normalize_profile_url(url)
        with self._lock:
            self._assert_no_active_audit(user_id=user_id)
            self._assert_no_recent_duplicate(user_id=user_id, normalized_url=normalized_url)
            if not self.users_repository.debit_credit(user_id=user_id):
                raise ApiError(
                    code="CREDITS_INSUFFICIENT",
                    message="no credits left",
                    error_class="capacity",
                    retryable=False,
                    http_status=402,
                )
            job = self._new_audit_job(user_id=user_id, status=AuditStatus.SCRAPING)
            job.update(
                {
                    "source_url": url,
                    "normalized_url": normalized_url,
                    "started_at": job["created_at"],
                    "progress": 5,
                    "progress_message": "Pobieranie cennika",
                }
            )
            saved = self.audit_jobs_repository.create(job=job)
            self._persist_state()
        logger.info("audit_started job_id=%s user_id=%s direct=true", saved["job_id"], user_id)
        return saved

    def get_audit_job(self, job_id: str) -> dict[str, Any] | None:
        return self.audit_jobs_repository.get(job_id=job_id)

    def get_audit_for_user(self, *, user_id: str, audit_id: str) -> dict[str, Any]:
        job = self.audit_jobs_repository.get(job_id=audit_id)
        if job is None or job.get("user_id") != user_id:
            raise ApiError(
                code="AUDIT_NOT_FOUND",
                message="audit not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return job

    def list_audit_jobs_for_user(self, *, user_id: str) -> list[dict[str, Any]]:
        return self.audit_jobs_repository.list_for_scope(scope_id=user_id)

    def get_active_audit(self, *, user_id: str) -> dict[str, Any] | None:
        return self.audit_jobs_repository.find_in_scope(scope_id=user_id, statuses=AuditStatus.ACTIVE)

    def transition_audit_job(
        self,
        *,
        job_id: str,
        expected: set[str] | frozenset[str],
        patch: dict[str, Any],
    ) -> dict[str, Any] | None:
        with self._lock:
            patch = {**patch, "updated_at": self._utcnow_iso()}
            updated = self.audit_jobs_repository.transition(job_id=job_id, expected=expected, patch=patch)
            if updated is None:
                logger.warning("audit_transition_skipped job_id=%s expected=%s", job_id, sorted(expected))
                return None
            self._persist_state()
        return updated

    def record_scrape_success(self, *, job_id: str, scraped: ScrapedData) -> dict[str, Any] | None:
        """Store the snapshot, create the base price list and move to ``analyzing``.

        Returns ``None`` without writing anything if the job left ``scraping``.
        """
        with self._lock:
            job = self.audit_jobs_repository.get(job_id=job_id)
            if job is None or job["status"] != AuditStatus.SCRAPING:
                logger.warning("audit_scrape_result_dropped job_id=%s", job_id)
                return None
            now = self._utcnow_iso()
            base = self._new_price_list(
                user_id=job["user_id"],
                name=f"{scraped.salon_name or 'Salon'} - cennik Booksy",
                source="booksy",
                pricing=pricing_from_scraped(scraped),
            )
            base["audit_id"] = job_id
            self.price_lists_repository.upsert(price_list=base)
            updated = self.audit_jobs_repository.transition(
                job_id=job_id,
                expected={AuditStatus.SCRAPING},
                patch={
                    "status": AuditStatus.ANALYZING,
                    "scraped_data": scraped.model_dump(),
                    "salon_name": scraped.salon_name,
                    "salon_address": scraped.salon_address,
                    "salon_logo_url": scraped.salon_logo_url,
                    "total_services": scraped.total_services,
                    "total_categories": len(scraped.categories),
                    "base_price_list_id": base["price_list_id"],
                    "progress": 50,
                    "progress_message": "Analiza AI",
                    "scraping_completed_at": now,
                    "error_message": None,
                    "updated_at": now,
                },
            )
            self._persist_state()
        logger.info("audit_scraped job_id=%s services=%s", job_id, scraped.total_services)
        return updated

    def complete_audit(self, *, job_id: str, report: dict[str, Any]) -> dict[str, Any] | None:
        """Create the pro price list, link it and mark the audit ``completed``.

        All writes happen in one lock hold after the status check, so a lost
        race leaves no pro list and no notification behind.
        """
        with self._lock:
            job = self.audit_jobs_repository.get(job_id=job_id)
            if job is None or job["status"] != AuditStatus.ANALYZING:
                logger.warning("audit_analysis_result_dropped job_id=%s", job_id)
                return None
            now = self._utcnow_iso()
            score = int(report.get("total_score", 0))
            pro_id = None
            base = self.price_lists_repository.get(price_list_id=str(job.get("base_price_list_id") or ""))
            if base is not None:
                pro = self._new_price_list(
                    user_id=job["user_id"],
                    name=f"{job.get('salon_name') or 'Salon'} - cennik PRO",
                    source="audit",
                    pricing=base["pricing_data"],
                )
                pro.update(
                    {
                        "audit_id": job_id,
                        "is_optimizable": True,
                        "quality_score": score,
                        "optimized_from_price_list_id": base["price_list_id"],
                    }
                )
                self.price_lists_repository.upsert(price_list=pro)
                self.price_lists_repository.update(
                    price_list_id=base["price_list_id"],
                    patch={"optimized_version_id": pro["price_list_id"], "updated_at": now},
                )
                pro_id = pro["price_list_id"]
            updated = self.audit_jobs_repository.transition(
                job_id=job_id,
                expected={AuditStatus.ANALYZING},
                patch={
                    "status": AuditStatus.COMPLETED,
                    "report": report,
                    "overall_score": score,
                    "pro_price_list_id": pro_id,
                    "progress": 100,
                    "progress_message": "Gotowe",
                    "completed_at": now,
                    "updated_at": now,
                },
            )
            self.notify(
                user_id=job["user_id"],
                type="audit_completed",
                title="Audyt gotowy",
                message=f"Audyt salonu {job.get('salon_name') or 'bez nazwy'} zakończony. Wynik: {score}/100.",
                link=f"/audit-results?audit={job_id}",
            )
            self._persist_state()
        logger.info("audit_completed job_id=%s score=%s", job_id, score)
        return updated

    def fail_audit(
        self,
        *,
        job_id: str,
        expected: set[str] | frozenset[str],
        error_message: str,
        error_detail: str | None = None,
    ) -> dict[str, Any] | None:
        now = self._utcnow_iso()
        updated = self.transition_audit_job(
            job_id=job_id,
            expected=expected,
            patch={
                "status": AuditStatus.FAILED,
                "error_message": error_message,
                "error_detail": error_detail,
                "progress_message": None,
                "completed_at": now,
            },
        )
        if updated is not None:
            logger.info("audit_failed job_id=%s", job_id)
        return updated

    def _privileged_audit(self, audit_id: str) -> dict[str, Any]:
        job = self.audit_jobs_repository.get(job_id=audit_id)
        if job is None:
            raise ApiError(
                code="AUDIT_NOT_FOUND",
                message="audit not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return job

    @staticmethod
    def _terminal_audit_error(job: dict[str, Any]) -> ApiError:
        return ApiError(
            code="AUDIT_ALREADY_TERMINAL",
            message=f"audit is {job['status']}",
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )

    def reset_stuck_audit(self, *, audit_id: str) -> dict[str, Any]:
        """Put an active audit back on the step it needs next.

        Jobs without a scraped snapshot go back to ``scraping``; jobs that
        already scraped go to ``analyzing``.
        """
        with self._lock:
            job = self._privileged_audit(audit_id)
            if job["status"] not in AuditStatus.ACTIVE:
                raise self._terminal_audit_error(job)
            if not job.get("source_url"):
                raise ApiError(
                    code="AUDIT_STATE_INVALID",
                    message="audit has no source url yet",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            target = AuditStatus.ANALYZING if job.get("scraped_data") else AuditStatus.SCRAPING
            updated = self.transition_audit_job(
                job_id=audit_id,
                expected={job["status"]},
                patch={
                    "status": target,
                    "retry_count": 0,
                    "error_message": None,
                    "progress": 50 if target == AuditStatus.ANALYZING else 5,
                },
            )
        if updated is None:
            raise ApiError(
                code="AUDIT_STATE_CHANGED",
                message="audit changed state, reload and retry",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        logger.info("audit_reset job_id=%s target=%s", audit_id, target)
        return updated

    def reset_audit_for_analysis(self, *, audit_id: str) -> dict[str, Any]:
        """Send an active audit back to ``analyzing``; terminal audits stay put."""
        with self._lock:
            job = self._privileged_audit(audit_id)
            if job["status"] in AuditStatus.TERMINAL:
                raise self._terminal_audit_error(job)
            if not job.get("scraped_data"):
                raise ApiError(
                    code="AUDIT_SNAPSHOT_MISSING",
                    message="audit has no scraped data to analyze",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            updated = self.transition_audit_job(
                job_id=audit_id,
                expected={job["status"]},
                patch={
                    "status": AuditStatus.ANALYZING,
                    "error_message": None,
                    "error_detail": None,
                    "completed_at": None,
                    "progress": 50,
                    "progress_message": "Analiza AI",
                },
            )
        if updated is None:
            raise ApiError(
                code="AUDIT_STATE_CHANGED",
                message="audit changed state, reload and retry",
                error_class="business_rule",
                retryable=True,
                http_status=409,
            )
        logger.info("audit_analysis_reset job_id=%s", audit_id)
        return updated

    def force_fail_audit(self, *, audit_id: str) -> dict[str, Any]:
        with self._lock:
            job = self._privileged_audit(audit_id)
            if job["status"] not in AuditStatus.ACTIVE:
                raise self._terminal_audit_error(job)
            updated = self.fail_audit(
                job_id=audit_id,
                expected={job["status"]},
                error_message=FORCE_FAIL_MESSAGE,
                error_detail="forced by operator",
            )
        return updated

    def save_keyword_report(self, *, audit_id: str, report: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            existing = self.keyword_reports_repository.get_for_audit(audit_id=audit_id)
            if existing is not None:
                return existing
            saved = self.keyword_reports_repository.create(
                artifact={
                    "report_id": f"kwr_{uuid.uuid4().hex[:12]}",
                    "audit_id": audit_id,
                    "keywords": report.get("keywords", []),
                    "category_distribution": report.get("category_distribution", []),
                    "suggestions": report.get("suggestions", []),
                    "created_at": self._utcnow_iso(),
                }
            )
            self.audit_jobs_repository.update(job_id=audit_id, patch={"keyword_report_id": saved["report_id"]})
            self._persist_state()
        return saved

    def save_category_proposal(self, *, audit_id: str, proposal: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            existing = self.category_proposals_repository.get_for_audit(audit_id=audit_id)
            if existing is not None:
                return existing
            saved = self.category_proposals_repository.create(
                artifact={
                    "proposal_id": f"cpr_{uuid.uuid4().hex[:12]}",
                    "audit_id": audit_id,
                    "original_structure": proposal.get("original_structure", []),
                    "proposed_structure": proposal.get("proposed_structure", []),
                    "changes": proposal.get("changes", []),
                    "status": "pending",
                    "created_at": self._utcnow_iso(),
                }
            )
            self.audit_jobs_repository.update(job_id=audit_id, patch={"category_proposal_id": saved["proposal_id"]})
            self._persist_state()
        return saved

    def get_keyword_report(self, *, audit_id: str) -> dict[str, Any] | None:
        return self.keyword_reports_repository.get_for_audit(audit_id=audit_id)

    def get_category_proposal(self, *, audit_id: str) -> dict[str, Any] | None:
        return self.category_proposals_repository.get_for_audit(audit_id=audit_id)
