from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from app.analysis_engine import validate_optimization_options
from app.errors import ApiError
from app.retry_policy import ERROR_CLASS_PERMANENT, ERROR_CLASS_TRANSIENT, RetryDecision, decide_retry
from app.store_audits import _parse_iso

logger = logging.getLogger(__name__)


class OptimizationStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = frozenset({PENDING, PROCESSING})
    TERMINAL = frozenset({COMPLETED, FAILED})


# validate input + merge output, on top of one step per selected option
EXTRA_OPTIMIZATION_STEPS = 2


class StoreOptimizationMixin:
    def start_optimization(
        self,
        *,
        user_id: str,
        price_list_id: str,
        options: list[str],
        audit_id: str | None = None,
        audit_recommendations: list[str] | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            price_list = self.get_price_list_for_user(user_id=user_id, price_list_id=price_list_id)
            audit_id = audit_id or price_list.get("audit_id")
            if audit_id:
                self.get_audit_for_user(user_id=user_id, audit_id=audit_id)
            has_proposal = bool(audit_id) and self.category_proposals_repository.get_for_audit(audit_id=audit_id) is not None
            validation = validate_optimization_options(options, has_proposal)
            if not validation.valid:
                raise ApiError(
                    code="OPTIMIZATION_OPTIONS_INVALID",
                    message=validation.error or "invalid options",
                    error_class="validation",
                    retryable=False,
                    http_status=400,
                )
            active = self.get_active_optimization(price_list_id=price_list_id)
            if active is not None:
                raise ApiError(
                    code="OPTIMIZATION_ALREADY_ACTIVE",
                    message=f"optimization {active['job_id']} is still {active['status']}",
                    error_class="capacity",
                    retryable=False,
                    http_status=409,
                )
            now = self._utcnow_iso()
            job = {
                "job_id": f"opt_{uuid.uuid4().hex[:12]}",
                "user_id": user_id,
                "price_list_id": price_list_id,
                "audit_id": audit_id,
                "status": OptimizationStatus.PENDING,
                "selected_options": list(dict.fromkeys(options)),
                "audit_recommendations": list(audit_recommendations or []),
                "input_pricing_data": price_list["pricing_data"],
                "output_pricing_data": None,
                "optimization_result": None,
                "progress": 0,
                "current_step": 0,
                "total_steps": len(set(options)) + EXTRA_OPTIMIZATION_STEPS,
                "retry_count": 0,
                "attempt_token": None,
                "attempt_started_at": None,
                "error_message": None,
                "error_detail": None,
                "created_at": now,
                "updated_at": now,
                "started_at": None,
                "completed_at": None,
            }
            saved = self.optimization_jobs_repository.create(job=job)
            self.price_lists_repository.update(
                price_list_id=price_list_id,
                patch={"optimization_status": "pending", "updated_at": now},
            )
            self.notify(
                user_id=user_id,
                type="optimization_started",
                title="Optymalizacja rozpoczęta",
                message=f"Optymalizujemy cennik \"{price_list['name']}\".",
                link=f"/optimization-results?pricelist={price_list_id}",
            )
            self._persist_state()
        logger.info("optimization_started job_id=%s price_list_id=%s options=%s", saved["job_id"], price_list_id, options)
        return saved

    def get_optimization_job(self, job_id: str) -> dict[str, Any] | None:
        return self.optimization_jobs_repository.get(job_id=job_id)

    def get_optimization_for_user(self, *, user_id: str, job_id: str) -> dict[str, Any]:
        job = self.optimization_jobs_repository.get(job_id=job_id)
        if job is None or job.get("user_id") != user_id:
            raise ApiError(
                code="OPTIMIZATION_NOT_FOUND",
                message="optimization job not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return job

    def get_job_for_price_list(self, *, price_list_id: str) -> dict[str, Any] | None:
        jobs = self.optimization_jobs_repository.list_for_scope(scope_id=price_list_id)
        return jobs[0] if jobs else None

    def list_optimization_jobs_for_price_list(self, *, price_list_id: str) -> list[dict[str, Any]]:
        return self.optimization_jobs_repository.list_for_scope(scope_id=price_list_id)

    def get_active_optimization(self, *, price_list_id: str) -> dict[str, Any] | None:
        return self.optimization_jobs_repository.find_in_scope(
            scope_id=price_list_id,
            statuses=OptimizationStatus.ACTIVE,
        )

    def list_user_optimization_jobs(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                self.optimization_jobs_repository.get(job_id=job_id)
                for job_id, row in self.optimization_jobs.items()
                if row.get("user_id") == user_id
            ]
        rows = [row for row in rows if row is not None and (status is None or row["status"] == status)]
        rows.sort(key=lambda row: str(row.get("created_at", "")), reverse=True)
        return rows[: max(0, limit)]

    def transition_optimization_job(
        self,
        *,
        job_id: str,
        expected: set[str] | frozenset[str],
        patch: dict[str, Any],
        match: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            patch = {**patch, "updated_at": self._utcnow_iso()}
            updated = self.optimization_jobs_repository.transition(
                job_id=job_id,
                expected=expected,
                patch=patch,
                match=match,
            )
            if updated is None:
                logger.warning("optimization_transition_skipped job_id=%s expected=%s", job_id, sorted(expected))
                return None
            self._persist_state()
        return updated

    def _attempt_in_flight(self, job: dict[str, Any]) -> bool:
        if not job.get("attempt_token"):
            return False
        started = _parse_iso(job.get("attempt_started_at"))
        if started is None:
            return False
        return datetime.now(UTC) - started < timedelta(seconds=self.optimization_attempt_lease_s)

    def begin_optimization_processing(self, *, job_id: str) -> dict[str, Any] | None:
        """Claim the job for one processing attempt.

        Each claim stamps a fresh ``attempt_token``; completion and failure
        only land while the job still carries that token. A claim younger
        than the attempt lease blocks a second delivery, an older one is
        taken over and the previous holder's writes are dropped.
        """
        with self._lock:
            job = self.optimization_jobs_repository.get(job_id=job_id)
            if job is None:
                return None
            if job["status"] in OptimizationStatus.ACTIVE and self._attempt_in_flight(job):
                logger.info("optimization_attempt_in_flight job_id=%s", job_id)
                return None
            now = self._utcnow_iso()
            patch: dict[str, Any] = {
                "status": OptimizationStatus.PROCESSING,
                "progress": 10,
                "current_step": 1,
                "attempt_token": f"att_{uuid.uuid4().hex[:12]}",
                "attempt_started_at": now,
            }
            if not job.get("started_at"):
                patch["started_at"] = now
            updated = self.transition_optimization_job(
                job_id=job_id,
                expected=OptimizationStatus.ACTIVE,
                patch=patch,
                match={"attempt_token": job.get("attempt_token")},
            )
            if updated is not None:
                self.price_lists_repository.update(
                    price_list_id=job["price_list_id"],
                    patch={"optimization_status": "processing"},
                )
                self._persist_state()
        return updated

    def complete_optimization_job(
        self,
        *,
        job_id: str,
        attempt_token: str,
        output: dict[str, Any],
        result: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Write the optimized pricing back and close the job.

        The notification is created in the same lock hold as the status
        change, so a second completion attempt finds ``completed`` and exits.
        """
        with self._lock:
            job = self.optimization_jobs_repository.get(job_id=job_id)
            if job is None:
                return None
            now = self._utcnow_iso()
            updated = self.optimization_jobs_repository.transition(
                job_id=job_id,
                expected={OptimizationStatus.PROCESSING},
                match={"attempt_token": attempt_token},
                patch={
                    "status": OptimizationStatus.COMPLETED,
                    "output_pricing_data": output,
                    "optimization_result": result,
                    "progress": 100,
                    "current_step": job.get("total_steps", 0),
                    "attempt_token": None,
                    "attempt_started_at": None,
                    "completed_at": now,
                    "updated_at": now,
                    "error_message": None,
                },
            )
            if updated is None:
                logger.warning("optimization_completion_skipped job_id=%s status=%s", job_id, job["status"])
                return None
            services, categories = self._pricing_counts(output)
            price_list = self.price_lists_repository.update(
                price_list_id=job["price_list_id"],
                patch={
                    "pricing_data": output,
                    "original_pricing_data": job["input_pricing_data"],
                    "services_count": services,
                    "categories_count": categories,
                    "is_optimized": True,
                    "optimized_at": now,
                    "optimization_result": result,
                    "optimization_status": "completed",
                    "quality_score": result.get("quality_score"),
                    "updated_at": now,
                },
            )
            changes = len(result.get("changes", []))
            self.notify(
                user_id=job["user_id"],
                type="optimization_completed",
                title="Optymalizacja zakończona",
                message=f"Cennik \"{(price_list or {}).get('name', '')}\" zoptymalizowany. Liczba zmian: {changes}.",
                link=f"/optimization-results?pricelist={job['price_list_id']}",
            )
            self._persist_state()
        logger.info("optimization_completed job_id=%s changes=%s", job_id, changes)
        return updated

    def fail_optimization_job(
        self,
        *,
        job_id: str,
        attempt_token: str,
        error_message: str,
        should_retry: bool,
        error_detail: str | None = None,
    ) -> tuple[dict[str, Any] | None, RetryDecision]:
        """Record a failed processing attempt.

        ``should_retry=False`` ends the job at once. Otherwise the retry
        policy decides between a delayed self-loop in ``processing`` and a
        terminal ``failed`` with one failure notification. An attempt that
        no longer holds the job's token changes nothing.
        """
        with self._lock:
            job = self.optimization_jobs_repository.get(job_id=job_id)
            retry_count = int((job or {}).get("retry_count", 0))
            decision = decide_retry(
                retry_count,
                error_class=ERROR_CLASS_TRANSIENT if should_retry else ERROR_CLASS_PERMANENT,
                max_retries=self.job_max_retries,
            )
            dropped = RetryDecision(should_retry=False, delay_ms=0, attempt=decision.attempt)
            if job is None or job["status"] not in OptimizationStatus.ACTIVE:
                return None, dropped
            if job.get("attempt_token") != attempt_token:
                logger.warning("optimization_stale_attempt job_id=%s", job_id)
                return None, dropped
            now = self._utcnow_iso()
            if decision.should_retry:
                updated = self.optimization_jobs_repository.transition(
                    job_id=job_id,
                    expected=OptimizationStatus.ACTIVE,
                    match={"attempt_token": attempt_token},
                    patch={
                        "status": OptimizationStatus.PROCESSING,
                        "retry_count": retry_count + 1,
                        "attempt_token": None,
                        "attempt_started_at": None,
                        "error_message": error_message,
                        "error_detail": error_detail,
                        "updated_at": now,
                    },
                )
                self._persist_state()
                logger.info(
                    "optimization_retry job_id=%s retry=%s delay_ms=%s",
                    job_id,
                    retry_count + 1,
                    decision.delay_ms,
                )
                return updated, decision
            updated = self.optimization_jobs_repository.transition(
                job_id=job_id,
                expected=OptimizationStatus.ACTIVE,
                match={"attempt_token": attempt_token},
                patch={
                    "status": OptimizationStatus.FAILED,
                    "attempt_token": None,
                    "attempt_started_at": None,
                    "error_message": error_message,
                    "error_detail": error_detail,
                    "completed_at": now,
                    "updated_at": now,
                },
            )
            if updated is None:
                return None, dropped
            price_list = self.price_lists_repository.update(
                price_list_id=job["price_list_id"],
                patch={"optimization_status": "failed", "updated_at": now},
            )
            self.notify(
                user_id=job["user_id"],
                type="optimization_failed",
                title="Optymalizacja nie powiodła się",
                message=f"Cennik \"{(price_list or {}).get('name', '')}\": {error_message}",
                link=f"/optimization-results?pricelist={job['price_list_id']}",
            )
            self._persist_state()
        logger.info("optimization_failed job_id=%s attempts=%s", job_id, decision.attempt)
        return updated, decision
