from __future__ import annotations

from app.errors import TransientExternalError
from app.job_steps import AUDIT_JOB, STEP_AUDIT_ANALYZE, STEP_AUDIT_KEYWORDS, STEP_AUDIT_SCRAPE
from app.llm_provider import LLMGateway
from app.queue_backend import InMemoryQueueBackend, WorkItem
from app.scraper import SAMPLE_PROFILE, StaticScraper
from app.store import AuditStatus, InMemoryStore
from app.worker_runtime import WorkerRuntime, create_worker_runtime_from_env

from conftest import PROFILE_URL


def _runtime(store: InMemoryStore, queue: InMemoryQueueBackend, scraper: StaticScraper, **kwargs) -> WorkerRuntime:
    return WorkerRuntime(
        store=store,
        queue_backend=queue,
        scraper=scraper,
        llm=LLMGateway(use_mock=True),
        queue_names=["jobs"],
        **kwargs,
    )


def _start_audit(store: InMemoryStore, runtime: WorkerRuntime, user_id: str) -> str:
    store.ensure_user(user_id=user_id, credits=1)
    job = store.start_new_audit(user_id=user_id, source_url=PROFILE_URL)
    runtime.enqueue(WorkItem(job_id=job["job_id"], job_kind=AUDIT_JOB, step=STEP_AUDIT_SCRAPE, user_id=user_id))
    return job["job_id"]


def test_worker_drives_audit_through_all_steps(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE))
    job_id = _start_audit(fresh_store, runtime, "u1")

    total = 0
    for _ in range(5):
        total += runtime.run_once()["succeeded"]
    assert total == 4
    job = fresh_store.get_audit_job(job_id)
    assert job["status"] == AuditStatus.COMPLETED
    assert fresh_store.get_keyword_report(audit_id=job_id) is not None
    assert fresh_store.get_category_proposal(audit_id=job_id) is not None
    assert queue.pending_count(user_id="u1", queue_name="jobs") == 0


def test_follow_up_step_is_enqueued_after_ack(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE), max_messages_per_iteration=1)
    _start_audit(fresh_store, runtime, "u1")
    stats = runtime.run_once()
    assert stats == {
        "processed": 1,
        "succeeded": 1,
        "retrying": 0,
        "failed": 0,
        "skipped": 0,
        "acked": 1,
        "requeued": 0,
    }
    pending = queue.pending_messages(user_id="u1", queue_name="jobs")
    assert [m.payload["step"] for m in pending] == [STEP_AUDIT_ANALYZE]
    assert pending[0].payload["not_before"]


def test_retrying_step_is_requeued_with_delay(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    scraper = StaticScraper(default=TransientExternalError("Booksy API timeout", code="SCRAPE_TIMEOUT"))
    runtime = _runtime(fresh_store, queue, scraper)
    job_id = _start_audit(fresh_store, runtime, "u1")

    stats = runtime.run_once()
    assert stats["retrying"] == 1
    assert stats["requeued"] == 1
    assert fresh_store.get_audit_job(job_id)["status"] == AuditStatus.SCRAPING_RETRY

    pending = queue.pending_messages(user_id="u1", queue_name="jobs")
    assert len(pending) == 1
    assert pending[0].attempt == 1
    # not due for another 30 seconds
    assert runtime.run_once()["processed"] == 0
    assert len(scraper.calls) == 1


def test_users_are_served_fairly(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE), max_messages_per_iteration=2)
    job_a = _start_audit(fresh_store, runtime, "user_a")
    job_b = _start_audit(fresh_store, runtime, "user_b")

    stats = runtime.run_once()
    assert stats["processed"] == 2
    assert fresh_store.get_audit_job(job_a)["status"] == AuditStatus.ANALYZING
    assert fresh_store.get_audit_job(job_b)["status"] == AuditStatus.ANALYZING


def test_crashing_step_is_acked_and_counted(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    def _boom(_job_id):
        raise RuntimeError("unexpected")

    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE))
    runtime._handlers[STEP_AUDIT_SCRAPE] = lambda item, msg: _boom(item.job_id)
    _start_audit(fresh_store, runtime, "u1")
    stats = runtime.run_once()
    assert stats["failed"] == 1
    assert stats["acked"] == 1
    assert queue.pending_count(user_id="u1", queue_name="jobs") == 0


def test_unknown_step_is_dropped(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE))
    runtime.enqueue(WorkItem(job_id="aud_x", job_kind=AUDIT_JOB, step="audit.unknown", user_id="u1"))
    stats = runtime.run_once()
    assert stats["skipped"] == 1
    assert stats["acked"] == 1


def test_stale_message_is_skipped(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = _runtime(fresh_store, queue, StaticScraper(default=SAMPLE_PROFILE))
    job_id = _start_audit(fresh_store, runtime, "u1")
    fresh_store.force_fail_audit(audit_id=job_id)
    runtime.enqueue(WorkItem(job_id=job_id, job_kind=AUDIT_JOB, step=STEP_AUDIT_KEYWORDS, user_id="u1"))
    stats = runtime.run_once()
    assert stats["skipped"] == 2
    assert stats["processed"] == 2


def test_runtime_from_env_reads_worker_settings(fresh_store: InMemoryStore, queue: InMemoryQueueBackend):
    runtime = create_worker_runtime_from_env(
        store=fresh_store,
        queue_backend=queue,
        scraper=StaticScraper(default=SAMPLE_PROFILE),
        llm=LLMGateway(use_mock=True),
        environ={
            "WORKER_QUEUE_NAMES": "audits, optimizations",
            "WORKER_USER_BURST_LIMIT": "3",
            "WORKER_MAX_MESSAGES_PER_ITERATION": "oops",
        },
    )
    assert runtime.queue_names == ["audits", "optimizations"]
    assert runtime.user_burst_limit == 3
    assert runtime.max_messages_per_iteration == 20
