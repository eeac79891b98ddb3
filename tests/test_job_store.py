from __future__ import annotations

import pytest

from app.errors import ApiError
from app.pricing import ScrapedData
from app.scraper import SAMPLE_PROFILE
from app.store import AuditStatus, InMemoryStore, SqliteBackedStore, create_store_from_env

from conftest import PROFILE_URL


def _funded(store: InMemoryStore, user_id: str = "u1", credits: int = 3) -> None:
    store.ensure_user(user_id=user_id, email=f"{user_id}@example.com", credits=credits)


def test_start_new_audit_debits_and_starts_scraping(fresh_store: InMemoryStore):
    _funded(fresh_store, credits=1)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    assert job["status"] == AuditStatus.SCRAPING
    assert job["started_at"]
    assert fresh_store.get_user(user_id="u1")["credits"] == 0


def test_start_new_audit_without_credits_leaves_no_job(fresh_store: InMemoryStore):
    _funded(fresh_store, credits=0)
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    assert exc_info.value.code == "CREDITS_INSUFFICIENT"
    assert exc_info.value.http_status == 402
    assert fresh_store.list_audit_jobs_for_user(user_id="u1") == []


def test_invalid_source_url_rejected_before_debit(fresh_store: InMemoryStore):
    _funded(fresh_store, credits=1)
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_new_audit(user_id="u1", source_url="https://example.com/salon")
    assert exc_info.value.code == "AUDIT_SOURCE_URL_INVALID"
    assert fresh_store.get_user(user_id="u1")["credits"] == 1


def test_only_one_active_audit_per_user(fresh_store: InMemoryStore):
    _funded(fresh_store)
    fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL + "_inny")
    assert exc_info.value.code == "AUDIT_ALREADY_ACTIVE"
    assert fresh_store.get_user(user_id="u1")["credits"] == 2


def test_duplicate_url_guard_after_terminal_job(fresh_store: InMemoryStore):
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    fresh_store.force_fail_audit(audit_id=job["job_id"])
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL + "/")
    assert exc_info.value.code == "AUDIT_DUPLICATE_SUBMISSION"
    assert exc_info.value.retryable is True


def test_duplicate_window_zero_allows_resubmission(fresh_store: InMemoryStore):
    fresh_store.audit_duplicate_window_s = 0
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    fresh_store.force_fail_audit(audit_id=job["job_id"])
    fresh_store.audit_jobs[job["job_id"]]["created_at"] = "2020-01-01T00:00:00+00:00"
    assert fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)["job_id"] != job["job_id"]


def test_pending_audit_starts_once(fresh_store: InMemoryStore):
    pending = fresh_store.create_pending_audit(user_id="u1", purchase_id="pay_1")
    started = fresh_store.start_audit(user_id="u1", audit_id=pending["job_id"], source_url=PROFILE_URL)
    assert started["status"] == AuditStatus.SCRAPING
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_audit(user_id="u1", audit_id=pending["job_id"], source_url=PROFILE_URL)
    assert exc_info.value.code == "AUDIT_STATE_INVALID"


def test_other_users_audit_is_not_found(fresh_store: InMemoryStore):
    pending = fresh_store.create_pending_audit(user_id="u1")
    with pytest.raises(ApiError) as exc_info:
        fresh_store.get_audit_for_user(user_id="u2", audit_id=pending["job_id"])
    assert exc_info.value.http_status == 404


def test_transition_loser_writes_nothing(fresh_store: InMemoryStore):
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    winner = fresh_store.transition_audit_job(
        job_id=job["job_id"],
        expected={AuditStatus.SCRAPING},
        patch={"status": AuditStatus.FAILED, "error_message": "first"},
    )
    loser = fresh_store.transition_audit_job(
        job_id=job["job_id"],
        expected={AuditStatus.SCRAPING},
        patch={"status": AuditStatus.ANALYZING, "error_message": "second"},
    )
    assert winner["status"] == AuditStatus.FAILED
    assert loser is None
    stored = fresh_store.get_audit_job(job["job_id"])
    assert stored["status"] == AuditStatus.FAILED
    assert stored["error_message"] == "first"


def test_legacy_processing_status_reads_as_scraping(fresh_store: InMemoryStore):
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    fresh_store.audit_jobs[job["job_id"]]["status"] = AuditStatus.LEGACY_PROCESSING
    assert fresh_store.get_audit_job(job["job_id"])["status"] == AuditStatus.SCRAPING
    assert fresh_store.get_active_audit(user_id="u1")["job_id"] == job["job_id"]
    moved = fresh_store.transition_audit_job(
        job_id=job["job_id"],
        expected={AuditStatus.SCRAPING},
        patch={"progress": 20},
    )
    assert moved["status"] == AuditStatus.SCRAPING


def test_scrape_success_then_completion_creates_both_price_lists(fresh_store: InMemoryStore):
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    scraped = ScrapedData.model_validate(SAMPLE_PROFILE)
    analyzing = fresh_store.record_scrape_success(job_id=job["job_id"], scraped=scraped)
    assert analyzing["status"] == AuditStatus.ANALYZING
    assert analyzing["total_services"] == 6
    assert fresh_store.record_scrape_success(job_id=job["job_id"], scraped=scraped) is None

    done = fresh_store.complete_audit(job_id=job["job_id"], report={"total_score": 71})
    assert done["status"] == AuditStatus.COMPLETED
    assert done["overall_score"] == 71
    base = fresh_store.get_price_list(done["base_price_list_id"])
    pro = fresh_store.get_price_list(done["pro_price_list_id"])
    assert base["source"] == "booksy"
    assert base["optimized_version_id"] == pro["price_list_id"]
    assert pro["is_optimizable"] is True
    assert pro["services_count"] == 5
    assert [n["type"] for n in fresh_store.list_notifications(user_id="u1")] == ["audit_completed"]
    assert fresh_store.complete_audit(job_id=job["job_id"], report={"total_score": 10}) is None
    assert len(fresh_store.list_notifications(user_id="u1")) == 1


def test_force_fail_and_reset_guards(fresh_store: InMemoryStore):
    _funded(fresh_store)
    job = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    reset = fresh_store.reset_stuck_audit(audit_id=job["job_id"])
    assert reset["status"] == AuditStatus.SCRAPING
    with pytest.raises(ApiError) as exc_info:
        fresh_store.reset_audit_for_analysis(audit_id=job["job_id"])
    assert exc_info.value.code == "AUDIT_SNAPSHOT_MISSING"
    failed = fresh_store.force_fail_audit(audit_id=job["job_id"])
    assert failed["status"] == AuditStatus.FAILED
    with pytest.raises(ApiError) as exc_info:
        fresh_store.force_fail_audit(audit_id=job["job_id"])
    assert exc_info.value.code == "AUDIT_ALREADY_TERMINAL"
    with pytest.raises(ApiError) as exc_info:
        fresh_store.reset_audit_for_analysis(audit_id=job["job_id"])
    assert exc_info.value.code == "AUDIT_ALREADY_TERMINAL"


def test_optimization_guards(fresh_store: InMemoryStore):
    _funded(fresh_store)
    price_list = fresh_store.create_price_list(
        user_id="u1",
        name="Cennik",
        pricing_data={"categories": [{"category_name": "A", "services": [{"name": "Strzyżenie", "price": "50 zł"}]}]},
    )
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_optimization(user_id="u1", price_list_id=price_list["price_list_id"], options=["categories"])
    assert exc_info.value.code == "OPTIMIZATION_OPTIONS_INVALID"

    job = fresh_store.start_optimization(user_id="u1", price_list_id=price_list["price_list_id"], options=["seo", "seo"])
    assert job["selected_options"] == ["seo"]
    assert job["total_steps"] == 3
    with pytest.raises(ApiError) as exc_info:
        fresh_store.start_optimization(user_id="u1", price_list_id=price_list["price_list_id"], options=["seo"])
    assert exc_info.value.code == "OPTIMIZATION_ALREADY_ACTIVE"
    assert fresh_store.get_price_list(price_list["price_list_id"])["optimization_status"] == "pending"


def test_prompt_template_upsert_bumps_version(fresh_store: InMemoryStore):
    before = fresh_store.get_prompt_template("optimization_seo")
    saved = fresh_store.upsert_prompt_template(stage="optimization_seo", payload={"temperature": 0.7})
    assert saved["version"] == before["version"] + 1
    assert saved["temperature"] == 0.7
    with pytest.raises(ApiError) as exc_info:
        fresh_store.upsert_prompt_template(stage="optimization_colors", payload={})
    assert exc_info.value.code == "PROMPT_STAGE_UNKNOWN"


def test_sqlite_store_persists_between_instances(tmp_path):
    db_path = tmp_path / "store.sqlite3"
    first = SqliteBackedStore(str(db_path))
    first.ensure_user(user_id="u1", credits=2)
    job = first.start_new_audit(user_id="u1", source_url=PROFILE_URL)

    second = SqliteBackedStore(str(db_path))
    assert second.get_user(user_id="u1")["credits"] == 1
    assert second.get_audit_job(job["job_id"])["status"] == AuditStatus.SCRAPING
    assert second.get_prompt_template("optimization_main") is not None


def test_store_factory(tmp_path):
    assert type(create_store_from_env({})) is InMemoryStore
    sqlite_store = create_store_from_env(
        {"SPA_STORE_BACKEND": "sqlite", "SPA_STORE_SQLITE_PATH": str(tmp_path / "s.sqlite3")}
    )
    assert isinstance(sqlite_store, SqliteBackedStore)
    with pytest.raises(ValueError):
        create_store_from_env({"SPA_STORE_BACKEND": "postgres"})


def test_active_job_lookup_per_scope(fresh_store: InMemoryStore):
    _funded(fresh_store)
    audit = fresh_store.start_new_audit(user_id="u1", source_url=PROFILE_URL)
    price_list = fresh_store.create_price_list(
        user_id="u1",
        name="Cennik",
        pricing_data={"categories": [{"category_name": "A", "services": [{"name": "Henna", "price": "40 zł"}]}]},
    )
    price_list_id = price_list["price_list_id"]
    assert fresh_store.get_active_job_for_scope(job_kind="optimization", scope_id=price_list_id) is None

    job = fresh_store.start_optimization(user_id="u1", price_list_id=price_list_id, options=["seo"])
    assert fresh_store.get_active_job_for_scope(job_kind="audit", scope_id="u1")["job_id"] == audit["job_id"]
    assert fresh_store.get_active_job_for_scope(job_kind="optimization", scope_id=price_list_id)["job_id"] == job["job_id"]
    assert [j["job_id"] for j in fresh_store.list_optimization_jobs_for_price_list(price_list_id=price_list_id)] == [
        job["job_id"]
    ]
    with pytest.raises(ValueError):
        fresh_store.get_active_job_for_scope(job_kind="invoice", scope_id="u1")
