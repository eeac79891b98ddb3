from __future__ import annotations

import threading

import pytest

from app.errors import ApiError
from app.store import InMemoryStore


def test_debit_never_goes_negative(fresh_store: InMemoryStore):
    fresh_store.ensure_user(user_id="u1", credits=1)
    assert fresh_store.debit_credit(user_id="u1") is True
    assert fresh_store.debit_credit(user_id="u1") is False
    assert fresh_store.get_user(user_id="u1")["credits"] == 0


def test_debit_for_unknown_user_is_rejected(fresh_store: InMemoryStore):
    assert fresh_store.debit_credit(user_id="ghost") is False


def test_concurrent_debits_spend_each_credit_once(fresh_store: InMemoryStore):
    fresh_store.ensure_user(user_id="u1", credits=5)
    results: list[bool] = []

    def _debit():
        results.append(fresh_store.debit_credit(user_id="u1"))

    threads = [threading.Thread(target=_debit) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results.count(True) == 5
    assert fresh_store.get_user(user_id="u1")["credits"] == 0


def test_add_credits_creates_user_and_rejects_non_positive(fresh_store: InMemoryStore):
    user = fresh_store.add_credits(user_id="new_user", amount=3)
    assert user["credits"] == 3
    with pytest.raises(ApiError) as exc_info:
        fresh_store.add_credits(user_id="new_user", amount=0)
    assert exc_info.value.code == "REQ_VALIDATION_FAILED"


def test_ensure_user_keeps_balance_and_updates_email(fresh_store: InMemoryStore):
    fresh_store.ensure_user(user_id="u1", email="old@example.com", credits=2)
    again = fresh_store.ensure_user(user_id="u1", email="new@example.com", credits=50)
    assert again["credits"] == 2
    assert again["email"] == "new@example.com"


def test_optimization_purchase_is_applied_once(fresh_store: InMemoryStore):
    fresh_store.ensure_user(user_id="u1")
    price_list = fresh_store.create_price_list(user_id="u1", name="Cennik", pricing_data={"categories": []})
    first = fresh_store.confirm_purchase(
        user_id="u1",
        product="optimization",
        purchase_id="pay_1",
        price_list_id=price_list["price_list_id"],
    )
    second = fresh_store.confirm_purchase(
        user_id="u1",
        product="optimization",
        purchase_id="pay_1",
        price_list_id=price_list["price_list_id"],
    )
    assert first == second
    assert fresh_store.get_user(user_id="u1")["credits"] == 1
    assert fresh_store.get_price_list(price_list["price_list_id"])["purchase_id"] == "pay_1"


def test_audit_purchase_opens_pending_audit(fresh_store: InMemoryStore):
    record = fresh_store.confirm_purchase(user_id="u1", product="audit", purchase_id="pay_audit")
    job = fresh_store.get_audit_job(record["audit_id"])
    assert job["status"] == "pending"
    assert job["purchase_id"] == "pay_audit"
    assert fresh_store.confirm_purchase(user_id="u1", product="audit", purchase_id="pay_audit")["audit_id"] == job["job_id"]
    assert len(fresh_store.list_audit_jobs_for_user(user_id="u1")) == 1


def test_unknown_purchase_product_rejected(fresh_store: InMemoryStore):
    with pytest.raises(ApiError) as exc_info:
        fresh_store.confirm_purchase(user_id="u1", product="gift_card", purchase_id="pay_x")
    assert exc_info.value.code == "PURCHASE_PRODUCT_UNKNOWN"
