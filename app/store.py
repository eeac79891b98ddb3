from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from app.analysis_engine import OPTIMIZATION_OPTIONS
from app.errors import ApiError
from app.job_steps import AUDIT_JOB, OPTIMIZATION_JOB
from app.pricing import PricingData, load_pricing, pricing_counts
from app.repositories import (
    InMemoryAnalysisArtifactsRepository,
    InMemoryJobsRepository,
    InMemoryNotificationsRepository,
    InMemoryPriceListsRepository,
    InMemoryPromptTemplatesRepository,
    InMemoryUsersRepository,
)
from app.retry_policy import DEFAULT_MAX_RETRIES
from app.store_audits import AuditStatus, StoreAuditsMixin, normalize_audit_status
from app.store_optimization import OptimizationStatus, StoreOptimizationMixin

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = frozenset(
    {"optimization_started", "optimization_completed", "optimization_failed", "audit_completed", "system"}
)
PURCHASE_PRODUCTS = frozenset({"audit", "optimization"})
PRICE_LIST_SOURCES = frozenset({"manual", "booksy", "audit"})

MAIN_PROMPT_STAGE = "optimization_main"

_MAIN_RULES = """Zasady optymalizacji cennika:
- Zachowaj dokładnie tyle usług, ile jest na wejściu, w tej samej kolejności.
- Nazwy autorskie i brandowane (np. MS AquaLift, Endermologie LPG, Hydrafacial) zostaw bez zmian.
- Opis to 1-2 zdania o korzyści dla klientki, bez cen, kwot i pakietów.
- Nie używaj emoji ani formatowania markdown.
- Ceny wpisuj tylko w kolumnie CENA.
- Odpowiadaj wyłącznie w formacie tabelarycznym, jedna linia na usługę."""

_STAGE_DEFAULTS: dict[str, dict[str, Any]] = {
    "descriptions": {"display_name": "Opisy usług", "temperature": 0.5},
    "seo": {"display_name": "SEO - słowa kluczowe", "temperature": 0.3},
    "categories": {"display_name": "Struktura kategorii", "temperature": 0.2},
    "order": {"display_name": "Kolejność usług", "temperature": 0.1},
    "prices": {"display_name": "Formatowanie cen", "temperature": 0.0},
    "duplicates": {"display_name": "Duplikaty i błędy", "temperature": 0.1},
    "duration": {"display_name": "Czas trwania", "temperature": 0.1},
    "tags": {"display_name": "Tagi i oznaczenia", "temperature": 0.3},
}


def default_prompt_templates() -> list[dict[str, Any]]:
    templates = [
        {
            "stage": MAIN_PROMPT_STAGE,
            "display_name": "Główne zasady optymalizacji",
            "system_prompt": _MAIN_RULES,
            "temperature": 0.1,
            "max_tokens": 4096,
            "is_active": True,
            "version": 1,
        }
    ]
    for option in OPTIMIZATION_OPTIONS:
        defaults = _STAGE_DEFAULTS.get(option, {})
        templates.append(
            {
                "stage": f"optimization_{option}",
                "display_name": defaults.get("display_name", option),
                "system_prompt": None,
                "temperature": defaults.get("temperature", 0.3),
                "max_tokens": None,
                "is_active": True,
                "version": 1,
            }
        )
    return templates


class InMemoryStore(StoreAuditsMixin, StoreOptimizationMixin):
    def __init__(self) -> None:
        self.job_max_retries = self._env_int("JOB_MAX_RETRIES", default=DEFAULT_MAX_RETRIES, minimum=0)
        self.audit_duplicate_window_s = self._env_int("AUDIT_DUPLICATE_WINDOW_S", default=300, minimum=0)
        self.optimization_attempt_lease_s = self._env_int("OPTIMIZATION_ATTEMPT_LEASE_S", default=600, minimum=1)
        self._lock = threading.RLock()
        self.users: dict[str, dict[str, Any]] = {}
        self.price_lists: dict[str, dict[str, Any]] = {}
        self.audit_jobs: dict[str, dict[str, Any]] = {}
        self.optimization_jobs: dict[str, dict[str, Any]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self.keyword_reports: dict[str, dict[str, Any]] = {}
        self.category_proposals: dict[str, dict[str, Any]] = {}
        self.prompt_templates: dict[str, dict[str, Any]] = {}
        self.purchases: dict[str, dict[str, Any]] = {}
        self._bind_repositories()
        self._seed_prompt_templates()

    @staticmethod
    def _env_int(name: str, *, default: int, minimum: int = 0) -> int:
        raw = os.environ.get(name, "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(minimum, value)

    def _bind_repositories(self) -> None:
        self.users_repository = InMemoryUsersRepository(self.users)
        self.price_lists_repository = InMemoryPriceListsRepository(self.price_lists)
        self.audit_jobs_repository = InMemoryJobsRepository(
            self.audit_jobs,
            scope_field="user_id",
            lock=self._lock,
            normalize_status=normalize_audit_status,
        )
        self.optimization_jobs_repository = InMemoryJobsRepository(
            self.optimization_jobs,
            scope_field="price_list_id",
            lock=self._lock,
        )
        self.notifications_repository = InMemoryNotificationsRepository(self.notifications)
        self.keyword_reports_repository = InMemoryAnalysisArtifactsRepository(self.keyword_reports, id_field="report_id")
        self.category_proposals_repository = InMemoryAnalysisArtifactsRepository(
            self.category_proposals,
            id_field="proposal_id",
        )
        self.prompt_templates_repository = InMemoryPromptTemplatesRepository(self.prompt_templates)

    def _seed_prompt_templates(self) -> None:
        now = self._utcnow_iso()
        for template in default_prompt_templates():
            if template["stage"] not in self.prompt_templates:
                self.prompt_templates_repository.upsert(template={**template, "updated_at": now})

    def reset(self) -> None:
        with self._lock:
            self.users.clear()
            self.price_lists.clear()
            self.audit_jobs.clear()
            self.optimization_jobs.clear()
            self.notifications.clear()
            self.keyword_reports.clear()
            self.category_proposals.clear()
            self.prompt_templates.clear()
            self.purchases.clear()
            self._seed_prompt_templates()

    def _persist_state(self) -> None:
        """Called at the end of every mutating unit, inside the lock."""

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def _pricing_counts(pricing: dict[str, Any] | PricingData) -> tuple[int, int]:
        return pricing_counts(load_pricing(pricing))

    # -- credit ledger -----------------------------------------------------

    def ensure_user(
        self,
        *,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
        credits: int = 0,
    ) -> dict[str, Any]:
        with self._lock:
            now = self._utcnow_iso()
            existing = self.users_repository.get(user_id=user_id)
            if existing is None:
                user = {
                    "user_id": user_id,
                    "email": email,
                    "name": name,
                    "credits": max(0, int(credits)),
                    "created_at": now,
                    "updated_at": now,
                }
            else:
                user = {
                    **existing,
                    "email": email or existing.get("email"),
                    "name": name or existing.get("name"),
                    "updated_at": now,
                }
            saved = self.users_repository.upsert(user=user)
            self._persist_state()
        return saved

    def get_user(self, *, user_id: str) -> dict[str, Any] | None:
        return self.users_repository.get(user_id=user_id)

    def debit_credit(self, *, user_id: str) -> bool:
        with self._lock:
            ok = self.users_repository.debit_credit(user_id=user_id)
            if ok:
                self._persist_state()
        if not ok:
            logger.info("credit_debit_rejected user_id=%s", user_id)
        return ok

    def add_credits(self, *, user_id: str, amount: int) -> dict[str, Any]:
        if int(amount) <= 0:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message="amount must be positive",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self._lock:
            if self.users_repository.get(user_id=user_id) is None:
                self.ensure_user(user_id=user_id)
            saved = self.users_repository.add_credits(user_id=user_id, amount=int(amount))
            self._persist_state()
        logger.info("credits_added user_id=%s amount=%s", user_id, amount)
        return saved

    # -- price lists -------------------------------------------------------

    def _new_price_list(
        self,
        *,
        user_id: str,
        name: str,
        source: str,
        pricing: dict[str, Any] | PricingData,
    ) -> dict[str, Any]:
        data = load_pricing(pricing)
        services, categories = pricing_counts(data)
        now = self._utcnow_iso()
        return {
            "price_list_id": f"pl_{uuid.uuid4().hex[:12]}",
            "user_id": user_id,
            "name": name,
            "source": source,
            "pricing_data": data.model_dump(),
            "original_pricing_data": None,
            "services_count": services,
            "categories_count": categories,
            "audit_id": None,
            "purchase_id": None,
            "is_optimizable": False,
            "is_optimized": False,
            "optimized_at": None,
            "optimization_result": None,
            "optimization_status": None,
            "quality_score": None,
            "optimized_from_price_list_id": None,
            "optimized_version_id": None,
            "created_at": now,
            "updated_at": now,
        }

    def create_price_list(self, *, user_id: str, name: str, pricing_data: dict[str, Any]) -> dict[str, Any]:
        name = str(name or "").strip()
        if not name:
            raise ApiError(
                code="REQ_VALIDATION_FAILED",
                message="name is required",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        price_list = self._new_price_list(user_id=user_id, name=name, source="manual", pricing=pricing_data)
        price_list["is_optimizable"] = True
        with self._lock:
            saved = self.price_lists_repository.upsert(price_list=price_list)
            self._persist_state()
        return saved

    def get_price_list_for_user(self, *, user_id: str, price_list_id: str) -> dict[str, Any]:
        price_list = self.price_lists_repository.get_for_user(user_id=user_id, price_list_id=price_list_id)
        if price_list is None:
            raise ApiError(
                code="PRICE_LIST_NOT_FOUND",
                message="price list not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return price_list

    def get_price_list(self, price_list_id: str) -> dict[str, Any] | None:
        return self.price_lists_repository.get(price_list_id=price_list_id)

    def list_price_lists(self, *, user_id: str) -> list[dict[str, Any]]:
        return self.price_lists_repository.list(user_id=user_id)

    def get_active_job_for_scope(self, *, job_kind: str, scope_id: str) -> dict[str, Any] | None:
        """Active job of one scope: a user for audits, a price list for optimizations."""
        if job_kind == AUDIT_JOB:
            return self.get_active_audit(user_id=scope_id)
        if job_kind == OPTIMIZATION_JOB:
            return self.get_active_optimization(price_list_id=scope_id)
        raise ValueError(f"unknown job kind: {job_kind}")

    # -- notifications -----------------------------------------------------

    def notify(
        self,
        *,
        user_id: str,
        type: str,
        title: str,
        message: str,
        link: str | None = None,
    ) -> dict[str, Any]:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {type}")
        with self._lock:
            saved = self.notifications_repository.create(
                notification={
                    "notification_id": f"ntf_{uuid.uuid4().hex[:12]}",
                    "user_id": user_id,
                    "type": type,
                    "title": title,
                    "message": message,
                    "link": link,
                    "read": False,
                    "created_at": self._utcnow_iso(),
                }
            )
            self._persist_state()
        return saved

    def list_notifications(self, *, user_id: str, unread_only: bool = False) -> list[dict[str, Any]]:
        return self.notifications_repository.list(user_id=user_id, unread_only=unread_only)

    def mark_notification_read(self, *, user_id: str, notification_id: str) -> dict[str, Any]:
        with self._lock:
            updated = self.notifications_repository.mark_read(user_id=user_id, notification_id=notification_id)
            if updated is None:
                raise ApiError(
                    code="NOTIFICATION_NOT_FOUND",
                    message="notification not found",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                )
            self._persist_state()
        return updated

    # -- prompt templates --------------------------------------------------

    def get_prompt_template(self, stage: str) -> dict[str, Any] | None:
        return self.prompt_templates_repository.get(stage=stage)

    def list_prompt_templates(self) -> list[dict[str, Any]]:
        return self.prompt_templates_repository.list()

    def upsert_prompt_template(self, *, stage: str, payload: dict[str, Any]) -> dict[str, Any]:
        allowed = {MAIN_PROMPT_STAGE} | {f"optimization_{option}" for option in OPTIMIZATION_OPTIONS}
        if stage not in allowed:
            raise ApiError(
                code="PROMPT_STAGE_UNKNOWN",
                message=f"unknown prompt stage: {stage}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self._lock:
            existing = self.prompt_templates.get(stage) or {"stage": stage, "version": 0}
            template = {**existing}
            for key in ("display_name", "system_prompt", "temperature", "max_tokens", "is_active"):
                if key in payload and payload[key] is not None:
                    template[key] = payload[key]
            template["version"] = int(existing.get("version", 0)) + 1
            template["updated_at"] = self._utcnow_iso()
            saved = self.prompt_templates_repository.upsert(template=template)
            self._persist_state()
        return saved

    # -- payments ----------------------------------------------------------

    def confirm_purchase(
        self,
        *,
        user_id: str,
        product: str,
        purchase_id: str,
        price_list_id: str | None = None,
    ) -> dict[str, Any]:
        """Apply a confirmed payment once per ``purchase_id``.

        ``audit`` opens a pending audit; ``optimization`` adds one credit and
        links the purchase to the price list.
        """
        if product not in PURCHASE_PRODUCTS:
            raise ApiError(
                code="PURCHASE_PRODUCT_UNKNOWN",
                message=f"unknown product: {product}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        with self._lock:
            existing = self.purchases.get(purchase_id)
            if existing is not None:
                return dict(existing)
            record: dict[str, Any] = {
                "purchase_id": purchase_id,
                "user_id": user_id,
                "product": product,
                "price_list_id": price_list_id,
                "audit_id": None,
                "confirmed_at": self._utcnow_iso(),
            }
            if product == "audit":
                job = self.create_pending_audit(user_id=user_id, purchase_id=purchase_id)
                record["audit_id"] = job["job_id"]
            else:
                if price_list_id:
                    self.get_price_list_for_user(user_id=user_id, price_list_id=price_list_id)
                    self.price_lists_repository.update(price_list_id=price_list_id, patch={"purchase_id": purchase_id})
                self.add_credits(user_id=user_id, amount=1)
            self.purchases[purchase_id] = record
            self._persist_state()
        logger.info("purchase_confirmed purchase_id=%s product=%s user_id=%s", purchase_id, product, user_id)
        return dict(record)


class SqliteBackedStore(InMemoryStore):
    """Snapshots the whole store into a single SQLite row after each change."""

    TABLES = (
        "users",
        "price_lists",
        "audit_jobs",
        "optimization_jobs",
        "notifications",
        "keyword_reports",
        "category_proposals",
        "prompt_templates",
        "purchases",
    )

    def __init__(self, db_path: str) -> None:
        super().__init__()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()
        self._load_state()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path))

    def _initialize_database(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS store_state (
                  id INTEGER PRIMARY KEY CHECK (id = 1),
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _state_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {"schema_version": 1}
        for table in self.TABLES:
            snapshot[table] = getattr(self, table)
        return snapshot

    def _restore_state(self, payload: dict[str, Any]) -> None:
        for table in self.TABLES:
            value = payload.get(table)
            setattr(self, table, value if isinstance(value, dict) else {})
        self._bind_repositories()
        self._seed_prompt_templates()

    def _save_state(self) -> None:
        snapshot = self._state_snapshot()
        blob = json.dumps(snapshot, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                    INSERT INTO store_state(id, payload)
                    VALUES (1, ?)
                    ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                    """,
                (blob,),
            )
            conn.commit()

    def _load_state(self) -> None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT payload FROM store_state WHERE id = 1").fetchone()
        if row is None:
            return
        payload_raw = row[0]
        if not isinstance(payload_raw, str):
            return
        try:
            payload = json.loads(payload_raw)
        except json.JSONDecodeError:
            logger.warning("store_snapshot_unreadable path=%s", self._db_path)
            return
        if not isinstance(payload, dict):
            return
        self._restore_state(payload)

    def _persist_state(self) -> None:
        self._save_state()

    def reset(self) -> None:
        super().reset()
        self._save_state()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("SPA_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        db_path = env.get("SPA_STORE_SQLITE_PATH", ".local/spa-store.sqlite3")
        return SqliteBackedStore(db_path)
    if backend != "memory":
        raise ValueError(f"unsupported SPA_STORE_BACKEND: {backend}")
    return InMemoryStore()


__all__ = [
    "AuditStatus",
    "InMemoryStore",
    "OptimizationStatus",
    "SqliteBackedStore",
    "create_store_from_env",
    "store",
]

store = create_store_from_env()
