from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from app.audit_pipeline import run_analysis_step, run_keywords_step, run_proposal_step, run_scrape_step
from app.job_steps import (
    FAILED,
    RETRYING,
    SKIPPED,
    STEP_AUDIT_ANALYZE,
    STEP_AUDIT_KEYWORDS,
    STEP_AUDIT_PROPOSAL,
    STEP_AUDIT_SCRAPE,
    STEP_OPTIMIZATION_RUN,
    SUCCEEDED,
    StepOutcome,
)
from app.optimization_pipeline import run_optimization_step
from app.queue_backend import DEFAULT_QUEUE_NAME, QueueMessage, WorkItem, enqueue_work_item

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "skipped": self.skipped,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


class WorkerRuntime:
    """Polls the job queue fairly across users and runs one step per message."""

    def __init__(
        self,
        *,
        store: Any,
        queue_backend: Any,
        scraper: Any,
        llm: Any,
        email_sender: Any = None,
        queue_names: list[str] | None = None,
        user_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
    ) -> None:
        self.store = store
        self.queue_backend = queue_backend
        self.scraper = scraper
        self.llm = llm
        self.email_sender = email_sender
        self.queue_names = list(queue_names or [DEFAULT_QUEUE_NAME])
        self.user_burst_limit = max(1, int(user_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._handlers: dict[str, Callable[[WorkItem, QueueMessage], StepOutcome]] = {
            STEP_AUDIT_SCRAPE: lambda item, msg: run_scrape_step(self.store, job_id=item.job_id, scraper=self.scraper),
            STEP_AUDIT_ANALYZE: lambda item, msg: run_analysis_step(
                self.store,
                job_id=item.job_id,
                llm=self.llm,
                email_sender=self.email_sender,
            ),
            STEP_AUDIT_KEYWORDS: lambda item, msg: run_keywords_step(
                self.store,
                job_id=item.job_id,
                llm=self.llm,
                attempt=msg.attempt,
            ),
            STEP_AUDIT_PROPOSAL: lambda item, msg: run_proposal_step(
                self.store,
                job_id=item.job_id,
                llm=self.llm,
                attempt=msg.attempt,
            ),
            STEP_OPTIMIZATION_RUN: lambda item, msg: run_optimization_step(
                self.store,
                job_id=item.job_id,
                llm=self.llm,
                email_sender=self.email_sender,
            ),
        }

    def enqueue(self, item: WorkItem, *, queue_name: str | None = None) -> QueueMessage:
        return enqueue_work_item(self.queue_backend, item, queue_name=queue_name or self.queue_names[0])

    def _process_message(self, *, queue_name: str, user_id: str, stats: WorkerRunStats) -> bool:
        msg = self.queue_backend.dequeue(user_id=user_id, queue_name=queue_name)
        if msg is None:
            return False
        stats.processed += 1
        item = WorkItem.from_payload(msg.payload)
        handler = self._handlers.get(item.step)
        if not item.job_id or handler is None:
            logger.warning("worker_message_dropped message_id=%s step=%s", msg.message_id, item.step)
            self.queue_backend.ack(user_id=user_id, message_id=msg.message_id)
            stats.acked += 1
            stats.skipped += 1
            return True

        try:
            outcome = handler(item, msg)
        except Exception:
            # Keep worker loop alive on unexpected execution failures.
            logger.exception("worker_step_crashed job_id=%s step=%s", item.job_id, item.step)
            self.queue_backend.ack(user_id=user_id, message_id=msg.message_id)
            stats.acked += 1
            stats.failed += 1
            return True

        if outcome.final_status == RETRYING:
            self.queue_backend.nack(
                user_id=user_id,
                message_id=msg.message_id,
                requeue=True,
                delay_ms=max(0, outcome.retry_after_ms),
            )
            stats.requeued += 1
            stats.retrying += 1
            return True

        self.queue_backend.ack(user_id=user_id, message_id=msg.message_id)
        stats.acked += 1
        for next_item in outcome.next_items:
            self.enqueue(next_item, queue_name=queue_name)
        if outcome.final_status == SUCCEEDED:
            stats.succeeded += 1
        elif outcome.final_status == SKIPPED:
            stats.skipped += 1
        elif outcome.final_status == FAILED:
            stats.failed += 1
        return True

    def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        for queue_name in self.queue_names:
            while stats.processed < self.max_messages_per_iteration:
                users = self.queue_backend.list_users(queue_name=queue_name)
                if not users:
                    break
                progressed = False
                for user_id in users:
                    for _ in range(self.user_burst_limit):
                        if stats.processed >= self.max_messages_per_iteration:
                            break
                        handled = self._process_message(queue_name=queue_name, user_id=user_id, stats=stats)
                        progressed = progressed or handled
                        if not handled:
                            break
                if not progressed:
                    break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_worker_runtime_from_env(
    *,
    store: Any,
    queue_backend: Any,
    scraper: Any,
    llm: Any,
    email_sender: Any = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    queue_names_raw = str(env.get("WORKER_QUEUE_NAMES", DEFAULT_QUEUE_NAME)).strip()
    queue_names = [x.strip() for x in queue_names_raw.split(",") if x.strip()] or [DEFAULT_QUEUE_NAME]
    return WorkerRuntime(
        store=store,
        queue_backend=queue_backend,
        scraper=scraper,
        llm=llm,
        email_sender=email_sender,
        queue_names=queue_names,
        user_burst_limit=_env_int(env, "WORKER_USER_BURST_LIMIT", default=1, minimum=1),
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
