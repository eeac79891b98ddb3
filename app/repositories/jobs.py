from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any


def _identity(status: str) -> str:
    return status


class InMemoryJobsRepository:
    """Job records keyed by id, scoped by one field (user or price list).

    ``transition`` is the only way a pipeline changes job status: it compares
    the current status with the expected set and writes under the lock.
    """

    def __init__(
        self,
        jobs: dict[str, dict[str, Any]],
        *,
        scope_field: str,
        lock: threading.RLock | None = None,
        normalize_status: Callable[[str], str] = _identity,
    ) -> None:
        self._jobs = jobs
        self._scope_field = scope_field
        self._lock = lock or threading.RLock()
        self._normalize = normalize_status

    def create(self, *, job: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self._jobs[str(job["job_id"])] = dict(job)
            return dict(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        row = self._jobs.get(job_id)
        if row is None:
            return None
        out = dict(row)
        out["status"] = self._normalize(str(out.get("status", "")))
        return out

    def list_for_scope(self, *, scope_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [self.get(job_id=job_id) for job_id, row in self._jobs.items() if row.get(self._scope_field) == scope_id]
        rows = [row for row in rows if row is not None]
        return sorted(rows, key=lambda row: str(row.get("created_at", "")), reverse=True)

    def find_in_scope(self, *, scope_id: str, statuses: Iterable[str]) -> dict[str, Any] | None:
        wanted = set(statuses)
        for row in self.list_for_scope(scope_id=scope_id):
            if row["status"] in wanted:
                return row
        return None

    def update(self, *, job_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return None
            row.update(patch)
            return self.get(job_id=job_id)

    def transition(
        self,
        *,
        job_id: str,
        expected: Iterable[str],
        patch: dict[str, Any],
        match: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Apply ``patch`` only if the job's status is still one of ``expected``
        and every field in ``match`` still holds the given value.

        Returns the updated record, or ``None`` when the job is missing or its
        status moved on; nothing is written in that case.
        """
        with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                return None
            if self._normalize(str(row.get("status", ""))) not in set(expected):
                return None
            if any(row.get(key) != value for key, value in (match or {}).items()):
                return None
            row.update(patch)
            if "status" in row:
                row["status"] = self._normalize(str(row["status"]))
            return dict(row)
