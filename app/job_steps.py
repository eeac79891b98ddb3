from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from app.queue_backend import WorkItem

AUDIT_JOB = "audit"
OPTIMIZATION_JOB = "optimization"

STEP_AUDIT_SCRAPE = "audit.scrape"
STEP_AUDIT_ANALYZE = "audit.analyze"
STEP_AUDIT_KEYWORDS = "audit.keywords"
STEP_AUDIT_PROPOSAL = "audit.proposal"
STEP_OPTIMIZATION_RUN = "optimization.run"

# step finished its transition
SUCCEEDED = "succeeded"
# step failed and asked to run again after ``retry_after_ms``
RETRYING = "retrying"
# step moved the job to a terminal failure
FAILED = "failed"
# job was not in the status this step expects; nothing was written
SKIPPED = "skipped"


@dataclass
class StepOutcome:
    final_status: str
    job: dict[str, Any] | None = None
    next_items: list[WorkItem] = field(default_factory=list)
    retry_after_ms: int = 0
    detail: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "final_status": self.final_status,
            "job_id": (self.job or {}).get("job_id"),
            "job_status": (self.job or {}).get("status"),
            "next_steps": [item.step for item in self.next_items],
            "retry_after_ms": self.retry_after_ms,
            "detail": self.detail,
        }
