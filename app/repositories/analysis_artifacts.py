from __future__ import annotations

from typing import Any


class InMemoryAnalysisArtifactsRepository:
    """Write-once artifacts (keyword reports, category proposals) keyed by audit."""

    def __init__(self, artifacts: dict[str, dict[str, Any]], *, id_field: str) -> None:
        self._artifacts = artifacts
        self._id_field = id_field

    def create(self, *, artifact: dict[str, Any]) -> dict[str, Any]:
        item = dict(artifact)
        artifact_id = str(item[self._id_field])
        if artifact_id in self._artifacts:
            return dict(self._artifacts[artifact_id])
        self._artifacts[artifact_id] = item
        return dict(item)

    def get(self, *, artifact_id: str) -> dict[str, Any] | None:
        row = self._artifacts.get(artifact_id)
        return dict(row) if row is not None else None

    def get_for_audit(self, *, audit_id: str) -> dict[str, Any] | None:
        for row in self._artifacts.values():
            if row.get("audit_id") == audit_id:
                return dict(row)
        return None
