from __future__ import annotations

from typing import Any


class InMemoryPromptTemplatesRepository:
    def __init__(self, templates: dict[str, dict[str, Any]]) -> None:
        self._templates = templates

    def upsert(self, *, template: dict[str, Any]) -> dict[str, Any]:
        item = dict(template)
        self._templates[str(item["stage"])] = item
        return dict(item)

    def get(self, *, stage: str) -> dict[str, Any] | None:
        row = self._templates.get(stage)
        if row is None or not row.get("is_active", True):
            return None
        return dict(row)

    def list(self) -> list[dict[str, Any]]:
        return [dict(x) for x in sorted(self._templates.values(), key=lambda row: str(row.get("stage")))]
