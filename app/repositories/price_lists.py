from __future__ import annotations

from typing import Any


class InMemoryPriceListsRepository:
    def __init__(self, price_lists: dict[str, dict[str, Any]]) -> None:
        self._price_lists = price_lists

    def upsert(self, *, price_list: dict[str, Any]) -> dict[str, Any]:
        item = dict(price_list)
        self._price_lists[str(item["price_list_id"])] = item
        return dict(item)

    def get(self, *, price_list_id: str) -> dict[str, Any] | None:
        row = self._price_lists.get(price_list_id)
        return dict(row) if row is not None else None

    def get_for_user(self, *, user_id: str, price_list_id: str) -> dict[str, Any] | None:
        row = self._price_lists.get(price_list_id)
        if row is None or row.get("user_id") != user_id:
            return None
        return dict(row)

    def list(self, *, user_id: str) -> list[dict[str, Any]]:
        rows = [dict(x) for x in self._price_lists.values() if x.get("user_id") == user_id]
        return sorted(rows, key=lambda row: str(row.get("created_at", "")), reverse=True)

    def update(self, *, price_list_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
        row = self._price_lists.get(price_list_id)
        if row is None:
            return None
        row.update(patch)
        return dict(row)
