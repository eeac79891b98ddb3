from __future__ import annotations

from typing import Any


class InMemoryUsersRepository:
    def __init__(self, users: dict[str, dict[str, Any]]) -> None:
        self._users = users

    def upsert(self, *, user: dict[str, Any]) -> dict[str, Any]:
        item = dict(user)
        self._users[str(item["user_id"])] = item
        return dict(item)

    def get(self, *, user_id: str) -> dict[str, Any] | None:
        row = self._users.get(user_id)
        return dict(row) if row is not None else None

    def debit_credit(self, *, user_id: str) -> bool:
        # Caller holds the store lock; check and decrement are one step.
        row = self._users.get(user_id)
        if row is None or int(row.get("credits", 0)) <= 0:
            return False
        row["credits"] = int(row["credits"]) - 1
        return True

    def add_credits(self, *, user_id: str, amount: int) -> dict[str, Any] | None:
        row = self._users.get(user_id)
        if row is None:
            return None
        row["credits"] = int(row.get("credits", 0)) + int(amount)
        return dict(row)
