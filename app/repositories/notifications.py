from __future__ import annotations

from typing import Any


class InMemoryNotificationsRepository:
    def __init__(self, notifications: dict[str, dict[str, Any]]) -> None:
        self._notifications = notifications

    def create(self, *, notification: dict[str, Any]) -> dict[str, Any]:
        item = dict(notification)
        self._notifications[str(item["notification_id"])] = item
        return dict(item)

    def list(self, *, user_id: str, unread_only: bool = False) -> list[dict[str, Any]]:
        rows = [
            dict(x)
            for x in self._notifications.values()
            if x.get("user_id") == user_id and (not unread_only or not x.get("read"))
        ]
        return sorted(rows, key=lambda row: str(row.get("created_at", "")), reverse=True)

    def mark_read(self, *, user_id: str, notification_id: str) -> dict[str, Any] | None:
        row = self._notifications.get(notification_id)
        if row is None or row.get("user_id") != user_id:
            return None
        row["read"] = True
        return dict(row)
