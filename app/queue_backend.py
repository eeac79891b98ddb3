from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from app.runtime_profile import real_providers_required

DEFAULT_QUEUE_NAME = "jobs"


@dataclass
class WorkItem:
    """One schedulable pipeline step for one job."""

    job_id: str
    job_kind: str
    step: str
    user_id: str
    delay_ms: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_kind": self.job_kind,
            "step": self.step,
            "user_id": self.user_id,
            **self.extra,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WorkItem":
        known = {"job_id", "job_kind", "step", "user_id", "not_before"}
        return cls(
            job_id=str(payload.get("job_id", "")),
            job_kind=str(payload.get("job_kind", "")),
            step=str(payload.get("step", "")),
            user_id=str(payload.get("user_id", "")),
            extra={key: value for key, value in payload.items() if key not in known},
        )


@dataclass
class QueueMessage:
    message_id: str
    user_id: str
    queue_name: str
    payload: dict[str, Any]
    attempt: int = 0
    available_at: str | None = None


def enqueue_work_item(queue: Any, item: WorkItem, *, queue_name: str = DEFAULT_QUEUE_NAME) -> QueueMessage:
    available_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(item.delay_ms)))
    payload = item.as_payload()
    payload["not_before"] = available_at.isoformat()
    return queue.enqueue(
        user_id=item.user_id,
        queue_name=queue_name,
        payload=payload,
        available_at=available_at,
    )


def _is_due(available_at: Any) -> bool:
    if not isinstance(available_at, str) or not available_at:
        return True
    try:
        dt = datetime.fromisoformat(available_at)
    except ValueError:
        return True
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt <= datetime.now(UTC)


class InMemoryQueueBackend:
    """Process-local queue for tests and single-process runs."""

    def __init__(self, *, namespace: str = "spa") -> None:
        self._namespace = namespace.strip() or "spa"
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def queue_key(self, *, user_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{user_id}:queue:{queue_name}"

    def enqueue(
        self,
        *,
        user_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            key = self.queue_key(user_id=user_id, queue_name=queue_name)
            msg = QueueMessage(
                message_id=f"msg_{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                queue_name=queue_name,
                payload=payload,
                attempt=int(payload.get("attempt", 0)),
                available_at=(
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else self._utcnow_iso()
                ),
            )
            self._queues.setdefault(key, deque()).append(msg)
            return msg

    def dequeue(self, *, user_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            key = self.queue_key(user_id=user_id, queue_name=queue_name)
            queue = self._queues.setdefault(key, deque())
            size = len(queue)
            scanned = 0
            while scanned < size:
                msg = queue.popleft()
                if _is_due(msg.available_at):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
                scanned += 1
            return None

    def ack(self, *, user_id: str, message_id: str) -> None:
        with self._lock:
            msg = self._inflight.get(message_id)
            if msg is None:
                return
            if msg.user_id != user_id:
                raise RuntimeError("user mismatch for queue message")
            self._inflight.pop(message_id, None)

    def nack(
        self,
        *,
        user_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            if msg.user_id != user_id:
                self._inflight[message_id] = msg
                raise RuntimeError("user mismatch for queue message")
            msg.attempt += 1
            if requeue:
                due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                msg.available_at = due_at.isoformat()
                key = self.queue_key(user_id=msg.user_id, queue_name=msg.queue_name)
                self._queues.setdefault(key, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, user_id: str, queue_name: str) -> int:
        with self._lock:
            key = self.queue_key(user_id=user_id, queue_name=queue_name)
            return len(self._queues.get(key, deque()))

    def pending_messages(self, *, user_id: str, queue_name: str) -> list[QueueMessage]:
        with self._lock:
            key = self.queue_key(user_id=user_id, queue_name=queue_name)
            return list(self._queues.get(key, deque()))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()

    def list_users(self, *, queue_name: str) -> list[str]:
        with self._lock:
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}"
            users: set[str] = set()
            for key, queue in self._queues.items():
                if not queue:
                    continue
                if not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                user_id = key[len(prefix) : -len(suffix)]
                if user_id:
                    users.add(user_id)
            return sorted(users)


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for SPA_QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisQueueBackend:
    """Redis-backed queue shared by API processes and workers."""

    def __init__(self, *, dsn: str, namespace: str = "spa", client: Any = None) -> None:
        if client is None and not dsn.strip():
            raise ValueError("REDIS_DSN must be provided for redis queue backend")
        self._namespace = namespace.strip() or "spa"
        self._lock = threading.RLock()
        if client is None:
            redis = _import_redis()
            client = redis.Redis.from_url(dsn.strip(), decode_responses=True)
        self._client = client

    def _registry_key(self) -> str:
        return f"{self._namespace}:queue:keys"

    def _pending_key(self, *, user_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{user_id}:queue:{queue_name}:pending"

    def _inflight_key(self, *, user_id: str, queue_name: str) -> str:
        return f"{self._namespace}:{user_id}:queue:{queue_name}:inflight"

    def _msg_key(self, *, message_id: str) -> str:
        return f"{self._namespace}:msg:{message_id}"

    def _track_keys(self, *keys: str) -> None:
        for key in keys:
            self._client.sadd(self._registry_key(), key)

    def _load_msg(self, *, message_id: str) -> dict[str, Any] | None:
        raw = self._client.get(self._msg_key(message_id=message_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _save_msg(self, *, message_id: str, data: dict[str, Any]) -> None:
        self._client.set(
            self._msg_key(message_id=message_id),
            json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":")),
        )

    @staticmethod
    def _to_message(message_id: str, data: dict[str, Any]) -> QueueMessage:
        return QueueMessage(
            message_id=message_id,
            user_id=str(data.get("user_id", "")),
            queue_name=str(data.get("queue_name", "")),
            payload=data.get("payload", {}),
            attempt=int(data.get("attempt", 0)),
            available_at=str(data.get("available_at", "")) or None,
        )

    def enqueue(
        self,
        *,
        user_id: str,
        queue_name: str,
        payload: dict[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            message_id = f"msg_{uuid.uuid4().hex[:12]}"
            data = {
                "user_id": user_id,
                "queue_name": queue_name,
                "payload": payload,
                "attempt": int(payload.get("attempt", 0)),
                "status": "pending",
                "available_at": (
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else datetime.now(UTC).isoformat()
                ),
            }
            pending_key = self._pending_key(user_id=user_id, queue_name=queue_name)
            self._save_msg(message_id=message_id, data=data)
            self._client.rpush(pending_key, message_id)
            self._track_keys(pending_key, self._msg_key(message_id=message_id))
            return self._to_message(message_id, data)

    def dequeue(self, *, user_id: str, queue_name: str) -> QueueMessage | None:
        with self._lock:
            pending_key = self._pending_key(user_id=user_id, queue_name=queue_name)
            inflight_key = self._inflight_key(user_id=user_id, queue_name=queue_name)
            pending_count = int(self._client.llen(pending_key))
            scanned = 0
            while scanned < pending_count:
                message_id = self._client.lpop(pending_key)
                if not isinstance(message_id, str) or not message_id:
                    return None
                scanned += 1
                data = self._load_msg(message_id=message_id)
                if data is None:
                    continue
                if not _is_due(data.get("available_at")):
                    self._client.rpush(pending_key, message_id)
                    continue
                data["status"] = "inflight"
                self._save_msg(message_id=message_id, data=data)
                self._client.sadd(inflight_key, message_id)
                self._track_keys(inflight_key)
                return self._to_message(message_id, data)
            return None

    def ack(self, *, user_id: str, message_id: str) -> None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "inflight":
                return
            if data.get("user_id") != user_id:
                raise RuntimeError("user mismatch for queue message")
            inflight_key = self._inflight_key(user_id=user_id, queue_name=str(data["queue_name"]))
            self._client.srem(inflight_key, message_id)
            self._client.delete(self._msg_key(message_id=message_id))

    def nack(
        self,
        *,
        user_id: str,
        message_id: str,
        requeue: bool = True,
        delay_ms: int = 0,
    ) -> QueueMessage | None:
        with self._lock:
            data = self._load_msg(message_id=message_id)
            if data is None or data.get("status") != "inflight":
                return None
            if data.get("user_id") != user_id:
                raise RuntimeError("user mismatch for queue message")
            queue_name = str(data["queue_name"])
            self._client.srem(self._inflight_key(user_id=user_id, queue_name=queue_name), message_id)
            data["attempt"] = int(data.get("attempt", 0)) + 1
            if requeue:
                due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                data["status"] = "pending"
                data["available_at"] = due_at.isoformat()
                self._save_msg(message_id=message_id, data=data)
                self._client.lpush(self._pending_key(user_id=user_id, queue_name=queue_name), message_id)
            else:
                self._client.delete(self._msg_key(message_id=message_id))
            return self._to_message(message_id, data)

    def pending_count(self, *, user_id: str, queue_name: str) -> int:
        with self._lock:
            return int(self._client.llen(self._pending_key(user_id=user_id, queue_name=queue_name)))

    def reset(self) -> None:
        with self._lock:
            registry = self._registry_key()
            keys = self._client.smembers(registry)
            if keys:
                self._client.delete(*list(keys))
            self._client.delete(registry)

    def list_users(self, *, queue_name: str) -> list[str]:
        with self._lock:
            keys = self._client.smembers(self._registry_key())
            prefix = f"{self._namespace}:"
            suffix = f":queue:{queue_name}:pending"
            users: set[str] = set()
            for key in keys:
                if not isinstance(key, str):
                    continue
                if not key.startswith(prefix) or not key.endswith(suffix):
                    continue
                if int(self._client.llen(key)) <= 0:
                    continue
                user_id = key[len(prefix) : -len(suffix)]
                if user_id:
                    users.add(user_id)
            return sorted(users)


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | RedisQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("SPA_QUEUE_BACKEND", "memory").strip().lower()
    namespace = env.get("SPA_QUEUE_KEY_PREFIX", "spa")
    if backend == "memory":
        if real_providers_required(env):
            raise RuntimeError("SPA_QUEUE_BACKEND must be redis when SPA_REQUIRE_REAL_PROVIDERS=true")
        return InMemoryQueueBackend(namespace=namespace)
    if backend == "redis":
        dsn = env.get("REDIS_DSN", "").strip()
        if not dsn:
            raise ValueError("REDIS_DSN must be set when SPA_QUEUE_BACKEND=redis")
        return RedisQueueBackend(dsn=dsn, namespace=namespace)
    raise RuntimeError(f"unsupported queue backend: {backend}")
