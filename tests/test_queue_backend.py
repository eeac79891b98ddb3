from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.queue_backend import (
    InMemoryQueueBackend,
    RedisQueueBackend,
    WorkItem,
    create_queue_from_env,
    enqueue_work_item,
)


def test_queue_backend_keeps_users_apart():
    q = InMemoryQueueBackend()
    q.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "job_a"})
    q.enqueue(user_id="user_b", queue_name="jobs", payload={"job_id": "job_b"})

    msg_a = q.dequeue(user_id="user_a", queue_name="jobs")
    assert msg_a is not None
    assert msg_a.payload["job_id"] == "job_a"

    msg_b = q.dequeue(user_id="user_b", queue_name="jobs")
    assert msg_b is not None
    assert msg_b.payload["job_id"] == "job_b"


def test_queue_nack_requeues_with_attempt_increment():
    q = InMemoryQueueBackend()
    enqueued = q.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "job_1"})
    msg = q.dequeue(user_id="user_a", queue_name="jobs")
    assert msg is not None
    assert msg.message_id == enqueued.message_id

    nack = q.nack(user_id="user_a", message_id=msg.message_id, requeue=True)
    assert nack is not None
    assert nack.attempt == 1
    assert q.pending_count(user_id="user_a", queue_name="jobs") == 1

    replay = q.dequeue(user_id="user_a", queue_name="jobs")
    assert replay is not None
    assert replay.message_id == msg.message_id
    assert replay.attempt == 1


def test_queue_factory_defaults_to_memory(monkeypatch):
    monkeypatch.delenv("SPA_QUEUE_BACKEND", raising=False)
    q = create_queue_from_env()
    assert isinstance(q, InMemoryQueueBackend)


def test_queue_factory_rejects_unsupported_backend(monkeypatch):
    monkeypatch.setenv("SPA_QUEUE_BACKEND", "rabbitmq")
    try:
        create_queue_from_env()
    except RuntimeError as exc:
        assert "unsupported queue backend" in str(exc)
    else:
        raise AssertionError("expected RuntimeError for unsupported queue backend")


def test_queue_factory_supports_redis_backend_with_fake_driver(monkeypatch):
    class FakeRedisClient:
        def __init__(self) -> None:
            self.kv: dict[str, str] = {}
            self.lists: dict[str, list[str]] = {}
            self.sets: dict[str, set[str]] = {}

        @classmethod
        def from_url(cls, _dsn: str, decode_responses: bool = True):
            assert decode_responses is True
            return cls()

        def set(self, key: str, value: str) -> None:
            self.kv[key] = value

        def get(self, key: str):
            return self.kv.get(key)

        def rpush(self, key: str, value: str) -> None:
            self.lists.setdefault(key, []).append(value)

        def lpush(self, key: str, value: str) -> None:
            self.lists.setdefault(key, []).insert(0, value)

        def lpop(self, key: str):
            items = self.lists.get(key, [])
            if not items:
                return None
            return items.pop(0)

        def llen(self, key: str) -> int:
            return len(self.lists.get(key, []))

        def sadd(self, key: str, value: str) -> None:
            self.sets.setdefault(key, set()).add(value)

        def srem(self, key: str, value: str) -> None:
            self.sets.setdefault(key, set()).discard(value)

        def smembers(self, key: str):
            return set(self.sets.get(key, set()))

        def delete(self, *keys: str) -> None:
            for key in keys:
                self.kv.pop(key, None)
                self.lists.pop(key, None)
                self.sets.pop(key, None)

    class FakeRedisModule:
        class Redis:
            @staticmethod
            def from_url(dsn: str, decode_responses: bool = True):
                return FakeRedisClient.from_url(dsn, decode_responses=decode_responses)

    monkeypatch.setenv("SPA_QUEUE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_DSN", "redis://localhost:6379/0")
    monkeypatch.setattr("app.queue_backend._import_redis", lambda: FakeRedisModule)

    queue = create_queue_from_env()
    assert isinstance(queue, RedisQueueBackend)

    sent = queue.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "job_redis_1"})
    got = queue.dequeue(user_id="user_a", queue_name="jobs")
    assert got is not None
    assert got.message_id == sent.message_id

    nacked = queue.nack(user_id="user_a", message_id=got.message_id, requeue=True)
    assert nacked is not None
    assert nacked.attempt == 1
    replay = queue.dequeue(user_id="user_a", queue_name="jobs")
    assert replay is not None
    assert replay.attempt == 1
    queue.ack(user_id="user_a", message_id=replay.message_id)
    assert queue.pending_count(user_id="user_a", queue_name="jobs") == 0


def test_queue_factory_requires_redis_dsn(monkeypatch):
    monkeypatch.setenv("SPA_QUEUE_BACKEND", "redis")
    monkeypatch.delenv("REDIS_DSN", raising=False)
    try:
        create_queue_from_env()
    except ValueError as exc:
        assert "REDIS_DSN" in str(exc)
    else:
        raise AssertionError("expected ValueError when REDIS_DSN is missing")


def test_queue_factory_redis_reports_missing_driver(monkeypatch):
    monkeypatch.setenv("SPA_QUEUE_BACKEND", "redis")
    monkeypatch.setenv("REDIS_DSN", "redis://localhost:6379/0")

    def _raise_missing():
        raise ImportError("No module named redis")

    monkeypatch.setattr("app.queue_backend._import_redis", _raise_missing)
    try:
        create_queue_from_env()
    except (RuntimeError, ImportError) as exc:
        assert "redis" in str(exc)
    else:
        raise AssertionError("expected error when redis driver is missing")


def test_queue_ack_and_nack_require_same_user():
    q = InMemoryQueueBackend()
    sent = q.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "job_owner"})
    got = q.dequeue(user_id="user_a", queue_name="jobs")
    assert got is not None

    try:
        q.ack(user_id="user_b", message_id=sent.message_id)
    except RuntimeError as exc:
        assert "user mismatch" in str(exc)
    else:
        raise AssertionError("expected RuntimeError for cross-user ack")

    try:
        q.nack(user_id="user_b", message_id=sent.message_id, requeue=True)
    except RuntimeError as exc:
        assert "user mismatch" in str(exc)
    else:
        raise AssertionError("expected RuntimeError for cross-user nack")


def test_delayed_message_is_not_dequeued_before_due():
    q = InMemoryQueueBackend()
    q.enqueue(
        user_id="user_a",
        queue_name="jobs",
        payload={"job_id": "later"},
        available_at=datetime.now(UTC) + timedelta(minutes=5),
    )
    q.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "now"})

    got = q.dequeue(user_id="user_a", queue_name="jobs")
    assert got is not None
    assert got.payload["job_id"] == "now"
    assert q.dequeue(user_id="user_a", queue_name="jobs") is None
    assert q.pending_count(user_id="user_a", queue_name="jobs") == 1


def test_nack_with_delay_hides_message():
    q = InMemoryQueueBackend()
    q.enqueue(user_id="user_a", queue_name="jobs", payload={"job_id": "job_1"})
    msg = q.dequeue(user_id="user_a", queue_name="jobs")
    q.nack(user_id="user_a", message_id=msg.message_id, requeue=True, delay_ms=30_000)
    assert q.dequeue(user_id="user_a", queue_name="jobs") is None
    assert q.list_users(queue_name="jobs") == ["user_a"]


def test_work_item_round_trips_through_payload():
    q = InMemoryQueueBackend()
    item = WorkItem(job_id="aud_1", job_kind="audit", step="audit.scrape", user_id="user_a", extra={"source": "ops"})
    sent = enqueue_work_item(q, item)
    assert sent.payload["not_before"]
    restored = WorkItem.from_payload(sent.payload)
    assert (restored.job_id, restored.step, restored.user_id) == ("aud_1", "audit.scrape", "user_a")
    assert restored.extra == {"source": "ops"}


def test_memory_queue_refused_when_real_providers_required():
    try:
        create_queue_from_env({"SPA_QUEUE_BACKEND": "memory", "SPA_REQUIRE_REAL_PROVIDERS": "true"})
    except RuntimeError as exc:
        assert "redis" in str(exc)
    else:
        raise AssertionError("expected RuntimeError for memory queue in strict mode")
