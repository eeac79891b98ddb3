from __future__ import annotations

from app.main import _create_queue_backend_for_runtime
from app.queue_backend import InMemoryQueueBackend


def test_runtime_queue_backend_falls_back_to_memory_when_real_providers_not_required(monkeypatch):
    def _raise_runtime(_environ=None):
        raise RuntimeError("queue init failed")

    monkeypatch.setattr("app.main.create_queue_from_env", _raise_runtime)
    backend = _create_queue_backend_for_runtime({"SPA_REQUIRE_REAL_PROVIDERS": "false"})
    assert isinstance(backend, InMemoryQueueBackend)


def test_runtime_queue_backend_does_not_fallback_when_real_providers_required(monkeypatch):
    def _raise_runtime(_environ=None):
        raise RuntimeError("queue init failed")

    monkeypatch.setattr("app.main.create_queue_from_env", _raise_runtime)
    try:
        _create_queue_backend_for_runtime({"SPA_REQUIRE_REAL_PROVIDERS": "true"})
    except RuntimeError as exc:
        assert "queue init failed" in str(exc)
    else:
        raise AssertionError("expected RuntimeError when real providers are required")
