def test_success_response_contains_trace_id_and_success_envelope(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_from_caller"})
    assert resp.status_code == 200
    assert resp.headers.get("x-trace-id") == "trace_from_caller"
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace_from_caller"


def test_error_response_contains_standard_error_object(client):
    resp = client.get("/route-not-exists")
    assert resp.status_code == 404
    assert resp.headers.get("x-trace-id")
    assert resp.headers.get("x-request-id")

    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_NOT_FOUND"
    assert set(body["error"].keys()) >= {"code", "message", "retryable", "class"}
    assert body["meta"]["trace_id"]


def test_validation_error_uses_envelope(client):
    resp = client.post("/api/v1/audits", json={"url": "missing field"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert body["error"]["class"] == "validation"
    assert resp.headers.get("x-trace-id")


def test_auth_rejection_carries_trace_headers(client):
    resp = client.get("/api/v1/audits", headers={"Authorization": "Bearer not.a.token"})
    assert resp.status_code == 401
    assert resp.headers.get("x-trace-id")
    assert resp.json()["error"]["retryable"] is False
