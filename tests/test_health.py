"""Health endpoint and the error envelope."""
from fastapi.testclient import TestClient


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "flowbot"}


def test_trace_id_is_echoed(client: TestClient):
    r = client.get("/health", headers={"X-Trace-Id": "abc123"})
    assert r.headers["X-Trace-Id"] == "abc123"


def test_unknown_route_returns_json_envelope(client: TestClient):
    r = client.get("/v1/nope")
    assert r.status_code == 404
    body = r.json()
    assert body["code"] == "http_error"
    assert body["trace_id"] == r.headers["X-Trace-Id"]
