from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from promptsmith.api.main import app
from promptsmith.observability.metrics import observe_stage, sanitize_path


client = TestClient(app)


def test_metrics_endpoint_exposes_histograms():
    r = client.get("/health")
    assert r.status_code == 200
    observe_stage("report", "completed", 1.5)

    m = client.get("/metrics")
    assert m.status_code == 200
    body = m.text

    assert "# HELP promptsmith_request_latency_seconds" in body
    assert "# TYPE promptsmith_request_latency_seconds histogram" in body
    assert "promptsmith_stage_duration_seconds_count" in body


def test_sanitize_path_collapses_ids():
    assert sanitize_path("") == "/"
    assert sanitize_path("/") == "/"
    assert sanitize_path("/health?x=1") == "/health"
    assert sanitize_path("/sessions") == "/sessions"
    assert sanitize_path("/sessions/abc123") == "/sessions/{id}"
    assert sanitize_path("/sessions/abc123/stages/report") == "/sessions/{id}/stages/report"
    assert sanitize_path("/sessions/abc/messages/t1/regenerate") == "/sessions/{id}/messages/regenerate"
    assert sanitize_path("/sessions/abc/messages") == "/sessions/{id}/messages"


def test_observe_stage_clamps_negative_durations():
    labels = {"stage": "advice", "outcome": "failed"}
    observe_stage("advice", "failed", 0.0)
    before = REGISTRY.get_sample_value("promptsmith_stage_duration_seconds_sum", labels)
    observe_stage("advice", "failed", -2.0)
    assert REGISTRY.get_sample_value("promptsmith_stage_duration_seconds_sum", labels) == before
