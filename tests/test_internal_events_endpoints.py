from fastapi.testclient import TestClient

from outbound_events.main import app
from outbound_events.routers import internal_events as internal_events_router


def _headers(secret: str = "sched-secret") -> dict:
    return {"X-Internal-Scheduler-Secret": secret}


def test_internal_endpoints_return_503_when_secret_not_configured(monkeypatch, fake_db):
    monkeypatch.setattr(internal_events_router.settings, "internal_scheduler_secret", None)
    client = TestClient(app)
    assert client.post("/api/internal/orphans/sweep", headers=_headers()).status_code == 503
    response = client.post(
        "/api/internal/correlation-keys",
        json={"enrollment_id": "enr-1", "provider": "lemlist", "provider_key": "em-1"},
        headers=_headers(),
    )
    assert response.status_code == 503


def test_internal_endpoints_reject_missing_or_invalid_secret(monkeypatch, fake_db):
    monkeypatch.setattr(internal_events_router.settings, "internal_scheduler_secret", "sched-secret")
    client = TestClient(app)
    assert client.post("/api/internal/orphans/sweep").status_code == 401
    assert client.post("/api/internal/orphans/sweep", headers=_headers("wrong")).status_code == 401


def test_record_correlation_key_statuses(monkeypatch, fake_db):
    monkeypatch.setattr(internal_events_router.settings, "internal_scheduler_secret", "sched-secret")
    client = TestClient(app)
    payload = {"enrollment_id": "enr-1", "provider": "postmark", "provider_key": "pm-1"}

    first = client.post("/api/internal/correlation-keys", json=payload, headers=_headers())
    second = client.post("/api/internal/correlation-keys", json=payload, headers=_headers())
    conflict = client.post(
        "/api/internal/correlation-keys",
        json={**payload, "enrollment_id": "enr-2"},
        headers=_headers(),
    )

    assert first.status_code == 201
    assert first.json()["status"] == "recorded"
    assert second.status_code == 201
    assert second.json()["status"] == "already_recorded"
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["type"] == "correlation_key_conflict"
    assert len(fake_db.rows("enrollment_correlation_keys")) == 1


def test_record_correlation_key_validates_provider(monkeypatch, fake_db):
    monkeypatch.setattr(internal_events_router.settings, "internal_scheduler_secret", "sched-secret")
    client = TestClient(app)
    response = client.post(
        "/api/internal/correlation-keys",
        json={"enrollment_id": "enr-1", "provider": "mailchimp", "provider_key": "x"},
        headers=_headers(),
    )
    assert response.status_code == 422


def test_sweep_endpoint_reports_summary_and_persists_snapshot(monkeypatch, fake_db):
    monkeypatch.setattr(internal_events_router.settings, "internal_scheduler_secret", "sched-secret")
    monkeypatch.setattr(internal_events_router.settings, "orphan_candidate_timeout_seconds", 2.0)
    client = TestClient(app)

    response = client.post("/api/internal/orphans/sweep", headers=_headers())

    assert response.status_code == 200
    assert response.json() == {
        "candidates": 0,
        "resolved": 0,
        "duplicates": 0,
        "retried": 0,
        "dead_lettered": 0,
        "failed": 0,
        "timed_out": 0,
        "skipped": 0,
    }
    snapshots = fake_db.rows("observability_metric_snapshots")
    assert snapshots[0]["source"] == "orphan_sweep"
