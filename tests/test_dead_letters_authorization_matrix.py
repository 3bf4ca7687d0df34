from fastapi.testclient import TestClient

from outbound_events.auth.jwt import create_super_admin_token
from outbound_events.main import app
from outbound_events.observability import metrics_snapshot


def test_dead_letter_list_requires_super_admin_token(fake_db):
    client = TestClient(app)
    assert client.get("/api/webhooks/dead-letters").status_code == 401


def test_dead_letter_replay_requires_super_admin_token(fake_db):
    client = TestClient(app)
    response = client.post("/api/webhooks/dead-letters/replay", json={"ids": ["o-1"]})
    assert response.status_code == 401


def test_dead_letter_discard_requires_super_admin_token(fake_db):
    client = TestClient(app)
    response = client.post("/api/webhooks/dead-letters/discard", json={"ids": ["o-1"]})
    assert response.status_code == 401


def test_webhook_stats_requires_super_admin_token(fake_db):
    client = TestClient(app)
    assert client.get("/api/webhooks/stats").status_code == 401


def test_campaign_metrics_requires_super_admin_token(fake_db):
    client = TestClient(app)
    assert client.get("/api/campaign-instances/inst-1/metrics").status_code == 401


def test_malformed_bearer_header_is_rejected(fake_db):
    client = TestClient(app)
    response = client.get("/api/webhooks/dead-letters", headers={"Authorization": "Token abc"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Missing authorization header"


def test_token_for_unknown_super_admin_is_rejected(fake_db):
    client = TestClient(app)
    token = create_super_admin_token("sa-404")
    response = client.get("/api/webhooks/dead-letters", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Super-admin not found"


def test_valid_super_admin_token_is_accepted(fake_db):
    fake_db.rows("super_admins").append({"id": "sa-1", "email": "ops@example.com"})
    client = TestClient(app)
    token = create_super_admin_token("sa-1")
    response = client.get("/api/webhooks/dead-letters", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json() == []


def test_rejections_are_counted_by_reason(fake_db):
    client = TestClient(app)
    client.get("/api/webhooks/stats")
    client.get("/api/webhooks/stats", headers={"Authorization": "Bearer not-a-jwt"})

    counters = metrics_snapshot()
    assert counters["operator.auth.rejected|reason=missing_token"] == 1
    assert counters["operator.auth.rejected|reason=invalid_token"] == 1
