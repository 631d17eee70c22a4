import pytest
from fastapi.testclient import TestClient

from ddex_delivery.core.database import get_db
from ddex_delivery.core.rate_limit import limiter
from ddex_delivery.main import app
from ddex_delivery.routers import admin_worker
from ddex_delivery.routers.deps import get_release_store

from conftest import FakeReleaseStore, sample_release

HEADERS = {"X-API-Key": "test-token"}

FTP_TARGET = {
    "name": "label-ftp",
    "protocol": "FTP",
    "type": "Aggregator",
    "connection": {"host": "ftp.example.com", "username": "ddex", "password": "s3cret"},
}


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.setattr("ddex_delivery.core.config.settings.API_TOKEN", "test-token")

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_release_store] = lambda: FakeReleaseStore({"rel-1": sample_release()})
    limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_target(client, **overrides):
    resp = client.post("/api/targets", json={**FTP_TARGET, **overrides}, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def trigger_body(target_id, **overrides):
    return {
        "release_id": "rel-1",
        "target_id": target_id,
        "ern_message_id": "ERN_0001",
        "ern_xml": "<ern:NewReleaseMessage/>",
        **overrides,
    }


def test_requests_without_api_key_are_rejected(client):
    assert client.get("/api/deliveries").status_code == 401
    assert client.get("/api/deliveries", headers={"X-API-Key": "wrong"}).status_code == 401


def test_target_connection_is_masked(client):
    target_id = create_target(client)
    detail = client.get(f"/api/targets/{target_id}", headers=HEADERS).json()
    assert detail["connection"]["password"] == "********"
    assert detail["connection"]["host"] == "ftp.example.com"

    listing = client.get("/api/targets", headers=HEADERS).json()
    assert "connection" not in listing[0]

    dup = client.post("/api/targets", json=FTP_TARGET, headers=HEADERS)
    assert dup.status_code == 400


def test_trigger_status_codes(client):
    target_id = create_target(client)

    accepted = client.post("/api/deliveries", json=trigger_body(target_id), headers=HEADERS)
    assert accepted.status_code == 202
    body = accepted.json()
    assert body["code"] == "accepted"
    assert body["idempotency_key"] == f"IDMP_rel-1_{target_id}_NewReleaseMessage_Initial_ERN_0001"

    duplicate = client.post("/api/deliveries", json=trigger_body(target_id), headers=HEADERS)
    assert duplicate.status_code == 200
    assert duplicate.json()["job_id"] == body["job_id"]

    rejected = client.post("/api/deliveries", json=trigger_body(999), headers=HEADERS)
    assert rejected.status_code == 422
    assert rejected.json()["code"] == "rejected"

    invalid = client.post("/api/deliveries", json={"release_id": "rel-1"}, headers=HEADERS)
    assert invalid.status_code == 422


def test_trigger_rejects_unknown_release(client):
    target_id = create_target(client)
    resp = client.post("/api/deliveries", json=trigger_body(target_id, release_id="missing"), headers=HEADERS)
    assert resp.status_code == 422
    assert resp.json()["code"] == "rejected"
    assert resp.json()["message"] == "Release not found: missing"
    assert client.get("/api/deliveries", headers=HEADERS).json()["total"] == 0


def test_delivery_detail_logs_and_cancel(client):
    target_id = create_target(client)
    job_id = client.post("/api/deliveries", json=trigger_body(target_id), headers=HEADERS).json()["job_id"]

    detail = client.get(f"/api/deliveries/{job_id}", headers=HEADERS).json()
    assert detail["status"] == "queued"
    assert detail["target_name"] == "label-ftp"
    assert detail["attempts"] == []

    logs = client.get(f"/api/deliveries/{job_id}/logs", headers=HEADERS).json()
    assert [log["step"] for log in logs] == ["queued"]

    assert client.get(f"/api/deliveries/{job_id}/receipt", headers=HEADERS).status_code == 404

    cancelled = client.post(f"/api/deliveries/{job_id}/cancel", headers=HEADERS)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/api/deliveries/{job_id}/cancel", headers=HEADERS).status_code == 409
    assert client.post("/api/deliveries/9999/cancel", headers=HEADERS).status_code == 404

    listing = client.get("/api/deliveries", params={"status": "cancelled"}, headers=HEADERS).json()
    assert listing["total"] == 1


def test_target_with_jobs_cannot_be_deleted(client):
    target_id = create_target(client)
    client.post("/api/deliveries", json=trigger_body(target_id), headers=HEADERS)
    assert client.delete(f"/api/targets/{target_id}", headers=HEADERS).status_code == 409

    unused = create_target(client, name="unused")
    assert client.delete(f"/api/targets/{unused}", headers=HEADERS).status_code == 200


def test_analytics(client):
    target_id = create_target(client)
    first = client.post("/api/deliveries", json=trigger_body(target_id), headers=HEADERS).json()["job_id"]
    client.post("/api/deliveries", json=trigger_body(target_id, ern_message_id="ERN_0002"), headers=HEADERS)
    client.post(f"/api/deliveries/{first}/cancel", headers=HEADERS)

    stats = client.get("/api/analytics/deliveries", headers=HEADERS).json()
    assert stats["total"] == 2
    assert stats["by_status"]["queued"] == 1
    assert stats["by_status"]["cancelled"] == 1
    assert stats["by_protocol"] == {"FTP": 2}
    assert stats["by_target"][str(target_id)]["total"] == 2
    assert stats["success_rate"] == 0


def test_emergency_stop_toggle(client, monkeypatch):
    state = {"active": False}
    monkeypatch.setattr(admin_worker, "set_emergency_stop", lambda active: state.update(active=active))
    monkeypatch.setattr(admin_worker, "check_emergency_stop", lambda: state["active"])

    resp = client.post("/api/admin/worker/emergency-stop", json={"active": True}, headers=HEADERS)
    assert resp.json() == {"active": True}
    assert client.get("/api/admin/worker/emergency-stop", headers=HEADERS).json() == {"active": True}


def test_health_reports_dependencies(client, monkeypatch):
    from ddex_delivery.routers import health

    async def redis_down():
        return False

    monkeypatch.setattr(health, "check_db_connection", lambda: True)
    monkeypatch.setattr(health, "check_redis_connection", redis_down)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"

    monkeypatch.setattr(health, "check_db_connection", lambda: False)
    assert client.get("/api/health").status_code == 503
