"""API tests against the workflow service wired to SQLite and fake collaborators."""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from study_workflow.entrypoints import workflow_api

ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}
INGEST_HEADERS = {"X-Actor-Id": "pacs-ingestion", "X-Actor-Role": "system"}
LAB_A_HEADERS = {"X-Actor-Id": "lab-a", "X-Actor-Role": "lab_staff", "X-Actor-Location": "loc-a"}


def doctor_headers(doctor_id):
    # legacy session tokens still carry 'doctor_account'
    return {"X-Actor-Id": doctor_id, "X-Actor-Role": "doctor_account"}


@pytest.fixture
def client(service, doctors):
    workflow_api.app.dependency_overrides[workflow_api.get_service] = lambda: service
    yield TestClient(workflow_api.app)
    workflow_api.app.dependency_overrides.clear()


def post_study(client, study_id, **extra):
    body = {"study_id": study_id, "location_id": "loc-a", "modality": "CT", **extra}
    return client.post("/api/v1/studies", json=body, headers=INGEST_HEADERS)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_ingest_is_idempotent(client):
    first = post_study(client, "S1", uploaded_at="2024-03-01T08:00:00Z", priority="urgent")
    second = post_study(client, "S1")

    assert first.json() == {"study_id": "S1", "created": True}
    assert second.json() == {"study_id": "S1", "created": False}
    study = client.get("/api/v1/studies/S1", headers=ADMIN_HEADERS).json()
    assert study["priority"] == "URGENT"
    assert study["uploaded_at"].startswith("2024-03-01T08:00:00")


def test_report_lifecycle(client):
    post_study(client, "S1")

    assigned = client.post("/api/v1/studies/S1/assignment", json={"doctor_id": "doc-1"}, headers=ADMIN_HEADERS)
    started = client.post(
        "/api/v1/studies/S1/report/start", json={"doctor_id": "doc-1"}, headers=doctor_headers("doc-1")
    )
    finalized = client.post(
        "/api/v1/studies/S1/report/finalize", json={"doctor_id": "doc-1"}, headers=doctor_headers("doc-1")
    )
    available = client.put(
        "/api/v1/studies/S1/report/availability", json={"available": True}, headers=INGEST_HEADERS
    )
    downloaded = client.post("/api/v1/studies/S1/report/download", json={"final": True}, headers=LAB_A_HEADERS)

    assert assigned.json()["doctor_id"] == "doc-1"
    assert assigned.json()["status"] == "assigned_to_doctor"
    assert started.json()["status"] == "report_in_progress"
    assert finalized.json()["status"] == "report_finalized"
    assert available.json()["report_available"] is True
    assert downloaded.json()["status"] == "final_report_downloaded"


@pytest.mark.parametrize("path,body,headers,status,error", [
    ("/api/v1/studies/S404/assignment", {"doctor_id": "doc-1"}, ADMIN_HEADERS, 404, "NotFound"),
    ("/api/v1/studies/S1/assignment", {"doctor_id": "doc-1"}, LAB_A_HEADERS, 403, "Unauthorized"),
    ("/api/v1/studies/S1/report/download", {}, LAB_A_HEADERS, 409, "InvalidTransition"),
    ("/api/v1/studies/S1/assignment", {"doctor_id": "doc-1", "priority_override": "soon"},
     ADMIN_HEADERS, 422, "ValidationError"),
])
def test_errors_map_to_http_status(client, path, body, headers, status, error):
    post_study(client, "S1")

    response = client.post(path, json=body, headers=headers)

    assert response.status_code == status
    assert response.json()["error"] == error


def test_unknown_role_is_rejected(client):
    response = client.get("/api/v1/dashboard/counts", headers={"X-Actor-Id": "x", "X-Actor-Role": "janitor"})

    assert response.status_code == 422


def test_bulk_assign_reports_each_study(client):
    post_study(client, "S1")
    post_study(client, "S2")

    response = client.post(
        "/api/v1/bulk/assign",
        json={"study_ids": ["S1", "S2", "S3"], "doctor_id": "doc-2"},
        headers=ADMIN_HEADERS,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["succeeded"] == 2
    assert body["results"][2] == {
        "study_id": "S3",
        "success": False,
        "error": "NotFound",
        "detail": "Study S3 not found",
        "payload": None,
    }
    assert body["results"][0]["payload"]["doctor_id"] == "doc-2"


def test_bulk_mark_unauthorized(client):
    post_study(client, "S1")

    response = client.post(
        "/api/v1/bulk/mark_unauthorized",
        json={"study_ids": ["S1"], "reason": "no referral"},
        headers=ADMIN_HEADERS,
    )

    assert response.json()["results"][0]["payload"] == "archived"


def test_bulk_without_ids_is_rejected(client):
    response = client.post("/api/v1/bulk/dispatch_report", json={"study_ids": []}, headers=ADMIN_HEADERS)

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


def test_dashboard_and_tat_report(client):
    post_study(client, "S1")
    post_study(client, "S2", location_id="loc-b")

    counts = client.get("/api/v1/dashboard/counts", headers=LAB_A_HEADERS).json()
    report = client.get("/api/v1/reports/tat", params={"status": "NEW"}, headers=ADMIN_HEADERS).json()

    assert counts["total"] == 1
    assert counts["pending"] == 1
    assert report["total"] == 2
    assert report["rows"][0]["upload_to_report"] == "-"


def test_doctor_workload(client):
    post_study(client, "S1")
    client.post("/api/v1/studies/S1/assignment", json={"doctor_id": "doc-1"}, headers=ADMIN_HEADERS)

    response = client.get("/api/v1/doctors/doc-1/workload", headers=doctor_headers("doc-1"))

    assert response.json()["active_assignments"] == 1


def test_session_unseen_counter(client):
    session = client.post("/api/v1/sessions", json={"session_id": "lab-tab"}, headers=LAB_A_HEADERS).json()
    post_study(client, "S1")
    post_study(client, "S2", location_id="loc-b")

    unseen = client.get("/api/v1/sessions/lab-tab/unseen", headers=LAB_A_HEADERS).json()
    acked = client.post("/api/v1/sessions/lab-tab/ack", headers=LAB_A_HEADERS).json()

    assert session["scope"] == "lab:loc-a"
    assert unseen["unseen"] == 1
    assert acked["unseen"] == 0
    assert client.get("/api/v1/sessions/nobody/unseen", headers=ADMIN_HEADERS).status_code == 404


def test_sessions_belong_to_their_user(client):
    client.post("/api/v1/sessions", json={"session_id": "doc-tab"}, headers=doctor_headers("doc-1"))

    other = client.post("/api/v1/sessions/doc-tab/disconnect", headers=doctor_headers("doc-2"))
    removed = client.delete("/api/v1/sessions/doc-tab", headers=LAB_A_HEADERS)
    by_admin = client.post("/api/v1/sessions/doc-tab/ack", headers=ADMIN_HEADERS)
    by_owner = client.post("/api/v1/sessions/doc-tab/disconnect", headers=doctor_headers("doc-1"))

    assert other.status_code == 403
    assert other.json()["error"] == "Unauthorized"
    assert removed.status_code == 403
    assert by_admin.status_code == 200
    assert by_owner.json()["connected"] is False


def test_tat_analytics(client):
    now = datetime.now(timezone.utc)
    post_study(client, "S1", uploaded_at=(now - timedelta(days=2)).isoformat(), priority="stat")
    post_study(client, "S2", uploaded_at=(now - timedelta(days=40)).isoformat())
    post_study(client, "S3", uploaded_at=(now - timedelta(days=1)).isoformat(), location_id="loc-b")

    lab = client.get("/api/v1/reports/tat/analytics", params={"period": "7d"}, headers=LAB_A_HEADERS).json()
    admin = client.get("/api/v1/reports/tat/analytics", params={"period": "90d"}, headers=ADMIN_HEADERS).json()
    bad = client.get("/api/v1/reports/tat/analytics", params={"period": "1y"}, headers=ADMIN_HEADERS)

    assert lab["location_id"] == "loc-a"
    assert lab["total_studies"] == 1
    assert lab["urgent_studies"] == 1
    assert admin["total_studies"] == 3
    assert bad.status_code == 422
