"""
API endpoint tests
"""

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_runner
from api.main import app
from core.config import settings

ORG = "T1"


def _client_for(runner):
    app.dependency_overrides[get_runner] = lambda: runner
    return TestClient(app)


@pytest.fixture
def client(monkeypatch, make_runner):
    """Test client over an in-memory store"""
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    with _client_for(make_runner()) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def approval_client(monkeypatch, make_runner):
    """Test client whose runs stop for approval"""
    monkeypatch.setattr(settings, "SCHEDULER_ENABLED", False)
    with _client_for(make_runner(require_approval=True)) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _upload(client, content, filename="desvio.csv", **params):
    query = {"organization_id": ORG, "filename": filename, **params}
    return client.post("/files", params=query, content=content, headers={"content-type": "text/csv"})


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["dlq"] == "/dlq"


def test_health_endpoint(client):
    """Test health endpoint returns storage and queue status"""
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["scheduler_running"] is False
    assert data["dlq_size"] == 0
    assert "X-Request-ID" in response.headers


class TestFiles:
    """Upload and file status endpoints"""

    def test_upload_and_process(self, client, make_desvio_csv):
        response = _upload(client, make_desvio_csv(), process="true", uploaded_by="ana")

        assert response.status_code == 200
        data = response.json()
        assert data["created"] is True
        assert data["duplicate"]["is_duplicate"] is False
        assert data["processing"]["success"] is True
        assert data["processing"]["result"]["records_inserted"] == 3
        assert data["run"]["current_state"] == "loaded"

        status = client.get(f"/files/{data['file']['id']}").json()
        assert status["file"]["current_state"] == "loaded"
        assert len(status["runs"]) == 1
        assert status["latest_run"]["id"] == data["run"]["id"]

    def test_duplicate_upload_is_blocked(self, client, make_desvio_csv):
        first = _upload(client, make_desvio_csv()).json()
        second = _upload(client, make_desvio_csv(), filename="copy.csv").json()

        assert second["created"] is False
        assert second["file"] is None
        assert second["duplicate"]["is_duplicate"] is True
        assert second["duplicate"]["original_file_id"] == first["file"]["id"]

    def test_forced_duplicate(self, client, make_desvio_csv):
        first = _upload(client, make_desvio_csv()).json()
        forced = _upload(
            client, make_desvio_csv(), duplicate_policy="force", reason="reload", uploaded_by="ops"
        ).json()

        assert forced["created"] is True
        assert forced["reprocessing_log_id"] is not None

        checksum = first["file"]["checksum"]
        history = client.get(f"/files/checksums/{checksum}", params={"organization_id": ORG}).json()
        assert len(history["files"]) == 2
        assert [entry["reason"] for entry in history["reprocessing_log"]] == ["reload"]

    def test_empty_body(self, client):
        assert _upload(client, b"").status_code == 400

    def test_invalid_fact_type(self, client, make_desvio_csv):
        assert _upload(client, make_desvio_csv(), fact_type="silagem").status_code == 422

    def test_unknown_file(self, client):
        response = client.get("/files/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["error_type"] == "EntityNotFoundError"


class TestRuns:
    """Run lifecycle endpoints"""

    def test_approve_then_process(self, approval_client, make_desvio_csv):
        upload = _upload(approval_client, make_desvio_csv(), process="true").json()
        run_id = upload["run"]["id"]
        assert upload["processing"]["result"]["status"] == "awaiting_approval"

        approved = approval_client.post(f"/runs/{run_id}/approve", json={"approved_by": "supervisor"})
        assert approved.status_code == 200
        assert approved.json()["transition"]["new_state"] == "approved"
        assert approved.json()["run"]["approved_by"] == "supervisor"

        processed = approval_client.post(f"/runs/{run_id}/process").json()
        assert processed["success"] is True
        assert processed["run"]["current_state"] == "loaded"

        # LOADED is terminal
        again = approval_client.post(f"/runs/{run_id}/approve", json={"approved_by": "supervisor"})
        assert again.status_code == 409

    def test_cancel_awaiting_run(self, approval_client, make_desvio_csv):
        upload = _upload(approval_client, make_desvio_csv(), process="true").json()
        run_id = upload["run"]["id"]

        response = approval_client.post(
            f"/runs/{run_id}/cancel", json={"cancelled_by": "supervisor", "reason": "wrong farm"}
        )

        assert response.status_code == 200
        assert response.json()["run"]["current_state"] == "cancelled"
        assert approval_client.post(f"/runs/{run_id}/process").status_code == 409

    def test_cancel_uploaded_run_is_invalid(self, client, make_desvio_csv):
        run_id = _upload(client, make_desvio_csv()).json()["run"]["id"]

        response = client.post(f"/runs/{run_id}/cancel")

        assert response.status_code == 409
        assert "Invalid state transition" in response.json()["detail"]

    def test_approve_requires_approver(self, client):
        assert client.post("/runs/any/approve", json={}).status_code == 422

    def test_unknown_run(self, client):
        assert client.get("/runs/does-not-exist").status_code == 404


class TestDeadLetterQueue:
    """DLQ endpoints"""

    def _dead_letter(self, client):
        upload = _upload(client, b"data;curral;dieta\n", filename="empty.csv", process="true").json()
        assert upload["processing"]["moved_to_dlq"] is True
        return upload["processing"]["dlq_entry_id"]

    def test_list_retry_resolve_delete(self, client):
        dlq_id = self._dead_letter(client)

        listing = client.get("/dlq", params={"organization_id": ORG}).json()
        assert listing["total"] == 1
        assert listing["entries"][0]["error_category"] == "permanent"

        marked = client.post(f"/dlq/{dlq_id}/retry").json()
        assert marked["marked_for_retry"] is True

        resolved = client.post(f"/dlq/{dlq_id}/resolve", json={"resolved_by": "ops", "notes": "file re-sent"}).json()
        assert resolved["resolved"] is True
        assert resolved["resolution_notes"] == "file re-sent"

        assert client.get("/dlq", params={"organization_id": ORG}).json()["total"] == 0
        everything = client.get("/dlq", params={"organization_id": ORG, "include_resolved": "true"}).json()
        assert everything["total"] == 1

        assert client.delete(f"/dlq/{dlq_id}").json() == {"removed": True}
        assert client.delete(f"/dlq/{dlq_id}").status_code == 404

    def test_health_reports_open_entries(self, client):
        self._dead_letter(client)
        assert client.get("/health").json()["dlq_size"] == 1


class TestPendingDimensions:
    """Pending dimension endpoints"""

    def test_list_resolve_reject(self, client, make_desvio_csv):
        _upload(client, make_desvio_csv(), process="true")

        listing = client.get("/dimensions/pending", params={"organization_id": ORG}).json()
        assert listing["total"] == 4

        pens = client.get(
            "/dimensions/pending", params={"organization_id": ORG, "dimension": "curral"}
        ).json()
        assert sorted(entry["code"] for entry in pens["entries"]) == ["C001", "C002"]

        first, second = pens["entries"]
        resolved = client.post(f"/dimensions/pending/{first['id']}/resolve", json={"resolved_by": "ops"}).json()
        assert resolved["status"] == "resolved"
        assert resolved["resolved_value"]

        rejected = client.post(
            f"/dimensions/pending/{second['id']}/reject", json={"rejected_by": "ops", "notes": "typo"}
        ).json()
        assert rejected["status"] == "rejected"

        assert client.get("/dimensions/pending", params={"organization_id": ORG}).json()["total"] == 2

    def test_unknown_pending_entry(self, client):
        assert client.post("/dimensions/pending/missing/resolve").status_code == 404


def test_stats(client, make_desvio_csv):
    _upload(client, make_desvio_csv(), process="true")

    response = client.get("/stats", params={"organization_id": ORG})

    assert response.status_code == 200
    data = response.json()
    assert data["files_total"] == 1
    assert data["runs_by_state"] == {"loaded": 1}
    assert data["pending_dimensions"] == 4
