"""API tests for the LQA pipeline HTTP surface."""
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from lqa.worker.errors import AuditWriteError, ValidationError

TENANT_ID = "11111111-1111-1111-1111-111111111111"

HEADERS = {"X-Tenant-Id": TENANT_ID}


def test_health(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


# ---------------------------------------------------------------------------
# Tenant header
# ---------------------------------------------------------------------------

def test_missing_tenant_header_rejected(client: TestClient):
    r = client.patch(f"/findings/{uuid.uuid4()}", json={"review_status": "accepted"})
    assert r.status_code == 400
    assert "X-Tenant-Id" in r.json()["detail"]


def test_invalid_tenant_header_rejected(client: TestClient):
    r = client.patch(
        f"/findings/{uuid.uuid4()}",
        json={"review_status": "accepted"},
        headers={"X-Tenant-Id": "not-a-uuid"},
    )
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------

def test_patch_finding_invalid_uuid(client: TestClient):
    r = client.patch("/findings/not-a-uuid", json={"review_status": "accepted"}, headers=HEADERS)
    assert r.status_code == 400


def test_patch_finding_unknown_status(client: TestClient):
    r = client.patch(f"/findings/{uuid.uuid4()}", json={"review_status": "maybe"}, headers=HEADERS)
    assert r.status_code == 400


def test_patch_finding_updates_and_commits(client: TestClient, api_db, api_audit, api_scheduler):
    finding_id = uuid.uuid4()
    updated = SimpleNamespace(id=finding_id, review_status="accepted")
    with patch("lqa.main.update_finding_status", new_callable=AsyncMock, return_value=updated) as mock_update:
        r = client.patch(
            f"/findings/{finding_id}",
            json={"review_status": "accepted"},
            headers={**HEADERS, "X-User-Id": "reviewer-1"},
        )
    assert r.status_code == 200
    assert r.json() == {"id": str(finding_id), "review_status": "accepted"}
    args, kwargs = mock_update.call_args
    assert args[1] == TENANT_ID
    assert args[3] == "accepted"
    assert kwargs["audit"] is api_audit
    assert kwargs["scheduler"] is api_scheduler
    assert kwargs["user_id"] == "reviewer-1"
    api_db.commit.assert_awaited_once()


def test_patch_finding_not_found_maps_to_400(client: TestClient, api_db):
    with patch("lqa.main.update_finding_status", new_callable=AsyncMock,
               side_effect=ValidationError("Finding x not found")):
        r = client.patch(f"/findings/{uuid.uuid4()}", json={"review_status": "rejected"}, headers=HEADERS)
    assert r.status_code == 400
    api_db.commit.assert_not_awaited()


def test_audit_failure_returns_500_without_commit(client: TestClient, api_db):
    with patch("lqa.main.update_finding_status", new_callable=AsyncMock,
               side_effect=AuditWriteError("audit down")):
        r = client.patch(f"/findings/{uuid.uuid4()}", json={"review_status": "accepted"}, headers=HEADERS)
    assert r.status_code == 500
    api_db.commit.assert_not_awaited()


def test_bulk_status(client: TestClient):
    ids = [str(uuid.uuid4()), str(uuid.uuid4())]
    with patch("lqa.main.bulk_update_finding_status", new_callable=AsyncMock,
               return_value=[SimpleNamespace(), SimpleNamespace()]) as mock_bulk:
        r = client.post(
            "/findings/bulk-status",
            json={"finding_ids": ids, "review_status": "rejected"},
            headers=HEADERS,
        )
    assert r.status_code == 200
    assert r.json() == {"updated": 2, "review_status": "rejected"}
    assert [str(x) for x in mock_bulk.call_args[0][2]] == ids


# ---------------------------------------------------------------------------
# Files / batches
# ---------------------------------------------------------------------------

def test_process_file_not_found(client: TestClient):
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=None):
        r = client.post(f"/files/{uuid.uuid4()}/process", headers=HEADERS)
    assert r.status_code == 404


def test_process_file_enqueues_next_stage(client: TestClient, api_db):
    project_id = uuid.uuid4()
    file_id = uuid.uuid4()
    qa_file = SimpleNamespace(id=file_id, status="l1", project_id=project_id, batch_id=None)
    project = SimpleNamespace(id=project_id, processing_mode="economy")
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=qa_file), \
         patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project), \
         patch("lqa.main.enqueue_process_file", new_callable=AsyncMock, return_value=True) as mock_enqueue:
        r = client.post(f"/files/{file_id}/process", headers=HEADERS)
    assert r.status_code == 200
    assert r.json() == {"file_id": str(file_id), "stage": "l2", "enqueued": True}
    assert mock_enqueue.call_args[0][4] == "l2"
    assert mock_enqueue.call_args[1]["mode"] == "economy"
    api_db.commit.assert_awaited_once()


def test_process_file_already_terminal(client: TestClient):
    project_id = uuid.uuid4()
    qa_file = SimpleNamespace(status="scored", project_id=project_id, batch_id=None)
    project = SimpleNamespace(id=project_id, processing_mode="economy")
    with patch("lqa.worker.db.get_file", new_callable=AsyncMock, return_value=qa_file), \
         patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project):
        r = client.post(f"/files/{uuid.uuid4()}/process", headers=HEADERS)
    assert r.status_code == 409


def test_process_file_rejects_unknown_mode(client: TestClient):
    r = client.post(f"/files/{uuid.uuid4()}/process", json={"mode": "turbo"}, headers=HEADERS)
    assert r.status_code == 400


def test_create_batch_project_not_found(client: TestClient):
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=None):
        r = client.post(
            "/batches",
            json={"project_id": str(uuid.uuid4()), "file_ids": [str(uuid.uuid4())]},
            headers=HEADERS,
        )
    assert r.status_code == 404


def test_create_batch_enqueues_batch_started(client: TestClient, api_db, api_audit):
    project_id = uuid.uuid4()
    batch_id = uuid.uuid4()
    file_ids = [uuid.uuid4(), uuid.uuid4()]
    project = SimpleNamespace(id=project_id, processing_mode="thorough")
    files = {fid: SimpleNamespace(id=fid, project_id=project_id, batch_id=None) for fid in file_ids}

    def _add(obj):
        obj.id = batch_id

    api_db.add.side_effect = _add
    with patch("lqa.worker.db.get_project", new_callable=AsyncMock, return_value=project), \
         patch("lqa.worker.db.get_file", new_callable=AsyncMock, side_effect=lambda db, t, fid: files[fid]), \
         patch("lqa.main.enqueue_batch_started", new_callable=AsyncMock, return_value=True) as mock_enqueue:
        r = client.post(
            "/batches",
            json={"project_id": str(project_id), "file_ids": [str(f) for f in file_ids]},
            headers=HEADERS,
        )
    assert r.status_code == 200
    data = r.json()
    assert data == {"batch_id": str(batch_id), "file_count": 2, "mode": "thorough"}
    assert all(f.batch_id == batch_id for f in files.values())
    args = mock_enqueue.call_args[0]
    assert args[2] == batch_id
    assert args[4] == file_ids
    assert args[5] == "thorough"
    assert api_audit.write.await_args[0][1].action == "batch.created"
    api_db.commit.assert_awaited_once()


def test_batch_summary_not_found(client: TestClient):
    with patch("lqa.main.get_batch_summary", new_callable=AsyncMock, side_effect=ValidationError("missing")):
        r = client.get(f"/batches/{uuid.uuid4()}/summary", headers=HEADERS)
    assert r.status_code == 404


# ---------------------------------------------------------------------------
# Parity / missing checks
# ---------------------------------------------------------------------------

def test_parity_requires_xlsx(client: TestClient):
    r = client.post(
        f"/projects/{uuid.uuid4()}/parity",
        files={"file": ("report.csv", b"a,b\n1,2", "text/csv")},
        headers=HEADERS,
    )
    assert r.status_code == 400


def test_missing_check_validation_error(client: TestClient):
    with patch("lqa.main.report_missing_check", new_callable=AsyncMock,
               side_effect=ValidationError("segment_number must be a positive integer")):
        r = client.post(
            f"/projects/{uuid.uuid4()}/missing-checks",
            json={
                "file_reference": "ui.xliff",
                "segment_number": 0,
                "expected_description": "x",
                "expected_category": "accuracy",
            },
            headers=HEADERS,
        )
    assert r.status_code == 400


def test_missing_check_created(client: TestClient, api_db):
    report = SimpleNamespace(id=uuid.uuid4(), tracking_reference="MCR-20260101-ABC123")
    with patch("lqa.main.report_missing_check", new_callable=AsyncMock, return_value=report):
        r = client.post(
            f"/projects/{uuid.uuid4()}/missing-checks",
            json={
                "file_reference": "ui.xliff",
                "segment_number": 4,
                "expected_description": "Mistranslated term",
                "expected_category": "accuracy",
            },
            headers=HEADERS,
        )
    assert r.status_code == 200
    assert r.json()["tracking_reference"] == "MCR-20260101-ABC123"
    api_db.commit.assert_awaited_once()
