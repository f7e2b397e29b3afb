"""End-to-end tests for the HTTP surface."""

from __future__ import annotations

import threading
from datetime import datetime

import pytest

from intake import models
from intake.config import MIB
from intake.pipelines import repository
from intake.pipelines.repository import PersistenceError
from intake.storage import FileStore, UploadBatch

from .conftest import stored_files

pytestmark = pytest.mark.asyncio

PATH_COLUMNS = ("aadhar_card_path", "pan_card_path", "bank_passbook_path", "passport_photo_path")


async def _submit_documents(client, files, **data):
    form = {"name": "Asha", "sailPNo": "SP-1001", "email": "asha@x.com"}
    form.update(data)
    form = {k: v for k, v in form.items() if v is not None}
    return await client.post("/api/document-upload/submit", data=form, files=files)


# ============================================
# Health / info
# ============================================


async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    datetime.fromisoformat(body["timestamp"].replace("Z", "+00:00"))


async def test_root_lists_endpoints(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["endpoints"]["health"] == "/api/health"


async def test_unknown_route_uses_error_envelope(client):
    response = await client.get("/api/nope")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Not Found", "error": "http_error"}


async def test_wrong_method_uses_error_envelope(client):
    response = await client.get("/api/feedback/submit")
    assert response.status_code == 405
    assert response.json()["success"] is False
    assert "POST" in response.headers["allow"]


async def test_oversize_text_part_uses_error_envelope(client, png_bytes):
    response = await client.post(
        "/api/feedback/submit",
        data={"name": "Asha", "email": "a@x.com", "message": "m" * (MIB + 10)},
        files={"attachment": ("screen.png", png_bytes, "image/png")},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert (await client.get("/api/feedback/submissions")).json()["data"] == []


# ============================================
# Document upload
# ============================================


async def test_document_submission_round_trip(client, app, document_files):
    response = await _submit_documents(client, document_files)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Documents uploaded successfully"
    submission_id = body["submissionId"]
    assert isinstance(submission_id, int) and submission_id > 0

    response = await client.get(f"/api/submissions/{submission_id}")
    assert response.status_code == 200
    record = response.json()["data"]
    assert record["name"] == "Asha"
    assert record["sail_p_no"] == "SP-1001"
    assert record["status"] == "pending"
    assert record["ip_address"]

    store = app.state.file_store
    for column in PATH_COLUMNS:
        path = record[column]
        assert path.startswith("uploads/document-upload/")
        assert store.resolve(path).is_file()

    # All four files of one submission share a bucket
    assert len({store.resolve(record[c]).parent for c in PATH_COLUMNS}) == 1


async def test_stored_files_are_served_under_uploads(client, document_files, pdf_bytes):
    body = (await _submit_documents(client, document_files)).json()
    record = (await client.get(f"/api/submissions/{body['submissionId']}")).json()["data"]

    response = await client.get("/" + record["aadhar_card_path"])
    assert response.status_code == 200
    assert response.content == pdf_bytes


async def test_optional_document_fields_are_null_when_absent(client, document_files):
    body = (await _submit_documents(client, document_files, sailPNo=None, email=None)).json()
    record = (await client.get(f"/api/submissions/{body['submissionId']}")).json()["data"]
    assert record["sail_p_no"] is None
    assert record["email"] is None


async def test_legacy_submit_alias(client, document_files):
    response = await client.post("/api/submit", data={"name": "Ravi"}, files=document_files)
    assert response.status_code == 200
    submission_id = response.json()["submissionId"]

    listing = (await client.get("/api/submissions")).json()["data"]
    assert [row["id"] for row in listing] == [submission_id]


@pytest.mark.parametrize("missing", ["aadharCard", "panCard", "bankPassbook", "passportPhoto"])
async def test_missing_file_creates_nothing(client, app, document_files, missing):
    files = {k: v for k, v in document_files.items() if k != missing}

    response = await _submit_documents(client, files)

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Missing required fields or files",
        "error": "validation_error",
    }
    assert (await client.get("/api/document-upload/submissions")).json()["data"] == []
    assert stored_files(app.state.file_store.root) == []


async def test_missing_name_is_rejected(client, app, document_files):
    response = await _submit_documents(client, document_files, name="   ")
    assert response.status_code == 400
    assert stored_files(app.state.file_store.root) == []


async def test_disallowed_file_type_creates_nothing(client, app, document_files):
    files = dict(document_files)
    files["panCard"] = ("pan.txt", b"not a document", "text/plain")

    response = await _submit_documents(client, files)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "invalid_file"
    assert body["message"] == "Invalid file type. Only PDF and images are allowed."
    assert (await client.get("/api/submissions")).json()["data"] == []
    assert stored_files(app.state.file_store.root) == []


async def test_oversize_document_is_rejected(client, app, document_files):
    files = dict(document_files)
    files["passportPhoto"] = ("big.png", b"\x89PNG\r\n\x1a\n" + b"0" * (10 * MIB), "image/png")

    response = await _submit_documents(client, files)

    assert response.status_code == 413
    assert response.json()["error"] == "file_too_large"
    assert (await client.get("/api/submissions")).json()["data"] == []
    assert stored_files(app.state.file_store.root) == []


async def test_failed_insert_removes_written_files(client, app, document_files, monkeypatch):
    async def broken_insert(session, **fields):
        # Files are already in place when the row is inserted
        store = app.state.file_store
        assert all(store.resolve(fields[c]).is_file() for c in PATH_COLUMNS)
        raise PersistenceError("uploading documents", "connection lost")

    monkeypatch.setattr(repository, "insert_document_submission", broken_insert)

    response = await _submit_documents(client, document_files)

    assert response.status_code == 500
    body = response.json()
    assert body == {"success": False, "message": "Error uploading documents", "error": "persistence_error"}
    assert "connection lost" not in response.text
    assert stored_files(app.state.file_store.root) == []


async def test_file_checks_and_writes_run_off_the_event_loop(client, document_files, monkeypatch):
    loop_thread = threading.get_ident()
    seen: list[int] = []
    original_check, original_add = FileStore.check, UploadBatch.add

    def recording_check(self, incoming, *, max_bytes):
        seen.append(threading.get_ident())
        return original_check(self, incoming, max_bytes=max_bytes)

    def recording_add(self, checked):
        seen.append(threading.get_ident())
        return original_add(self, checked)

    monkeypatch.setattr(FileStore, "check", recording_check)
    monkeypatch.setattr(UploadBatch, "add", recording_add)

    response = await _submit_documents(client, document_files)

    assert response.status_code == 200
    assert len(seen) == 8
    assert loop_thread not in seen


async def test_list_submissions_newest_first(client, document_files):
    first = (await _submit_documents(client, document_files, name="First")).json()["submissionId"]
    second = (await _submit_documents(client, document_files, name="Second")).json()["submissionId"]

    for path in ("/api/document-upload/submissions", "/api/submissions"):
        rows = (await client.get(path)).json()["data"]
        assert [row["id"] for row in rows] == [second, first]


async def test_get_missing_submission(client):
    response = await client.get("/api/submissions/99999")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Submission not found"


async def test_get_submission_with_non_numeric_id(client):
    response = await client.get("/api/submissions/abc")
    assert response.status_code == 400
    assert response.json()["success"] is False


# ============================================
# Search, audit, summary
# ============================================


async def test_search(client, document_files):
    await _submit_documents(client, document_files, name="Asha Rao", sailPNo="SP-1")
    await _submit_documents(client, document_files, name="Ashok", sailPNo="XY-2")
    await _submit_documents(client, document_files, name="Ravi", sailPNo="SP-3")

    rows = (await client.get("/api/search", params={"name": "ash"})).json()["data"]
    assert [row["name"] for row in rows] == ["Ashok", "Asha Rao"]

    rows = (await client.get("/api/search", params={"name": "ash", "sailPNo": "sp"})).json()["data"]
    assert [row["name"] for row in rows] == ["Asha Rao"]

    rows = (await client.get("/api/search")).json()["data"]
    assert [row["name"] for row in rows] == ["Ravi", "Ashok", "Asha Rao"]

    assert (await client.get("/api/search", params={"status": "verified"})).json()["data"] == []
    assert (await client.get("/api/search", params={"name": "zzz"})).json() == {"success": True, "data": []}


async def test_search_is_idempotent(client, document_files):
    await _submit_documents(client, document_files, name="Asha")
    first = (await client.get("/api/search", params={"name": "a"})).json()
    second = (await client.get("/api/search", params={"name": "a"})).json()
    assert first == second


async def test_search_rejects_unknown_status(client):
    response = await client.get("/api/search", params={"status": "archived"})
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


async def test_audit_trail_and_summary(client, app_session, document_files):
    submission_id = (await _submit_documents(client, document_files)).json()["submissionId"]
    app_session.add(
        models.AuditLogEntry(
            submission_id=submission_id,
            action="status_change",
            old_value="pending",
            new_value="verified",
            changed_by="admin",
        )
    )
    await app_session.commit()

    entries = (await client.get(f"/api/submissions/{submission_id}/audit")).json()["data"]
    assert len(entries) == 1
    assert entries[0]["new_value"] == "verified"
    assert entries[0]["changed_by"] == "admin"

    summary = (await client.get("/api/document-upload/summary")).json()["data"]
    assert summary[0]["id"] == submission_id
    assert summary[0]["audit_count"] == 1

    response = await client.get("/api/submissions/424242/audit")
    assert response.status_code == 404


# ============================================
# Feedback
# ============================================


async def test_feedback_scenario(client):
    await client.post("/api/feedback/submit", json={"name": "Old", "email": "o@x.com", "message": "earlier"})

    response = await client.post(
        "/api/feedback/submit",
        json={"name": "Asha", "email": "a@x.com", "message": "Great service"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert isinstance(body["feedbackId"], int)

    rows = (await client.get("/api/feedback/submissions")).json()["data"]
    assert rows[0]["id"] == body["feedbackId"]
    assert rows[0]["name"] == "Asha"
    assert rows[0]["message"] == "Great service"
    assert rows[0]["attachment_path"] is None


async def test_feedback_as_urlencoded_form(client):
    response = await client.post(
        "/api/feedback/submit",
        data={"name": "Asha", "email": "a@x.com", "message": "via form"},
    )
    assert response.status_code == 200
    assert response.json()["feedbackId"] > 0


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Asha", "email": "a@x.com"},
        {"name": "", "email": "a@x.com", "message": "hi"},
        {"name": "Asha", "email": "   ", "message": "hi"},
        {},
    ],
)
async def test_feedback_missing_fields(client, payload):
    response = await client.post("/api/feedback/submit", json=payload)
    assert response.status_code == 400
    assert response.json()["message"] == "Missing required fields"
    assert (await client.get("/api/feedback/submissions")).json()["data"] == []


async def test_feedback_with_malformed_body(client):
    response = await client.post(
        "/api/feedback/submit",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid request body"

    response = await client.post("/api/feedback/submit", json=["a", "b"])
    assert response.status_code == 400

    response = await client.post(
        "/api/feedback/submit",
        json={"name": ["Asha"], "email": "a@x.com", "message": "m"},
    )
    assert response.status_code == 400


async def test_feedback_with_attachment(client, app, png_bytes):
    response = await client.post(
        "/api/feedback/submit",
        data={"name": "Asha", "email": "a@x.com", "message": "see screenshot"},
        files={"attachment": ("screen.png", png_bytes, "image/png")},
    )
    assert response.status_code == 200

    row = (await client.get("/api/feedback/submissions")).json()["data"][0]
    assert row["attachment_path"].startswith("uploads/feedback-form/")
    assert app.state.file_store.resolve(row["attachment_path"]).read_bytes() == png_bytes


async def test_oversize_feedback_attachment_is_rejected(client, app):
    big = b"\x89PNG\r\n\x1a\n" + b"0" * (5 * MIB)
    response = await client.post(
        "/api/feedback/submit",
        data={"name": "Asha", "email": "a@x.com", "message": "huge"},
        files={"attachment": ("big.png", big, "image/png")},
    )

    assert response.status_code == 413
    assert (await client.get("/api/feedback/submissions")).json()["data"] == []
    assert stored_files(app.state.file_store.root) == []


async def test_feedback_attachment_type_is_checked(client, app):
    response = await client.post(
        "/api/feedback/submit",
        data={"name": "Asha", "email": "a@x.com", "message": "zip"},
        files={"attachment": ("a.zip", b"PK\x03\x04", "application/zip")},
    )
    assert response.status_code == 400
    assert (await client.get("/api/feedback/submissions")).json()["data"] == []


# ============================================
# Contact / registration
# ============================================


async def test_contact_submission(client):
    response = await client.post(
        "/api/contact/submit",
        json={"name": "Ravi", "email": "r@x.com", "message": "Call me"},
    )
    assert response.status_code == 200
    contact_id = response.json()["contactId"]

    response = await client.post(
        "/api/contact/submit",
        json={"name": "Meera", "email": "m@x.com", "subject": "", "message": "Hello"},
    )
    assert response.status_code == 200

    rows = (await client.get("/api/contact/submissions")).json()["data"]
    by_id = {row["id"]: row for row in rows}
    assert by_id[contact_id]["subject"] is None
    assert by_id[response.json()["contactId"]]["subject"] == ""


async def test_contact_requires_message(client):
    response = await client.post("/api/contact/submit", json={"name": "Ravi", "email": "r@x.com", "subject": "Hi"})
    assert response.status_code == 400


async def test_registration_submission(client):
    response = await client.post(
        "/api/registration/submit",
        json={"name": "Meera", "email": "m@x.com", "eventName": "Annual Meet"},
    )
    assert response.status_code == 200
    registration_id = response.json()["registrationId"]

    rows = (await client.get("/api/registration/submissions")).json()["data"]
    assert rows[0]["id"] == registration_id
    assert rows[0]["event_name"] == "Annual Meet"
    assert rows[0]["phone"] is None


async def test_registration_requires_email(client):
    response = await client.post("/api/registration/submit", json={"name": "Meera"})
    assert response.status_code == 400
    assert (await client.get("/api/registration/submissions")).json()["data"] == []


async def test_numeric_optional_field_is_stored_as_text(client):
    response = await client.post(
        "/api/registration/submit",
        json={"name": "Meera", "email": "m@x.com", "phone": 9876543210, "eventName": "Meet"},
    )
    assert response.status_code == 200

    row = (await client.get("/api/registration/submissions")).json()["data"][0]
    assert row["phone"] == "9876543210"
    assert row["event_name"] == "Meet"
