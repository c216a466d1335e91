from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.brgy import create_app
from app.brgy.db import session_scope
from app.brgy.models import AuditEvent, Base, Permission, Role, User
from app.brgy.modules.certificates.models import IssuedCertificate
from app.brgy.modules.residents.models import Resident
from app.brgy.notifications import NotificationSink

PERMS = (
    "certificates.view",
    "certificates.request",
    "certificates.approve",
    "certificates.issue",
    "certificates.invalidate",
)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events: list[str] = []

    def send(self, event, title, message, **data):
        self.events.append(event)


class ExplodingSink(NotificationSink):
    def send(self, event, title, message, **data):
        raise ConnectionError("sms gateway down")


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("BARANGAY_NAME", "Barangay San Isidro")
    monkeypatch.setenv("CERTIFICATE_SIGNER_NAME", "Hon. Pedro Reyes")

    app = create_app()
    app.extensions["brgy_clock"] = lambda: datetime(2024, 1, 1, 9, 0, 0)
    app.extensions["notification_sink"] = RecordingSink()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        perms = [Permission(key=k, name=k) for k in PERMS]
        admin = Role(key="admin", name="Administrator")
        admin.permissions.extend(perms)
        u = User(email="admin@example.com", name="Admin", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(admin)
        s.add_all(perms + [admin, u, Resident(id=1, first_name="Juan", middle_name="Dela", last_name="Cruz")])

    c = app.test_client()
    r = c.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    return c


def _create(client, **overrides):
    body = {"resident_id": 1, "document_type": "clearance", "purpose": "employment", **overrides}
    r = client.post("/api/certificate-requests", json=body)
    assert r.status_code == 201, r.json
    return r.json["request"]


def test_request_to_download_vertical_slice(client):
    req = _create(client)
    assert req["status"] == "pending"
    assert req["allowed_actions"] == ["approve", "reject"]
    assert req["resident_name"] == "Juan D. Cruz"

    r = client.post(f"/api/certificate-requests/{req['id']}/approve", json={"remarks": "complete"})
    assert r.status_code == 200
    assert r.json["request"]["status"] == "approved"
    assert "issue" in r.json["request"]["allowed_actions"]

    r = client.post(f"/api/certificate-requests/{req['id']}/release", json={})
    assert r.json["request"]["status"] == "released"
    assert r.json["request"]["remarks"] == "complete"

    r = client.post(
        f"/api/certificate-requests/{req['id']}/issue",
        json={"valid_from": "2024-01-01", "valid_until": "2024-07-01"},
    )
    assert r.status_code == 201, r.json
    cert = r.json["certificate"]
    assert cert["document_number"] == "2024-CLE-0001"
    assert cert["status"] == "valid"
    assert cert["signer_name"] == "Hon. Pedro Reyes"
    assert cert["signer_title"] == "Punong Barangay"
    assert cert["has_pdf"] is True

    r = client.get(f"/api/issued-certificates/{cert['id']}/download")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data.startswith(b"%PDF")

    r = client.get(f"/api/certificate-requests/{req['id']}")
    assert r.json["request"]["issued_certificate_id"] == cert["id"]

    sink = client.application.extensions["notification_sink"]
    assert sink.events == [
        "certificate_request.created",
        "certificate_request.approved",
        "certificate_request.released",
        "certificate.issued",
    ]


def test_issue_defaults_window_from_config(client):
    req = _create(client, document_type="indigency")
    client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    r = client.post(f"/api/certificate-requests/{req['id']}/issue", json={})
    assert r.status_code == 201
    cert = r.json["certificate"]
    assert cert["document_number"] == "2024-IND-0001"
    assert cert["valid_from"] == "2024-01-01"
    assert cert["valid_until"] == "2024-01-31"
    assert cert["expiring_soon"] is True


def test_errors_are_json_with_codes(client):
    r = client.post("/api/certificate-requests", json={"resident_id": 1, "document_type": "clearance", "purpose": ""})
    assert r.status_code == 422
    assert r.json == {"ok": False, "error": "validation_error", "message": "Purpose is required.", "field": "purpose"}

    r = client.get("/api/certificate-requests/999")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"

    req = _create(client)
    r = client.post(f"/api/certificate-requests/{req['id']}/reject", json={"remarks": "incomplete requirements"})
    assert r.json["request"]["status"] == "rejected"
    r = client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    assert r.status_code == 409
    assert r.json["error"] == "state_conflict"

    r = client.post(f"/api/certificate-requests/{req['id']}/issue", json={"valid_from": "2024-13-01"})
    assert r.status_code == 422
    assert r.json["field"] == "valid_from"


def test_double_issue_over_http_is_conflict(client):
    req = _create(client)
    client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    assert client.post(f"/api/certificate-requests/{req['id']}/issue", json={}).status_code == 201
    r = client.post(f"/api/certificate-requests/{req['id']}/issue", json={})
    assert r.status_code == 409


def test_invalidate_verify_and_status(client):
    req = _create(client)
    client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    cert = client.post(f"/api/certificate-requests/{req['id']}/issue", json={"valid_until": "2099-01-01"}).json["certificate"]

    r = client.post("/api/issued-certificates/verify", json={"qr_payload": cert["qr_payload"]})
    assert r.status_code == 200
    assert r.json["status"] == "valid"
    assert r.json["payload_matches"] is True

    r = client.post(f"/api/issued-certificates/{cert['id']}/invalidate", json={"reason": "tampered"})
    assert r.json["certificate"]["status"] == "invalid"
    r = client.post(f"/api/issued-certificates/{cert['id']}/invalidate", json={"reason": "again"})
    assert r.status_code == 200
    assert r.json["certificate"]["invalidation_reason"] == "tampered"

    r = client.get(f"/api/issued-certificates/{cert['id']}/status")
    assert r.json["status"] == "invalid"

    r = client.post("/api/issued-certificates/verify", json={"document_number": cert["document_number"]})
    assert r.json["status"] == "invalid"

    with session_scope(client.application) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "certificate.invalidate").count() == 1


def test_verify_is_public(client):
    client.post("/auth/logout")
    r = client.post("/api/issued-certificates/verify", json={"document_number": "2024-CLE-0001"})
    assert r.status_code == 404
    r = client.get("/api/issued-certificates")
    assert r.status_code == 401


def test_regenerate_and_sign(client):
    req = _create(client)
    client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    cert = client.post(f"/api/certificate-requests/{req['id']}/issue", json={}).json["certificate"]

    r = client.post(f"/api/issued-certificates/{cert['id']}/regenerate-pdf")
    assert r.status_code == 200
    assert r.json["certificate"]["document_number"] == cert["document_number"]
    assert r.json["certificate"]["last_regenerated_at"] == "2024-01-01T09:00:00"

    r = client.post(
        f"/api/issued-certificates/{cert['id']}/sign",
        json={"signer_name": "Hon. Rosa Lim", "signer_title": "Barangay Kagawad"},
    )
    assert r.json["certificate"]["signer_name"] == "Hon. Rosa Lim"
    assert r.json["certificate"]["valid_until"] == cert["valid_until"]


def test_render_failure_does_not_fail_issuance(client):
    app = client.application

    class BrokenRenderer:
        content_type = "application/pdf"
        extension = "pdf"

        def render(self, doc, *, resident_name):
            raise RuntimeError("font missing")

    app.extensions["brgy_renderer"] = BrokenRenderer()
    req = _create(client)
    client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    r = client.post(f"/api/certificate-requests/{req['id']}/issue", json={})
    assert r.status_code == 201
    assert r.json["certificate"]["has_pdf"] is False

    r = client.get(f"/api/issued-certificates/{r.json['certificate']['id']}/download")
    assert r.status_code == 404

    with session_scope(app) as s:
        assert s.query(IssuedCertificate).count() == 1


def test_failing_notification_sink_is_ignored(client):
    client.application.extensions["notification_sink"] = ExplodingSink()
    req = _create(client)
    r = client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
    assert r.status_code == 200


def test_listing_filters_and_statistics(client):
    for dtype in ("clearance", "indigency", "indigency"):
        req = _create(client, document_type=dtype)
        client.post(f"/api/certificate-requests/{req['id']}/approve", json={})
        client.post(f"/api/certificate-requests/{req['id']}/issue", json={})
    _create(client, document_type="residency")

    r = client.get("/api/certificate-requests?status=pending")
    assert r.json["total"] == 1
    r = client.get("/api/certificate-requests?status=bogus")
    assert r.status_code == 422

    r = client.get("/api/issued-certificates?document_type=indigency&per_page=1")
    assert r.json["total"] == 2
    assert r.json["pages"] == 2
    assert len(r.json["items"]) == 1

    r = client.get("/api/issued-certificates/statistics")
    assert r.json["total"] == 3
    assert r.json["by_type"]["indigency"] == 2
    assert r.json["expiring_soon"] == 3

    r = client.get("/api/certificate-requests/statistics")
    assert r.json["by_status"]["approved"] == 3
    assert r.json["by_status"]["pending"] == 1


def test_update_request(client):
    req = _create(client)
    r = client.put(f"/api/certificate-requests/{req['id']}", json={"additional_requirements": "cedula"})
    assert r.status_code == 200
    assert r.json["request"]["additional_requirements"] == "cedula"
