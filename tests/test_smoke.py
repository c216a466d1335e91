import pytest
from werkzeug.security import generate_password_hash

from app.brgy import create_app
from app.brgy.db import session_scope
from app.brgy.models import AuditEvent, Base, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p_view = Permission(key="certificates.view", name="Certificates: view")
        p_approve = Permission(key="certificates.approve", name="Certificates: approve")
        admin = Role(key="admin", name="Administrator")
        admin.permissions.extend([p_view, p_approve])
        leader = Role(key="purok_leader", name="Purok Leader")
        leader.permissions.append(p_view)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(admin)
        u2 = User(email="leader@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u2.roles.append(leader)
        s.add_all([p_view, p_approve, admin, leader, u, u2])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_anonymous_gets_401_json(client):
    r = client.get("/api/certificate-requests")
    assert r.status_code == 401
    assert r.json["ok"] is False


def test_login_and_access(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["user"]["email"] == "admin@example.com"

    r = client.get("/api/certificate-requests")
    assert r.status_code == 200
    assert r.json["items"] == []

    r = client.post("/auth/logout")
    assert r.status_code == 200
    r = client.get("/api/certificate-requests")
    assert r.status_code == 401


def test_bad_password_is_rejected_and_audited(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["error"] == "invalid_credentials"

    with session_scope(client.application) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").one()
        assert ev.entity_id == "admin@example.com"


def test_missing_permission_is_403_with_key(client):
    client.post("/auth/login", json={"email": "leader@example.com", "password": "pw"})
    r = client.post("/api/certificate-requests/1/approve", json={})
    assert r.status_code == 403
    assert r.json["missing_permission"] == "certificates.approve"


def test_request_id_header_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"


def test_production_guardrails_reject_sqlite(monkeypatch, tmp_path):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()
