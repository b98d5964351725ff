import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import Base, Role, User
from scripts.init_db import seed_reference_data


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("CSRF_ENABLED", raising=False)
    reset_login_attempts()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        admin = seed_reference_data(s, admin_email="admin@example.com", admin_password="pw")
        agent = User(
            email="agent@example.com",
            password_hash=generate_password_hash("pw"),
            is_active=True,
            full_name="Inbound Agent",
            manager_id=admin.id,
        )
        agent.roles.append(s.query(Role).filter(Role.key == "inbound_agent").one())
        s.add(agent)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com", password="pw"):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=False)


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_public_index_for_anonymous(client):
    r = client.get("/")
    assert r.status_code == 200


def test_login_and_dashboard_access(client):
    # Anonymous users are sent to the login page
    r = client.get("/dashboard")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = _login(client)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/dashboard")

    r = client.get("/dashboard")
    assert r.status_code == 200
    assert b"Admin/MIS Officer" in r.data

    r = client.get("/")
    assert r.status_code == 302


def test_login_rejects_bad_password(client):
    r = _login(client, password="wrong")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]
    assert client.get("/dashboard").status_code == 302


def test_login_rate_limit(client):
    for _ in range(5):
        _login(client, password="wrong")
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"}, follow_redirects=True)
    assert b"Too many login attempts" in r.data


def test_login_next_redirect_only_local(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw", "next": "/leads"})
    assert r.headers["Location"].endswith("/leads")
    client.get("/auth/logout")
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw", "next": "//evil.example"})
    assert r.headers["Location"].endswith("/dashboard")


def test_navigation_follows_permissions(client):
    _login(client, email="agent@example.com")
    r = client.get("/dashboard")
    assert r.status_code == 200
    assert b"Leads" in r.data
    assert b"Audit Trail" not in r.data
    assert b"Cross-sell Rules" not in r.data


def test_forbidden_page_names_permission(client):
    _login(client, email="agent@example.com")
    r = client.get("/admin/audit")
    assert r.status_code == 403
    assert b"admin.view" in r.data


def test_unknown_page_404(client):
    _login(client)
    assert client.get("/no-such-page").status_code == 404
    assert client.get("/leads/999999").status_code == 404


def test_every_menu_page_renders_for_admin(client):
    _login(client)
    for path in (
        "/dashboard",
        "/leads",
        "/leads/new",
        "/tasks",
        "/tasks/list",
        "/tasks/new",
        "/customers",
        "/customers/new",
        "/funnel",
        "/kra/my",
        "/kra",
        "/kra/targets",
        "/leaderboard",
        "/territories",
        "/territories/new",
        "/reports",
        "/cross-sell/rules",
        "/admin/",
        "/admin/me",
        "/admin/accounts",
        "/admin/accounts/new",
        "/admin/audit",
    ):
        r = client.get(path)
        assert r.status_code == 200, path


def test_logout_clears_session(client):
    _login(client)
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/dashboard").status_code == 302


def test_csrf_enforced_when_enabled(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'csrf.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("CSRF_ENABLED", "1")
    reset_login_attempts()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        seed_reference_data(s, admin_email="admin@example.com", admin_password="pw")

    client = app.test_client()
    # Login is exempt
    assert _login(client).status_code == 302

    r = client.post("/leads/new", data={"customer_name": "No Token", "phone": "9000000001"})
    assert r.status_code == 400

    with client.session_transaction() as sess:
        token = sess["csrf_token"]
    r = client.post("/leads/new", data={"customer_name": "With Token", "phone": "9000000002", "csrf_token": token})
    assert r.status_code == 302
    assert "/leads/" in r.headers["Location"]
