"""Tests for user administration, the audit trail, the dashboard and demo seeding."""
from datetime import date, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import AuditEvent, Base, Role, User
from app.crm.modules.dashboard.service import MAX_NUDGES, dashboard_context, smart_nudges
from app.crm.modules.leads.service import change_status, create_lead
from app.crm.modules.tasks.models import Task
from app.crm.modules.tasks.service import create_task
from app.crm.modules.territories.models import Territory
from scripts.init_db import seed_demo_data, seed_reference_data

TODAY = date(2026, 3, 10)


def _user(s, email, role_key, manager=None):
    u = User(
        email=email,
        password_hash=generate_password_hash("pw"),
        is_active=True,
        full_name=email.split("@")[0].title(),
        manager_id=manager.id if manager else None,
        total_xp=0,
        streak_days=0,
    )
    u.roles.append(s.query(Role).filter(Role.key == role_key).one())
    s.add(u)
    s.flush()
    return u


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("CSRF_ENABLED", raising=False)
    reset_login_attempts()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        seed_reference_data(s, admin_email="admin@example.com", admin_password="pw")
        sup = _user(s, "supervisor@example.com", "supervisor")
        _user(s, "fso@example.com", "sales_executive", manager=sup)
        _user(s, "outsider@example.com", "sales_executive")
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com", password="pw"):
    return client.post("/auth/login", data={"email": email, "password": password}, follow_redirects=True)


def _get(s, email):
    return s.query(User).filter(User.email == email).one_or_none()


def _ids(app):
    with session_scope(app) as s:
        return {
            "admin": _get(s, "admin@example.com").id,
            "sup": _get(s, "supervisor@example.com").id,
            "fso": _get(s, "fso@example.com").id,
            "rm_role": s.query(Role).filter(Role.key == "relationship_manager").one().id,
        }


def _new_account(client, **overrides):
    data = {
        "email": "new.rm@example.com",
        "password": "longpassword",
        "password_confirm": "longpassword",
        "full_name": "New Rm",
        "branch": "Andheri",
    }
    data.update(overrides)
    return client.post("/admin/accounts/new", data=data, follow_redirects=True)


def test_create_account(client, app):
    ids = _ids(app)
    _login(client)
    r = _new_account(client, role_ids=[str(ids["rm_role"])], manager_id=str(ids["sup"]))
    assert r.status_code == 200
    assert b"Account created for new.rm@example.com" in r.data

    with session_scope(app) as s:
        u = _get(s, "new.rm@example.com")
        assert [role.key for role in u.roles] == ["relationship_manager"]
        assert u.manager_id == ids["sup"]
        assert u.branch == "Andheri"
        assert u.total_xp == 0
        ev = s.query(AuditEvent).filter(AuditEvent.action == "user.create").one()
        assert ev.entity_id == str(u.id)

    r = client.post("/auth/login", data={"email": "new.rm@example.com", "password": "longpassword"})
    assert r.status_code == 302


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"email": ""}, b"Email is required."),
        ({"email": "not-an-email"}, b"Invalid email format."),
        ({"email": "fso@example.com"}, b"An account with this email already exists."),
        ({"password": "short", "password_confirm": "short"}, b"Password must be at least 8 characters."),
        ({"password_confirm": "different1"}, b"Passwords do not match."),
        ({"manager_id": "abc"}, b"Manager must be a user id."),
        ({"manager_id": "9999"}, b"Manager not found or inactive."),
    ],
)
def test_create_account_validation(client, app, overrides, message):
    _login(client)
    r = _new_account(client, **overrides)
    assert message in r.data
    with session_scope(app) as s:
        assert _get(s, "new.rm@example.com") is None


def test_account_pages_permissions(client, app):
    _login(client, "supervisor@example.com")
    r = client.get("/admin/accounts")
    assert r.status_code == 200
    assert b"fso@example.com" in r.data
    assert b"outsider@example.com" not in r.data
    assert b"New user" not in r.data
    assert client.get("/admin/accounts/new").status_code == 403

    client.get("/auth/logout")
    _login(client, "fso@example.com")
    assert client.get("/admin/accounts").status_code == 403
    assert client.get("/admin/audit").status_code == 403

    client.get("/auth/logout")
    _login(client)
    r = client.get("/admin/accounts")
    assert b"outsider@example.com" in r.data
    assert client.get("/admin/accounts/9999").status_code == 404


def test_update_account(client, app):
    ids = _ids(app)
    _login(client)

    r = client.post(f"/admin/accounts/{ids['admin']}/update", data={"is_active": "1"}, follow_redirects=True)
    assert b"You cannot modify your own account from this page." in r.data

    r = client.post(
        f"/admin/accounts/{ids['fso']}/update",
        data={"is_active": "1", "manager_id": str(ids["fso"])},
        follow_redirects=True,
    )
    assert b"A user cannot be their own manager." in r.data

    r = client.post(
        f"/admin/accounts/{ids['fso']}/update",
        data={"full_name": "Field Officer", "branch": "Bandra", "role_ids": [str(ids["rm_role"])]},
        follow_redirects=True,
    )
    assert b"Account updated for fso@example.com" in r.data
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        assert fso.is_active is False
        assert fso.manager_id is None
        assert fso.full_name == "Field Officer"
        assert [role.key for role in fso.roles] == ["relationship_manager"]
        ev = s.query(AuditEvent).filter(AuditEvent.action == "user.update").one()
        assert '"is_active": true' in ev.metadata_json

    client.get("/auth/logout")
    r = _login(client, "fso@example.com")
    assert b"Invalid credentials." in r.data


def test_reset_password(client, app):
    ids = _ids(app)
    _login(client)
    r = client.post(
        f"/admin/accounts/{ids['fso']}/reset-password",
        data={"password": "short", "password_confirm": "short"},
        follow_redirects=True,
    )
    assert b"Password must be at least 8 characters." in r.data
    r = client.post(
        f"/admin/accounts/{ids['fso']}/reset-password",
        data={"password": "brand-new-pass", "password_confirm": "brand-new-pass"},
        follow_redirects=True,
    )
    assert b"Password reset for fso@example.com" in r.data

    client.get("/auth/logout")
    assert b"Invalid credentials." in _login(client, "fso@example.com").data
    r = client.post("/auth/login", data={"email": "fso@example.com", "password": "brand-new-pass"})
    assert r.status_code == 302


def test_audit_list_filters(client, app):
    _login(client)
    _new_account(client)
    r = client.get("/admin/audit?action=user.create")
    assert r.status_code == 200
    assert b"user.create" in r.data
    r = client.get("/admin/audit?actor_email=nobody")
    assert b"user.create" not in r.data
    r = client.get("/admin/audit?date_from=yesterday")
    assert b"date_from must be YYYY-MM-DD" in r.data


def test_self_service_profile(client, app):
    _login(client, "fso@example.com")
    assert client.get("/admin/me").status_code == 200
    r = client.post("/admin/me", data={"full_name": "Anita", "phone": "call me"}, follow_redirects=True)
    assert b"Phone must contain 7-20 digits." in r.data
    r = client.post("/admin/me", data={"full_name": "Anita", "phone": "+91 98200 11122"}, follow_redirects=True)
    assert b"Profile updated." in r.data
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        assert (fso.full_name, fso.phone) == ("Anita", "+91 98200 11122")


def test_smart_nudges(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        create_lead(s, {"customer_name": "Due Today", "phone": "9000000001", "follow_up_date": TODAY.isoformat()}, user=fso, today=TODAY)
        create_lead(
            s,
            {"customer_name": "Late", "phone": "9000000002", "follow_up_date": (TODAY - timedelta(days=2)).isoformat()},
            user=fso,
            today=TODAY,
        )
        create_lead(
            s,
            {"customer_name": "Later", "phone": "9000000003", "follow_up_date": (TODAY + timedelta(days=2)).isoformat()},
            user=fso,
            today=TODAY,
        )
        closed = create_lead(
            s,
            {"customer_name": "Lost", "phone": "9000000004", "follow_up_date": TODAY.isoformat()},
            user=fso,
            today=TODAY,
        )
        change_status(s, closed, "closed_lost", user=fso, reason="Not interested", today=TODAY)
        create_task(s, {"title": "Overdue", "due_date": (TODAY - timedelta(days=1)).isoformat()}, user=fso)
        create_task(s, {"title": "Done", "due_date": (TODAY - timedelta(days=1)).isoformat(), "status": "completed"}, user=fso)

        nudges = smart_nudges(s, fso, today=TODAY)
        assert [n.kind for n in nudges] == ["follow_up", "follow_up", "overdue_task"]
        assert "due 2 days ago" in nudges[0].message
        assert "due today" in nudges[1].message
        assert nudges[2].message == "Task 'Overdue' is 1 day overdue."


def test_nudges_are_capped(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        for i in range(MAX_NUDGES + 2):
            create_lead(
                s,
                {"customer_name": f"Lead {i}", "phone": f"90000000{i:02d}", "follow_up_date": TODAY.isoformat()},
                user=fso,
                today=TODAY,
            )
        assert len(smart_nudges(s, fso, today=TODAY)) == MAX_NUDGES


def test_dashboard_context_by_level(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        sup = _get(s, "supervisor@example.com")
        create_task(s, {"title": "Today", "due_date": TODAY.isoformat()}, user=fso)

        ctx = dashboard_context(s, fso, today=TODAY)
        assert [t.title for t in ctx["todays_tasks"]] == ["Today"]
        assert ctx["level"].level == 1
        assert ctx["team_kpis"] is None
        assert ctx["team"] is None

        ctx = dashboard_context(s, sup, today=TODAY)
        assert ctx["team_window"].start == date(2026, 3, 1)
        assert ctx["team_kpis"]["task_total"] == 1
        assert {r.user.email for r in ctx["team"]} == {"supervisor@example.com", "fso@example.com"}


def test_dashboard_renders_for_each_role(client, app):
    for email in ("fso@example.com", "supervisor@example.com", "admin@example.com"):
        _login(client, email)
        r = client.get("/dashboard")
        assert r.status_code == 200
        client.get("/auth/logout")


def test_seed_demo_data_is_idempotent(app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        seed_demo_data(s, admin=admin, password="pw", today=TODAY)
        users = s.query(User).count()
        tasks = s.query(Task).count()
        assert _get(s, "rm@salescrm.local").manager.email == "supervisor@salescrm.local"
        assert s.query(Territory).count() == 2

        seed_demo_data(s, admin=admin, password="pw", today=TODAY)
        assert s.query(User).count() == users
        assert s.query(Task).count() == tasks
