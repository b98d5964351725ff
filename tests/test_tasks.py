"""Tests for the task board and territories."""
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import AuditEvent, Base, Role, User
from app.crm.modules.tasks.models import Task
from app.crm.modules.tasks.service import (
    board,
    create_task,
    is_overdue,
    log_time,
    move_task,
    overdue_tasks,
    query_tasks,
    todays_tasks,
    validate_task_payload,
)
from app.crm.modules.territories.models import Territory
from app.crm.modules.territories.service import (
    create_territory,
    performance,
    query_territories,
    territory_stats,
    validate_territory_payload,
)
from scripts.init_db import seed_reference_data

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
        _user(s, "other@example.com", "sales_executive")
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)


def _get(s, email):
    return s.query(User).filter(User.email == email).one()


def test_validate_task_payload():
    errs = validate_task_payload({"title": "", "priority": "urgent", "status": "done", "xp_reward": "-1", "due_date": "soon"})
    assert {e.field for e in errs} == {"title", "priority", "status", "xp_reward", "due_date"}
    assert validate_task_payload({"title": "Call back"}) == []


def test_board_groups_by_column(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        create_task(s, {"title": "A"}, user=fso)
        create_task(s, {"title": "B", "status": "in_progress"}, user=fso)
        stray = create_task(s, {"title": "C"}, user=fso)
        stray.status = "archived"

        cols = board(query_tasks(s, user=fso, filters={}).all())
        assert [c.key for c in cols] == ["todo", "in_progress", "review", "completed"]
        assert {t.title for t in cols[0].tasks} == {"A", "C"}
        assert cols[1].count == 1
        assert cols[3].count == 0


def test_move_to_completed_awards_xp_once(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        t = create_task(s, {"title": "Visit", "xp_reward": "25"}, user=fso)

        assert move_task(s, t, "completed", user=fso, today=TODAY) is True
        assert t.completed_at is not None
        assert t.xp_awarded is True
        assert fso.total_xp == 25

        move_task(s, t, "in_progress", user=fso, today=TODAY)
        assert t.completed_at is None
        move_task(s, t, "completed", user=fso, today=TODAY)
        assert fso.total_xp == 25

        moves = s.query(AuditEvent).filter(AuditEvent.action == "task.move").count()
        assert move_task(s, t, "completed", user=fso, today=TODAY) is False
        assert s.query(AuditEvent).filter(AuditEvent.action == "task.move").count() == moves
        with pytest.raises(ValueError):
            move_task(s, t, "archived", user=fso, today=TODAY)


def test_task_created_completed_awards_xp_once(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        t = create_task(s, {"title": "Walk-in KYC", "status": "completed", "xp_reward": "20"}, user=fso, today=TODAY)
        assert t.completed_at is not None
        assert t.xp_awarded is True
        assert fso.total_xp == 20

        move_task(s, t, "review", user=fso, today=TODAY)
        move_task(s, t, "completed", user=fso, today=TODAY)
        assert fso.total_xp == 20


def test_assignee_must_be_in_scope(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        other = _get(s, "other@example.com")
        sup = _get(s, "supervisor@example.com")

        t = create_task(s, {"title": "Team task", "assigned_to_id": str(fso.id)}, user=sup)
        assert t.assigned_to_id == fso.id
        with pytest.raises(ValueError):
            create_task(s, {"title": "Not my team", "assigned_to_id": str(other.id)}, user=sup)
        with pytest.raises(ValueError):
            create_task(s, {"title": "Upwards", "assigned_to_id": str(sup.id)}, user=fso)


def test_time_logging(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        t = create_task(s, {"title": "Docs", "estimated_minutes": "60"}, user=fso)
        log_time(s, t, "30", user=fso)
        assert t.time_progress == 50
        assert not t.is_over_time
        log_time(s, t, 45, user=fso)
        assert t.time_spent_minutes == 75
        assert t.time_progress == 100
        assert t.is_over_time
        for bad in ("0", "-5", "abc", None):
            with pytest.raises(ValueError):
                log_time(s, t, bad, user=fso)


def test_today_and_overdue(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        create_task(s, {"title": "Today", "due_date": "2026-03-10"}, user=fso)
        late = create_task(s, {"title": "Late", "due_date": "2026-03-08"}, user=fso)
        done = create_task(s, {"title": "Done late", "due_date": "2026-03-01", "status": "completed"}, user=fso)

        assert [t.title for t in todays_tasks(s, user=fso, today=TODAY)] == ["Today"]
        assert [t.title for t in overdue_tasks(s, user=fso, today=TODAY)] == ["Late"]
        assert is_overdue(late, TODAY)
        assert not is_overdue(done, TODAY)
        assert [t.title for t in query_tasks(s, user=fso, filters={"overdue": True}, today=TODAY).all()] == ["Late"]


def test_task_http_flow(client, app):
    _login(client, "fso@example.com")
    r = client.post("/tasks/new", data={"title": "Collect KYC", "priority": "high", "task_type": "visit", "xp_reward": "15"})
    assert r.status_code == 302
    with session_scope(app) as s:
        t = s.query(Task).filter(Task.title == "Collect KYC").one()
        task_id = t.id

    r = client.get("/tasks")
    assert r.status_code == 200
    assert b"Collect KYC" in r.data

    r = client.post(f"/tasks/{task_id}/move.json", json={"status": "completed"})
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["changed"] is True
    assert r.json["status"] == "completed"
    assert r.json["xp_awarded"] == 15

    r = client.post(f"/tasks/{task_id}/move.json", json={"status": "nowhere"})
    assert r.status_code == 400
    assert r.json["ok"] is False

    r = client.post(f"/tasks/{task_id}/move", data={"status": "review"})
    assert r.status_code == 302
    client.post(f"/tasks/{task_id}/time", data={"minutes": "20"})
    with session_scope(app) as s:
        t = s.get(Task, task_id)
        assert t.status == "review"
        assert t.time_spent_minutes == 20

    r = client.get(f"/tasks/{task_id}")
    assert r.status_code == 200

    client.get("/auth/logout")
    _login(client, "other@example.com")
    assert client.get(f"/tasks/{task_id}").status_code == 404
    r = client.post(f"/tasks/{task_id}/move.json", json={"status": "todo"})
    assert r.status_code == 404


def test_territory_performance_and_stats():
    a = Territory(code="A", name="A", population=100, businesses=10, monthly_target=50, achieved=38)
    b = Territory(code="B", name="B", population=50, businesses=5, monthly_target=0, achieved=5)
    assert performance(a) == 76
    assert performance(b) == 0
    stats = territory_stats([a, b])
    assert stats == {"count": 2, "population": 150, "businesses": 15, "avg_performance": 38}
    assert territory_stats([])["avg_performance"] == 0


def test_territory_validation_and_scope(app):
    errs = validate_territory_payload({"code": "", "name": "", "population": "-1", "potential": "Huge"})
    assert {e.field for e in errs} == {"code", "name", "population", "potential"}

    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        fso = _get(s, "fso@example.com")
        other = _get(s, "other@example.com")
        sup = _get(s, "supervisor@example.com")
        create_territory(s, {"code": "AND-E", "name": "Andheri East", "assigned_user_id": str(fso.id)}, user=admin)
        create_territory(s, {"code": "BAN-W", "name": "Bandra West", "assigned_user_id": str(other.id)}, user=admin)
        with pytest.raises(ValueError):
            create_territory(s, {"code": "AND-E", "name": "Duplicate"}, user=admin)
        s.flush()

        assert [t.code for t in query_territories(s, user=sup).all()] == ["AND-E"]
        assert [t.code for t in query_territories(s, user=admin).all()] == ["AND-E", "BAN-W"]


def test_territory_http(client, app):
    _login(client, "fso@example.com")
    assert client.get("/territories").status_code == 200
    assert client.get("/territories/new").status_code == 403

    client.get("/auth/logout")
    _login(client, "supervisor@example.com")
    r = client.post(
        "/territories/new",
        data={"code": "MAR", "name": "Marol", "population": "1000", "monthly_target": "20", "achieved": "5", "potential": "High"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        t = s.query(Territory).filter(Territory.code == "MAR").one()
        assert t.is_active is True
        assert t.potential == "High"
