"""Tests for reporting windows, KPIs, team performance and CSV export."""
import csv
import io
from datetime import date, datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import AuditEvent, Base, Role, User
from app.crm.modules.leads.models import Lead
from app.crm.modules.leads.service import change_status, create_lead
from app.crm.modules.reports.service import (
    DateWindow,
    compute_kpis,
    export_report_csv,
    kpi_user_ids,
    lead_breakdown,
    resolve_window,
    team_performance,
)
from app.crm.modules.tasks.service import create_task
from scripts.init_db import seed_reference_data


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
        fso = _user(s, "fso@example.com", "sales_executive", manager=sup)
        _user(s, "rm@example.com", "relationship_manager", manager=sup)
        _user(s, "outsider@example.com", "sales_executive")

        today = datetime.utcnow().date()
        create_lead(s, {"customer_name": "Open Lead", "phone": "9000000001", "estimated_value": "1000"}, user=fso)
        won = create_lead(
            s,
            {"customer_name": "Won Lead", "phone": "9000000002", "source": "referral", "estimated_value": "2000"},
            user=fso,
        )
        change_status(s, won, "closed_won", user=fso)
        create_lead(s, {"customer_name": "Sup Lead", "phone": "9000000003", "estimated_value": "500"}, user=sup)

        create_task(s, {"title": "Visit", "due_date": today.isoformat()}, user=fso)
        create_task(s, {"title": "Report", "due_date": today.isoformat(), "status": "completed"}, user=fso)
        create_task(s, {"title": "Undated"}, user=fso)
        create_task(s, {"title": "Next year", "due_date": (today + timedelta(days=400)).isoformat()}, user=fso)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)


def _get(s, email):
    return s.query(User).filter(User.email == email).one()


def _around_today() -> DateWindow:
    today = datetime.utcnow().date()
    return resolve_window("custom", start=(today - timedelta(days=1)).isoformat(), end=(today + timedelta(days=1)).isoformat())


def test_resolve_window_keys():
    thursday = date(2026, 3, 12)
    assert resolve_window("today", today=thursday) == DateWindow("today", thursday, thursday)
    assert resolve_window("week", today=thursday).start == date(2026, 3, 9)
    assert resolve_window("month", today=thursday).start == date(2026, 3, 1)
    assert resolve_window("quarter", today=thursday).start == date(2026, 1, 1)
    assert resolve_window("quarter", today=date(2026, 8, 20)).start == date(2026, 7, 1)
    assert resolve_window("year", today=thursday).start == date(2026, 1, 1)
    assert resolve_window("", today=thursday).key == "month"
    assert resolve_window("today", today=thursday).label == "2026-03-12"

    custom = resolve_window("custom", start="2026-01-05", end="2026-02-01")
    assert (custom.start, custom.end) == (date(2026, 1, 5), date(2026, 2, 1))
    assert custom.end_dt == datetime(2026, 2, 2)
    assert custom.label == "2026-01-05 to 2026-02-01"


@pytest.mark.parametrize(
    "start,end",
    [("2026-01-05", None), ("not-a-date", "2026-02-01"), ("2026-02-02", "2026-02-01")],
)
def test_resolve_window_bad_custom(start, end):
    with pytest.raises(ValueError):
        resolve_window("custom", start=start, end=end)


def test_resolve_window_unknown_key():
    with pytest.raises(ValueError):
        resolve_window("fortnight")


def test_kpi_scope_by_level(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        sup = _get(s, "supervisor@example.com")
        rm = _get(s, "rm@example.com")
        assert kpi_user_ids(s, fso) == {fso.id}
        assert kpi_user_ids(s, rm) == {rm.id}
        assert kpi_user_ids(s, sup) == {sup.id, fso.id, rm.id}
        assert kpi_user_ids(s, _get(s, "admin@example.com")) is None


def test_compute_kpis_field_user(app):
    with session_scope(app) as s:
        kpis = compute_kpis(s, _get(s, "fso@example.com"), _around_today())
        assert kpis == {
            "task_total": 3,
            "task_completed": 1,
            "completion_rate": 33.3,
            "conversions": 1,
            "revenue": 2000.0,
            "active_leads": 1,
            "new_leads": 2,
        }


def test_compute_kpis_team(app):
    with session_scope(app) as s:
        kpis = compute_kpis(s, _get(s, "supervisor@example.com"), _around_today())
        assert kpis["task_total"] == 3
        assert kpis["active_leads"] == 2
        assert kpis["new_leads"] == 3
        assert kpis["conversions"] == 1

        old = resolve_window("custom", start="2020-01-01", end="2020-01-31")
        empty = compute_kpis(s, _get(s, "supervisor@example.com"), old)
        assert empty["task_total"] == 0
        assert empty["completion_rate"] == 0.0
        assert empty["revenue"] == 0.0
        # Open leads are counted regardless of the window
        assert empty["active_leads"] == 2


def test_lead_breakdown(app):
    with session_scope(app) as s:
        out = lead_breakdown(s, _get(s, "fso@example.com"), _around_today())
        assert out["by_source"]["walk_in"] == 1
        assert out["by_source"]["referral"] == 1
        assert out["by_source"]["campaign"] == 0
        assert out["by_status"]["new"] == 1
        assert out["by_status"]["closed_won"] == 1
        assert out["by_status"]["qualified"] == 0


def test_team_performance_and_csv(app):
    with session_scope(app) as s:
        window = _around_today()
        rows = team_performance(s, _get(s, "supervisor@example.com"), window)
        assert [r.user.email for r in rows][0] == "fso@example.com"
        assert {r.user.email for r in rows} == {"supervisor@example.com", "fso@example.com", "rm@example.com"}
        top = rows[0]
        assert (top.leads_owned, top.won, top.conversion_rate, top.tasks_completed) == (2, 1, 50.0, 1)
        assert top.xp == 60

        data = list(csv.reader(io.StringIO(export_report_csv(rows, window).decode("utf-8"))))
        assert data[0] == ["Window", window.label]
        assert data[1] == []
        assert data[2][0] == "User"
        assert data[3][:6] == ["Fso", "fso@example.com", "Field Sales Officer", "2", "1", "50.0"]
        assert len(data) == 6


def test_reports_pages(client, app):
    _login(client, "fso@example.com")
    assert client.get("/reports").status_code == 200
    assert client.get("/reports?range=week").status_code == 200
    r = client.get("/reports?range=custom&from=2026-03-05&to=2026-03-01")
    assert r.status_code == 302
    assert client.get("/reports/export").status_code == 403

    client.get("/auth/logout")
    _login(client, "supervisor@example.com")
    r = client.get("/reports?range=quarter")
    assert r.status_code == 200
    assert b"Export CSV" in r.data
    r = client.get("/reports/export?range=year")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "attachment" in r.headers["Content-Disposition"]
    rows = list(csv.reader(io.StringIO(r.data.decode("utf-8"))))
    assert rows[0][0] == "Window"
    assert len(rows) == 3 + 3

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "report.export").one()
        assert ev.actor_user_email == "supervisor@example.com"
        assert s.query(Lead).count() == 3
