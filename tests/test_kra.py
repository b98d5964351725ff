"""Tests for KRA/KPA management, targets and gamification."""
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import Base, Role, User
from app.crm.modules.gamification.models import Badge, UserBadge
from app.crm.modules.gamification.service import (
    award_xp,
    kra_points,
    leaderboard,
    level_info,
    streak_bonus,
)
from app.crm.modules.kra.models import KPA, KRA, KRATarget
from app.crm.modules.kra.service import (
    achievement_pct,
    assign_target,
    can_record_achievement,
    create_kra,
    my_kra,
    performance_status,
    period_for,
    record_achievement,
    role_weight_total,
    set_kra_active,
    update_kra,
    valid_period,
    validate_kra_payload,
    weighted_score,
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


def _kra(s, name):
    return s.query(KRA).filter(KRA.name == name).one()


def test_periods():
    assert period_for("monthly", TODAY) == "2026-03"
    assert period_for("quarterly", TODAY) == "2026-Q1"
    assert period_for("quarterly", date(2026, 11, 2)) == "2026-Q4"
    assert valid_period("monthly", "2026-12")
    assert not valid_period("monthly", "2026-13")
    assert not valid_period("monthly", "2026-Q1")
    assert valid_period("quarterly", "2026-Q4")
    assert not valid_period("quarterly", "2026-Q5")


def test_scores_and_status():
    assert achievement_pct(0, 10) == 0.0
    assert achievement_pct(80, 60) == 75.0
    assert weighted_score([(30, 100), (70, 50)]) == 65.0
    # Achievement is capped before weighting; zero weights are ignored
    assert weighted_score([(50, 300), (50, 0), (0, 100)]) == 75.0
    assert weighted_score([]) == 0.0
    assert performance_status(90) == "Exceeding"
    assert performance_status(75) == "Meeting"
    assert performance_status(74.9) == "Below Target"


def test_seeded_role_weights_are_full(app):
    with session_scope(app) as s:
        for role_key in ("sales_executive", "inbound_agent", "relationship_manager", "supervisor"):
            assert role_weight_total(s, role_key) == 100
        assert s.query(KPA).count() == 6


def test_role_weight_cap(app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        payload = {"name": "Extra", "role_key": "sales_executive", "metric": "count", "default_target": "5", "weight": "10"}
        assert validate_kra_payload(payload) == []
        with pytest.raises(ValueError):
            create_kra(s, payload, user=admin)

        visits = _kra(s, "Customer Visits")
        set_kra_active(s, visits, active=False, user=admin)
        assert role_weight_total(s, "sales_executive") == 70
        extra = create_kra(s, payload, user=admin)
        assert role_weight_total(s, "sales_executive") == 80

        # Reactivating would push the role over 100
        with pytest.raises(ValueError):
            set_kra_active(s, visits, active=True, user=admin)
        update_kra(s, extra, {**payload, "weight": "30"}, user=admin)
        assert role_weight_total(s, "sales_executive") == 100

    errs = validate_kra_payload({"name": "", "role_key": "pilot", "default_target": "0", "weight": "101"})
    assert {e.field for e in errs} == {"name", "role_key", "default_target", "weight"}


def test_assign_target_and_achievement_points(app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        fso = _get(s, "fso@example.com")
        visits = _kra(s, "Customer Visits")

        with pytest.raises(ValueError):
            assign_target(s, visits, user_id=fso.id, period="2026-Q1", target=None, actor=admin)
        kt = assign_target(s, visits, user_id=fso.id, period="2026-03", target=None, actor=admin)
        assert kt.target == 100
        again = assign_target(s, visits, user_id=fso.id, period="2026-03", target=80, actor=admin)
        assert again.id == kt.id
        assert kt.target == 80

        assert record_achievement(s, kt, "60", actor=admin, today=TODAY) == 0
        assert fso.total_xp == 0
        assert record_achievement(s, kt, "80", actor=admin, today=TODAY) == 150
        assert fso.total_xp == 150
        assert kt.points_awarded is True
        # Points are awarded once per target
        assert record_achievement(s, kt, "120", actor=admin, today=TODAY) == 0
        assert fso.total_xp == 150

        with pytest.raises(ValueError):
            record_achievement(s, kt, "-1", actor=admin, today=TODAY)
        with pytest.raises(ValueError):
            record_achievement(s, kt, "lots", actor=admin, today=TODAY)


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "Infinity"])
def test_non_finite_numbers_rejected(app, raw):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        fso = _get(s, "fso@example.com")
        visits = _kra(s, "Customer Visits")

        with pytest.raises(ValueError):
            assign_target(s, visits, user_id=fso.id, period="2026-03", target=float(raw), actor=admin)
        kt = assign_target(s, visits, user_id=fso.id, period="2026-03", target=80, actor=admin)
        with pytest.raises(ValueError):
            record_achievement(s, kt, raw, actor=admin, today=TODAY)
        assert kt.points_awarded is False
        assert fso.total_xp == 0

        errs = validate_kra_payload({"name": "X", "role_key": "sales_executive", "default_target": raw, "weight": "5"})
        assert [e.field for e in errs] == ["default_target"]


def test_can_record_achievement(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        other = _get(s, "other@example.com")
        sup = _get(s, "supervisor@example.com")
        admin = _get(s, "admin@example.com")
        assert can_record_achievement(sup, fso)
        assert not can_record_achievement(sup, other)
        assert not can_record_achievement(fso, fso)
        assert can_record_achievement(admin, other)


def test_my_kra_summary(app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        fso = _get(s, "fso@example.com")
        visits = _kra(s, "Customer Visits")
        shgs = _kra(s, "SHGs Created")
        kt1 = assign_target(s, visits, user_id=fso.id, period="2026-03", target=100, actor=admin)
        kt2 = assign_target(s, shgs, user_id=fso.id, period="2026-03", target=20, actor=admin)
        assign_target(s, shgs, user_id=fso.id, period="2026-02", target=20, actor=admin)
        kt1.achieved = 90
        kt2.achieved = 10
        s.flush()

        summary = my_kra(s, fso, today=TODAY)
        assert len(summary["rows"]) == 2
        # (30 * 90 + 40 * 50) / 70
        assert summary["score"] == 67.1
        assert summary["status"] == "Below Target"


def test_level_info_and_bonuses():
    info = level_info(0)
    assert (info.level, info.title, info.progress) == (1, "Newcomer", 0)
    info = level_info(850)
    assert info.level == 2
    assert info.next_level_xp == 1200
    assert info.progress == 50
    assert info.xp_to_next == 350
    top = level_info(20000)
    assert top.level == 8
    assert top.progress == 100

    assert [streak_bonus(d) for d in (0, 3, 7, 14, 30)] == [0, 50, 100, 200, 500]
    assert [kra_points(p, 100) for p in (10, 60, 80, 100, 120)] == [25, 50, 100, 150, 200]
    assert kra_points(10, 0) == 25


def test_award_xp_streak_and_badges(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        granted = award_xp(s, fso, 10, reason="test", today=date(2026, 3, 1))
        assert [b.name for b in granted] == ["First Steps"]
        assert fso.streak_days == 1

        award_xp(s, fso, 10, reason="test", today=date(2026, 3, 1))
        assert fso.streak_days == 1
        award_xp(s, fso, 10, reason="test", today=date(2026, 3, 2))
        assert fso.streak_days == 2
        award_xp(s, fso, 10, reason="test", today=date(2026, 3, 5))
        assert fso.streak_days == 1

        granted = award_xp(s, fso, 1200, reason="test", today=date(2026, 3, 5))
        assert [b.name for b in granted] == ["Lead Hunter", "Deal Closer"]
        assert s.query(UserBadge).filter(UserBadge.user_id == fso.id).count() == 3

        with pytest.raises(ValueError):
            award_xp(s, fso, 0, reason="nothing")


def test_inactive_badges_not_granted(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        s.query(Badge).filter(Badge.name == "First Steps").one().is_active = False
        s.flush()
        assert award_xp(s, fso, 5, reason="test", today=TODAY) == []


def test_leaderboard_orders_by_xp(app):
    with session_scope(app) as s:
        fso = _get(s, "fso@example.com")
        other = _get(s, "other@example.com")
        award_xp(s, fso, 600, reason="test", today=TODAY)
        award_xp(s, other, 100, reason="test", today=TODAY)
        rows = leaderboard(s, limit=2)
        assert [r.user.email for r in rows] == ["fso@example.com", "other@example.com"]
        assert rows[0].rank == 1
        assert rows[0].level == 2
        assert rows[0].latest_badge == "Lead Hunter"
        assert rows[0].role_name == "Field Sales Officer"


def test_kra_pages_and_manager_recording(client, app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        fso = _get(s, "fso@example.com")
        kt = assign_target(s, _kra(s, "Customer Visits"), user_id=fso.id, period=period_for("monthly", date.today()), target=10, actor=admin)
        target_id = kt.id

    _login(client, "fso@example.com")
    assert client.get("/kra/my").status_code == 200
    assert client.get("/kra").status_code == 403
    assert client.post(f"/kra/targets/{target_id}/achievement", data={"achieved": "10"}).status_code == 403

    client.get("/auth/logout")
    _login(client, "supervisor@example.com")
    r = client.post(f"/kra/targets/{target_id}/achievement", data={"achieved": "10"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"150 KRA points awarded" in r.data
    with session_scope(app) as s:
        assert s.get(KRATarget, target_id).points_awarded is True
        assert _get(s, "fso@example.com").total_xp == 150

    client.get("/auth/logout")
    _login(client)
    r = client.post(
        "/kra/targets",
        data={"kra_id": "", "user_id": "", "target": "", "period": "2026-03"},
        follow_redirects=True,
    )
    assert b"Choose a KRA" in r.data
    assert client.get("/leaderboard").status_code == 200
