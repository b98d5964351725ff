"""Tests for customers, customer-360 and cross-sell."""
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.crm import create_app
from app.crm.auth import reset_login_attempts
from app.crm.db import session_scope
from app.crm.models import Base, Role, User
from app.crm.modules.cross_sell.models import CrossSellRule
from app.crm.modules.cross_sell.service import (
    active_rules,
    create_offer,
    create_rule,
    rule_applies,
    suggest_for_customer,
    validate_rule_payload,
)
from app.crm.modules.customers.models import Customer, CustomerNote
from app.crm.modules.customers.service import (
    add_customer_note,
    add_holding,
    can_view_customer,
    create_customer,
    customer_360,
    family_group,
    find_or_create_customer,
    query_customers,
    update_customer,
    validate_customer_payload,
)
from app.crm.modules.customers.utils import age_on, canonical_customer_key, normalize_phone, segment_for_income
from app.crm.modules.leads.models import Lead
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
        _user(s, "rm@example.com", "relationship_manager")
        _user(s, "rm2@example.com", "relationship_manager")
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, email="admin@example.com"):
    client.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=True)


def _get(s, email):
    return s.query(User).filter(User.email == email).one()


def test_customer_identity_helpers():
    assert normalize_phone("+91 98200 12345") == "9820012345"
    assert canonical_customer_key("Mr. Rajesh Kumar", "+91 98200 12345") == "RAJESHKUMAR-9820012345"
    assert canonical_customer_key("rajesh  kumar") == "RAJESHKUMAR"
    assert canonical_customer_key("राजेश कुमार", "9820012345") == "राजेशकुमार-9820012345"
    assert canonical_customer_key("!!!") == ""
    assert canonical_customer_key("!!!", "98200 12345") == "9820012345"


def test_segment_and_age():
    assert segment_for_income(None) == "Basic"
    assert segment_for_income(499_999) == "Basic"
    assert segment_for_income(500_000) == "Silver"
    assert segment_for_income(1_200_000) == "Gold"
    assert segment_for_income(3_200_000) == "Premium"
    assert age_on(date(1990, 3, 11), TODAY) == 35
    assert age_on(date(1990, 3, 10), TODAY) == 36
    assert age_on(None, TODAY) is None


def test_validate_customer_payload():
    errs = validate_customer_payload({"full_name": "", "phone": "12", "email": "nope", "kyc_status": "maybe"})
    assert {e.field for e in errs} == {"full_name", "phone", "email", "kyc_status"}
    assert validate_customer_payload({"full_name": "A", "phone": "9876543210", "annual_income": "100"}) == []


def test_create_customer_dedupes_and_segments(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        c = create_customer(s, {"full_name": "Amit Mehta", "phone": "9876543210", "annual_income": "1800000"}, user=rm)
        assert c.segment == "Gold"
        assert c.relationship_manager_id == rm.id

        same = create_customer(s, {"full_name": "Mr. Amit Mehta", "phone": "09876543210", "occupation": "Engineer"}, user=rm)
        assert same.id == c.id
        assert same.occupation == "Engineer"
        assert s.query(Customer).count() == 1

        update_customer(s, c, {"full_name": "Amit Mehta", "phone": "9876543210", "annual_income": "3000000"}, user=rm)
        assert c.segment == "Premium"
        with pytest.raises(ValueError):
            update_customer(s, c, {"full_name": "Amit Mehta", "phone": "9876543210", "family_head_id": str(c.id)}, user=rm)


def test_namesakes_with_different_phones_stay_separate(app):
    with session_scope(app) as s:
        a = find_or_create_customer(s, full_name="Rajesh Kumar", phone="9820012345", email="a@example.com")
        b = find_or_create_customer(s, full_name="Rajesh Kumar", phone="9111112345", email="b@example.com")
        assert a.id != b.id
        assert a.email == "a@example.com"
        assert a.customer_code == "RAJESHKUMAR-9820012345"
        assert b.customer_code == "RAJESHKUMAR-9111112345"

        again = find_or_create_customer(s, full_name="Shri Rajesh Kumar", phone="+91 98200 12345")
        assert again.id == a.id


def test_update_recomputes_customer_code(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        a = create_customer(s, {"full_name": "Kavita Rao", "phone": "9000011111"}, user=rm)
        update_customer(s, a, {"full_name": "Kavita Rao", "phone": "9000022222"}, user=rm)
        assert a.customer_code == "KAVITARAO-9000022222"

        # The old identity is free again and becomes a new customer.
        old = find_or_create_customer(s, full_name="Kavita Rao", phone="9000011111")
        assert old.id != a.id
        assert old.customer_code == "KAVITARAO-9000011111"

        with pytest.raises(ValueError, match="already has this name and phone"):
            update_customer(s, a, {"full_name": "Kavita Rao", "phone": "9000011111"}, user=rm)
        assert a.customer_code == "KAVITARAO-9000022222"


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf"])
def test_non_finite_amounts_rejected(raw):
    errs = validate_customer_payload({"full_name": "A", "phone": "9876543210", "annual_income": raw})
    assert [e.field for e in errs] == ["annual_income"]
    errs = validate_rule_payload({"product": "Gold Loan", "category": "lending", "base_score": "50", "min_income": raw})
    assert [e.field for e in errs] == ["min_income"]


def test_customer_visibility_by_rm(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        rm2 = _get(s, "rm2@example.com")
        mine = create_customer(s, {"full_name": "Mine", "phone": "9000000001"}, user=rm)
        theirs = create_customer(s, {"full_name": "Theirs", "phone": "9000000002"}, user=rm2)
        orphan = create_customer(s, {"full_name": "Orphan", "phone": "9000000003"}, user=rm)
        orphan.relationship_manager_id = None
        s.flush()

        assert can_view_customer(s, rm, mine)
        assert not can_view_customer(s, rm, theirs)
        assert can_view_customer(s, rm, orphan)
        assert {c.full_name for c in query_customers(s, user=rm, filters={}).all()} == {"Mine", "Orphan"}


def test_family_group(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        head = create_customer(s, {"full_name": "Head", "phone": "9000000001"}, user=rm)
        spouse = create_customer(s, {"full_name": "Spouse", "phone": "9000000002", "family_head_id": str(head.id)}, user=rm)
        s.flush()
        s.refresh(spouse)
        g1 = family_group(s, spouse)
        assert g1["head"].id == head.id
        assert [m.full_name for m in g1["members"]] == ["Spouse"]


def test_holdings_and_notes(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        c = create_customer(s, {"full_name": "Sunita Rao", "phone": "9822001122"}, user=rm)
        add_holding(s, c, {"product": "Savings Account", "category": "banking", "amount": "250000"}, user=rm)
        with pytest.raises(ValueError):
            add_holding(s, c, {"product": "savings account", "category": "banking"}, user=rm)
        with pytest.raises(ValueError):
            add_holding(s, c, {"product": "Gold Loan", "category": "jewellery"}, user=rm)

        with pytest.raises(ValueError):
            add_customer_note(s, c, note_text="  ", note_date=None, user=rm)
        n = add_customer_note(s, c, note_text="Prefers morning calls", note_date="2026-03-01", user=rm)
        assert n.note_date == date(2026, 3, 1)
        assert n.author == "rm@example.com"

        view = customer_360(s, c, today=TODAY)
        assert view["holdings_total"] == 250000
        assert [h.product for h in view["holdings"]] == ["Savings Account"]
        assert len(view["notes"]) == 1


def test_cross_sell_suggestions(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        basic = create_customer(s, {"full_name": "Kiran Shah", "phone": "9811223344", "annual_income": "650000"}, user=rm)
        rules = active_rules(s)
        products = [sg.product for sg in suggest_for_customer(basic, rules, today=TODAY)]
        assert products == ["Personal Loan", "Life Insurance", "Investment Portfolio", "Credit Card Premium"]

        add_holding(s, basic, {"product": "Personal Loan", "category": "lending"}, user=rm)
        products = [sg.product for sg in suggest_for_customer(basic, rules, today=TODAY)]
        assert "Personal Loan" not in products

        premium = create_customer(s, {"full_name": "Sunita Rao", "phone": "9822001122", "annual_income": "3200000"}, user=rm)
        top = suggest_for_customer(premium, rules, today=TODAY)[0]
        assert top.product == "Private Banking"
        assert top.score == 95
        assert "Dedicated RM" in top.benefits


def test_rule_conditions(app):
    with session_scope(app) as s:
        admin = _get(s, "admin@example.com")
        rm = _get(s, "rm@example.com")
        errs = validate_rule_payload({"product": "", "category": "x", "base_score": "120"})
        assert {"product", "category", "base_score"} <= {e.field for e in errs}

        rule = create_rule(
            s,
            {"product": "Child Plan", "category": "insurance", "base_score": "70", "max_age": "40", "min_income": "500000"},
            user=admin,
        )
        young = create_customer(
            s,
            {"full_name": "Young", "phone": "9000000001", "date_of_birth": "1995-01-01", "annual_income": "600000"},
            user=rm,
        )
        older = create_customer(
            s,
            {"full_name": "Older", "phone": "9000000002", "date_of_birth": "1970-01-01", "annual_income": "600000"},
            user=rm,
        )
        unknown_age = create_customer(s, {"full_name": "Unknown", "phone": "9000000003", "annual_income": "600000"}, user=rm)
        assert rule_applies(rule, young, today=TODAY)
        assert not rule_applies(rule, older, today=TODAY)
        assert not rule_applies(rule, unknown_age, today=TODAY)

        rule.is_active = False
        assert not rule_applies(rule, young, today=TODAY)
        assert rule_applies(rule, young, today=TODAY, include_inactive=True)


def test_create_offer_makes_campaign_lead(app):
    with session_scope(app) as s:
        rm = _get(s, "rm@example.com")
        c = create_customer(s, {"full_name": "Kiran Shah", "phone": "9811223344"}, user=rm)
        rule = s.query(CrossSellRule).filter(CrossSellRule.product == "Personal Loan").one()
        lead = create_offer(s, c, rule, user=rm, today=TODAY)
        assert lead.source == "campaign"
        assert lead.customer_id == c.id
        assert lead.product_interest == "Personal Loan"
        assert lead.priority == "high"

        private = s.query(CrossSellRule).filter(CrossSellRule.product == "Private Banking").one()
        with pytest.raises(ValueError):
            create_offer(s, c, private, user=rm, today=TODAY)


def test_customer_http_flow(client, app):
    _login(client, "rm@example.com")
    r = client.post("/customers/new", data={"full_name": "Farah Khan", "phone": "9000044444", "annual_income": "900000"})
    assert r.status_code == 302
    with session_scope(app) as s:
        c = s.query(Customer).filter(Customer.full_name == "Farah Khan").one()
        cid = c.id
        assert c.segment == "Silver"

    assert client.get(f"/customers/{cid}").status_code == 200
    r = client.get(f"/customers/{cid}/360")
    assert r.status_code == 200
    assert b"Personal Loan" in r.data

    client.post(f"/customers/{cid}/notes", data={"note_text": "Met at branch"})
    client.post(f"/customers/{cid}/holdings", data={"product": "Fixed Deposit", "category": "banking", "amount": "100000"})
    with session_scope(app) as s:
        assert s.query(CustomerNote).filter(CustomerNote.customer_id == cid).count() == 1
        assert "fixed deposit" in s.get(Customer, cid).held_products

    with session_scope(app) as s:
        rule_id = s.query(CrossSellRule).filter(CrossSellRule.product == "Life Insurance").one().id
    r = client.post(f"/customers/{cid}/offers", data={"rule_id": str(rule_id)})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Lead).filter(Lead.customer_id == cid, Lead.source == "campaign").count() == 1

    # Another RM cannot open this customer
    client.get("/auth/logout")
    _login(client, "rm2@example.com")
    assert client.get(f"/customers/{cid}").status_code == 404


def test_rules_admin_requires_permission(client, app):
    _login(client, "rm@example.com")
    assert client.get("/cross-sell/rules").status_code == 403

    client.get("/auth/logout")
    _login(client)
    r = client.post(
        "/cross-sell/rules/new",
        data={"product": "Home Loan", "category": "lending", "base_score": "80", "urgency": "High", "timeline_days": "10"},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        rule = s.query(CrossSellRule).filter(CrossSellRule.product == "Home Loan").one()
        rule_id = rule.id
    client.post(f"/cross-sell/rules/{rule_id}/toggle")
    with session_scope(app) as s:
        assert s.get(CrossSellRule, rule_id).is_active is False
    assert client.get(f"/cross-sell/rules/{rule_id}/preview").status_code == 200
