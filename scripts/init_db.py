"""
Seed reference data (idempotent).

Usage:
    python scripts/init_db.py            # permissions, roles, admin, rules, badges, KRAs
    python scripts/init_db.py --demo     # ... plus a small demo team with leads/tasks/customers
"""

import argparse
import os
import sys
from datetime import date, timedelta
from pathlib import Path

from werkzeug.security import generate_password_hash
from sqlalchemy.orm import Session

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.crm.constants import KPA_CATEGORIES, PERMISSIONS, ROLE_DEFINITIONS
from app.crm.models import Permission, Role, User
from app.crm.modules.cross_sell.models import CrossSellRule
from app.crm.modules.cross_sell.service import DEFAULT_RULES
from app.crm.modules.gamification.models import Badge
from app.crm.modules.gamification.service import DEFAULT_BADGES
from app.crm.modules.kra.models import KPA, KRA
from app.crm.modules.kra.service import DEFAULT_KRAS, assign_target, period_for
from scripts._db_utils import script_session


def seed_reference_data(s: Session, *, admin_email: str, admin_password: str) -> User:
    """
    Permissions, roles, the admin user, cross-sell rules, badges, KPAs and KRAs.
    Does NOT overwrite an existing admin user's password.
    """
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS.items():
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p
    s.flush()

    roles: dict[str, Role] = {}
    for key, (name, description, level, perm_keys) in ROLE_DEFINITIONS.items():
        r = s.query(Role).filter(Role.key == key).one_or_none()
        if not r:
            r = Role(key=key, name=name, description=description, level=level)
            s.add(r)
        for pk in perm_keys:
            if perms[pk] not in r.permissions:
                r.permissions.append(perms[pk])
        roles[key] = r
    s.flush()

    admin = s.query(User).filter(User.email == admin_email).one_or_none()
    if not admin:
        admin = User(
            email=admin_email,
            password_hash=generate_password_hash(admin_password),
            is_active=True,
            full_name="MIS Administrator",
            designation="Admin/MIS Officer",
            total_xp=0,
            streak_days=0,
        )
        s.add(admin)
    if roles["admin"] not in admin.roles:
        admin.roles.append(roles["admin"])

    for rule in DEFAULT_RULES:
        if not s.query(CrossSellRule).filter(CrossSellRule.product == rule["product"]).one_or_none():
            s.add(CrossSellRule(is_active=True, **rule))

    for name, description, icon, color, xp_required, category in DEFAULT_BADGES:
        if not s.query(Badge).filter(Badge.name == name).one_or_none():
            s.add(
                Badge(
                    name=name,
                    description=description,
                    icon=icon,
                    color=color,
                    xp_required=xp_required,
                    category=category,
                    is_active=True,
                )
            )

    kpas: dict[str, KPA] = {}
    for category in KPA_CATEGORIES:
        kpa = s.query(KPA).filter(KPA.category == category).order_by(KPA.id.asc()).first()
        if not kpa:
            kpa = KPA(title=category, category=category, is_active=True)
            s.add(kpa)
        kpas[category] = kpa
    s.flush()

    for role_key, name, metric, target, frequency, weight, category in DEFAULT_KRAS:
        exists = s.query(KRA).filter(KRA.role_key == role_key, KRA.name == name).one_or_none()
        if not exists:
            s.add(
                KRA(
                    name=name,
                    role_key=role_key,
                    kpa_id=kpas[category].id,
                    metric=metric,
                    default_target=target,
                    frequency=frequency,
                    weight=weight,
                    is_active=True,
                )
            )
    s.flush()
    return admin


# (email, full name, role, designation, branch, manager email)
_DEMO_USERS = (
    ("supervisor@salescrm.local", "Priya Sharma", "supervisor", "Branch Supervisor", "Andheri", None),
    ("rm@salescrm.local", "Rajesh Kumar", "relationship_manager", "Relationship Manager", "Andheri", "supervisor@salescrm.local"),
    ("fso@salescrm.local", "Anita Desai", "sales_executive", "Field Sales Officer", "Andheri", "supervisor@salescrm.local"),
    ("agent@salescrm.local", "Vikram Patel", "inbound_agent", "Inbound Contact Agent", "Andheri", "supervisor@salescrm.local"),
)


def seed_demo_data(s: Session, *, admin: User, password: str, today: date | None = None) -> None:
    """A small branch team with customers, leads, tasks, territories and KRA targets."""
    from app.crm.modules.customers.service import create_customer
    from app.crm.modules.leads.service import create_lead
    from app.crm.modules.tasks.service import create_task
    from app.crm.modules.territories.service import create_territory

    today = today or date.today()
    if s.query(User).filter(User.email == _DEMO_USERS[0][0]).one_or_none():
        print("Demo data already present; skipping.")
        return

    users: dict[str, User] = {}
    for email, full_name, role_key, designation, branch, manager_email in _DEMO_USERS:
        u = User(
            email=email,
            password_hash=generate_password_hash(password),
            is_active=True,
            full_name=full_name,
            designation=designation,
            branch=branch,
            manager_id=users[manager_email].id if manager_email else None,
            total_xp=0,
            streak_days=0,
        )
        u.roles.append(s.query(Role).filter(Role.key == role_key).one())
        s.add(u)
        s.flush()
        users[email] = u

    rm = users["rm@salescrm.local"]
    fso = users["fso@salescrm.local"]
    agent = users["agent@salescrm.local"]

    for payload in (
        {"full_name": "Amit Mehta", "phone": "9876543210", "occupation": "Software Engineer", "annual_income": "1800000"},
        {"full_name": "Sunita Rao", "phone": "9822001122", "occupation": "Doctor", "annual_income": "3200000"},
        {"full_name": "Kiran Shah", "phone": "9811223344", "occupation": "Shop Owner", "annual_income": "650000"},
    ):
        create_customer(s, {**payload, "kyc_status": "verified"}, user=rm)

    for owner, payload in (
        (fso, {"customer_name": "Ravi Verma", "phone": "9000011111", "source": "walk_in", "product_interest": "Personal Loan", "estimated_value": "500000", "follow_up_date": today.isoformat()}),
        (fso, {"customer_name": "Meena Iyer", "phone": "9000022222", "source": "referral", "product_interest": "Fixed Deposit", "estimated_value": "200000", "status": "qualified"}),
        (agent, {"customer_name": "Arjun Nair", "phone": "9000033333", "source": "whatsapp", "product_interest": "Credit Card", "estimated_value": "50000", "follow_up_date": (today - timedelta(days=2)).isoformat()}),
        (rm, {"customer_name": "Farah Khan", "phone": "9000044444", "source": "campaign", "product_interest": "Life Insurance", "estimated_value": "1500000", "status": "proposal", "priority": "high"}),
    ):
        create_lead(s, payload, user=owner, today=today)

    for owner, payload in (
        (fso, {"title": "Visit Ravi Verma for documents", "task_type": "visit", "priority": "high", "due_date": today.isoformat(), "estimated_minutes": "60"}),
        (fso, {"title": "Submit weekly visit report", "task_type": "documentation", "due_date": (today - timedelta(days=1)).isoformat()}),
        (agent, {"title": "Call back WhatsApp enquiries", "task_type": "call", "status": "in_progress", "due_date": today.isoformat()}),
        (rm, {"title": "Portfolio review with Sunita Rao", "task_type": "meeting", "priority": "high", "due_date": (today + timedelta(days=3)).isoformat()}),
    ):
        create_task(s, payload, user=owner)

    for payload in (
        {"code": "AND-E", "name": "Andheri East", "area": "Andheri East, Marol, Saki Naka", "assigned_user_id": fso.id, "population": "250000", "businesses": "1200", "monthly_target": "50", "achieved": "38", "potential": "High"},
        {"code": "AND-W", "name": "Andheri West", "area": "Lokhandwala, Versova, Four Bungalows", "assigned_user_id": agent.id, "population": "180000", "businesses": "950", "monthly_target": "40", "achieved": "22", "potential": "Medium"},
    ):
        create_territory(s, payload, user=admin)

    for u in (rm, fso, agent):
        for k in s.query(KRA).filter(KRA.role_key == u.primary_role.key, KRA.is_active.is_(True)).all():
            assign_target(s, k, user_id=u.id, period=period_for(k.frequency, today), target=None, actor=admin)

    print(f"Seeded demo team: {', '.join(users)} (password from ADMIN_PASSWORD)")


def seed_only(*, database_url: str | None = None, demo: bool = False) -> None:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@salescrm.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///crm.db").strip()

    # Direct engine/session so release can run this without importing app.wsgi.
    with script_session(db_url) as s:
        admin = seed_reference_data(s, admin_email=admin_email, admin_password=admin_password)
        if demo:
            seed_demo_data(s, admin=admin, password=admin_password)

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the SalesCRM database.")
    parser.add_argument("--demo", action="store_true", help="Also create a demo branch team with sample data")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    args = parser.parse_args()
    seed_only(database_url=args.database_url, demo=args.demo)


if __name__ == "__main__":
    main()
