"""
User accounts, self-service profile and audit trail queries.

Admins (users.manage) create and edit accounts; supervisors (users.view)
see their own reporting line. Every change is written to the audit trail.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from werkzeug.security import generate_password_hash

from app.crm.audit import record_event
from app.crm.models import AuditEvent, Role, User
from app.crm.rbac import scope_user_ids
from app.crm.utils import clean

PROFILE_FIELDS = ("full_name", "employee_id", "designation", "phone", "branch")
MIN_PASSWORD_LENGTH = 8
AUDIT_PAGE_LIMIT = 200

_EMAIL = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_PHONE = re.compile(r"[0-9+\-() ]{7,20}")


@dataclass(frozen=True)
class AuditFilters:
    action: str = ""
    actor_email: str = ""
    date_from: date | None = None
    date_to: date | None = None


def password_errors(password: str, confirm: str) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    if password != confirm:
        return ["Passwords do not match."]
    return []


def resolve_manager(s, raw: Any, *, exclude_user_id: int | None = None) -> int | None:
    v = clean(raw)
    if v is None:
        return None
    if not v.isdigit():
        raise ValueError("Manager must be a user id.")
    mid = int(v)
    if exclude_user_id is not None and mid == exclude_user_id:
        raise ValueError("A user cannot be their own manager.")
    if not s.query(User).filter(User.id == mid, User.is_active.is_(True)).one_or_none():
        raise ValueError("Manager not found or inactive.")
    return mid


def roles_by_id(s, raw_ids: list[str]) -> list[Role]:
    ids = [int(r) for r in raw_ids if str(r).isdigit()]
    if not ids:
        return []
    return s.query(Role).filter(Role.id.in_(ids)).order_by(Role.level.asc()).all()


def visible_users(s, viewer: User) -> list[User]:
    q = s.query(User)
    ids = scope_user_ids(s, viewer)
    if ids is not None:
        q = q.filter(User.id.in_(ids))
    return q.order_by(User.full_name.asc(), User.email.asc()).all()


def _snapshot(user: User) -> dict[str, Any]:
    return {
        "is_active": user.is_active,
        "roles": [r.key for r in user.roles],
        "manager_id": user.manager_id,
        **{f: getattr(user, f) for f in PROFILE_FIELDS},
    }


def create_account(s, payload: dict[str, Any], *, role_ids: list[str], actor: User) -> User:
    """
    Raises ValueError carrying every problem found, one per line, so the
    form can show them all at once.
    """
    email = (clean(payload.get("email")) or "").lower()
    password = payload.get("password") or ""

    errors: list[str] = []
    if not email:
        errors.append("Email is required.")
    elif not _EMAIL.match(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")
    errors += password_errors(password, payload.get("password_confirm") or "")
    manager_id = None
    try:
        manager_id = resolve_manager(s, payload.get("manager_id"))
    except ValueError as e:
        errors.append(str(e))
    if errors:
        raise ValueError("\n".join(errors))

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        is_active=True,
        manager_id=manager_id,
        total_xp=0,
        streak_days=0,
        **{f: clean(payload.get(f)) for f in PROFILE_FIELDS},
    )
    user.roles.extend(roles_by_id(s, role_ids))
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": email, "roles": [r.key for r in user.roles], "manager_id": manager_id, "branch": user.branch},
    )
    return user


def update_account(s, user: User, payload: dict[str, Any], *, role_ids: list[str], actor: User) -> User:
    if user.id == actor.id:
        raise ValueError("You cannot modify your own account from this page.")
    manager_id = resolve_manager(s, payload.get("manager_id"), exclude_user_id=user.id)

    before = _snapshot(user)
    user.is_active = payload.get("is_active") == "1"
    user.manager_id = manager_id
    for f in PROFILE_FIELDS:
        setattr(user, f, clean(payload.get(f)))
    user.roles[:] = roles_by_id(s, role_ids)
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": _snapshot(user)},
    )
    return user


def reset_password(s, user: User, password: str, confirm: str, *, actor: User) -> None:
    errors = password_errors(password, confirm)
    if errors:
        raise ValueError(errors[0])
    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=actor,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_email": user.email, "reset_by": actor.email},
    )


def update_profile(s, user: User, payload: dict[str, Any]) -> None:
    """Self-service: users may change their own name and phone only."""
    phone = clean(payload.get("phone"))
    if phone and not _PHONE.fullmatch(phone):
        raise ValueError("Phone must contain 7-20 digits.")
    before = {"full_name": user.full_name, "phone": user.phone}
    user.full_name = clean(payload.get("full_name"))
    user.phone = phone
    record_event(
        s,
        actor=user,
        action="user.update_profile",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": {"full_name": user.full_name, "phone": user.phone}},
    )


def audit_events(s, filters: AuditFilters) -> list[AuditEvent]:
    """Newest first; action and actor match on substrings, dates are inclusive."""
    q = s.query(AuditEvent)
    if filters.action:
        q = q.filter(AuditEvent.action.like(f"%{filters.action}%"))
    if filters.actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{filters.actor_email.lower()}%"))
    if filters.date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_PAGE_LIMIT).all()
