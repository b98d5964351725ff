from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for
from sqlalchemy.orm import Session

from app.crm.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → redirect to login (UX + reduces confusion).
            if not user or not user.is_active:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def scope_user_ids(s: Session, user: User) -> set[int] | None:
    """
    User ids whose records `user` may see.

    None means unrestricted (admins and holders of data.view_all).
    Supervisors (level 3) see themselves plus their direct and indirect reports.
    Everyone else sees only their own records.
    """
    if user_has_permission(user, "data.view_all"):
        return None
    if user.level < 3:
        return {user.id}

    ids = {user.id}
    frontier = {user.id}
    while frontier:
        rows = s.query(User.id).filter(User.manager_id.in_(frontier)).all()
        frontier = {r[0] for r in rows} - ids
        ids |= frontier
    return ids


def can_see_user(s: Session, viewer: User, owner_id: int | None) -> bool:
    ids = scope_user_ids(s, viewer)
    if ids is None:
        return True
    return owner_id is not None and owner_id in ids


def users_in_scope(s: Session, user: User) -> list[User]:
    ids = scope_user_ids(s, user)
    q = s.query(User).filter(User.is_active.is_(True))
    if ids is not None:
        q = q.filter(User.id.in_(ids))
    return q.order_by(User.full_name.asc(), User.email.asc()).all()


# (label, endpoint, permission) in menu order
NAVIGATION = (
    ("Dashboard", "dashboard.index", "dashboard.view"),
    ("Leads", "leads.leads_list", "leads.view"),
    ("Tasks", "tasks.board", "tasks.view"),
    ("Customers", "customers.customers_list", "customers.view"),
    ("Sales Funnel", "funnel.funnel_view", "funnel.view"),
    ("My KRA", "kra.my_kra", "kra.view"),
    ("Leaderboard", "gamification.leaderboard_view", "gamification.view"),
    ("Territories", "territories.territories_list", "territories.view"),
    ("Reports", "reports.reports_view", "reports.view"),
    ("KRA / KPA Setup", "kra.kra_list", "kra.manage"),
    ("Cross-sell Rules", "cross_sell.rules_list", "rules.manage"),
    ("Users", "admin.accounts_list", "users.view"),
    ("Audit Trail", "admin.audit_list", "admin.view"),
)


def navigation(user: User | None) -> list[tuple[str, str]]:
    """Menu entries (label, endpoint) the user's permissions allow."""
    if not user:
        return []
    return [(label, endpoint) for label, endpoint, perm in NAVIGATION if user_has_permission(user, perm)]
