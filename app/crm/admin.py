from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from app.crm.accounts import (
    AuditFilters,
    audit_events,
    create_account,
    reset_password,
    update_account,
    update_profile,
    visible_users,
)
from app.crm.db import db_session
from app.crm.models import AuditEvent, Role, User
from app.crm.modules.customers.models import Customer
from app.crm.modules.leads.models import Lead
from app.crm.modules.tasks.models import Task
from app.crm.rbac import require_permission, user_has_permission
from app.crm.utils import parse_date

bp = Blueprint("admin", __name__)


def _flash_errors(e: ValueError) -> None:
    for line in str(e).splitlines():
        flash(line, "danger")


def _account_form_context(s, *, exclude_id: int | None = None) -> dict:
    managers = s.query(User).filter(User.is_active.is_(True))
    if exclude_id is not None:
        managers = managers.filter(User.id != exclude_id)
    return {
        "roles": s.query(Role).order_by(Role.level.asc(), Role.name.asc()).all(),
        "managers": managers.order_by(User.full_name.asc(), User.email.asc()).all(),
    }


def _get_account_or_404(s, user_id: int) -> User:
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return user


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    db_error = None
    try:
        s.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db_error = str(e)
    counts = {
        "users": s.query(func.count(User.id)).scalar() or 0,
        "active_users": s.query(func.count(User.id)).filter(User.is_active.is_(True)).scalar() or 0,
        "roles": s.query(func.count(Role.id)).scalar() or 0,
        "leads": s.query(func.count(Lead.id)).scalar() or 0,
        "customers": s.query(func.count(Customer.id)).scalar() or 0,
        "open_tasks": s.query(func.count(Task.id)).filter(Task.status != "completed").scalar() or 0,
        "audit_events": s.query(func.count(AuditEvent.id)).scalar() or 0,
    }
    return render_template("admin/index.html", db_error=db_error, counts=counts)


@bp.get("/me")
@require_permission("dashboard.view")
def me():
    user = g.current_user
    return render_template(
        "admin/me.html",
        user=user,
        role_keys=sorted({r.key for r in user.roles}),
        perm_keys=sorted({p.key for r in user.roles for p in r.permissions}),
    )


@bp.post("/me")
@require_permission("dashboard.view")
def me_update():
    s = db_session()
    try:
        update_profile(s, g.current_user, request.form)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admin.me"))
    flash("Profile updated.", "success")
    return redirect(url_for("admin.me"))


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    dates = {}
    for name, raw in (("date_from", raw_from), ("date_to", raw_to)):
        try:
            dates[name] = parse_date(raw)
        except ValueError:
            dates[name] = None
            flash(f"{name} must be YYYY-MM-DD", "danger")
    filters = AuditFilters(
        action=(request.args.get("action") or "").strip(),
        actor_email=(request.args.get("actor_email") or "").strip(),
        **dates,
    )
    return render_template(
        "admin/audit/list.html",
        events=audit_events(db_session(), filters),
        action=filters.action,
        actor_email=filters.actor_email,
        date_from=raw_from,
        date_to=raw_to,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------
@bp.get("/accounts")
@require_permission("users.view")
def accounts_list():
    s = db_session()
    return render_template(
        "admin/accounts/list.html",
        users=visible_users(s, g.current_user),
        can_manage=user_has_permission(g.current_user, "users.manage"),
    )


@bp.get("/accounts/new")
@require_permission("users.manage")
def accounts_new_get():
    return render_template("admin/accounts/new.html", **_account_form_context(db_session()))


@bp.post("/accounts/new")
@require_permission("users.manage")
def accounts_new_post():
    s = db_session()
    try:
        user = create_account(s, request.form, role_ids=request.form.getlist("role_ids"), actor=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("admin.accounts_new_get"))
    flash(f"Account created for {user.email}.", "success")
    return redirect(url_for("admin.accounts_list"))


@bp.get("/accounts/<int:user_id>")
@require_permission("users.manage")
def accounts_detail(user_id: int):
    s = db_session()
    account = _get_account_or_404(s, user_id)
    return render_template("admin/accounts/detail.html", account=account, **_account_form_context(s, exclude_id=account.id))


@bp.post("/accounts/<int:user_id>/update")
@require_permission("users.manage")
def accounts_update(user_id: int):
    s = db_session()
    user = _get_account_or_404(s, user_id)
    try:
        update_account(s, user, request.form, role_ids=request.form.getlist("role_ids"), actor=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))
    flash(f"Account updated for {user.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))


@bp.post("/accounts/<int:user_id>/reset-password")
@require_permission("users.manage")
def accounts_reset_password(user_id: int):
    s = db_session()
    user = _get_account_or_404(s, user_id)
    try:
        reset_password(
            s,
            user,
            request.form.get("password") or "",
            request.form.get("password_confirm") or "",
            actor=g.current_user,
        )
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("admin.accounts_detail", user_id=user_id))
    flash(f"Password reset for {user.email}.", "success")
    return redirect(url_for("admin.accounts_detail", user_id=user_id))
