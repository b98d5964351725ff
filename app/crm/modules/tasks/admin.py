from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, current_app, flash, g, jsonify, redirect, render_template, request, url_for

from app.crm.constants import PRIORITIES, TASK_COLUMNS, TASK_STATUSES, TASK_TYPES
from app.crm.db import db_session
from app.crm.models import User
from app.crm.modules.tasks.models import Task
from app.crm.modules.tasks.service import (
    board as group_board,
    can_view_task,
    create_task,
    delete_task,
    filter_tasks,
    get_task_by_id,
    is_overdue,
    log_time,
    move_task,
    query_tasks,
    update_task,
    validate_task_payload,
)
from app.crm.rbac import require_permission, users_in_scope
from app.crm.utils import parse_date, parse_page

bp = Blueprint("tasks", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _parse_filters() -> dict:
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "priority": (request.args.get("priority") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "assigned_to_id": (request.args.get("assigned_to_id") or "").strip(),
        "due_date": None,
        "overdue": (request.args.get("overdue") or "").strip() in ("1", "true", "on"),
    }
    if filters["assigned_to_id"] and not filters["assigned_to_id"].isdigit():
        flash("assigned_to_id must be numeric", "danger")
        filters["assigned_to_id"] = ""
    try:
        filters["due_date"] = parse_date(request.args.get("due_date"))
    except ValueError:
        flash("due_date must be YYYY-MM-DD", "danger")
    return filters


def _payload_from_form() -> dict:
    return {
        "title": request.form.get("title"),
        "description": request.form.get("description"),
        "assigned_to_id": request.form.get("assigned_to_id"),
        "status": request.form.get("status"),
        "priority": request.form.get("priority"),
        "task_type": request.form.get("task_type"),
        "due_date": request.form.get("due_date"),
        "related_lead_id": request.form.get("related_lead_id"),
        "related_customer_id": request.form.get("related_customer_id"),
        "estimated_minutes": request.form.get("estimated_minutes"),
        "xp_reward": request.form.get("xp_reward"),
    }


def _form_context(s) -> dict:
    return {
        "columns": TASK_COLUMNS,
        "priorities": PRIORITIES,
        "task_types": TASK_TYPES,
        "assignees": users_in_scope(s, _current_user()),
        "today": date.today(),
        "is_overdue": is_overdue,
    }


def _visible_task_or_404(s, task_id: int) -> Task:
    t = get_task_by_id(s, task_id)
    if not t or not can_view_task(s, _current_user(), t):
        abort(404)
    return t


@bp.get("/tasks")
@require_permission("tasks.view")
def board():
    s = db_session()
    filters = _parse_filters()
    tasks = query_tasks(s, user=_current_user(), filters=filters).all()
    return render_template("tasks/board.html", board=group_board(tasks), filters=filters, **_form_context(s))


@bp.get("/tasks/list")
@require_permission("tasks.view")
def tasks_list():
    s = db_session()
    filters = _parse_filters()
    page = filter_tasks(
        s,
        user=_current_user(),
        filters=filters,
        page=parse_page(request.args.get("page")),
        per_page=current_app.config.get("TASKS_PER_PAGE", 25),
    )
    return render_template("tasks/list.html", page=page, tasks=page.items, filters=filters, **_form_context(s))


@bp.get("/tasks/new")
@require_permission("tasks.create")
def tasks_new_get():
    s = db_session()
    return render_template(
        "tasks/detail.html",
        task=None,
        lead_id=request.args.get("lead_id") or "",
        customer_id=request.args.get("customer_id") or "",
        **_form_context(s),
    )


@bp.post("/tasks/new")
@require_permission("tasks.create")
def tasks_new_post():
    s = db_session()
    payload = _payload_from_form()
    errs = validate_task_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("tasks.tasks_new_get"))
    try:
        t = create_task(s, payload, user=_current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("tasks.tasks_new_get"))
    flash(f"Task '{t.title}' created.", "success")
    return redirect(url_for("tasks.board"))


@bp.get("/tasks/<int:task_id>")
@require_permission("tasks.view")
def task_detail(task_id: int):
    s = db_session()
    t = _visible_task_or_404(s, task_id)
    return render_template("tasks/detail.html", task=t, **_form_context(s))


@bp.post("/tasks/<int:task_id>")
@require_permission("tasks.edit")
def task_update_post(task_id: int):
    s = db_session()
    t = _visible_task_or_404(s, task_id)
    payload = _payload_from_form()
    errs = validate_task_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("tasks.task_detail", task_id=task_id))
    try:
        update_task(s, t, payload, user=_current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("tasks.task_detail", task_id=task_id))
    flash("Task updated.", "success")
    return redirect(url_for("tasks.task_detail", task_id=task_id))


@bp.post("/tasks/<int:task_id>/move")
@require_permission("tasks.edit")
def task_move_post(task_id: int):
    s = db_session()
    t = _visible_task_or_404(s, task_id)
    already_awarded = t.xp_awarded
    try:
        changed = move_task(s, t, (request.form.get("status") or "").strip(), user=_current_user())
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("tasks.board"))
    if changed and t.status == "completed":
        flash(f"Task completed. +{t.xp_reward} XP" if not already_awarded else "Task completed.", "success")
    return redirect(url_for("tasks.board"))


@bp.post("/tasks/<int:task_id>/move.json")
@require_permission("tasks.edit")
def task_move_json(task_id: int):
    s = db_session()
    u = _current_user()
    t = get_task_by_id(s, task_id)
    if not t or not can_view_task(s, u, t):
        return jsonify({"ok": False, "error": "Task not found."}), 404
    data = request.get_json(silent=True) or {}
    new_status = str(data.get("status") or "").strip()
    xp_before = t.assigned_to.total_xp or 0
    try:
        changed = move_task(s, t, new_status, user=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        return jsonify({"ok": False, "error": str(e)}), 400
    return jsonify(
        {
            "ok": True,
            "changed": changed,
            "task_id": t.id,
            "status": t.status,
            "completed_at": t.completed_at.isoformat() if t.completed_at else None,
            "xp_awarded": (t.assigned_to.total_xp or 0) - xp_before,
            "statuses": list(TASK_STATUSES),
        }
    )


@bp.post("/tasks/<int:task_id>/time")
@require_permission("tasks.edit")
def task_time_post(task_id: int):
    s = db_session()
    t = _visible_task_or_404(s, task_id)
    try:
        log_time(s, t, request.form.get("minutes"), user=_current_user())
        s.commit()
        flash("Time logged.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("tasks.task_detail", task_id=task_id))


@bp.post("/tasks/<int:task_id>/delete")
@require_permission("tasks.delete")
def task_delete_post(task_id: int):
    s = db_session()
    t = _visible_task_or_404(s, task_id)
    delete_task(s, t, user=_current_user())
    s.commit()
    flash("Task deleted.", "success")
    return redirect(url_for("tasks.board"))
