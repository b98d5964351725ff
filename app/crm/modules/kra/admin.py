from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.crm.constants import KPA_CATEGORIES, KRA_FREQUENCIES, KRA_METRICS, MAX_ROLE_KRA_WEIGHT, ROLE_DEFINITIONS
from app.crm.db import db_session
from app.crm.modules.kra.models import KPA, KRA, KRATarget
from app.crm.modules.kra.service import (
    achievement_pct,
    assign_target,
    can_record_achievement,
    create_kpa,
    create_kra,
    kpa_summary,
    my_kra as my_kra_summary,
    performance_status,
    period_for,
    record_achievement,
    role_weight_total,
    set_kra_active,
    update_kpa,
    update_kra,
    validate_kpa_payload,
    validate_kra_payload,
)
from app.crm.rbac import require_permission, scope_user_ids, user_has_permission, users_in_scope
from app.crm.utils import parse_optional_float

bp = Blueprint("kra", __name__)


def _kra_payload() -> dict:
    return {
        "name": request.form.get("name"),
        "role_key": request.form.get("role_key"),
        "kpa_id": request.form.get("kpa_id"),
        "metric": request.form.get("metric"),
        "default_target": request.form.get("default_target"),
        "frequency": request.form.get("frequency"),
        "weight": request.form.get("weight"),
        "incentive": request.form.get("incentive"),
    }


def _kpa_payload() -> dict:
    return {
        "title": request.form.get("title"),
        "category": request.form.get("category"),
        "description": request.form.get("description"),
        "is_active": request.form.get("is_active"),
    }


def _form_context(s) -> dict:
    return {
        "roles": ROLE_DEFINITIONS,
        "metrics": KRA_METRICS,
        "frequencies": KRA_FREQUENCIES,
        "kpa_categories": KPA_CATEGORIES,
        "kpas": s.query(KPA).filter(KPA.is_active.is_(True)).order_by(KPA.category.asc(), KPA.title.asc()).all(),
        "max_weight": MAX_ROLE_KRA_WEIGHT,
    }


@bp.get("/kra/my")
@require_permission("kra.view")
def my_kra():
    s = db_session()
    today = date.today()
    return render_template(
        "kra/my_kra.html",
        period=period_for("monthly", today),
        quarter=period_for("quarterly", today),
        **my_kra_summary(s, g.current_user, today=today),
    )


@bp.get("/kra")
@require_permission("kra.manage")
def kra_list():
    s = db_session()
    kras = s.query(KRA).order_by(KRA.role_key.asc(), KRA.is_active.desc(), KRA.weight.desc(), KRA.name.asc()).all()
    by_role: dict[str, list[KRA]] = {key: [] for key in ROLE_DEFINITIONS}
    for k in kras:
        by_role.setdefault(k.role_key, []).append(k)
    weight_totals = {key: role_weight_total(s, key) for key in by_role}
    period = (request.args.get("period") or "").strip() or period_for("monthly", date.today())
    return render_template(
        "kra/kra_list.html",
        by_role=by_role,
        weight_totals=weight_totals,
        all_kpas=s.query(KPA).order_by(KPA.category.asc(), KPA.title.asc()).all(),
        summary=kpa_summary(s, period=period),
        period=period,
        **_form_context(s),
    )


@bp.post("/kra/new")
@require_permission("kra.manage")
def kra_new_post():
    s = db_session()
    payload = _kra_payload()
    errs = validate_kra_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("kra.kra_list"))
    try:
        create_kra(s, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("kra.kra_list"))
    flash("KRA created.", "success")
    return redirect(url_for("kra.kra_list"))


@bp.get("/kra/<int:kra_id>/edit")
@require_permission("kra.manage")
def kra_edit_get(kra_id: int):
    s = db_session()
    k = s.get(KRA, kra_id)
    if not k:
        abort(404)
    return render_template("kra/kra_edit.html", kra=k, **_form_context(s))


@bp.post("/kra/<int:kra_id>/edit")
@require_permission("kra.manage")
def kra_edit_post(kra_id: int):
    s = db_session()
    k = s.get(KRA, kra_id)
    if not k:
        abort(404)
    payload = _kra_payload()
    errs = validate_kra_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("kra.kra_edit_get", kra_id=kra_id))
    try:
        update_kra(s, k, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("kra.kra_edit_get", kra_id=kra_id))
    flash("KRA updated.", "success")
    return redirect(url_for("kra.kra_list"))


@bp.post("/kra/<int:kra_id>/toggle")
@require_permission("kra.manage")
def kra_toggle_post(kra_id: int):
    s = db_session()
    k = s.get(KRA, kra_id)
    if not k:
        abort(404)
    try:
        set_kra_active(s, k, active=not k.is_active, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("kra.kra_list"))
    flash(f"{k.name} {'activated' if k.is_active else 'deactivated'}.", "success")
    return redirect(url_for("kra.kra_list"))


@bp.post("/kpa/new")
@require_permission("kra.manage")
def kpa_new_post():
    s = db_session()
    payload = _kpa_payload()
    errs = validate_kpa_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("kra.kra_list"))
    create_kpa(s, payload, user=g.current_user)
    s.commit()
    flash("KPA created.", "success")
    return redirect(url_for("kra.kra_list"))


@bp.get("/kpa/<int:kpa_id>/edit")
@require_permission("kra.manage")
def kpa_edit_get(kpa_id: int):
    s = db_session()
    kpa = s.get(KPA, kpa_id)
    if not kpa:
        abort(404)
    return render_template("kra/kpa_edit.html", kpa=kpa, **_form_context(s))


@bp.post("/kpa/<int:kpa_id>/edit")
@require_permission("kra.manage")
def kpa_edit_post(kpa_id: int):
    s = db_session()
    kpa = s.get(KPA, kpa_id)
    if not kpa:
        abort(404)
    payload = _kpa_payload()
    errs = validate_kpa_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("kra.kpa_edit_get", kpa_id=kpa_id))
    update_kpa(s, kpa, payload, user=g.current_user)
    s.commit()
    flash("KPA updated.", "success")
    return redirect(url_for("kra.kra_list"))


@bp.get("/kra/targets")
@require_permission("kra.view")
def targets_list():
    s = db_session()
    u = g.current_user
    period = (request.args.get("period") or "").strip() or period_for("monthly", date.today())
    q = s.query(KRATarget).filter(KRATarget.period == period)
    ids = scope_user_ids(s, u)
    if ids is not None:
        q = q.filter(KRATarget.user_id.in_(ids))
    targets = q.order_by(KRATarget.user_id.asc(), KRATarget.kra_id.asc()).all()
    return render_template(
        "kra/targets.html",
        targets=targets,
        period=period,
        kras=s.query(KRA).filter(KRA.is_active.is_(True)).order_by(KRA.role_key.asc(), KRA.name.asc()).all(),
        users=users_in_scope(s, u),
        can_assign=user_has_permission(u, "kra.manage"),
        can_record=lambda kt: can_record_achievement(u, kt.user),
        achievement_pct=achievement_pct,
        performance_status=performance_status,
    )


@bp.post("/kra/targets")
@require_permission("kra.manage")
def target_assign_post():
    s = db_session()
    period = (request.form.get("period") or "").strip()
    try:
        kra_id = int(request.form.get("kra_id") or "")
        user_id = int(request.form.get("user_id") or "")
        target = parse_optional_float(request.form.get("target"))
    except ValueError:
        flash("Choose a KRA, a user and a numeric target.", "danger")
        return redirect(url_for("kra.targets_list", period=period))
    k = s.get(KRA, kra_id)
    if not k:
        abort(404)
    try:
        assign_target(s, k, user_id=user_id, period=period, target=target, actor=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("kra.targets_list", period=period))
    flash("Target saved.", "success")
    return redirect(url_for("kra.targets_list", period=period))


@bp.post("/kra/targets/<int:target_id>/achievement")
@require_permission("kra.view")
def target_achievement_post(target_id: int):
    s = db_session()
    u = g.current_user
    kt = s.get(KRATarget, target_id)
    if not kt:
        abort(404)
    if not can_record_achievement(u, kt.user):
        g.missing_permission = "kra.manage"
        abort(403)
    try:
        points = record_achievement(s, kt, request.form.get("achieved"), actor=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("kra.targets_list", period=kt.period))
    flash("Achievement recorded." + (f" {points} KRA points awarded." if points else ""), "success")
    return redirect(url_for("kra.targets_list", period=kt.period))
