from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.crm.constants import TERRITORY_POTENTIALS
from app.crm.db import db_session
from app.crm.modules.territories.models import Territory
from app.crm.modules.territories.service import (
    create_territory,
    current_leads,
    performance,
    query_territories,
    territory_stats,
    update_territory,
    validate_territory_payload,
)
from app.crm.rbac import require_permission, users_in_scope

bp = Blueprint("territories", __name__)


def _payload_from_form() -> dict:
    return {
        "code": request.form.get("code"),
        "name": request.form.get("name"),
        "area": request.form.get("area"),
        "assigned_user_id": request.form.get("assigned_user_id"),
        "population": request.form.get("population"),
        "businesses": request.form.get("businesses"),
        "monthly_target": request.form.get("monthly_target"),
        "achieved": request.form.get("achieved"),
        "potential": request.form.get("potential"),
        "is_active": request.form.get("is_active"),
    }


@bp.get("/territories")
@require_permission("territories.view")
def territories_list():
    s = db_session()
    show_inactive = (request.args.get("inactive") or "") == "1"
    territories = query_territories(s, user=g.current_user, include_inactive=show_inactive).all()
    return render_template(
        "territories/list.html",
        territories=territories,
        stats=territory_stats(territories),
        lead_counts=current_leads(s, territories),
        performance=performance,
        show_inactive=show_inactive,
    )


@bp.get("/territories/new")
@require_permission("territories.manage")
def territory_new_get():
    s = db_session()
    return render_template(
        "territories/edit.html",
        territory=None,
        potentials=TERRITORY_POTENTIALS,
        users=users_in_scope(s, g.current_user),
    )


@bp.post("/territories/new")
@require_permission("territories.manage")
def territory_new_post():
    s = db_session()
    payload = _payload_from_form()
    payload["is_active"] = "1"
    errs = validate_territory_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("territories.territory_new_get"))
    try:
        create_territory(s, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("territories.territory_new_get"))
    flash("Territory created.", "success")
    return redirect(url_for("territories.territories_list"))


@bp.get("/territories/<int:territory_id>/edit")
@require_permission("territories.manage")
def territory_edit_get(territory_id: int):
    s = db_session()
    t = s.get(Territory, territory_id)
    if not t:
        abort(404)
    return render_template(
        "territories/edit.html",
        territory=t,
        potentials=TERRITORY_POTENTIALS,
        users=users_in_scope(s, g.current_user),
    )


@bp.post("/territories/<int:territory_id>/edit")
@require_permission("territories.manage")
def territory_edit_post(territory_id: int):
    s = db_session()
    t = s.get(Territory, territory_id)
    if not t:
        abort(404)
    payload = _payload_from_form()
    errs = validate_territory_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("territories.territory_edit_get", territory_id=territory_id))
    try:
        update_territory(s, t, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("territories.territory_edit_get", territory_id=territory_id))
    flash("Territory updated.", "success")
    return redirect(url_for("territories.territories_list"))
