from __future__ import annotations

from flask import Blueprint, flash, g, render_template, request

from app.crm.db import db_session
from app.crm.modules.funnel.service import compute_funnel
from app.crm.rbac import can_see_user, require_permission, users_in_scope

bp = Blueprint("funnel", __name__)


@bp.get("/funnel")
@require_permission("funnel.view")
def funnel_view():
    s = db_session()
    u = g.current_user
    can_filter = u.level >= 3
    assigned_to_id = None
    raw = (request.args.get("assigned_to_id") or "").strip()
    if raw and can_filter:
        if not raw.isdigit():
            flash("assigned_to_id must be numeric", "danger")
        elif not can_see_user(s, u, int(raw)):
            flash("That user is outside your team.", "danger")
        else:
            assigned_to_id = int(raw)
    return render_template(
        "funnel/funnel.html",
        assigned_to_id=assigned_to_id,
        assignees=users_in_scope(s, u) if can_filter else [],
        **compute_funnel(s, user=u, assigned_to_id=assigned_to_id),
    )
