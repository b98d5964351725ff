from __future__ import annotations

from flask import Blueprint, g, render_template

from app.crm.db import db_session
from app.crm.modules.dashboard.service import dashboard_context
from app.crm.rbac import require_permission

bp = Blueprint("dashboard", __name__)


@bp.get("/dashboard")
@require_permission("dashboard.view")
def index():
    s = db_session()
    u = g.current_user
    role = u.primary_role
    return render_template(
        "dashboard/index.html",
        role_name=role.name if role else "No role",
        **dashboard_context(s, u),
    )
