from __future__ import annotations

from flask import Blueprint, g, render_template, request

from app.crm.db import db_session
from app.crm.modules.gamification.models import Badge
from app.crm.modules.gamification.service import LEVELS, leaderboard, level_info, streak_bonus, user_badges
from app.crm.rbac import require_permission

bp = Blueprint("gamification", __name__)


@bp.get("/leaderboard")
@require_permission("gamification.view")
def leaderboard_view():
    s = db_session()
    u = g.current_user
    try:
        limit = max(1, min(int(request.args.get("limit") or "10"), 100))
    except ValueError:
        limit = 10
    badges = s.query(Badge).filter(Badge.is_active.is_(True)).order_by(Badge.xp_required.asc(), Badge.name.asc()).all()
    return render_template(
        "gamification/leaderboard.html",
        rows=leaderboard(s, limit=limit),
        me=level_info(u.total_xp or 0),
        my_badges=user_badges(s, u),
        streak_bonus=streak_bonus(u.streak_days or 0),
        badges=badges,
        levels=LEVELS,
        limit=limit,
    )
