from __future__ import annotations

import io

from flask import Blueprint, flash, g, redirect, render_template, request, send_file, url_for

from app.crm.audit import record_event
from app.crm.db import db_session
from app.crm.modules.reports.service import (
    RANGES,
    compute_kpis,
    export_report_csv,
    lead_breakdown,
    resolve_window,
    team_performance,
)
from app.crm.rbac import require_permission, user_has_permission

bp = Blueprint("reports", __name__)


def _window_from_args():
    key = (request.args.get("range") or "month").strip().lower()
    return resolve_window(key, start=request.args.get("from"), end=request.args.get("to"))


@bp.get("/reports")
@require_permission("reports.view")
def reports_view():
    s = db_session()
    u = g.current_user
    try:
        window = _window_from_args()
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("reports.reports_view"))
    team = team_performance(s, u, window) if user_has_permission(u, "reports.team") else None
    return render_template(
        "reports/reports.html",
        window=window,
        ranges=RANGES,
        kpis=compute_kpis(s, u, window),
        breakdown=lead_breakdown(s, u, window),
        team=team,
    )


@bp.get("/reports/export")
@require_permission("reports.export")
def reports_export():
    s = db_session()
    u = g.current_user
    try:
        window = _window_from_args()
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("reports.reports_view"))
    rows = team_performance(s, u, window)
    data = export_report_csv(rows, window)
    record_event(
        s,
        actor=u,
        action="report.export",
        entity_type="Report",
        entity_id="team_performance",
        metadata={"range": window.key, "start": window.start, "end": window.end, "row_count": len(rows)},
    )
    s.commit()
    filename = f"team_performance_{window.start.strftime('%Y%m%d')}_{window.end.strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )
