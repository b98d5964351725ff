from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.crm.audit import record_event
from app.crm.constants import ACTIVITY_CHANNELS, LEAD_SOURCES, LEAD_STATUS_LABELS, LEAD_STATUSES, PRIORITIES
from app.crm.db import db_session
from app.crm.models import User
from app.crm.modules.leads.models import Lead
from app.crm.modules.leads.service import (
    assign_leads,
    can_view_lead,
    change_status,
    create_lead,
    delete_lead,
    export_leads_csv,
    get_lead_by_id,
    lead_stats,
    list_leads,
    log_activity,
    query_leads,
    update_lead,
    validate_lead_payload,
)
from app.crm.rbac import require_permission, users_in_scope
from app.crm.utils import parse_page

bp = Blueprint("leads", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _parse_filters() -> dict:
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "priority": (request.args.get("priority") or "").strip(),
        "source": (request.args.get("source") or "").strip(),
        "assigned_to_id": (request.args.get("assigned_to_id") or "").strip(),
    }
    if filters["assigned_to_id"] and not filters["assigned_to_id"].isdigit():
        flash("assigned_to_id must be numeric", "danger")
        filters["assigned_to_id"] = ""
    return filters


def _payload_from_form() -> dict:
    return {
        "customer_name": request.form.get("customer_name"),
        "phone": request.form.get("phone"),
        "email": request.form.get("email"),
        "address": request.form.get("address"),
        "source": request.form.get("source"),
        "product_interest": request.form.get("product_interest"),
        "status": request.form.get("status"),
        "priority": request.form.get("priority"),
        "estimated_value": request.form.get("estimated_value"),
        "assigned_to_id": request.form.get("assigned_to_id"),
        "follow_up_date": request.form.get("follow_up_date"),
        "notes": request.form.get("notes"),
    }


def _visible_lead_or_404(s, lead_id: int) -> Lead:
    lead = get_lead_by_id(s, lead_id)
    if not lead or not can_view_lead(s, _current_user(), lead):
        abort(404)
    return lead


def _form_context(s) -> dict:
    return {
        "statuses": LEAD_STATUSES,
        "status_labels": LEAD_STATUS_LABELS,
        "sources": LEAD_SOURCES,
        "priorities": PRIORITIES,
        "channels": ACTIVITY_CHANNELS,
        "assignees": users_in_scope(s, _current_user()),
    }


@bp.get("/leads")
@require_permission("leads.view")
def leads_list():
    s = db_session()
    u = _current_user()
    filters = _parse_filters()
    page = list_leads(
        s,
        user=u,
        filters=filters,
        page=parse_page(request.args.get("page")),
        per_page=current_app.config.get("LEADS_PER_PAGE", 50),
    )
    return render_template(
        "leads/list.html",
        page=page,
        leads=page.items,
        filters=filters,
        stats=lead_stats(s, user=u),
        **_form_context(s),
    )


@bp.get("/leads/export")
@require_permission("leads.export")
def leads_export():
    s = db_session()
    u = _current_user()
    filters = _parse_filters()
    leads = query_leads(s, user=u, filters=filters).all()
    data = export_leads_csv(leads)
    record_event(
        s,
        actor=u,
        action="lead.export",
        entity_type="Lead",
        entity_id="export",
        metadata={"filters": filters, "row_count": len(leads)},
    )
    s.commit()
    filename = f"leads_export_{date.today().strftime('%Y%m%d')}.csv"
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


@bp.get("/leads/new")
@require_permission("leads.create")
def leads_new_get():
    s = db_session()
    return render_template("leads/detail.html", lead=None, **_form_context(s))


@bp.post("/leads/new")
@require_permission("leads.create")
def leads_new_post():
    s = db_session()
    u = _current_user()
    payload = _payload_from_form()
    errs = validate_lead_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("leads.leads_new_get"))
    try:
        lead = create_lead(s, payload, user=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("leads.leads_new_get"))
    flash(f"Lead {lead.lead_code} created.", "success")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))


@bp.get("/leads/<int:lead_id>")
@require_permission("leads.view")
def lead_detail(lead_id: int):
    s = db_session()
    lead = _visible_lead_or_404(s, lead_id)
    return render_template("leads/detail.html", lead=lead, activities=lead.activities, **_form_context(s))


@bp.post("/leads/<int:lead_id>")
@require_permission("leads.edit")
def lead_update_post(lead_id: int):
    s = db_session()
    u = _current_user()
    lead = _visible_lead_or_404(s, lead_id)
    payload = _payload_from_form()
    errs = validate_lead_payload(payload, creating=False)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("leads.lead_detail", lead_id=lead.id))
    update_lead(s, lead, payload, user=u)
    s.commit()
    flash("Lead updated.", "success")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))


@bp.post("/leads/<int:lead_id>/status")
@require_permission("leads.edit")
def lead_status_post(lead_id: int):
    s = db_session()
    u = _current_user()
    lead = _visible_lead_or_404(s, lead_id)
    new_status = (request.form.get("status") or "").strip()
    try:
        changed = change_status(s, lead, new_status, user=u, reason=request.form.get("reason"))
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("leads.lead_detail", lead_id=lead_id))
    if changed:
        flash(f"Lead moved to {LEAD_STATUS_LABELS[new_status]}.", "success")
        if new_status == "closed_won" and lead.customer_id:
            flash("Customer profile linked.", "info")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))


@bp.post("/leads/<int:lead_id>/activities")
@require_permission("leads.edit")
def lead_activity_post(lead_id: int):
    s = db_session()
    u = _current_user()
    lead = _visible_lead_or_404(s, lead_id)
    try:
        log_activity(
            s,
            lead,
            {
                "channel": request.form.get("channel"),
                "outcome": request.form.get("outcome"),
                "duration_minutes": request.form.get("duration_minutes"),
                "notes": request.form.get("notes"),
                "follow_up_required": request.form.get("follow_up_required"),
                "next_follow_up_date": request.form.get("next_follow_up_date"),
            },
            user=u,
        )
        s.commit()
        flash("Activity logged.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("leads.lead_detail", lead_id=lead_id))


@bp.post("/leads/assign")
@require_permission("leads.assign")
def leads_assign_post():
    s = db_session()
    u = _current_user()
    try:
        lead_ids = [int(x) for x in request.form.getlist("lead_ids")]
        assignee_id = int(request.form.get("assignee_id") or "")
    except ValueError:
        flash("Choose leads and an assignee.", "danger")
        return redirect(url_for("leads.leads_list"))
    try:
        moved = assign_leads(s, lead_ids, assignee_id=assignee_id, user=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("leads.leads_list"))
    flash(f"{moved} lead(s) reassigned.", "success")
    return redirect(url_for("leads.leads_list"))


@bp.post("/leads/<int:lead_id>/delete")
@require_permission("leads.delete")
def lead_delete_post(lead_id: int):
    s = db_session()
    u = _current_user()
    lead = _visible_lead_or_404(s, lead_id)
    try:
        delete_lead(s, lead, user=u, reason=request.form.get("reason") or "")
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("leads.lead_detail", lead_id=lead_id))
    flash("Lead deleted.", "success")
    return redirect(url_for("leads.leads_list"))
