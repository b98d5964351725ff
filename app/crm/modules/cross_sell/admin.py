from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.crm.constants import PRODUCT_CATEGORIES, SEGMENTS, URGENCIES
from app.crm.db import db_session
from app.crm.modules.cross_sell.models import CrossSellRule
from app.crm.modules.cross_sell.service import (
    create_offer,
    create_rule,
    set_rule_active,
    suggest_for_customer,
    update_rule,
    validate_rule_payload,
)
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.service import can_view_customer, get_customer_by_id
from app.crm.rbac import require_permission

bp = Blueprint("cross_sell", __name__)


def _payload_from_form() -> dict:
    return {
        "product": request.form.get("product"),
        "category": request.form.get("category"),
        "base_score": request.form.get("base_score"),
        "segment": request.form.get("segment"),
        "min_income": request.form.get("min_income"),
        "max_age": request.form.get("max_age"),
        "urgency": request.form.get("urgency"),
        "timeline_days": request.form.get("timeline_days"),
        "reason": request.form.get("reason"),
        "potential": request.form.get("potential"),
        "benefits": request.form.get("benefits"),
    }


def _form_context() -> dict:
    return {"categories": PRODUCT_CATEGORIES, "segments": SEGMENTS, "urgencies": URGENCIES}


def _rule_or_404(s, rule_id: int) -> CrossSellRule:
    rule = s.get(CrossSellRule, rule_id)
    if not rule:
        abort(404)
    return rule


@bp.get("/cross-sell/rules")
@require_permission("rules.manage")
def rules_list():
    s = db_session()
    rules = s.query(CrossSellRule).order_by(CrossSellRule.is_active.desc(), CrossSellRule.base_score.desc(), CrossSellRule.product.asc()).all()
    return render_template("cross_sell/rules_list.html", rules=rules)


@bp.get("/cross-sell/rules/new")
@require_permission("rules.manage")
def rule_new_get():
    return render_template("cross_sell/rule_edit.html", rule=None, **_form_context())


@bp.post("/cross-sell/rules/new")
@require_permission("rules.manage")
def rule_new_post():
    s = db_session()
    payload = _payload_from_form()
    errs = validate_rule_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("cross_sell.rule_new_get"))
    try:
        create_rule(s, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("cross_sell.rule_new_get"))
    flash("Rule created.", "success")
    return redirect(url_for("cross_sell.rules_list"))


@bp.get("/cross-sell/rules/<int:rule_id>/edit")
@require_permission("rules.manage")
def rule_edit_get(rule_id: int):
    s = db_session()
    return render_template("cross_sell/rule_edit.html", rule=_rule_or_404(s, rule_id), **_form_context())


@bp.post("/cross-sell/rules/<int:rule_id>/edit")
@require_permission("rules.manage")
def rule_edit_post(rule_id: int):
    s = db_session()
    rule = _rule_or_404(s, rule_id)
    payload = _payload_from_form()
    errs = validate_rule_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("cross_sell.rule_edit_get", rule_id=rule_id))
    try:
        update_rule(s, rule, payload, user=g.current_user)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("cross_sell.rule_edit_get", rule_id=rule_id))
    flash("Rule updated.", "success")
    return redirect(url_for("cross_sell.rules_list"))


@bp.post("/cross-sell/rules/<int:rule_id>/toggle")
@require_permission("rules.manage")
def rule_toggle_post(rule_id: int):
    s = db_session()
    rule = _rule_or_404(s, rule_id)
    set_rule_active(s, rule, active=not rule.is_active, user=g.current_user)
    s.commit()
    flash(f"{rule.product} {'activated' if rule.is_active else 'deactivated'}.", "success")
    return redirect(url_for("cross_sell.rules_list"))


@bp.get("/cross-sell/rules/<int:rule_id>/preview")
@require_permission("rules.manage")
def rule_preview(rule_id: int):
    s = db_session()
    rule = _rule_or_404(s, rule_id)
    customer = None
    suggestions = []
    customer_id = (request.args.get("customer_id") or "").strip()
    if customer_id:
        if not customer_id.isdigit():
            flash("customer_id must be numeric", "danger")
        else:
            customer = get_customer_by_id(s, int(customer_id))
            if not customer:
                flash("Customer not found.", "danger")
            else:
                suggestions = suggest_for_customer(customer, [rule], include_inactive=True)
    customers = s.query(Customer).order_by(Customer.full_name.asc()).limit(200).all()
    return render_template(
        "cross_sell/rule_preview.html",
        rule=rule,
        customer=customer,
        customers=customers,
        suggestions=suggestions,
    )


@bp.post("/customers/<int:customer_id>/offers")
@require_permission("leads.create")
def create_offer_post(customer_id: int):
    s = db_session()
    u = g.current_user
    customer = get_customer_by_id(s, customer_id)
    if not customer or not can_view_customer(s, u, customer):
        abort(404)
    try:
        rule = _rule_or_404(s, int(request.form.get("rule_id") or "0"))
    except ValueError:
        abort(404)
    try:
        lead = create_offer(s, customer, rule, user=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("customers.customer_detail", customer_id=customer_id))
    flash(f"Offer created as lead {lead.lead_code}.", "success")
    return redirect(url_for("leads.lead_detail", lead_id=lead.id))
