from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.crm.constants import KYC_STATUSES, PRODUCT_CATEGORIES, SEGMENTS
from app.crm.db import db_session
from app.crm.models import User
from app.crm.modules.customers.models import Customer, CustomerHolding, CustomerNote
from app.crm.modules.customers.service import (
    add_customer_note,
    add_holding,
    can_view_customer,
    create_customer,
    customer_360,
    delete_customer_note,
    edit_customer_note,
    family_group,
    get_customer_by_id,
    query_customers,
    remove_holding,
    update_customer,
    validate_customer_payload,
)
from app.crm.rbac import require_permission, users_in_scope
from app.crm.utils import paginate, parse_page

bp = Blueprint("customers", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload_from_form() -> dict:
    return {
        "full_name": request.form.get("full_name"),
        "phone": request.form.get("phone"),
        "email": request.form.get("email"),
        "date_of_birth": request.form.get("date_of_birth"),
        "address": request.form.get("address"),
        "occupation": request.form.get("occupation"),
        "annual_income": request.form.get("annual_income"),
        "kyc_status": request.form.get("kyc_status"),
        "relationship_manager_id": request.form.get("relationship_manager_id"),
        "family_head_id": request.form.get("family_head_id"),
    }


def _visible_customer_or_404(s, customer_id: int) -> Customer:
    c = get_customer_by_id(s, customer_id)
    if not c or not can_view_customer(s, _current_user(), c):
        abort(404)
    return c


def _check_rm(s, payload: dict) -> str | None:
    raw = (payload.get("relationship_manager_id") or "").strip()
    if not raw:
        return None
    rm = s.query(User).filter(User.id == int(raw), User.is_active.is_(True)).one_or_none()
    if not rm:
        return "Relationship manager not found or inactive."
    return None


@bp.get("/customers")
@require_permission("customers.view")
def customers_list():
    s = db_session()
    u = _current_user()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "segment": (request.args.get("segment") or "").strip(),
        "rm_id": (request.args.get("rm_id") or "").strip(),
    }
    if filters["rm_id"] and not filters["rm_id"].isdigit():
        flash("rm_id must be numeric", "danger")
        filters["rm_id"] = ""
    page = paginate(
        query_customers(s, user=u, filters=filters),
        page=parse_page(request.args.get("page")),
        per_page=current_app.config.get("LEADS_PER_PAGE", 50),
    )
    return render_template(
        "customers/list.html",
        page=page,
        customers=page.items,
        filters=filters,
        segments=SEGMENTS,
        reps=users_in_scope(s, u),
    )


@bp.get("/customers/new")
@require_permission("customers.create")
def customers_new_get():
    s = db_session()
    return render_template(
        "customers/detail.html",
        customer=None,
        family=None,
        kyc_statuses=KYC_STATUSES,
        categories=PRODUCT_CATEGORIES,
        reps=users_in_scope(s, _current_user()),
    )


@bp.post("/customers/new")
@require_permission("customers.create")
def customers_new_post():
    s = db_session()
    u = _current_user()
    payload = _payload_from_form()
    errs = validate_customer_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("customers.customers_new_get"))
    rm_err = _check_rm(s, payload)
    if rm_err:
        flash(rm_err, "danger")
        return redirect(url_for("customers.customers_new_get"))
    try:
        c = create_customer(s, payload, user=u)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("customers.customers_new_get"))
    flash("Customer saved.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.get("/customers/<int:customer_id>")
@require_permission("customers.view")
def customer_detail(customer_id: int):
    s = db_session()
    c = _visible_customer_or_404(s, customer_id)
    notes = (
        s.query(CustomerNote)
        .filter(CustomerNote.customer_id == c.id)
        .order_by(CustomerNote.created_at.desc(), CustomerNote.id.desc())
        .all()
    )
    return render_template(
        "customers/detail.html",
        customer=c,
        notes=notes,
        family=family_group(s, c),
        kyc_statuses=KYC_STATUSES,
        categories=PRODUCT_CATEGORIES,
        reps=users_in_scope(s, _current_user()),
    )


@bp.get("/customers/<int:customer_id>/360")
@require_permission("customers.360")
def customer_360_view(customer_id: int):
    s = db_session()
    c = _visible_customer_or_404(s, customer_id)
    return render_template("customers/customer_360.html", **customer_360(s, c))


@bp.post("/customers/<int:customer_id>")
@require_permission("customers.edit")
def customer_update_post(customer_id: int):
    s = db_session()
    u = _current_user()
    c = _visible_customer_or_404(s, customer_id)
    payload = _payload_from_form()
    errs = validate_customer_payload(payload)
    if errs:
        flash("; ".join([f"{e.field}: {e.message}" for e in errs]), "danger")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    rm_err = _check_rm(s, payload)
    if rm_err:
        flash(rm_err, "danger")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    try:
        update_customer(s, c, payload, user=u, reason=(request.form.get("reason") or "").strip() or None)
        s.commit()
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("customers.customer_detail", customer_id=c.id))
    flash("Customer updated.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/notes")
@require_permission("customers.notes")
def customer_note_add(customer_id: int):
    s = db_session()
    u = _current_user()
    c = _visible_customer_or_404(s, customer_id)
    try:
        add_customer_note(
            s,
            c,
            note_text=request.form.get("note_text") or "",
            note_date=request.form.get("note_date"),
            user=u,
        )
        s.commit()
        flash("Note added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/notes/<int:note_id>/edit")
@require_permission("customers.notes")
def customer_note_edit(customer_id: int, note_id: int):
    s = db_session()
    u = _current_user()
    _visible_customer_or_404(s, customer_id)
    note = s.query(CustomerNote).filter(CustomerNote.id == note_id, CustomerNote.customer_id == customer_id).one_or_none()
    if not note:
        flash("Note not found.", "danger")
        return redirect(url_for("customers.customer_detail", customer_id=customer_id))
    try:
        edit_customer_note(s, note, note_text=request.form.get("note_text") or "", user=u)
        s.commit()
        flash("Note updated.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/notes/<int:note_id>/delete")
@require_permission("customers.notes")
def customer_note_delete(customer_id: int, note_id: int):
    s = db_session()
    u = _current_user()
    _visible_customer_or_404(s, customer_id)
    note = s.query(CustomerNote).filter(CustomerNote.id == note_id, CustomerNote.customer_id == customer_id).one_or_none()
    if not note:
        flash("Note not found.", "danger")
        return redirect(url_for("customers.customer_detail", customer_id=customer_id))
    delete_customer_note(s, note, user=u)
    s.commit()
    flash("Note deleted.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))


@bp.post("/customers/<int:customer_id>/holdings")
@require_permission("customers.edit")
def holding_add(customer_id: int):
    s = db_session()
    u = _current_user()
    c = _visible_customer_or_404(s, customer_id)
    try:
        add_holding(
            s,
            c,
            {
                "product": request.form.get("product"),
                "category": request.form.get("category"),
                "amount": request.form.get("amount"),
                "opened_on": request.form.get("opened_on"),
            },
            user=u,
        )
        s.commit()
        flash("Holding added.", "success")
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
    return redirect(url_for("customers.customer_detail", customer_id=c.id))


@bp.post("/customers/<int:customer_id>/holdings/<int:holding_id>/delete")
@require_permission("customers.edit")
def holding_delete(customer_id: int, holding_id: int):
    s = db_session()
    u = _current_user()
    _visible_customer_or_404(s, customer_id)
    h = (
        s.query(CustomerHolding)
        .filter(CustomerHolding.id == holding_id, CustomerHolding.customer_id == customer_id)
        .one_or_none()
    )
    if not h:
        flash("Holding not found.", "danger")
        return redirect(url_for("customers.customer_detail", customer_id=customer_id))
    remove_holding(s, h, user=u)
    s.commit()
    flash("Holding removed.", "success")
    return redirect(url_for("customers.customer_detail", customer_id=customer_id))
