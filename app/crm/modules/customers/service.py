"""
CUSTOMER IDENTITY
=================

Customers are created either directly (Customers > New) or when a lead is
won (leads.service.change_status -> find_or_create_customer).

Matching, in order:
- Tier 1: exact customer_code (canonical name + normalized phone)
- Tier 2: same normalized phone number
- Otherwise a new customer is created

Visibility: a customer belongs to its relationship manager. Users only see
customers whose RM is inside their data scope; customers without an RM are
visible to everyone holding customers.view.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from app.crm.audit import record_event
from app.crm.constants import KYC_STATUSES, PRODUCT_CATEGORIES, SEGMENTS
from app.crm.models import User
from app.crm.modules.customers.models import Customer, CustomerHolding, CustomerNote
from app.crm.modules.customers.utils import canonical_customer_key, normalize_phone, segment_for_income
from app.crm.rbac import scope_user_ids
from app.crm.utils import clean, parse_date, parse_optional_float, parse_optional_int

_FIELDS = (
    "full_name",
    "phone",
    "email",
    "date_of_birth",
    "address",
    "occupation",
    "annual_income",
    "kyc_status",
    "relationship_manager_id",
    "family_head_id",
)


def get_customer_by_id(s, customer_id: int) -> Customer | None:
    return s.query(Customer).filter(Customer.id == customer_id).one_or_none()


def query_customers(s, *, user: User, filters: dict[str, Any]):
    q = s.query(Customer)
    ids = scope_user_ids(s, user)
    if ids is not None:
        q = q.filter(or_(Customer.relationship_manager_id.in_(ids), Customer.relationship_manager_id.is_(None)))

    term = (filters.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(
            Customer.full_name.ilike(like)
            | Customer.phone.ilike(like)
            | Customer.email.ilike(like)
            | Customer.customer_code.ilike(like)
        )
    if filters.get("segment"):
        q = q.filter(Customer.segment == filters["segment"])
    if filters.get("rm_id"):
        q = q.filter(Customer.relationship_manager_id == int(filters["rm_id"]))
    return q.order_by(Customer.full_name.asc(), Customer.id.asc())


def can_view_customer(s, user: User, customer: Customer) -> bool:
    ids = scope_user_ids(s, user)
    if ids is None or customer.relationship_manager_id is None:
        return True
    return customer.relationship_manager_id in ids


def find_customer_exact_match(s, full_name: str, phone: str | None) -> Customer | None:
    """Tier 1: exact customer_code."""
    code = canonical_customer_key(full_name, phone)
    if not code:
        return None
    return s.query(Customer).filter(Customer.customer_code == code).one_or_none()


def find_customer_by_phone(s, phone: str | None) -> Customer | None:
    """Tier 2: same normalized phone number."""
    digits = normalize_phone(phone)
    if len(digits) < 7:
        return None
    candidates = s.query(Customer).filter(Customer.phone.like(f"%{digits[-7:]}")).all()
    for c in candidates:
        if normalize_phone(c.phone) == digits:
            return c
    return None


def find_or_create_customer(
    s,
    *,
    full_name: str,
    phone: str,
    email: str | None = None,
    address: str | None = None,
    occupation: str | None = None,
    annual_income: float | None = None,
    relationship_manager_id: int | None = None,
) -> Customer:
    """
    Find-or-create with two-tier matching (exact code, then phone).
    A matched customer is refreshed with any non-empty new values.
    """
    full_name = (full_name or "").strip()
    if not full_name:
        raise ValueError("full_name is required")
    phone = (phone or "").strip()
    if not phone:
        raise ValueError("phone is required")

    code = canonical_customer_key(full_name, phone)
    if not code:
        raise ValueError("full_name cannot be normalized to a customer code")

    now = datetime.utcnow()

    c = find_customer_exact_match(s, full_name, phone) or find_customer_by_phone(s, phone)
    if c:
        changed = False

        def _set(attr: str, val) -> None:
            nonlocal changed
            v = clean(val) if isinstance(val, str) else val
            if v is not None and getattr(c, attr) != v:
                setattr(c, attr, v)
                changed = True

        _set("email", email)
        _set("address", address)
        _set("occupation", occupation)
        _set("annual_income", annual_income)
        if c.relationship_manager_id is None and relationship_manager_id is not None:
            c.relationship_manager_id = relationship_manager_id
            changed = True
        if changed:
            c.segment = segment_for_income(c.annual_income)
            c.updated_at = now
        return c

    try:
        with s.begin_nested():  # SAVEPOINT for idempotency
            c = Customer(
                customer_code=code,
                full_name=full_name,
                phone=phone,
                email=clean(email),
                address=clean(address),
                occupation=clean(occupation),
                annual_income=annual_income,
                segment=segment_for_income(annual_income),
                relationship_manager_id=relationship_manager_id,
                updated_at=now,
            )
            s.add(c)
            s.flush()
        return c
    except IntegrityError:
        # Another request created the same code between lookup and insert.
        c = find_customer_exact_match(s, full_name, phone)
        if c:
            return c
        raise


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def validate_customer_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("full_name")):
        errs.append(ValidationError("full_name", "Full name is required."))
    phone = clean(payload.get("phone"))
    if not phone:
        errs.append(ValidationError("phone", "Phone is required."))
    elif len(normalize_phone(phone)) < 7:
        errs.append(ValidationError("phone", "Phone must contain at least 7 digits."))
    email = clean(payload.get("email"))
    if email and "@" not in email:
        errs.append(ValidationError("email", "Email is invalid."))
    try:
        parse_date(payload.get("date_of_birth"))
    except ValueError:
        errs.append(ValidationError("date_of_birth", "Date of birth must be YYYY-MM-DD."))
    try:
        income = parse_optional_float(payload.get("annual_income"))
        if income is not None and income < 0:
            errs.append(ValidationError("annual_income", "Annual income cannot be negative."))
    except ValueError:
        errs.append(ValidationError("annual_income", "Annual income must be a number."))
    kyc = clean(payload.get("kyc_status"))
    if kyc and kyc not in KYC_STATUSES:
        errs.append(ValidationError("kyc_status", f"KYC status must be one of: {', '.join(KYC_STATUSES)}"))
    for key in ("relationship_manager_id", "family_head_id"):
        try:
            parse_optional_int(payload.get(key))
        except ValueError:
            errs.append(ValidationError(key, "Must be a number."))
    return errs


def _snapshot(c: Customer) -> dict[str, Any]:
    return {f: getattr(c, f) for f in _FIELDS}


def _apply(c: Customer, payload: dict[str, Any]) -> None:
    c.full_name = clean(payload.get("full_name")) or c.full_name
    c.phone = clean(payload.get("phone")) or c.phone
    c.email = clean(payload.get("email"))
    c.date_of_birth = parse_date(payload.get("date_of_birth"))
    c.address = clean(payload.get("address"))
    c.occupation = clean(payload.get("occupation"))
    c.annual_income = parse_optional_float(payload.get("annual_income"))
    c.kyc_status = clean(payload.get("kyc_status")) or c.kyc_status or "pending"
    c.relationship_manager_id = parse_optional_int(payload.get("relationship_manager_id"))
    head_id = parse_optional_int(payload.get("family_head_id"))
    if head_id is not None and c.id is not None and head_id == c.id:
        raise ValueError("A customer cannot be their own family head.")
    c.family_head_id = head_id
    c.segment = segment_for_income(c.annual_income)


def create_customer(s, payload: dict[str, Any], *, user: User) -> Customer:
    rm_id = parse_optional_int(payload.get("relationship_manager_id"))
    c = find_or_create_customer(
        s,
        full_name=str(payload.get("full_name") or ""),
        phone=str(payload.get("phone") or ""),
        email=payload.get("email"),
        address=payload.get("address"),
        occupation=payload.get("occupation"),
        annual_income=parse_optional_float(payload.get("annual_income")),
        relationship_manager_id=rm_id if rm_id is not None else user.id,
    )
    dob = parse_date(payload.get("date_of_birth"))
    if dob:
        c.date_of_birth = dob
    kyc = clean(payload.get("kyc_status"))
    if kyc:
        c.kyc_status = kyc
    head_id = parse_optional_int(payload.get("family_head_id"))
    if head_id is not None and head_id != c.id:
        c.family_head_id = head_id
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer.create",
        entity_type="Customer",
        entity_id=str(c.id),
        metadata={"customer_code": c.customer_code, "full_name": c.full_name, "segment": c.segment},
    )
    return c


def _rekey(s, c: Customer) -> None:
    """Keep customer_code in step with an edited name or phone."""
    code = canonical_customer_key(c.full_name, c.phone)
    if not code:
        raise ValueError("Name and phone cannot form a customer code.")
    if code == c.customer_code:
        return
    clash = s.query(Customer).filter(Customer.customer_code == code, Customer.id != c.id).one_or_none()
    if clash:
        raise ValueError(f"Customer {clash.customer_code} already has this name and phone.")
    c.customer_code = code


def update_customer(s, c: Customer, payload: dict[str, Any], *, user: User, reason: str | None = None) -> Customer:
    before = {**_snapshot(c), "customer_code": c.customer_code}
    _apply(c, payload)
    _rekey(s, c)
    c.updated_at = datetime.utcnow()
    after = {**_snapshot(c), "customer_code": c.customer_code}
    fields_changed = [k for k in before if before[k] != after[k]]
    record_event(
        s,
        actor=user,
        action="customer.update",
        entity_type="Customer",
        entity_id=str(c.id),
        reason=reason,
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return c


def add_customer_note(s, customer: Customer, *, note_text: str, note_date: str | None, user: User) -> CustomerNote:
    text = (note_text or "").strip()
    if not text:
        raise ValueError("Note text is required.")
    d: date | None = parse_date(note_date)
    n = CustomerNote(
        customer_id=customer.id,
        note_text=text,
        note_date=d or date.today(),
        author=user.email,
        updated_at=datetime.utcnow(),
    )
    s.add(n)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer_note.create",
        entity_type="CustomerNote",
        entity_id=str(n.id),
        metadata={"customer_id": customer.id},
    )
    return n


def edit_customer_note(s, note: CustomerNote, *, note_text: str, user: User) -> CustomerNote:
    text = (note_text or "").strip()
    if not text:
        raise ValueError("Note text is required.")
    before = {"note_text": note.note_text}
    note.note_text = text
    note.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="customer_note.update",
        entity_type="CustomerNote",
        entity_id=str(note.id),
        metadata={"before": before, "after": {"note_text": note.note_text}, "customer_id": note.customer_id},
    )
    return note


def delete_customer_note(s, note: CustomerNote, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="customer_note.delete",
        entity_type="CustomerNote",
        entity_id=str(note.id),
        metadata={"customer_id": note.customer_id, "note_text": note.note_text},
    )
    s.delete(note)


def add_holding(s, customer: Customer, payload: dict[str, Any], *, user: User) -> CustomerHolding:
    product = clean(payload.get("product"))
    if not product:
        raise ValueError("Product is required.")
    category = clean(payload.get("category"))
    if category not in PRODUCT_CATEGORIES:
        raise ValueError(f"Category must be one of: {', '.join(PRODUCT_CATEGORIES)}")
    if product.lower() in customer.held_products:
        raise ValueError(f"{customer.full_name} already holds {product}.")
    amount = parse_optional_float(payload.get("amount"))
    if amount is not None and amount < 0:
        raise ValueError("Amount cannot be negative.")
    h = CustomerHolding(
        customer_id=customer.id,
        product=product,
        category=category,
        amount=amount,
        opened_on=parse_date(payload.get("opened_on")),
    )
    s.add(h)
    customer.holdings.append(h)
    s.flush()
    record_event(
        s,
        actor=user,
        action="customer_holding.create",
        entity_type="CustomerHolding",
        entity_id=str(h.id),
        metadata={"customer_id": customer.id, "product": product, "category": category},
    )
    return h


def remove_holding(s, holding: CustomerHolding, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="customer_holding.delete",
        entity_type="CustomerHolding",
        entity_id=str(holding.id),
        metadata={"customer_id": holding.customer_id, "product": holding.product},
    )
    s.delete(holding)


def family_group(s, customer: Customer) -> dict[str, Any]:
    """Head of the family plus every member linked to that head."""
    head = customer.family_head or customer
    members = (
        s.query(Customer)
        .filter(Customer.family_head_id == head.id)
        .order_by(Customer.full_name.asc())
        .all()
    )
    return {"head": head, "members": [m for m in members if m.id != head.id]}


def customer_360(s, customer: Customer, *, today: date | None = None) -> dict[str, Any]:
    """Everything the customer-360 page shows, in one dict."""
    from app.crm.modules.cross_sell.service import active_rules, suggest_for_customer
    from app.crm.modules.leads.models import Lead, LeadActivity
    from app.crm.modules.tasks.models import Task

    leads = (
        s.query(Lead)
        .filter(Lead.customer_id == customer.id)
        .order_by(Lead.created_at.desc(), Lead.id.desc())
        .all()
    )
    lead_ids = [lead.id for lead in leads]
    activities = []
    if lead_ids:
        activities = (
            s.query(LeadActivity)
            .filter(LeadActivity.lead_id.in_(lead_ids))
            .order_by(LeadActivity.created_at.desc(), LeadActivity.id.desc())
            .limit(50)
            .all()
        )
    tasks = (
        s.query(Task)
        .filter(Task.related_customer_id == customer.id)
        .order_by(Task.due_date.asc(), Task.id.asc())
        .all()
    )
    notes = (
        s.query(CustomerNote)
        .filter(CustomerNote.customer_id == customer.id)
        .order_by(CustomerNote.created_at.desc(), CustomerNote.id.desc())
        .all()
    )
    holdings = sorted(customer.holdings or [], key=lambda h: (h.category, h.product))
    return {
        "customer": customer,
        "family": family_group(s, customer),
        "holdings": holdings,
        "holdings_total": sum(h.amount or 0 for h in holdings),
        "notes": notes,
        "leads": leads,
        "activities": activities,
        "tasks": tasks,
        "suggestions": suggest_for_customer(customer, active_rules(s), today=today),
        "segments": SEGMENTS,
    }
