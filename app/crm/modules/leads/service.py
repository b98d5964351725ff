from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, or_

from app.crm.audit import record_event
from app.crm.constants import (
    ACTIVITY_CHANNELS,
    CLOSED_LEAD_STATUSES,
    LEAD_SOURCES,
    LEAD_STATUS_LABELS,
    LEAD_STATUS_XP,
    LEAD_STATUSES,
    OPEN_LEAD_STATUSES,
    PRIORITIES,
)
from app.crm.models import User
from app.crm.modules.customers.service import find_or_create_customer
from app.crm.modules.gamification.service import award_xp
from app.crm.modules.leads.models import Lead, LeadActivity
from app.crm.rbac import scope_user_ids, user_has_permission
from app.crm.utils import Page, clean, paginate, parse_date, parse_optional_float, parse_optional_int

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "customer_name",
    "phone",
    "email",
    "address",
    "source",
    "product_interest",
    "priority",
    "estimated_value",
    "follow_up_date",
    "notes",
)


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def generate_lead_code(s, today: date | None = None) -> str:
    """Next LD-YYYYMMDD-XXXX code for the day (sequence restarts daily)."""
    today = today or date.today()
    prefix = f"LD-{today.strftime('%Y%m%d')}-"
    last = (
        s.query(func.max(Lead.lead_code))
        .filter(Lead.lead_code.like(f"{prefix}%"))
        .scalar()
    )
    seq = 1
    if last:
        try:
            seq = int(last.rsplit("-", 1)[1]) + 1
        except ValueError:
            seq = 1
    return f"{prefix}{seq:04d}"


def scoped_leads(s, user: User):
    """Leads visible to `user`: assigned to, or created by, someone in their scope."""
    q = s.query(Lead)
    ids = scope_user_ids(s, user)
    if ids is not None:
        q = q.filter(or_(Lead.assigned_to_id.in_(ids), Lead.assigned_by_id.in_(ids)))
    return q


def can_view_lead(s, user: User, lead: Lead) -> bool:
    ids = scope_user_ids(s, user)
    if ids is None:
        return True
    return lead.assigned_to_id in ids or lead.assigned_by_id in ids


def get_lead_by_id(s, lead_id: int) -> Lead | None:
    return s.query(Lead).filter(Lead.id == lead_id).one_or_none()


def query_leads(s, *, user: User, filters: dict[str, Any]):
    q = scoped_leads(s, user)
    term = (filters.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(
            Lead.customer_name.ilike(like)
            | Lead.phone.ilike(like)
            | Lead.email.ilike(like)
            | Lead.lead_code.ilike(like)
        )
    if filters.get("status"):
        q = q.filter(Lead.status == filters["status"])
    if filters.get("priority"):
        q = q.filter(Lead.priority == filters["priority"])
    if filters.get("source"):
        q = q.filter(Lead.source == filters["source"])
    if filters.get("assigned_to_id"):
        q = q.filter(Lead.assigned_to_id == int(filters["assigned_to_id"]))
    return q.order_by(Lead.created_at.desc(), Lead.id.desc())


def list_leads(s, *, user: User, filters: dict[str, Any], page: int, per_page: int) -> Page:
    return paginate(query_leads(s, user=user, filters=filters), page=page, per_page=per_page)


def lead_stats(s, *, user: User) -> dict[str, Any]:
    q = scoped_leads(s, user)
    rows = (
        q.with_entities(Lead.status, func.count(Lead.id), func.coalesce(func.sum(Lead.estimated_value), 0))
        .group_by(Lead.status)
        .all()
    )
    by_status = {st: 0 for st in LEAD_STATUSES}
    pipeline_value = 0.0
    won_value = 0.0
    for status, count, value in rows:
        by_status[status] = int(count or 0)
        if status in OPEN_LEAD_STATUSES:
            pipeline_value += float(value or 0)
        elif status == "closed_won":
            won_value = float(value or 0)
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "pipeline_value": pipeline_value,
        "won_value": won_value,
    }


def validate_lead_payload(payload: dict[str, Any], *, creating: bool = True) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("customer_name")):
        errs.append(ValidationError("customer_name", "Customer name is required."))
    if not clean(payload.get("phone")):
        errs.append(ValidationError("phone", "Phone is required."))
    email = clean(payload.get("email"))
    if email and "@" not in email:
        errs.append(ValidationError("email", "Email is invalid."))

    source = clean(payload.get("source")) or "walk_in"
    if source not in LEAD_SOURCES:
        errs.append(ValidationError("source", f"Source must be one of: {', '.join(LEAD_SOURCES)}"))
    priority = clean(payload.get("priority")) or "medium"
    if priority not in PRIORITIES:
        errs.append(ValidationError("priority", f"Priority must be one of: {', '.join(PRIORITIES)}"))
    if creating:
        status = clean(payload.get("status")) or "new"
        if status not in OPEN_LEAD_STATUSES:
            errs.append(ValidationError("status", f"New leads must start in one of: {', '.join(OPEN_LEAD_STATUSES)}"))

    try:
        value = parse_optional_float(payload.get("estimated_value"))
        if value is not None and value < 0:
            errs.append(ValidationError("estimated_value", "Estimated value cannot be negative."))
    except ValueError:
        errs.append(ValidationError("estimated_value", "Estimated value must be a number."))
    try:
        parse_date(payload.get("follow_up_date"))
    except ValueError:
        errs.append(ValidationError("follow_up_date", "Follow-up date must be YYYY-MM-DD."))
    try:
        parse_optional_int(payload.get("assigned_to_id"))
    except ValueError:
        errs.append(ValidationError("assigned_to_id", "Assignee must be a user id."))
    return errs


def _active_user(s, user_id: int) -> User:
    u = s.query(User).filter(User.id == user_id, User.is_active.is_(True)).one_or_none()
    if not u:
        raise ValueError("Assignee not found or inactive.")
    return u


def create_lead(s, payload: dict[str, Any], *, user: User, today: date | None = None) -> Lead:
    assignee_id = user.id
    requested = parse_optional_int(payload.get("assigned_to_id"))
    if requested is not None and requested != user.id and user_has_permission(user, "leads.assign"):
        assignee_id = _active_user(s, requested).id

    now = datetime.utcnow()
    lead = Lead(
        lead_code=generate_lead_code(s, today or now.date()),
        customer_name=clean(payload.get("customer_name")) or "",
        phone=clean(payload.get("phone")) or "",
        email=clean(payload.get("email")),
        address=clean(payload.get("address")),
        source=clean(payload.get("source")) or "walk_in",
        product_interest=clean(payload.get("product_interest")),
        status=clean(payload.get("status")) or "new",
        priority=clean(payload.get("priority")) or "medium",
        estimated_value=parse_optional_float(payload.get("estimated_value")) or 0,
        assigned_to_id=assignee_id,
        assigned_by_id=user.id,
        follow_up_date=parse_date(payload.get("follow_up_date")),
        notes=clean(payload.get("notes")),
        customer_id=parse_optional_int(payload.get("customer_id")),
        updated_at=now,
    )
    s.add(lead)
    s.flush()
    record_event(
        s,
        actor=user,
        action="lead.create",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={
            "lead_code": lead.lead_code,
            "customer_name": lead.customer_name,
            "source": lead.source,
            "status": lead.status,
            "assigned_to_id": lead.assigned_to_id,
        },
    )
    return lead


def update_lead(s, lead: Lead, payload: dict[str, Any], *, user: User) -> Lead:
    before = {f: getattr(lead, f) for f in _EDITABLE_FIELDS}
    lead.customer_name = clean(payload.get("customer_name")) or lead.customer_name
    lead.phone = clean(payload.get("phone")) or lead.phone
    lead.email = clean(payload.get("email"))
    lead.address = clean(payload.get("address"))
    lead.source = clean(payload.get("source")) or lead.source
    lead.product_interest = clean(payload.get("product_interest"))
    lead.priority = clean(payload.get("priority")) or lead.priority
    lead.estimated_value = parse_optional_float(payload.get("estimated_value")) or 0
    lead.follow_up_date = parse_date(payload.get("follow_up_date"))
    lead.notes = clean(payload.get("notes"))
    lead.updated_at = datetime.utcnow()
    after = {f: getattr(lead, f) for f in _EDITABLE_FIELDS}
    fields_changed = [k for k in before if before[k] != after[k]]
    record_event(
        s,
        actor=user,
        action="lead.update",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={"before": before, "after": after, "fields_changed": fields_changed},
    )
    return lead


def change_status(
    s,
    lead: Lead,
    new_status: str,
    *,
    user: User,
    reason: str | None = None,
    today: date | None = None,
) -> bool:
    """
    Move a lead to `new_status`. Returns False when the lead is already there.

    closed_won converts the lead into a customer; closed_lost needs a reason.
    Closed leads are final.
    """
    if new_status not in LEAD_STATUSES:
        raise ValueError(f"Unknown lead status: {new_status}")
    if lead.status in CLOSED_LEAD_STATUSES:
        raise ValueError(f"Lead {lead.lead_code} is {LEAD_STATUS_LABELS[lead.status]} and cannot change status.")
    if new_status == lead.status:
        return False
    reason = (reason or "").strip() or None
    if new_status == "closed_lost" and not reason:
        raise ValueError("A reason is required to close a lead as lost.")

    old_status = lead.status
    now = datetime.utcnow()
    lead.status = new_status
    lead.updated_at = now

    if new_status in CLOSED_LEAD_STATUSES:
        lead.closed_at = now
    if new_status == "closed_lost":
        lead.lost_reason = reason
    if new_status == "closed_won":
        customer = find_or_create_customer(
            s,
            full_name=lead.customer_name,
            phone=lead.phone,
            email=lead.email,
            address=lead.address,
            relationship_manager_id=lead.assigned_to_id,
        )
        lead.customer_id = customer.id

    record_event(
        s,
        actor=user,
        action="lead.status_change",
        entity_type="Lead",
        entity_id=str(lead.id),
        reason=reason,
        metadata={"from": old_status, "to": new_status, "customer_id": lead.customer_id},
    )

    xp = LEAD_STATUS_XP.get(new_status, 0)
    if xp > 0 and lead.assigned_to is not None:
        award_xp(
            s,
            lead.assigned_to,
            xp,
            reason=f"Lead {lead.lead_code} moved to {LEAD_STATUS_LABELS[new_status]}",
            actor=user,
            today=today,
        )
    logger.info("Lead %s status %s -> %s", lead.id, old_status, new_status)
    return True


def assign_leads(s, lead_ids: list[int], *, assignee_id: int, user: User) -> int:
    if not lead_ids:
        raise ValueError("Select at least one lead.")
    assignee = _active_user(s, assignee_id)
    leads = scoped_leads(s, user).filter(Lead.id.in_(lead_ids)).all()
    moved = 0
    for lead in leads:
        if lead.assigned_to_id == assignee.id:
            continue
        old = lead.assigned_to_id
        lead.assigned_to_id = assignee.id
        lead.assigned_by_id = user.id
        lead.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="lead.assign",
            entity_type="Lead",
            entity_id=str(lead.id),
            metadata={"from": old, "to": assignee.id},
        )
        moved += 1
    return moved


def delete_lead(s, lead: Lead, *, user: User, reason: str) -> None:
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("A reason is required to delete a lead.")
    record_event(
        s,
        actor=user,
        action="lead.delete",
        entity_type="Lead",
        entity_id=str(lead.id),
        reason=reason,
        metadata={"lead_code": lead.lead_code, "customer_name": lead.customer_name, "status": lead.status},
    )
    s.delete(lead)


def log_activity(s, lead: Lead, payload: dict[str, Any], *, user: User, today: date | None = None) -> LeadActivity:
    today = today or date.today()
    channel = clean(payload.get("channel"))
    if channel not in ACTIVITY_CHANNELS:
        raise ValueError(f"Channel must be one of: {', '.join(ACTIVITY_CHANNELS)}")
    duration = parse_optional_int(payload.get("duration_minutes"))
    if duration is not None and duration < 0:
        raise ValueError("Duration cannot be negative.")
    follow_up_required = str(payload.get("follow_up_required") or "").lower() in ("1", "true", "on", "yes")
    next_date = parse_date(payload.get("next_follow_up_date"))
    if follow_up_required and not next_date:
        raise ValueError("Next follow-up date is required when a follow-up is needed.")

    act = LeadActivity(
        lead_id=lead.id,
        channel=channel,
        outcome=clean(payload.get("outcome")),
        duration_minutes=duration,
        notes=clean(payload.get("notes")),
        follow_up_required=follow_up_required,
        next_follow_up_date=next_date if follow_up_required else None,
        created_by_id=user.id,
    )
    s.add(act)
    lead.last_contact_date = today
    if follow_up_required:
        lead.follow_up_date = next_date
    lead.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=user,
        action="lead.activity",
        entity_type="Lead",
        entity_id=str(lead.id),
        metadata={"activity_id": act.id, "channel": channel, "follow_up_date": lead.follow_up_date},
    )
    if lead.status == "new":
        change_status(s, lead, "contacted", user=user, today=today)
    return act


def due_follow_ups(s, *, user: User, today: date | None = None) -> list[Lead]:
    today = today or date.today()
    return (
        scoped_leads(s, user)
        .filter(
            Lead.status.in_(OPEN_LEAD_STATUSES),
            Lead.follow_up_date.isnot(None),
            Lead.follow_up_date <= today,
        )
        .order_by(Lead.follow_up_date.asc(), Lead.id.asc())
        .all()
    )


def export_leads_csv(leads: list[Lead]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(
        [
            "Lead Code",
            "Customer",
            "Phone",
            "Email",
            "Source",
            "Product",
            "Status",
            "Priority",
            "Estimated Value",
            "Assigned To",
            "Follow-up",
            "Last Contact",
            "Created",
        ]
    )
    for lead in leads:
        w.writerow(
            [
                lead.lead_code,
                lead.customer_name,
                lead.phone,
                lead.email or "",
                lead.source,
                lead.product_interest or "",
                LEAD_STATUS_LABELS.get(lead.status, lead.status),
                lead.priority,
                f"{lead.estimated_value or 0:.2f}",
                lead.assigned_to.display_name if lead.assigned_to else "",
                str(lead.follow_up_date or ""),
                str(lead.last_contact_date or ""),
                lead.created_at.strftime("%Y-%m-%d"),
            ]
        )
    return out.getvalue().encode("utf-8")
