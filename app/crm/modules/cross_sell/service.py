from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from app.crm.audit import record_event
from app.crm.constants import PRODUCT_CATEGORIES, SEGMENTS, URGENCIES
from app.crm.models import User
from app.crm.modules.cross_sell.models import CrossSellRule
from app.crm.modules.customers.models import Customer
from app.crm.modules.customers.utils import age_on
from app.crm.utils import clean, parse_optional_float, parse_optional_int

# Seeded by scripts/init_db.py
DEFAULT_RULES: tuple[dict[str, Any], ...] = (
    {
        "product": "Personal Loan",
        "category": "lending",
        "base_score": 92,
        "reason": "Excellent credit history, recent salary increment",
        "potential": "₹8L",
        "urgency": "High",
        "timeline_days": 7,
        "benefits": "Lower interest rates, Quick approval, Flexible tenure",
    },
    {
        "product": "Life Insurance",
        "category": "insurance",
        "base_score": 88,
        "reason": "Family protection needs, age group analysis",
        "potential": "₹50L cover",
        "urgency": "Medium",
        "timeline_days": 14,
        "benefits": "Tax savings, Family security, Investment returns",
    },
    {
        "product": "Investment Portfolio",
        "category": "investments",
        "base_score": 85,
        "reason": "High savings rate, investment appetite",
        "potential": "₹3L SIP",
        "urgency": "Medium",
        "timeline_days": 21,
        "benefits": "Wealth creation, Tax efficiency, Diversification",
    },
    {
        "product": "Credit Card Premium",
        "category": "cards",
        "base_score": 82,
        "reason": "Premium segment, high spending pattern",
        "potential": "₹5L limit",
        "urgency": "Low",
        "timeline_days": 30,
        "benefits": "Premium rewards, Airport lounge access, Cashback offers",
    },
    {
        "product": "Private Banking",
        "category": "banking",
        "base_score": 95,
        "segment": "Premium",
        "reason": "High net worth individual, exclusive services needed",
        "potential": "₹25L relationship",
        "urgency": "High",
        "timeline_days": 3,
        "benefits": "Dedicated RM, Priority services, Exclusive products",
    },
)


@dataclass(frozen=True)
class Suggestion:
    rule_id: int | None
    product: str
    category: str
    score: int
    reason: str
    potential: str
    urgency: str
    timeline_days: int
    benefits: tuple[str, ...]


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def active_rules(s) -> list[CrossSellRule]:
    return s.query(CrossSellRule).filter(CrossSellRule.is_active.is_(True)).all()


def rule_applies(rule: CrossSellRule, customer: Customer, *, today: date | None = None, include_inactive: bool = False) -> bool:
    if not rule.is_active and not include_inactive:
        return False
    if rule.segment and rule.segment != customer.segment:
        return False
    if rule.min_income is not None:
        if customer.annual_income is None or customer.annual_income < rule.min_income:
            return False
    if rule.max_age is not None:
        age = age_on(customer.date_of_birth, today)
        if age is None or age > rule.max_age:
            return False
    return rule.product.strip().lower() not in customer.held_products


def suggest_for_customer(
    customer: Customer,
    rules: list[CrossSellRule],
    *,
    today: date | None = None,
    include_inactive: bool = False,
) -> list[Suggestion]:
    """Applicable rules as suggestions, best score first."""
    out = [
        Suggestion(
            rule_id=r.id,
            product=r.product,
            category=r.category,
            score=r.base_score,
            reason=r.reason or "",
            potential=r.potential or "",
            urgency=r.urgency,
            timeline_days=r.timeline_days,
            benefits=tuple(r.benefit_list),
        )
        for r in rules
        if rule_applies(r, customer, today=today, include_inactive=include_inactive)
    ]
    return sorted(out, key=lambda sg: (-sg.score, sg.product))


def validate_rule_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("product")):
        errs.append(ValidationError("product", "Product is required."))
    if clean(payload.get("category")) not in PRODUCT_CATEGORIES:
        errs.append(ValidationError("category", f"Category must be one of: {', '.join(PRODUCT_CATEGORIES)}"))
    try:
        score = parse_optional_int(payload.get("base_score"))
        if score is None or not 0 <= score <= 100:
            errs.append(ValidationError("base_score", "Score must be between 0 and 100."))
    except ValueError:
        errs.append(ValidationError("base_score", "Score must be a whole number."))
    segment = clean(payload.get("segment"))
    if segment and segment not in SEGMENTS:
        errs.append(ValidationError("segment", f"Segment must be one of: {', '.join(SEGMENTS)}"))
    try:
        mi = parse_optional_float(payload.get("min_income"))
        if mi is not None and mi < 0:
            errs.append(ValidationError("min_income", "Minimum income cannot be negative."))
    except ValueError:
        errs.append(ValidationError("min_income", "Minimum income must be a number."))
    try:
        ma = parse_optional_int(payload.get("max_age"))
        if ma is not None and ma <= 0:
            errs.append(ValidationError("max_age", "Maximum age must be positive."))
    except ValueError:
        errs.append(ValidationError("max_age", "Maximum age must be a whole number."))
    urgency = clean(payload.get("urgency")) or "Medium"
    if urgency not in URGENCIES:
        errs.append(ValidationError("urgency", f"Urgency must be one of: {', '.join(URGENCIES)}"))
    try:
        days = parse_optional_int(payload.get("timeline_days"))
        if days is not None and days < 0:
            errs.append(ValidationError("timeline_days", "Timeline cannot be negative."))
    except ValueError:
        errs.append(ValidationError("timeline_days", "Timeline must be a whole number of days."))
    return errs


def _apply(rule: CrossSellRule, payload: dict[str, Any]) -> None:
    rule.product = clean(payload.get("product")) or rule.product
    rule.category = clean(payload.get("category")) or rule.category
    rule.base_score = parse_optional_int(payload.get("base_score")) or 0
    rule.segment = clean(payload.get("segment"))
    rule.min_income = parse_optional_float(payload.get("min_income"))
    rule.max_age = parse_optional_int(payload.get("max_age"))
    rule.urgency = clean(payload.get("urgency")) or "Medium"
    days = parse_optional_int(payload.get("timeline_days"))
    rule.timeline_days = 30 if days is None else days
    rule.reason = clean(payload.get("reason"))
    rule.potential = clean(payload.get("potential"))
    rule.benefits = clean(payload.get("benefits"))


def _snapshot(rule: CrossSellRule) -> dict[str, Any]:
    return {
        "product": rule.product,
        "category": rule.category,
        "base_score": rule.base_score,
        "segment": rule.segment,
        "min_income": rule.min_income,
        "max_age": rule.max_age,
        "urgency": rule.urgency,
        "timeline_days": rule.timeline_days,
        "is_active": rule.is_active,
    }


def create_rule(s, payload: dict[str, Any], *, user: User) -> CrossSellRule:
    product = clean(payload.get("product")) or ""
    if s.query(CrossSellRule).filter(CrossSellRule.product == product).one_or_none():
        raise ValueError(f"A rule for {product} already exists.")
    rule = CrossSellRule(product=product, category="", is_active=True)
    _apply(rule, payload)
    s.add(rule)
    s.flush()
    record_event(
        s,
        actor=user,
        action="cross_sell_rule.create",
        entity_type="CrossSellRule",
        entity_id=str(rule.id),
        metadata=_snapshot(rule),
    )
    return rule


def update_rule(s, rule: CrossSellRule, payload: dict[str, Any], *, user: User) -> CrossSellRule:
    before = _snapshot(rule)
    product = clean(payload.get("product"))
    if product and product != rule.product:
        clash = s.query(CrossSellRule).filter(CrossSellRule.product == product, CrossSellRule.id != rule.id).one_or_none()
        if clash:
            raise ValueError(f"A rule for {product} already exists.")
    _apply(rule, payload)
    rule.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="cross_sell_rule.update",
        entity_type="CrossSellRule",
        entity_id=str(rule.id),
        metadata={"before": before, "after": _snapshot(rule)},
    )
    return rule


def set_rule_active(s, rule: CrossSellRule, *, active: bool, user: User) -> None:
    if rule.is_active == active:
        return
    rule.is_active = active
    rule.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="cross_sell_rule.activate" if active else "cross_sell_rule.deactivate",
        entity_type="CrossSellRule",
        entity_id=str(rule.id),
        metadata={"product": rule.product},
    )


def create_offer(s, customer: Customer, rule: CrossSellRule, *, user: User, today: date | None = None):
    """Turn a suggestion into a campaign lead for the customer."""
    from app.crm.modules.leads.service import create_lead

    if not rule_applies(rule, customer, today=today):
        raise ValueError(f"{rule.product} is not a current suggestion for {customer.full_name}.")
    lead = create_lead(
        s,
        {
            "customer_name": customer.full_name,
            "phone": customer.phone,
            "email": customer.email,
            "address": customer.address,
            "source": "campaign",
            "product_interest": rule.product,
            "priority": "high" if rule.urgency == "High" else "medium",
            "notes": rule.reason,
            "customer_id": customer.id,
            "assigned_to_id": customer.relationship_manager_id,
        },
        user=user,
        today=today,
    )
    record_event(
        s,
        actor=user,
        action="cross_sell.offer_created",
        entity_type="Customer",
        entity_id=str(customer.id),
        metadata={"rule_id": rule.id, "product": rule.product, "lead_id": lead.id},
    )
    return lead
