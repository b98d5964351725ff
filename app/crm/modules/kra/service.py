"""
KRA / KPA
=========

- A KPA groups KRAs under a category (Sales Performance, Customer Acquisition...).
- A KRA belongs to a role and carries a weight. Active weights per role stay <= 100.
- A KRATarget is one user's target for one KRA in one period:
  `YYYY-MM` (daily, weekly and monthly KRAs roll up by month) or `YYYY-Qn`.

Scoring:
- achievement_pct = achieved / target * 100 (1 decimal)
- weighted_score = weight-weighted mean of achievements, each capped at 150
- performance_status: >= 90 Exceeding, >= 75 Meeting, else Below Target
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

from app.crm.audit import record_event
from app.crm.constants import KPA_CATEGORIES, KRA_FREQUENCIES, KRA_METRICS, MAX_ROLE_KRA_WEIGHT, ROLE_DEFINITIONS
from app.crm.models import User
from app.crm.modules.gamification.service import award_xp, kra_points
from app.crm.modules.kra.models import KPA, KRA, KRATarget
from app.crm.rbac import user_has_permission
from app.crm.utils import clean, parse_optional_float, parse_optional_int

ACHIEVEMENT_CAP = 150

_MONTH_PERIOD = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
_QUARTER_PERIOD = re.compile(r"^\d{4}-Q[1-4]$")

# Seeded by scripts/init_db.py: (role, name, metric, target, frequency, weight, kpa category)
DEFAULT_KRAS: tuple[tuple[str, str, str, float, str, int, str], ...] = (
    ("sales_executive", "Customer Visits", "count", 100, "monthly", 30, "Customer Acquisition"),
    ("sales_executive", "SHGs Created", "count", 20, "monthly", 40, "Customer Acquisition"),
    ("sales_executive", "Conversion Rate", "percentage", 25, "monthly", 20, "Sales Performance"),
    ("sales_executive", "Fixed Deposits", "count", 15, "monthly", 10, "Sales Performance"),
    ("inbound_agent", "Leads Qualified", "count", 60, "monthly", 50, "Customer Acquisition"),
    ("inbound_agent", "Follow-ups On Time", "percentage", 90, "monthly", 50, "Process Improvement"),
    ("relationship_manager", "Portfolio Growth", "amount", 5_000_000, "quarterly", 50, "Customer Retention"),
    ("relationship_manager", "Cross-sell Products", "count", 12, "monthly", 30, "Sales Performance"),
    ("relationship_manager", "KYC Renewals", "percentage", 95, "monthly", 20, "Risk Management"),
    ("supervisor", "Branch Target Achievement", "percentage", 100, "monthly", 60, "Sales Performance"),
    ("supervisor", "Team Coaching Sessions", "count", 8, "monthly", 40, "Team Development"),
)


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def period_for(frequency: str, d: date) -> str:
    if frequency == "quarterly":
        return f"{d.year}-Q{(d.month - 1) // 3 + 1}"
    return f"{d.year}-{d.month:02d}"


def valid_period(frequency: str, period: str) -> bool:
    if frequency == "quarterly":
        return bool(_QUARTER_PERIOD.match(period or ""))
    return bool(_MONTH_PERIOD.match(period or ""))


def achievement_pct(target: float | None, achieved: float | None) -> float:
    if not target or target <= 0:
        return 0.0
    return round((achieved or 0) / target * 100, 1)


def weighted_score(rows: Iterable[tuple[float, float]]) -> float:
    """Weighted mean of (weight, achievement %) pairs, achievements capped at 150."""
    total_weight = 0.0
    acc = 0.0
    for weight, pct in rows:
        if not weight or weight <= 0:
            continue
        total_weight += weight
        acc += weight * min(pct, ACHIEVEMENT_CAP)
    if total_weight == 0:
        return 0.0
    return round(acc / total_weight, 1)


def performance_status(pct: float) -> str:
    if pct >= 90:
        return "Exceeding"
    if pct >= 75:
        return "Meeting"
    return "Below Target"


def role_weight_total(s, role_key: str, *, exclude_kra_id: int | None = None) -> int:
    q = s.query(KRA).filter(KRA.role_key == role_key, KRA.is_active.is_(True))
    if exclude_kra_id is not None:
        q = q.filter(KRA.id != exclude_kra_id)
    return sum(k.weight for k in q.all())


# ---------------------------------------------------------------------------
# KPA
# ---------------------------------------------------------------------------
def validate_kpa_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("title")):
        errs.append(ValidationError("title", "Title is required."))
    if clean(payload.get("category")) not in KPA_CATEGORIES:
        errs.append(ValidationError("category", f"Category must be one of: {', '.join(KPA_CATEGORIES)}"))
    return errs


def create_kpa(s, payload: dict[str, Any], *, user: User) -> KPA:
    kpa = KPA(
        title=clean(payload.get("title")) or "",
        category=clean(payload.get("category")) or KPA_CATEGORIES[0],
        description=clean(payload.get("description")),
        is_active=True,
    )
    s.add(kpa)
    s.flush()
    record_event(
        s,
        actor=user,
        action="kpa.create",
        entity_type="KPA",
        entity_id=str(kpa.id),
        metadata={"title": kpa.title, "category": kpa.category},
    )
    return kpa


def update_kpa(s, kpa: KPA, payload: dict[str, Any], *, user: User) -> KPA:
    before = {"title": kpa.title, "category": kpa.category, "description": kpa.description, "is_active": kpa.is_active}
    kpa.title = clean(payload.get("title")) or kpa.title
    kpa.category = clean(payload.get("category")) or kpa.category
    kpa.description = clean(payload.get("description"))
    if "is_active" in payload:
        kpa.is_active = str(payload.get("is_active") or "").lower() in ("1", "true", "on", "yes")
    after = {"title": kpa.title, "category": kpa.category, "description": kpa.description, "is_active": kpa.is_active}
    record_event(
        s,
        actor=user,
        action="kpa.update",
        entity_type="KPA",
        entity_id=str(kpa.id),
        metadata={"before": before, "after": after},
    )
    return kpa


# ---------------------------------------------------------------------------
# KRA
# ---------------------------------------------------------------------------
def validate_kra_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("name")):
        errs.append(ValidationError("name", "Name is required."))
    if clean(payload.get("role_key")) not in ROLE_DEFINITIONS:
        errs.append(ValidationError("role_key", "Choose a role."))
    if (clean(payload.get("metric")) or "count") not in KRA_METRICS:
        errs.append(ValidationError("metric", f"Metric must be one of: {', '.join(KRA_METRICS)}"))
    if (clean(payload.get("frequency")) or "monthly") not in KRA_FREQUENCIES:
        errs.append(ValidationError("frequency", f"Frequency must be one of: {', '.join(KRA_FREQUENCIES)}"))
    try:
        target = parse_optional_float(payload.get("default_target"))
        if target is None or target <= 0:
            errs.append(ValidationError("default_target", "Target must be greater than zero."))
    except ValueError:
        errs.append(ValidationError("default_target", "Target must be a number."))
    try:
        weight = parse_optional_int(payload.get("weight"))
        if weight is None or not 1 <= weight <= 100:
            errs.append(ValidationError("weight", "Weight must be between 1 and 100."))
    except ValueError:
        errs.append(ValidationError("weight", "Weight must be a whole number."))
    try:
        parse_optional_int(payload.get("kpa_id"))
    except ValueError:
        errs.append(ValidationError("kpa_id", "KPA must be an id."))
    return errs


def _check_weight(s, role_key: str, weight: int, *, exclude_kra_id: int | None = None) -> None:
    used = role_weight_total(s, role_key, exclude_kra_id=exclude_kra_id)
    if used + weight > MAX_ROLE_KRA_WEIGHT:
        role_name = ROLE_DEFINITIONS.get(role_key, (role_key,))[0]
        raise ValueError(
            f"{role_name} KRAs would total {used + weight}% (max {MAX_ROLE_KRA_WEIGHT}%). "
            f"{MAX_ROLE_KRA_WEIGHT - used}% is still available."
        )


def _kra_snapshot(k: KRA) -> dict[str, Any]:
    return {
        "name": k.name,
        "role_key": k.role_key,
        "kpa_id": k.kpa_id,
        "metric": k.metric,
        "default_target": k.default_target,
        "frequency": k.frequency,
        "weight": k.weight,
        "is_active": k.is_active,
    }


def create_kra(s, payload: dict[str, Any], *, user: User) -> KRA:
    role_key = clean(payload.get("role_key")) or ""
    weight = parse_optional_int(payload.get("weight")) or 0
    _check_weight(s, role_key, weight)
    k = KRA(
        name=clean(payload.get("name")) or "",
        role_key=role_key,
        kpa_id=parse_optional_int(payload.get("kpa_id")),
        metric=clean(payload.get("metric")) or "count",
        default_target=parse_optional_float(payload.get("default_target")) or 0,
        frequency=clean(payload.get("frequency")) or "monthly",
        weight=weight,
        incentive=clean(payload.get("incentive")),
        is_active=True,
    )
    s.add(k)
    s.flush()
    record_event(s, actor=user, action="kra.create", entity_type="KRA", entity_id=str(k.id), metadata=_kra_snapshot(k))
    return k


def update_kra(s, k: KRA, payload: dict[str, Any], *, user: User) -> KRA:
    before = _kra_snapshot(k)
    role_key = clean(payload.get("role_key")) or k.role_key
    weight = parse_optional_int(payload.get("weight")) or k.weight
    if k.is_active:
        _check_weight(s, role_key, weight, exclude_kra_id=k.id)
    k.name = clean(payload.get("name")) or k.name
    k.role_key = role_key
    k.kpa_id = parse_optional_int(payload.get("kpa_id"))
    k.metric = clean(payload.get("metric")) or k.metric
    k.default_target = parse_optional_float(payload.get("default_target")) or k.default_target
    k.frequency = clean(payload.get("frequency")) or k.frequency
    k.weight = weight
    k.incentive = clean(payload.get("incentive"))
    k.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="kra.update",
        entity_type="KRA",
        entity_id=str(k.id),
        metadata={"before": before, "after": _kra_snapshot(k)},
    )
    return k


def set_kra_active(s, k: KRA, *, active: bool, user: User) -> None:
    if k.is_active == active:
        return
    if active:
        _check_weight(s, k.role_key, k.weight, exclude_kra_id=k.id)
    k.is_active = active
    k.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="kra.activate" if active else "kra.deactivate",
        entity_type="KRA",
        entity_id=str(k.id),
        metadata={"name": k.name, "role_key": k.role_key},
    )


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------
def can_record_achievement(actor: User, target_user: User) -> bool:
    return user_has_permission(actor, "kra.manage") or target_user.manager_id == actor.id


def assign_target(
    s,
    k: KRA,
    *,
    user_id: int,
    period: str,
    target: float | None,
    actor: User,
) -> KRATarget:
    """Create or update the (KRA, user, period) target."""
    period = (period or "").strip()
    if not valid_period(k.frequency, period):
        expected = "YYYY-Qn" if k.frequency == "quarterly" else "YYYY-MM"
        raise ValueError(f"Period must look like {expected}.")
    target = k.default_target if target is None else target
    if not math.isfinite(target) or target <= 0:
        raise ValueError("Target must be greater than zero.")
    owner = s.query(User).filter(User.id == user_id, User.is_active.is_(True)).one_or_none()
    if not owner:
        raise ValueError("User not found or inactive.")

    kt = (
        s.query(KRATarget)
        .filter(KRATarget.kra_id == k.id, KRATarget.user_id == user_id, KRATarget.period == period)
        .one_or_none()
    )
    before = kt.target if kt else None
    if kt is None:
        kt = KRATarget(kra_id=k.id, user_id=user_id, period=period, target=target, achieved=0)
        s.add(kt)
    else:
        kt.target = target
        kt.updated_at = datetime.utcnow()
    s.flush()
    record_event(
        s,
        actor=actor,
        action="kra_target.assign",
        entity_type="KRATarget",
        entity_id=str(kt.id),
        metadata={"kra_id": k.id, "user_id": user_id, "period": period, "before": before, "after": target},
    )
    return kt


def record_achievement(s, kt: KRATarget, achieved: Any, *, actor: User, today: date | None = None) -> int:
    """
    Set the achieved value. Returns the KRA points awarded (0 unless this is
    the first time the target reaches 100%).
    """
    try:
        value = parse_optional_float(achieved)
    except ValueError:
        raise ValueError("Achieved must be a number.")
    if value is None:
        raise ValueError("Achieved must be a number.")
    if value < 0:
        raise ValueError("Achieved cannot be negative.")

    before = kt.achieved
    kt.achieved = value
    kt.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="kra_target.achievement",
        entity_type="KRATarget",
        entity_id=str(kt.id),
        metadata={"before": before, "after": value, "target": kt.target, "period": kt.period},
    )

    points = 0
    if not kt.points_awarded and achievement_pct(kt.target, value) >= 100:
        points = kra_points(value, kt.target)
        kt.points_awarded = True
        award_xp(s, kt.user, points, reason=f"KRA target reached: {kt.kra.name} ({kt.period})", actor=actor, today=today)
    return points


def targets_for(s, *, user_id: int, today: date | None = None) -> list[KRATarget]:
    """The user's targets for the current month and quarter."""
    today = today or date.today()
    periods = {period_for("monthly", today), period_for("quarterly", today)}
    rows = (
        s.query(KRATarget)
        .join(KRA, KRA.id == KRATarget.kra_id)
        .filter(KRATarget.user_id == user_id, KRATarget.period.in_(periods), KRA.is_active.is_(True))
        .order_by(KRA.weight.desc(), KRA.name.asc())
        .all()
    )
    # A quarterly KRA only counts against its quarter; monthly ones against the month.
    return [kt for kt in rows if kt.period == period_for(kt.kra.frequency, today)]


def user_weighted_score(s, *, user_id: int, today: date | None = None) -> float:
    return weighted_score(
        (kt.kra.weight, achievement_pct(kt.target, kt.achieved)) for kt in targets_for(s, user_id=user_id, today=today)
    )


def my_kra(s, user: User, *, today: date | None = None) -> dict[str, Any]:
    rows = []
    for kt in targets_for(s, user_id=user.id, today=today):
        pct = achievement_pct(kt.target, kt.achieved)
        rows.append(
            {
                "target": kt,
                "kra": kt.kra,
                "pct": pct,
                "bar": min(pct, 100),
                "status": performance_status(pct),
                "points": kra_points(kt.achieved, kt.target),
            }
        )
    score = weighted_score((r["kra"].weight, r["pct"]) for r in rows)
    return {
        "rows": rows,
        "score": score,
        "status": performance_status(score),
        "total_points": sum(r["points"] for r in rows),
    }


def kpa_summary(s, *, period: str, user_ids: set[int] | None = None) -> list[dict[str, Any]]:
    """Per KPA category: number of active KRAs and the average achievement in `period`."""
    kras = s.query(KRA).filter(KRA.is_active.is_(True)).all()
    q = s.query(KRATarget).filter(KRATarget.period == period)
    if user_ids is not None:
        q = q.filter(KRATarget.user_id.in_(user_ids))
    by_kra: dict[int, list[float]] = {}
    for kt in q.all():
        by_kra.setdefault(kt.kra_id, []).append(achievement_pct(kt.target, kt.achieved))

    out = []
    for category in KPA_CATEGORIES:
        in_cat = [k for k in kras if k.kpa is not None and k.kpa.category == category]
        pcts = [p for k in in_cat for p in by_kra.get(k.id, [])]
        out.append(
            {
                "category": category,
                "kra_count": len(in_cat),
                "avg_achievement": round(sum(pcts) / len(pcts), 1) if pcts else 0.0,
            }
        )
    return out
