from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func

from app.crm.audit import record_event
from app.crm.constants import OPEN_LEAD_STATUSES, TERRITORY_POTENTIALS
from app.crm.models import User
from app.crm.modules.leads.models import Lead
from app.crm.modules.territories.models import Territory
from app.crm.rbac import scope_user_ids
from app.crm.utils import clean, parse_optional_int

_NUMBER_FIELDS = ("population", "businesses", "monthly_target", "achieved")


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


def performance(t: Territory) -> int:
    if not t.monthly_target:
        return 0
    return round((t.achieved or 0) / t.monthly_target * 100)


def territory_stats(territories: list[Territory]) -> dict[str, int]:
    count = len(territories)
    return {
        "count": count,
        "population": sum(t.population or 0 for t in territories),
        "businesses": sum(t.businesses or 0 for t in territories),
        "avg_performance": round(sum(performance(t) for t in territories) / count) if count else 0,
    }


def current_leads(s, territories: list[Territory]) -> dict[int, int]:
    """Open lead count per territory, via the territory's assigned user."""
    user_ids = {t.assigned_user_id for t in territories if t.assigned_user_id}
    counts: dict[int, int] = {}
    if user_ids:
        rows = (
            s.query(Lead.assigned_to_id, func.count(Lead.id))
            .filter(Lead.assigned_to_id.in_(user_ids), Lead.status.in_(OPEN_LEAD_STATUSES))
            .group_by(Lead.assigned_to_id)
            .all()
        )
        counts = {int(uid): int(n or 0) for uid, n in rows}
    return {t.id: counts.get(t.assigned_user_id or -1, 0) for t in territories}


def query_territories(s, *, user: User, include_inactive: bool = False):
    q = s.query(Territory)
    if not include_inactive:
        q = q.filter(Territory.is_active.is_(True))
    ids = scope_user_ids(s, user)
    if ids is not None:
        q = q.filter(Territory.assigned_user_id.in_(ids))
    return q.order_by(Territory.code.asc())


def validate_territory_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("code")):
        errs.append(ValidationError("code", "Code is required."))
    if not clean(payload.get("name")):
        errs.append(ValidationError("name", "Name is required."))
    for key in _NUMBER_FIELDS:
        try:
            v = parse_optional_int(payload.get(key))
            if v is not None and v < 0:
                errs.append(ValidationError(key, "Must be zero or more."))
        except ValueError:
            errs.append(ValidationError(key, "Must be a whole number."))
    potential = clean(payload.get("potential")) or "Medium"
    if potential not in TERRITORY_POTENTIALS:
        errs.append(ValidationError("potential", f"Potential must be one of: {', '.join(TERRITORY_POTENTIALS)}"))
    try:
        parse_optional_int(payload.get("assigned_user_id"))
    except ValueError:
        errs.append(ValidationError("assigned_user_id", "Assigned user must be a user id."))
    return errs


def _snapshot(t: Territory) -> dict[str, Any]:
    return {
        "code": t.code,
        "name": t.name,
        "assigned_user_id": t.assigned_user_id,
        "population": t.population,
        "businesses": t.businesses,
        "monthly_target": t.monthly_target,
        "achieved": t.achieved,
        "potential": t.potential,
        "is_active": t.is_active,
    }


def _apply(s, t: Territory, payload: dict[str, Any]) -> None:
    code = (clean(payload.get("code")) or "").upper()
    clash = s.query(Territory).filter(Territory.code == code)
    if t.id is not None:
        clash = clash.filter(Territory.id != t.id)
    if clash.first():
        raise ValueError(f"Territory code {code} is already in use.")
    t.code = code
    t.name = clean(payload.get("name")) or ""
    t.area = clean(payload.get("area"))
    assigned = parse_optional_int(payload.get("assigned_user_id"))
    if assigned is not None and not s.query(User).filter(User.id == assigned, User.is_active.is_(True)).one_or_none():
        raise ValueError("Assigned user not found or inactive.")
    t.assigned_user_id = assigned
    for key in _NUMBER_FIELDS:
        setattr(t, key, parse_optional_int(payload.get(key)) or 0)
    t.potential = clean(payload.get("potential")) or "Medium"
    if "is_active" in payload:
        t.is_active = str(payload.get("is_active") or "").lower() in ("1", "true", "on", "yes")


def create_territory(s, payload: dict[str, Any], *, user: User) -> Territory:
    t = Territory(is_active=True)
    _apply(s, t, payload)
    s.add(t)
    s.flush()
    record_event(s, actor=user, action="territory.create", entity_type="Territory", entity_id=str(t.id), metadata=_snapshot(t))
    return t


def update_territory(s, t: Territory, payload: dict[str, Any], *, user: User) -> Territory:
    before = _snapshot(t)
    _apply(s, t, payload)
    t.updated_at = datetime.utcnow()
    after = _snapshot(t)
    record_event(
        s,
        actor=user,
        action="territory.update",
        entity_type="Territory",
        entity_id=str(t.id),
        metadata={"before": before, "after": after, "fields_changed": [k for k in before if before[k] != after[k]]},
    )
    return t
