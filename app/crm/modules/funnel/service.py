from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func

from app.crm.models import User
from app.crm.modules.leads.models import Lead
from app.crm.modules.leads.service import scoped_leads

# (label, lead statuses) in funnel order
FUNNEL_STAGES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Leads", ("new", "contacted")),
    ("Qualified", ("qualified",)),
    ("Proposal", ("proposal",)),
    ("Negotiation", ("negotiation",)),
    ("Closed Won", ("closed_won",)),
)


@dataclass(frozen=True)
class FunnelStage:
    label: str
    count: int
    value: float
    conversion: int


def stage_conversions(counts: list[int]) -> list[int]:
    """
    First stage is 100; stage i is count_i over the leads in stages 0..i.
    """
    out: list[int] = []
    running = 0
    for i, c in enumerate(counts):
        running += c
        if i == 0:
            out.append(100)
        elif running == 0:
            out.append(0)
        else:
            out.append(round(c / running * 100))
    return out


def win_rate(won: int, lost: int) -> float:
    closed = won + lost
    if closed == 0:
        return 0.0
    return round(won / closed * 100, 1)


def compute_funnel(s, *, user: User, assigned_to_id: int | None = None) -> dict[str, Any]:
    q = scoped_leads(s, user)
    if assigned_to_id is not None:
        q = q.filter(Lead.assigned_to_id == assigned_to_id)
    rows = (
        q.with_entities(Lead.status, func.count(Lead.id), func.coalesce(func.sum(Lead.estimated_value), 0))
        .group_by(Lead.status)
        .all()
    )
    counts = {st: int(n or 0) for st, n, _ in rows}
    values = {st: float(v or 0) for st, _, v in rows}

    stage_counts = [sum(counts.get(st, 0) for st in statuses) for _, statuses in FUNNEL_STAGES]
    stage_values = [sum(values.get(st, 0.0) for st in statuses) for _, statuses in FUNNEL_STAGES]
    conversions = stage_conversions(stage_counts)
    stages = [
        FunnelStage(label=label, count=stage_counts[i], value=stage_values[i], conversion=conversions[i])
        for i, (label, _) in enumerate(FUNNEL_STAGES)
    ]

    won = counts.get("closed_won", 0)
    lost = counts.get("closed_lost", 0)
    won_value = values.get("closed_won", 0.0)
    return {
        "stages": stages,
        "total": sum(counts.values()),
        "won": won,
        "lost": lost,
        "win_rate": win_rate(won, lost),
        "avg_deal_value": round(won_value / won, 2) if won else 0.0,
        "pipeline_value": sum(stage_values[:-1]),
    }
