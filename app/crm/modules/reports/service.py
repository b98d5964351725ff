"""
Reporting windows, KPIs and team performance.

Windows are inclusive [start, end] dates ending today:
- today
- week    (Monday of this week .. today)
- month   (1st of this month .. today)
- quarter (1st day of this quarter .. today)
- year    (1 January .. today)
- custom  (explicit from/to)
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import and_, func, or_

from app.crm.constants import LEAD_SOURCES, LEAD_STATUSES, OPEN_LEAD_STATUSES
from app.crm.models import User
from app.crm.modules.kra.service import user_weighted_score
from app.crm.modules.leads.models import Lead
from app.crm.modules.tasks.models import Task
from app.crm.rbac import scope_user_ids
from app.crm.utils import parse_date

RANGES = ("today", "week", "month", "quarter", "year", "custom")


@dataclass(frozen=True)
class DateWindow:
    key: str
    start: date
    end: date

    @property
    def start_dt(self) -> datetime:
        return datetime.combine(self.start, time.min)

    @property
    def end_dt(self) -> datetime:
        """Exclusive upper bound for datetime columns."""
        return datetime.combine(self.end + timedelta(days=1), time.min)

    @property
    def label(self) -> str:
        if self.start == self.end:
            return self.start.isoformat()
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


def resolve_window(key: str, *, today: date | None = None, start: Any = None, end: Any = None) -> DateWindow:
    today = today or date.today()
    key = (key or "month").strip().lower()
    if key == "today":
        return DateWindow(key, today, today)
    if key == "week":
        return DateWindow(key, today - timedelta(days=today.weekday()), today)
    if key == "month":
        return DateWindow(key, today.replace(day=1), today)
    if key == "quarter":
        first_month = (today.month - 1) // 3 * 3 + 1
        return DateWindow(key, date(today.year, first_month, 1), today)
    if key == "year":
        return DateWindow(key, date(today.year, 1, 1), today)
    if key == "custom":
        try:
            s, e = parse_date(start), parse_date(end)
        except ValueError:
            raise ValueError("Custom dates must be YYYY-MM-DD.")
        if not s or not e:
            raise ValueError("Custom range needs both a start and an end date.")
        if s > e:
            raise ValueError("Start date must be on or before the end date.")
        return DateWindow(key, s, e)
    raise ValueError(f"Unknown date range: {key}")


def kpi_user_ids(s, user: User) -> set[int] | None:
    """Field staff (level 1) see their own numbers; everyone else their team's."""
    if user.level <= 1:
        return {user.id}
    return scope_user_ids(s, user)


def _leads(s, ids: set[int] | None):
    q = s.query(Lead)
    if ids is not None:
        q = q.filter(Lead.assigned_to_id.in_(ids))
    return q


def _tasks(s, ids: set[int] | None):
    q = s.query(Task)
    if ids is not None:
        q = q.filter(Task.assigned_to_id.in_(ids))
    return q


def _tasks_in_window(q, window: DateWindow):
    return q.filter(
        or_(
            and_(Task.due_date >= window.start, Task.due_date <= window.end),
            and_(Task.due_date.is_(None), Task.created_at >= window.start_dt, Task.created_at < window.end_dt),
        )
    )


def compute_kpis(s, user: User, window: DateWindow) -> dict[str, Any]:
    ids = kpi_user_ids(s, user)

    tasks = _tasks_in_window(_tasks(s, ids), window)
    total_tasks = tasks.count()
    completed_tasks = tasks.filter(Task.status == "completed").count()

    won = _leads(s, ids).filter(
        Lead.status == "closed_won",
        Lead.closed_at >= window.start_dt,
        Lead.closed_at < window.end_dt,
    )
    conversions = won.count()
    revenue = won.with_entities(func.coalesce(func.sum(Lead.estimated_value), 0)).scalar() or 0

    return {
        "task_total": total_tasks,
        "task_completed": completed_tasks,
        "completion_rate": round(completed_tasks / total_tasks * 100, 1) if total_tasks else 0.0,
        "conversions": conversions,
        "revenue": float(revenue),
        "active_leads": _leads(s, ids).filter(Lead.status.in_(OPEN_LEAD_STATUSES)).count(),
        "new_leads": _leads(s, ids).filter(Lead.created_at >= window.start_dt, Lead.created_at < window.end_dt).count(),
    }


def lead_breakdown(s, user: User, window: DateWindow) -> dict[str, dict[str, int]]:
    """Leads created in the window, counted by source and by status."""
    q = _leads(s, kpi_user_ids(s, user)).filter(Lead.created_at >= window.start_dt, Lead.created_at < window.end_dt)
    by_source = {src: 0 for src in LEAD_SOURCES}
    for src, n in q.with_entities(Lead.source, func.count(Lead.id)).group_by(Lead.source).all():
        by_source[src] = int(n or 0)
    by_status = {st: 0 for st in LEAD_STATUSES}
    for st, n in q.with_entities(Lead.status, func.count(Lead.id)).group_by(Lead.status).all():
        by_status[st] = int(n or 0)
    return {"by_source": by_source, "by_status": by_status}


@dataclass(frozen=True)
class TeamRow:
    user: User
    leads_owned: int
    won: int
    conversion_rate: float
    tasks_completed: int
    xp: int
    kra_score: float


def team_performance(s, user: User, window: DateWindow, *, today: date | None = None) -> list[TeamRow]:
    ids = scope_user_ids(s, user)
    q = s.query(User).filter(User.is_active.is_(True))
    if ids is not None:
        q = q.filter(User.id.in_(ids))
    members = q.order_by(User.full_name.asc(), User.email.asc()).all()

    rows: list[TeamRow] = []
    for m in members:
        owned = s.query(Lead).filter(Lead.assigned_to_id == m.id).count()
        won = (
            s.query(Lead)
            .filter(
                Lead.assigned_to_id == m.id,
                Lead.status == "closed_won",
                Lead.closed_at >= window.start_dt,
                Lead.closed_at < window.end_dt,
            )
            .count()
        )
        done = (
            s.query(Task)
            .filter(
                Task.assigned_to_id == m.id,
                Task.status == "completed",
                Task.completed_at >= window.start_dt,
                Task.completed_at < window.end_dt,
            )
            .count()
        )
        rows.append(
            TeamRow(
                user=m,
                leads_owned=owned,
                won=won,
                conversion_rate=round(won / owned * 100, 1) if owned else 0.0,
                tasks_completed=done,
                xp=m.total_xp or 0,
                kra_score=user_weighted_score(s, user_id=m.id, today=today),
            )
        )
    return sorted(rows, key=lambda r: (-r.won, -r.xp, r.user.display_name))


def export_report_csv(rows: list[TeamRow], window: DateWindow) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(["Window", window.label])
    w.writerow([])
    w.writerow(["User", "Email", "Role", "Leads Owned", "Won", "Conversion %", "Tasks Completed", "XP", "KRA Score"])
    for r in rows:
        role = r.user.primary_role
        w.writerow(
            [
                r.user.display_name,
                r.user.email,
                role.name if role else "",
                r.leads_owned,
                r.won,
                f"{r.conversion_rate:.1f}",
                r.tasks_completed,
                r.xp,
                f"{r.kra_score:.1f}",
            ]
        )
    return out.getvalue().encode("utf-8")
