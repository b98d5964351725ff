from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from app.crm.models import User
from app.crm.modules.gamification.service import level_info, user_badges
from app.crm.modules.kra.service import my_kra
from app.crm.modules.leads.service import due_follow_ups, lead_stats
from app.crm.modules.reports.service import compute_kpis, resolve_window, team_performance
from app.crm.modules.tasks.service import overdue_tasks, todays_tasks

# Nudges shown per kind; the full lists live on the leads/tasks pages.
MAX_NUDGES = 5


@dataclass(frozen=True)
class Nudge:
    kind: str  # "follow_up" | "overdue_task"
    message: str
    entity_id: int


def smart_nudges(s, user: User, *, today: date | None = None) -> list[Nudge]:
    today = today or date.today()
    out: list[Nudge] = []
    for lead in due_follow_ups(s, user=user, today=today)[:MAX_NUDGES]:
        days = (today - lead.follow_up_date).days
        when = "today" if days == 0 else f"{days} day{'s' if days != 1 else ''} ago"
        out.append(
            Nudge(
                kind="follow_up",
                message=f"Follow up with {lead.customer_name} ({lead.lead_code}), due {when}.",
                entity_id=lead.id,
            )
        )
    for task in overdue_tasks(s, user=user, today=today)[:MAX_NUDGES]:
        days = (today - task.due_date).days
        out.append(
            Nudge(
                kind="overdue_task",
                message=f"Task '{task.title}' is {days} day{'s' if days != 1 else ''} overdue.",
                entity_id=task.id,
            )
        )
    return out


def dashboard_context(s, user: User, *, today: date | None = None) -> dict[str, Any]:
    """Everything the home page renders for `user`."""
    today = today or date.today()
    ctx: dict[str, Any] = {
        "today": today,
        "todays_tasks": todays_tasks(s, user=user, today=today),
        "overdue_tasks": overdue_tasks(s, user=user, today=today),
        "lead_stats": lead_stats(s, user=user),
        "kra": my_kra(s, user, today=today),
        "level": level_info(user.total_xp or 0),
        "badges": user_badges(s, user),
        "nudges": smart_nudges(s, user, today=today),
        "team_kpis": None,
        "team": None,
    }
    if user.level >= 3:
        window = resolve_window("month", today=today)
        ctx["team_window"] = window
        ctx["team_kpis"] = compute_kpis(s, user, window)
        ctx["team"] = team_performance(s, user, window, today=today)[:5]
    return ctx
