"""
TASK BOARD
==========

Four kanban columns: todo -> in_progress -> review -> completed.

Cards move between columns through move_task(), the drop handler used by both
the JSON endpoint (drag-and-drop) and the plain form buttons.

Completion XP:
- The first time a task reaches `completed` (moved there, or created there)
  task.xp_reward is awarded to the assignee.
- Moving back out clears completed_at but never takes the XP back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import or_

from app.crm.audit import record_event
from app.crm.constants import DEFAULT_TASK_XP, PRIORITIES, TASK_COLUMNS, TASK_STATUSES, TASK_TYPES
from app.crm.models import User
from app.crm.modules.gamification.service import award_xp
from app.crm.modules.tasks.models import Task
from app.crm.rbac import scope_user_ids
from app.crm.utils import Page, clean, paginate, parse_date, parse_optional_int

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "title",
    "description",
    "assigned_to_id",
    "priority",
    "task_type",
    "due_date",
    "related_lead_id",
    "related_customer_id",
    "estimated_minutes",
    "xp_reward",
)


@dataclass(frozen=True)
class ValidationError:
    field: str
    message: str


@dataclass
class BoardColumn:
    key: str
    label: str
    tasks: list[Task] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.tasks)


def board(tasks: list[Task]) -> list[BoardColumn]:
    """Group tasks into the kanban columns, in column order."""
    columns = [BoardColumn(key, label) for key, label in TASK_COLUMNS]
    by_key = {c.key: c for c in columns}
    for t in tasks:
        col = by_key.get(t.status)
        if col is None:
            logger.warning("Task %s has unknown status %r; showing it under %s", t.id, t.status, columns[0].key)
            col = columns[0]
        col.tasks.append(t)
    return columns


def is_overdue(task: Task, today: date | None = None) -> bool:
    today = today or date.today()
    return task.status != "completed" and task.due_date is not None and task.due_date < today


def scoped_tasks(s, user: User):
    q = s.query(Task)
    ids = scope_user_ids(s, user)
    if ids is not None:
        q = q.filter(or_(Task.assigned_to_id.in_(ids), Task.assigned_by_id.in_(ids)))
    return q


def can_view_task(s, user: User, task: Task) -> bool:
    ids = scope_user_ids(s, user)
    if ids is None:
        return True
    return task.assigned_to_id in ids or task.assigned_by_id in ids


def get_task_by_id(s, task_id: int) -> Task | None:
    return s.query(Task).filter(Task.id == task_id).one_or_none()


def query_tasks(s, *, user: User, filters: dict[str, Any], today: date | None = None):
    today = today or date.today()
    q = scoped_tasks(s, user)
    term = (filters.get("q") or "").strip()
    if term:
        like = f"%{term}%"
        q = q.filter(or_(Task.title.ilike(like), Task.description.ilike(like)))
    if filters.get("priority"):
        q = q.filter(Task.priority == filters["priority"])
    if filters.get("status"):
        q = q.filter(Task.status == filters["status"])
    if filters.get("assigned_to_id"):
        q = q.filter(Task.assigned_to_id == int(filters["assigned_to_id"]))
    if filters.get("due_date"):
        q = q.filter(Task.due_date == filters["due_date"])
    if filters.get("overdue"):
        q = q.filter(Task.status != "completed", Task.due_date.isnot(None), Task.due_date < today)
    return q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc())


def filter_tasks(s, *, user: User, filters: dict[str, Any], page: int, per_page: int, today: date | None = None) -> Page:
    return paginate(query_tasks(s, user=user, filters=filters, today=today), page=page, per_page=per_page)


def todays_tasks(s, *, user: User, today: date | None = None) -> list[Task]:
    today = today or date.today()
    return (
        scoped_tasks(s, user)
        .filter(Task.due_date == today, Task.status != "completed")
        .order_by(Task.id.asc())
        .all()
    )


def overdue_tasks(s, *, user: User, today: date | None = None) -> list[Task]:
    today = today or date.today()
    return (
        scoped_tasks(s, user)
        .filter(Task.due_date.isnot(None), Task.due_date < today, Task.status != "completed")
        .order_by(Task.due_date.asc(), Task.id.asc())
        .all()
    )


def validate_task_payload(payload: dict[str, Any]) -> list[ValidationError]:
    errs: list[ValidationError] = []
    if not clean(payload.get("title")):
        errs.append(ValidationError("title", "Title is required."))
    priority = clean(payload.get("priority")) or "medium"
    if priority not in PRIORITIES:
        errs.append(ValidationError("priority", f"Priority must be one of: {', '.join(PRIORITIES)}"))
    task_type = clean(payload.get("task_type")) or "other"
    if task_type not in TASK_TYPES:
        errs.append(ValidationError("task_type", f"Type must be one of: {', '.join(TASK_TYPES)}"))
    status = clean(payload.get("status")) or "todo"
    if status not in TASK_STATUSES:
        errs.append(ValidationError("status", f"Status must be one of: {', '.join(TASK_STATUSES)}"))
    try:
        parse_date(payload.get("due_date"))
    except ValueError:
        errs.append(ValidationError("due_date", "Due date must be YYYY-MM-DD."))
    for key, label in (
        ("estimated_minutes", "Estimated minutes"),
        ("xp_reward", "XP reward"),
        ("assigned_to_id", "Assignee"),
        ("related_lead_id", "Related lead"),
        ("related_customer_id", "Related customer"),
    ):
        try:
            v = parse_optional_int(payload.get(key))
            if v is not None and v < 0:
                errs.append(ValidationError(key, f"{label} cannot be negative."))
        except ValueError:
            errs.append(ValidationError(key, f"{label} must be a whole number."))
    return errs


def _resolve_assignee(s, user: User, raw: Any) -> int:
    requested = parse_optional_int(raw)
    if requested is None or requested == user.id:
        return user.id
    ids = scope_user_ids(s, user)
    if ids is not None and requested not in ids:
        raise ValueError("You can only assign tasks to yourself or your team.")
    assignee = s.query(User).filter(User.id == requested, User.is_active.is_(True)).one_or_none()
    if not assignee:
        raise ValueError("Assignee not found or inactive.")
    return assignee.id


def _complete(s, task: Task, *, user: User, today: date | None = None) -> int:
    """Mark `task` done; its XP is paid out the first time only. Returns the XP awarded."""
    task.completed_at = datetime.utcnow()
    awarded = 0
    if not task.xp_awarded and (task.xp_reward or 0) > 0:
        award_xp(
            s,
            s.get(User, task.assigned_to_id),
            task.xp_reward,
            reason=f"Completed task: {task.title}",
            actor=user,
            today=today,
        )
        awarded = task.xp_reward
    task.xp_awarded = True
    return awarded


def create_task(s, payload: dict[str, Any], *, user: User, today: date | None = None) -> Task:
    now = datetime.utcnow()
    xp = parse_optional_int(payload.get("xp_reward"))
    status = clean(payload.get("status")) or "todo"
    if status not in TASK_STATUSES:
        raise ValueError(f"Unknown task status: {status}")
    t = Task(
        title=clean(payload.get("title")) or "",
        description=clean(payload.get("description")),
        assigned_to_id=_resolve_assignee(s, user, payload.get("assigned_to_id")),
        assigned_by_id=user.id,
        status=status,
        priority=clean(payload.get("priority")) or "medium",
        task_type=clean(payload.get("task_type")) or "other",
        due_date=parse_date(payload.get("due_date")),
        related_lead_id=parse_optional_int(payload.get("related_lead_id")),
        related_customer_id=parse_optional_int(payload.get("related_customer_id")),
        estimated_minutes=parse_optional_int(payload.get("estimated_minutes")),
        time_spent_minutes=0,
        xp_reward=DEFAULT_TASK_XP if xp is None else xp,
        updated_at=now,
    )
    s.add(t)
    s.flush()
    if status == "completed":
        _complete(s, t, user=user, today=today)
    record_event(
        s,
        actor=user,
        action="task.create",
        entity_type="Task",
        entity_id=str(t.id),
        metadata={"title": t.title, "assigned_to_id": t.assigned_to_id, "status": t.status, "due_date": t.due_date},
    )
    return t


def update_task(s, task: Task, payload: dict[str, Any], *, user: User) -> Task:
    before = {f: getattr(task, f) for f in _EDITABLE_FIELDS}
    task.title = clean(payload.get("title")) or task.title
    task.description = clean(payload.get("description"))
    task.assigned_to_id = _resolve_assignee(s, user, payload.get("assigned_to_id") or task.assigned_to_id)
    task.priority = clean(payload.get("priority")) or task.priority
    task.task_type = clean(payload.get("task_type")) or task.task_type
    task.due_date = parse_date(payload.get("due_date"))
    task.related_lead_id = parse_optional_int(payload.get("related_lead_id"))
    task.related_customer_id = parse_optional_int(payload.get("related_customer_id"))
    task.estimated_minutes = parse_optional_int(payload.get("estimated_minutes"))
    xp = parse_optional_int(payload.get("xp_reward"))
    if xp is not None:
        task.xp_reward = xp
    task.updated_at = datetime.utcnow()
    after = {f: getattr(task, f) for f in _EDITABLE_FIELDS}
    record_event(
        s,
        actor=user,
        action="task.update",
        entity_type="Task",
        entity_id=str(task.id),
        metadata={"before": before, "after": after, "fields_changed": [k for k in before if before[k] != after[k]]},
    )
    return task


def move_task(s, task: Task, new_status: str, *, user: User, today: date | None = None) -> bool:
    """
    Drop `task` into the `new_status` column. Returns False when nothing changed.
    """
    if new_status not in TASK_STATUSES:
        raise ValueError(f"Unknown task status: {new_status}")
    if task.status == new_status:
        return False

    old_status = task.status
    task.status = new_status
    task.updated_at = datetime.utcnow()
    awarded = 0
    if new_status == "completed":
        awarded = _complete(s, task, user=user, today=today)
    elif old_status == "completed":
        task.completed_at = None

    record_event(
        s,
        actor=user,
        action="task.move",
        entity_type="Task",
        entity_id=str(task.id),
        metadata={"from": old_status, "to": new_status, "xp_awarded": awarded},
    )
    return True


def log_time(s, task: Task, minutes: Any, *, user: User) -> Task:
    try:
        m = int(str(minutes).strip())
    except (TypeError, ValueError):
        raise ValueError("Minutes must be a whole number.")
    if m <= 0:
        raise ValueError("Minutes must be greater than zero.")
    task.time_spent_minutes = (task.time_spent_minutes or 0) + m
    task.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="task.log_time",
        entity_type="Task",
        entity_id=str(task.id),
        metadata={"minutes": m, "time_spent_minutes": task.time_spent_minutes},
    )
    return task


def delete_task(s, task: Task, *, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="task.delete",
        entity_type="Task",
        entity_id=str(task.id),
        metadata={"title": task.title, "status": task.status, "assigned_to_id": task.assigned_to_id},
    )
    s.delete(task)
