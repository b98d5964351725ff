"""
XP, levels, streaks and badges.

XP sources:
- lead status changes (LEAD_STATUS_XP)
- completing a task (task.xp_reward, once per task)
- KRA targets crossing 100% achievement (kra_points)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from app.crm.audit import record_event
from app.crm.models import User
from app.crm.modules.gamification.models import Badge, UserBadge

logger = logging.getLogger(__name__)

# (level, xp required, title, perks)
LEVELS: tuple[tuple[int, int, str, tuple[str, ...]], ...] = (
    (1, 0, "Newcomer", ("Basic dashboard", "Task tracking")),
    (2, 500, "Learner", ("Lead insights", "Daily nudges")),
    (3, 1200, "Performer", ("Priority leads", "Performance badges")),
    (4, 2000, "Achiever", ("Advanced analytics", "Custom goals")),
    (5, 3000, "Expert", ("Team mentoring", "Premium customer access")),
    (6, 4500, "Champion", ("Leadership visibility", "Bonus multipliers")),
    (7, 6500, "Elite", ("Strategic accounts", "Executive reports")),
    (8, 9000, "Master", ("All features", "Hall of fame")),
)

# Seeded by scripts/init_db.py: (name, description, icon, color, xp required, category)
DEFAULT_BADGES: tuple[tuple[str, str, str, str, int, str], ...] = (
    ("First Steps", "Earned your first XP", "star", "gray", 1, "milestone"),
    ("Lead Hunter", "Reached 500 XP", "target", "blue", 500, "performance"),
    ("Deal Closer", "Reached 1,200 XP", "award", "green", 1200, "performance"),
    ("Consistency King", "Reached 2,000 XP", "flame", "orange", 2000, "streak"),
    ("Customer Champion", "Reached 3,000 XP", "heart", "pink", 3000, "milestone"),
    ("Team Player", "Reached 4,500 XP", "users", "purple", 4500, "team"),
    ("Sales Legend", "Reached 9,000 XP", "crown", "gold", 9000, "milestone"),
)


@dataclass(frozen=True)
class LevelInfo:
    level: int
    title: str
    perks: tuple[str, ...]
    current_xp: int
    level_xp: int
    next_level_xp: int
    progress: int  # percent to the next level

    @property
    def xp_to_next(self) -> int:
        return max(self.next_level_xp - self.current_xp, 0)


def level_info(xp: int) -> LevelInfo:
    xp = max(int(xp or 0), 0)
    idx = 0
    for i, (_, required, _, _) in enumerate(LEVELS):
        if xp >= required:
            idx = i
    level, required, title, perks = LEVELS[idx]
    if idx == len(LEVELS) - 1:
        return LevelInfo(level, title, perks, xp, required, required, 100)
    next_required = LEVELS[idx + 1][1]
    progress = round((xp - required) / (next_required - required) * 100)
    return LevelInfo(level, title, perks, xp, required, next_required, min(progress, 100))


def kra_points(progress: float, target: float) -> int:
    """Points for a KRA target given how far along it is."""
    if not target or target <= 0:
        return 25
    completion = progress / target * 100
    if completion >= 120:
        return 200
    if completion >= 100:
        return 150
    if completion >= 80:
        return 100
    if completion >= 60:
        return 50
    return 25


def streak_bonus(days: int) -> int:
    if days >= 30:
        return 500
    if days >= 14:
        return 200
    if days >= 7:
        return 100
    if days >= 3:
        return 50
    return 0


def _touch_streak(user: User, today: date) -> None:
    last = user.last_activity_date
    if last == today:
        user.streak_days = max(user.streak_days or 0, 1)
    elif last == today - timedelta(days=1):
        user.streak_days = (user.streak_days or 0) + 1
    else:
        user.streak_days = 1
    user.last_activity_date = today


def grant_eligible_badges(s, user: User) -> list[Badge]:
    held = {row[0] for row in s.query(UserBadge.badge_id).filter(UserBadge.user_id == user.id).all()}
    eligible = (
        s.query(Badge)
        .filter(Badge.is_active.is_(True), Badge.xp_required <= (user.total_xp or 0))
        .order_by(Badge.xp_required.asc(), Badge.id.asc())
        .all()
    )
    granted: list[Badge] = []
    for b in eligible:
        if b.id in held:
            continue
        s.add(UserBadge(user_id=user.id, badge_id=b.id))
        granted.append(b)
    if granted:
        s.flush()
    return granted


def award_xp(s, user: User, amount: int, *, reason: str, actor: User | None = None, today: date | None = None) -> list[Badge]:
    """
    Add XP to `user`, update the activity streak and grant any badges now in reach.
    Returns the badges granted by this award.
    """
    if amount is None or int(amount) <= 0:
        raise ValueError("XP amount must be greater than zero.")
    amount = int(amount)
    today = today or date.today()

    before = user.total_xp or 0
    user.total_xp = before + amount
    _touch_streak(user, today)
    s.flush()
    granted = grant_eligible_badges(s, user)

    record_event(
        s,
        actor=actor or user,
        action="xp.award",
        entity_type="User",
        entity_id=str(user.id),
        reason=reason,
        metadata={
            "amount": amount,
            "total_before": before,
            "total_after": user.total_xp,
            "streak_days": user.streak_days,
            "badges_granted": [b.name for b in granted],
        },
    )
    if level_info(before).level != level_info(user.total_xp).level:
        logger.info("User %s reached level %s", user.id, level_info(user.total_xp).level)
    return granted


def user_badges(s, user: User) -> list[UserBadge]:
    return (
        s.query(UserBadge)
        .filter(UserBadge.user_id == user.id)
        .order_by(UserBadge.earned_at.desc(), UserBadge.id.desc())
        .all()
    )


@dataclass(frozen=True)
class LeaderboardRow:
    rank: int
    user: User
    xp: int
    level: int
    title: str
    streak_days: int
    role_name: str
    latest_badge: str | None


def leaderboard(s, *, limit: int = 10, user_ids: set[int] | None = None) -> list[LeaderboardRow]:
    q = s.query(User).filter(User.is_active.is_(True))
    if user_ids is not None:
        q = q.filter(User.id.in_(user_ids))
    users = q.order_by(User.total_xp.desc(), User.full_name.asc(), User.email.asc()).limit(limit).all()

    latest: dict[int, str] = {}
    if users:
        rows = (
            s.query(UserBadge)
            .filter(UserBadge.user_id.in_([u.id for u in users]))
            .order_by(UserBadge.earned_at.asc(), UserBadge.id.asc())
            .all()
        )
        for ub in rows:
            latest[ub.user_id] = ub.badge.name

    out: list[LeaderboardRow] = []
    for i, u in enumerate(users, start=1):
        info = level_info(u.total_xp or 0)
        role = u.primary_role
        out.append(
            LeaderboardRow(
                rank=i,
                user=u,
                xp=u.total_xp or 0,
                level=info.level,
                title=info.title,
                streak_days=u.streak_days or 0,
                role_name=role.name if role else "",
                latest_badge=latest.get(u.id),
            )
        )
    return out
