from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("idx_tasks_assigned_status", "assigned_to_id", "status"),
        Index("idx_tasks_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_to_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    assigned_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="todo")  # kanban column
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    task_type: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    related_lead_id: Mapped[int | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    related_customer_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    estimated_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    time_spent_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    xp_reward: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    xp_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assigned_to = relationship("User", foreign_keys=[assigned_to_id], lazy="selectin")
    assigned_by = relationship("User", foreign_keys=[assigned_by_id], lazy="selectin")
    related_lead = relationship("Lead", foreign_keys=[related_lead_id], lazy="selectin")
    related_customer = relationship("Customer", foreign_keys=[related_customer_id], lazy="selectin")

    @property
    def time_progress(self) -> int:
        """Time spent as a percentage of the estimate, capped at 100."""
        if not self.estimated_minutes or self.estimated_minutes <= 0:
            return 0
        return min(round((self.time_spent_minutes or 0) / self.estimated_minutes * 100), 100)

    @property
    def is_over_time(self) -> bool:
        if not self.estimated_minutes:
            return False
        return (self.time_spent_minutes or 0) > self.estimated_minutes
