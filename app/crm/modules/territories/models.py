from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


class Territory(Base):
    __tablename__ = "territories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    area: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    population: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    businesses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_target: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    achieved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    potential: Mapped[str] = mapped_column(String(16), nullable=False, default="Medium")

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assigned_user = relationship("User", foreign_keys=[assigned_user_id], lazy="selectin")
