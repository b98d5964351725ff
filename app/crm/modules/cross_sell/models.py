from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.crm.models import Base


class CrossSellRule(Base):
    __tablename__ = "cross_sell_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    product: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    base_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)  # 0-100

    # Eligibility (all optional)
    segment: Mapped[str | None] = mapped_column(String(16), nullable=True)
    min_income: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_age: Mapped[int | None] = mapped_column(Integer, nullable=True)

    urgency: Mapped[str] = mapped_column(String(16), nullable=False, default="Medium")
    timeline_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    potential: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "₹8L"
    benefits: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma separated

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def benefit_list(self) -> list[str]:
        return [b.strip() for b in (self.benefits or "").split(",") if b.strip()]
