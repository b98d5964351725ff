from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


class KPA(Base):
    """Key Performance Area: a group of related KRAs."""

    __tablename__ = "kpas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    kras: Mapped[list["KRA"]] = relationship("KRA", back_populates="kpa")


class KRA(Base):
    """Key Result Area for a role, weighted within that role."""

    __tablename__ = "kras"
    __table_args__ = (
        Index("idx_kras_role_key", "role_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role_key: Mapped[str] = mapped_column(String(64), nullable=False)
    kpa_id: Mapped[int | None] = mapped_column(ForeignKey("kpas.id", ondelete="SET NULL"), nullable=True)

    metric: Mapped[str] = mapped_column(String(16), nullable=False, default="count")  # percentage, count, amount
    default_target: Mapped[float] = mapped_column(Float, nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    weight: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-100
    incentive: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    kpa: Mapped[KPA | None] = relationship("KPA", back_populates="kras", lazy="selectin")


class KRATarget(Base):
    __tablename__ = "kra_targets"
    __table_args__ = (
        UniqueConstraint("kra_id", "user_id", "period", name="uq_kra_targets_kra_user_period"),
        Index("idx_kra_targets_user_period", "user_id", "period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    kra_id: Mapped[int] = mapped_column(ForeignKey("kras.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[str] = mapped_column(String(8), nullable=False)  # YYYY-MM or YYYY-Qn

    target: Mapped[float] = mapped_column(Float, nullable=False)
    achieved: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    points_awarded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    kra: Mapped[KRA] = relationship("KRA", lazy="selectin")
    user = relationship("User", lazy="selectin")
