from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.crm.models import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("idx_customers_full_name", "full_name"),
        Index("idx_customers_phone", "phone"),
        Index("idx_customers_segment", "segment"),
        Index("idx_customers_rm_id", "relationship_manager_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    customer_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(128), nullable=True)
    annual_income: Mapped[float | None] = mapped_column(Float, nullable=True)
    segment: Mapped[str] = mapped_column(String(16), nullable=False, default="Basic")  # Premium, Gold, Silver, Basic
    kyc_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    relationship_manager_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    family_head_id: Mapped[int | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    relationship_manager = relationship("User", foreign_keys=[relationship_manager_id], lazy="selectin")
    family_head: Mapped["Customer | None"] = relationship("Customer", remote_side=[id], lazy="selectin")
    notes: Mapped[list["CustomerNote"]] = relationship(
        "CustomerNote",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    holdings: Mapped[list["CustomerHolding"]] = relationship(
        "CustomerHolding",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def held_products(self) -> set[str]:
        return {h.product.strip().lower() for h in self.holdings or []}


class CustomerNote(Base):
    __tablename__ = "customer_notes"
    __table_args__ = (
        Index("idx_customer_notes_customer_id", "customer_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    note_text: Mapped[str] = mapped_column(Text, nullable=False)
    note_date: Mapped[date | None] = mapped_column(Date, nullable=True, default=date.today)
    author: Mapped[str | None] = mapped_column(String(320), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="notes", lazy="selectin")


class CustomerHolding(Base):
    """A product the customer already holds (account, loan, card, policy...)."""

    __tablename__ = "customer_holdings"
    __table_args__ = (
        Index("idx_customer_holdings_customer_id", "customer_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)

    product: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)  # lending, insurance, investments, cards, banking
    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    opened_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    customer: Mapped[Customer] = relationship("Customer", back_populates="holdings", lazy="selectin")
