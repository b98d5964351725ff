from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any


def clean(value: Any) -> str | None:
    """Strip form input; empty strings become None."""
    v = ("" if value is None else str(value)).strip()
    return v or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string. Raises ValueError on malformed input."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_optional_int(raw: Any) -> int | None:
    v = clean(raw)
    if v is None:
        return None
    return int(v)


def parse_optional_float(raw: Any) -> float | None:
    """Accepts "1,25,000" style grouping. NaN and infinity raise ValueError."""
    v = clean(raw)
    if v is None:
        return None
    f = float(v.replace(",", ""))
    if not math.isfinite(f):
        raise ValueError(f"not a finite number: {v!r}")
    return f


def parse_page(raw: Any) -> int:
    try:
        page = int(raw or "1")
    except (TypeError, ValueError):
        page = 1
    return max(page, 1)


@dataclass(frozen=True)
class Page:
    items: list
    page: int
    per_page: int
    total: int

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page * self.per_page < self.total

    @property
    def pages(self) -> int:
        if self.total == 0:
            return 1
        return (self.total + self.per_page - 1) // self.per_page


def paginate(query, *, page: int, per_page: int) -> Page:
    """Paginate a SQLAlchemy query (ordering is the caller's job)."""
    total = query.order_by(None).count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return Page(items=items, page=page, per_page=per_page, total=total)


def format_inr(value: float | int | None) -> str:
    """Format an amount the way the dashboards show it (₹ with lakh/crore suffix)."""
    if value is None:
        return "—"
    v = float(value)
    if abs(v) >= 10_000_000:
        return f"₹{v / 10_000_000:.2f}Cr"
    if abs(v) >= 100_000:
        return f"₹{v / 100_000:.1f}L"
    return f"₹{v:,.0f}"
