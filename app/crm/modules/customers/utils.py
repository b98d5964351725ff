from __future__ import annotations

import re
import unicodedata
from datetime import date

from app.crm.constants import SEGMENT_THRESHOLDS

_HONORIFICS = re.compile(r"^(mr|mrs|ms|miss|dr|shri|smt|sri)\.?\s+", re.IGNORECASE)
# leaves room for "-" and a 10 digit phone inside customer_code (64)
_MAX_NAME_KEY = 48


def normalize_person_name(name: str) -> str:
    """
    Drop a leading honorific so "Mr. Rajesh Kumar" and "Rajesh Kumar" match.
    """
    s = re.sub(r"\s+", " ", (name or "").strip())
    return _HONORIFICS.sub("", s).strip()


def normalize_phone(phone: str | None) -> str:
    """
    Digits only, keeping the last 10 (drops +91 / leading 0 trunk prefixes).
    """
    digits = re.sub(r"\D+", "", phone or "")
    return digits[-10:] if len(digits) > 10 else digits


def canonical_customer_key(full_name: str, phone: str | None = None) -> str:
    """
    Stable customer code used for deduplication.

    Algorithm:
    1. Remove a leading honorific (Mr., Mrs., Dr., Shri...)
    2. Uppercase and keep only letters, combining marks and digits, in any script
    3. Append the full normalized phone, when present

    Examples:
        >>> canonical_customer_key("Mr. Rajesh Kumar", "+91 98200 12345")
        'RAJESHKUMAR-9820012345'
        >>> canonical_customer_key("rajesh  kumar")
        'RAJESHKUMAR'
        >>> canonical_customer_key("राजेश कुमार", "9820012345")
        'राजेशकुमार-9820012345'

    Namesakes get different codes unless they share the same phone number.
    A name with nothing to keep falls back to the phone digits alone.
    """
    name = unicodedata.normalize("NFKC", normalize_person_name(full_name)).upper()
    base = "".join(ch for ch in name if unicodedata.category(ch)[0] in "LMN")[:_MAX_NAME_KEY]
    digits = normalize_phone(phone)
    if not base:
        return digits
    if digits:
        return f"{base}-{digits}"
    return base


def segment_for_income(annual_income: float | None) -> str:
    if annual_income is None:
        return "Basic"
    for threshold, segment in SEGMENT_THRESHOLDS:
        if annual_income >= threshold:
            return segment
    return "Basic"


def age_on(date_of_birth: date | None, today: date | None = None) -> int | None:
    if date_of_birth is None:
        return None
    today = today or date.today()
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years
