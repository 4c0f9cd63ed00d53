"""Field normalization for uploaded policy rows.

Mapping is permissive: a value that cannot be understood becomes ``None``,
``0.0`` or the enumeration's default rather than failing the row.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping

import pandas as pd

from recordhub.models import Gender, PolicyMode, PolicyType, UserType

logger = logging.getLogger(__name__)

# Upload column -> PolicyRow attribute
CSV_COLUMNS: dict[str, str] = {
    "agent": "agent",
    "userType": "user_type",
    "policy_mode": "policy_mode",
    "producer": "producer",
    "policy_number": "policy_number",
    "premium_amount_written": "premium_amount_written",
    "premium_amount": "premium_amount",
    "policy_type": "policy_type",
    "company_name": "company_name",
    "category_name": "category_name",
    "policy_start_date": "policy_start_date",
    "policy_end_date": "policy_end_date",
    "csr": "csr",
    "account_name": "account_name",
    "hasActive ClientPolicy": "has_active_client_policy",
    "first_name": "first_name",
    "last_name": "last_name",
    "date_of_birth": "date_of_birth",
    "address": "address",
    "phone_number": "phone_number",
    "state": "state",
    "zip_code": "zip_code",
    "email": "email",
    "gender": "gender",
}

_GENDERS = {
    "male": Gender.MALE,
    "m": Gender.MALE,
    "female": Gender.FEMALE,
    "f": Gender.FEMALE,
}

_USER_TYPES = {
    "individual": UserType.ACTIVE_CLIENT,
    "active client": UserType.ACTIVE_CLIENT,
    "business": UserType.ACTIVE_CLIENT,
    "prospect": UserType.PROSPECT,
    "inactive": UserType.INACTIVE,
}

_POLICY_TYPES = {
    "single": PolicyType.SINGLE,
    "multiple": PolicyType.MULTIPLE,
    "group": PolicyType.GROUP,
}

# Numeric tokens are read as the billing term in months.
_POLICY_MODES = {
    "monthly": PolicyMode.MONTHLY,
    "1": PolicyMode.MONTHLY,
    "quarterly": PolicyMode.QUARTERLY,
    "3": PolicyMode.QUARTERLY,
    "semi-annual": PolicyMode.SEMI_ANNUAL,
    "semi annual": PolicyMode.SEMI_ANNUAL,
    "semiannual": PolicyMode.SEMI_ANNUAL,
    "6": PolicyMode.SEMI_ANNUAL,
    "annual": PolicyMode.ANNUAL,
    "yearly": PolicyMode.ANNUAL,
    "12": PolicyMode.ANNUAL,
}

_TRUTHY = {"yes", "y", "true", "1"}


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def trim(value: Any) -> str | None:
    """Strip a raw cell; blank or missing becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_email(value: Any) -> str | None:
    text = trim(value)
    return text.lower() if text else None


def parse_date(value: Any) -> date | None:
    """Best-effort date parse; anything unparseable yields None."""
    text = trim(value)
    if text is None:
        return None
    try:
        parsed = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date()


def parse_number(value: Any) -> float:
    """Parse a money-like cell ("$1,200.50"); unparseable yields 0.0."""
    text = trim(value)
    if text is None:
        return 0.0
    cleaned = re.sub(r"[^\d.-]", "", text)
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def parse_flag(value: Any) -> bool:
    text = trim(value)
    return text is not None and text.lower() in _TRUTHY


def _lookup(table: Mapping[str, Any], value: Any, default: Any) -> Any:
    text = trim(value)
    if text is None:
        return default
    return table.get(normalize_whitespace(text).lower(), default)


def map_gender(value: Any) -> Gender:
    return _lookup(_GENDERS, value, Gender.OTHER)


def map_user_type(value: Any) -> UserType:
    return _lookup(_USER_TYPES, value, UserType.ACTIVE_CLIENT)


def map_policy_type(value: Any) -> PolicyType:
    return _lookup(_POLICY_TYPES, value, PolicyType.UNKNOWN)


def map_policy_mode(value: Any) -> PolicyMode:
    return _lookup(_POLICY_MODES, value, PolicyMode.UNKNOWN)


@dataclass
class PolicyRow:
    """One uploaded row with every column kept as trimmed text."""
    row_number: int
    agent: str | None = None
    user_type: str | None = None
    policy_mode: str | None = None
    producer: str | None = None
    policy_number: str | None = None
    premium_amount_written: str | None = None
    premium_amount: str | None = None
    policy_type: str | None = None
    company_name: str | None = None
    category_name: str | None = None
    policy_start_date: str | None = None
    policy_end_date: str | None = None
    csr: str | None = None
    account_name: str | None = None
    has_active_client_policy: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: str | None = None
    address: str | None = None
    phone_number: str | None = None
    state: str | None = None
    zip_code: str | None = None
    email: str | None = None
    gender: str | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any], row_number: int) -> PolicyRow:
        values = {
            attribute: trim(record.get(column))
            for column, attribute in CSV_COLUMNS.items()
        }
        return cls(row_number=row_number, **values)


def missing_columns(columns: list[str]) -> list[str]:
    """Expected upload columns absent from a parsed header."""
    present = set(columns)
    return [column for column in CSV_COLUMNS if column not in present]
